"""Doctor model definitions."""

from datetime import datetime

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String, Text, Time

from clinic_booking.core import config
from clinic_booking.database import Base


class Doctor(Base):
    """Represents a doctor and the slots already booked with them."""
    __tablename__ = "doctors"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    email = Column(String, unique=True, index=True, nullable=False)
    hashed_password = Column(String, nullable=False)
    image = Column(String)
    speciality = Column(String)
    degree = Column(String)
    experience = Column(String)
    about = Column(Text)
    fees = Column(Integer, nullable=False, default=0)
    address = Column(JSON, default=dict)
    available = Column(Boolean, nullable=False, default=True)
    window_start = Column(Time)
    window_end = Column(Time)
    # day key -> sorted time labels; replace the dict, never mutate it in place
    slots_booked = Column(JSON, nullable=False, default=dict)
    version_id = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=datetime.now)

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def daily_window(self):
        return (
            self.window_start or config.DEFAULT_WINDOW_START,
            self.window_end or config.DEFAULT_WINDOW_END,
        )
