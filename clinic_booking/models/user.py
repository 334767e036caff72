"""User model definitions."""

from datetime import datetime

from sqlalchemy import JSON, Column, Date, DateTime, Integer, String
from clinic_booking.database import Base

DEFAULT_GENDER = "Not Selected"


class User(Base):
    """Represents a patient account."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    email = Column(String, unique=True, index=True)
    hashed_password = Column(String)
    phone = Column(String)
    address = Column(JSON, default=dict)
    gender = Column(String, default=DEFAULT_GENDER)
    dob = Column(Date)
    image = Column(String)
    created_at = Column(DateTime, default=datetime.now)
