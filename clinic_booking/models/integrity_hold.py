"""Integrity hold model definitions."""

from datetime import datetime

from sqlalchemy import Column, Date, DateTime, ForeignKey, Integer, String
from clinic_booking.database import Base


class IntegrityHold(Base):
    """Halts booking writes for a doctor/day whose booked slots disagree with its appointments."""
    __tablename__ = "integrity_holds"

    id = Column(Integer, primary_key=True)
    doctor_id = Column(Integer, ForeignKey("doctors.id"), nullable=False, index=True)
    slot_date = Column(Date, nullable=False)
    detail = Column(String)
    created_at = Column(DateTime, default=datetime.now)
