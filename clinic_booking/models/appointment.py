"""Appointment model definitions."""

from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Time,
    text,
)

from clinic_booking.database import Base


class Appointment(Base):
    """Represents a reserved slot with a doctor."""
    __tablename__ = "appointments"

    id = Column(Integer, primary_key=True)
    doctor_id = Column(Integer, ForeignKey("doctors.id"), nullable=False, index=True)
    patient_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    slot_date = Column(Date, nullable=False)
    slot_time = Column(Time, nullable=False)
    amount = Column(Integer, nullable=False, default=0)
    cancelled = Column(Boolean, nullable=False, default=False)
    is_completed = Column(Boolean, nullable=False, default=False)
    payment = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=datetime.now)

    __table_args__ = (
        CheckConstraint("NOT (cancelled AND is_completed)", name="ck_appointments_single_outcome"),
        Index(
            "uq_appointments_active_slot",
            "doctor_id",
            "slot_date",
            "slot_time",
            unique=True,
            sqlite_where=text("cancelled = false"),
            postgresql_where=text("cancelled = false"),
        ),
    )

    @property
    def status(self) -> str:
        if self.cancelled:
            return "cancelled"
        if self.is_completed:
            return "completed"
        return "pending"
