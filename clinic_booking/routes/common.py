from fastapi import HTTPException, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from clinic_booking.database import (
    SessionLocal,
    ensure_appointment_schema,
    ensure_doctor_schema,
    ensure_user_schema,
)
from clinic_booking.models.appointment import Appointment
from clinic_booking.models.doctor import Doctor
from clinic_booking.models.user import User
from clinic_booking.routes.schemas import AppointmentResponse
from clinic_booking.services import errors

DATABASE_UNAVAILABLE_DETAIL = 'Database unavailable. Verify DATABASE_URL and database credentials.'

# Subclasses before their bases.
BOOKING_ERROR_STATUS = (
    (errors.NotFoundError, status.HTTP_404_NOT_FOUND),
    (errors.InvalidTransitionError, status.HTTP_409_CONFLICT),
    (errors.ValidationError, status.HTTP_400_BAD_REQUEST),
    (errors.ConflictError, status.HTTP_409_CONFLICT),
    (errors.UnavailableError, status.HTTP_409_CONFLICT),
    (errors.IntegrityError, status.HTTP_500_INTERNAL_SERVER_ERROR),
    (errors.TransientError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def ensure_database_ready() -> None:
    try:
        ensure_doctor_schema()
        ensure_appointment_schema()
        ensure_user_schema()
    except SQLAlchemyError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=DATABASE_UNAVAILABLE_DETAIL,
        ) from exc


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def database_unavailable() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail=DATABASE_UNAVAILABLE_DETAIL,
    )


def booking_http_error(exc: errors.BookingError) -> HTTPException:
    for error_type, status_code in BOOKING_ERROR_STATUS:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=exc.reason)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=exc.reason)


def serialize_appointment(
    appointment: Appointment,
    doctor_name: str | None = None,
    patient_name: str | None = None,
) -> AppointmentResponse:
    return AppointmentResponse(
        id=appointment.id,
        doctor_id=appointment.doctor_id,
        patient_id=appointment.patient_id,
        doctor_name=doctor_name,
        patient_name=patient_name,
        slot_date=appointment.slot_date,
        slot_time=appointment.slot_time,
        amount=appointment.amount or 0,
        cancelled=bool(appointment.cancelled),
        is_completed=bool(appointment.is_completed),
        payment=bool(appointment.payment),
        status=appointment.status,
        created_at=appointment.created_at,
    )


def serialize_appointments(db: Session, appointments: list[Appointment]) -> list[AppointmentResponse]:
    doctor_ids = {appointment.doctor_id for appointment in appointments}
    patient_ids = {appointment.patient_id for appointment in appointments}

    doctor_names = dict(db.query(Doctor.id, Doctor.name).filter(Doctor.id.in_(doctor_ids)).all()) if doctor_ids else {}
    patient_names = dict(db.query(User.id, User.name).filter(User.id.in_(patient_ids)).all()) if patient_ids else {}

    return [
        serialize_appointment(
            appointment,
            doctor_name=doctor_names.get(appointment.doctor_id),
            patient_name=patient_names.get(appointment.patient_id),
        )
        for appointment in appointments
    ]
