from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from clinic_booking.auth.dependencies import get_current_doctor
from clinic_booking.models.appointment import Appointment
from clinic_booking.models.doctor import Doctor
from clinic_booking.routes.common import (
    booking_http_error,
    database_unavailable,
    ensure_database_ready,
    get_db,
    serialize_appointments,
)
from clinic_booking.routes.schemas import (
    Address,
    AppointmentResponse,
    AvailableSlotsResponse,
    DaySlotsResponse,
    DoctorResponse,
)
from clinic_booking.services import booking, errors

router = APIRouter(tags=['doctors'])

LATEST_APPOINTMENTS_LIMIT = 5
MAX_ABOUT_LENGTH = 2000


class UpdateDoctorProfileRequest(BaseModel):
    fees: int | None = Field(default=None, ge=0)
    about: str | None = None
    address: Address | None = None
    available: bool | None = None

    @field_validator('about')
    @classmethod
    def validate_about(cls, value: str | None) -> str | None:
        if value is None:
            return None

        normalized = value.strip()
        if len(normalized) > MAX_ABOUT_LENGTH:
            raise ValueError(f'About must be {MAX_ABOUT_LENGTH} characters or fewer.')

        return normalized


class DoctorDashboardResponse(BaseModel):
    earnings: int
    appointments: int
    patients: int
    latest_appointments: list[AppointmentResponse]


def _load_own_appointment(db: Session, appointment_id: int, doctor: Doctor, action: str) -> Appointment:
    appointment = booking.get_appointment(db, appointment_id)
    if appointment.doctor_id != doctor.id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f'Only the doctor of this appointment can {action} it.',
        )
    return appointment


@router.get('', response_model=list[DoctorResponse])
def list_doctors(db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        return db.query(Doctor).order_by(Doctor.created_at.asc(), Doctor.id.asc()).all()
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.get('/me/profile', response_model=DoctorResponse)
def doctor_profile(
    current_doctor: Doctor = Depends(get_current_doctor),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        return booking.get_doctor(db, current_doctor.id)
    except errors.BookingError as exc:
        raise booking_http_error(exc) from exc
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.patch('/me/profile', response_model=DoctorResponse)
def update_doctor_profile(
    data: UpdateDoctorProfileRequest,
    current_doctor: Doctor = Depends(get_current_doctor),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        doctor = booking.get_doctor(db, current_doctor.id)
        if data.fees is not None:
            doctor.fees = data.fees
        if data.about is not None:
            doctor.about = data.about
        if data.address is not None:
            doctor.address = data.address.model_dump()
        if data.available is not None:
            doctor.available = data.available

        db.commit()
        db.refresh(doctor)
        return doctor
    except errors.BookingError as exc:
        raise booking_http_error(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.get('/me/appointments', response_model=list[AppointmentResponse])
def list_doctor_appointments(
    current_doctor: Doctor = Depends(get_current_doctor),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        appointments = db.query(Appointment).filter(
            Appointment.doctor_id == current_doctor.id,
        ).order_by(Appointment.slot_date.asc(), Appointment.slot_time.asc()).all()

        return serialize_appointments(db, appointments)
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.post('/me/appointments/{appointment_id}/complete', response_model=AppointmentResponse)
def complete_doctor_appointment(
    appointment_id: int,
    current_doctor: Doctor = Depends(get_current_doctor),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        _load_own_appointment(db, appointment_id, current_doctor, 'complete')
        appointment = booking.complete_appointment(db, appointment_id)
        return serialize_appointments(db, [appointment])[0]
    except errors.BookingError as exc:
        raise booking_http_error(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.post('/me/appointments/{appointment_id}/cancel', response_model=AppointmentResponse)
def cancel_doctor_appointment(
    appointment_id: int,
    current_doctor: Doctor = Depends(get_current_doctor),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        _load_own_appointment(db, appointment_id, current_doctor, 'cancel')
        appointment = booking.cancel_booking(db, appointment_id)
        return serialize_appointments(db, [appointment])[0]
    except errors.BookingError as exc:
        raise booking_http_error(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.get('/me/dashboard', response_model=DoctorDashboardResponse)
def doctor_dashboard(
    current_doctor: Doctor = Depends(get_current_doctor),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        appointments = db.query(Appointment).filter(
            Appointment.doctor_id == current_doctor.id,
        ).order_by(Appointment.created_at.desc(), Appointment.id.desc()).all()

        earnings = sum(
            appointment.amount or 0
            for appointment in appointments
            if appointment.is_completed or appointment.payment
        )
        patients = {appointment.patient_id for appointment in appointments}

        return DoctorDashboardResponse(
            earnings=earnings,
            appointments=len(appointments),
            patients=len(patients),
            latest_appointments=serialize_appointments(db, appointments[:LATEST_APPOINTMENTS_LIMIT]),
        )
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.get('/{doctor_id}/slots', response_model=AvailableSlotsResponse)
def list_doctor_slots(doctor_id: int, db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        doctor = booking.get_doctor(db, doctor_id)
        days = booking.list_available_slots(db, doctor_id, now=datetime.now())

        return AvailableSlotsResponse(
            doctor_id=doctor.id,
            available=doctor.available,
            fees=doctor.fees,
            days=[DaySlotsResponse.from_day(day) for day in days],
        )
    except errors.BookingError as exc:
        raise booking_http_error(exc) from exc
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc
