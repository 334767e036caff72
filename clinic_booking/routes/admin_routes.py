import logging
import secrets
from datetime import date, time

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status
from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from werkzeug.security import generate_password_hash

from clinic_booking.auth.dependencies import require_admin
from clinic_booking.core import config
from clinic_booking.models.appointment import Appointment
from clinic_booking.models.doctor import Doctor
from clinic_booking.models.user import User
from clinic_booking.routes.common import (
    booking_http_error,
    database_unavailable,
    ensure_database_ready,
    get_db,
    serialize_appointments,
)
from clinic_booking.routes.schemas import Address, AppointmentResponse, DoctorResponse
from clinic_booking.services import booking, errors, notifications
from clinic_booking.services.slots import is_on_grid

router = APIRouter(tags=['admin'], dependencies=[Depends(require_admin)])

logger = logging.getLogger(__name__)

LATEST_APPOINTMENTS_LIMIT = 5


class CreateDoctorRequest(BaseModel):
    name: str
    email: EmailStr
    speciality: str
    degree: str
    experience: str
    about: str
    fees: int = Field(ge=0)
    address: Address
    image: str | None = None
    window_start: time = config.DEFAULT_WINDOW_START
    window_end: time = config.DEFAULT_WINDOW_END

    @field_validator('name', 'speciality', 'degree', 'experience', 'about')
    @classmethod
    def validate_required_text(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('Missing Details')
        return normalized

    @field_validator('email')
    @classmethod
    def normalize_email(cls, value: str) -> str:
        return value.strip().lower()

    @model_validator(mode='after')
    def validate_window(self) -> 'CreateDoctorRequest':
        if self.window_start >= self.window_end:
            raise ValueError('Working hours must start before they end.')
        if not is_on_grid(self.window_start) or not is_on_grid(self.window_end):
            raise ValueError(f'Working hours must be on {config.SLOT_INTERVAL_MINUTES}-minute boundaries.')
        return self


class CreateDoctorResponse(BaseModel):
    message: str
    doctor: DoctorResponse


class AdminDashboardResponse(BaseModel):
    doctors: int
    appointments: int
    patients: int
    latest_appointments: list[AppointmentResponse]


class IntegrityHoldResponse(BaseModel):
    id: int
    doctor_id: int
    slot_date: date
    detail: str | None = None

    class Config:
        from_attributes = True


@router.post('/doctors', response_model=CreateDoctorResponse, status_code=status.HTTP_201_CREATED)
def add_doctor(
    data: CreateDoctorRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        existing_doctor = db.query(Doctor).filter(Doctor.email == data.email).first()
        if existing_doctor:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail='Email already in use',
            )

        password = secrets.token_urlsafe(9)
        doctor = Doctor(
            name=data.name,
            email=data.email,
            hashed_password=generate_password_hash(password),
            image=data.image,
            speciality=data.speciality,
            degree=data.degree,
            experience=data.experience,
            about=data.about,
            fees=data.fees,
            address=data.address.model_dump(),
            available=True,
            window_start=data.window_start,
            window_end=data.window_end,
            slots_booked={},
        )
        db.add(doctor)
        db.commit()
        db.refresh(doctor)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    logger.info('Doctor %s added (%s); queueing welcome email', doctor.id, doctor.email)
    background_tasks.add_task(notifications.send_doctor_welcome, doctor.name, doctor.email, password)

    return CreateDoctorResponse(
        message='Doctor added. Login credentials are being emailed to the doctor.',
        doctor=DoctorResponse.model_validate(doctor),
    )


@router.get('/doctors', response_model=list[DoctorResponse])
def list_all_doctors(db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        return db.query(Doctor).order_by(Doctor.id.asc()).all()
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.post('/doctors/{doctor_id}/availability', response_model=DoctorResponse)
def change_availability(doctor_id: int, db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        doctor = booking.get_doctor(db, doctor_id)
        # Existing appointments are left alone when a doctor stops taking bookings.
        doctor.available = not doctor.available
        db.commit()
        db.refresh(doctor)
    except errors.BookingError as exc:
        raise booking_http_error(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    logger.info('Doctor %s availability set to %s', doctor_id, doctor.available)
    return doctor


@router.get('/appointments', response_model=list[AppointmentResponse])
def list_all_appointments(db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        appointments = db.query(Appointment).order_by(
            Appointment.created_at.desc(),
            Appointment.id.desc(),
        ).all()

        return serialize_appointments(db, appointments)
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.post('/appointments/{appointment_id}/cancel', response_model=AppointmentResponse)
def cancel_appointment(appointment_id: int, db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        appointment = booking.cancel_booking(db, appointment_id)
        return serialize_appointments(db, [appointment])[0]
    except errors.BookingError as exc:
        raise booking_http_error(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.post('/appointments/{appointment_id}/complete', response_model=AppointmentResponse)
def complete_appointment(appointment_id: int, db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        appointment = booking.complete_appointment(db, appointment_id)
        return serialize_appointments(db, [appointment])[0]
    except errors.BookingError as exc:
        raise booking_http_error(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.get('/dashboard', response_model=AdminDashboardResponse)
def admin_dashboard(db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        latest = db.query(Appointment).order_by(
            Appointment.created_at.desc(),
            Appointment.id.desc(),
        ).limit(LATEST_APPOINTMENTS_LIMIT).all()

        return AdminDashboardResponse(
            doctors=db.query(Doctor).count(),
            appointments=db.query(Appointment).count(),
            patients=db.query(User).count(),
            latest_appointments=serialize_appointments(db, latest),
        )
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.get('/integrity-holds', response_model=list[IntegrityHoldResponse])
def list_integrity_holds(db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        return booking.list_holds(db)
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.delete('/integrity-holds/{hold_id}', status_code=status.HTTP_204_NO_CONTENT)
def release_integrity_hold(hold_id: int, db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        booking.release_hold(db, hold_id)
    except errors.BookingError as exc:
        raise booking_http_error(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc
