from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from clinic_booking.auth.dependencies import get_current_patient
from clinic_booking.models.appointment import Appointment
from clinic_booking.models.user import User
from clinic_booking.routes.common import (
    booking_http_error,
    database_unavailable,
    ensure_database_ready,
    get_db,
    serialize_appointment,
    serialize_appointments,
)
from clinic_booking.routes.schemas import AppointmentResponse, SlotRequestMixin
from clinic_booking.services import booking, errors, notifications
from clinic_booking.services.slots import SlotKey

router = APIRouter(tags=['appointments'])


class BookAppointmentRequest(SlotRequestMixin):
    doctor_id: int


def _load_owned_appointment(db: Session, appointment_id: int, patient: User, action: str) -> Appointment:
    appointment = booking.get_appointment(db, appointment_id)
    if appointment.patient_id != patient.id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f'Only the patient who booked this appointment can {action} it.',
        )
    return appointment


@router.post('', response_model=AppointmentResponse, status_code=status.HTTP_201_CREATED)
def create_appointment(
    data: BookAppointmentRequest,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(get_current_patient),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        appointment = booking.book_slot(
            db,
            doctor_id=data.doctor_id,
            patient_id=current_user.id,
            slot_date=data.slot_date,
            slot_time=data.slot_time,
        )
        doctor = booking.get_doctor(db, data.doctor_id)
    except errors.BookingError as exc:
        raise booking_http_error(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    key = SlotKey(appointment.slot_date, appointment.slot_time)
    background_tasks.add_task(
        notifications.send_booking_confirmation,
        patient_name=current_user.name,
        patient_email=current_user.email,
        doctor_name=doctor.name,
        day_label=key.slot_date.strftime('%d %b %Y'),
        time_label=key.time_label,
        amount=appointment.amount,
    )

    return serialize_appointment(appointment, doctor_name=doctor.name, patient_name=current_user.name)


@router.get('/mine', response_model=list[AppointmentResponse])
def list_my_appointments(
    current_user: User = Depends(get_current_patient),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        appointments = db.query(Appointment).filter(
            Appointment.patient_id == current_user.id,
        ).order_by(Appointment.created_at.desc(), Appointment.id.desc()).all()

        return serialize_appointments(db, appointments)
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.post('/{appointment_id}/cancel', response_model=AppointmentResponse)
def cancel_my_appointment(
    appointment_id: int,
    current_user: User = Depends(get_current_patient),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        _load_owned_appointment(db, appointment_id, current_user, 'cancel')
        appointment = booking.cancel_booking(db, appointment_id)
    except errors.BookingError as exc:
        raise booking_http_error(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    return serialize_appointment(appointment, patient_name=current_user.name)


@router.post('/{appointment_id}/payment', response_model=AppointmentResponse)
def record_payment(
    appointment_id: int,
    current_user: User = Depends(get_current_patient),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        _load_owned_appointment(db, appointment_id, current_user, 'pay for')
        appointment = booking.mark_paid(db, appointment_id)
    except errors.BookingError as exc:
        raise booking_http_error(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    return serialize_appointment(appointment, patient_name=current_user.name)
