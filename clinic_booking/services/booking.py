"""Slot reservation and appointment state changes.

Every write that touches ``Doctor.slots_booked`` goes through this module. The
booked-slot map and the appointment rows change in one transaction, guarded by
the doctor's ``version_id``: a concurrent writer makes the flush fail with
``StaleDataError`` and the whole attempt is rolled back and replayed from a
fresh read. Before committing, the affected day is re-checked so that the
booked labels equal the labels of its non-cancelled appointments.
"""

import logging
from datetime import date, datetime, time

from sqlalchemy import exc as sa_exc
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from clinic_booking.core import config
from clinic_booking.models.appointment import Appointment
from clinic_booking.models.doctor import Doctor
from clinic_booking.models.integrity_hold import IntegrityHold
from clinic_booking.services import errors
from clinic_booking.services.slots import (
    DaySlots,
    SlotKey,
    add_booked_label,
    booked_labels_for_day,
    format_day_key,
    format_time_label,
    generate_slots,
    remove_booked_label,
    slot_fits_window,
)

logger = logging.getLogger(__name__)

ACTIVE_SLOT_INDEX = 'uq_appointments_active_slot'
# SQLite names the columns instead of the index.
_ACTIVE_SLOT_COLUMNS = 'appointments.doctor_id, appointments.slot_date, appointments.slot_time'


def is_active_slot_violation(exc: sa_exc.IntegrityError) -> bool:
    diag = getattr(exc.orig, 'diag', None)
    if getattr(diag, 'constraint_name', None) == ACTIVE_SLOT_INDEX:
        return True
    message = str(exc.orig)
    return ACTIVE_SLOT_INDEX in message or _ACTIVE_SLOT_COLUMNS in message


def get_doctor(db: Session, doctor_id: int) -> Doctor:
    doctor = db.get(Doctor, doctor_id, populate_existing=True)
    if doctor is None:
        raise errors.NotFoundError('Doctor not found.')
    return doctor


def get_appointment(db: Session, appointment_id: int) -> Appointment:
    appointment = db.get(Appointment, appointment_id, populate_existing=True)
    if appointment is None:
        raise errors.NotFoundError('Appointment not found.')
    return appointment


def list_available_slots(db: Session, doctor_id: int, now: datetime | None = None) -> list[DaySlots]:
    doctor = get_doctor(db, doctor_id)
    window_start, window_end = doctor.daily_window
    return generate_slots(window_start, window_end, doctor.slots_booked, now or datetime.now())


def appointment_labels_for_day(db: Session, doctor_id: int, slot_date: date) -> set[str]:
    rows = db.query(Appointment.slot_time).filter(
        Appointment.doctor_id == doctor_id,
        Appointment.slot_date == slot_date,
        Appointment.cancelled.is_(False),
    ).all()
    return {format_time_label(slot_time) for (slot_time,) in rows}


def find_hold(db: Session, doctor_id: int, slot_date: date) -> IntegrityHold | None:
    return db.query(IntegrityHold).filter(
        IntegrityHold.doctor_id == doctor_id,
        IntegrityHold.slot_date == slot_date,
    ).first()


def _ensure_not_held(db: Session, doctor_id: int, slot_date: date) -> None:
    hold = find_hold(db, doctor_id, slot_date)
    if hold is not None:
        raise errors.IntegrityError(
            f'Writes for doctor {doctor_id} on {format_day_key(slot_date)} are halted pending investigation.'
        )


def _hold_day(db: Session, doctor_id: int, slot_date: date, detail: str) -> None:
    if find_hold(db, doctor_id, slot_date) is None:
        db.add(IntegrityHold(doctor_id=doctor_id, slot_date=slot_date, detail=detail))
        db.commit()


def _assert_day_consistent(db: Session, doctor: Doctor, slot_date: date) -> None:
    db.flush()
    recorded = booked_labels_for_day(doctor.slots_booked, slot_date)
    expected = appointment_labels_for_day(db, doctor.id, slot_date)
    if recorded == expected:
        return

    doctor_id = doctor.id
    detail = (
        f'doctor {doctor_id} on {format_day_key(slot_date)}: '
        f'booked {sorted(recorded)} but appointments hold {sorted(expected)}'
    )
    db.rollback()
    logger.critical('Booked slot invariant violated, halting writes: %s', detail)
    _hold_day(db, doctor_id, slot_date, detail)
    raise errors.IntegrityError(detail)


def _check_bookable(db: Session, doctor: Doctor, key: SlotKey, now: datetime) -> None:
    if not doctor.available:
        raise errors.UnavailableError()

    window_start, window_end = doctor.daily_window
    if not slot_fits_window(key.slot_time, window_start, window_end):
        raise errors.ValidationError(
            f'Slots must start on a {config.SLOT_INTERVAL_MINUTES}-minute boundary between '
            f'{format_time_label(window_start)} and {format_time_label(window_end)}.'
        )

    if key.starts_at <= now:
        raise errors.ValidationError('Appointments must be scheduled in the future.')

    _ensure_not_held(db, doctor.id, key.slot_date)

    if key.time_label in booked_labels_for_day(doctor.slots_booked, key.slot_date):
        raise errors.ConflictError()


def book_slot(
    db: Session,
    doctor_id: int,
    patient_id: int,
    slot_date: date,
    slot_time: time,
    now: datetime | None = None,
) -> Appointment:
    key = SlotKey(slot_date, slot_time)
    now = now or datetime.now()

    for attempt in range(1, config.BOOKING_MAX_ATTEMPTS + 1):
        try:
            doctor = get_doctor(db, doctor_id)
            _check_bookable(db, doctor, key, now)

            doctor.slots_booked = add_booked_label(doctor.slots_booked, key)
            appointment = Appointment(
                doctor_id=doctor.id,
                patient_id=patient_id,
                slot_date=key.slot_date,
                slot_time=key.slot_time,
                amount=doctor.fees,
                cancelled=False,
                is_completed=False,
                payment=False,
            )
            db.add(appointment)

            _assert_day_consistent(db, doctor, key.slot_date)
            db.commit()
        except sa_exc.IntegrityError as exc:
            db.rollback()
            if not is_active_slot_violation(exc):
                logger.warning('Booking for doctor %s violated a constraint: %s', doctor_id, exc.orig)
                raise errors.ValidationError('Booking refers to a missing record or breaks a data constraint.') from exc
            logger.info(
                'Booking attempt %s for doctor %s at %s %s lost the slot to a concurrent booking',
                attempt, doctor_id, key.day_key, key.time_label,
            )
            continue
        except StaleDataError:
            db.rollback()
            logger.info(
                'Booking attempt %s for doctor %s at %s %s lost a concurrent write',
                attempt, doctor_id, key.day_key, key.time_label,
            )
            continue
        except sa_exc.OperationalError as exc:
            db.rollback()
            logger.warning('Booking for doctor %s failed on a storage error: %s', doctor_id, exc)
            raise errors.TransientError() from exc
        except errors.BookingError as exc:
            db.rollback()
            logger.info(
                'Booking rejected for doctor %s at %s %s: %s',
                doctor_id, key.day_key, key.time_label, exc.reason,
            )
            raise

        db.refresh(appointment)
        logger.info(
            'Appointment %s booked with doctor %s at %s %s for patient %s',
            appointment.id, doctor_id, key.day_key, key.time_label, patient_id,
        )
        return appointment

    logger.info(
        'Booking for doctor %s at %s %s gave up after %s attempts',
        doctor_id, key.day_key, key.time_label, config.BOOKING_MAX_ATTEMPTS,
    )
    raise errors.ConflictError()


def _ensure_pending(appointment: Appointment) -> None:
    if appointment.cancelled:
        raise errors.InvalidTransitionError('Appointment is already cancelled.')
    if appointment.is_completed:
        raise errors.InvalidTransitionError('Appointment is already completed.')


def cancel_booking(db: Session, appointment_id: int) -> Appointment:
    for attempt in range(1, config.BOOKING_MAX_ATTEMPTS + 1):
        try:
            appointment = get_appointment(db, appointment_id)
            _ensure_pending(appointment)
            doctor = get_doctor(db, appointment.doctor_id)
            key = SlotKey(appointment.slot_date, appointment.slot_time)
            _ensure_not_held(db, doctor.id, key.slot_date)

            doctor.slots_booked = remove_booked_label(doctor.slots_booked, key)
            appointment.cancelled = True

            _assert_day_consistent(db, doctor, key.slot_date)
            db.commit()
        except StaleDataError:
            db.rollback()
            logger.info('Cancel attempt %s for appointment %s lost a concurrent write', attempt, appointment_id)
            continue
        except sa_exc.OperationalError as exc:
            db.rollback()
            raise errors.TransientError() from exc
        except errors.BookingError:
            db.rollback()
            raise

        db.refresh(appointment)
        logger.info('Appointment %s cancelled, slot %s %s released', appointment_id, key.day_key, key.time_label)
        return appointment

    raise errors.TransientError('Appointment could not be cancelled, please retry.')


def complete_appointment(db: Session, appointment_id: int) -> Appointment:
    try:
        appointment = get_appointment(db, appointment_id)
        _ensure_pending(appointment)
        appointment.is_completed = True
        db.commit()
    except sa_exc.OperationalError as exc:
        db.rollback()
        raise errors.TransientError() from exc
    except errors.BookingError:
        db.rollback()
        raise

    db.refresh(appointment)
    logger.info('Appointment %s marked completed', appointment_id)
    return appointment


def mark_paid(db: Session, appointment_id: int) -> Appointment:
    try:
        appointment = get_appointment(db, appointment_id)
        if appointment.cancelled:
            raise errors.InvalidTransitionError('Cancelled appointments cannot be paid.')
        appointment.payment = True
        db.commit()
    except sa_exc.OperationalError as exc:
        db.rollback()
        raise errors.TransientError() from exc
    except errors.BookingError:
        db.rollback()
        raise

    db.refresh(appointment)
    logger.info('Payment recorded for appointment %s', appointment_id)
    return appointment


def list_holds(db: Session) -> list[IntegrityHold]:
    return db.query(IntegrityHold).order_by(IntegrityHold.created_at.asc()).all()


def release_hold(db: Session, hold_id: int) -> None:
    hold = db.get(IntegrityHold, hold_id)
    if hold is None:
        raise errors.NotFoundError('Integrity hold not found.')

    doctor = get_doctor(db, hold.doctor_id)
    recorded = booked_labels_for_day(doctor.slots_booked, hold.slot_date)
    expected = appointment_labels_for_day(db, doctor.id, hold.slot_date)
    if recorded != expected:
        raise errors.IntegrityError(
            f'doctor {doctor.id} on {format_day_key(hold.slot_date)} is still inconsistent: '
            f'booked {sorted(recorded)} but appointments hold {sorted(expected)}'
        )

    db.delete(hold)
    db.commit()
    logger.info('Integrity hold %s released for doctor %s on %s', hold_id, doctor.id, format_day_key(hold.slot_date))
