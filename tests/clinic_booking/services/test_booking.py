import threading
from datetime import date, datetime, time

import pytest
from sqlalchemy import exc as sa_exc
from sqlalchemy.orm import sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from clinic_booking.models.appointment import Appointment
from clinic_booking.models.doctor import Doctor
from clinic_booking.models.integrity_hold import IntegrityHold
from clinic_booking.services import booking, errors

NOW = datetime(2024, 6, 4, 8, 0)
SLOT_DATE = date(2024, 6, 5)


def _open_labels(db, doctor_id: int, day_key: str = '5_6_2024') -> list[str]:
    days = booking.list_available_slots(db, doctor_id, now=NOW)
    bucket = next(day for day in days if day.day_key == day_key)
    return [slot.time_label for slot in bucket.slots]


def test_book_slot_records_slot_and_appointment_together(booking_db, make_doctor, make_patient) -> None:
    doctor = make_doctor(fees=650)
    patient = make_patient()

    appointment = booking.book_slot(booking_db, doctor.id, patient.id, SLOT_DATE, time(10, 0), now=NOW)

    booking_db.refresh(doctor)
    assert doctor.slots_booked == {'5_6_2024': ['10:00 AM']}
    assert appointment.doctor_id == doctor.id
    assert appointment.patient_id == patient.id
    assert appointment.slot_date == SLOT_DATE
    assert appointment.slot_time == time(10, 0)
    assert appointment.amount == 650
    assert appointment.status == 'pending'
    assert appointment.payment is False


def test_book_slot_is_visible_to_the_next_listing(booking_db, make_doctor, make_patient) -> None:
    doctor = make_doctor()
    patient = make_patient()
    assert '02:30 PM' in _open_labels(booking_db, doctor.id)

    booking.book_slot(booking_db, doctor.id, patient.id, SLOT_DATE, time(14, 30), now=NOW)

    assert '02:30 PM' not in _open_labels(booking_db, doctor.id)


def test_book_slot_keeps_fee_snapshot_when_doctor_fee_changes(booking_db, make_doctor, make_patient) -> None:
    doctor = make_doctor(fees=500)
    patient = make_patient()
    appointment = booking.book_slot(booking_db, doctor.id, patient.id, SLOT_DATE, time(10, 0), now=NOW)

    doctor = booking_db.get(Doctor, doctor.id)
    doctor.fees = 900
    booking_db.commit()

    booking_db.refresh(appointment)
    assert appointment.amount == 500


def test_book_slot_rejects_taken_slot(booking_db, make_doctor, make_patient) -> None:
    doctor = make_doctor()
    booking.book_slot(booking_db, doctor.id, make_patient().id, SLOT_DATE, time(10, 0), now=NOW)

    with pytest.raises(errors.ConflictError) as exception_info:
        booking.book_slot(booking_db, doctor.id, make_patient().id, SLOT_DATE, time(10, 0), now=NOW)

    assert exception_info.value.reason == 'slot unavailable'
    assert booking_db.query(Appointment).count() == 1


def test_book_slot_rejects_unavailable_doctor_before_checking_slot(booking_db, make_doctor, make_patient) -> None:
    doctor = make_doctor(available=False, slots_booked={'5_6_2024': ['10:00 AM']})

    with pytest.raises(errors.UnavailableError) as exception_info:
        booking.book_slot(booking_db, doctor.id, make_patient().id, SLOT_DATE, time(10, 0), now=NOW)

    assert exception_info.value.reason == 'doctor unavailable'


def test_book_slot_reports_missing_doctor(booking_db, make_patient) -> None:
    with pytest.raises(errors.NotFoundError):
        booking.book_slot(booking_db, 999, make_patient().id, SLOT_DATE, time(10, 0), now=NOW)


@pytest.mark.parametrize(
    ('slot_date', 'slot_time'),
    [
        (SLOT_DATE, time(10, 15)),
        (SLOT_DATE, time(9, 30)),
        (SLOT_DATE, time(21, 0)),
        (date(2024, 6, 3), time(10, 0)),
    ],
)
def test_book_slot_rejects_slots_outside_window_grid_or_in_the_past(
    booking_db, make_doctor, make_patient, slot_date: date, slot_time: time
) -> None:
    doctor = make_doctor()

    with pytest.raises(errors.ValidationError):
        booking.book_slot(booking_db, doctor.id, make_patient().id, slot_date, slot_time, now=NOW)

    booking_db.refresh(doctor)
    assert doctor.slots_booked == {}


def test_cancel_booking_releases_slot(booking_db, make_doctor, make_patient) -> None:
    doctor = make_doctor()
    appointment = booking.book_slot(booking_db, doctor.id, make_patient().id, SLOT_DATE, time(10, 0), now=NOW)

    cancelled = booking.cancel_booking(booking_db, appointment.id)

    booking_db.refresh(doctor)
    assert cancelled.cancelled is True
    assert cancelled.status == 'cancelled'
    assert doctor.slots_booked == {}
    assert '10:00 AM' in _open_labels(booking_db, doctor.id)


def test_cancelled_slot_can_be_booked_again(booking_db, make_doctor, make_patient) -> None:
    doctor = make_doctor()
    first = booking.book_slot(booking_db, doctor.id, make_patient().id, SLOT_DATE, time(10, 0), now=NOW)
    booking.cancel_booking(booking_db, first.id)

    second = booking.book_slot(booking_db, doctor.id, make_patient().id, SLOT_DATE, time(10, 0), now=NOW)

    assert second.id != first.id
    assert booking_db.query(Appointment).count() == 2


def test_cancel_booking_twice_is_reported(booking_db, make_doctor, make_patient) -> None:
    doctor = make_doctor()
    appointment = booking.book_slot(booking_db, doctor.id, make_patient().id, SLOT_DATE, time(10, 0), now=NOW)
    booking.cancel_booking(booking_db, appointment.id)

    with pytest.raises(errors.InvalidTransitionError):
        booking.cancel_booking(booking_db, appointment.id)


def test_completed_appointment_cannot_be_cancelled_or_completed_again(booking_db, make_doctor, make_patient) -> None:
    doctor = make_doctor()
    appointment = booking.book_slot(booking_db, doctor.id, make_patient().id, SLOT_DATE, time(10, 0), now=NOW)

    completed = booking.complete_appointment(booking_db, appointment.id)
    assert completed.status == 'completed'

    with pytest.raises(errors.InvalidTransitionError):
        booking.cancel_booking(booking_db, appointment.id)
    with pytest.raises(errors.InvalidTransitionError):
        booking.complete_appointment(booking_db, appointment.id)

    booking_db.refresh(doctor)
    assert doctor.slots_booked == {'5_6_2024': ['10:00 AM']}


def test_cancel_booking_reports_missing_appointment(booking_db) -> None:
    with pytest.raises(errors.NotFoundError):
        booking.cancel_booking(booking_db, 404)


def test_mark_paid_sets_payment_without_touching_slots(booking_db, make_doctor, make_patient) -> None:
    doctor = make_doctor()
    appointment = booking.book_slot(booking_db, doctor.id, make_patient().id, SLOT_DATE, time(10, 0), now=NOW)

    paid = booking.mark_paid(booking_db, appointment.id)

    booking_db.refresh(doctor)
    assert paid.payment is True
    assert paid.status == 'pending'
    assert doctor.slots_booked == {'5_6_2024': ['10:00 AM']}


def test_mark_paid_rejects_cancelled_appointment(booking_db, make_doctor, make_patient) -> None:
    doctor = make_doctor()
    appointment = booking.book_slot(booking_db, doctor.id, make_patient().id, SLOT_DATE, time(10, 0), now=NOW)
    booking.cancel_booking(booking_db, appointment.id)

    with pytest.raises(errors.InvalidTransitionError):
        booking.mark_paid(booking_db, appointment.id)


def test_concurrent_bookings_for_one_slot_have_a_single_winner(
    session_factory, booking_db, make_doctor, make_patient
) -> None:
    doctor = make_doctor()
    patient_ids = [make_patient().id for _ in range(6)]
    barrier = threading.Barrier(len(patient_ids))
    outcomes: list[object] = []
    outcomes_lock = threading.Lock()

    def attempt(patient_id: int) -> None:
        db = session_factory()
        try:
            barrier.wait()
            try:
                result = booking.book_slot(db, doctor.id, patient_id, SLOT_DATE, time(10, 0), now=NOW)
            except errors.BookingError as exc:
                result = exc
        finally:
            db.close()
        with outcomes_lock:
            outcomes.append(result)

    threads = [threading.Thread(target=attempt, args=(patient_id,)) for patient_id in patient_ids]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)

    successes = [outcome for outcome in outcomes if isinstance(outcome, Appointment)]
    conflicts = [outcome for outcome in outcomes if isinstance(outcome, errors.ConflictError)]
    assert len(successes) == 1
    assert len(conflicts) == len(patient_ids) - 1

    booking_db.expire_all()
    assert booking_db.get(Doctor, doctor.id).slots_booked == {'5_6_2024': ['10:00 AM']}
    assert booking_db.query(Appointment).filter(Appointment.cancelled.is_(False)).count() == 1


def test_doctor_version_guards_against_stale_slot_writes(session_factory, make_doctor) -> None:
    doctor_id = make_doctor().id
    stale_factory = sessionmaker(bind=session_factory.kw['bind'], autoflush=False, expire_on_commit=False)

    stale_db = stale_factory()
    fresh_db = session_factory()
    try:
        stale_doctor = stale_db.get(Doctor, doctor_id)
        stale_db.commit()

        fresh_doctor = fresh_db.get(Doctor, doctor_id)
        fresh_doctor.slots_booked = {'5_6_2024': ['10:00 AM']}
        fresh_db.commit()

        stale_doctor.slots_booked = {'5_6_2024': ['10:30 AM']}
        with pytest.raises(StaleDataError):
            stale_db.commit()
    finally:
        stale_db.rollback()
        stale_db.close()
        fresh_db.close()


def test_book_slot_retries_after_losing_a_version_race(booking_db, make_doctor, make_patient, monkeypatch) -> None:
    doctor = make_doctor()
    check_day = booking._assert_day_consistent
    calls = {'count': 0}

    def lose_first_race(db, doctor_row, slot_date):
        calls['count'] += 1
        if calls['count'] == 1:
            raise StaleDataError('doctor row changed underneath us')
        check_day(db, doctor_row, slot_date)

    monkeypatch.setattr(booking, '_assert_day_consistent', lose_first_race)

    appointment = booking.book_slot(booking_db, doctor.id, make_patient().id, SLOT_DATE, time(10, 0), now=NOW)

    assert calls['count'] == 2
    assert appointment.id is not None
    assert booking_db.query(Appointment).count() == 1


def test_book_slot_gives_up_with_conflict_after_bounded_retries(
    booking_db, make_doctor, make_patient, monkeypatch
) -> None:
    doctor = make_doctor()
    calls = {'count': 0}

    def always_stale(db, doctor_row, slot_date):
        calls['count'] += 1
        raise StaleDataError('doctor row changed underneath us')

    monkeypatch.setattr(booking, '_assert_day_consistent', always_stale)
    monkeypatch.setattr(booking.config, 'BOOKING_MAX_ATTEMPTS', 3)

    with pytest.raises(errors.ConflictError):
        booking.book_slot(booking_db, doctor.id, make_patient().id, SLOT_DATE, time(10, 0), now=NOW)

    assert calls['count'] == 3
    booking_db.refresh(doctor)
    assert doctor.slots_booked == {}
    assert booking_db.query(Appointment).count() == 0


def test_book_slot_retries_when_the_active_slot_index_rejects_the_insert(
    booking_db, make_doctor, make_patient, monkeypatch
) -> None:
    doctor = make_doctor()
    check_day = booking._assert_day_consistent
    calls = {'count': 0}

    def lose_to_duplicate(db, doctor_row, slot_date):
        calls['count'] += 1
        if calls['count'] == 1:
            raise sa_exc.IntegrityError(
                'INSERT INTO appointments',
                {},
                Exception(
                    'UNIQUE constraint failed: '
                    'appointments.doctor_id, appointments.slot_date, appointments.slot_time'
                ),
            )
        check_day(db, doctor_row, slot_date)

    monkeypatch.setattr(booking, '_assert_day_consistent', lose_to_duplicate)

    appointment = booking.book_slot(booking_db, doctor.id, make_patient().id, SLOT_DATE, time(10, 0), now=NOW)

    assert calls['count'] == 2
    assert appointment.id is not None


def test_book_slot_reports_other_constraint_violations_without_retrying(
    booking_db, make_doctor, monkeypatch
) -> None:
    doctor = make_doctor()
    calls = {'count': 0}

    def missing_patient(db, doctor_row, slot_date):
        calls['count'] += 1
        raise sa_exc.IntegrityError(
            'INSERT INTO appointments',
            {},
            Exception('insert or update on table "appointments" violates foreign key constraint'),
        )

    monkeypatch.setattr(booking, '_assert_day_consistent', missing_patient)

    with pytest.raises(errors.ValidationError):
        booking.book_slot(booking_db, doctor.id, 9999, SLOT_DATE, time(10, 0), now=NOW)

    assert calls['count'] == 1
    booking_db.refresh(doctor)
    assert doctor.slots_booked == {}
    assert booking_db.query(Appointment).count() == 0


def test_is_active_slot_violation_reads_postgres_constraint_name() -> None:
    class _Diag:
        constraint_name = 'uq_appointments_active_slot'

    class _UniqueViolation(Exception):
        diag = _Diag()

    duplicate = sa_exc.IntegrityError('INSERT', {}, _UniqueViolation('duplicate key value'))
    foreign_key = sa_exc.IntegrityError('INSERT', {}, Exception('FOREIGN KEY constraint failed'))

    assert booking.is_active_slot_violation(duplicate)
    assert not booking.is_active_slot_violation(foreign_key)


def test_book_slot_maps_operational_errors_to_transient(booking_db, make_doctor, make_patient, monkeypatch) -> None:
    doctor = make_doctor()
    patient = make_patient()

    def locked(db, doctor_id):
        raise sa_exc.OperationalError('SELECT', {}, Exception('database is locked'))

    monkeypatch.setattr(booking, 'get_doctor', locked)

    with pytest.raises(errors.TransientError):
        booking.book_slot(booking_db, doctor.id, patient.id, SLOT_DATE, time(10, 0), now=NOW)


def test_inconsistent_day_is_rolled_back_and_halted(booking_db, make_doctor, make_patient) -> None:
    doctor = make_doctor(slots_booked={'5_6_2024': ['11:00 AM']})
    patient = make_patient()

    with pytest.raises(errors.IntegrityError):
        booking.book_slot(booking_db, doctor.id, patient.id, SLOT_DATE, time(10, 0), now=NOW)

    booking_db.expire_all()
    assert booking_db.get(Doctor, doctor.id).slots_booked == {'5_6_2024': ['11:00 AM']}
    assert booking_db.query(Appointment).count() == 0
    hold = booking_db.query(IntegrityHold).one()
    assert hold.doctor_id == doctor.id
    assert hold.slot_date == SLOT_DATE

    with pytest.raises(errors.IntegrityError):
        booking.book_slot(booking_db, doctor.id, patient.id, SLOT_DATE, time(12, 0), now=NOW)

    other_day = booking.book_slot(booking_db, doctor.id, patient.id, date(2024, 6, 6), time(10, 0), now=NOW)
    assert other_day.slot_date == date(2024, 6, 6)


def test_release_hold_requires_the_day_to_be_consistent(booking_db, make_doctor, make_patient) -> None:
    doctor = make_doctor(slots_booked={'5_6_2024': ['11:00 AM']})
    with pytest.raises(errors.IntegrityError):
        booking.book_slot(booking_db, doctor.id, make_patient().id, SLOT_DATE, time(10, 0), now=NOW)
    hold = booking_db.query(IntegrityHold).one()

    with pytest.raises(errors.IntegrityError):
        booking.release_hold(booking_db, hold.id)

    doctor = booking_db.get(Doctor, doctor.id)
    doctor.slots_booked = {}
    booking_db.commit()

    booking.release_hold(booking_db, hold.id)

    assert booking_db.query(IntegrityHold).count() == 0
    appointment = booking.book_slot(booking_db, doctor.id, make_patient().id, SLOT_DATE, time(10, 0), now=NOW)
    assert appointment.status == 'pending'
