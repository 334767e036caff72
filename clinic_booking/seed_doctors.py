"""Replace all doctors with a small set of demo profiles.

All appointments and integrity holds are deleted in the same transaction, so
the new doctors start with no bookings.

Usage:
    python -m clinic_booking.seed_doctors
"""
import logging
import sys

from sqlalchemy.exc import SQLAlchemyError
from werkzeug.security import generate_password_hash

from clinic_booking.database import Base, SessionLocal, engine
from clinic_booking.models import user  # noqa: F401
from clinic_booking.models.appointment import Appointment
from clinic_booking.models.doctor import Doctor
from clinic_booking.models.integrity_hold import IntegrityHold

logger = logging.getLogger(__name__)

DEMO_DOCTORS = [
    {
        'name': 'Dr. Ayesha Rahman',
        'email': 'ayesha.rahman@clinic-demo.org',
        'password': 'ayesha-demo-1',
        'image': 'https://randomuser.me/api/portraits/women/1.jpg',
        'speciality': 'General physician',
        'degree': 'MBBS',
        'experience': '5 years',
        'about': 'Experienced general physician.',
        'available': True,
        'fees': 500,
        'address': {'line1': '123 Main St', 'line2': 'Dhaka'},
    },
    {
        'name': 'Dr. Shafiur Islam',
        'email': 'shafiur.islam@clinic-demo.org',
        'password': 'shafiur-demo-2',
        'image': 'https://randomuser.me/api/portraits/men/2.jpg',
        'speciality': 'Dermatologist',
        'degree': 'MD Dermatology',
        'experience': '8 years',
        'about': 'Specialist in skin diseases.',
        'available': False,
        'fees': 700,
        'address': {'line1': '456 Lake Rd', 'line2': 'Chittagong'},
    },
    {
        'name': 'Dr. Nusrat Jahan',
        'email': 'nusrat.jahan@clinic-demo.org',
        'password': 'nusrat-demo-3',
        'image': 'https://randomuser.me/api/portraits/women/3.jpg',
        'speciality': 'Gynecologist',
        'degree': 'MBBS, MS',
        'experience': '10 years',
        'about': "Expert in women's health.",
        'available': True,
        'fees': 800,
        'address': {'line1': '789 Hill St', 'line2': 'Sylhet'},
    },
]


def seed(session_factory=SessionLocal) -> int:
    db = session_factory()
    try:
        # Freed doctor ids are reused, so bookings go with their doctors.
        removed_appointments = db.query(Appointment).delete(synchronize_session=False)
        db.query(IntegrityHold).delete(synchronize_session=False)
        removed_doctors = db.query(Doctor).delete(synchronize_session=False)

        for profile in DEMO_DOCTORS:
            fields = {key: value for key, value in profile.items() if key != 'password'}
            db.add(Doctor(
                **fields,
                hashed_password=generate_password_hash(profile['password']),
                slots_booked={},
            ))
        db.commit()
        logger.info(
            'Replaced %s doctors (%s appointments removed) with %s demo doctors',
            removed_doctors, removed_appointments, len(DEMO_DOCTORS),
        )
    except SQLAlchemyError:
        db.rollback()
        raise
    finally:
        db.close()
    return len(DEMO_DOCTORS)


def main() -> None:
    logging.basicConfig(level=logging.INFO)
    try:
        Base.metadata.create_all(bind=engine)
        count = seed()
    except SQLAlchemyError:
        logger.exception('Seeding doctors failed')
        sys.exit(1)
    print(f'{count} doctors seeded successfully!')


if __name__ == '__main__':
    main()
