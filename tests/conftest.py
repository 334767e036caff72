import os

os.environ.setdefault('DATABASE_URL', 'sqlite:///./test.db')

from datetime import time  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from werkzeug.security import generate_password_hash  # noqa: E402

from clinic_booking.database import Base, build_engine  # noqa: E402
from clinic_booking.models.appointment import Appointment  # noqa: E402
from clinic_booking.models.doctor import Doctor  # noqa: E402
from clinic_booking.models.integrity_hold import IntegrityHold  # noqa: E402
from clinic_booking.models.user import User  # noqa: E402

TABLES = [User.__table__, Doctor.__table__, Appointment.__table__, IntegrityHold.__table__]
ROUTE_MODULES = (
    'clinic_booking.routes.admin_routes',
    'clinic_booking.routes.appointment_routes',
    'clinic_booking.routes.auth_routes',
    'clinic_booking.routes.doctor_routes',
)


@pytest.fixture
def session_factory(tmp_path):
    # File-backed so that several sessions (and threads) can hold their own connections.
    engine = build_engine(f"sqlite:///{tmp_path / 'booking.db'}")
    Base.metadata.create_all(bind=engine, tables=TABLES)
    try:
        yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    finally:
        Base.metadata.drop_all(bind=engine, tables=list(reversed(TABLES)))
        engine.dispose()


@pytest.fixture
def booking_db(session_factory):
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def make_doctor(booking_db):
    created = {'count': 0}

    def _make_doctor(**overrides) -> Doctor:
        created['count'] += 1
        fields = {
            'name': f"Dr. Test {created['count']}",
            'email': f"doctor{created['count']}@clinic-mail.org",
            'hashed_password': generate_password_hash('doctor-password'),
            'speciality': 'General physician',
            'degree': 'MBBS',
            'experience': '4 years',
            'about': 'Test doctor.',
            'fees': 500,
            'address': {'line1': '1 Clinic Rd', 'line2': 'Dhaka'},
            'available': True,
            'window_start': time(10, 0),
            'window_end': time(21, 0),
            'slots_booked': {},
        }
        fields.update(overrides)
        doctor = Doctor(**fields)
        booking_db.add(doctor)
        booking_db.commit()
        booking_db.refresh(doctor)
        return doctor

    return _make_doctor


@pytest.fixture
def make_patient(booking_db):
    created = {'count': 0}

    def _make_patient(**overrides) -> User:
        created['count'] += 1
        fields = {
            'name': f"Patient {created['count']}",
            'email': f"patient{created['count']}@clinic-mail.org",
            'hashed_password': generate_password_hash('patient-password'),
        }
        fields.update(overrides)
        patient = User(**fields)
        booking_db.add(patient)
        booking_db.commit()
        booking_db.refresh(patient)
        return patient

    return _make_patient


@pytest.fixture
def skip_schema_checks(monkeypatch: pytest.MonkeyPatch) -> None:
    for module_name in ROUTE_MODULES:
        monkeypatch.setattr(f'{module_name}.ensure_database_ready', lambda: None)
