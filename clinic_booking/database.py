from threading import Lock

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from clinic_booking.core import config


def build_engine(url: str, **kwargs) -> Engine:
    if not url.startswith('sqlite'):
        return create_engine(url, pool_pre_ping=True, **kwargs)

    connect_args = kwargs.pop('connect_args', {})
    connect_args.setdefault('check_same_thread', False)
    connect_args.setdefault('timeout', config.SQLITE_BUSY_TIMEOUT_SECONDS)
    # Reads run outside a transaction and BEGIN is issued before the first write,
    # so concurrent writers queue on the busy timeout instead of deadlocking.
    return create_engine(url, connect_args=connect_args, **kwargs)


engine = build_engine(config.DATABASE_URL, echo=config.DATABASE_ECHO)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)

Base = declarative_base()

_schema_lock = Lock()
_doctor_schema_checked = False
_appointment_schema_checked = False
_user_schema_checked = False


def ensure_doctor_schema() -> None:
    global _doctor_schema_checked

    if _doctor_schema_checked:
        return

    with _schema_lock:
        if _doctor_schema_checked:
            return

        inspector = inspect(engine)

        if 'doctors' not in inspector.get_table_names():
            _doctor_schema_checked = True
            return

        existing_columns = {column['name'] for column in inspector.get_columns('doctors')}
        migration_steps = [
            ('window_start', 'ALTER TABLE doctors ADD COLUMN window_start TIME'),
            ('window_end', 'ALTER TABLE doctors ADD COLUMN window_end TIME'),
            ('version_id', 'ALTER TABLE doctors ADD COLUMN version_id INTEGER DEFAULT 1'),
        ]

        with engine.begin() as connection:
            for column_name, statement in migration_steps:
                if column_name not in existing_columns:
                    connection.execute(text(statement))
            connection.execute(text('UPDATE doctors SET version_id = 1 WHERE version_id IS NULL'))
            connection.execute(
                text('CREATE INDEX IF NOT EXISTS idx_doctors_speciality ON doctors(speciality)')
            )

        _doctor_schema_checked = True


def ensure_appointment_schema() -> None:
    global _appointment_schema_checked

    if _appointment_schema_checked:
        return

    with _schema_lock:
        if _appointment_schema_checked:
            return

        inspector = inspect(engine)

        if 'appointments' not in inspector.get_table_names():
            _appointment_schema_checked = True
            return

        existing_columns = {column['name'] for column in inspector.get_columns('appointments')}
        migration_steps = [
            ('payment', 'ALTER TABLE appointments ADD COLUMN payment BOOLEAN DEFAULT false'),
            ('amount', 'ALTER TABLE appointments ADD COLUMN amount INTEGER'),
        ]

        with engine.begin() as connection:
            for column_name, statement in migration_steps:
                if column_name not in existing_columns:
                    connection.execute(text(statement))
            connection.execute(
                text(
                    'CREATE UNIQUE INDEX IF NOT EXISTS uq_appointments_active_slot '
                    'ON appointments(doctor_id, slot_date, slot_time) WHERE cancelled = false'
                )
            )
            connection.execute(
                text('CREATE INDEX IF NOT EXISTS idx_appointments_patient ON appointments(patient_id, created_at)')
            )

        _appointment_schema_checked = True


def ensure_user_schema() -> None:
    global _user_schema_checked

    if _user_schema_checked:
        return

    with _schema_lock:
        if _user_schema_checked:
            return

        inspector = inspect(engine)

        if 'users' not in inspector.get_table_names():
            _user_schema_checked = True
            return

        existing_columns = {column['name'] for column in inspector.get_columns('users')}
        migration_steps = [
            ('address', 'ALTER TABLE users ADD COLUMN address JSON'),
            ('gender', "ALTER TABLE users ADD COLUMN gender VARCHAR DEFAULT 'Not Selected'"),
            ('dob', 'ALTER TABLE users ADD COLUMN dob DATE'),
            ('image', 'ALTER TABLE users ADD COLUMN image VARCHAR'),
        ]

        with engine.begin() as connection:
            for column_name, statement in migration_steps:
                if column_name not in existing_columns:
                    connection.execute(text(statement))

        _user_schema_checked = True
