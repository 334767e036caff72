import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError

from clinic_booking.core import config
from clinic_booking.database import (
    Base,
    engine,
    ensure_appointment_schema,
    ensure_doctor_schema,
    ensure_user_schema,
)
from clinic_booking.models import appointment, doctor, integrity_hold, user  # noqa: F401
from clinic_booking.routes import admin_routes, appointment_routes, auth_routes, doctor_routes

logging.basicConfig(
    level=config.LOG_LEVEL,
    format='%(asctime)s %(levelname)s [%(name)s] %(message)s',
)

config.validate_runtime_config()

app = FastAPI(title='Clinic Booking API')

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*'],
)

logger = logging.getLogger(__name__)


@app.on_event('startup')
def initialize_database() -> None:
    try:
        Base.metadata.create_all(bind=engine)
        ensure_doctor_schema()
        ensure_appointment_schema()
        ensure_user_schema()
    except SQLAlchemyError:
        logger.exception('Database initialization failed. Check DATABASE_URL and database credentials.')


@app.get('/')
def root():
    return {'status': 'Clinic Booking API Running'}


app.include_router(auth_routes.router, prefix='/auth')
app.include_router(doctor_routes.router, prefix='/doctors')
app.include_router(appointment_routes.router, prefix='/appointments')
app.include_router(admin_routes.router, prefix='/admin')
