import hmac
import logging
from datetime import date

import jwt
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status
from pydantic import BaseModel, EmailStr, HttpUrl, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from werkzeug.security import check_password_hash, generate_password_hash

from clinic_booking.auth import jwt_handler
from clinic_booking.auth.dependencies import get_current_patient, get_token_payload
from clinic_booking.core import config
from clinic_booking.models.doctor import Doctor
from clinic_booking.models.user import User
from clinic_booking.routes.common import database_unavailable, ensure_database_ready, get_db
from clinic_booking.routes.schemas import Address, PatientProfileResponse
from clinic_booking.services import notifications

router = APIRouter(tags=['auth'])

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 8
GENDER_OPTIONS = ('Not Selected', 'Male', 'Female')
RESET_REQUESTED_MESSAGE = 'If an account exists for that email, a reset link has been sent.'


def _validate_password(value: str) -> str:
    if len(value) < MIN_PASSWORD_LENGTH:
        raise ValueError(f'Password must be at least {MIN_PASSWORD_LENGTH} characters.')
    return value


class RegisterRequest(BaseModel):
    name: str
    email: EmailStr
    password: str
    phone: str | None = None

    @field_validator('name')
    @classmethod
    def validate_name(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('Name is required.')
        return normalized

    @field_validator('email')
    @classmethod
    def normalize_email(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator('password')
    @classmethod
    def validate_password(cls, value: str) -> str:
        return _validate_password(value)


class LoginRequest(BaseModel):
    email: str
    password: str

    @field_validator('email')
    @classmethod
    def normalize_email(cls, value: str) -> str:
        return value.strip().lower()


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = 'bearer'
    role: str


class ForgotPasswordRequest(BaseModel):
    email: EmailStr

    @field_validator('email')
    @classmethod
    def normalize_email(cls, value: str) -> str:
        return value.strip().lower()


class ResetPasswordRequest(BaseModel):
    password: str

    @field_validator('password')
    @classmethod
    def validate_password(cls, value: str) -> str:
        return _validate_password(value)


class MessageResponse(BaseModel):
    message: str


class UpdatePatientProfileRequest(BaseModel):
    name: str | None = None
    phone: str | None = None
    address: Address | None = None
    gender: str | None = None
    dob: date | None = None
    image: HttpUrl | None = None

    @field_validator('name')
    @classmethod
    def validate_name(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        if not normalized:
            raise ValueError('Name is required.')
        return normalized

    @field_validator('phone')
    @classmethod
    def normalize_phone(cls, value: str | None) -> str | None:
        return value.strip() if value is not None else None

    @field_validator('gender')
    @classmethod
    def validate_gender(cls, value: str | None) -> str | None:
        if value is not None and value not in GENDER_OPTIONS:
            raise ValueError(f"Gender must be one of: {', '.join(GENDER_OPTIONS)}.")
        return value

    @field_validator('dob')
    @classmethod
    def validate_dob(cls, value: date | None) -> date | None:
        if value is not None and value > date.today():
            raise ValueError('Date of birth cannot be in the future.')
        return value


def _invalid_credentials() -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail='Invalid credentials')


@router.post('/register', response_model=TokenResponse, status_code=status.HTTP_201_CREATED)
def register(data: RegisterRequest, db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        if db.query(User).filter(User.email == data.email).first():
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail='Email already in use')

        user = User(
            name=data.name,
            email=data.email,
            hashed_password=generate_password_hash(data.password),
            phone=data.phone,
        )
        db.add(user)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    logger.info('Patient registered: %s', data.email)
    return TokenResponse(access_token=jwt_handler.create_access_token(data.email, 'patient'), role='patient')


@router.post('/login', response_model=TokenResponse)
def login(data: LoginRequest, db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        user = db.query(User).filter(User.email == data.email).first()
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc

    if user is None or not user.hashed_password or not check_password_hash(user.hashed_password, data.password):
        raise _invalid_credentials()

    return TokenResponse(access_token=jwt_handler.create_access_token(user.email, 'patient'), role='patient')


@router.post('/doctor/login', response_model=TokenResponse)
def doctor_login(data: LoginRequest, db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        doctor = db.query(Doctor).filter(Doctor.email == data.email).first()
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc

    if doctor is None or not check_password_hash(doctor.hashed_password, data.password):
        raise _invalid_credentials()

    return TokenResponse(access_token=jwt_handler.create_access_token(doctor.email, 'doctor'), role='doctor')


@router.post('/admin/login', response_model=TokenResponse)
def admin_login(data: LoginRequest):
    logger.info('Admin login attempt with email: %s', data.email)

    if not config.ADMIN_EMAIL or not config.ADMIN_PASSWORD:
        logger.warning('Admin login refused: ADMIN_EMAIL/ADMIN_PASSWORD are not configured')
        raise _invalid_credentials()

    email_matches = hmac.compare_digest(data.email.encode(), config.ADMIN_EMAIL.encode())
    password_matches = hmac.compare_digest(data.password.encode(), config.ADMIN_PASSWORD.encode())
    if not (email_matches and password_matches):
        logger.info('Admin login failed: invalid credentials')
        raise _invalid_credentials()

    return TokenResponse(access_token=jwt_handler.create_access_token(data.email, 'admin'), role='admin')


@router.get('/me')
def me(payload: dict = Depends(get_token_payload)):
    return {'email': payload['sub'], 'role': payload.get('role')}


@router.get('/me/profile', response_model=PatientProfileResponse)
def patient_profile(current_user: User = Depends(get_current_patient)):
    ensure_database_ready()
    return current_user


@router.patch('/me/profile', response_model=PatientProfileResponse)
def update_patient_profile(
    data: UpdatePatientProfileRequest,
    current_user: User = Depends(get_current_patient),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        user = db.get(User, current_user.id)
        if user is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='User not found.')

        if data.name is not None:
            user.name = data.name
        if data.phone is not None:
            user.phone = data.phone
        if data.address is not None:
            user.address = data.address.model_dump()
        if data.gender is not None:
            user.gender = data.gender
        if data.dob is not None:
            user.dob = data.dob
        if data.image is not None:
            user.image = str(data.image)

        db.commit()
        db.refresh(user)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    logger.info('Patient %s updated their profile', user.id)
    return user


@router.post('/forgot-password', response_model=MessageResponse)
def forgot_password(
    data: ForgotPasswordRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        user = db.query(User).filter(User.email == data.email).first()
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc

    # Same answer either way so the endpoint does not reveal which emails exist.
    if user is None or not user.hashed_password:
        logger.info('Password reset requested for unknown email: %s', data.email)
        return MessageResponse(message=RESET_REQUESTED_MESSAGE)

    token = jwt_handler.create_password_reset_token(user.email, user.hashed_password)
    reset_url = f"{config.FRONTEND_URL.rstrip('/')}/reset-password/{token}"
    background_tasks.add_task(notifications.send_password_reset, user.name, user.email, reset_url)
    logger.info('Password reset link queued for %s', user.email)

    return MessageResponse(message=RESET_REQUESTED_MESSAGE)


@router.post('/reset-password/{token}', response_model=MessageResponse)
def reset_password(token: str, data: ResetPasswordRequest, db: Session = Depends(get_db)):
    ensure_database_ready()

    invalid_link = HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Invalid or expired reset link')
    try:
        payload = jwt_handler.decode_password_reset_token(token)
    except jwt.PyJWTError as exc:
        raise invalid_link from exc

    try:
        user = db.query(User).filter(User.email == payload['sub']).first()
        if (
            user is None
            or not user.hashed_password
            or jwt_handler.password_fingerprint(user.hashed_password) != payload.get('pwd')
        ):
            raise invalid_link

        user.hashed_password = generate_password_hash(data.password)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    logger.info('Password reset completed for %s', user.email)
    return MessageResponse(message='Password reset successful. You can now log in.')
