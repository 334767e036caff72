from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from clinic_booking.auth import jwt_handler
from clinic_booking.database import SessionLocal
from clinic_booking.models.doctor import Doctor
from clinic_booking.models.user import User

security = HTTPBearer()


def get_token_payload(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> dict:
    token = credentials.credentials
    try:
        payload = jwt_handler.decode_access_token(token)
    except Exception as exc:
        raise HTTPException(status_code=401, detail="Invalid token") from exc

    if not payload.get("sub"):
        raise HTTPException(status_code=401, detail="Invalid token subject")
    return payload


def _require_role(payload: dict, role: str) -> str:
    if payload.get("role") != role:
        raise HTTPException(status_code=403, detail=f"{role.capitalize()} access required")
    return payload["sub"]


def get_current_patient(payload: dict = Depends(get_token_payload)) -> User:
    email = _require_role(payload, "patient")

    db = SessionLocal()
    try:
        user = db.query(User).filter(User.email == email).first()
    finally:
        db.close()
    if user is None:
        raise HTTPException(status_code=401, detail="User not found")
    return user


def get_current_doctor(payload: dict = Depends(get_token_payload)) -> Doctor:
    email = _require_role(payload, "doctor")

    db = SessionLocal()
    try:
        doctor = db.query(Doctor).filter(Doctor.email == email).first()
    finally:
        db.close()
    if doctor is None:
        raise HTTPException(status_code=401, detail="Doctor not found")
    return doctor


def require_admin(payload: dict = Depends(get_token_payload)) -> str:
    return _require_role(payload, "admin")
