from dataclasses import dataclass
from datetime import datetime, timedelta

import bcrypt
import pyotp
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.orm import Session

import config
import models
from database import get_db

STAFF_ROLES = {"staff", "admin"}

bearer = HTTPBearer(auto_error=False)


@dataclass
class Caller:
    """The authenticated user behind a request."""

    user_id: str
    email: str
    role: str
    display_name: str

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def hash_password(raw_value: str) -> str:
    return bcrypt.hashpw(raw_value.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(raw_value: str, hashed_value: str) -> bool:
    return bcrypt.checkpw(raw_value.encode("utf-8"), hashed_value.encode("utf-8"))


def create_access_token(data: dict, expires_delta: timedelta | None = None):
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.utcnow() + expires_delta
    else:
        expire = datetime.utcnow() + timedelta(minutes=15)
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, config.SECRET_KEY, algorithm=config.ALGORITHM)


def token_for(user: models.User) -> str:
    return create_access_token(
        data={"sub": user.id, "role": user.role},
        expires_delta=timedelta(hours=config.ACCESS_TOKEN_HOURS),
    )


def validate_totp(secret: str, otp: str | None) -> bool:
    if not otp:
        return False
    totp = pyotp.TOTP(secret)
    return totp.verify(otp, valid_window=1)


def get_caller(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer),
    db: Session = Depends(get_db),
) -> Caller:
    if credentials is None:
        raise HTTPException(status_code=401, detail="Missing bearer token")
    try:
        payload = jwt.decode(credentials.credentials, config.SECRET_KEY, algorithms=[config.ALGORITHM])
    except JWTError as exc:
        raise HTTPException(status_code=401, detail="Token expired or invalid") from exc

    user_id: str | None = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Token expired or invalid")
    user = db.query(models.User).filter(models.User.id == user_id).first()
    if not user or not user.is_active:
        raise HTTPException(status_code=401, detail="User not authenticated")
    return Caller(user_id=user.id, email=user.email, role=user.role, display_name=user.display_name)


def require_staff(caller: Caller = Depends(get_caller)) -> Caller:
    if not caller.is_staff:
        raise HTTPException(status_code=403, detail="Staff access required")
    return caller


def require_admin(caller: Caller = Depends(get_caller)) -> Caller:
    if not caller.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return caller
