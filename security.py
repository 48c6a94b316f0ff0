from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from pymongo.database import Database

from config import settings
from database import get_db, oid
from errors import AuthenticationError, AuthorizationError
from logging_config import get_logger

logger = get_logger("security")

# Auth utils
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login/student")


def verify_password(plain_password, hashed_password):
    if not plain_password or not hashed_password:
        return False
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password):
    return pwd_context.hash(password)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_token(token: str) -> dict:
    """Verify a token and return its claims; the role claim is mandatory"""
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        raise AuthenticationError()
    if not payload.get("sub") or payload.get("role") not in ("student", "driver", "management"):
        raise AuthenticationError()
    return payload


def get_current_user(token: str = Depends(oauth2_scheme), db: Database = Depends(get_db)) -> dict:
    payload = decode_token(token)
    role = payload["role"]
    if role == "management":
        # Management logs in with configured credentials and has no user document
        return {"id": payload["sub"], "role": role, "name": payload.get("name", "Admin")}

    user = db["user"].find_one({"_id": oid(payload["sub"]), "role": role})
    if not user:
        raise AuthenticationError()
    current = {
        "id": str(user["_id"]),
        "role": role,
        "name": user.get("name"),
        "email": user.get("email"),
    }
    if role == "student":
        current["studentId"] = user.get("studentId")
        current["department"] = user.get("department")
    if role == "driver":
        current["busId"] = payload.get("busId")
    return current


def require_role(role: str):
    def dependency(current_user: dict = Depends(get_current_user)) -> dict:
        if current_user["role"] != role:
            logger.warning(f"{current_user['role']} {current_user['id']} denied {role}-only resource")
            raise AuthorizationError(f"Access denied. {role.capitalize()} access only")
        return current_user
    return dependency


require_student = require_role("student")
require_driver = require_role("driver")
require_management = require_role("management")
