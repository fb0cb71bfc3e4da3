from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from bson import ObjectId
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from passlib.context import CryptContext
from pymongo.errors import ConnectionFailure

import config
from database import get_optional_db
from errors import AuthenticationError, PermissionDeniedError, ServiceUnavailableError

security = HTTPBearer(auto_error=False)
password_ctx = CryptContext(schemes=["bcrypt"], deprecated="auto")
# Never returned to clients
PRIVATE_USER_FIELDS = {"passwordHash": 0, "emailVerificationCode": 0, "passwordResetCode": 0}


def hash_password(password: str) -> str:
    return password_ctx.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    try:
        return password_ctx.verify(password, hashed)
    except ValueError:
        return False


def is_admin(user: dict) -> bool:
    return bool(user.get("isAdmin")) or user.get("role") == "admin"


def create_token(user: dict) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user["_id"]),
        "email": user.get("email"),
        "is_admin": is_admin(user),
        "exp": now + timedelta(minutes=config.JWT_EXPIRES_MIN),
        "iat": now,
    }
    return jwt.encode(payload, config.JWT_SECRET, algorithm="HS256")


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, config.JWT_SECRET, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token expired")
    except jwt.InvalidTokenError:
        raise AuthenticationError("Invalid token")


def user_from_claims(payload: dict) -> dict:
    """Stand-in user built from the token alone, for degraded mode."""
    uid = payload["sub"]
    return {
        "_id": ObjectId(uid) if ObjectId.is_valid(uid) else uid,
        "email": payload.get("email"),
        "isAdmin": bool(payload.get("is_admin")),
        "role": "admin" if payload.get("is_admin") else "user",
        "isActive": True,
    }


def get_current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
                     db=Depends(get_optional_db)) -> dict:
    if credentials is None or not credentials.credentials:
        raise AuthenticationError("No token provided")
    payload = decode_token(credentials.credentials)
    uid = payload.get("sub")
    if not uid or not ObjectId.is_valid(uid):
        raise AuthenticationError("Invalid token")

    try:
        if db is None:
            raise ServiceUnavailableError()
        user = db["user"].find_one({"_id": ObjectId(uid)}, PRIVATE_USER_FIELDS)
    except (ServiceUnavailableError, ConnectionFailure):
        if config.DEGRADED_MODE:
            return user_from_claims(payload)
        raise

    if not user:
        raise AuthenticationError("User not found")
    if not user.get("isActive", True):
        raise AuthenticationError("User account is deactivated")
    return user


def get_current_admin(user: dict = Depends(get_current_user)) -> dict:
    if not is_admin(user):
        raise PermissionDeniedError("Admin privileges required")
    return user
