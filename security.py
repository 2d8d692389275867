"""
Password hashing, token issuance and the authenticated-user dependency.

Access and refresh tokens are HS256 JWTs. The access token is read from the
``Authorization: Bearer`` header or the ``accessToken`` cookie.
"""
import logging
from datetime import timedelta
from typing import Optional

from bson import ObjectId
from fastapi import Depends, Request
from jose import JWTError, jwt
from passlib.context import CryptContext

from config import settings
from database import is_object_id, utcnow
from errors import UnauthenticatedError
from repositories import Store, get_store

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    return pwd_context.verify(password, hashed)


def _encode(claims: dict, secret: str, expires: timedelta) -> str:
    payload = {**claims, "exp": utcnow() + expires}
    return jwt.encode(payload, secret, algorithm=settings.jwt_algorithm)


def create_access_token(user: dict) -> str:
    claims = {
        "sub": str(user["_id"]),
        "email": user.get("email"),
        "username": user.get("username"),
        "fullName": user.get("fullName"),
    }
    return _encode(claims, settings.access_token_secret, timedelta(minutes=settings.access_token_expire_minutes))


def create_refresh_token(user: dict) -> str:
    return _encode(
        {"sub": str(user["_id"])},
        settings.refresh_token_secret,
        timedelta(days=settings.refresh_token_expire_days),
    )


def decode_token(token: str, secret: str) -> ObjectId:
    """Return the user id a token was issued for."""
    try:
        payload = jwt.decode(token, secret, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        raise UnauthenticatedError("Invalid or expired token") from exc
    subject = payload.get("sub")
    if not is_object_id(subject):
        raise UnauthenticatedError("Invalid token subject")
    return ObjectId(subject)


def _bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("Authorization", "")
    if header.lower().startswith("bearer "):
        return header[7:].strip() or None
    return request.cookies.get("accessToken")


def get_current_user(request: Request, store: Store = Depends(get_store)) -> dict:
    token = _bearer_token(request)
    if not token:
        raise UnauthenticatedError("Unauthorized request")
    user = store.users.get_public(decode_token(token, settings.access_token_secret))
    if not user:
        raise UnauthenticatedError("Invalid access token")
    return user
