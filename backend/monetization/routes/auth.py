from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt

from ..config import settings
from ..database import fetch_one
from ..errors import AuthorizationFailed, Forbidden, NotFound


oauth2_scheme = OAuth2PasswordBearer(tokenUrl="auth/login", auto_error=False)

ACCESS_TOKEN_TTL = timedelta(days=1)


def create_access_token(user_id: str, expires_in: timedelta = ACCESS_TOKEN_TTL) -> str:
    expires_at = datetime.now(timezone.utc) + expires_in
    payload = {"sub": str(user_id), "exp": int(expires_at.timestamp())}
    return jwt.encode(payload, settings.effective_jwt_secret, algorithm=settings.jwt_algorithm)


def get_current_user(token: str | None = Depends(oauth2_scheme)) -> dict[str, Any]:
    if not token:
        raise AuthorizationFailed("No token provided")
    try:
        payload = jwt.decode(token, settings.effective_jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        raise AuthorizationFailed("Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise AuthorizationFailed("Invalid token")

    user = fetch_one("users", user_id)
    if user is None:
        raise NotFound("User not found")
    return user


def is_creator(user: dict[str, Any]) -> bool:
    return user.get("role") in {"creator", "admin"} or bool(user.get("has_channel"))


def require_admin(current_user: dict[str, Any] = Depends(get_current_user)) -> dict[str, Any]:
    if current_user.get("role") != "admin":
        raise Forbidden("Admin access required")
    return current_user


def require_creator(current_user: dict[str, Any] = Depends(get_current_user)) -> dict[str, Any]:
    if not is_creator(current_user):
        raise Forbidden("Creator access required")
    return current_user
