"""
Password hashing, JWT issue/verify and the FastAPI auth dependencies.
"""
import logging
import uuid
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Optional

import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from passlib.context import CryptContext

from cyberdefense.core.config import Settings, settings
from cyberdefense.core.deps import get_settings_dep, get_storage
from cyberdefense.core.errors import AuthenticationError, AuthorizationError
from cyberdefense.models.orm import User
from cyberdefense.models.schemas import TokenPayload
from cyberdefense.services.storage import Storage

logger = logging.getLogger(__name__)

bearer = HTTPBearer(auto_error=False)


@lru_cache
def password_context(rounds: int) -> CryptContext:
    """bcrypt context for a cost factor, built once per distinct setting."""
    return CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=rounds)


def hash_password(password: str, config: Optional[Settings] = None) -> str:
    config = config or settings
    return password_context(config.BCRYPT_ROUNDS).hash(password)


def verify_password(password: str, password_hash: Optional[str], config: Optional[Settings] = None) -> bool:
    if not password_hash:
        return False
    config = config or settings
    return password_context(config.BCRYPT_ROUNDS).verify(password, password_hash)


def _encode(user_id: str, email: str, token_type: str, ttl: timedelta, config: Settings) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "userId": user_id,
        "email": email,
        "type": token_type,
        "iat": int(now.timestamp()),
        "exp": int((now + ttl).timestamp()),
        "jti": uuid.uuid4().hex,
    }
    return jwt.encode(payload, config.SECRET_KEY.get_secret_value(), algorithm=config.ALGORITHM)


def generate_tokens(user_id: str, email: str, config: Optional[Settings] = None) -> dict:
    """Issue an access/refresh pair for the user."""
    config = config or settings
    return {
        "accessToken": _encode(user_id, email, "access",
                               timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES), config),
        "refreshToken": _encode(user_id, email, "refresh",
                                timedelta(days=config.REFRESH_TOKEN_EXPIRE_DAYS), config),
    }


def verify_token(token: str, config: Optional[Settings] = None) -> Optional[TokenPayload]:
    config = config or settings
    try:
        payload = jwt.decode(token, config.SECRET_KEY.get_secret_value(), algorithms=[config.ALGORITHM])
        return TokenPayload(user_id=payload["userId"], email=payload["email"], type=payload["type"])
    except (jwt.PyJWTError, KeyError, ValueError) as e:
        logger.warning(f"Token verification failed: {e}")
        return None


def extract_token_from_header(header: Optional[str]) -> Optional[str]:
    if not header or not header.startswith("Bearer "):
        return None
    return header[len("Bearer "):] or None


def get_current_user(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
    storage: Storage = Depends(get_storage),
    config: Settings = Depends(get_settings_dep),
) -> User:
    if creds is None:
        raise AuthenticationError("Access token required")
    payload = verify_token(creds.credentials, config)
    if payload is None or payload.type != "access":
        raise AuthenticationError("Invalid or expired token")
    user = storage.get_user(payload.user_id)
    if user is None:
        raise AuthenticationError("User not found")
    return user


def get_optional_user(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
    storage: Storage = Depends(get_storage),
    config: Settings = Depends(get_settings_dep),
) -> Optional[User]:
    if creds is None:
        return None
    payload = verify_token(creds.credentials, config)
    if payload is None or payload.type != "access":
        return None
    return storage.get_user(payload.user_id)


def is_admin(user: User, config: Settings) -> bool:
    return config.ADMIN_EMAIL_MARKER in (user.email or "").lower()


def require_admin(
    user: User = Depends(get_current_user),
    config: Settings = Depends(get_settings_dep),
) -> User:
    if not is_admin(user, config):
        raise AuthorizationError("Admin access required")
    return user
