import logging
import uuid

from fastapi import APIRouter, Depends, status

from cyberdefense.api.common import ok
from cyberdefense.core.auth import generate_tokens, get_current_user, hash_password, verify_password, verify_token
from cyberdefense.core.config import Settings
from cyberdefense.core.deps import get_achievement_service, get_settings_dep, get_storage
from cyberdefense.core.errors import AuthenticationError, ConflictError
from cyberdefense.models.orm import User, utcnow
from cyberdefense.models.schemas import LoginRequest, RefreshTokenRequest, RegisterRequest, UserOut
from cyberdefense.services.achievements import AchievementService
from cyberdefense.services.storage import Storage

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/register", status_code=status.HTTP_201_CREATED)
def register(
    req: RegisterRequest,
    storage: Storage = Depends(get_storage),
    config: Settings = Depends(get_settings_dep),
):
    if storage.get_user_by_email(req.email):
        raise ConflictError("User with this email already exists")

    user = storage.upsert_user({
        "id": uuid.uuid4().hex,
        "email": req.email,
        "first_name": req.first_name,
        "last_name": req.last_name,
        "password_hash": hash_password(req.password, config),
        "xp": 0,
        "streak": 0,
        "last_activity": None,
    })
    tokens = generate_tokens(user.id, user.email, config)
    storage.store_refresh_token(user.id, tokens["refreshToken"])
    logger.info(f"Registered user {user.id}", extra={"user_id": user.id})
    return ok({"user": UserOut.model_validate(user), "tokens": tokens}, "User registered successfully")


@router.post("/login")
def login(
    req: LoginRequest,
    storage: Storage = Depends(get_storage),
    achievements: AchievementService = Depends(get_achievement_service),
    config: Settings = Depends(get_settings_dep),
):
    user = storage.get_user_by_email(req.email)
    if user is None or not verify_password(req.password, user.password_hash, config):
        raise AuthenticationError("Invalid email or password")

    tokens = generate_tokens(user.id, user.email, config)
    storage.store_refresh_token(user.id, tokens["refreshToken"])
    user = achievements.update_user_streak(user.id) or user
    achievements.check_and_award_achievements(user.id)
    logger.info(f"User {user.id} logged in", extra={"user_id": user.id})
    return ok({"user": UserOut.model_validate(user), "tokens": tokens}, "Login successful")


@router.post("/refresh")
def refresh(
    req: RefreshTokenRequest,
    storage: Storage = Depends(get_storage),
    config: Settings = Depends(get_settings_dep),
):
    payload = verify_token(req.refresh_token, config)
    if payload is None or payload.type != "refresh":
        raise AuthenticationError("Invalid refresh token")

    stored = storage.get_refresh_token(req.refresh_token)
    if stored is None:
        raise AuthenticationError("Refresh token not found")
    if stored.expires_at < utcnow():
        storage.delete_refresh_token(req.refresh_token)
        raise AuthenticationError("Refresh token expired")

    user = storage.get_user(payload.user_id)
    if user is None:
        raise AuthenticationError("User not found")

    tokens = generate_tokens(user.id, user.email, config)
    storage.delete_refresh_token(req.refresh_token)
    storage.store_refresh_token(user.id, tokens["refreshToken"])
    return ok({"tokens": tokens}, "Tokens refreshed successfully")


@router.post("/logout")
def logout(req: RefreshTokenRequest, storage: Storage = Depends(get_storage)):
    storage.delete_refresh_token(req.refresh_token)
    return ok(message="Logout successful")


@router.get("/me")
def me(user: User = Depends(get_current_user)):
    return ok({"user": UserOut.model_validate(user)})
