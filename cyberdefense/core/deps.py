from fastapi import Request

from cyberdefense.core.config import Settings
from cyberdefense.services.achievements import AchievementService
from cyberdefense.services.notifications import NotificationManager
from cyberdefense.services.storage import Storage


def get_settings_dep(request: Request) -> Settings:
    return request.app.state.settings


def get_storage(request: Request) -> Storage:
    return request.app.state.storage


def get_achievement_service(request: Request) -> AchievementService:
    return request.app.state.achievements


def get_notifier(request: Request) -> NotificationManager:
    return request.app.state.notifier
