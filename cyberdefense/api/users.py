import logging
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends

from cyberdefense.api.common import domain_with_progress, ensure_self, leaderboard_entries, ok, scenario_with_domain
from cyberdefense.core.auth import generate_tokens, get_current_user
from cyberdefense.core.config import Settings
from cyberdefense.core.deps import get_achievement_service, get_notifier, get_settings_dep, get_storage
from cyberdefense.core.errors import ConflictError, NotFoundError, ValidationError
from cyberdefense.models.orm import User
from cyberdefense.models.schemas import (
    EarnedAchievement,
    ProgressOut,
    UpdateProgressRequest,
    UpdateScenarioRequest,
    UpdateUserRequest,
    UserOut,
    UserScenarioOut,
)
from cyberdefense.services.achievements import AchievementService, CompletionResult
from cyberdefense.services.notifications import NotificationManager
from cyberdefense.services.storage import Storage

logger = logging.getLogger(__name__)

router = APIRouter()


def _load_user(storage: Storage, user_id: str) -> User:
    user = storage.get_user(user_id)
    if user is None:
        raise NotFoundError("User not found")
    return user


def earned_achievements(storage: Storage, user_id: str, limit: Optional[int] = None) -> List[EarnedAchievement]:
    by_id = {a.id: a for a in storage.get_all_achievements()}
    earned = storage.get_user_achievements(user_id)
    if limit is not None:
        earned = earned[:limit]
    out = []
    for ua in earned:
        a = by_id.get(ua.achievement_id)
        out.append(EarnedAchievement(
            achievement_id=ua.achievement_id,
            earned_at=ua.earned_at,
            name=a.name if a else None,
            description=a.description if a else None,
            icon=a.icon if a else None,
            xp_reward=a.xp_reward if a else None,
        ))
    return out


def schedule_completion_notifications(
    background: BackgroundTasks,
    notifier: NotificationManager,
    user_id: str,
    result: CompletionResult,
    leaderboard: Optional[list] = None,
) -> None:
    """Queue the WebSocket pushes for a completion; they run after the response is sent."""
    if result.newly_completed:
        background.add_task(notifier.notify_scenario_completed, user_id, {
            "scenarioId": result.scenario.id,
            "title": result.scenario.title,
            "score": result.user_scenario.score,
            "xpEarned": result.xp_awarded,
            "totalXP": result.user.xp if result.user else None,
        })
    if result.progress is not None:
        background.add_task(notifier.notify_progress_update, user_id, ProgressOut.model_validate(result.progress))
    for achievement in result.achievements:
        background.add_task(notifier.notify_achievement_earned, user_id, {
            "id": achievement.id,
            "name": achievement.name,
            "description": achievement.description,
            "icon": achievement.icon,
            "xpReward": achievement.xp_reward,
        })
    if result.xp_awarded and leaderboard is not None:
        background.add_task(notifier.notify_leaderboard_update, leaderboard)


def completion_payload(result: CompletionResult) -> dict:
    return {
        "userScenario": UserScenarioOut.model_validate(result.user_scenario),
        "xpEarned": result.xp_awarded,
        "totalXP": result.user.xp if result.user else None,
        "domainProgress": result.progress.progress if result.progress else None,
        "newAchievements": [
            {"id": a.id, "name": a.name, "icon": a.icon, "xpReward": a.xp_reward}
            for a in result.achievements
        ],
    }


@router.get("/{user_id}/dashboard")
def dashboard(user_id: str, current: User = Depends(get_current_user), storage: Storage = Depends(get_storage)):
    ensure_self(current, user_id)
    user = _load_user(storage, user_id)

    domains = storage.get_all_domains()
    progress = {p.domain_id: p for p in storage.get_user_progress(user_id)}
    completed = {us.scenario_id for us in storage.get_user_scenarios(user_id) if us.completed}
    domain_names = {d.id: d.name for d in domains}

    domains_with_progress = [
        domain_with_progress(d, progress[d.id].progress if d.id in progress else 0) for d in domains
    ]
    recommended = [
        scenario_with_domain(s, domain_names.get(s.domain_id))
        for s in storage.get_all_scenarios() if s.id not in completed
    ][:3]

    overall = round(sum(d.progress for d in domains_with_progress) / len(domains)) if domains else 0
    questions_completed = sum(p.questions_completed or 0 for p in progress.values())
    questions_correct = sum(p.questions_correct or 0 for p in progress.values())
    study_time = sum(p.time_spent or 0 for p in progress.values())
    accuracy = round(questions_correct / questions_completed * 100) if questions_completed else 0

    unfinished = [d for d in domains_with_progress if d.progress < 100]
    weakest = min(unfinished, key=lambda d: d.progress) if unfinished else None

    return ok({
        "user": {
            "id": user.id,
            "firstName": user.first_name,
            "lastName": user.last_name,
            "xp": user.xp,
            "streak": user.streak,
        },
        "overallProgress": overall,
        "domains": domains_with_progress,
        "recentAchievements": earned_achievements(storage, user_id, limit=3),
        "recommendedScenarios": recommended,
        "stats": {
            "accuracy": accuracy,
            "questionsCompleted": questions_completed,
            "studyTime": study_time,
            "weakestDomain": weakest.id if weakest else None,
        },
    })


@router.get("/{user_id}")
def get_user(user_id: str, current: User = Depends(get_current_user), storage: Storage = Depends(get_storage)):
    ensure_self(current, user_id)
    return ok({"user": UserOut.model_validate(_load_user(storage, user_id))})


@router.put("/{user_id}")
def update_user(
    user_id: str,
    req: UpdateUserRequest,
    current: User = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
    config: Settings = Depends(get_settings_dep),
):
    ensure_self(current, user_id)
    existing = _load_user(storage, user_id)
    changes = req.model_dump(exclude_none=True)
    email_changed = "email" in changes and changes["email"].lower() != (existing.email or "").lower()
    if email_changed:
        other = storage.get_user_by_email(changes["email"])
        if other is not None and other.id != user_id:
            raise ConflictError("Email is already in use")
    user = storage.upsert_user({"id": user_id, **changes})

    body = {"user": UserOut.model_validate(user)}
    if email_changed:
        # Refresh tokens carry the old address; revoke them and hand out a fresh pair
        storage.delete_user_refresh_tokens(user_id)
        tokens = generate_tokens(user.id, user.email, config)
        storage.store_refresh_token(user.id, tokens["refreshToken"])
        body["tokens"] = tokens
        logger.info(f"User {user_id} changed e-mail; refresh tokens rotated", extra={"user_id": user_id})
    return ok(body, "Profile updated successfully")


@router.get("/{user_id}/progress")
def get_progress(user_id: str, current: User = Depends(get_current_user), storage: Storage = Depends(get_storage)):
    ensure_self(current, user_id)
    return ok([ProgressOut.model_validate(p) for p in storage.get_user_progress(user_id)])


@router.put("/{user_id}/progress/{domain_id}")
def update_progress(
    user_id: str,
    domain_id: int,
    req: UpdateProgressRequest,
    background: BackgroundTasks,
    current: User = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
    notifier: NotificationManager = Depends(get_notifier),
):
    ensure_self(current, user_id)
    if req.domain_id is not None and req.domain_id != domain_id:
        raise ValidationError("Domain id in body does not match the URL")
    if storage.get_domain(domain_id) is None:
        raise NotFoundError("Domain not found")

    row = storage.update_user_progress(user_id, domain_id, req.model_dump(exclude={"domain_id"}, exclude_none=True))
    out = ProgressOut.model_validate(row)
    background.add_task(notifier.notify_progress_update, user_id, out)
    return ok(out, "Progress updated successfully")


@router.get("/{user_id}/scenarios")
def get_user_scenarios(user_id: str, current: User = Depends(get_current_user), storage: Storage = Depends(get_storage)):
    ensure_self(current, user_id)
    return ok([UserScenarioOut.model_validate(us) for us in storage.get_user_scenarios(user_id)])


@router.put("/{user_id}/scenarios/{scenario_id}")
def update_user_scenario(
    user_id: str,
    scenario_id: int,
    req: UpdateScenarioRequest,
    background: BackgroundTasks,
    current: User = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
    achievements: AchievementService = Depends(get_achievement_service),
    notifier: NotificationManager = Depends(get_notifier),
    config: Settings = Depends(get_settings_dep),
):
    ensure_self(current, user_id)
    result = achievements.complete_scenario(user_id, scenario_id, req.model_dump(exclude_none=True))
    if result is None:
        raise NotFoundError("Scenario not found")
    schedule_completion_notifications(
        background, notifier, user_id, result, leaderboard_entries(storage, config.LEADERBOARD_SIZE)
    )
    return ok(completion_payload(result), "Scenario progress updated successfully")


@router.get("/{user_id}/achievements")
def get_user_achievements(
    user_id: str,
    current: User = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
    achievements: AchievementService = Depends(get_achievement_service),
):
    ensure_self(current, user_id)
    return ok({
        "achievements": earned_achievements(storage, user_id),
        "stats": achievements.get_achievement_stats(user_id),
    })
