"""
Public content routes. Authentication is optional; a signed-in user gets
their own progress merged into each item.
"""
import logging
from typing import Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query

from cyberdefense.api.common import domain_with_progress, leaderboard_entries, ok, scenario_with_domain
from cyberdefense.api.users import completion_payload, schedule_completion_notifications
from cyberdefense.core.auth import get_current_user, get_optional_user
from cyberdefense.core.config import Settings
from cyberdefense.core.deps import get_achievement_service, get_notifier, get_settings_dep, get_storage
from cyberdefense.core.errors import NotFoundError, ValidationError
from cyberdefense.models.orm import Scenario, User, UserScenario
from cyberdefense.models.schemas import (
    AchievementWithStatus,
    ScenarioSubmission,
    ScenarioWithProgress,
)
from cyberdefense.services.achievements import AchievementService
from cyberdefense.services.notifications import NotificationManager
from cyberdefense.services.storage import Storage

logger = logging.getLogger(__name__)

router = APIRouter()


def _with_progress(scenario: Scenario, domain_name: Optional[str], us: Optional[UserScenario]) -> ScenarioWithProgress:
    base = scenario_with_domain(scenario, domain_name).model_dump()
    if us is not None:
        base.update(completed=us.completed, score=us.score, attempts=us.attempts, time_spent=us.time_spent)
    return ScenarioWithProgress(**base)


def _user_scenarios(storage: Storage, user: Optional[User]) -> Dict[int, UserScenario]:
    if user is None:
        return {}
    return {us.scenario_id: us for us in storage.get_user_scenarios(user.id)}


@router.get("/domains")
def list_domains(user: Optional[User] = Depends(get_optional_user), storage: Storage = Depends(get_storage)):
    progress = {p.domain_id: p.progress for p in storage.get_user_progress(user.id)} if user else {}
    return ok([domain_with_progress(d, progress.get(d.id, 0)) for d in storage.get_all_domains()])


@router.get("/domains/{domain_id}")
def get_domain(
    domain_id: int,
    user: Optional[User] = Depends(get_optional_user),
    storage: Storage = Depends(get_storage),
):
    domain = storage.get_domain(domain_id)
    if domain is None:
        raise NotFoundError("Domain not found")
    progress = storage.get_user_progress_by_domain(user.id, domain_id) if user else None
    mine = _user_scenarios(storage, user)
    scenarios = [_with_progress(s, domain.name, mine.get(s.id)) for s in storage.get_scenarios_by_domain(domain_id)]
    return ok({
        **domain_with_progress(domain, progress.progress if progress else 0).model_dump(by_alias=True),
        "scenarios": scenarios,
    })


@router.get("/scenarios")
def list_scenarios(
    domain_id: Optional[int] = Query(default=None, alias="domainId", gt=0),
    user: Optional[User] = Depends(get_optional_user),
    storage: Storage = Depends(get_storage),
):
    scenarios = storage.get_scenarios_by_domain(domain_id) if domain_id else storage.get_all_scenarios()
    names = {d.id: d.name for d in storage.get_all_domains()}
    mine = _user_scenarios(storage, user)
    return ok([_with_progress(s, names.get(s.domain_id), mine.get(s.id)) for s in scenarios])


@router.get("/scenarios/{scenario_id}")
def get_scenario(
    scenario_id: int,
    user: Optional[User] = Depends(get_optional_user),
    storage: Storage = Depends(get_storage),
):
    scenario = storage.get_scenario(scenario_id)
    if scenario is None:
        raise NotFoundError("Scenario not found")
    domain = storage.get_domain(scenario.domain_id)
    us = storage.get_user_scenario(user.id, scenario_id) if user else None
    return ok(_with_progress(scenario, domain.name if domain else None, us))


@router.post("/scenarios/{scenario_id}/submit")
def submit_scenario(
    scenario_id: int,
    req: ScenarioSubmission,
    background: BackgroundTasks,
    user: User = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
    achievements: AchievementService = Depends(get_achievement_service),
    notifier: NotificationManager = Depends(get_notifier),
    config: Settings = Depends(get_settings_dep),
):
    """Grade a set of answers ({questionId: optionIndex}) and record the attempt."""
    scenario = storage.get_scenario(scenario_id)
    if scenario is None:
        raise NotFoundError("Scenario not found")
    questions = (scenario.content or {}).get("questions") or []
    if not questions:
        raise ValidationError("Scenario has no questions to grade")

    results = []
    for q in questions:
        selected = req.answers.get(q["id"])
        results.append({
            "questionId": q["id"],
            "selected": selected,
            "correct": selected == q["correct"],
            "correctAnswer": q["correct"],
            "explanation": q.get("explanation"),
        })
    correct = sum(1 for r in results if r["correct"])
    score = round(correct / len(questions) * 100)
    passed = score >= config.PASSING_SCORE

    counters = storage.get_user_progress_by_domain(user.id, scenario.domain_id)
    storage.update_user_progress(user.id, scenario.domain_id, {
        "questions_completed": (counters.questions_completed if counters else 0) + len(questions),
        "questions_correct": (counters.questions_correct if counters else 0) + correct,
        "time_spent": (counters.time_spent if counters else 0) + (req.time_spent or 0),
    })

    changes = {"score": score, "time_spent": req.time_spent}
    if passed:
        changes["completed"] = True
    result = achievements.complete_scenario(user.id, scenario_id, changes, count_attempt=True)
    schedule_completion_notifications(
        background, notifier, user.id, result, leaderboard_entries(storage, config.LEADERBOARD_SIZE)
    )

    logger.info(f"User {user.id} scored {score} on scenario {scenario_id}",
                extra={"user_id": user.id, "scenario_id": scenario_id, "score": score})
    return ok({
        "score": score,
        "passed": passed,
        "correctAnswers": correct,
        "totalQuestions": len(questions),
        "results": results,
        **completion_payload(result),
    }, "Scenario passed" if passed else "Scenario attempt recorded")


@router.get("/achievements")
def list_achievements(user: Optional[User] = Depends(get_optional_user), storage: Storage = Depends(get_storage)):
    earned = {ua.achievement_id: ua.earned_at for ua in storage.get_user_achievements(user.id)} if user else {}
    items = []
    for a in storage.get_all_achievements():
        item = AchievementWithStatus.model_validate(a)
        if a.id in earned:
            item = item.model_copy(update={"earned": True, "earned_at": earned[a.id]})
        items.append(item)
    return ok(items)


@router.get("/leaderboard")
def leaderboard(
    limit: Optional[int] = Query(default=None, ge=1, le=100),
    storage: Storage = Depends(get_storage),
    config: Settings = Depends(get_settings_dep),
):
    return ok(leaderboard_entries(storage, limit or config.LEADERBOARD_SIZE))
