import logging
import time

from fastapi import APIRouter, Depends, Request, status

from cyberdefense.api.common import ok, scenario_with_domain
from cyberdefense.core.auth import require_admin
from cyberdefense.core.database import check_connection
from cyberdefense.core.deps import get_notifier, get_storage
from cyberdefense.core.errors import NotFoundError, ValidationError
from cyberdefense.models.orm import User
from cyberdefense.models.schemas import (
    AchievementCreate,
    AchievementOut,
    DomainCreate,
    DomainOut,
    ScenarioCreate,
    ScenarioUpdate,
    UserOut,
)
from cyberdefense.services.notifications import NotificationManager
from cyberdefense.services.storage import Storage

logger = logging.getLogger(__name__)

# Every route here requires an admin
router = APIRouter(dependencies=[Depends(require_admin)])


def system_health(request: Request, notifier: NotificationManager) -> dict:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        database = "not configured"
    else:
        database = "healthy" if check_connection(engine) else "unhealthy"
    return {
        "database": database,
        "storage": "database" if engine is not None else "memory",
        "websocket": notifier.get_connection_stats(),
        "uptime": round(time.monotonic() - request.app.state.started_at, 1),
    }


def _check_domain(storage: Storage, domain_id: int) -> None:
    if storage.get_domain(domain_id) is None:
        raise ValidationError(f"Domain {domain_id} does not exist")


@router.get("/dashboard")
def admin_dashboard(
    request: Request,
    storage: Storage = Depends(get_storage),
    notifier: NotificationManager = Depends(get_notifier),
):
    scenarios = storage.get_all_scenarios()
    counts = storage.get_completion_counts()
    popular = sorted(scenarios, key=lambda s: (-counts.get(s.id, 0), s.id))[:5]
    return ok({
        "totalUsers": storage.count_users(),
        "totalDomains": len(storage.get_all_domains()),
        "totalScenarios": len(scenarios),
        "totalAchievements": len(storage.get_all_achievements()),
        "popularScenarios": [
            {"id": s.id, "title": s.title, "completions": counts.get(s.id, 0)} for s in popular
        ],
        "systemHealth": system_health(request, notifier),
    })


@router.get("/domains")
def admin_list_domains(storage: Storage = Depends(get_storage)):
    return ok({"domains": [DomainOut.model_validate(d) for d in storage.get_all_domains()]})


@router.post("/domains", status_code=status.HTTP_201_CREATED)
def admin_create_domain(req: DomainCreate, admin: User = Depends(require_admin), storage: Storage = Depends(get_storage)):
    domain = storage.create_domain(req.model_dump())
    logger.info(f"Domain {domain.id} created", extra={"admin_id": admin.id, "domain_id": domain.id})
    return ok({"domain": DomainOut.model_validate(domain)}, "Domain created successfully")


@router.get("/scenarios")
def admin_list_scenarios(storage: Storage = Depends(get_storage)):
    names = {d.id: d.name for d in storage.get_all_domains()}
    return ok({"scenarios": [scenario_with_domain(s, names.get(s.domain_id)) for s in storage.get_all_scenarios()]})


@router.post("/scenarios", status_code=status.HTTP_201_CREATED)
def admin_create_scenario(
    req: ScenarioCreate,
    admin: User = Depends(require_admin),
    storage: Storage = Depends(get_storage),
):
    _check_domain(storage, req.domain_id)
    data = req.model_dump(exclude={"content"})
    data["content"] = req.content.model_dump(by_alias=True, exclude_none=True)
    scenario = storage.create_scenario(data)
    logger.info(f"Scenario {scenario.id} created", extra={"admin_id": admin.id, "scenario_id": scenario.id})
    domain = storage.get_domain(scenario.domain_id)
    return ok({"scenario": scenario_with_domain(scenario, domain.name if domain else None)},
              "Scenario created successfully")


@router.put("/scenarios/{scenario_id}")
def admin_update_scenario(
    scenario_id: int,
    req: ScenarioUpdate,
    admin: User = Depends(require_admin),
    storage: Storage = Depends(get_storage),
):
    if req.domain_id is not None:
        _check_domain(storage, req.domain_id)
    data = req.model_dump(exclude={"content"}, exclude_none=True)
    if req.content is not None:
        data["content"] = req.content.model_dump(by_alias=True, exclude_none=True)
    scenario = storage.update_scenario(scenario_id, data)
    if scenario is None:
        raise NotFoundError("Scenario not found")
    logger.info(f"Scenario {scenario_id} updated", extra={"admin_id": admin.id, "scenario_id": scenario_id})
    domain = storage.get_domain(scenario.domain_id)
    return ok({"scenario": scenario_with_domain(scenario, domain.name if domain else None)},
              "Scenario updated successfully")


@router.delete("/scenarios/{scenario_id}")
def admin_delete_scenario(scenario_id: int, admin: User = Depends(require_admin), storage: Storage = Depends(get_storage)):
    if not storage.delete_scenario(scenario_id):
        raise NotFoundError("Scenario not found")
    logger.info(f"Scenario {scenario_id} deleted", extra={"admin_id": admin.id, "scenario_id": scenario_id})
    return ok(message="Scenario deleted successfully")


@router.get("/achievements")
def admin_list_achievements(storage: Storage = Depends(get_storage)):
    return ok({"achievements": [AchievementOut.model_validate(a) for a in storage.get_all_achievements()]})


@router.post("/achievements", status_code=status.HTTP_201_CREATED)
def admin_create_achievement(
    req: AchievementCreate,
    admin: User = Depends(require_admin),
    storage: Storage = Depends(get_storage),
):
    data = req.model_dump(exclude={"criteria"})
    data["criteria"] = req.criteria.model_dump(by_alias=True, exclude_none=True)
    achievement = storage.create_achievement(data)
    logger.info(f"Achievement {achievement.id} created", extra={"admin_id": admin.id})
    return ok({"achievement": AchievementOut.model_validate(achievement)}, "Achievement created successfully")


@router.get("/users")
def admin_list_users(storage: Storage = Depends(get_storage)):
    return ok({"users": [UserOut.model_validate(u) for u in storage.get_all_users()]})


@router.get("/system/health")
def admin_system_health(request: Request, notifier: NotificationManager = Depends(get_notifier)):
    return ok(system_health(request, notifier))
