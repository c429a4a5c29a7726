from typing import Any, List, Optional

from cyberdefense.core.errors import AuthorizationError
from cyberdefense.models.orm import Domain, Scenario, User
from cyberdefense.models.schemas import (
    DomainOut,
    DomainWithProgress,
    LeaderboardEntry,
    ScenarioOut,
    ScenarioWithDomain,
)
from cyberdefense.services.storage import Storage


def ok(data: Any = None, message: Optional[str] = None) -> dict:
    """Success envelope: {success, message?, data?}."""
    body: dict = {"success": True}
    if message is not None:
        body["message"] = message
    if data is not None:
        body["data"] = data
    return body


def ensure_self(user: User, user_id: str) -> None:
    if user.id != user_id:
        raise AuthorizationError("Access denied")


def domain_with_progress(domain: Domain, progress: int = 0) -> DomainWithProgress:
    return DomainWithProgress(**DomainOut.model_validate(domain).model_dump(), progress=progress)


def scenario_with_domain(scenario: Scenario, domain_name: Optional[str]) -> ScenarioWithDomain:
    return ScenarioWithDomain(**ScenarioOut.model_validate(scenario).model_dump(), domain_name=domain_name or "Unknown")


def leaderboard_entries(storage: Storage, limit: int) -> List[LeaderboardEntry]:
    return [
        LeaderboardEntry(rank=i, id=u.id, first_name=u.first_name, last_name=u.last_name, xp=u.xp, streak=u.streak)
        for i, u in enumerate(storage.get_top_users(limit), start=1)
    ]
