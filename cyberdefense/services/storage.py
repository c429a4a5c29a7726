"""
Storage interface and the in-memory implementation.

Both stores hand back ORM instances (detached, for the database store) so the
routers and the achievement engine never care which one is active.
"""
import itertools
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from cyberdefense.models.orm import (
    Achievement,
    Domain,
    RefreshToken,
    Scenario,
    User,
    UserAchievement,
    UserProgress,
    UserScenario,
    utcnow,
)
from cyberdefense.services import seed

USER_FIELDS = ("email", "first_name", "last_name", "password_hash", "profile_image_url",
               "xp", "streak", "last_activity")
PROGRESS_FIELDS = ("progress", "questions_completed", "questions_correct", "time_spent")
USER_SCENARIO_FIELDS = ("completed", "score", "attempts", "time_spent", "completed_at")
SCENARIO_FIELDS = ("title", "description", "type", "domain_id", "difficulty",
                   "estimated_time", "xp_reward", "content")


class Storage(ABC):
    def __init__(self, refresh_token_days: int = 30):
        self.refresh_token_days = refresh_token_days

    def refresh_expiry(self) -> datetime:
        return utcnow() + timedelta(days=self.refresh_token_days)

    # ========== Users ==========
    @abstractmethod
    def get_user(self, user_id: str) -> Optional[User]: ...

    @abstractmethod
    def get_user_by_email(self, email: str) -> Optional[User]: ...

    @abstractmethod
    def upsert_user(self, data: dict) -> User:
        """Create the user, or merge ``data`` into the existing row with the same id."""

    @abstractmethod
    def update_user_xp(self, user_id: str, xp_to_add: int) -> Optional[User]: ...

    @abstractmethod
    def update_user_streak(self, user_id: str, streak: int) -> Optional[User]: ...

    @abstractmethod
    def update_user_activity(self, user_id: str, when: Optional[datetime] = None) -> Optional[User]: ...

    @abstractmethod
    def get_all_users(self) -> List[User]: ...

    @abstractmethod
    def count_users(self) -> int: ...

    @abstractmethod
    def get_top_users(self, limit: int = 10) -> List[User]: ...

    # ========== Refresh tokens ==========
    @abstractmethod
    def store_refresh_token(self, user_id: str, token: str) -> RefreshToken: ...

    @abstractmethod
    def get_refresh_token(self, token: str) -> Optional[RefreshToken]: ...

    @abstractmethod
    def delete_refresh_token(self, token: str) -> None: ...

    @abstractmethod
    def delete_user_refresh_tokens(self, user_id: str) -> None: ...

    # ========== Domains ==========
    @abstractmethod
    def get_all_domains(self) -> List[Domain]: ...

    @abstractmethod
    def get_domain(self, domain_id: int) -> Optional[Domain]: ...

    @abstractmethod
    def create_domain(self, data: dict) -> Domain: ...

    # ========== Scenarios ==========
    @abstractmethod
    def get_all_scenarios(self) -> List[Scenario]: ...

    @abstractmethod
    def get_scenarios_by_domain(self, domain_id: int) -> List[Scenario]: ...

    @abstractmethod
    def get_scenario(self, scenario_id: int) -> Optional[Scenario]: ...

    @abstractmethod
    def create_scenario(self, data: dict) -> Scenario: ...

    @abstractmethod
    def update_scenario(self, scenario_id: int, data: dict) -> Optional[Scenario]: ...

    @abstractmethod
    def delete_scenario(self, scenario_id: int) -> bool: ...

    # ========== Progress ==========
    @abstractmethod
    def get_user_progress(self, user_id: str) -> List[UserProgress]: ...

    @abstractmethod
    def get_user_progress_by_domain(self, user_id: str, domain_id: int) -> Optional[UserProgress]: ...

    @abstractmethod
    def update_user_progress(self, user_id: str, domain_id: int, data: dict) -> UserProgress: ...

    # ========== User scenarios ==========
    @abstractmethod
    def get_user_scenarios(self, user_id: str) -> List[UserScenario]: ...

    @abstractmethod
    def get_user_scenario(self, user_id: str, scenario_id: int) -> Optional[UserScenario]: ...

    @abstractmethod
    def update_user_scenario(self, user_id: str, scenario_id: int, data: dict) -> UserScenario: ...

    @abstractmethod
    def record_scenario_attempt(
        self,
        user_id: str,
        scenario_id: int,
        data: dict,
        xp_reward: int = 0,
        count_attempt: bool = False,
    ) -> Tuple[UserScenario, bool]:
        """
        Merge an attempt into the user's scenario row as a single atomic step.

        The first time the row turns completed it is stamped with
        ``completed_at`` and the user gains ``xp_reward``. A row that was
        completed once keeps its stamp, so completing it again (even after it
        was set back to not completed) grants nothing. ``count_attempt`` bumps
        the stored attempt counter instead of trusting a value read earlier.

        Returns the row and whether this call was the first completion.
        """

    @abstractmethod
    def get_completion_counts(self) -> Dict[int, int]:
        """Number of users that completed each scenario, keyed by scenario id."""

    # ========== Achievements ==========
    @abstractmethod
    def get_all_achievements(self) -> List[Achievement]: ...

    @abstractmethod
    def create_achievement(self, data: dict) -> Achievement: ...

    @abstractmethod
    def get_user_achievements(self, user_id: str) -> List[UserAchievement]:
        """Earned achievements, newest first."""

    @abstractmethod
    def award_achievement(self, user_id: str, achievement_id: int) -> bool:
        """Record the achievement. Returns False, writing nothing, if already earned."""


class MemoryStorage(Storage):
    """Dict-backed store seeded with the starter catalogue."""

    def __init__(self, refresh_token_days: int = 30, seeded: bool = True):
        super().__init__(refresh_token_days)
        self._lock = threading.RLock()
        self._users: Dict[str, User] = {}
        self._refresh_tokens: Dict[str, RefreshToken] = {}
        self._domains: Dict[int, Domain] = {}
        self._scenarios: Dict[int, Scenario] = {}
        self._progress: Dict[tuple, UserProgress] = {}
        self._user_scenarios: Dict[tuple, UserScenario] = {}
        self._achievements: Dict[int, Achievement] = {}
        self._user_achievements: Dict[tuple, UserAchievement] = {}
        self._ids = {name: itertools.count(1) for name in
                     ("token", "domain", "scenario", "progress", "user_scenario", "achievement", "user_achievement")}
        if seeded:
            self._seed()

    def _seed(self) -> None:
        for d in seed.DOMAINS:
            self._domains[d["id"]] = Domain(**d)
        for s in seed.SCENARIOS:
            self._scenarios[s["id"]] = Scenario(**s)
        for a in seed.ACHIEVEMENTS:
            self._achievements[a["id"]] = Achievement(**a)
        # Keep generated ids clear of the seeded ones
        self._ids["domain"] = itertools.count(len(seed.DOMAINS) + 1)
        self._ids["scenario"] = itertools.count(len(seed.SCENARIOS) + 1)
        self._ids["achievement"] = itertools.count(len(seed.ACHIEVEMENTS) + 1)

    def _next_id(self, name: str) -> int:
        return next(self._ids[name])

    # ========== Users ==========
    def get_user(self, user_id: str) -> Optional[User]:
        return self._users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        email = email.lower()
        with self._lock:
            return next((u for u in self._users.values() if u.email.lower() == email), None)

    def upsert_user(self, data: dict) -> User:
        with self._lock:
            now = utcnow()
            user = self._users.get(data["id"])
            if user is None:
                user = User(id=data["id"], email=None, first_name=None, last_name=None,
                            password_hash=None, profile_image_url=None, xp=0, streak=0,
                            last_activity=None, created_at=now, updated_at=now)
                self._users[user.id] = user
            for key in USER_FIELDS:
                if key in data:
                    setattr(user, key, data[key])
            user.updated_at = now
            return user

    def update_user_xp(self, user_id: str, xp_to_add: int) -> Optional[User]:
        with self._lock:
            user = self._users.get(user_id)
            if user:
                user.xp = (user.xp or 0) + xp_to_add
                user.updated_at = utcnow()
            return user

    def update_user_streak(self, user_id: str, streak: int) -> Optional[User]:
        with self._lock:
            user = self._users.get(user_id)
            if user:
                user.streak = streak
                user.updated_at = utcnow()
            return user

    def update_user_activity(self, user_id: str, when: Optional[datetime] = None) -> Optional[User]:
        with self._lock:
            user = self._users.get(user_id)
            if user:
                user.last_activity = when or utcnow()
                user.updated_at = utcnow()
            return user

    def get_all_users(self) -> List[User]:
        with self._lock:
            return sorted(self._users.values(), key=lambda u: u.created_at)

    def count_users(self) -> int:
        return len(self._users)

    def get_top_users(self, limit: int = 10) -> List[User]:
        with self._lock:
            ranked = sorted(self._users.values(), key=lambda u: (-u.xp, u.created_at))
            return ranked[:limit]

    # ========== Refresh tokens ==========
    def store_refresh_token(self, user_id: str, token: str) -> RefreshToken:
        with self._lock:
            row = RefreshToken(id=self._next_id("token"), user_id=user_id, token=token,
                               expires_at=self.refresh_expiry(), created_at=utcnow())
            self._refresh_tokens[token] = row
            return row

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        return self._refresh_tokens.get(token)

    def delete_refresh_token(self, token: str) -> None:
        with self._lock:
            self._refresh_tokens.pop(token, None)

    def delete_user_refresh_tokens(self, user_id: str) -> None:
        with self._lock:
            for token in [t for t, row in self._refresh_tokens.items() if row.user_id == user_id]:
                del self._refresh_tokens[token]

    # ========== Domains ==========
    def get_all_domains(self) -> List[Domain]:
        with self._lock:
            return sorted(self._domains.values(), key=lambda d: d.id)

    def get_domain(self, domain_id: int) -> Optional[Domain]:
        return self._domains.get(domain_id)

    def create_domain(self, data: dict) -> Domain:
        with self._lock:
            domain = Domain(id=self._next_id("domain"), **data)
            self._domains[domain.id] = domain
            return domain

    # ========== Scenarios ==========
    def get_all_scenarios(self) -> List[Scenario]:
        with self._lock:
            return sorted(self._scenarios.values(), key=lambda s: s.id)

    def get_scenarios_by_domain(self, domain_id: int) -> List[Scenario]:
        return [s for s in self.get_all_scenarios() if s.domain_id == domain_id]

    def get_scenario(self, scenario_id: int) -> Optional[Scenario]:
        return self._scenarios.get(scenario_id)

    def create_scenario(self, data: dict) -> Scenario:
        with self._lock:
            scenario = Scenario(id=self._next_id("scenario"), **data)
            self._scenarios[scenario.id] = scenario
            return scenario

    def update_scenario(self, scenario_id: int, data: dict) -> Optional[Scenario]:
        with self._lock:
            scenario = self._scenarios.get(scenario_id)
            if scenario:
                for key in SCENARIO_FIELDS:
                    if key in data:
                        setattr(scenario, key, data[key])
            return scenario

    def delete_scenario(self, scenario_id: int) -> bool:
        with self._lock:
            if self._scenarios.pop(scenario_id, None) is None:
                return False
            for key in [k for k in self._user_scenarios if k[1] == scenario_id]:
                del self._user_scenarios[key]
            return True

    # ========== Progress ==========
    def get_user_progress(self, user_id: str) -> List[UserProgress]:
        with self._lock:
            rows = [p for (uid, _), p in self._progress.items() if uid == user_id]
            return sorted(rows, key=lambda p: p.domain_id)

    def get_user_progress_by_domain(self, user_id: str, domain_id: int) -> Optional[UserProgress]:
        return self._progress.get((user_id, domain_id))

    def update_user_progress(self, user_id: str, domain_id: int, data: dict) -> UserProgress:
        with self._lock:
            row = self._progress.get((user_id, domain_id))
            if row is None:
                row = UserProgress(id=self._next_id("progress"), user_id=user_id, domain_id=domain_id,
                                   progress=0, questions_completed=0, questions_correct=0, time_spent=0)
                self._progress[(user_id, domain_id)] = row
            for key in PROGRESS_FIELDS:
                if data.get(key) is not None:
                    setattr(row, key, data[key])
            return row

    # ========== User scenarios ==========
    def get_user_scenarios(self, user_id: str) -> List[UserScenario]:
        with self._lock:
            rows = [s for (uid, _), s in self._user_scenarios.items() if uid == user_id]
            return sorted(rows, key=lambda s: s.scenario_id)

    def get_user_scenario(self, user_id: str, scenario_id: int) -> Optional[UserScenario]:
        return self._user_scenarios.get((user_id, scenario_id))

    def update_user_scenario(self, user_id: str, scenario_id: int, data: dict) -> UserScenario:
        with self._lock:
            row = self._user_scenarios.get((user_id, scenario_id))
            if row is None:
                row = UserScenario(id=self._next_id("user_scenario"), user_id=user_id, scenario_id=scenario_id,
                                   completed=False, score=None, attempts=0, time_spent=0, completed_at=None)
                self._user_scenarios[(user_id, scenario_id)] = row
            for key in USER_SCENARIO_FIELDS:
                if key in data:
                    setattr(row, key, data[key])
            return row

    def record_scenario_attempt(
        self,
        user_id: str,
        scenario_id: int,
        data: dict,
        xp_reward: int = 0,
        count_attempt: bool = False,
    ) -> Tuple[UserScenario, bool]:
        with self._lock:
            row = self.update_user_scenario(
                user_id, scenario_id, {k: v for k, v in data.items() if k != "completed_at"}
            )
            if count_attempt:
                row.attempts = (row.attempts or 0) + 1
            first = bool(data.get("completed")) and row.completed_at is None
            if first:
                row.completed_at = data.get("completed_at") or utcnow()
                self.update_user_xp(user_id, xp_reward)
            return row, first

    def get_completion_counts(self) -> Dict[int, int]:
        counts: Dict[int, int] = {}
        with self._lock:
            for row in self._user_scenarios.values():
                if row.completed:
                    counts[row.scenario_id] = counts.get(row.scenario_id, 0) + 1
        return counts

    # ========== Achievements ==========
    def get_all_achievements(self) -> List[Achievement]:
        with self._lock:
            return sorted(self._achievements.values(), key=lambda a: a.id)

    def create_achievement(self, data: dict) -> Achievement:
        with self._lock:
            achievement = Achievement(id=self._next_id("achievement"), **data)
            self._achievements[achievement.id] = achievement
            return achievement

    def get_user_achievements(self, user_id: str) -> List[UserAchievement]:
        with self._lock:
            rows = [ua for (uid, _), ua in self._user_achievements.items() if uid == user_id]
            return sorted(rows, key=lambda ua: (ua.earned_at, ua.id), reverse=True)

    def award_achievement(self, user_id: str, achievement_id: int) -> bool:
        with self._lock:
            key = (user_id, achievement_id)
            if key in self._user_achievements:
                return False
            self._user_achievements[key] = UserAchievement(
                id=self._next_id("user_achievement"), user_id=user_id,
                achievement_id=achievement_id, earned_at=utcnow(),
            )
            return True
