"""
SQLAlchemy-backed storage. Each operation opens its own session; returned
instances are detached and keep their loaded attributes.
"""
import logging
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

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
from cyberdefense.services.storage import (
    PROGRESS_FIELDS,
    SCENARIO_FIELDS,
    USER_FIELDS,
    USER_SCENARIO_FIELDS,
    Storage,
)

logger = logging.getLogger(__name__)


class DatabaseStorage(Storage):
    def __init__(self, session_factory: sessionmaker, refresh_token_days: int = 30):
        super().__init__(refresh_token_days)
        self.session_factory = session_factory

    # ========== Users ==========
    def get_user(self, user_id: str) -> Optional[User]:
        with self.session_factory() as db:
            return db.get(User, user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self.session_factory() as db:
            return db.scalar(select(User).where(func.lower(User.email) == email.lower()))

    def upsert_user(self, data: dict) -> User:
        with self.session_factory() as db:
            user = db.get(User, data["id"])
            if user is None:
                user = User(id=data["id"], xp=0, streak=0)
                db.add(user)
            for key in USER_FIELDS:
                if key in data:
                    setattr(user, key, data[key])
            user.updated_at = utcnow()
            db.commit()
            return user

    def _update_user(self, user_id: str, **changes) -> Optional[User]:
        with self.session_factory() as db:
            user = db.get(User, user_id)
            if user is None:
                return None
            for key, value in changes.items():
                setattr(user, key, value)
            db.commit()
            return user

    def update_user_xp(self, user_id: str, xp_to_add: int) -> Optional[User]:
        with self.session_factory() as db:
            user = db.get(User, user_id, with_for_update=True)
            if user is None:
                return None
            user.xp = (user.xp or 0) + xp_to_add
            db.commit()
            return user

    def update_user_streak(self, user_id: str, streak: int) -> Optional[User]:
        return self._update_user(user_id, streak=streak)

    def update_user_activity(self, user_id: str, when: Optional[datetime] = None) -> Optional[User]:
        return self._update_user(user_id, last_activity=when or utcnow())

    def get_all_users(self) -> List[User]:
        with self.session_factory() as db:
            return list(db.scalars(select(User).order_by(User.created_at)))

    def count_users(self) -> int:
        with self.session_factory() as db:
            return db.scalar(select(func.count()).select_from(User)) or 0

    def get_top_users(self, limit: int = 10) -> List[User]:
        with self.session_factory() as db:
            stmt = select(User).order_by(User.xp.desc(), User.created_at).limit(limit)
            return list(db.scalars(stmt))

    # ========== Refresh tokens ==========
    def store_refresh_token(self, user_id: str, token: str) -> RefreshToken:
        with self.session_factory() as db:
            row = RefreshToken(user_id=user_id, token=token, expires_at=self.refresh_expiry())
            db.add(row)
            db.commit()
            return row

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self.session_factory() as db:
            return db.scalar(select(RefreshToken).where(RefreshToken.token == token))

    def delete_refresh_token(self, token: str) -> None:
        with self.session_factory() as db:
            db.execute(delete(RefreshToken).where(RefreshToken.token == token))
            db.commit()

    def delete_user_refresh_tokens(self, user_id: str) -> None:
        with self.session_factory() as db:
            db.execute(delete(RefreshToken).where(RefreshToken.user_id == user_id))
            db.commit()

    # ========== Domains ==========
    def get_all_domains(self) -> List[Domain]:
        with self.session_factory() as db:
            return list(db.scalars(select(Domain).order_by(Domain.id)))

    def get_domain(self, domain_id: int) -> Optional[Domain]:
        with self.session_factory() as db:
            return db.get(Domain, domain_id)

    def create_domain(self, data: dict) -> Domain:
        with self.session_factory() as db:
            domain = Domain(**data)
            db.add(domain)
            db.commit()
            return domain

    # ========== Scenarios ==========
    def get_all_scenarios(self) -> List[Scenario]:
        with self.session_factory() as db:
            return list(db.scalars(select(Scenario).order_by(Scenario.id)))

    def get_scenarios_by_domain(self, domain_id: int) -> List[Scenario]:
        with self.session_factory() as db:
            stmt = select(Scenario).where(Scenario.domain_id == domain_id).order_by(Scenario.id)
            return list(db.scalars(stmt))

    def get_scenario(self, scenario_id: int) -> Optional[Scenario]:
        with self.session_factory() as db:
            return db.get(Scenario, scenario_id)

    def create_scenario(self, data: dict) -> Scenario:
        with self.session_factory() as db:
            scenario = Scenario(**data)
            db.add(scenario)
            db.commit()
            return scenario

    def update_scenario(self, scenario_id: int, data: dict) -> Optional[Scenario]:
        with self.session_factory() as db:
            scenario = db.get(Scenario, scenario_id)
            if scenario is None:
                return None
            for key in SCENARIO_FIELDS:
                if key in data:
                    setattr(scenario, key, data[key])
            db.commit()
            return scenario

    def delete_scenario(self, scenario_id: int) -> bool:
        with self.session_factory() as db:
            scenario = db.get(Scenario, scenario_id)
            if scenario is None:
                return False
            # SQLite does not enforce ON DELETE CASCADE without a pragma
            db.execute(delete(UserScenario).where(UserScenario.scenario_id == scenario_id))
            db.delete(scenario)
            db.commit()
            return True

    # ========== Progress ==========
    def get_user_progress(self, user_id: str) -> List[UserProgress]:
        with self.session_factory() as db:
            stmt = select(UserProgress).where(UserProgress.user_id == user_id).order_by(UserProgress.domain_id)
            return list(db.scalars(stmt))

    def get_user_progress_by_domain(self, user_id: str, domain_id: int) -> Optional[UserProgress]:
        with self.session_factory() as db:
            stmt = select(UserProgress).where(UserProgress.user_id == user_id, UserProgress.domain_id == domain_id)
            return db.scalar(stmt)

    def update_user_progress(self, user_id: str, domain_id: int, data: dict) -> UserProgress:
        with self.session_factory() as db:
            row = db.scalar(
                select(UserProgress).where(UserProgress.user_id == user_id, UserProgress.domain_id == domain_id)
            )
            if row is None:
                row = UserProgress(user_id=user_id, domain_id=domain_id, progress=0,
                                   questions_completed=0, questions_correct=0, time_spent=0)
                db.add(row)
            for key in PROGRESS_FIELDS:
                if data.get(key) is not None:
                    setattr(row, key, data[key])
            db.commit()
            return row

    # ========== User scenarios ==========
    def get_user_scenarios(self, user_id: str) -> List[UserScenario]:
        with self.session_factory() as db:
            stmt = select(UserScenario).where(UserScenario.user_id == user_id).order_by(UserScenario.scenario_id)
            return list(db.scalars(stmt))

    def get_user_scenario(self, user_id: str, scenario_id: int) -> Optional[UserScenario]:
        with self.session_factory() as db:
            stmt = select(UserScenario).where(UserScenario.user_id == user_id, UserScenario.scenario_id == scenario_id)
            return db.scalar(stmt)

    @staticmethod
    def _user_scenario_row(db, user_id: str, scenario_id: int) -> UserScenario:
        row = db.scalar(
            select(UserScenario)
            .where(UserScenario.user_id == user_id, UserScenario.scenario_id == scenario_id)
            .with_for_update()
        )
        if row is None:
            row = UserScenario(user_id=user_id, scenario_id=scenario_id, completed=False,
                               attempts=0, time_spent=0)
            db.add(row)
        return row

    def update_user_scenario(self, user_id: str, scenario_id: int, data: dict) -> UserScenario:
        with self.session_factory() as db:
            row = self._user_scenario_row(db, user_id, scenario_id)
            for key in USER_SCENARIO_FIELDS:
                if key in data:
                    setattr(row, key, data[key])
            db.commit()
            return row

    def record_scenario_attempt(
        self,
        user_id: str,
        scenario_id: int,
        data: dict,
        xp_reward: int = 0,
        count_attempt: bool = False,
    ) -> Tuple[UserScenario, bool]:
        try:
            return self._record_scenario_attempt(user_id, scenario_id, data, xp_reward, count_attempt)
        except IntegrityError:
            # A concurrent request inserted the row first; it exists now, so the retry locks and updates it
            logger.info(f"Retrying scenario attempt for user {user_id} on scenario {scenario_id}")
            return self._record_scenario_attempt(user_id, scenario_id, data, xp_reward, count_attempt)

    def _record_scenario_attempt(
        self, user_id: str, scenario_id: int, data: dict, xp_reward: int, count_attempt: bool
    ) -> Tuple[UserScenario, bool]:
        with self.session_factory() as db:
            row = self._user_scenario_row(db, user_id, scenario_id)
            for key in USER_SCENARIO_FIELDS:
                if key in data and key != "completed_at":
                    setattr(row, key, data[key])
            if count_attempt:
                row.attempts = (row.attempts or 0) + 1
            first = bool(data.get("completed")) and row.completed_at is None
            if first:
                row.completed_at = data.get("completed_at") or utcnow()
                user = db.get(User, user_id, with_for_update=True)
                if user is not None:
                    user.xp = (user.xp or 0) + xp_reward
            db.commit()
            return row, first

    def get_completion_counts(self) -> Dict[int, int]:
        with self.session_factory() as db:
            stmt = (
                select(UserScenario.scenario_id, func.count())
                .where(UserScenario.completed.is_(True))
                .group_by(UserScenario.scenario_id)
            )
            return {scenario_id: count for scenario_id, count in db.execute(stmt)}

    # ========== Achievements ==========
    def get_all_achievements(self) -> List[Achievement]:
        with self.session_factory() as db:
            return list(db.scalars(select(Achievement).order_by(Achievement.id)))

    def create_achievement(self, data: dict) -> Achievement:
        with self.session_factory() as db:
            achievement = Achievement(**data)
            db.add(achievement)
            db.commit()
            return achievement

    def get_user_achievements(self, user_id: str) -> List[UserAchievement]:
        with self.session_factory() as db:
            stmt = (
                select(UserAchievement)
                .where(UserAchievement.user_id == user_id)
                .order_by(UserAchievement.earned_at.desc(), UserAchievement.id.desc())
            )
            return list(db.scalars(stmt))

    def award_achievement(self, user_id: str, achievement_id: int) -> bool:
        with self.session_factory() as db:
            exists = db.scalar(
                select(UserAchievement.id).where(
                    UserAchievement.user_id == user_id, UserAchievement.achievement_id == achievement_id
                )
            )
            if exists is not None:
                return False
            db.add(UserAchievement(user_id=user_id, achievement_id=achievement_id))
            try:
                db.commit()
            except IntegrityError:
                # Lost a race with a concurrent award; the unique constraint holds the line
                db.rollback()
                logger.info(f"Achievement {achievement_id} already awarded to user {user_id}")
                return False
            return True
