"""
Achievement, streak and progress rules.

Criteria are static JSON objects; every key present must hold for the
achievement to be awarded:

    scenariosCompleted  completed scenario count >= N
    domainProgress      progress in some domain >= P
    perfectScore        the triggering score is exactly 100
    fastCompletion      the triggering time spent is <= M minutes
    streak              current streak >= N
    totalXP             user XP >= N
    categoryComplete    every scenario mentioning the category keyword is completed
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from cyberdefense.models.orm import Achievement, Scenario, User, UserProgress, UserScenario, utcnow
from cyberdefense.models.schemas import AchievementCriteria
from cyberdefense.services.storage import Storage

logger = logging.getLogger(__name__)

CATEGORY_KEYWORDS = {
    "vulnerability": "vulnerability",
    "incident-response": "incident",
}


@dataclass
class CompletionResult:
    user_scenario: UserScenario
    scenario: Scenario
    user: User
    progress: Optional[UserProgress]
    xp_awarded: int = 0
    newly_completed: bool = False
    achievements: List[Achievement] = field(default_factory=list)


class AchievementService:
    def __init__(self, storage: Storage):
        self.storage = storage

    def check_and_award_achievements(self, user_id: str, context: Optional[dict] = None) -> List[Achievement]:
        """Award every unearned achievement whose criteria now hold. Returns the new ones."""
        user = self.storage.get_user(user_id)
        if user is None:
            return []
        context = context or {}
        earned = {ua.achievement_id for ua in self.storage.get_user_achievements(user_id)}
        pending = [a for a in self.storage.get_all_achievements() if a.id not in earned]
        if not pending:
            return []

        user_scenarios = self.storage.get_user_scenarios(user_id)
        progress = self.storage.get_user_progress(user_id)
        scenarios = self.storage.get_all_scenarios()

        awarded = []
        for achievement in pending:
            if not self._meets(achievement, user, user_scenarios, progress, scenarios, context):
                continue
            if self.storage.award_achievement(user_id, achievement.id):
                logger.info(f"User {user_id} earned achievement '{achievement.name}'",
                            extra={"user_id": user_id, "achievement_id": achievement.id})
                awarded.append(achievement)
        return awarded

    def _meets(
        self,
        achievement: Achievement,
        user: User,
        user_scenarios: List[UserScenario],
        progress: List[UserProgress],
        scenarios: List[Scenario],
        context: dict,
    ) -> bool:
        criteria = AchievementCriteria.model_validate(achievement.criteria or {})
        completed_ids = {us.scenario_id for us in user_scenarios if us.completed}

        if criteria.scenarios_completed is not None and len(completed_ids) < criteria.scenarios_completed:
            return False
        if criteria.domain_progress is not None:
            if not any(p.progress >= criteria.domain_progress for p in progress):
                return False
        if criteria.perfect_score and context.get("score") != 100:
            return False
        if criteria.fast_completion is not None:
            time_spent = context.get("time_spent")
            if time_spent is None or time_spent > criteria.fast_completion:
                return False
        if criteria.streak is not None and (user.streak or 0) < criteria.streak:
            return False
        if criteria.total_xp is not None and (user.xp or 0) < criteria.total_xp:
            return False
        if criteria.category_complete is not None:
            if not self._category_complete(criteria.category_complete, scenarios, completed_ids):
                return False
        return True

    @staticmethod
    def _category_complete(category: str, scenarios: List[Scenario], completed_ids: set) -> bool:
        keyword = CATEGORY_KEYWORDS.get(category)
        if keyword is None:
            return False
        matching = [
            s for s in scenarios
            if keyword in s.title.lower() or keyword in (s.description or "").lower()
        ]
        return bool(matching) and all(s.id in completed_ids for s in matching)

    def update_user_streak(self, user_id: str, now: Optional[datetime] = None) -> Optional[User]:
        user = self.storage.get_user(user_id)
        if user is None:
            return None
        now = now or utcnow()
        last = user.last_activity
        if last is None:
            streak = 1
        else:
            gap = (now.date() - last.date()).days
            if gap == 1:
                streak = (user.streak or 0) + 1
            elif gap > 1:
                streak = 1
            else:
                streak = max(user.streak or 0, 1)
        if streak != user.streak:
            self.storage.update_user_streak(user_id, streak)
        return self.storage.update_user_activity(user_id, now)

    def calculate_domain_progress(self, user_id: str, domain_id: int) -> int:
        domain_scenarios = self.storage.get_scenarios_by_domain(domain_id)
        if not domain_scenarios:
            return 0
        completed = {us.scenario_id for us in self.storage.get_user_scenarios(user_id) if us.completed}
        done = sum(1 for s in domain_scenarios if s.id in completed)
        return round(done / len(domain_scenarios) * 100)

    def update_domain_progress(self, user_id: str, domain_id: int) -> UserProgress:
        progress = self.calculate_domain_progress(user_id, domain_id)
        return self.storage.update_user_progress(user_id, domain_id, {"progress": progress})

    def get_achievement_stats(self, user_id: str) -> dict:
        all_achievements: Dict[int, Achievement] = {a.id: a for a in self.storage.get_all_achievements()}
        earned = self.storage.get_user_achievements(user_id)
        recent = []
        for ua in earned[:5]:
            achievement = all_achievements.get(ua.achievement_id)
            recent.append({
                "achievementId": ua.achievement_id,
                "earnedAt": ua.earned_at,
                "name": achievement.name if achievement else None,
                "description": achievement.description if achievement else None,
                "icon": achievement.icon if achievement else None,
                "xpReward": achievement.xp_reward if achievement else None,
            })
        return {
            "totalAchievements": len(all_achievements),
            "earnedAchievements": len(earned),
            "totalXPFromAchievements": sum(
                all_achievements[ua.achievement_id].xp_reward
                for ua in earned if ua.achievement_id in all_achievements
            ),
            "recentAchievements": recent,
        }

    def complete_scenario(
        self, user_id: str, scenario_id: int, changes: dict, count_attempt: bool = False
    ) -> Optional[CompletionResult]:
        """
        Record a scenario attempt and run the gamification rules over it.

        XP is only granted the first time the scenario is completed; the
        storage layer decides that and adds the XP in the same step. Returns
        None when the scenario does not exist.
        """
        scenario = self.storage.get_scenario(scenario_id)
        if scenario is None:
            return None

        changes = {k: v for k, v in changes.items() if v is not None}
        user_scenario, newly_completed = self.storage.record_scenario_attempt(
            user_id, scenario_id, changes, xp_reward=scenario.xp_reward, count_attempt=count_attempt
        )

        xp_awarded = 0
        if newly_completed:
            xp_awarded = scenario.xp_reward
            logger.info(f"User {user_id} completed scenario {scenario_id} (+{xp_awarded} XP)")

        self.update_user_streak(user_id)
        progress = self.update_domain_progress(user_id, scenario.domain_id)

        context = {
            "score": user_scenario.score,
            "time_spent": changes.get("time_spent"),
            "domain_id": scenario.domain_id,
            "progress": progress.progress,
        }
        achievements = self.check_and_award_achievements(user_id, context)

        return CompletionResult(
            user_scenario=user_scenario,
            scenario=scenario,
            user=self.storage.get_user(user_id),
            progress=progress,
            xp_awarded=xp_awarded,
            newly_completed=newly_completed,
            achievements=achievements,
        )
