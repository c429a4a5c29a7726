from cyberdefense.models.orm import (  # noqa: F401
    Base,
    User,
    RefreshToken,
    Domain,
    Scenario,
    UserProgress,
    UserScenario,
    Achievement,
    UserAchievement,
)
