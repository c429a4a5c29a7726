"""
Request and response models. Field names are snake_case in Python and
camelCase on the wire.
"""
import re
from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel

NAME_RE = re.compile(r"^[a-zA-Z\s]+$")
PASSWORD_RE = re.compile(r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)(?=.*[@$!%*?&])[A-Za-z\d@$!%*?&]")
COLOR_RE = re.compile(r"^#[0-9A-F]{6}$", re.IGNORECASE)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


def _check_name(value: str, label: str) -> str:
    if not value:
        raise ValueError(f"{label} is required")
    if len(value) > 50:
        raise ValueError(f"{label} must be less than 50 characters")
    if not NAME_RE.match(value):
        raise ValueError(f"{label} can only contain letters and spaces")
    return value


# ========== Auth ==========

class RegisterRequest(CamelModel):
    first_name: str
    last_name: str
    email: EmailStr
    password: str

    @field_validator("first_name")
    @classmethod
    def first_name_valid(cls, v: str) -> str:
        return _check_name(v, "First name")

    @field_validator("last_name")
    @classmethod
    def last_name_valid(cls, v: str) -> str:
        return _check_name(v, "Last name")

    @field_validator("email")
    @classmethod
    def email_lower(cls, v: str) -> str:
        return v.lower()

    @field_validator("password")
    @classmethod
    def password_strong(cls, v: str) -> str:
        if len(v) < 8:
            raise ValueError("Password must be at least 8 characters")
        if len(v) > 128:
            raise ValueError("Password must be less than 128 characters")
        if not PASSWORD_RE.match(v):
            raise ValueError(
                "Password must contain at least one uppercase letter, one lowercase letter, "
                "one number, and one special character"
            )
        return v


class LoginRequest(CamelModel):
    email: EmailStr
    password: str = Field(min_length=1)

    @field_validator("email")
    @classmethod
    def email_lower(cls, v: str) -> str:
        return v.lower()


class RefreshTokenRequest(CamelModel):
    refresh_token: str = Field(min_length=1)


class TokenPayload(CamelModel):
    user_id: str
    email: str
    type: Literal["access", "refresh"]


# ========== Users & progress ==========

class UpdateUserRequest(CamelModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[EmailStr] = None

    @field_validator("first_name")
    @classmethod
    def first_name_valid(cls, v: Optional[str]) -> Optional[str]:
        return v if v is None else _check_name(v, "First name")

    @field_validator("last_name")
    @classmethod
    def last_name_valid(cls, v: Optional[str]) -> Optional[str]:
        return v if v is None else _check_name(v, "Last name")

    @field_validator("email")
    @classmethod
    def email_lower(cls, v: Optional[str]) -> Optional[str]:
        return v if v is None else v.lower()


class UpdateProgressRequest(CamelModel):
    domain_id: Optional[int] = Field(default=None, gt=0)
    progress: int = Field(ge=0, le=100)
    questions_completed: Optional[int] = Field(default=None, ge=0)
    questions_correct: Optional[int] = Field(default=None, ge=0)
    time_spent: Optional[int] = Field(default=None, ge=0)


class UpdateScenarioRequest(CamelModel):
    completed: Optional[bool] = None
    score: Optional[int] = Field(default=None, ge=0, le=100)
    attempts: Optional[int] = Field(default=None, ge=0)
    time_spent: Optional[int] = Field(default=None, ge=0)
    completed_at: Optional[datetime] = None


class ScenarioSubmission(CamelModel):
    answers: Dict[int, int]
    time_spent: Optional[int] = Field(default=None, ge=0)


class UserOut(CamelModel):
    id: str
    email: str
    first_name: str
    last_name: str
    xp: int
    streak: int
    last_activity: Optional[datetime] = None
    created_at: Optional[datetime] = None


class LeaderboardEntry(CamelModel):
    rank: int
    id: str
    first_name: str
    last_name: str
    xp: int
    streak: int


class ProgressOut(CamelModel):
    domain_id: int
    progress: int
    questions_completed: int
    questions_correct: int
    time_spent: int


class UserScenarioOut(CamelModel):
    scenario_id: int
    completed: bool
    score: Optional[int] = None
    attempts: int
    time_spent: int
    completed_at: Optional[datetime] = None


# ========== Content ==========

class DomainCreate(CamelModel):
    name: str = Field(min_length=1, max_length=255)
    description: str = Field(min_length=1, max_length=1000)
    exam_percentage: int = Field(ge=1, le=100)
    color: str
    icon: str = Field(min_length=1, max_length=50)

    @field_validator("color")
    @classmethod
    def color_hex(cls, v: str) -> str:
        if not COLOR_RE.match(v):
            raise ValueError("Color must be a hex value like #1A2B3C")
        return v


class DomainOut(CamelModel):
    id: int
    name: str
    description: str
    exam_percentage: int
    color: str
    icon: str


class DomainWithProgress(DomainOut):
    progress: int = 0


class ScenarioQuestion(CamelModel):
    id: int
    question: str
    options: List[str]
    correct: int
    explanation: str


class ScenarioContent(CamelModel):
    background: str
    scenario: str
    objectives: Optional[List[str]] = None
    questions: Optional[List[ScenarioQuestion]] = None
    code_example: Optional[str] = None


class ScenarioCreate(CamelModel):
    title: str = Field(min_length=1, max_length=255)
    description: str = Field(min_length=1, max_length=1000)
    type: Literal["lab", "scenario", "challenge"]
    domain_id: int = Field(gt=0)
    difficulty: Literal["beginner", "intermediate", "advanced", "expert"]
    estimated_time: int = Field(gt=0)
    xp_reward: int = Field(gt=0)
    content: ScenarioContent


class ScenarioOut(CamelModel):
    id: int
    title: str
    description: str
    type: str
    domain_id: int
    difficulty: str
    estimated_time: int
    xp_reward: int
    content: dict


class ScenarioWithDomain(ScenarioOut):
    domain_name: str


class ScenarioWithProgress(ScenarioWithDomain):
    completed: bool = False
    score: Optional[int] = None
    attempts: int = 0
    time_spent: int = 0


class AchievementCriteria(CamelModel):
    scenarios_completed: Optional[int] = Field(default=None, ge=0)
    domain_progress: Optional[int] = Field(default=None, ge=0, le=100)
    perfect_score: Optional[bool] = None
    fast_completion: Optional[int] = Field(default=None, gt=0)
    streak: Optional[int] = Field(default=None, ge=0)
    total_xp: Optional[int] = Field(default=None, ge=0, alias="totalXP")
    category_complete: Optional[str] = None


class AchievementCreate(CamelModel):
    name: str = Field(min_length=1, max_length=255)
    description: str = Field(min_length=1, max_length=1000)
    icon: str = Field(min_length=1, max_length=50)
    xp_reward: int = Field(gt=0)
    criteria: AchievementCriteria


class AchievementOut(CamelModel):
    id: int
    name: str
    description: str
    icon: str
    xp_reward: int
    criteria: dict


class AchievementWithStatus(AchievementOut):
    earned: bool = False
    earned_at: Optional[datetime] = None


class EarnedAchievement(CamelModel):
    achievement_id: int
    earned_at: datetime
    name: Optional[str] = None
    description: Optional[str] = None
    icon: Optional[str] = None
    xp_reward: Optional[int] = None


class ScenarioUpdate(CamelModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, min_length=1, max_length=1000)
    type: Optional[Literal["lab", "scenario", "challenge"]] = None
    domain_id: Optional[int] = Field(default=None, gt=0)
    difficulty: Optional[Literal["beginner", "intermediate", "advanced", "expert"]] = None
    estimated_time: Optional[int] = Field(default=None, gt=0)
    xp_reward: Optional[int] = Field(default=None, gt=0)
    content: Optional[ScenarioContent] = None
