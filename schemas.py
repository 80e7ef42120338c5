"""Pydantic schemas for activity content, attempts, progress and read views."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, Field, field_validator, model_validator

__all__ = [
    "DisplayType",
    "EventType",
    "Hint",
    "Presentation",
    "MatchPair",
    "QuestionAssets",
    "Question",
    "StarsSystem",
    "ActivityConfig",
    "Attempt",
    "ActivityProgress",
    "UserProgress",
    "LevelSummary",
    "ProgressPointer",
    "LevelOverview",
    "QuestionWithProgress",
    "LevelProgress",
    "QuestionsWithProgress",
    "AttemptOutcome",
    "ImportRecordResult",
    "ImportReport",
    "AnalyticsEvent",
    "DEFAULT_STARS_SYSTEM",
]

DisplayType = Literal[
    "drag_drop",
    "tap_sequence",
    "multiple_choice",
    "match",
    "image_text",
    "text_image",
]

EventType = Literal[
    "attempt_completed",
    "question_started",
    "hint_used",
    "level_completed",
    "activity_opened",
]


class Hint(BaseModel):
    type: Literal["text", "reveal", "audio"]
    value: str
    cost: float = Field(default=0, ge=0)


class Presentation(BaseModel):
    shuffle: bool = True
    display_type: DisplayType = "drag_drop"


class MatchPair(BaseModel):
    question_value: str
    answer_value: str
    question_image: Optional[str] = None
    answer_image: Optional[str] = None


class QuestionAssets(BaseModel):
    audio_prompt: Optional[str] = None
    image_background: Optional[str] = None


class Question(BaseModel):
    """Catalog entry. ``(activity, level, question_no)`` may repeat across versions."""

    id: str = Field(min_length=1, description="Stable identifier, e.g. arr-001-1-01.")
    activity: str = Field(min_length=1, description="Puzzle type: arrange, match, tap_sequence, ...")
    level: int = Field(ge=1)
    question_no: int = Field(ge=1)
    version: int = Field(default=1, ge=1)
    locale: str = "en"
    items: List[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("items", "question_items"),
        description="Ordered items shown to the learner.",
    )
    answer: List[str] = Field(default_factory=list)
    match_pairs: List[MatchPair] = Field(default_factory=list)
    presentation: Presentation = Field(default_factory=Presentation)
    hints: List[Hint] = Field(default_factory=list)
    time_limit_seconds: float = Field(default=0, ge=0)
    stars_for_perfect: int = Field(default=3, ge=1, le=3)
    difficulty: Literal["easy", "medium", "hard"] = "easy"
    question_text: str = ""
    image_url: str = ""
    assets: QuestionAssets = Field(default_factory=QuestionAssets)
    analytics_tags: List[str] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("id", "activity", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip()
        return value

    @field_validator("activity")
    @classmethod
    def _lower_activity(cls, value: str) -> str:
        return value.lower()

    @model_validator(mode="after")
    def _requires_answer_key(self) -> "Question":
        if not self.answer and not self.match_pairs:
            raise ValueError("question must define an answer or match_pairs")
        return self

    @property
    def is_match(self) -> bool:
        """True when the question is graded by its declared match pairs."""
        return self.presentation.display_type == "match" and bool(self.match_pairs)

    def match_mapping(self) -> Dict[str, str]:
        return {pair.question_value: pair.answer_value for pair in self.match_pairs}


class StarsSystem(BaseModel):
    perfect_time_seconds: float = Field(default=30, gt=0)
    good_time_seconds: float = Field(default=60, gt=0)
    pass_time_seconds: float = Field(default=120, gt=0)

    @model_validator(mode="after")
    def _ordered(self) -> "StarsSystem":
        if not self.perfect_time_seconds <= self.good_time_seconds <= self.pass_time_seconds:
            raise ValueError("stars_system thresholds must satisfy perfect <= good <= pass")
        return self


DEFAULT_STARS_SYSTEM = StarsSystem()


class ActivityConfig(BaseModel):
    activity: str = Field(min_length=1)
    display_name: str = Field(min_length=1)
    description: Optional[str] = None
    enabled: bool = True
    max_levels: int = Field(default=10, ge=1)
    questions_per_level: int = Field(default=5, ge=1)
    min_success_rate: float = Field(default=0.7, ge=0.0, le=1.0)
    unlock_on_first_success: bool = False
    stars_system: StarsSystem = Field(default_factory=StarsSystem)
    level_configs: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("activity", mode="before")
    @classmethod
    def _normalise_activity(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value


class Attempt(BaseModel):
    """Immutable ledger entry; activity/level/question_no are captured at submission."""

    id: Optional[int] = None
    user_id: str = Field(min_length=1)
    question_id: str = Field(min_length=1)
    activity: str = Field(min_length=1)
    level: Optional[int] = None
    question_no: Optional[int] = None
    submission: Any = None
    success: bool
    time_taken_seconds: float = Field(default=0, ge=0)
    hints_used: int = Field(default=0, ge=0)
    stars_earned: int = Field(default=0, ge=0, le=3)
    client_metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None


class ActivityProgress(BaseModel):
    level: int = Field(default=1, ge=1)
    highest_question_no: int = Field(default=0, ge=0)


class UserProgress(BaseModel):
    user_id: str
    unlocked: Dict[str, ActivityProgress] = Field(default_factory=dict)
    last_played: Optional[datetime] = None
    version: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def for_activity(self, activity: str) -> ActivityProgress:
        """Return the pointer for ``activity`` or the level-1 default."""
        return self.unlocked.get(activity) or ActivityProgress()


class LevelSummary(BaseModel):
    level: int
    title: str
    total_questions: int
    completed_questions: int
    is_completed: bool
    difficulty: str
    is_current: bool
    is_unlocked: bool = True


class ProgressPointer(BaseModel):
    current_level: int
    highest_question_no: int
    total_levels: int


class LevelOverview(BaseModel):
    activity: str
    levels: List[LevelSummary]
    user_progress: ProgressPointer


class QuestionWithProgress(Question):
    completed: bool = False


class LevelProgress(BaseModel):
    completed_questions: int
    total_questions: int
    current_level: int
    highest_question_no: int
    completed_question_numbers: List[int]


class QuestionsWithProgress(BaseModel):
    questions: List[QuestionWithProgress]
    next_incomplete_index: int
    progress: LevelProgress


class AttemptOutcome(BaseModel):
    success: bool
    stars_earned: int
    correct_answer: Optional[Any] = Field(
        default=None,
        description="Only populated for unsuccessful attempts.",
    )
    level_advanced: bool = False
    attempt: Attempt
    progress: Optional[UserProgress] = None


class QuestionPage(BaseModel):
    questions: List[Question]
    total: int
    page: int
    limit: int
    total_pages: int


class ImportRecordResult(BaseModel):
    index: int
    id: Optional[str] = None
    ok: bool
    error: Optional[str] = None


class ImportReport(BaseModel):
    succeeded: int = 0
    failed: int = 0
    results: List[ImportRecordResult] = Field(default_factory=list)


class AnalyticsEvent(BaseModel):
    id: Optional[int] = None
    user_id: str = Field(min_length=1)
    event_type: EventType
    activity: Optional[str] = None
    level: Optional[int] = None
    question_no: Optional[int] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    client_metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
