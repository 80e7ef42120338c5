"""Submission flow and learner-facing reads for puzzle activities."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional, Protocol

import db
import xapi
from catalog import ActivityConfigRepository, QuestionCatalog
from engines.aggregator import DifficultyPolicy, ProgressAggregator
from engines.grading import grade
from engines.ledger import AttemptLedger
from engines.progression import ProgressUpdate, UserProgressTracker
from env_validation import get_env_int
from errors import AccessDeniedError, ValidationError
from schemas import (
    Attempt,
    AttemptOutcome,
    LevelOverview,
    Question,
    QuestionsWithProgress,
    UserProgress,
)

logger = logging.getLogger(__name__)


class AccessPolicy(Protocol):
    def may_access(self, user_id: str, question: Question) -> bool:
        ...


class AllowAllAccess:
    def may_access(self, user_id: str, question: Question) -> bool:
        return True


class FreeLevelAccess:
    """Levels up to ``free_levels`` are open; higher ones need a subscription."""

    def __init__(self, free_levels: int, has_subscription: Callable[[str], bool]) -> None:
        if free_levels < 0:
            raise ValueError("free_levels must not be negative")
        self.free_levels = int(free_levels)
        self._has_subscription = has_subscription

    def may_access(self, user_id: str, question: Question) -> bool:
        if question.level <= self.free_levels:
            return True
        return bool(self._has_subscription(user_id))


def access_policy_from_env(has_subscription: Optional[Callable[[str], bool]] = None) -> AccessPolicy:
    free_levels = get_env_int("FREE_LEVELS")
    if free_levels is None:
        return AllowAllAccess()
    return FreeLevelAccess(free_levels, has_subscription or (lambda user_id: False))


class ActivityService:
    """Grades submissions and keeps the ledger, progress and analytics in step."""

    def __init__(
        self,
        catalog: Optional[QuestionCatalog] = None,
        configs: Optional[ActivityConfigRepository] = None,
        ledger: Optional[AttemptLedger] = None,
        tracker: Optional[UserProgressTracker] = None,
        aggregator: Optional[ProgressAggregator] = None,
        access: Optional[AccessPolicy] = None,
        difficulty: Optional[DifficultyPolicy] = None,
    ) -> None:
        self.catalog = catalog or QuestionCatalog()
        self.configs = configs or ActivityConfigRepository()
        self.ledger = ledger or AttemptLedger()
        self.tracker = tracker or UserProgressTracker(self.catalog, self.ledger, self.configs)
        self.aggregator = aggregator or ProgressAggregator(self.catalog, self.ledger, difficulty)
        self.access = access or AllowAllAccess()

    def submit_attempt(
        self,
        user_id: str,
        question_id: str,
        submission: Any,
        time_taken_seconds: float = 0,
        hints_used: int = 0,
        client_metadata: Optional[Dict[str, Any]] = None,
    ) -> AttemptOutcome:
        if not user_id or not str(user_id).strip():
            raise ValidationError("user_id is required")
        if submission is None:
            raise ValidationError("submission is required")
        if time_taken_seconds is not None and time_taken_seconds < 0:
            raise ValidationError("time_taken_seconds must not be negative")
        if hints_used is not None and hints_used < 0:
            raise ValidationError("hints_used must not be negative")

        question = self.catalog.get(question_id)
        if not self.access.may_access(user_id, question):
            raise AccessDeniedError(
                f"level {question.level} of {question.activity} requires a subscription",
                details={"activity": question.activity, "level": question.level},
            )

        config = self.configs.get_config(question.activity)
        result = grade(
            question,
            submission,
            time_taken_seconds or 0,
            config.stars_system if config else None,
        )

        attempt = Attempt(
            user_id=user_id,
            question_id=question.id,
            activity=question.activity,
            level=question.level,
            question_no=question.question_no,
            submission=submission,
            success=result.success,
            time_taken_seconds=time_taken_seconds or 0,
            hints_used=hints_used or 0,
            stars_earned=result.stars_earned,
            client_metadata=client_metadata or {},
        )

        update: Optional[ProgressUpdate] = None
        with self.tracker.lock(user_id, question.activity), db.transaction() as con:
            stored = self.ledger.record(attempt, con=con)
            if result.success:
                update = self.tracker.apply_success(user_id, question, con=con)

        logger.info(
            "User %s answered %s (success=%s, stars=%s)",
            user_id, question.id, result.success, result.stars_earned,
        )
        self._record_events(stored, update)

        return AttemptOutcome(
            success=result.success,
            stars_earned=result.stars_earned,
            correct_answer=None if result.success else result.correct_answer,
            level_advanced=bool(update and update.level_advanced),
            attempt=stored,
            progress=update.progress if update else None,
        )

    def _record_events(self, attempt: Attempt, update: Optional[ProgressUpdate]) -> None:
        xapi.record_event(
            attempt.user_id,
            "attempt_completed",
            activity=attempt.activity,
            level=attempt.level,
            question_no=attempt.question_no,
            data={
                "success": attempt.success,
                "time_taken_seconds": attempt.time_taken_seconds,
                "hints_used": attempt.hints_used,
                "stars_earned": attempt.stars_earned,
            },
            client_metadata=attempt.client_metadata,
        )
        if update and update.level_advanced:
            xapi.record_event(
                attempt.user_id,
                "level_completed",
                activity=attempt.activity,
                level=update.completed_level,
                data={"next_level": update.progress.for_activity(attempt.activity).level},
            )

    def get_levels(self, user_id: str, activity: str) -> LevelOverview:
        return self.aggregator.get_levels(user_id, activity)

    def get_questions_for_level(self, user_id: str, activity: str, level: int) -> QuestionsWithProgress:
        return self.aggregator.get_questions_with_progress(user_id, activity, level)

    def get_user_state(self, user_id: str) -> UserProgress:
        return self.tracker.get_state(user_id)

    def list_user_attempts(
        self,
        user_id: str,
        activity: Optional[str] = None,
        level: Optional[int] = None,
        success: Optional[bool] = None,
        limit: int = 100,
    ) -> List[Attempt]:
        return self.ledger.query(user_id=user_id, activity=activity, level=level, success=success, limit=limit)
