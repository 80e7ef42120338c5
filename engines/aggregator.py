"""Read-only views combining the catalog, the ledger and user progress."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, List, Optional

import db
from catalog import QuestionCatalog
from engines.ledger import AttemptLedger
from errors import NotFoundError
from schemas import (
    ActivityProgress,
    LevelOverview,
    LevelProgress,
    LevelSummary,
    ProgressPointer,
    Question,
    QuestionWithProgress,
    QuestionsWithProgress,
)


@dataclass(frozen=True)
class DifficultyPolicy:
    """Maps a level number to the difficulty label shown on the level map."""

    easy_max_level: int = 2
    medium_max_level: int = 4

    def __call__(self, level: int) -> str:
        if level <= self.easy_max_level:
            return "easy"
        if level <= self.medium_max_level:
            return "medium"
        return "hard"


class ProgressAggregator:
    def __init__(
        self,
        catalog: Optional[QuestionCatalog] = None,
        ledger: Optional[AttemptLedger] = None,
        difficulty: Optional[DifficultyPolicy] = None,
    ) -> None:
        self.catalog = catalog or QuestionCatalog()
        self.ledger = ledger or AttemptLedger()
        self.difficulty = difficulty or DifficultyPolicy()

    def _pointer(self, user_id: str, activity: str) -> ActivityProgress:
        row = db.get_user_state(user_id)
        if row is None:
            return ActivityProgress()
        unlocked = db.decode_json_field(row["unlocked"], {}) or {}
        raw = unlocked.get(activity)
        return ActivityProgress.model_validate(raw) if raw else ActivityProgress()

    def get_levels(self, user_id: str, activity: str) -> LevelOverview:
        activity = activity.strip().lower()
        questions = self.catalog.list(activity)
        if not questions:
            raise NotFoundError(f"no questions for activity: {activity}", details={"activity": activity})

        by_level: Dict[int, List[Question]] = defaultdict(list)
        for question in questions:
            by_level[question.level].append(question)

        solved = self.ledger.completed_by_level(user_id, activity)
        pointer = self._pointer(user_id, activity)

        levels = []
        for level in sorted(by_level):
            numbers = {question.question_no for question in by_level[level]}
            completed = len(numbers & solved.get(level, set()))
            levels.append(
                LevelSummary(
                    level=level,
                    title=f"Level {level}",
                    total_questions=len(numbers),
                    completed_questions=completed,
                    is_completed=completed >= len(numbers),
                    difficulty=self.difficulty(level),
                    is_current=level == pointer.level,
                    is_unlocked=True,
                )
            )

        return LevelOverview(
            activity=activity,
            levels=levels,
            user_progress=ProgressPointer(
                current_level=pointer.level,
                highest_question_no=pointer.highest_question_no,
                total_levels=len(levels),
            ),
        )

    def get_questions_with_progress(self, user_id: str, activity: str, level: int) -> QuestionsWithProgress:
        activity = activity.strip().lower()
        questions = sorted(self.catalog.list(activity, level), key=lambda q: q.question_no)
        if not questions:
            raise NotFoundError(
                f"no questions for {activity} level {level}",
                details={"activity": activity, "level": level},
            )

        solved = self.ledger.distinct_question_numbers(user_id, activity, level, success=True)
        annotated = [
            QuestionWithProgress(**question.model_dump(), completed=question.question_no in solved)
            for question in questions
        ]
        next_index = next(
            (index for index, question in enumerate(annotated) if not question.completed),
            len(annotated) - 1,
        )
        pointer = self._pointer(user_id, activity)
        completed_numbers = sorted(q.question_no for q in annotated if q.completed)

        return QuestionsWithProgress(
            questions=annotated,
            next_incomplete_index=next_index,
            progress=LevelProgress(
                completed_questions=len(completed_numbers),
                total_questions=len(annotated),
                current_level=pointer.level,
                highest_question_no=pointer.highest_question_no,
                completed_question_numbers=completed_numbers,
            ),
        )
