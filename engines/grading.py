"""Attempt grading for ordering and matching puzzles.

Grading is pure: it looks only at the question and the learner's raw
submission and never touches storage. Submissions arrive as arbitrary JSON,
so they are first coerced into one of three explicit shapes and the rules
below are applied to that shape:

1. Match questions (``display_type == "match"`` with declared pairs) expect a
   pair map that agrees with every declared pair.
2. Questions with a single-element answer accept the bare value or the
   one-element list.
3. Everything else compares the compact JSON rendering of the submission with
   the answer, preserving order.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Union

from schemas import DEFAULT_STARS_SYSTEM, Question, StarsSystem

GOOD_TIME_FACTOR = 0.8


@dataclass(frozen=True)
class SequenceSubmission:
    values: List[Any]


@dataclass(frozen=True)
class PairMapSubmission:
    pairs: Dict[str, Any]


@dataclass(frozen=True)
class ScalarSubmission:
    value: Any


Submission = Union[SequenceSubmission, PairMapSubmission, ScalarSubmission]


@dataclass
class GradeResult:
    success: bool
    stars_earned: int
    correct_answer: Any


def coerce_submission(raw: Any) -> Submission:
    if isinstance(raw, (SequenceSubmission, PairMapSubmission, ScalarSubmission)):
        return raw
    if isinstance(raw, (list, tuple)):
        return SequenceSubmission(list(raw))
    if isinstance(raw, Mapping):
        return PairMapSubmission({str(key): value for key, value in raw.items()})
    return ScalarSubmission(raw)


def expected_shape(question: Question) -> str:
    return "pair_map" if question.is_match else "sequence"


def _canonical_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"), default=str)


def _raw(submission: Submission) -> Any:
    if isinstance(submission, SequenceSubmission):
        return submission.values
    if isinstance(submission, PairMapSubmission):
        return submission.pairs
    return submission.value


def is_correct(question: Question, submission: Any) -> bool:
    shaped = coerce_submission(submission)

    if question.is_match:
        if not isinstance(shaped, PairMapSubmission):
            return False
        return all(
            pair.question_value in shaped.pairs
            and shaped.pairs[pair.question_value] == pair.answer_value
            for pair in question.match_pairs
        )

    if len(question.answer) == 1:
        expected = question.answer[0]
        if isinstance(shaped, ScalarSubmission):
            return isinstance(shaped.value, str) and shaped.value == expected
        return _canonical_json(_raw(shaped)) == _canonical_json(question.answer)

    return _canonical_json(_raw(shaped)) == _canonical_json(question.answer)


def stars_for(question: Question, time_taken_seconds: float, stars_system: Optional[StarsSystem] = None) -> int:
    """Stars for a successful attempt, by speed tier."""
    system = stars_system or DEFAULT_STARS_SYSTEM
    perfect = question.stars_for_perfect
    if time_taken_seconds <= system.perfect_time_seconds:
        return perfect
    if time_taken_seconds <= system.good_time_seconds:
        return math.ceil(perfect * GOOD_TIME_FACTOR)
    return 1


def correct_answer_for(question: Question) -> Any:
    if question.is_match:
        return question.match_mapping()
    return list(question.answer)


def grade(
    question: Question,
    raw_submission: Any,
    time_taken_seconds: float = 0,
    stars_system: Optional[StarsSystem] = None,
) -> GradeResult:
    success = is_correct(question, raw_submission)
    stars = stars_for(question, max(0.0, float(time_taken_seconds or 0)), stars_system) if success else 0
    return GradeResult(success=success, stars_earned=stars, correct_answer=correct_answer_for(question))


__all__ = [
    "SequenceSubmission",
    "PairMapSubmission",
    "ScalarSubmission",
    "Submission",
    "GradeResult",
    "coerce_submission",
    "expected_shape",
    "is_correct",
    "stars_for",
    "correct_answer_for",
    "grade",
]
