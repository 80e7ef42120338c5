"""Append-only record of graded attempts."""

from __future__ import annotations

import logging
import sqlite3
from typing import Any, List, Mapping, Optional, Union

from pydantic import ValidationError as PydanticValidationError

import db
from errors import ValidationError
from schemas import Attempt

_LOGGER = logging.getLogger(__name__)

REQUIRED_FIELDS = ("user_id", "question_id", "activity", "submission", "success")


def _attempt_from_row(row: sqlite3.Row) -> Attempt:
    return Attempt(
        id=row["id"],
        user_id=row["user_id"],
        question_id=row["question_id"],
        activity=row["activity"],
        level=row["level"],
        question_no=row["question_no"],
        submission=db.decode_json_field(row["submission"]),
        success=bool(row["success"]),
        time_taken_seconds=row["time_taken_seconds"] or 0,
        hints_used=row["hints_used"] or 0,
        stars_earned=row["stars_earned"] or 0,
        client_metadata=db.decode_json_field(row["client_metadata"], {}) or {},
        created_at=row["created_at"],
    )


class AttemptLedger:
    """Stores attempts and answers the counting questions progression needs."""

    def record(
        self,
        attempt: Union[Attempt, Mapping[str, Any]],
        con: Optional[sqlite3.Connection] = None,
    ) -> Attempt:
        if isinstance(attempt, Attempt):
            payload = attempt.model_dump()
        else:
            payload = dict(attempt)
            missing = [field for field in REQUIRED_FIELDS if payload.get(field) in (None, "")]
            if missing:
                raise ValidationError(f"attempt missing required field(s): {', '.join(missing)}")
            try:
                payload = Attempt.model_validate(payload).model_dump()
            except PydanticValidationError as exc:
                raise ValidationError(str(exc)) from exc
        if payload.get("submission") is None:
            raise ValidationError("attempt missing required field(s): submission")
        payload.pop("id", None)
        if payload.get("created_at") is not None:
            payload["created_at"] = payload["created_at"].isoformat()
        stored = db.insert_attempt(payload, con=con)
        _LOGGER.debug(
            "Recorded attempt %s for %s on %s (success=%s)",
            stored["id"], stored["user_id"], stored["question_id"], stored["success"],
        )
        return Attempt.model_validate(stored)

    def query(
        self,
        user_id: Optional[str] = None,
        activity: Optional[str] = None,
        level: Optional[int] = None,
        success: Optional[bool] = None,
        limit: int = 1000,
        since: Optional[str] = None,
    ) -> List[Attempt]:
        rows = db.list_attempts(
            user_id=user_id, activity=activity, level=level, success=success, since=since, limit=limit
        )
        return [_attempt_from_row(row) for row in rows]

    def distinct_question_numbers(
        self,
        user_id: str,
        activity: str,
        level: int,
        success: bool = True,
        con: Optional[sqlite3.Connection] = None,
    ) -> set[int]:
        return db.distinct_question_numbers(user_id, activity, level, success=success, con=con)

    def completed_by_level(self, user_id: str, activity: str) -> dict[int, set[int]]:
        return db.completed_by_level(user_id, activity)

    def count_for_question(self, question_id: str) -> int:
        return db.count_attempts_for_question(question_id)
