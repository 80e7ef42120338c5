"""Question catalog and activity configuration repository."""
from __future__ import annotations

import json
import logging
import math
from typing import Any, Dict, Iterable, List, Mapping, Optional

from pydantic import ValidationError as PydanticValidationError

import db
from errors import ConflictError, NotFoundError, ValidationError
from schemas import ActivityConfig, ImportRecordResult, ImportReport, Question, QuestionPage

logger = logging.getLogger(__name__)

# Spreadsheet exports store nested fields as JSON text.
JSON_ENCODED_FIELDS = (
    "items",
    "question_items",
    "answer",
    "match_pairs",
    "presentation",
    "hints",
    "assets",
    "analytics_tags",
)
# A plain-text cell in one of these columns is a single-element list.
LIST_FIELDS = ("items", "question_items", "answer", "analytics_tags")


def describe_validation_error(exc: PydanticValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ())) or "question"
        parts.append(f"{location}: {error.get('msg')}")
    return "; ".join(parts)


def _question_from_row(row) -> Question:
    payload = db.decode_json_field(row["payload"], {}) or {}
    payload["created_at"] = row["created_at"]
    payload["updated_at"] = row["updated_at"]
    return Question.model_validate(payload)


def _config_from_row(row) -> ActivityConfig:
    payload = db.decode_json_field(row["payload"], {}) or {}
    payload["created_at"] = row["created_at"]
    payload["updated_at"] = row["updated_at"]
    return ActivityConfig.model_validate(payload)


def decode_record(record: Mapping[str, Any]) -> Dict[str, Any]:
    """Decode JSON-string columns and normalise legacy keys of an import record."""
    decoded = dict(record)
    for field in JSON_ENCODED_FIELDS:
        value = decoded.get(field)
        if isinstance(value, str):
            text = value.strip()
            if not text:
                decoded.pop(field)
                continue
            if text[0] in "[{":
                try:
                    decoded[field] = json.loads(text)
                except json.JSONDecodeError as exc:
                    raise ValidationError(f"{field} is not valid JSON: {exc.msg}") from exc
            elif field in LIST_FIELDS:
                decoded[field] = [text]
    if "question_items" in decoded and "items" not in decoded:
        decoded["items"] = decoded.pop("question_items")
    else:
        decoded.pop("question_items", None)
    return decoded


def validate_question(payload: Mapping[str, Any]) -> Question:
    if not isinstance(payload, Mapping):
        raise ValidationError("question payload must be an object")
    try:
        return Question.model_validate(decode_record(payload))
    except PydanticValidationError as exc:
        raise ValidationError(describe_validation_error(exc), details={"errors": exc.errors()}) from exc


def canonical_versions(questions: Iterable[Question]) -> List[Question]:
    """Pick one question per ``(activity, level, question_no)``.

    Highest ``version`` wins; ties go to the most recently updated row and then
    to the lexicographically greatest ``id``. The result is ordered by
    ``(level, question_no)`` with the activity as tie-break.
    """
    best: Dict[tuple, Question] = {}
    for question in questions:
        key = (question.activity, question.level, question.question_no)
        current = best.get(key)
        if current is None or _canonical_rank(question) > _canonical_rank(current):
            best[key] = question
    return sorted(best.values(), key=lambda q: (q.level, q.question_no, q.activity))


def _canonical_rank(question: Question) -> tuple:
    updated = question.updated_at.isoformat() if question.updated_at else ""
    return (question.version, updated, question.id)


class QuestionCatalog:
    """Read and administer the question bank stored in ``db``."""

    def get(self, question_id: str) -> Question:
        row = db.get_question(question_id)
        if row is None:
            raise NotFoundError(f"question not found: {question_id}", details={"question_id": question_id})
        return _question_from_row(row)

    def list(
        self,
        activity: Optional[str] = None,
        level: Optional[int] = None,
        *,
        locale: Optional[str] = None,
        include_all_versions: bool = False,
        con=None,
    ) -> List[Question]:
        activity = activity.strip().lower() if activity else None
        rows = db.list_questions(activity, level, locale=locale or None, con=con)
        questions = [_question_from_row(row) for row in rows]
        if include_all_versions:
            return questions
        return canonical_versions(questions)

    def search(
        self,
        activity: Optional[str] = None,
        level: Optional[int] = None,
        *,
        locale: Optional[str] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 50,
        include_all_versions: bool = False,
    ) -> QuestionPage:
        """One page of the admin listing.

        ``search`` matches ``id`` or ``question_text`` case-insensitively;
        ``total`` counts every match, not just the returned page.
        """
        if page < 1:
            raise ValidationError("page must be at least 1")
        if limit < 1:
            raise ValidationError("limit must be at least 1")
        questions = self.list(activity, level, locale=locale, include_all_versions=include_all_versions)
        needle = (search or "").strip().casefold()
        if needle:
            questions = [
                q for q in questions
                if needle in q.id.casefold() or needle in q.question_text.casefold()
            ]
        total = len(questions)
        start = (page - 1) * limit
        return QuestionPage(
            questions=questions[start:start + limit],
            total=total,
            page=page,
            limit=limit,
            total_pages=math.ceil(total / limit),
        )

    def resolve(self, activity: str, level: int, question_no: int) -> Question:
        for question in self.list(activity, level):
            if question.question_no == question_no:
                return question
        raise NotFoundError(
            f"no question {activity}/{level}/{question_no}",
            details={"activity": activity, "level": level, "question_no": question_no},
        )

    def question_numbers(self, activity: str, level: int, con=None) -> set[int]:
        return {question.question_no for question in self.list(activity, level, con=con)}

    def activities(self) -> List[str]:
        return sorted({question.activity for question in self.list()})

    def create(self, payload: Mapping[str, Any]) -> Question:
        question = validate_question(payload)
        db.insert_question(self._storable(question))
        logger.info("Created question %s (%s level %s)", question.id, question.activity, question.level)
        return self.get(question.id)

    def update(self, question_id: str, changes: Mapping[str, Any]) -> Question:
        current = self.get(question_id)
        if "id" in changes and changes["id"] != question_id:
            raise ValidationError("question id cannot be changed")
        merged = current.model_dump(mode="json", exclude={"created_at", "updated_at"})
        merged.update(decode_record({k: v for k, v in changes.items() if k != "id"}))
        question = validate_question(merged)
        db.upsert_question(self._storable(question))
        return self.get(question_id)

    def delete(self, question_id: str) -> int:
        removed = db.delete_question(question_id)
        if removed is None:
            raise NotFoundError(f"question not found: {question_id}", details={"question_id": question_id})
        logger.info("Deleted question %s with %s attempt(s)", question_id, removed)
        return removed

    def import_questions(self, records: Iterable[Any]) -> ImportReport:
        report = ImportReport()
        for index, record in enumerate(records):
            record_id = record.get("id") if isinstance(record, Mapping) else None
            record_id = str(record_id) if record_id not in (None, "") else None
            try:
                question = validate_question(record)
                db.upsert_question(self._storable(question))
            except (ValidationError, ConflictError) as exc:
                report.failed += 1
                report.results.append(
                    ImportRecordResult(index=index, id=record_id, ok=False, error=exc.message)
                )
                continue
            report.succeeded += 1
            report.results.append(ImportRecordResult(index=index, id=question.id, ok=True))
        logger.info("Imported questions: %s succeeded, %s failed", report.succeeded, report.failed)
        return report

    @staticmethod
    def _storable(question: Question) -> Dict[str, Any]:
        return question.model_dump(mode="json", exclude={"created_at", "updated_at"})


class ActivityConfigRepository:
    """Per-activity tuning (levels, star thresholds, unlock policy)."""

    def get_config(self, activity: str, con=None) -> Optional[ActivityConfig]:
        row = db.get_config(activity.strip().lower(), con=con)
        return _config_from_row(row) if row is not None else None

    def require_config(self, activity: str) -> ActivityConfig:
        config = self.get_config(activity)
        if config is None:
            raise NotFoundError(f"activity config not found: {activity}", details={"activity": activity})
        return config

    def list_configs(self) -> List[ActivityConfig]:
        return [_config_from_row(row) for row in db.list_configs()]

    def create_config(self, payload: Mapping[str, Any]) -> ActivityConfig:
        config = self._validate(payload)
        db.insert_config(config.model_dump(mode="json", exclude={"created_at", "updated_at"}))
        logger.info("Created activity config %s", config.activity)
        return self.require_config(config.activity)

    def update_config(self, activity: str, changes: Mapping[str, Any]) -> ActivityConfig:
        current = self.require_config(activity)
        merged = current.model_dump(mode="json", exclude={"created_at", "updated_at"})
        merged.update({k: v for k, v in changes.items() if k != "activity"})
        config = self._validate(merged)
        db.update_config(config.model_dump(mode="json", exclude={"created_at", "updated_at"}))
        return self.require_config(config.activity)

    @staticmethod
    def _validate(payload: Mapping[str, Any]) -> ActivityConfig:
        try:
            return ActivityConfig.model_validate(dict(payload))
        except PydanticValidationError as exc:
            raise ValidationError(describe_validation_error(exc), details={"errors": exc.errors()}) from exc


DEFAULT_CONFIGS: List[Dict[str, Any]] = [
    {
        "activity": "arrange",
        "display_name": "Arrange",
        "description": "Put the items in the right order.",
        "stars_system": {"perfect_time_seconds": 30, "good_time_seconds": 60, "pass_time_seconds": 120},
    },
    {
        "activity": "match",
        "display_name": "Match",
        "description": "Connect each item with its partner.",
        "stars_system": {"perfect_time_seconds": 40, "good_time_seconds": 80, "pass_time_seconds": 150},
    },
    {
        "activity": "tap_sequence",
        "display_name": "Tap Sequence",
        "description": "Tap the items in the correct sequence.",
        "stars_system": {"perfect_time_seconds": 25, "good_time_seconds": 50, "pass_time_seconds": 100},
    },
]


def seed_default_configs(repository: Optional[ActivityConfigRepository] = None) -> List[str]:
    """Create the built-in activity configs that are missing; returns the created keys."""
    repository = repository or ActivityConfigRepository()
    created = []
    for payload in DEFAULT_CONFIGS:
        if repository.get_config(payload["activity"]) is not None:
            continue
        repository.create_config(payload)
        created.append(payload["activity"])
    return created
