"""Analytics event recording with optional xAPI forwarding.

Every learner event is persisted to the local ``analytics_events`` table. When
``LRS_URL`` is configured an equivalent xAPI statement, validated against the
small profile below, is forwarded to the Learning Record Store asynchronously
with retry/backoff so that a slow LRS never delays a learner's response.
"""

from __future__ import annotations

import asyncio
import logging
import os
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

import requests
from pydantic import ValidationError as PydanticValidationError

import db
from errors import ActivityError, AnalyticsSinkError, ValidationError
from schemas import AnalyticsEvent

LOGGER = logging.getLogger("activities.xapi")

# ---------------------------------------------------------------------------
# xAPI profile definition
# ---------------------------------------------------------------------------

XAPI_PROFILE_VERBS: dict[str, dict[str, str]] = {
    "http://adlnet.gov/expapi/verbs/answered": {
        "display": "answered",
        "description": "Learner submitted an answer to a puzzle question.",
    },
    "http://adlnet.gov/expapi/verbs/attempted": {
        "display": "attempted",
        "description": "Learner opened a question and started working on it.",
    },
    "http://adlnet.gov/expapi/verbs/interacted": {
        "display": "interacted",
        "description": "Learner revealed a hint for the current question.",
    },
    "http://adlnet.gov/expapi/verbs/completed": {
        "display": "completed",
        "description": "Learner solved every question of a level.",
    },
    "http://adlnet.gov/expapi/verbs/launched": {
        "display": "launched",
        "description": "Learner opened an activity.",
    },
}

EVENT_VERBS: dict[str, str] = {
    "attempt_completed": "http://adlnet.gov/expapi/verbs/answered",
    "question_started": "http://adlnet.gov/expapi/verbs/attempted",
    "hint_used": "http://adlnet.gov/expapi/verbs/interacted",
    "level_completed": "http://adlnet.gov/expapi/verbs/completed",
    "activity_opened": "http://adlnet.gov/expapi/verbs/launched",
}

_ALLOWED_OBJECT_PREFIXES: Sequence[str] = (
    "activity:",
    "https://",
    "http://",
    "urn:",
)

_CONTEXT_EXTENSION_SCHEMA: dict[str, type] = {
    "event_type": str,
    "activity": str,
    "level": int,
    "question_no": int,
    "data": dict,
    "client_metadata": dict,
}


def _coerce_extension(key: str, value: Any) -> Any:
    expected = _CONTEXT_EXTENSION_SCHEMA[key]
    if value is None:
        return None
    if expected is int:
        return int(value)
    if expected is dict:
        if not isinstance(value, dict):
            raise ValueError(f"{key} extension must be an object")
        return value
    return str(value)


def validate_statement(statement: Dict[str, Any]) -> Dict[str, Any]:
    """Validate and normalise an xAPI statement according to the local profile."""

    if not isinstance(statement, dict):
        raise ValueError("statement must be a dict")

    actor = statement.get("actor")
    if not isinstance(actor, dict):
        raise ValueError("actor must be provided")
    account = actor.get("account") if isinstance(actor.get("account"), dict) else None
    if not account or not isinstance(account.get("name"), str) or not account.get("name").strip():
        raise ValueError("actor.account.name is required")
    if not isinstance(account.get("homePage"), str) or not account["homePage"].strip():
        raise ValueError("actor.account.homePage is required")

    verb = statement.get("verb")
    if not isinstance(verb, dict) or not isinstance(verb.get("id"), str):
        raise ValueError("verb.id must be provided")
    verb_id = verb["id"].strip()
    if verb_id not in XAPI_PROFILE_VERBS:
        allowed = ", ".join(sorted(XAPI_PROFILE_VERBS))
        raise ValueError(f"Unsupported verb '{verb_id}'. Allowed verbs: {allowed}")
    verb["id"] = verb_id
    verb.setdefault("display", {"en-US": XAPI_PROFILE_VERBS[verb_id]["display"]})

    obj = statement.get("object")
    if not isinstance(obj, dict) or not isinstance(obj.get("id"), str) or not obj["id"].strip():
        raise ValueError("object.id must be provided")
    obj["id"] = obj["id"].strip()
    if not any(obj["id"].startswith(prefix) for prefix in _ALLOWED_OBJECT_PREFIXES):
        raise ValueError(
            "object.id must start with one of the allowed prefixes: "
            + ", ".join(_ALLOWED_OBJECT_PREFIXES)
        )

    result = statement.get("result")
    if result is not None:
        if not isinstance(result, dict):
            raise ValueError("result must be a dict when provided")
        score = result.get("score")
        if score is not None:
            if not isinstance(score, dict) or "raw" not in score:
                raise ValueError("result.score.raw is required when score is provided")
            score["raw"] = float(score["raw"])
        if "success" in result:
            result["success"] = bool(result["success"])

    context = statement.get("context") or {}
    if not isinstance(context, dict):
        raise ValueError("context must be a dict")
    extensions = context.get("extensions") or {}
    if not isinstance(extensions, dict):
        raise ValueError("context.extensions must be a dict")

    cleaned_extensions: dict[str, Any] = {}
    for key, value in extensions.items():
        if key not in _CONTEXT_EXTENSION_SCHEMA:
            LOGGER.debug("Dropping unsupported xAPI extension: %s", key)
            continue
        cleaned = _coerce_extension(key, value)
        if cleaned is not None:
            cleaned_extensions[key] = cleaned

    context["platform"] = context.get("platform") or os.getenv("XAPI_PLATFORM", "ActivityProgression")
    context["language"] = context.get("language") or os.getenv("XAPI_LANGUAGE", "en")
    context["extensions"] = cleaned_extensions
    statement["context"] = context
    return statement


def build_statement(event: AnalyticsEvent) -> Dict[str, Any]:
    """Translate a stored analytics event into an xAPI statement."""

    object_id = f"activity:{event.activity or 'unknown'}"
    if event.level is not None:
        object_id += f"/level/{event.level}"
        if event.question_no is not None:
            object_id += f"/question/{event.question_no}"

    statement: Dict[str, Any] = {
        "actor": {
            "account": {
                "homePage": os.getenv("APP_BASE_URL", "https://local.learning"),
                "name": event.user_id,
            }
        },
        "verb": {"id": EVENT_VERBS[event.event_type]},
        "object": {"id": object_id},
        "timestamp": (event.created_at or datetime.now(timezone.utc)).isoformat(),
        "context": {
            "extensions": {
                "event_type": event.event_type,
                "activity": event.activity,
                "level": event.level,
                "question_no": event.question_no,
                "data": event.data,
                "client_metadata": event.client_metadata,
            }
        },
    }
    if event.event_type == "attempt_completed":
        result: Dict[str, Any] = {}
        if "success" in event.data:
            result["success"] = event.data["success"]
        if event.data.get("stars_earned") is not None:
            result["score"] = {"raw": event.data["stars_earned"]}
        if result:
            statement["result"] = result
    return validate_statement(statement)


async def _forward_statement_with_retry(
    statement: Dict[str, Any],
    *,
    lrs_url: str,
    headers: Dict[str, str],
    timeout: float = 5.0,
    max_attempts: int = 3,
) -> None:
    """Forward a statement to the configured LRS with exponential backoff."""

    delay = 0.5
    for attempt in range(1, max_attempts + 1):
        try:
            response = await asyncio.to_thread(
                requests.post,
                lrs_url,
                json=statement,
                headers=headers,
                timeout=timeout,
            )
            if response.status_code < 500:
                return
            LOGGER.warning(
                "LRS responded with status %s on attempt %s", response.status_code, attempt
            )
        except requests.RequestException as exc:
            LOGGER.warning("Failed to forward xAPI statement (attempt %s): %s", attempt, exc)
        if attempt == max_attempts:
            LOGGER.error("Giving up forwarding xAPI statement after %s attempts", max_attempts)
            break
        await asyncio.sleep(delay)
        delay *= 2


def _schedule_forward(statement: Dict[str, Any], *, lrs_url: str, headers: Dict[str, str]) -> None:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None

    coro = _forward_statement_with_retry(statement, lrs_url=lrs_url, headers=headers)

    if loop and loop.is_running():
        loop.create_task(coro)
    else:
        threading.Thread(target=lambda: asyncio.run(coro), daemon=True).start()


def _forward(event: AnalyticsEvent) -> None:
    lrs_url = os.getenv("LRS_URL")
    if not lrs_url:
        return
    try:
        statement = build_statement(event)
    except ValueError as exc:
        LOGGER.warning("Skipping LRS forwarding for event %s: %s", event.id, exc)
        return

    headers = {
        "Content-Type": "application/json",
        "X-Experience-API-Version": "1.0.3",
    }
    auth = os.getenv("LRS_AUTH")
    if auth:
        headers["Authorization"] = auth

    _schedule_forward(statement, lrs_url=lrs_url, headers=headers)


def emit_event(
    user_id: str,
    event_type: str,
    *,
    activity: Optional[str] = None,
    level: Optional[int] = None,
    question_no: Optional[int] = None,
    data: Optional[Dict[str, Any]] = None,
    client_metadata: Optional[Dict[str, Any]] = None,
) -> AnalyticsEvent:
    """Persist an analytics event and forward it to an LRS when configured.

    Raises ``ValidationError`` for malformed events and ``AnalyticsSinkError``
    when the event cannot be stored.
    """

    try:
        event = AnalyticsEvent(
            user_id=user_id,
            event_type=event_type,
            activity=activity,
            level=level,
            question_no=question_no,
            data=data or {},
            client_metadata=client_metadata or {},
            created_at=datetime.now(timezone.utc),
        )
    except PydanticValidationError as exc:
        raise ValidationError(f"invalid analytics event: {exc.errors()[0].get('msg')}") from exc

    try:
        event.id = db.insert_event(
            {**event.model_dump(exclude={"id", "created_at"}), "created_at": event.created_at.isoformat()}
        )
    except ActivityError as exc:
        raise AnalyticsSinkError(f"could not store {event_type} event: {exc.message}") from exc

    _forward(event)
    return event


def record_event(user_id: str, event_type: str, **kwargs: Any) -> Optional[AnalyticsEvent]:
    """Fire-and-forget wrapper around ``emit_event``; failures are only logged."""

    try:
        return emit_event(user_id, event_type, **kwargs)
    except (AnalyticsSinkError, ValidationError) as exc:
        LOGGER.warning("Dropping %s event for %s: %s", event_type, user_id, exc.message)
        return None


def _event_from_row(row) -> AnalyticsEvent:
    return AnalyticsEvent(
        id=row["id"],
        user_id=row["user_id"],
        event_type=row["event_type"],
        activity=row["activity"],
        level=row["level"],
        question_no=row["question_no"],
        data=db.decode_json_field(row["data"], {}) or {},
        client_metadata=db.decode_json_field(row["client_metadata"], {}) or {},
        created_at=row["created_at"],
    )


def list_events(
    user_id: Optional[str] = None,
    event_type: Optional[str] = None,
    activity: Optional[str] = None,
    since: Optional[str] = None,
    limit: int = 1000,
) -> List[AnalyticsEvent]:
    rows = db.list_events(user_id=user_id, event_type=event_type, activity=activity, since=since, limit=limit)
    return [_event_from_row(row) for row in rows]
