# app.py: Activity Progression service v1.0.0
# - Puzzle grading, attempt ledger and level progression for kids' activities
# - Admin CRUD for questions and activity configs, bulk import, analytics

import logging
from contextlib import asynccontextmanager, contextmanager
from typing import Any, Dict, Optional

from fastapi import Body, FastAPI, HTTPException
from pydantic import BaseModel, Field

import db, xapi
from activities import ActivityService, access_policy_from_env
from catalog import ActivityConfigRepository
from engines import reporting
from errors import ActivityError

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(_: FastAPI):
    try:
        # Validate environment variables first
        from env_validation import validate_environment
        validate_environment()

        db.init()
        logger.info("Activity store ready at %s", db.DB_PATH)
        yield
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise


app = FastAPI(title="Activity Progression", version="1.0.0", lifespan=_lifespan)

SERVICE = ActivityService(access=access_policy_from_env())
CONFIGS: ActivityConfigRepository = SERVICE.configs


@contextmanager
def _domain_errors():
    """Translate domain errors raised inside a route into HTTP errors."""
    try:
        yield
    except ActivityError as exc:
        if exc.status_code >= 500:
            logger.error("Request failed: %s", exc.message)
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc


# ---------- Schemas ----------
class AttemptBody(BaseModel):
    user_id: str = Field(min_length=1)
    question_id: str = Field(min_length=1)
    submission: Any
    time_taken_seconds: float = Field(default=0, ge=0)
    hints_used: int = Field(default=0, ge=0)
    client_metadata: Optional[Dict[str, Any]] = None


class EventBody(BaseModel):
    user_id: str = Field(min_length=1)
    event_type: str
    activity: Optional[str] = None
    level: Optional[int] = None
    question_no: Optional[int] = None
    data: Optional[Dict[str, Any]] = None
    client_metadata: Optional[Dict[str, Any]] = None


@app.get("/health")
def health():
    return {"status": "ok"}


# ---------- Learner routes ----------
@app.post("/activities/attempts")
def submit_attempt(body: AttemptBody):
    with _domain_errors():
        outcome = SERVICE.submit_attempt(
            body.user_id,
            body.question_id,
            body.submission,
            time_taken_seconds=body.time_taken_seconds,
            hints_used=body.hints_used,
            client_metadata=body.client_metadata,
        )
    payload = outcome.model_dump(mode="json")
    if outcome.success:
        payload.pop("correct_answer", None)
    return payload


@app.get("/activities/attempts/{user_id}")
def list_attempts(
    user_id: str,
    activity: Optional[str] = None,
    level: Optional[int] = None,
    success: Optional[bool] = None,
    limit: int = 100,
):
    with _domain_errors():
        attempts = SERVICE.list_user_attempts(user_id, activity, level, success, limit=limit)
    return {"attempts": [attempt.model_dump(mode="json") for attempt in attempts]}


@app.get("/activities/state/{user_id}")
def get_state(user_id: str):
    with _domain_errors():
        state = SERVICE.get_user_state(user_id)
    return state.model_dump(mode="json")


@app.get("/activities/levels/{user_id}/{activity}")
def get_levels(user_id: str, activity: str):
    with _domain_errors():
        overview = SERVICE.get_levels(user_id, activity)
    return overview.model_dump(mode="json")


@app.get("/activities/questions/progress/{user_id}")
def get_questions_progress(user_id: str, activity: str, level: int):
    with _domain_errors():
        view = SERVICE.get_questions_for_level(user_id, activity, level)
    return view.model_dump(mode="json")


@app.post("/activities/events")
def record_event(body: EventBody):
    with _domain_errors():
        event = xapi.emit_event(
            body.user_id,
            body.event_type,
            activity=body.activity,
            level=body.level,
            question_no=body.question_no,
            data=body.data,
            client_metadata=body.client_metadata,
        )
    return {"status": "ok", "event": event.model_dump(mode="json")}


@app.get("/activities/configs")
def list_configs():
    with _domain_errors():
        configs = [config for config in CONFIGS.list_configs() if config.enabled]
    return {"configs": [config.model_dump(mode="json") for config in configs]}


@app.get("/activities/configs/{activity}")
def get_config(activity: str):
    with _domain_errors():
        config = CONFIGS.require_config(activity)
    return config.model_dump(mode="json")


# ---------- Admin routes ----------
@app.post("/activities/admin/questions/import")
def import_questions(payload: Any = Body(...)):
    records = payload.get("questions") if isinstance(payload, dict) and "questions" in payload else payload
    if isinstance(records, dict):
        records = [records]
    if not isinstance(records, list):
        raise HTTPException(status_code=400, detail="expected a question object or a list of questions")
    with _domain_errors():
        report = SERVICE.catalog.import_questions(records)
    return report.model_dump(mode="json")


@app.post("/activities/admin/questions", status_code=201)
def create_question(payload: Dict[str, Any] = Body(...)):
    with _domain_errors():
        question = SERVICE.catalog.create(payload)
    return question.model_dump(mode="json")


@app.get("/activities/admin/questions")
def list_questions(
    activity: Optional[str] = None,
    level: Optional[int] = None,
    locale: Optional[str] = None,
    search: Optional[str] = None,
    page: int = 1,
    limit: int = 50,
    include_all_versions: bool = False,
):
    with _domain_errors():
        result = SERVICE.catalog.search(
            activity,
            level,
            locale=locale,
            search=search,
            page=page,
            limit=limit,
            include_all_versions=include_all_versions,
        )
    return result.model_dump(mode="json")


@app.get("/activities/admin/questions/{question_id}")
def get_question(question_id: str):
    with _domain_errors():
        question = SERVICE.catalog.get(question_id)
    return question.model_dump(mode="json")


@app.put("/activities/admin/questions/{question_id}")
def update_question(question_id: str, changes: Dict[str, Any] = Body(...)):
    with _domain_errors():
        question = SERVICE.catalog.update(question_id, changes)
    return question.model_dump(mode="json")


@app.delete("/activities/admin/questions/{question_id}")
def delete_question(question_id: str):
    with _domain_errors():
        removed = SERVICE.catalog.delete(question_id)
    return {"status": "deleted", "question_id": question_id, "attempts_removed": removed}


@app.get("/activities/admin/attempts")
def admin_attempts(
    user_id: Optional[str] = None,
    activity: Optional[str] = None,
    level: Optional[int] = None,
    success: Optional[bool] = None,
    limit: int = 1000,
):
    with _domain_errors():
        attempts = SERVICE.ledger.query(
            user_id=user_id, activity=activity, level=level, success=success, limit=limit
        )
    return {
        "attempts": [attempt.model_dump(mode="json") for attempt in attempts],
        "stats": reporting.attempt_stats(attempts),
    }


@app.get("/activities/admin/states")
def admin_states(limit: int = 1000):
    with _domain_errors():
        states = SERVICE.tracker.list_states(limit)
    return {"states": [state.model_dump(mode="json") for state in states]}


@app.post("/activities/admin/configs", status_code=201)
def create_config(payload: Dict[str, Any] = Body(...)):
    with _domain_errors():
        config = CONFIGS.create_config(payload)
    return config.model_dump(mode="json")


@app.get("/activities/admin/configs")
def admin_list_configs():
    with _domain_errors():
        configs = CONFIGS.list_configs()
    return {"configs": [config.model_dump(mode="json") for config in configs]}


@app.put("/activities/admin/configs/{activity}")
def update_config(activity: str, changes: Dict[str, Any] = Body(...)):
    with _domain_errors():
        config = CONFIGS.update_config(activity, changes)
    return config.model_dump(mode="json")


@app.get("/activities/admin/analytics")
def admin_analytics(activity: Optional[str] = None, days: int = 30):
    if days < 0:
        raise HTTPException(status_code=400, detail="days must not be negative")
    with _domain_errors():
        return reporting.activity_analytics(days=days, activity=activity, configs=CONFIGS)


@app.get("/activities/admin/user-stats/{user_id}")
def admin_user_stats(user_id: str):
    with _domain_errors():
        return reporting.user_stats(user_id, ledger=SERVICE.ledger, tracker=SERVICE.tracker)
