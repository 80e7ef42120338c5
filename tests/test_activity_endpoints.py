import asyncio
import json
from urllib.parse import urlencode

import pytest

import app


def _call(method: str, path: str, payload=None, query=None) -> tuple[int, dict]:
    async def _run():
        body = json.dumps(payload).encode("utf-8") if payload is not None else b""
        received_once = False

        async def receive():
            nonlocal received_once
            if not received_once:
                received_once = True
                return {"type": "http.request", "body": body, "more_body": False}
            return {"type": "http.disconnect"}

        messages = []

        async def send(message):
            messages.append(message)

        scope = {
            "type": "http",
            "http_version": "1.1",
            "method": method,
            "path": path,
            "raw_path": path.encode(),
            "root_path": "",
            "scheme": "http",
            "query_string": urlencode(query or {}).encode(),
            "headers": [
                (b"host", b"testserver"),
                (b"content-type", b"application/json"),
                (b"content-length", str(len(body)).encode()),
            ],
            "client": ("testclient", 12345),
            "server": ("testserver", 80),
            "state": {},
        }

        await app.app(scope, receive, send)
        return messages

    messages = asyncio.run(_run())
    status = 500
    body_bytes = b""

    for message in messages:
        if message["type"] == "http.response.start":
            status = message["status"]
        elif message["type"] == "http.response.body":
            body_bytes += message.get("body", b"")

    data = json.loads(body_bytes.decode("utf-8") or "{}")
    return status, data


def _post(path, payload):
    return _call("POST", path, payload)


def _get(path, **query):
    return _call("GET", path, query=query)


def test_health():
    assert _get("/health") == (200, {"status": "ok"})


@pytest.mark.usefixtures("seeded_catalog")
def test_correct_attempt_returns_stars_and_progress():
    status, data = _post(
        "/activities/attempts",
        {"user_id": "kid-1", "question_id": "arr-001-1-01", "submission": ["a", "b", "c"], "time_taken_seconds": 10},
    )

    assert status == 200
    assert data["success"] is True
    assert data["stars_earned"] == 3
    assert "correct_answer" not in data
    assert data["progress"]["unlocked"]["arrange"] == {"level": 1, "highest_question_no": 1}
    assert data["attempt"]["question_no"] == 1


@pytest.mark.usefixtures("seeded_catalog")
def test_wrong_attempt_is_not_an_error():
    status, data = _post(
        "/activities/attempts",
        {"user_id": "kid-1", "question_id": "arr-001-1-01", "submission": ["c", "b", "a"]},
    )

    assert status == 200
    assert data["success"] is False
    assert data["stars_earned"] == 0
    assert data["correct_answer"] == ["a", "b", "c"]


@pytest.mark.usefixtures("seeded_catalog")
def test_attempt_error_statuses():
    status, _ = _post(
        "/activities/attempts",
        {"user_id": "kid-1", "question_id": "missing", "submission": ["a"]},
    )
    assert status == 404

    status, _ = _post("/activities/attempts", {"user_id": "kid-1", "question_id": "arr-001-1-01"})
    assert status == 422

    status, _ = _post(
        "/activities/attempts",
        {"user_id": "kid-1", "question_id": "arr-001-1-01", "submission": ["a"], "time_taken_seconds": -3},
    )
    assert status == 422

    status, data = _post(
        "/activities/attempts",
        {"user_id": "kid-1", "question_id": "arr-001-1-01", "submission": None},
    )
    assert status == 400
    assert "submission" in data["detail"]


@pytest.mark.usefixtures("seeded_catalog")
def test_access_policy_denial_maps_to_403(monkeypatch):
    from activities import FreeLevelAccess

    monkeypatch.setattr(app.SERVICE, "access", FreeLevelAccess(1, lambda user_id: False))
    status, _ = _post(
        "/activities/attempts",
        {"user_id": "kid-1", "question_id": "arr-001-2-01", "submission": ["x", "y"]},
    )
    assert status == 403

    status, _ = _post(
        "/activities/attempts",
        {"user_id": "kid-1", "question_id": "arr-001-1-01", "submission": ["a", "b", "c"]},
    )
    assert status == 200


@pytest.mark.usefixtures("seeded_catalog")
def test_learner_read_routes():
    _post("/activities/attempts", {"user_id": "kid-1", "question_id": "arr-001-1-01", "submission": ["a", "b", "c"]})
    _post("/activities/attempts", {"user_id": "kid-1", "question_id": "arr-001-1-02", "submission": ["a"]})

    status, data = _get("/activities/levels/kid-1/arrange")
    assert status == 200
    assert data["levels"][0]["completed_questions"] == 1
    assert data["user_progress"] == {"current_level": 1, "highest_question_no": 1, "total_levels": 2}

    status, data = _get("/activities/questions/progress/kid-1", activity="arrange", level=1)
    assert status == 200
    assert data["next_incomplete_index"] == 1
    assert data["progress"]["completed_question_numbers"] == [1]
    assert data["questions"][0]["completed"] is True

    status, data = _get("/activities/attempts/kid-1", success="false")
    assert status == 200
    assert len(data["attempts"]) == 1

    status, data = _get("/activities/state/kid-1")
    assert status == 200
    assert data["unlocked"]["arrange"]["level"] == 1

    assert _get("/activities/levels/kid-1/unknown")[0] == 404
    assert _get("/activities/questions/progress/kid-1", activity="arrange", level=9)[0] == 404
    assert _get("/activities/questions/progress/kid-1", activity="arrange")[0] == 422


@pytest.mark.usefixtures("temp_db")
def test_client_events_route():
    status, data = _post("/activities/events", {"user_id": "kid-1", "event_type": "question_started", "activity": "arrange"})
    assert status == 200
    assert data["event"]["event_type"] == "question_started"

    status, _ = _post("/activities/events", {"user_id": "kid-1", "event_type": "unknown"})
    assert status == 400


@pytest.mark.usefixtures("temp_db")
def test_admin_question_lifecycle(make_question):
    status, data = _post("/activities/admin/questions", make_question("arr-001-1-01", 1, 1))
    assert status == 201
    assert data["id"] == "arr-001-1-01"

    assert _post("/activities/admin/questions", make_question("arr-001-1-01", 1, 1))[0] == 409
    assert _post("/activities/admin/questions", {"id": "x", "activity": "arrange"})[0] == 400

    status, data = _call("PUT", "/activities/admin/questions/arr-001-1-01", {"question_text": "Sort!"})
    assert status == 200
    assert data["question_text"] == "Sort!"

    _post("/activities/attempts", {"user_id": "kid-1", "question_id": "arr-001-1-01", "submission": ["a", "b", "c"]})

    status, data = _call("DELETE", "/activities/admin/questions/arr-001-1-01")
    assert status == 200
    assert data["attempts_removed"] == 1
    assert _get("/activities/admin/questions/arr-001-1-01")[0] == 404
    assert _call("DELETE", "/activities/admin/questions/arr-001-1-01")[0] == 404


@pytest.mark.usefixtures("temp_db")
def test_admin_import_and_listing(make_question):
    status, data = _post(
        "/activities/admin/questions/import",
        {"questions": [make_question("arr-001-1-01", 1, 1), {"id": "broken"}]},
    )
    assert status == 200
    assert data["succeeded"] == 1
    assert data["failed"] == 1

    status, data = _post("/activities/admin/questions/import", make_question("arr-001-1-02", 1, 2))
    assert status == 200
    assert data["succeeded"] == 1

    status, data = _get("/activities/admin/questions", activity="arrange")
    assert [q["id"] for q in data["questions"]] == ["arr-001-1-01", "arr-001-1-02"]
    assert data["total"] == 2
    assert data["page"] == 1
    assert data["total_pages"] == 1


@pytest.mark.usefixtures("temp_db")
def test_admin_listing_filters_and_paginates(make_question):
    records = [make_question(f"arr-001-1-0{no}", 1, no, question_text=f"Order the planets {no}") for no in (1, 2, 3)]
    records.append(make_question("arr-de-1-04", 1, 4, locale="de", question_text="Ordne die Planeten"))
    records.append(make_question("mat-001-1-01", 1, 1, activity="match", answer="meow"))
    status, data = _post("/activities/admin/questions/import", records)
    assert status == 200
    assert data["succeeded"] == 5

    status, data = _get("/activities/admin/questions", search="PLANETS", page=2, limit=2)
    assert status == 200
    assert data["total"] == 3
    assert data["total_pages"] == 2
    assert data["page"] == 2
    assert [q["id"] for q in data["questions"]] == ["arr-001-1-03"]

    status, data = _get("/activities/admin/questions", locale="de")
    assert [q["id"] for q in data["questions"]] == ["arr-de-1-04"]

    status, data = _get("/activities/admin/questions", search="mat-001")
    assert [q["answer"] for q in data["questions"]] == [["meow"]]

    assert _get("/activities/admin/questions", page=0)[0] == 400


@pytest.mark.usefixtures("temp_db")
def test_admin_config_routes():
    status, data = _post("/activities/admin/configs", {"activity": "arrange", "display_name": "Arrange"})
    assert status == 201
    assert data["max_levels"] == 10

    assert _post("/activities/admin/configs", {"activity": "arrange", "display_name": "Arrange"})[0] == 409

    status, data = _call("PUT", "/activities/admin/configs/arrange", {"enabled": False})
    assert status == 200
    assert data["enabled"] is False

    assert _get("/activities/configs")[1] == {"configs": []}
    assert len(_get("/activities/admin/configs")[1]["configs"]) == 1
    assert _get("/activities/configs/arrange")[0] == 200
    assert _get("/activities/configs/match")[0] == 404


@pytest.mark.usefixtures("seeded_catalog")
def test_admin_reporting_routes():
    _post("/activities/attempts", {"user_id": "kid-1", "question_id": "arr-001-1-01", "submission": ["a", "b", "c"], "time_taken_seconds": 10})
    _post("/activities/attempts", {"user_id": "kid-1", "question_id": "arr-001-1-02", "submission": ["b"], "time_taken_seconds": 20})

    status, data = _get("/activities/admin/attempts", user_id="kid-1")
    assert status == 200
    assert data["stats"] == {"total": 2, "successful": 1, "success_rate": 0.5, "average_time": 15.0}

    status, data = _get("/activities/admin/states")
    assert [state["user_id"] for state in data["states"]] == ["kid-1"]

    status, data = _get("/activities/admin/analytics", days=7)
    assert status == 200
    assert data["events"]["breakdown"] == {"attempt_completed": 2}
    assert data["user_engagement"]["active_users"] == 1

    status, data = _get("/activities/admin/user-stats/kid-1")
    assert status == 200
    assert data["total_attempts"] == 2
    assert data["total_events"] == 2
    assert data["activities_attempted"] == ["arrange"]
