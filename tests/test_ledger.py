import pytest

import db
from engines.ledger import AttemptLedger
from errors import TransientStorageError, ValidationError
from schemas import Attempt


def _attempt(question_no, success=True, **extra):
    payload = {
        "user_id": "kid-1",
        "question_id": f"arr-001-1-0{question_no}",
        "activity": "arrange",
        "level": 1,
        "question_no": question_no,
        "submission": ["a", "b", "c"],
        "success": success,
        "time_taken_seconds": 12.5,
        "client_metadata": {"device": "tablet"},
    }
    payload.update(extra)
    return payload


@pytest.mark.usefixtures("seeded_catalog")
def test_record_persists_all_fields():
    ledger = AttemptLedger()
    stored = ledger.record(_attempt(1, hints_used=2, stars_earned=3))

    assert stored.id is not None
    assert stored.created_at is not None

    [fetched] = ledger.query(user_id="kid-1")
    assert fetched.submission == ["a", "b", "c"]
    assert fetched.success is True
    assert fetched.hints_used == 2
    assert fetched.stars_earned == 3
    assert fetched.client_metadata == {"device": "tablet"}


@pytest.mark.usefixtures("seeded_catalog")
def test_record_validates_required_fields():
    ledger = AttemptLedger()
    for field in ("user_id", "question_id", "activity", "submission", "success"):
        payload = _attempt(1)
        payload.pop(field)
        with pytest.raises(ValidationError):
            ledger.record(payload)
    with pytest.raises(ValidationError):
        ledger.record(_attempt(1, time_taken_seconds=-1))


@pytest.mark.usefixtures("seeded_catalog")
def test_record_rejects_unknown_question():
    with pytest.raises(ValidationError):
        AttemptLedger().record(_attempt(1, question_id="nope"))


@pytest.mark.usefixtures("seeded_catalog")
def test_query_filters_and_orders_newest_first():
    ledger = AttemptLedger()
    ledger.record(_attempt(1, success=False))
    ledger.record(_attempt(1))
    ledger.record(_attempt(2))
    ledger.record(Attempt(**_attempt(1, user_id="kid-2")))

    attempts = ledger.query(user_id="kid-1")
    assert [a.question_no for a in attempts] == [2, 1, 1]
    assert len(ledger.query(user_id="kid-1", success=False)) == 1
    assert len(ledger.query(activity="arrange", level=1)) == 4
    assert len(ledger.query(user_id="kid-1", limit=1)) == 1


@pytest.mark.usefixtures("seeded_catalog")
def test_distinct_question_numbers_only_counts_successes():
    ledger = AttemptLedger()
    ledger.record(_attempt(1))
    ledger.record(_attempt(1))
    ledger.record(_attempt(2, success=False))
    ledger.record(_attempt(3))

    assert ledger.distinct_question_numbers("kid-1", "arrange", 1) == {1, 3}
    assert ledger.distinct_question_numbers("kid-1", "arrange", 1, success=False) == {2}
    assert ledger.distinct_question_numbers("kid-1", "arrange", 2) == set()
    assert ledger.completed_by_level("kid-1", "arrange") == {1: {1, 3}}


@pytest.mark.usefixtures("seeded_catalog")
def test_record_inside_rolled_back_transaction_is_discarded():
    ledger = AttemptLedger()
    with pytest.raises(RuntimeError):
        with db.transaction() as con:
            ledger.record(_attempt(1), con=con)
            raise RuntimeError("boom")
    assert ledger.query(user_id="kid-1") == []


def test_storage_failures_surface_as_transient(monkeypatch, tmp_path):
    monkeypatch.setattr(db, "_pool", db.SQLiteConnectionPool(str(tmp_path / "missing" / "x.db")))
    with pytest.raises(TransientStorageError):
        AttemptLedger().query(user_id="kid-1")
