import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture
def temp_db(monkeypatch, tmp_path):
    import db

    db_path = tmp_path / "test.db"
    monkeypatch.setattr(db, "DB_PATH", str(db_path))
    monkeypatch.delenv("LRS_URL", raising=False)

    # Reset the connection pool for each test
    previous = db._pool
    db._pool = db.SQLiteConnectionPool(str(db_path), max_connections=10, timeout=5)
    db.init()
    yield str(db_path)
    db._pool.close_all()
    db._pool = previous


def question_payload(question_id, level, question_no, *, activity="arrange", answer=None, **extra):
    payload = {
        "id": question_id,
        "activity": activity,
        "level": level,
        "question_no": question_no,
        "items": ["c", "a", "b"],
        "answer": answer if answer is not None else ["a", "b", "c"],
    }
    payload.update(extra)
    return payload


@pytest.fixture
def make_question():
    return question_payload


@pytest.fixture
def seeded_catalog(temp_db):
    """Arrange activity with three questions on level 1 and two on level 2."""
    from catalog import QuestionCatalog

    catalog = QuestionCatalog()
    for no in (1, 2, 3):
        catalog.create(question_payload(f"arr-001-1-0{no}", 1, no))
    for no in (1, 2):
        catalog.create(question_payload(f"arr-001-2-0{no}", 2, no, answer=["x", "y"]))
    return catalog
