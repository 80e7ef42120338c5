import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, Mapping, Optional, Sequence

from db_pool import SQLiteConnectionPool
from env_validation import get_env_float, get_env_int
from errors import ConflictError, TransientStorageError, ValidationError

logger = logging.getLogger(__name__)

DB_PATH = os.getenv("DB_PATH", "data.db")


def _pool_size() -> int:
    return max(1, get_env_int("DB_MAX_CONNECTIONS", 10))


def _storage_timeout() -> float:
    return get_env_float("STORAGE_TIMEOUT_SECONDS", 5.0)


# Initialize connection pool
_pool = SQLiteConnectionPool(DB_PATH, max_connections=_pool_size(), timeout=_storage_timeout())


def reset_pool(path: Optional[str] = None, *, timeout: Optional[float] = None) -> None:
    """Point the module at ``path`` (defaults to ``DB_PATH``) with a fresh pool."""
    global DB_PATH, _pool
    if path is not None:
        DB_PATH = str(path)
    old = _pool
    _pool = SQLiteConnectionPool(
        DB_PATH,
        max_connections=_pool_size(),
        timeout=_storage_timeout() if timeout is None else timeout,
    )
    old.close_all()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def now_iso() -> str:
    return utcnow().isoformat()


@contextmanager
def _storage_errors() -> Iterator[None]:
    try:
        yield
    except sqlite3.OperationalError as exc:
        logger.warning("Storage operation failed: %s", exc)
        raise TransientStorageError(f"storage unavailable: {exc}") from exc


def _conn():
    """Return a context manager for acquiring a pooled SQLite connection."""
    return _pool.get_connection()


def _exec(sql: str, params: Iterable = (), con: Optional[sqlite3.Connection] = None):
    with _storage_errors():
        if con is not None:
            return con.execute(sql, tuple(params))
        with _pool.get_connection() as pooled:
            cur = pooled.execute(sql, tuple(params))
            pooled.commit()
            return cur


def _query(sql: str, params: Iterable = (), con: Optional[sqlite3.Connection] = None) -> list[sqlite3.Row]:
    with _storage_errors():
        if con is not None:
            return con.execute(sql, tuple(params)).fetchall()
        with _pool.get_connection() as pooled:
            cur = pooled.execute(sql, tuple(params))
            return cur.fetchall()


@contextmanager
def transaction() -> Iterator[sqlite3.Connection]:
    """Run the enclosed block in a single write transaction.

    ``BEGIN IMMEDIATE`` takes the database write lock up front, so concurrent
    writers queue on the busy timeout instead of failing mid-transaction.
    Any exception rolls back every statement issued on the yielded connection.
    """
    with _storage_errors():
        with _pool.get_connection() as con:
            con.execute("BEGIN IMMEDIATE")
            try:
                yield con
            except BaseException:
                con.rollback()
                raise
            con.commit()


def init():
    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
    with _storage_errors(), _conn() as con:
        con.executescript(
            """
            PRAGMA foreign_keys = ON;
            PRAGMA journal_mode=WAL;

            CREATE TABLE IF NOT EXISTS questions (
              id           TEXT PRIMARY KEY,
              activity     TEXT NOT NULL,
              level        INTEGER NOT NULL CHECK (level >= 1),
              question_no  INTEGER NOT NULL CHECK (question_no >= 1),
              version      INTEGER NOT NULL DEFAULT 1,
              locale       TEXT NOT NULL DEFAULT 'en',
              difficulty   TEXT NOT NULL DEFAULT 'easy',
              payload      TEXT NOT NULL,
              created_at   TEXT NOT NULL,
              updated_at   TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_questions_lookup
              ON questions(activity, level, question_no);

            CREATE TABLE IF NOT EXISTS activity_configs (
              activity     TEXT PRIMARY KEY,
              payload      TEXT NOT NULL,
              created_at   TEXT NOT NULL,
              updated_at   TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS attempts (
              id                 INTEGER PRIMARY KEY AUTOINCREMENT,
              user_id            TEXT NOT NULL,
              question_id        TEXT NOT NULL,
              activity           TEXT NOT NULL,
              level              INTEGER,
              question_no        INTEGER,
              submission         TEXT,
              success            INTEGER NOT NULL CHECK (success IN (0, 1)),
              time_taken_seconds REAL NOT NULL DEFAULT 0,
              hints_used         INTEGER NOT NULL DEFAULT 0,
              stars_earned       INTEGER NOT NULL DEFAULT 0,
              client_metadata    TEXT,
              created_at         TEXT NOT NULL,
              FOREIGN KEY(question_id) REFERENCES questions(id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_attempts_progress
              ON attempts(user_id, activity, level, success);
            CREATE INDEX IF NOT EXISTS idx_attempts_question
              ON attempts(question_id);
            CREATE INDEX IF NOT EXISTS idx_attempts_created
              ON attempts(created_at);

            CREATE TABLE IF NOT EXISTS user_state (
              user_id      TEXT PRIMARY KEY,
              unlocked     TEXT NOT NULL DEFAULT '{}',
              last_played  TEXT,
              version      INTEGER NOT NULL DEFAULT 0,
              created_at   TEXT NOT NULL,
              updated_at   TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS analytics_events (
              id               INTEGER PRIMARY KEY AUTOINCREMENT,
              user_id          TEXT NOT NULL,
              event_type       TEXT NOT NULL,
              activity         TEXT,
              level            INTEGER,
              question_no      INTEGER,
              data             TEXT,
              client_metadata  TEXT,
              created_at       TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_events_user ON analytics_events(user_id, created_at DESC);
            CREATE INDEX IF NOT EXISTS idx_events_type ON analytics_events(event_type, created_at DESC);
            """
        )


# -------------- json helpers --------------
def json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"), default=str)


def decode_json_field(value: Optional[str], default: Any = None) -> Any:
    if value is None or value == "":
        return default
    try:
        return json.loads(value)
    except (TypeError, json.JSONDecodeError):
        logger.warning("Could not decode stored JSON value: %.60s", value)
        return default


def _where(filters: Mapping[str, Any]) -> tuple[str, list[Any]]:
    clauses: list[str] = []
    params: list[Any] = []
    for column, value in filters.items():
        if value is None:
            continue
        if column == "since":
            clauses.append("created_at >= ?")
        else:
            clauses.append(f"{column} = ?")
        params.append(value)
    if not clauses:
        return "", params
    return " WHERE " + " AND ".join(clauses), params


# -------------- questions --------------
_QUESTION_COLUMNS = "id, activity, level, question_no, version, locale, difficulty, payload, created_at, updated_at"


def insert_question(question: Mapping[str, Any], con: Optional[sqlite3.Connection] = None) -> None:
    """Insert a new catalog row; raises ConflictError when the id exists."""
    timestamp = now_iso()
    try:
        _exec(
            f"""
            INSERT INTO questions({_QUESTION_COLUMNS})
            VALUES (?,?,?,?,?,?,?,?,?,?)
            """,
            (
                question["id"],
                question["activity"],
                int(question["level"]),
                int(question["question_no"]),
                int(question.get("version") or 1),
                question.get("locale") or "en",
                question.get("difficulty") or "easy",
                json_dumps(question),
                question.get("created_at") or timestamp,
                question.get("updated_at") or timestamp,
            ),
            con=con,
        )
    except sqlite3.IntegrityError as exc:
        raise ConflictError(f"question id already exists: {question['id']}") from exc


def upsert_question(question: Mapping[str, Any], con: Optional[sqlite3.Connection] = None) -> None:
    """Insert or update a catalog row in place (never deletes, so attempts survive)."""
    timestamp = now_iso()
    try:
        _exec(
            f"""
            INSERT INTO questions({_QUESTION_COLUMNS})
            VALUES (?,?,?,?,?,?,?,?,?,?)
            ON CONFLICT(id) DO UPDATE SET
              activity=excluded.activity,
              level=excluded.level,
              question_no=excluded.question_no,
              version=excluded.version,
              locale=excluded.locale,
              difficulty=excluded.difficulty,
              payload=excluded.payload,
              updated_at=excluded.updated_at
            """,
            (
                question["id"],
                question["activity"],
                int(question["level"]),
                int(question["question_no"]),
                int(question.get("version") or 1),
                question.get("locale") or "en",
                question.get("difficulty") or "easy",
                json_dumps(question),
                question.get("created_at") or timestamp,
                timestamp,
            ),
            con=con,
        )
    except sqlite3.IntegrityError as exc:
        raise ValidationError(f"question {question.get('id')} rejected by storage: {exc}") from exc


def get_question(question_id: str, con: Optional[sqlite3.Connection] = None) -> Optional[sqlite3.Row]:
    rows = _query(
        f"SELECT {_QUESTION_COLUMNS} FROM questions WHERE id = ?",
        (question_id,),
        con=con,
    )
    return rows[0] if rows else None


def list_questions(
    activity: Optional[str] = None,
    level: Optional[int] = None,
    locale: Optional[str] = None,
    con: Optional[sqlite3.Connection] = None,
) -> list[sqlite3.Row]:
    where, params = _where({"activity": activity, "level": level, "locale": locale})
    return _query(
        f"""
        SELECT {_QUESTION_COLUMNS} FROM questions{where}
        ORDER BY level ASC, question_no ASC, version DESC, updated_at DESC, id DESC
        """,
        params,
        con=con,
    )


def delete_question(question_id: str) -> Optional[int]:
    """Delete a question and its attempts; returns removed attempts or None if absent."""
    with transaction() as con:
        exists = con.execute("SELECT 1 FROM questions WHERE id = ?", (question_id,)).fetchone()
        if not exists:
            return None
        removed = con.execute(
            "SELECT COUNT(*) FROM attempts WHERE question_id = ?", (question_id,)
        ).fetchone()[0]
        # attempts follow through ON DELETE CASCADE
        con.execute("DELETE FROM questions WHERE id = ?", (question_id,))
    return int(removed)


# -------------- activity configs --------------
def insert_config(config: Mapping[str, Any]) -> None:
    timestamp = now_iso()
    try:
        _exec(
            "INSERT INTO activity_configs(activity, payload, created_at, updated_at) VALUES (?,?,?,?)",
            (config["activity"], json_dumps(config), timestamp, timestamp),
        )
    except sqlite3.IntegrityError as exc:
        raise ConflictError(f"activity config already exists: {config['activity']}") from exc


def update_config(config: Mapping[str, Any]) -> int:
    cur = _exec(
        "UPDATE activity_configs SET payload = ?, updated_at = ? WHERE activity = ?",
        (json_dumps(config), now_iso(), config["activity"]),
    )
    return int(cur.rowcount)


def get_config(activity: str, con: Optional[sqlite3.Connection] = None) -> Optional[sqlite3.Row]:
    rows = _query(
        "SELECT activity, payload, created_at, updated_at FROM activity_configs WHERE activity = ?",
        (activity,),
        con=con,
    )
    return rows[0] if rows else None


def list_configs() -> list[sqlite3.Row]:
    return _query(
        "SELECT activity, payload, created_at, updated_at FROM activity_configs ORDER BY activity ASC"
    )


# -------------- attempts --------------
_ATTEMPT_COLUMNS = (
    "id, user_id, question_id, activity, level, question_no, submission, success, "
    "time_taken_seconds, hints_used, stars_earned, client_metadata, created_at"
)


def insert_attempt(attempt: Mapping[str, Any], con: Optional[sqlite3.Connection] = None) -> Dict[str, Any]:
    created_at = attempt.get("created_at") or now_iso()
    try:
        cur = _exec(
            """
            INSERT INTO attempts(
              user_id, question_id, activity, level, question_no, submission, success,
              time_taken_seconds, hints_used, stars_earned, client_metadata, created_at
            ) VALUES (?,?,?,?,?,?,?,?,?,?,?,?)
            """,
            (
                attempt["user_id"],
                attempt["question_id"],
                attempt["activity"],
                attempt.get("level"),
                attempt.get("question_no"),
                json_dumps(attempt.get("submission")),
                1 if attempt["success"] else 0,
                float(attempt.get("time_taken_seconds") or 0),
                int(attempt.get("hints_used") or 0),
                int(attempt.get("stars_earned") or 0),
                json_dumps(attempt.get("client_metadata") or {}),
                created_at,
            ),
            con=con,
        )
    except sqlite3.IntegrityError as exc:
        raise ValidationError(f"attempt rejected by storage: {exc}") from exc
    return {**attempt, "id": int(cur.lastrowid), "created_at": created_at}


def list_attempts(
    user_id: Optional[str] = None,
    activity: Optional[str] = None,
    level: Optional[int] = None,
    success: Optional[bool] = None,
    since: Optional[str] = None,
    limit: int = 1000,
) -> list[sqlite3.Row]:
    where, params = _where(
        {
            "user_id": user_id,
            "activity": activity,
            "level": level,
            "success": None if success is None else (1 if success else 0),
            "since": since,
        }
    )
    return _query(
        f"SELECT {_ATTEMPT_COLUMNS} FROM attempts{where} ORDER BY created_at DESC, id DESC LIMIT ?",
        [*params, int(limit)],
    )


def distinct_question_numbers(
    user_id: str,
    activity: str,
    level: int,
    success: bool = True,
    con: Optional[sqlite3.Connection] = None,
) -> set[int]:
    rows = _query(
        """
        SELECT DISTINCT question_no FROM attempts
        WHERE user_id = ? AND activity = ? AND level = ? AND success = ?
          AND question_no IS NOT NULL
        """,
        (user_id, activity, int(level), 1 if success else 0),
        con=con,
    )
    return {int(row[0]) for row in rows}


def completed_by_level(user_id: str, activity: str) -> Dict[int, set[int]]:
    rows = _query(
        """
        SELECT DISTINCT level, question_no FROM attempts
        WHERE user_id = ? AND activity = ? AND success = 1
          AND level IS NOT NULL AND question_no IS NOT NULL
        """,
        (user_id, activity),
    )
    completed: Dict[int, set[int]] = {}
    for row in rows:
        completed.setdefault(int(row["level"]), set()).add(int(row["question_no"]))
    return completed


def count_attempts_for_question(question_id: str) -> int:
    rows = _query("SELECT COUNT(*) FROM attempts WHERE question_id = ?", (question_id,))
    return int(rows[0][0])


def attempt_stats_by_activity(since: Optional[str] = None, activity: Optional[str] = None) -> list[sqlite3.Row]:
    where, params = _where({"activity": activity, "since": since})
    return _query(
        f"""
        SELECT activity,
               COUNT(*) AS total_attempts,
               COALESCE(SUM(success), 0) AS successful_attempts,
               COALESCE(SUM(time_taken_seconds), 0) AS total_time,
               COALESCE(SUM(stars_earned), 0) AS total_stars
        FROM attempts{where}
        GROUP BY activity
        ORDER BY activity ASC
        """,
        params,
    )


# -------------- user state --------------
def get_user_state(user_id: str, con: Optional[sqlite3.Connection] = None) -> Optional[sqlite3.Row]:
    rows = _query(
        """
        SELECT user_id, unlocked, last_played, version, created_at, updated_at
        FROM user_state WHERE user_id = ?
        """,
        (user_id,),
        con=con,
    )
    return rows[0] if rows else None


def ensure_user_state(user_id: str, con: Optional[sqlite3.Connection] = None) -> sqlite3.Row:
    timestamp = now_iso()
    _exec(
        """
        INSERT INTO user_state(user_id, unlocked, last_played, version, created_at, updated_at)
        VALUES (?, '{}', NULL, 0, ?, ?)
        ON CONFLICT(user_id) DO NOTHING
        """,
        (user_id, timestamp, timestamp),
        con=con,
    )
    row = get_user_state(user_id, con=con)
    if row is None:
        raise TransientStorageError(f"user state for {user_id} could not be created")
    return row


def save_user_state(
    user_id: str,
    unlocked: Mapping[str, Any],
    last_played: Optional[str],
    version: int,
    con: Optional[sqlite3.Connection] = None,
) -> None:
    timestamp = now_iso()
    _exec(
        """
        INSERT INTO user_state(user_id, unlocked, last_played, version, created_at, updated_at)
        VALUES (?,?,?,?,?,?)
        ON CONFLICT(user_id) DO UPDATE SET
          unlocked=excluded.unlocked,
          last_played=excluded.last_played,
          version=excluded.version,
          updated_at=excluded.updated_at
        """,
        (user_id, json_dumps(dict(unlocked)), last_played, int(version), timestamp, timestamp),
        con=con,
    )


def list_user_states(limit: int = 1000) -> list[sqlite3.Row]:
    return _query(
        """
        SELECT user_id, unlocked, last_played, version, created_at, updated_at
        FROM user_state
        ORDER BY last_played IS NULL, last_played DESC
        LIMIT ?
        """,
        (int(limit),),
    )


# -------------- analytics events --------------
def insert_event(event: Mapping[str, Any]) -> int:
    cur = _exec(
        """
        INSERT INTO analytics_events(
          user_id, event_type, activity, level, question_no, data, client_metadata, created_at
        ) VALUES (?,?,?,?,?,?,?,?)
        """,
        (
            event["user_id"],
            event["event_type"],
            event.get("activity"),
            event.get("level"),
            event.get("question_no"),
            json_dumps(event.get("data") or {}),
            json_dumps(event.get("client_metadata") or {}),
            event.get("created_at") or now_iso(),
        ),
    )
    return int(cur.lastrowid)


def list_events(
    user_id: Optional[str] = None,
    event_type: Optional[str] = None,
    activity: Optional[str] = None,
    since: Optional[str] = None,
    limit: int = 1000,
) -> list[sqlite3.Row]:
    where, params = _where(
        {"user_id": user_id, "event_type": event_type, "activity": activity, "since": since}
    )
    return _query(
        f"""
        SELECT id, user_id, event_type, activity, level, question_no, data, client_metadata, created_at
        FROM analytics_events{where}
        ORDER BY created_at DESC, id DESC
        LIMIT ?
        """,
        [*params, int(limit)],
    )


def event_breakdown(since: Optional[str] = None, activity: Optional[str] = None) -> list[sqlite3.Row]:
    where, params = _where({"activity": activity, "since": since})
    return _query(
        f"""
        SELECT event_type, COUNT(*) AS count FROM analytics_events{where}
        GROUP BY event_type ORDER BY count DESC, event_type ASC
        """,
        params,
    )


def user_engagement(since: Optional[str] = None, activity: Optional[str] = None) -> list[sqlite3.Row]:
    where, params = _where({"activity": activity, "since": since})
    return _query(
        f"""
        SELECT user_id, COUNT(*) AS events FROM analytics_events{where}
        GROUP BY user_id ORDER BY events DESC, user_id ASC
        """,
        params,
    )


def count_events(user_id: Optional[str] = None) -> int:
    where, params = _where({"user_id": user_id})
    rows = _query(f"SELECT COUNT(*) FROM analytics_events{where}", params)
    return int(rows[0][0])


def table_counts(tables: Sequence[str] = ("questions", "activity_configs", "attempts", "user_state", "analytics_events")) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for table in tables:
        counts[table] = int(_query(f"SELECT COUNT(*) FROM {table}")[0][0])
    return counts
