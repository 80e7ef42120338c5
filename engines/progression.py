"""Per-activity level progression for learners.

Each user owns one progress document mapping an activity to a pointer
``{level, highest_question_no}``. The pointer only moves forward: a success at
the user's current level raises ``highest_question_no``, and once every
canonical question of that level has a successful attempt the user advances
to the next level with the pointer reset to zero.

``highest_question_no`` is only raised by questions at the pointer's current
level. Replaying a question from an earlier level records the attempt but
leaves the pointer as it is, so a replay never undoes the reset that follows
an advance.

Updates for the same ``(user_id, activity)`` are serialised twice over: an
in-process keyed lock orders threads of this worker, and the surrounding
``BEGIN IMMEDIATE`` transaction orders writers across processes.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Tuple

import db
from catalog import ActivityConfigRepository, QuestionCatalog
from engines.ledger import AttemptLedger
from schemas import ActivityProgress, Question, UserProgress

_LOGGER = logging.getLogger(__name__)


class KeyedLocks:
    """Registry of one ``threading.Lock`` per key, created on demand.

    Entries are reference counted and dropped once the last holder or waiter
    leaves, so the registry only contains keys that are in use.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[Tuple[str, str], List] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def __contains__(self, key: object) -> bool:
        with self._guard:
            return key in self._locks

    def _checkout(self, key: Tuple[str, str]) -> threading.Lock:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.Lock(), 0]
            entry[1] += 1
            return entry[0]

    def _checkin(self, key: Tuple[str, str]) -> None:
        with self._guard:
            entry = self._locks[key]
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    @contextmanager
    def hold(self, key: Tuple[str, str]) -> Iterator[threading.Lock]:
        lock = self._checkout(key)
        try:
            with lock:
                yield lock
        finally:
            self._checkin(key)


@dataclass
class ProgressUpdate:
    """Outcome of applying one successful attempt to a progress document."""

    progress: UserProgress
    level_advanced: bool = False
    completed_level: Optional[int] = None


def _progress_from_row(row: sqlite3.Row) -> UserProgress:
    return UserProgress(
        user_id=row["user_id"],
        unlocked=db.decode_json_field(row["unlocked"], {}) or {},
        last_played=row["last_played"],
        version=row["version"] or 0,
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class UserProgressTracker:
    """Maintains ``user_state`` from successful attempts."""

    def __init__(
        self,
        catalog: Optional[QuestionCatalog] = None,
        ledger: Optional[AttemptLedger] = None,
        configs: Optional[ActivityConfigRepository] = None,
        locks: Optional[KeyedLocks] = None,
    ) -> None:
        self.catalog = catalog or QuestionCatalog()
        self.ledger = ledger or AttemptLedger()
        self.configs = configs or ActivityConfigRepository()
        self.locks = locks or KeyedLocks()

    # ----- public API --------------------------------------------------
    def lock(self, user_id: str, activity: str):
        """Context manager serialising updates for one user and activity."""
        return self.locks.hold((user_id, activity))

    def get_state(self, user_id: str, con: Optional[sqlite3.Connection] = None) -> UserProgress:
        return _progress_from_row(db.ensure_user_state(user_id, con=con))

    def list_states(self, limit: int = 1000) -> list[UserProgress]:
        return [_progress_from_row(row) for row in db.list_user_states(limit)]

    def on_successful_attempt(
        self,
        user_id: str,
        question: Question,
        con: Optional[sqlite3.Connection] = None,
    ) -> UserProgress:
        return self.apply_success(user_id, question, con=con).progress

    def apply_success(
        self,
        user_id: str,
        question: Question,
        con: Optional[sqlite3.Connection] = None,
    ) -> ProgressUpdate:
        """Apply a success, returning the new document and whether a level completed.

        Without ``con`` the update takes the keyed lock and opens its own
        transaction; callers passing ``con`` must already hold both.
        """
        if con is not None:
            return self._apply(user_id, question, con)
        with self.lock(user_id, question.activity), db.transaction() as own:
            return self._apply(user_id, question, own)

    # ----- internals ---------------------------------------------------
    def _apply(self, user_id: str, question: Question, con: sqlite3.Connection) -> ProgressUpdate:
        state = self.get_state(user_id, con=con)
        activity = question.activity
        unlocked = dict(state.unlocked)
        pointer = unlocked.get(activity)
        update = ProgressUpdate(progress=state)

        if pointer is None:
            unlocked[activity] = ActivityProgress(level=question.level, highest_question_no=question.question_no)
            _LOGGER.info("Started %s for %s at level %s", activity, user_id, question.level)
        else:
            pointer = pointer.model_copy()
            if question.level == pointer.level:
                pointer.highest_question_no = max(pointer.highest_question_no, question.question_no)
            if self._level_complete(user_id, activity, pointer.level, con):
                update.level_advanced = True
                update.completed_level = pointer.level
                _LOGGER.info("User %s completed %s level %s", user_id, activity, pointer.level)
                pointer = ActivityProgress(level=pointer.level + 1, highest_question_no=0)
            unlocked[activity] = pointer

        state.unlocked = unlocked
        state.last_played = db.utcnow()
        state.version += 1
        db.save_user_state(
            user_id,
            {key: value.model_dump() for key, value in unlocked.items()},
            state.last_played.isoformat(),
            state.version,
            con=con,
        )
        update.progress = state
        return update

    def _level_complete(self, user_id: str, activity: str, level: int, con: sqlite3.Connection) -> bool:
        required = self.catalog.question_numbers(activity, level, con=con)
        if not required:
            return False
        solved = self.ledger.distinct_question_numbers(user_id, activity, level, success=True, con=con)
        config = self.configs.get_config(activity, con=con)
        if config is not None and config.unlock_on_first_success:
            return bool(required & solved)
        return required <= solved
