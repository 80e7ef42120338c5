"""Initialise the activity store with default configs and sample questions."""
from __future__ import annotations

import argparse
import json
import logging
from typing import Any, Dict, List, Sequence

import db
from catalog import ActivityConfigRepository, QuestionCatalog, seed_default_configs

SAMPLE_QUESTIONS: List[Dict[str, Any]] = [
    {
        "id": "arr-001-1-01",
        "activity": "arrange",
        "level": 1,
        "question_no": 1,
        "items": ["c", "a", "b"],
        "answer": ["a", "b", "c"],
        "question_text": "Put the letters in alphabetical order.",
        "presentation": {"shuffle": True, "display_type": "drag_drop"},
        "hints": [{"type": "text", "value": "Start with the letter a.", "cost": 0}],
        "analytics_tags": ["alphabet"],
    },
    {
        "id": "arr-001-1-02",
        "activity": "arrange",
        "level": 1,
        "question_no": 2,
        "items": ["3", "1", "2"],
        "answer": ["1", "2", "3"],
        "question_text": "Count up from one.",
        "analytics_tags": ["numbers"],
    },
    {
        "id": "arr-001-1-03",
        "activity": "arrange",
        "level": 1,
        "question_no": 3,
        "items": ["large", "small", "medium"],
        "answer": ["small", "medium", "large"],
        "question_text": "Order from smallest to largest.",
        "analytics_tags": ["size"],
    },
    {
        "id": "mat-001-1-01",
        "activity": "match",
        "level": 1,
        "question_no": 1,
        "items": ["cat", "dog", "cow"],
        "match_pairs": [
            {"question_value": "cat", "answer_value": "meow"},
            {"question_value": "dog", "answer_value": "woof"},
            {"question_value": "cow", "answer_value": "moo"},
        ],
        "presentation": {"shuffle": True, "display_type": "match"},
        "question_text": "Match each animal with its sound.",
        "analytics_tags": ["animals"],
    },
    {
        "id": "tap-001-1-01",
        "activity": "tap_sequence",
        "level": 1,
        "question_no": 1,
        "items": ["red", "green", "blue"],
        "answer": ["red", "green", "blue"],
        "presentation": {"shuffle": False, "display_type": "tap_sequence"},
        "question_text": "Tap the colours in the order they flashed.",
        "analytics_tags": ["memory"],
    },
]


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--db",
        type=str,
        default=None,
        help="Path to the SQLite database (default: $DB_PATH or data.db)",
    )
    parser.add_argument(
        "--no-questions",
        action="store_true",
        help="Only create the default activity configs",
    )
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    args = _build_parser().parse_args(argv)

    if args.db:
        db.reset_pool(args.db)
    db.init()

    created = seed_default_configs(ActivityConfigRepository())
    summary: Dict[str, Any] = {"configs_created": created}
    if not args.no_questions:
        report = QuestionCatalog().import_questions(SAMPLE_QUESTIONS)
        summary["questions"] = {"succeeded": report.succeeded, "failed": report.failed}

    print(json.dumps(summary, indent=2, ensure_ascii=False))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
