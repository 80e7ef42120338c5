"""Bulk import questions from a JSON export into the activity catalog."""
from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Any, List, Sequence

import db
from catalog import QuestionCatalog


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("path", type=str, help="JSON file holding a question or a list of questions")
    parser.add_argument(
        "--db",
        type=str,
        default=None,
        help="Path to the SQLite database (default: $DB_PATH or data.db)",
    )
    parser.add_argument(
        "--output",
        type=str,
        default=None,
        help="Optional path to write the JSON import report",
    )
    return parser


def load_records(path: Path) -> List[Any]:
    with path.open("r", encoding="utf-8") as fh:
        raw = json.load(fh)
    if isinstance(raw, dict):
        raw = raw.get("questions", [raw])
    if not isinstance(raw, list):
        raise ValueError("import file must contain a JSON object or list")
    return raw


def main(argv: Sequence[str] | None = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    args = _build_parser().parse_args(argv)

    if args.db:
        db.reset_pool(args.db)
    db.init()

    records = load_records(Path(args.path))
    report = QuestionCatalog().import_questions(records)

    payload = json.dumps(report.model_dump(mode="json"), indent=2, ensure_ascii=False)
    if args.output:
        Path(args.output).write_text(payload + "\n", encoding="utf-8")
    print(payload)

    if report.failed:
        for result in report.results:
            if not result.ok:
                print(f"record {result.index} ({result.id or '?'}): {result.error}")
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
