"""Aggregated attempt and engagement figures for the admin dashboard."""

from __future__ import annotations

from datetime import timedelta
from typing import Any, Dict, Iterable, Optional

import db
from catalog import ActivityConfigRepository
from engines.ledger import AttemptLedger
from engines.progression import UserProgressTracker
from schemas import Attempt

TOP_USERS = 10


def _rate(part: float, whole: float) -> float:
    return round(part / whole, 4) if whole else 0.0


def attempt_stats(attempts: Iterable[Attempt]) -> Dict[str, Any]:
    attempts = list(attempts)
    total = len(attempts)
    successful = sum(1 for attempt in attempts if attempt.success)
    total_time = sum(attempt.time_taken_seconds for attempt in attempts)
    return {
        "total": total,
        "successful": successful,
        "success_rate": _rate(successful, total),
        "average_time": round(total_time / total, 2) if total else 0.0,
    }


def activity_analytics(
    days: int = 30,
    activity: Optional[str] = None,
    configs: Optional[ActivityConfigRepository] = None,
) -> Dict[str, Any]:
    configs = configs or ActivityConfigRepository()
    since = (db.utcnow() - timedelta(days=max(0, int(days)))).isoformat()
    activity = activity.strip().lower() if activity else None

    breakdown = {row["event_type"]: int(row["count"]) for row in db.event_breakdown(since, activity)}
    engagement = db.user_engagement(since, activity)

    activity_stats = []
    for row in db.attempt_stats_by_activity(since, activity):
        total = int(row["total_attempts"])
        successful = int(row["successful_attempts"])
        config = configs.get_config(row["activity"])
        success_rate = _rate(successful, total)
        activity_stats.append(
            {
                "activity": row["activity"],
                "total_attempts": total,
                "successful_attempts": successful,
                "success_rate": success_rate,
                "total_time": round(float(row["total_time"]), 2),
                "total_stars": int(row["total_stars"]),
                "below_min_success_rate": bool(config and success_rate < config.min_success_rate),
            }
        )

    return {
        "period_days": int(days),
        "events": {"total": sum(breakdown.values()), "breakdown": breakdown},
        "user_engagement": {
            "active_users": len(engagement),
            "top_users": [
                {"user_id": row["user_id"], "events": int(row["events"])} for row in engagement[:TOP_USERS]
            ],
        },
        "activity_stats": activity_stats,
    }


def user_stats(
    user_id: str,
    ledger: Optional[AttemptLedger] = None,
    tracker: Optional[UserProgressTracker] = None,
) -> Dict[str, Any]:
    ledger = ledger or AttemptLedger()
    tracker = tracker or UserProgressTracker(ledger=ledger)
    attempts = ledger.query(user_id=user_id)
    stats = attempt_stats(attempts)
    return {
        "user_id": user_id,
        "total_attempts": stats["total"],
        "successful_attempts": stats["successful"],
        "success_rate": stats["success_rate"],
        "total_stars": sum(attempt.stars_earned for attempt in attempts),
        "average_time": stats["average_time"],
        "total_events": db.count_events(user_id),
        "activities_attempted": sorted({attempt.activity for attempt in attempts}),
        "state": tracker.get_state(user_id).model_dump(mode="json"),
    }
