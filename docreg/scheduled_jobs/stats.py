"""Derived job aggregates.

Nothing here is stored: ``email_stats`` and ``progress`` are recomputed from the
customer delivery records every time a job is read, so the aggregate can never
drift from the per-customer array.
"""

from __future__ import annotations

import math
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

from .enums import SendStatus, TERMINAL_SEND_STATUSES


def compute_email_stats(statuses: Iterable[str]) -> Dict[str, int]:
    counts = Counter(SendStatus(s) for s in statuses)
    total = sum(counts.values())
    return {
        "total_emails": total,
        "sent_emails": counts[SendStatus.SENT],
        # Bounces are failed deliveries for reporting purposes.
        "failed_emails": counts[SendStatus.FAILED] + counts[SendStatus.BOUNCED],
        "bounced_emails": counts[SendStatus.BOUNCED],
        "skipped_emails": counts[SendStatus.SKIPPED],
        "pending_emails": counts[SendStatus.PENDING],
    }


def compute_progress(statuses: Iterable[str]) -> int:
    """Percentage (0-100) of customers that reached a terminal send status."""

    items = [SendStatus(s) for s in statuses]
    if not items:
        return 0
    done = sum(1 for s in items if s in TERMINAL_SEND_STATUSES)
    return int(math.floor(100.0 * done / len(items) + 0.5))


def is_cache_expired(cache: Optional[Dict[str, Any]], now: datetime) -> bool:
    if not cache or not cache.get("expires_at"):
        return True
    expires_at = _parse(cache["expires_at"])
    return _as_utc(now) > expires_at


def running_average(previous: Optional[float], run_count: int, sample: float) -> float:
    """Fold ``sample`` into an average over ``run_count`` runs (``run_count`` includes the sample)."""

    if previous is None or run_count <= 1:
        return float(sample)
    return (float(previous) * (run_count - 1) + float(sample)) / run_count


def success_rate(completed: int, failed: int) -> float:
    executed = completed + failed
    if executed <= 0:
        return 0.0
    return round(100.0 * completed / executed, 1)


def _parse(raw: Any) -> datetime:
    if isinstance(raw, datetime):
        return _as_utc(raw)
    return _as_utc(datetime.fromisoformat(str(raw).replace("Z", "+00:00")))


def _as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)
