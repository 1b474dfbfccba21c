from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Event
from typing import Any, Dict, Optional

from . import repo
from .config import ScheduledJobsConfig
from .enums import DUE_STATUSES, JobStatus
from .errors import InvalidStateError, NotFoundError
from .manager import ScheduledJobManager
from .models import from_db_time
from .stats import is_cache_expired


logger = logging.getLogger(__name__)


@dataclass
class SchedulerRuntimeState:
    started_at_utc: str
    last_tick_at_utc: Optional[str] = None
    last_tick_summary: Optional[Dict[str, Any]] = None


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0, tzinfo=None).isoformat() + "Z"


def run_tick(manager: ScheduledJobManager, *, limit: int, wait: bool = False) -> Dict[str, Any]:
    """Dispatch pre-generation and due jobs once.

    Losing a claim to a concurrent trigger is expected and counted as
    ``skipped``; it is not an error.
    """

    cfg = manager.config
    now = manager.now()
    pregenerated = 0
    dispatched = 0
    skipped = 0
    errors = 0

    if cfg.preprocess_lead_minutes > 0:
        candidates = repo.jobs_due_within(
            manager.database_url,
            now=now,
            until=now + cfg.preprocess_lead,
            statuses=(JobStatus.SCHEDULED, JobStatus.COMPLETED, JobStatus.FAILED),
            limit=limit,
        )
        for job in candidates:
            send_at = from_db_time(job.next_run_at)
            if not is_cache_expired(job.cache, send_at):
                continue
            try:
                manager.generate_reports(job.job_id, wait=wait)
                pregenerated += 1
            except (InvalidStateError, NotFoundError) as exc:
                logger.debug("Skipping pre-generation for %s: %s", job.job_id, exc)
                skipped += 1
            except Exception:  # noqa: BLE001
                logger.exception("Pre-generation dispatch failed for job %s", job.job_id)
                errors += 1

    due = repo.due_job_ids(manager.database_url, now=now, statuses=DUE_STATUSES, limit=limit)
    for job_id in due:
        try:
            manager.execute_now(job_id, wait=wait)
            dispatched += 1
        except (InvalidStateError, NotFoundError) as exc:
            logger.debug("Skipping due job %s: %s", job_id, exc)
            skipped += 1
        except Exception:  # noqa: BLE001
            logger.exception("Dispatch failed for job %s", job_id)
            errors += 1

    summary = {
        "jobs_due": len(due),
        "dispatched": dispatched,
        "pregenerated": pregenerated,
        "skipped": skipped,
        "errors": errors,
    }
    if due or pregenerated or errors:
        logger.info("Scheduler tick: %s", summary)
    return summary


def run_scheduler_forever(
    manager: ScheduledJobManager,
    cfg: ScheduledJobsConfig,
    stop_event: Event,
    state: SchedulerRuntimeState,
) -> None:
    """Blocking loop that dispatches due jobs on a wall-clock timer."""

    logger.info("Scheduler loop started (tick=%ss)", cfg.tick_seconds)
    while not stop_event.is_set():
        tick_started = datetime.now(timezone.utc)
        state.last_tick_at_utc = _utc_now_iso()

        try:
            state.last_tick_summary = run_tick(manager, limit=int(cfg.max_jobs_per_tick))
        except Exception as exc:  # noqa: BLE001
            logger.exception("Scheduler tick failed")
            state.last_tick_summary = {"error": str(exc)}

        # Sleep for tick interval (minus time spent), but wake quickly on stop.
        elapsed = (datetime.now(timezone.utc) - tick_started).total_seconds()
        sleep_s = max(0.2, float(cfg.tick_seconds) - float(elapsed))
        stop_event.wait(timeout=sleep_s)
    logger.info("Scheduler loop stopped")
