"""Scheduled job manager.

Owns the job lifecycle: creation, schedule arming, the generate -> cache ->
send cycle, per-customer delivery outcomes and the dashboard reads.

Every status change goes through a conditional update keyed on the status the
caller observed, so two triggers racing for the same job cannot both win.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from datetime import datetime
from math import ceil
from threading import Lock
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from . import repo
from .auth import SYSTEM_ACTOR, Actor
from .collaborators import (
    CustomerDirectory,
    MailBounced,
    MailSender,
    OutgoingEmail,
    ReportGenerator,
    ReportRequest,
    ReportResult,
)
from .config import ScheduledJobsConfig
from .enums import (
    CYCLE_END_STATUSES,
    IN_FLIGHT_STATUSES,
    REPORT_TYPES,
    HistoryAction,
    JobStatus,
    JobType,
    ScheduleType,
    SendStatus,
)
from .errors import ExternalCollaboratorError, InvalidStateError, NotFoundError, ValidationError
from .models import ScheduledJob, iso, new_job_id, utcnow
from .schedule import Schedule, compute_next_run, validate_schedule
from .stats import compute_email_stats, compute_progress, is_cache_expired, success_rate
from .templates import DEFAULT_TEMPLATE, build_subject, ensure_template, render_email


logger = logging.getLogger(__name__)

_CAS_ATTEMPTS = 5
_MAX_PAGE_SIZE = 100

_UPDATABLE_FIELDS = {"schedule", "config", "notes", "is_active"}
_CONFIG_KEYS = {
    "report_types": "report_types",
    "reportTypes": "report_types",
    "project_ids": "project_ids",
    "projectIds": "project_ids",
    "email_template": "email_template",
    "emailTemplate": "email_template",
    "custom_subject": "custom_subject",
    "customSubject": "custom_subject",
    "attach_reports": "attach_reports",
    "attachReports": "attach_reports",
}

_RECURRING_RESET = (SendStatus.SENT, SendStatus.FAILED, SendStatus.BOUNCED, SendStatus.SKIPPED)
_ONE_SHOT_RESET = (SendStatus.FAILED, SendStatus.BOUNCED)


class ScheduledJobManager:
    def __init__(
        self,
        config: ScheduledJobsConfig,
        *,
        customer_directory: CustomerDirectory,
        report_generator: ReportGenerator,
        mail_sender: MailSender,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.config = config
        self.database_url = config.database_url
        self.customer_directory = customer_directory
        self.report_generator = report_generator
        self.mail_sender = mail_sender
        self._clock = clock or utcnow

        self._cycles = ThreadPoolExecutor(
            max_workers=int(config.max_concurrent_cycles), thread_name_prefix="job-cycle"
        )
        self._delivery = ThreadPoolExecutor(
            max_workers=int(config.delivery_workers), thread_name_prefix="job-delivery"
        )
        # Collaborator calls run here so a hung call can be abandoned after its timeout.
        self._call_slots = config.call_pool_size
        self._calls = ThreadPoolExecutor(max_workers=self._call_slots, thread_name_prefix="job-call")
        # Workers still held by calls that already timed out.
        self._held_calls = 0
        self._held_lock = Lock()

        repo.init_db(self.database_url)

    def now(self) -> datetime:
        return self._clock()

    def shutdown(self, wait: bool = True) -> None:
        self._cycles.shutdown(wait=wait)
        self._delivery.shutdown(wait=wait)
        self._calls.shutdown(wait=False)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_job(self, job_id: str) -> Dict[str, Any]:
        return self._require(job_id).to_dict(self.now())

    def list_jobs(
        self,
        *,
        status: Optional[str] = None,
        job_type: Optional[str] = None,
        is_active: Optional[bool] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Dict[str, Any]:
        if status:
            status = _enum_value(JobStatus, status, "status")
        if job_type:
            job_type = _enum_value(JobType, job_type, "job_type")
        page = int(page)
        limit = int(limit)
        if page < 1:
            raise ValidationError("page must be >= 1.")
        if not 1 <= limit <= _MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {_MAX_PAGE_SIZE}.")

        jobs, total = repo.list_jobs(
            self.database_url,
            status=status,
            job_type=job_type,
            is_active=is_active,
            offset=(page - 1) * limit,
            limit=limit,
        )
        now = self.now()
        return {
            "jobs": [j.to_dict(now) for j in jobs],
            "pagination": {
                "page": page,
                "limit": limit,
                "total_pages": int(ceil(total / float(limit))) if total else 0,
                "total_items": total,
            },
        }

    def job_customers(self, job_id: str) -> Dict[str, Any]:
        job = self._require(job_id)
        statuses = [c.send_status for c in job.customers]
        return {
            "job_id": job.job_id,
            "customers": [c.to_dict() for c in job.customers],
            "email_stats": compute_email_stats(statuses),
            "progress": compute_progress(statuses),
        }

    def statistics(self) -> Dict[str, Any]:
        agg = repo.job_aggregates(self.database_url)
        by_status = {s.value: int(agg["by_status"].get(s.value, 0)) for s in JobStatus}
        by_type = {t.value: int(agg["by_type"].get(t.value, 0)) for t in JobType}
        sends = agg["send_counts"]
        sent = int(sends.get(SendStatus.SENT.value, 0))
        failed = int(sends.get(SendStatus.FAILED.value, 0)) + int(sends.get(SendStatus.BOUNCED.value, 0))
        avg_ms = agg["avg_processing_ms"]

        return {
            "total_jobs": agg["total"],
            "active_jobs": agg["active"],
            "by_status": by_status,
            "by_type": by_type,
            "avg_processing_time": round(avg_ms) if avg_ms is not None else 0,
            "success_rate": success_rate(by_status[JobStatus.COMPLETED.value], by_status[JobStatus.FAILED.value]),
            "emails": {
                "total": sum(int(v) for v in sends.values()),
                "sent": sent,
                "failed": failed,
                "skipped": int(sends.get(SendStatus.SKIPPED.value, 0)),
                "pending": int(sends.get(SendStatus.PENDING.value, 0)),
                "success_rate": success_rate(sent, failed),
            },
            "fi_matches": agg["total_matches"],
            "processed_projects": agg["processed_projects"],
        }

    def upcoming(self, limit: int = 10) -> List[Dict[str, Any]]:
        jobs = repo.upcoming_jobs(
            self.database_url,
            statuses=(JobStatus.SCHEDULED, JobStatus.CACHED),
            limit=max(1, int(limit)),
        )
        now = self.now()
        return [j.to_dict(now) for j in jobs]

    def recent(self, limit: int = 10) -> List[Dict[str, Any]]:
        jobs = repo.recent_jobs(
            self.database_url,
            statuses=(JobStatus.COMPLETED, JobStatus.FAILED),
            limit=max(1, int(limit)),
        )
        now = self.now()
        return [j.to_dict(now) for j in jobs]

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def create(
        self,
        *,
        job_type: str,
        schedule: Union[Schedule, Dict[str, Any]],
        report_types: Iterable[str],
        customer_ids: Iterable[str],
        project_ids: Optional[Iterable[str]] = None,
        config: Optional[Dict[str, Any]] = None,
        actor: Optional[Actor] = None,
        notes: Optional[str] = None,
        wait: bool = False,
    ) -> Dict[str, Any]:
        actor = actor or SYSTEM_ACTOR
        now = self.now()

        jtype = JobType(_enum_value(JobType, job_type, "job_type"))
        sched = schedule if isinstance(schedule, Schedule) else Schedule.from_dict(schedule)
        validate_schedule(sched, now=now)

        cfg: Dict[str, Any] = {}
        for key, value in (config or {}).items():
            if key not in _CONFIG_KEYS:
                raise ValidationError(f"Unknown config field: {key}")
            cfg[_CONFIG_KEYS[key]] = value
        cfg["report_types"] = list(report_types or [])
        cfg["project_ids"] = list(project_ids or [])
        job_config = _normalise_config(cfg)

        ids = _dedupe(str(c).strip() for c in (customer_ids or []) if str(c).strip())
        if not ids:
            raise ValidationError("At least one customer is required.")

        customers = []
        for cid in ids:
            snap = self.customer_directory.resolve(cid)
            if snap is None:
                raise NotFoundError(f"Customer not found: {cid}")
            customers.append({"customer_id": cid, "email": snap.email, "name": snap.name})

        immediate = sched.type == ScheduleType.IMMEDIATE
        job_id = new_job_id()
        job = repo.insert_job(
            self.database_url,
            job_id=job_id,
            job_type=jtype.value,
            status=JobStatus.PROCESSING if immediate else JobStatus.SCHEDULED,
            schedule=sched.to_dict(),
            config=job_config,
            next_run_at=compute_next_run(sched, now),
            customers=customers,
            created_by=actor.to_dict(),
            notes=notes,
            created_at=now,
            history={
                "action": HistoryAction.CREATED.value,
                "details": f"{jtype.value} job created for {len(customers)} customer(s)",
                "result": {"schedule": sched.type.value},
            },
        )
        logger.info("Created job %s (%s, %s, %d customers)", job_id, jtype.value, sched.type.value, len(customers))

        if immediate:
            # Inserted already PROCESSING, so no other trigger can claim it first.
            self._append_history(job_id, HistoryAction.STARTED, "Immediate execution started", actor, {"use_cache": False})
            self._dispatch(job_id, actor, use_cache=False, wait=wait)
            return self.get_job(job_id)

        return job.to_dict(now)

    def update(self, job_id: str, changes: Dict[str, Any], actor: Optional[Actor] = None) -> Dict[str, Any]:
        actor = actor or SYSTEM_ACTOR
        if not isinstance(changes, dict) or not changes:
            raise ValidationError("No changes supplied.")
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")

        for _ in range(_CAS_ATTEMPTS):
            job = self._require(job_id)
            status = JobStatus(job.status)
            if status in IN_FLIGHT_STATUSES:
                raise InvalidStateError(f"Job {job_id} is running and cannot be modified.")
            if status == JobStatus.CANCELLED:
                raise InvalidStateError(f"Job {job_id} is cancelled and cannot be modified.")

            now = self.now()
            fields: Dict[str, Any] = {}
            changed: List[str] = []

            if "schedule" in changes:
                sched = changes["schedule"]
                sched = sched if isinstance(sched, Schedule) else Schedule.from_dict(sched)
                validate_schedule(sched, now=now)
                fields["schedule"] = sched.to_dict()
                fields["next_run_at"] = compute_next_run(sched, now)
                changed.append("schedule")

            if "config" in changes:
                if not isinstance(changes["config"], dict):
                    raise ValidationError("config must be an object.")
                merged = dict(job.config)
                for key, value in changes["config"].items():
                    if key not in _CONFIG_KEYS:
                        raise ValidationError(f"Unknown config field: {key}")
                    merged[_CONFIG_KEYS[key]] = value
                new_config = _normalise_config(merged)
                fields["config"] = new_config
                changed.append("config")
                old = job.config
                if (
                    new_config["report_types"] != old.get("report_types")
                    or new_config["project_ids"] != old.get("project_ids")
                ):
                    fields["cache"] = None
                    if status == JobStatus.CACHED:
                        fields["status"] = JobStatus.SCHEDULED

            if "notes" in changes:
                fields["notes"] = None if changes["notes"] is None else str(changes["notes"])
                changed.append("notes")

            if "is_active" in changes:
                fields["is_active"] = bool(changes["is_active"])
                changed.append("is_active")

            fields["modified_by"] = actor.to_dict()
            if repo.update_fields(self.database_url, job_id, only_if_statuses=[status], **fields):
                break
        else:
            raise InvalidStateError(f"Job {job_id} changed concurrently; retry the update.")

        self._append_history(job_id, HistoryAction.MODIFIED, f"Updated: {', '.join(changed)}", actor, {"fields": changed})
        logger.info("Updated job %s (%s)", job_id, ", ".join(changed))
        return self.get_job(job_id)

    def pause(self, job_id: str, actor: Optional[Actor] = None) -> Dict[str, Any]:
        actor = actor or SYSTEM_ACTOR
        for _ in range(_CAS_ATTEMPTS):
            job = self._require(job_id)
            status = JobStatus(job.status)
            if status in IN_FLIGHT_STATUSES:
                raise InvalidStateError(f"Job {job_id} is {status.value}; a running execution cannot be paused.")
            pausable = status in (JobStatus.SCHEDULED, JobStatus.CACHED) or (
                status in (JobStatus.COMPLETED, JobStatus.FAILED) and not _is_finished(job)
            )
            if not pausable:
                raise InvalidStateError(f"Job {job_id} cannot be paused from {status.value}.")
            if repo.transition(
                self.database_url,
                job_id,
                from_statuses=[status],
                to_status=JobStatus.PAUSED,
                modified_by=actor.to_dict(),
            ):
                break
        else:
            raise InvalidStateError(f"Job {job_id} changed concurrently; retry the pause.")

        self._append_history(job_id, HistoryAction.MODIFIED, f"Paused (was {status.value})", actor)
        logger.info("Paused job %s", job_id)
        return self.get_job(job_id)

    def resume(self, job_id: str, actor: Optional[Actor] = None) -> Dict[str, Any]:
        actor = actor or SYSTEM_ACTOR
        job = self._require(job_id)
        if JobStatus(job.status) != JobStatus.PAUSED:
            raise InvalidStateError(f"Job {job_id} is {job.status}; only paused jobs can be resumed.")

        sched = Schedule.from_dict(job.schedule)
        next_run = compute_next_run(sched, self.now())
        if not repo.transition(
            self.database_url,
            job_id,
            from_statuses=[JobStatus.PAUSED],
            to_status=JobStatus.SCHEDULED,
            next_run_at=next_run,
            modified_by=actor.to_dict(),
        ):
            raise InvalidStateError(f"Job {job_id} is no longer paused.")

        self._append_history(job_id, HistoryAction.MODIFIED, f"Resumed, next run {iso(next_run)}", actor)
        logger.info("Resumed job %s (next run %s)", job_id, iso(next_run))
        return self.get_job(job_id)

    def cancel(self, job_id: str, actor: Optional[Actor] = None) -> Dict[str, Any]:
        actor = actor or SYSTEM_ACTOR
        for _ in range(_CAS_ATTEMPTS):
            job = self._require(job_id)
            status = JobStatus(job.status)
            if status in CYCLE_END_STATUSES:
                logger.info("Cancel of job %s ignored; already %s", job_id, status.value)
                return job.to_dict(self.now())
            if repo.transition(
                self.database_url,
                job_id,
                from_statuses=[status],
                to_status=JobStatus.CANCELLED,
                is_active=False,
                modified_by=actor.to_dict(),
            ):
                break
        else:
            raise InvalidStateError(f"Job {job_id} changed concurrently; retry the cancel.")

        self._append_history(job_id, HistoryAction.CANCELLED, f"Cancelled (was {status.value})", actor)
        logger.info("Cancelled job %s (was %s)", job_id, status.value)
        return self.get_job(job_id)

    def delete(self, job_id: str) -> Dict[str, Any]:
        res = repo.delete_job(self.database_url, job_id, unless_statuses=IN_FLIGHT_STATUSES)
        if res is None:
            raise NotFoundError(f"Job not found: {job_id}")
        if res is False:
            raise InvalidStateError(f"Job {job_id} is running and cannot be deleted.")
        logger.info("Deleted job %s", job_id)
        return {"job_id": job_id, "deleted": True}

    def execute_now(
        self,
        job_id: str,
        actor: Optional[Actor] = None,
        *,
        force: bool = False,
        wait: bool = True,
    ) -> Dict[str, Any]:
        """Start a cycle for the job now.

        Cached artifacts that have not expired are reused unless ``force`` is
        set. With ``wait=False`` the cycle runs on the background pool and the
        claimed job is returned straight away.
        """

        actor = actor or SYSTEM_ACTOR
        for _ in range(_CAS_ATTEMPTS):
            job = self._require(job_id)
            status = JobStatus(job.status)
            if status in IN_FLIGHT_STATUSES:
                raise InvalidStateError(f"Job {job_id} is already running ({status.value}).")
            if status == JobStatus.CANCELLED:
                raise InvalidStateError(f"Job {job_id} is cancelled.")

            use_cache = not force and not is_cache_expired(job.cache, self.now())
            target = JobStatus.SENDING if use_cache else JobStatus.PROCESSING
            if repo.transition(self.database_url, job_id, from_statuses=[status], to_status=target):
                break
        else:
            raise InvalidStateError(f"Job {job_id} changed concurrently; retry.")

        if int(job.run_count or 0) > 0:
            one_shot = Schedule.from_dict(job.schedule).is_one_shot
            reset = repo.reset_customers(
                self.database_url, job_id, statuses=_ONE_SHOT_RESET if one_shot else _RECURRING_RESET
            )
            if reset:
                logger.info("Reset %d customer(s) to PENDING for job %s", reset, job_id)

        logger.info("Claimed job %s from %s (%s)", job_id, status.value, "cached" if use_cache else "generate")
        self._append_history(
            job_id,
            HistoryAction.STARTED,
            "Execution started using cached reports" if use_cache else "Execution started",
            actor,
            {"use_cache": use_cache, "force": bool(force)},
        )
        self._dispatch(job_id, actor, use_cache=use_cache, wait=wait)
        return self.get_job(job_id)

    def generate_reports(
        self,
        job_id: str,
        actor: Optional[Actor] = None,
        *,
        force: bool = False,
        wait: bool = True,
    ) -> Dict[str, Any]:
        """Run only the generation phase so a later send can reuse the cache."""

        actor = actor or SYSTEM_ACTOR
        for _ in range(_CAS_ATTEMPTS):
            job = self._require(job_id)
            status = JobStatus(job.status)
            if status in IN_FLIGHT_STATUSES:
                raise InvalidStateError(f"Job {job_id} is already running ({status.value}).")
            if status not in (JobStatus.SCHEDULED, JobStatus.CACHED, JobStatus.COMPLETED, JobStatus.FAILED):
                raise InvalidStateError(f"Reports cannot be generated for a {status.value} job.")
            if not force and not is_cache_expired(job.cache, self.now()):
                return job.to_dict(self.now())
            if repo.transition(self.database_url, job_id, from_statuses=[status], to_status=JobStatus.PROCESSING):
                break
        else:
            raise InvalidStateError(f"Job {job_id} changed concurrently; retry.")

        logger.info("Pre-generating reports for job %s", job_id)
        if wait:
            self._pregenerate(job_id, status, actor)
        else:
            self._cycles.submit(self._pregenerate, job_id, status, actor)
        return self.get_job(job_id)

    def mark_customer_sent(
        self,
        job_id: str,
        customer_id: str,
        outcome: str = SendStatus.SENT.value,
    ) -> Dict[str, Any]:
        result = SendStatus(_enum_value(SendStatus, outcome, "outcome"))
        if result not in (SendStatus.SENT, SendStatus.SKIPPED):
            raise ValidationError("outcome must be SENT or SKIPPED.")
        self._mark_customer(job_id, customer_id, result, None)
        return self.get_job(job_id)

    def mark_customer_failed(self, job_id: str, customer_id: str, error_message: str) -> Dict[str, Any]:
        self._mark_customer(job_id, customer_id, SendStatus.FAILED, str(error_message or "Delivery failed"))
        return self.get_job(job_id)

    # ------------------------------------------------------------------
    # Customer directory
    # ------------------------------------------------------------------

    def create_customer(self, *, name: str, email: str, company: Optional[str] = None) -> Dict[str, Any]:
        if not str(name or "").strip():
            raise ValidationError("Customer name is required.")
        if "@" not in str(email or ""):
            raise ValidationError(f"Invalid email address: {email!r}")
        return repo.create_customer(self.database_url, name=name, email=email, company=company)

    def get_customer(self, customer_id: str) -> Dict[str, Any]:
        row = repo.get_customer(self.database_url, customer_id)
        if not row:
            raise NotFoundError(f"Customer not found: {customer_id}")
        return row

    def list_customers(self) -> List[Dict[str, Any]]:
        return repo.list_customers(self.database_url)

    # ------------------------------------------------------------------
    # Cycle internals
    # ------------------------------------------------------------------

    def _require(self, job_id: str) -> ScheduledJob:
        job = repo.load_job(self.database_url, str(job_id))
        if job is None:
            raise NotFoundError(f"Job not found: {job_id}")
        return job

    def _append_history(
        self,
        job_id: str,
        action: HistoryAction,
        details: str,
        actor: Actor,
        result: Optional[Dict[str, Any]] = None,
    ) -> None:
        repo.append_history(
            self.database_url,
            job_id,
            action=action,
            at=self.now(),
            details=details,
            result=result,
            executed_by=actor.to_dict(),
        )

    def _mark_customer(self, job_id: str, customer_id: str, outcome: SendStatus, error: Optional[str]) -> None:
        self._require(job_id)
        row = repo.get_job_customer(self.database_url, job_id, customer_id)
        if row is None:
            raise NotFoundError(f"Customer {customer_id} is not part of job {job_id}")
        if row.send_status != SendStatus.PENDING.value:
            raise InvalidStateError(f"Customer {customer_id} already {row.send_status} in this cycle.")
        if not repo.set_customer_outcome(
            self.database_url, job_id, customer_id, send_status=outcome, at=self.now(), error_message=error
        ):
            raise InvalidStateError(f"Customer {customer_id} was updated concurrently.")
        logger.info("Marked customer %s of job %s as %s", customer_id, job_id, outcome.value)

    def _dispatch(self, job_id: str, actor: Actor, *, use_cache: bool, wait: bool) -> None:
        if wait:
            self._run_cycle(job_id, actor, use_cache)
        else:
            self._cycles.submit(self._run_cycle, job_id, actor, use_cache)

    @property
    def held_call_workers(self) -> int:
        with self._held_lock:
            return self._held_calls

    def _call(self, fn: Callable[..., Any], call_timeout: float, *args: Any, **kwargs: Any) -> Any:
        """Run a collaborator call on the call pool and give up after ``call_timeout``.

        A call that times out keeps its worker until the collaborator returns.
        Once every worker is held that way, new calls fail immediately rather
        than waiting in the queue for a worker that may never free up.
        """

        name = getattr(fn, "__qualname__", repr(fn))
        held = self.held_call_workers
        if held >= self._call_slots:
            logger.error(
                "Call pool exhausted: %d of %d workers held by timed-out calls; refusing %s", held, self._call_slots, name
            )
            raise ExternalCollaboratorError(
                f"All {self._call_slots} collaborator workers are held by timed-out calls."
            )

        future: Future = self._calls.submit(fn, *args, **kwargs)
        try:
            return future.result(timeout=call_timeout)
        except FutureTimeout:
            if future.cancel():
                raise ExternalCollaboratorError(
                    f"Timed out after {call_timeout:g}s waiting for a collaborator worker"
                ) from None
            with self._held_lock:
                self._held_calls += 1
                held = self._held_calls
            future.add_done_callback(self._release_call_worker)
            logger.warning(
                "%s timed out after %gs; %d of %d call workers held", name, call_timeout, held, self._call_slots
            )
            raise ExternalCollaboratorError(f"Timed out after {call_timeout:g}s") from None

    def _release_call_worker(self, _future: Future) -> None:
        with self._held_lock:
            self._held_calls -= 1

    def _generate(self, job: ScheduledJob) -> Dict[str, Any]:
        cfg = job.config
        request = ReportRequest(
            job_id=job.job_id,
            report_types=list(cfg.get("report_types") or []),
            project_ids=list(cfg.get("project_ids") or []),
            customer_ids=[c.customer_id for c in job.customers],
            config=cfg,
        )
        timeout = float(self.config.generation_timeout_seconds)
        result: ReportResult = self._call(self.report_generator.generate, timeout, request, timeout=timeout)
        now = self.now()
        return {
            "report_ids": list(result.artifact_refs),
            "paths": list(result.paths),
            "preview_html": result.preview_html,
            "customer_matches": result.customer_matches,
            "total_matches": int(result.total_matches or 0),
            "processed_projects": int(result.processed_projects or 0),
            "generated_at": iso(now),
            "expires_at": iso(now + self.config.cache_ttl),
        }

    def _pregenerate(self, job_id: str, previous: JobStatus, actor: Actor) -> None:
        job = self._require(job_id)
        try:
            cache = self._generate(job)
        except Exception as exc:  # noqa: BLE001
            message = _error_text(exc)
            logger.warning("Pre-generation failed for job %s: %s", job_id, message)
            repo.transition(
                self.database_url,
                job_id,
                from_statuses=[JobStatus.PROCESSING],
                to_status=previous,
                last_error_message=message,
                last_error_at=self.now(),
            )
            self._append_history(job_id, HistoryAction.FAILED, f"Report pre-generation failed: {message}", actor)
            return

        if repo.transition(
            self.database_url, job_id, from_statuses=[JobStatus.PROCESSING], to_status=JobStatus.CACHED, cache=cache
        ):
            logger.info("Cached %d report(s) for job %s", len(cache["report_ids"]), job_id)
        else:
            logger.info("Job %s left PROCESSING during pre-generation; discarding reports", job_id)

    def _run_cycle(self, job_id: str, actor: Actor, use_cache: bool) -> None:
        started = time.monotonic()
        try:
            self._cycle(job_id, actor, use_cache, started)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Cycle for job %s crashed", job_id)
            self._close_cycle(
                job_id,
                actor,
                from_statuses=IN_FLIGHT_STATUSES,
                succeeded=False,
                started=started,
                error=_error_text(exc),
                stats=None,
            )

    def _cycle(self, job_id: str, actor: Actor, use_cache: bool, started: float) -> None:
        job = self._require(job_id)

        if not use_cache:
            try:
                cache = self._generate(job)
            except Exception as exc:  # noqa: BLE001
                message = _error_text(exc)
                logger.error("Report generation failed for job %s: %s", job_id, message)
                self._close_cycle(
                    job_id,
                    actor,
                    from_statuses=[JobStatus.PROCESSING],
                    succeeded=False,
                    started=started,
                    error=f"Report generation failed: {message}",
                    stats=None,
                )
                return

            if not repo.transition(
                self.database_url, job_id, from_statuses=[JobStatus.PROCESSING], to_status=JobStatus.CACHED, cache=cache
            ):
                logger.info("Job %s left PROCESSING during generation; stopping cycle", job_id)
                return
            logger.info("Generated %d report(s) for job %s", len(cache["report_ids"]), job_id)

            if not repo.transition(
                self.database_url, job_id, from_statuses=[JobStatus.CACHED], to_status=JobStatus.SENDING
            ):
                logger.info("Job %s left CACHED before sending; stopping cycle", job_id)
                return
        else:
            logger.info("Reusing cached reports for job %s", job_id)

        job = self._require(job_id)
        self._send_all(job)

        statuses = repo.customer_statuses(self.database_url, job_id)
        stats = compute_email_stats(statuses)
        failed = stats["failed_emails"]
        error = None
        if failed:
            error = f"{failed} of {stats['total_emails']} deliveries failed"
        self._close_cycle(
            job_id,
            actor,
            from_statuses=[JobStatus.SENDING],
            succeeded=not failed,
            started=started,
            error=error,
            stats=stats,
        )

    def _send_all(self, job: ScheduledJob) -> None:
        cache = job.cache or {}
        matches_by_customer = cache.get("customer_matches")
        futures = []
        for customer in repo.pending_customers(self.database_url, job.job_id):
            matches: List[Dict[str, Any]] = []
            if isinstance(matches_by_customer, dict):
                matches = list(matches_by_customer.get(customer.customer_id) or [])
                if not matches:
                    repo.set_customer_outcome(
                        self.database_url,
                        job.job_id,
                        customer.customer_id,
                        send_status=SendStatus.SKIPPED,
                        at=self.now(),
                    )
                    continue
            futures.append(self._delivery.submit(self._deliver, job, cache, customer.customer_id, customer.email, customer.name, matches))

        for f in futures:
            f.result()

    def _deliver(
        self,
        job: ScheduledJob,
        cache: Dict[str, Any],
        customer_id: str,
        email: str,
        name: Optional[str],
        matches: List[Dict[str, Any]],
    ) -> None:
        if repo.get_status(self.database_url, job.job_id) != JobStatus.SENDING.value:
            return

        cfg = job.config
        template = cfg.get("email_template") or DEFAULT_TEMPLATE
        attachments = list(cache.get("paths") or []) if cfg.get("attach_reports") else []
        outcome = SendStatus.SENT
        error: Optional[str] = None
        try:
            html = render_email(
                template,
                {
                    "customer_name": name,
                    "report_types": list(cfg.get("report_types") or []),
                    "matches": matches,
                    "total_matches": len(matches) if matches else int(cache.get("total_matches") or 0),
                    "processed_projects": int(cache.get("processed_projects") or 0),
                    "preview_html": cache.get("preview_html"),
                    "attachments": attachments,
                    "job_id": job.job_id,
                },
            )
            message = OutgoingEmail(
                to=email,
                subject=build_subject(template, cfg.get("report_types") or [], cfg.get("custom_subject")),
                html_body=html,
                attachments=attachments,
            )
            timeout = float(self.config.send_timeout_seconds)
            self._call(self.mail_sender.send, timeout, message, timeout=timeout)
        except MailBounced as exc:
            outcome, error = SendStatus.BOUNCED, _error_text(exc)
        except Exception as exc:  # noqa: BLE001
            outcome, error = SendStatus.FAILED, _error_text(exc)

        if outcome == SendStatus.SENT:
            logger.info("Delivered job %s to %s", job.job_id, email)
        else:
            logger.warning("Delivery of job %s to %s %s: %s", job.job_id, email, outcome.value, error)

        if not repo.set_customer_outcome(
            self.database_url, job.job_id, customer_id, send_status=outcome, at=self.now(), error_message=error
        ):
            logger.debug("Customer %s of job %s was already marked", customer_id, job.job_id)

    def _close_cycle(
        self,
        job_id: str,
        actor: Actor,
        *,
        from_statuses: Iterable[JobStatus],
        succeeded: bool,
        started: float,
        error: Optional[str],
        stats: Optional[Dict[str, int]],
    ) -> None:
        job = self._require(job_id)
        now = self.now()
        sched = Schedule.from_dict(job.schedule)
        if sched.is_one_shot:
            rearm: Dict[str, Any] = {"next_run_at": None, "is_active": False}
        else:
            rearm = {"next_run_at": compute_next_run(sched, now)}

        to_status = JobStatus.COMPLETED if succeeded else JobStatus.FAILED
        elapsed_ms = (time.monotonic() - started) * 1000.0
        if not repo.finish_cycle(
            self.database_url,
            job_id,
            from_statuses=from_statuses,
            to_status=to_status,
            succeeded=succeeded,
            processing_ms=elapsed_ms,
            finished_at=now,
            error_message=error,
            **rearm,
        ):
            logger.info("Job %s was cancelled during its cycle; final status left unchanged", job_id)
            return

        action = HistoryAction.COMPLETED if succeeded else HistoryAction.FAILED
        details = "Execution completed" if succeeded else (error or "Execution failed")
        result: Dict[str, Any] = {"processing_ms": round(elapsed_ms)}
        if stats is not None:
            result["email_stats"] = stats
        self._append_history(job_id, action, details, actor, result)

        next_run = rearm.get("next_run_at")
        if succeeded:
            logger.info("Job %s completed in %.0fms; next run %s", job_id, elapsed_ms, iso(next_run))
        else:
            logger.error("Job %s failed: %s; next run %s", job_id, error, iso(next_run))


def _is_finished(job: ScheduledJob) -> bool:
    """True when the job reached a cycle end and will not run again."""

    status = JobStatus(job.status)
    if status not in CYCLE_END_STATUSES:
        return False
    return status == JobStatus.CANCELLED or not job.is_active or job.next_run_at is None


def _normalise_config(cfg: Dict[str, Any]) -> Dict[str, Any]:
    raw_types = cfg.get("report_types") or []
    if isinstance(raw_types, str):
        raw_types = [raw_types]
    report_types = _dedupe(str(t).strip().lower() for t in raw_types if str(t).strip())
    if not report_types:
        raise ValidationError("At least one report type is required.")
    unknown = [t for t in report_types if t not in REPORT_TYPES]
    if unknown:
        raise ValidationError(f"Unknown report types: {', '.join(unknown)}")

    raw_projects = cfg.get("project_ids") or []
    if isinstance(raw_projects, str):
        raw_projects = [raw_projects]

    custom_subject = cfg.get("custom_subject")
    return {
        "report_types": report_types,
        "project_ids": _dedupe(str(p).strip() for p in raw_projects if str(p).strip()),
        "email_template": ensure_template(cfg.get("email_template")),
        "custom_subject": str(custom_subject).strip() if custom_subject else None,
        "attach_reports": bool(cfg.get("attach_reports", True)),
    }


def _dedupe(values: Iterable[str]) -> List[str]:
    seen = set()
    out = []
    for v in values:
        if v not in seen:
            seen.add(v)
            out.append(v)
    return out


def _enum_value(enum_cls, raw: Any, name: str) -> str:
    try:
        return enum_cls(str(raw).strip().upper()).value
    except ValueError:
        raise ValidationError(f"Invalid {name}: {raw!r}") from None


def _error_text(exc: BaseException) -> str:
    return str(getattr(exc, "message", None) or exc) or exc.__class__.__name__
