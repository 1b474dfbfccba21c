from __future__ import annotations

import logging
from datetime import datetime, timezone
from threading import Event, Lock, Thread
from typing import Any, Callable, Dict, List, Optional

from fastmcp import FastMCP

from .auth import actor_from_args, auth_or_error
from .collaborators import HttpReportGenerator, SmtpMailSender, SqlCustomerDirectory
from .config import ScheduledJobsConfig
from .errors import ScheduledJobError
from .manager import ScheduledJobManager
from .runner import SchedulerRuntimeState, run_scheduler_forever


logger = logging.getLogger(__name__)

mcp = FastMCP("scheduled-jobs")

_STOP = Event()
_THREAD: Optional[Thread] = None
_STATE = SchedulerRuntimeState(
    started_at_utc=datetime.now(timezone.utc).replace(microsecond=0, tzinfo=None).isoformat() + "Z"
)

_MANAGER: Optional[ScheduledJobManager] = None
_MANAGER_LOCK = Lock()


def build_manager(cfg: ScheduledJobsConfig) -> ScheduledJobManager:
    return ScheduledJobManager(
        cfg,
        customer_directory=SqlCustomerDirectory(cfg.database_url),
        report_generator=HttpReportGenerator(cfg.report_generator_url),
        mail_sender=SmtpMailSender(
            host=cfg.smtp_host,
            port=cfg.smtp_port,
            sender=cfg.smtp_from,
            username=cfg.smtp_username,
            password=cfg.smtp_password,
            use_tls=cfg.smtp_use_tls,
        ),
    )


def _manager() -> ScheduledJobManager:
    global _MANAGER
    with _MANAGER_LOCK:
        if _MANAGER is None:
            _MANAGER = build_manager(ScheduledJobsConfig.from_env())
        return _MANAGER


def _error_response(exc: ScheduledJobError) -> Dict[str, Any]:
    return {"ok": False, "error": exc.code, "message": exc.message}


def _guarded(client_token: Optional[str], fn: Callable[[ScheduledJobManager], Dict[str, Any]]) -> Dict[str, Any]:
    """Authenticate, run ``fn`` against the manager and map domain errors to responses."""

    manager = _manager()
    err = auth_or_error(client_token, manager.config.mcp_client_token)
    if err:
        return err
    try:
        return {"ok": True, **fn(manager)}
    except ScheduledJobError as exc:
        logger.info("Tool call rejected (%s): %s", exc.code, exc.message)
        return _error_response(exc)


def start_background_scheduler(manager: ScheduledJobManager) -> None:
    global _THREAD
    if _THREAD is not None and _THREAD.is_alive():
        return

    _THREAD = Thread(
        target=run_scheduler_forever,
        args=(manager, manager.config, _STOP, _STATE),
        name="scheduled-jobs-loop",
        daemon=True,
    )
    _THREAD.start()


@mcp.tool
def scheduled_jobs_health(_client_token: Optional[str] = None) -> Dict[str, Any]:
    """Report scheduler loop liveness and the last tick summary."""

    def _run(m: ScheduledJobManager) -> Dict[str, Any]:
        return {
            "service": "scheduled-jobs",
            "thread_alive": bool(_THREAD and _THREAD.is_alive()),
            "tick_seconds": int(m.config.tick_seconds),
            "db": m.database_url.split(":", 1)[0],
            "started_at_utc": _STATE.started_at_utc,
            "last_tick_at_utc": _STATE.last_tick_at_utc,
            "last_tick_summary": _STATE.last_tick_summary,
        }

    return _guarded(_client_token, _run)


@mcp.tool
def scheduled_jobs_create(
    job_type: str,
    schedule: Dict[str, Any],
    report_types: List[str],
    customer_ids: List[str],
    project_ids: Optional[List[str]] = None,
    config: Optional[Dict[str, Any]] = None,
    notes: Optional[str] = None,
    actor_id: Optional[str] = None,
    actor_name: Optional[str] = None,
    actor_email: Optional[str] = None,
    _client_token: Optional[str] = None,
) -> Dict[str, Any]:
    """Create a job. IMMEDIATE jobs start executing in the background."""

    actor = actor_from_args(actor_id, actor_name, actor_email)
    return _guarded(
        _client_token,
        lambda m: {
            "job": m.create(
                job_type=job_type,
                schedule=dict(schedule or {}),
                report_types=list(report_types or []),
                customer_ids=list(customer_ids or []),
                project_ids=list(project_ids or []),
                config=dict(config or {}),
                notes=notes,
                actor=actor,
            )
        },
    )


@mcp.tool
def scheduled_jobs_list(
    status: Optional[str] = None,
    job_type: Optional[str] = None,
    is_active: Optional[bool] = None,
    page: int = 1,
    limit: int = 20,
    _client_token: Optional[str] = None,
) -> Dict[str, Any]:
    return _guarded(
        _client_token,
        lambda m: m.list_jobs(status=status, job_type=job_type, is_active=is_active, page=page, limit=limit),
    )


@mcp.tool
def scheduled_jobs_get(job_id: str, _client_token: Optional[str] = None) -> Dict[str, Any]:
    return _guarded(_client_token, lambda m: {"job": m.get_job(str(job_id))})


@mcp.tool
def scheduled_jobs_update(
    job_id: str,
    changes: Dict[str, Any],
    actor_id: Optional[str] = None,
    actor_name: Optional[str] = None,
    actor_email: Optional[str] = None,
    _client_token: Optional[str] = None,
) -> Dict[str, Any]:
    """Update schedule, config (partial), notes or is_active."""

    actor = actor_from_args(actor_id, actor_name, actor_email)
    return _guarded(_client_token, lambda m: {"job": m.update(str(job_id), dict(changes or {}), actor)})


@mcp.tool
def scheduled_jobs_pause(
    job_id: str,
    actor_id: Optional[str] = None,
    actor_name: Optional[str] = None,
    actor_email: Optional[str] = None,
    _client_token: Optional[str] = None,
) -> Dict[str, Any]:
    actor = actor_from_args(actor_id, actor_name, actor_email)
    return _guarded(_client_token, lambda m: {"job": m.pause(str(job_id), actor)})


@mcp.tool
def scheduled_jobs_resume(
    job_id: str,
    actor_id: Optional[str] = None,
    actor_name: Optional[str] = None,
    actor_email: Optional[str] = None,
    _client_token: Optional[str] = None,
) -> Dict[str, Any]:
    actor = actor_from_args(actor_id, actor_name, actor_email)
    return _guarded(_client_token, lambda m: {"job": m.resume(str(job_id), actor)})


@mcp.tool
def scheduled_jobs_cancel(
    job_id: str,
    actor_id: Optional[str] = None,
    actor_name: Optional[str] = None,
    actor_email: Optional[str] = None,
    _client_token: Optional[str] = None,
) -> Dict[str, Any]:
    """Cancel a job. Cancelling a finished or cancelled job is a no-op."""

    actor = actor_from_args(actor_id, actor_name, actor_email)
    return _guarded(_client_token, lambda m: {"job": m.cancel(str(job_id), actor)})


@mcp.tool
def scheduled_jobs_execute_now(
    job_id: str,
    force: bool = False,
    actor_id: Optional[str] = None,
    actor_name: Optional[str] = None,
    actor_email: Optional[str] = None,
    _client_token: Optional[str] = None,
) -> Dict[str, Any]:
    """Claim the job and run its cycle in the background."""

    actor = actor_from_args(actor_id, actor_name, actor_email)
    return _guarded(
        _client_token,
        lambda m: {"job": m.execute_now(str(job_id), actor, force=bool(force), wait=False)},
    )


@mcp.tool
def scheduled_jobs_generate_reports(
    job_id: str,
    force: bool = False,
    _client_token: Optional[str] = None,
) -> Dict[str, Any]:
    return _guarded(
        _client_token,
        lambda m: {"job": m.generate_reports(str(job_id), force=bool(force), wait=False)},
    )


@mcp.tool
def scheduled_jobs_mark_customer_sent(
    job_id: str,
    customer_id: str,
    outcome: str = "SENT",
    _client_token: Optional[str] = None,
) -> Dict[str, Any]:
    return _guarded(
        _client_token,
        lambda m: {"job": m.mark_customer_sent(str(job_id), str(customer_id), outcome)},
    )


@mcp.tool
def scheduled_jobs_mark_customer_failed(
    job_id: str,
    customer_id: str,
    error_message: str,
    _client_token: Optional[str] = None,
) -> Dict[str, Any]:
    return _guarded(
        _client_token,
        lambda m: {"job": m.mark_customer_failed(str(job_id), str(customer_id), error_message)},
    )


@mcp.tool
def scheduled_jobs_customers(job_id: str, _client_token: Optional[str] = None) -> Dict[str, Any]:
    return _guarded(_client_token, lambda m: m.job_customers(str(job_id)))


@mcp.tool
def scheduled_jobs_statistics(_client_token: Optional[str] = None) -> Dict[str, Any]:
    return _guarded(_client_token, lambda m: {"statistics": m.statistics()})


@mcp.tool
def scheduled_jobs_upcoming(limit: int = 10, _client_token: Optional[str] = None) -> Dict[str, Any]:
    return _guarded(_client_token, lambda m: {"jobs": m.upcoming(limit=limit)})


@mcp.tool
def scheduled_jobs_recent(limit: int = 10, _client_token: Optional[str] = None) -> Dict[str, Any]:
    return _guarded(_client_token, lambda m: {"jobs": m.recent(limit=limit)})


@mcp.tool
def scheduled_jobs_delete(job_id: str, _client_token: Optional[str] = None) -> Dict[str, Any]:
    """Administrative delete: removes the job, its customers and its history."""

    return _guarded(_client_token, lambda m: m.delete(str(job_id)))


@mcp.tool
def customers_create(
    name: str,
    email: str,
    company: Optional[str] = None,
    _client_token: Optional[str] = None,
) -> Dict[str, Any]:
    return _guarded(_client_token, lambda m: {"customer": m.create_customer(name=name, email=email, company=company)})


@mcp.tool
def customers_get(customer_id: str, _client_token: Optional[str] = None) -> Dict[str, Any]:
    return _guarded(_client_token, lambda m: {"customer": m.get_customer(str(customer_id))})


@mcp.tool
def customers_list(_client_token: Optional[str] = None) -> Dict[str, Any]:
    return _guarded(_client_token, lambda m: {"customers": m.list_customers()})


def run() -> None:
    cfg = ScheduledJobsConfig.from_env()
    logging.basicConfig(
        level=getattr(logging, cfg.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s",
    )

    start_background_scheduler(_manager())

    logger.info("Serving scheduled jobs MCP on %s:%s (%s)", cfg.mcp_host, cfg.mcp_port, cfg.mcp_transport)
    # FastMCP signature differs across versions, so keep it permissive.
    try:
        mcp.run(transport=cfg.mcp_transport, host=cfg.mcp_host, port=int(cfg.mcp_port))
    except TypeError:
        mcp.run(transport=cfg.mcp_transport)


if __name__ == "__main__":
    run()
