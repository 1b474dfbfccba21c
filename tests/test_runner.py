import threading
import time
from datetime import datetime, timezone

from docreg.scheduled_jobs.runner import SchedulerRuntimeState, run_scheduler_forever, run_tick


def at(hour, minute=0, day=10):
    return datetime(2025, 3, day, hour, minute, tzinfo=timezone.utc)


def test_tick_dispatches_due_jobs(manager, create_job, clock, mailer):
    job_id = create_job()["job_id"]

    clock.set(at(9))
    summary = run_tick(manager, limit=10, wait=True)

    assert summary["jobs_due"] == 1
    assert summary["dispatched"] == 1
    job = manager.get_job(job_id)
    assert job["status"] == "COMPLETED"
    assert job["execution"]["next_run_at"] == "2025-03-11T09:00:00Z"
    assert len(mailer.sent) == 3


def test_tick_ignores_jobs_not_yet_due(manager, create_job, clock):
    create_job(schedule={"type": "DAILY", "time_of_day": "23:00"})

    clock.set(at(8, 30))
    summary = run_tick(manager, limit=10, wait=True)

    assert summary["jobs_due"] == 0
    assert summary["pregenerated"] == 0


def test_tick_skips_paused_and_cancelled_jobs(manager, create_job, clock):
    paused = create_job()["job_id"]
    cancelled = create_job()["job_id"]
    manager.pause(paused)
    manager.cancel(cancelled)

    clock.set(at(9))
    summary = run_tick(manager, limit=10, wait=True)

    assert summary["jobs_due"] == 0
    assert manager.get_job(paused)["status"] == "PAUSED"
    assert manager.get_job(cancelled)["status"] == "CANCELLED"


def test_tick_pregenerates_reports_before_send(manager, create_job, clock, generator):
    job_id = create_job()["job_id"]

    summary = run_tick(manager, limit=10, wait=True)
    assert summary["pregenerated"] == 1
    job = manager.get_job(job_id)
    assert job["status"] == "CACHED"
    assert len(generator.calls) == 1

    clock.set(at(9))
    run_tick(manager, limit=10, wait=True)

    job = manager.get_job(job_id)
    assert job["status"] == "COMPLETED"
    assert len(generator.calls) == 1


def test_failed_pregeneration_restores_status(manager, create_job, generator):
    from docreg.scheduled_jobs.errors import ExternalCollaboratorError

    generator.error = ExternalCollaboratorError("generator down")
    job_id = create_job()["job_id"]

    run_tick(manager, limit=10, wait=True)

    job = manager.get_job(job_id)
    assert job["status"] == "SCHEDULED"
    assert "generator down" in job["execution"]["last_error"]["message"]
    assert job["execution_history"][-1]["action"] == "FAILED"


def test_overdue_once_job_runs_then_disarms(manager, create_job, clock):
    job_id = create_job(schedule={"type": "ONCE", "scheduled_for": "2025-03-10T08:30:00Z"})["job_id"]

    clock.set(at(12))
    run_tick(manager, limit=10, wait=True)
    run_tick(manager, limit=10, wait=True)

    job = manager.get_job(job_id)
    assert job["execution"]["run_count"] == 1
    assert job["is_active"] is False


def test_scheduler_loop_ticks_until_stopped(manager):
    stop = threading.Event()
    state = SchedulerRuntimeState(started_at_utc="2025-03-10T08:00:00Z")
    loop = threading.Thread(target=run_scheduler_forever, args=(manager, manager.config, stop, state), daemon=True)
    loop.start()

    deadline = time.time() + 5
    while state.last_tick_summary is None and time.time() < deadline:
        time.sleep(0.05)
    stop.set()
    loop.join(5)

    assert not loop.is_alive()
    assert state.last_tick_at_utc is not None
    assert state.last_tick_summary["jobs_due"] == 0
