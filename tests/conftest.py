from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from docreg.scheduled_jobs.collaborators import CustomerSnapshot, MailBounced, ReportResult
from docreg.scheduled_jobs.config import ScheduledJobsConfig
from docreg.scheduled_jobs.db import dispose_engine
from docreg.scheduled_jobs.errors import ExternalCollaboratorError
from docreg.scheduled_jobs.manager import ScheduledJobManager


# Monday.
START = datetime(2025, 3, 10, 8, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.current = now

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs: Any) -> None:
        self.current = self.current + timedelta(**kwargs)

    def set(self, when: datetime) -> None:
        self.current = when


class FakeDirectory:
    def __init__(self) -> None:
        self.customers: Dict[str, CustomerSnapshot] = {
            "c1": CustomerSnapshot("c1", "alice@example.com", "Alice"),
            "c2": CustomerSnapshot("c2", "bob@example.com", "Bob"),
            "c3": CustomerSnapshot("c3", "carol@example.com", "Carol"),
        }

    def resolve(self, customer_id: str) -> Optional[CustomerSnapshot]:
        return self.customers.get(customer_id)


class FakeReportGenerator:
    def __init__(self) -> None:
        self.calls: List[Any] = []
        self.timeouts: List[float] = []
        self.error: Optional[Exception] = None
        self.customer_matches: Optional[Dict[str, List[Dict[str, Any]]]] = None
        self.gate: Optional[threading.Event] = None
        self.entered = threading.Event()

    def generate(self, request, *, timeout):
        self.calls.append(request)
        self.timeouts.append(timeout)
        self.entered.set()
        if self.gate is not None:
            self.gate.wait(timeout=10)
        if self.error is not None:
            raise self.error
        matches = self.customer_matches
        return ReportResult(
            artifact_refs=[f"RPT-{len(self.calls)}"],
            preview_html="<p>preview</p>",
            paths=[],
            customer_matches=matches,
            total_matches=sum(len(v) for v in matches.values()) if matches else 0,
            processed_projects=len(request.project_ids),
        )


class FakeMailSender:
    def __init__(self) -> None:
        self.sent: List[Any] = []
        self.timeouts: List[float] = []
        self.fail_for = set()
        self.bounce_for = set()
        self.on_send = None
        self._lock = threading.Lock()

    def send(self, message, *, timeout):
        self.timeouts.append(timeout)
        if self.on_send is not None:
            self.on_send(message)
        if message.to in self.bounce_for:
            raise MailBounced(f"Recipient refused: {message.to}")
        if message.to in self.fail_for:
            raise ExternalCollaboratorError("mailbox unavailable")
        with self._lock:
            self.sent.append(message)


@pytest.fixture
def config(tmp_path) -> ScheduledJobsConfig:
    return ScheduledJobsConfig(
        database_url=f"sqlite:///{(tmp_path / 'jobs.db').as_posix()}",
        tick_seconds=1,
        max_jobs_per_tick=20,
        preprocess_lead_minutes=120,
        cache_ttl_hours=24.0,
        delivery_workers=1,
        send_timeout_seconds=5.0,
        generation_timeout_seconds=1.0,
        max_concurrent_cycles=2,
        report_generator_url=None,
        smtp_host="localhost",
        smtp_port=25,
        smtp_username=None,
        smtp_password=None,
        smtp_from="noreply@example.com",
        smtp_use_tls=False,
        mcp_transport="http",
        mcp_host="127.0.0.1",
        mcp_port=8020,
        mcp_client_token="test-token",
        log_level="INFO",
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(START)


@pytest.fixture
def directory() -> FakeDirectory:
    return FakeDirectory()


@pytest.fixture
def generator():
    gen = FakeReportGenerator()
    yield gen
    if gen.gate is not None:
        gen.gate.set()


@pytest.fixture
def mailer() -> FakeMailSender:
    return FakeMailSender()


@pytest.fixture
def manager(config, clock, directory, generator, mailer):
    m = ScheduledJobManager(
        config,
        customer_directory=directory,
        report_generator=generator,
        mail_sender=mailer,
        clock=clock,
    )
    yield m
    if generator.gate is not None:
        generator.gate.set()
    m.shutdown()
    dispose_engine(config.database_url)


@pytest.fixture
def create_job(manager):
    def _create(
        schedule: Optional[Dict[str, Any]] = None,
        customers=("c1", "c2", "c3"),
        **kwargs: Any,
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "job_type": "EMAIL_BATCH",
            "schedule": schedule or {"type": "DAILY", "time_of_day": "09:00"},
            "report_types": ["acoustic"],
            "customer_ids": list(customers),
            "project_ids": ["P-1", "P-2"],
        }
        params.update(kwargs)
        return manager.create(**params)

    return _create


@pytest.fixture
def make_manager(config, clock, directory, generator, mailer):
    """Build managers over the shared fakes with config overrides."""

    built: List[ScheduledJobManager] = []

    def _make(**overrides: Any) -> ScheduledJobManager:
        m = ScheduledJobManager(
            replace(config, **overrides),
            customer_directory=directory,
            report_generator=generator,
            mail_sender=mailer,
            clock=clock,
        )
        built.append(m)
        return m

    yield _make
    if generator.gate is not None:
        generator.gate.set()
    for m in built:
        m.shutdown()
    dispose_engine(config.database_url)
