from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Optional


@dataclass(frozen=True)
class ScheduledJobsConfig:
    """Runtime configuration for the scheduled job service.

    DB selection:
    - SCHEDULED_JOBS_DATABASE_URL: service-specific DB URL (preferred)
    - PLATFORM_DATABASE_URL: shared DB URL
    - If neither is set, defaults to local SQLite at data/scheduled_jobs.db

    Loop:
    - SCHEDULED_JOBS_TICK_SECONDS: how often to check for due jobs (default: 60)
    - SCHEDULED_JOBS_MAX_JOBS_PER_TICK: cap due jobs dispatched per tick (default: 20)
    - SCHEDULED_JOBS_PREPROCESS_LEAD_MINUTES: generate reports this long before a send (default: 120, 0 disables)

    Execution:
    - SCHEDULED_JOBS_CACHE_TTL_HOURS (default: 24)
    - SCHEDULED_JOBS_DELIVERY_WORKERS (default: 4)
    - SCHEDULED_JOBS_SEND_TIMEOUT_SECONDS (default: 30)
    - SCHEDULED_JOBS_GENERATION_TIMEOUT_SECONDS (default: 900)
    - SCHEDULED_JOBS_MAX_CONCURRENT_CYCLES (default: 4)
    - SCHEDULED_JOBS_CALL_WORKERS: threads for generator/mail calls (default: delivery workers + cycles)

    Collaborators:
    - REPORT_GENERATOR_URL
    - SMTP_HOST / SMTP_PORT / SMTP_USERNAME / SMTP_PASSWORD / SMTP_FROM / SMTP_USE_TLS

    MCP server:
    - SCHEDULED_JOBS_MCP_TRANSPORT (default: http)
    - SCHEDULED_JOBS_MCP_HOST (default: 0.0.0.0)
    - SCHEDULED_JOBS_MCP_PORT (default: 8020)
    - SCHEDULED_JOBS_MCP_CLIENT_TOKEN
    """

    database_url: str
    tick_seconds: int
    max_jobs_per_tick: int
    preprocess_lead_minutes: int

    cache_ttl_hours: float
    delivery_workers: int
    send_timeout_seconds: float
    generation_timeout_seconds: float
    max_concurrent_cycles: int

    report_generator_url: Optional[str]
    smtp_host: str
    smtp_port: int
    smtp_username: Optional[str]
    smtp_password: Optional[str]
    smtp_from: str
    smtp_use_tls: bool

    mcp_transport: str
    mcp_host: str
    mcp_port: int
    mcp_client_token: str

    log_level: str

    # 0 means delivery_workers + max_concurrent_cycles.
    call_workers: int = 0

    DEFAULT_DEV_CLIENT_TOKEN: str = "dev-scheduled-jobs-token"

    @property
    def cache_ttl(self) -> timedelta:
        return timedelta(hours=float(self.cache_ttl_hours))

    @property
    def preprocess_lead(self) -> timedelta:
        return timedelta(minutes=int(self.preprocess_lead_minutes))

    @property
    def call_pool_size(self) -> int:
        return int(self.call_workers) or int(self.delivery_workers) + int(self.max_concurrent_cycles)

    @classmethod
    def from_env(cls) -> "ScheduledJobsConfig":
        db_url = (
            os.environ.get("SCHEDULED_JOBS_DATABASE_URL")
            or os.environ.get("PLATFORM_DATABASE_URL")
            or ""
        ).strip()

        if not db_url:
            # Default sqlite path under repo-root data/.
            repo_root = Path(__file__).resolve().parents[2]
            data_dir = repo_root / "data"
            data_dir.mkdir(parents=True, exist_ok=True)
            db_url = f"sqlite:///{(data_dir / 'scheduled_jobs.db').as_posix()}"

        return cls(
            database_url=db_url,
            tick_seconds=max(1, _env_int("SCHEDULED_JOBS_TICK_SECONDS", 60)),
            max_jobs_per_tick=max(1, _env_int("SCHEDULED_JOBS_MAX_JOBS_PER_TICK", 20)),
            preprocess_lead_minutes=max(0, _env_int("SCHEDULED_JOBS_PREPROCESS_LEAD_MINUTES", 120)),
            cache_ttl_hours=max(0.0, _env_float("SCHEDULED_JOBS_CACHE_TTL_HOURS", 24.0)),
            delivery_workers=max(1, _env_int("SCHEDULED_JOBS_DELIVERY_WORKERS", 4)),
            send_timeout_seconds=max(0.1, _env_float("SCHEDULED_JOBS_SEND_TIMEOUT_SECONDS", 30.0)),
            generation_timeout_seconds=max(1.0, _env_float("SCHEDULED_JOBS_GENERATION_TIMEOUT_SECONDS", 900.0)),
            max_concurrent_cycles=max(1, _env_int("SCHEDULED_JOBS_MAX_CONCURRENT_CYCLES", 4)),
            report_generator_url=_env_optional_str("REPORT_GENERATOR_URL"),
            smtp_host=_env_str("SMTP_HOST", "localhost"),
            smtp_port=_env_int("SMTP_PORT", 587),
            smtp_username=_env_optional_str("SMTP_USERNAME"),
            smtp_password=_env_optional_str("SMTP_PASSWORD"),
            smtp_from=_env_str("SMTP_FROM", "noreply@localhost"),
            smtp_use_tls=_env_bool("SMTP_USE_TLS", True),
            mcp_transport=_env_str("SCHEDULED_JOBS_MCP_TRANSPORT", "http").lower(),
            mcp_host=_env_str("SCHEDULED_JOBS_MCP_HOST", "0.0.0.0"),
            mcp_port=_env_int("SCHEDULED_JOBS_MCP_PORT", 8020),
            mcp_client_token=_env_str("SCHEDULED_JOBS_MCP_CLIENT_TOKEN", cls.DEFAULT_DEV_CLIENT_TOKEN),
            log_level=_env_str("SCHEDULED_JOBS_LOG_LEVEL", "INFO").upper(),
            call_workers=max(0, _env_int("SCHEDULED_JOBS_CALL_WORKERS", 0)),
        )


def _env_str(name: str, default: str) -> str:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip()


def _env_optional_str(name: str) -> Optional[str]:
    raw = os.environ.get(name)
    if raw is None:
        return None
    return raw.strip() or None


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return int(default)
    try:
        return int(str(raw).strip())
    except Exception:
        return int(default)


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None:
        return float(default)
    try:
        return float(str(raw).strip())
    except Exception:
        return float(default)


def _env_bool(name: str, default: bool) -> bool:
    raw = (os.environ.get(name) or "").strip().lower()
    if not raw:
        return bool(default)
    if raw in {"1", "true", "yes", "y", "on"}:
        return True
    if raw in {"0", "false", "no", "n", "off"}:
        return False
    return bool(default)
