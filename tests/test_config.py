from docreg.scheduled_jobs.config import ScheduledJobsConfig


def test_defaults(monkeypatch, tmp_path):
    monkeypatch.setenv("SCHEDULED_JOBS_DATABASE_URL", f"sqlite:///{tmp_path / 'x.db'}")
    for name in (
        "SCHEDULED_JOBS_TICK_SECONDS",
        "SCHEDULED_JOBS_CACHE_TTL_HOURS",
        "SCHEDULED_JOBS_PREPROCESS_LEAD_MINUTES",
        "SCHEDULED_JOBS_MCP_PORT",
        "SMTP_USE_TLS",
    ):
        monkeypatch.delenv(name, raising=False)

    cfg = ScheduledJobsConfig.from_env()

    assert cfg.tick_seconds == 60
    assert cfg.cache_ttl_hours == 24.0
    assert cfg.cache_ttl.total_seconds() == 24 * 3600
    assert cfg.preprocess_lead.total_seconds() == 120 * 60
    assert cfg.smtp_use_tls is True
    assert cfg.mcp_port == 8020


def test_env_overrides_and_garbage(monkeypatch):
    monkeypatch.setenv("SCHEDULED_JOBS_DATABASE_URL", "postgresql+psycopg://db/jobs")
    monkeypatch.setenv("SCHEDULED_JOBS_TICK_SECONDS", "not-a-number")
    monkeypatch.setenv("SCHEDULED_JOBS_DELIVERY_WORKERS", "0")
    monkeypatch.setenv("SCHEDULED_JOBS_CACHE_TTL_HOURS", "6")
    monkeypatch.setenv("SMTP_USE_TLS", "off")
    monkeypatch.setenv("SCHEDULED_JOBS_LOG_LEVEL", "debug")
    monkeypatch.setenv("SCHEDULED_JOBS_CALL_WORKERS", "3")

    cfg = ScheduledJobsConfig.from_env()

    assert cfg.database_url == "postgresql+psycopg://db/jobs"
    assert cfg.tick_seconds == 60
    assert cfg.delivery_workers == 1
    assert cfg.cache_ttl_hours == 6.0
    assert cfg.smtp_use_tls is False
    assert cfg.log_level == "DEBUG"
    assert cfg.call_pool_size == 3


def test_platform_database_url_fallback(monkeypatch):
    monkeypatch.delenv("SCHEDULED_JOBS_DATABASE_URL", raising=False)
    monkeypatch.setenv("PLATFORM_DATABASE_URL", "sqlite:///shared.db")

    assert ScheduledJobsConfig.from_env().database_url == "sqlite:///shared.db"


def test_call_pool_defaults_to_delivery_plus_cycles(monkeypatch):
    monkeypatch.setenv("SCHEDULED_JOBS_DATABASE_URL", "sqlite:///jobs.db")
    monkeypatch.setenv("SCHEDULED_JOBS_DELIVERY_WORKERS", "2")
    monkeypatch.setenv("SCHEDULED_JOBS_MAX_CONCURRENT_CYCLES", "3")
    monkeypatch.delenv("SCHEDULED_JOBS_CALL_WORKERS", raising=False)

    cfg = ScheduledJobsConfig.from_env()

    assert cfg.call_workers == 0
    assert cfg.call_pool_size == 5
