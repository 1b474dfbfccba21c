from datetime import datetime, timedelta, timezone

from docreg.scheduled_jobs.stats import (
    compute_email_stats,
    compute_progress,
    is_cache_expired,
    running_average,
    success_rate,
)


NOW = datetime(2025, 3, 10, 8, 0, tzinfo=timezone.utc)


def test_email_stats_counts_bounces_as_failed():
    stats = compute_email_stats(["SENT", "FAILED", "BOUNCED", "SKIPPED", "PENDING"])
    assert stats == {
        "total_emails": 5,
        "sent_emails": 1,
        "failed_emails": 2,
        "bounced_emails": 1,
        "skipped_emails": 1,
        "pending_emails": 1,
    }
    assert stats["sent_emails"] + stats["failed_emails"] + stats["skipped_emails"] <= stats["total_emails"]


def test_progress_rounds_half_up():
    assert compute_progress(["SENT", "PENDING", "PENDING"]) == 33
    assert compute_progress(["SENT", "SKIPPED", "PENDING"]) == 67
    assert compute_progress(["SENT"] + ["PENDING"] * 7) == 13
    assert compute_progress(["SENT", "FAILED"]) == 100


def test_progress_without_customers_is_zero():
    assert compute_progress([]) == 0


def test_cache_expiry():
    assert is_cache_expired(None, NOW)
    assert is_cache_expired({}, NOW)
    assert not is_cache_expired({"expires_at": (NOW + timedelta(hours=1)).isoformat()}, NOW)
    assert is_cache_expired({"expires_at": "2025-03-10T07:59:59Z"}, NOW)


def test_running_average():
    assert running_average(None, 1, 100.0) == 100.0
    assert running_average(100.0, 2, 200.0) == 150.0
    assert running_average(150.0, 3, 300.0) == 200.0


def test_success_rate():
    assert success_rate(0, 0) == 0.0
    assert success_rate(2, 1) == 66.7
