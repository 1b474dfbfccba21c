from __future__ import annotations

from enum import Enum


class JobType(str, Enum):
    REPORT_GENERATION = "REPORT_GENERATION"
    EMAIL_BATCH = "EMAIL_BATCH"
    FI_DETECTION = "FI_DETECTION"


class JobStatus(str, Enum):
    SCHEDULED = "SCHEDULED"
    PROCESSING = "PROCESSING"
    CACHED = "CACHED"
    SENDING = "SENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    PAUSED = "PAUSED"


class ScheduleType(str, Enum):
    IMMEDIATE = "IMMEDIATE"
    ONCE = "ONCE"
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    CRON = "CRON"


class SendStatus(str, Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"
    BOUNCED = "BOUNCED"
    SKIPPED = "SKIPPED"


class HistoryAction(str, Enum):
    CREATED = "CREATED"
    STARTED = "STARTED"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    MODIFIED = "MODIFIED"


IN_FLIGHT_STATUSES = frozenset({JobStatus.PROCESSING, JobStatus.SENDING})
CYCLE_END_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})

# Statuses the scheduler tick may pick a due job up from.
DUE_STATUSES = frozenset({JobStatus.SCHEDULED, JobStatus.CACHED, JobStatus.COMPLETED, JobStatus.FAILED})

ONE_SHOT_SCHEDULES = frozenset({ScheduleType.IMMEDIATE, ScheduleType.ONCE})

TERMINAL_SEND_STATUSES = frozenset(
    {SendStatus.SENT, SendStatus.FAILED, SendStatus.BOUNCED, SendStatus.SKIPPED}
)

REPORT_TYPES = (
    "acoustic",
    "transport",
    "ecological",
    "flood",
    "heritage",
    "arboricultural",
    "waste",
    "lighting",
)
