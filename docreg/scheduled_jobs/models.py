from __future__ import annotations

import json
import random
import string
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

from .stats import compute_email_stats, compute_progress, is_cache_expired


Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_db_time(dt: Optional[datetime]) -> Optional[datetime]:
    """Datetimes are stored as naive UTC."""

    if dt is None:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def from_db_time(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return to_db_time(dt).isoformat() + "Z"


def new_job_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"JOB_{int(time.time() * 1000)}_{suffix}"


def _db_now() -> datetime:
    return to_db_time(utcnow())


class ScheduledJob(Base):
    __tablename__ = "scheduled_jobs"

    job_id = Column(String(40), primary_key=True, default=new_job_id)
    job_type = Column(String(32), nullable=False)
    status = Column(String(16), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    schedule_json = Column(Text, nullable=False)
    config_json = Column(Text, default="{}", nullable=False)
    cache_json = Column(Text, nullable=True)

    next_run_at = Column(DateTime, nullable=True)
    last_run_at = Column(DateTime, nullable=True)
    run_count = Column(Integer, default=0, nullable=False)
    success_count = Column(Integer, default=0, nullable=False)
    failure_count = Column(Integer, default=0, nullable=False)
    avg_processing_ms = Column(Float, nullable=True)
    last_error_message = Column(Text, nullable=True)
    last_error_at = Column(DateTime, nullable=True)

    created_by_json = Column(Text, nullable=True)
    modified_by_json = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime, default=_db_now, nullable=False)
    updated_at = Column(DateTime, default=_db_now, onupdate=_db_now, nullable=False)

    customers = relationship(
        "JobCustomer",
        order_by="JobCustomer.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    history = relationship(
        "JobHistoryEntry",
        order_by="JobHistoryEntry.id",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (
        Index("ix_scheduled_jobs_status_type", "status", "job_type"),
        Index("ix_scheduled_jobs_next_run_active", "next_run_at", "is_active"),
        Index("ix_scheduled_jobs_created_at", "created_at"),
    )

    @property
    def schedule(self) -> Dict[str, Any]:
        return _safe_json_loads(self.schedule_json) or {}

    @property
    def config(self) -> Dict[str, Any]:
        return _safe_json_loads(self.config_json) or {}

    @property
    def cache(self) -> Optional[Dict[str, Any]]:
        return _safe_json_loads(self.cache_json)

    def to_dict(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        statuses = [c.send_status for c in self.customers]
        cache = self.cache
        last_error = None
        if self.last_error_message:
            last_error = {"message": self.last_error_message, "timestamp": iso(self.last_error_at)}

        return {
            "job_id": self.job_id,
            "job_type": self.job_type,
            "status": self.status,
            "is_active": bool(self.is_active),
            "schedule": self.schedule,
            "config": self.config,
            "cache": cache,
            "is_cache_expired": is_cache_expired(cache, now or utcnow()),
            "customers": [c.to_dict() for c in self.customers],
            "email_stats": compute_email_stats(statuses),
            "progress": compute_progress(statuses),
            "execution": {
                "last_run_at": iso(self.last_run_at),
                "next_run_at": iso(self.next_run_at),
                "run_count": int(self.run_count or 0),
                "success_count": int(self.success_count or 0),
                "failure_count": int(self.failure_count or 0),
                "avg_processing_time": self.avg_processing_ms,
                "last_error": last_error,
            },
            "execution_history": [h.to_dict() for h in self.history],
            "created_by": _safe_json_loads(self.created_by_json),
            "modified_by": _safe_json_loads(self.modified_by_json),
            "notes": self.notes,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }


class JobCustomer(Base):
    """Delivery record for one customer of a job.

    ``email`` and ``name`` are a snapshot taken when the job was created; later
    edits to the customer do not reach existing jobs.
    """

    __tablename__ = "scheduled_job_customers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(
        String(40),
        ForeignKey("scheduled_jobs.job_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    position = Column(Integer, nullable=False)

    customer_id = Column(String(64), nullable=False, index=True)
    email = Column(String(320), nullable=False)
    name = Column(String(256), nullable=True)

    send_status = Column(String(16), default="PENDING", nullable=False)
    sent_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)

    __table_args__ = (UniqueConstraint("job_id", "customer_id", name="uq_job_customer"),)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "customer_id": self.customer_id,
            "email": self.email,
            "name": self.name,
            "send_status": self.send_status,
            "sent_at": iso(self.sent_at),
            "error_message": self.error_message,
        }


class JobHistoryEntry(Base):
    __tablename__ = "scheduled_job_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(
        String(40),
        ForeignKey("scheduled_jobs.job_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    executed_at = Column(DateTime, default=_db_now, nullable=False)
    action = Column(String(16), nullable=False)
    details = Column(Text, nullable=True)
    result_json = Column(Text, nullable=True)
    executed_by_json = Column(Text, nullable=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "executed_by": _safe_json_loads(self.executed_by_json),
            "executed_at": iso(self.executed_at),
            "action": self.action,
            "details": self.details,
            "result": _safe_json_loads(self.result_json),
        }


class Customer(Base):
    __tablename__ = "customers"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(256), nullable=False)
    email = Column(String(320), nullable=False, unique=True)
    company = Column(String(256), nullable=True)

    created_at = Column(DateTime, default=_db_now, nullable=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "company": self.company,
            "created_at": iso(self.created_at),
        }


def _safe_json_loads(raw: Optional[str]) -> Optional[Any]:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return None
