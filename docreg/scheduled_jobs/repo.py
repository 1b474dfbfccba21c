from __future__ import annotations

import json
from collections import Counter
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError

from .db import get_engine, get_sessionmaker
from .enums import JobStatus, SendStatus
from .errors import ValidationError
from .models import Base, Customer, JobCustomer, JobHistoryEntry, ScheduledJob, _safe_json_loads, to_db_time
from .stats import running_average


_JSON_FIELDS = {
    "schedule": "schedule_json",
    "config": "config_json",
    "cache": "cache_json",
    "created_by": "created_by_json",
    "modified_by": "modified_by_json",
}


def init_db(database_url: str) -> None:
    engine = get_engine(database_url)
    Base.metadata.create_all(engine)


def _dumps(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, default=str)


def _column_values(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Map friendly field names onto columns, encoding JSON and datetimes."""

    out: Dict[str, Any] = {}
    for key, value in fields.items():
        if key in _JSON_FIELDS:
            out[_JSON_FIELDS[key]] = _dumps(value)
        elif isinstance(value, datetime):
            out[key] = to_db_time(value)
        elif key == "status" and value is not None:
            out[key] = JobStatus(value).value
        else:
            out[key] = value
    return out


def _status_values(statuses: Iterable[Any]) -> List[str]:
    return [JobStatus(s).value for s in statuses]


def insert_job(
    database_url: str,
    *,
    job_id: str,
    job_type: str,
    status: str,
    schedule: Dict[str, Any],
    config: Dict[str, Any],
    next_run_at: Optional[datetime],
    customers: List[Dict[str, Any]],
    created_by: Optional[Dict[str, Any]],
    notes: Optional[str],
    created_at: datetime,
    history: Dict[str, Any],
) -> ScheduledJob:
    sm = get_sessionmaker(database_url)
    with sm() as s:
        job = ScheduledJob(
            job_id=job_id,
            job_type=str(job_type),
            status=JobStatus(status).value,
            is_active=True,
            schedule_json=_dumps(schedule),
            config_json=_dumps(config or {}),
            next_run_at=to_db_time(next_run_at),
            created_by_json=_dumps(created_by),
            notes=notes,
            created_at=to_db_time(created_at),
            updated_at=to_db_time(created_at),
        )
        for pos, c in enumerate(customers):
            job.customers.append(
                JobCustomer(
                    position=pos,
                    customer_id=str(c["customer_id"]),
                    email=str(c["email"]),
                    name=c.get("name"),
                    send_status=SendStatus.PENDING.value,
                )
            )
        job.history.append(
            JobHistoryEntry(
                executed_at=to_db_time(created_at),
                action=str(history["action"]),
                details=history.get("details"),
                result_json=_dumps(history.get("result")),
                executed_by_json=_dumps(created_by),
            )
        )
        s.add(job)
        s.commit()
        return _load(s, job_id)


def _load(s, job_id: str) -> Optional[ScheduledJob]:
    s.expire_all()
    job = s.get(ScheduledJob, str(job_id))
    if job is None:
        return None
    # Touch relationships so the detached instance stays usable.
    list(job.customers)
    list(job.history)
    s.expunge(job)
    return job


def load_job(database_url: str, job_id: str) -> Optional[ScheduledJob]:
    """Return a detached, fully loaded job row or None."""

    sm = get_sessionmaker(database_url)
    with sm() as s:
        return _load(s, job_id)


def get_status(database_url: str, job_id: str) -> Optional[str]:
    sm = get_sessionmaker(database_url)
    with sm() as s:
        return s.execute(
            select(ScheduledJob.status).where(ScheduledJob.job_id == str(job_id))
        ).scalar_one_or_none()


def list_jobs(
    database_url: str,
    *,
    status: Optional[str] = None,
    job_type: Optional[str] = None,
    is_active: Optional[bool] = None,
    offset: int = 0,
    limit: int = 20,
) -> Tuple[List[ScheduledJob], int]:
    sm = get_sessionmaker(database_url)
    with sm() as s:
        q = select(ScheduledJob)
        count_q = select(func.count()).select_from(ScheduledJob)
        if status:
            q = q.where(ScheduledJob.status == str(status))
            count_q = count_q.where(ScheduledJob.status == str(status))
        if job_type:
            q = q.where(ScheduledJob.job_type == str(job_type))
            count_q = count_q.where(ScheduledJob.job_type == str(job_type))
        if is_active is not None:
            q = q.where(ScheduledJob.is_active.is_(bool(is_active)))
            count_q = count_q.where(ScheduledJob.is_active.is_(bool(is_active)))

        total = int(s.execute(count_q).scalar_one())
        q = (
            q.order_by(ScheduledJob.created_at.desc(), ScheduledJob.job_id.desc())
            .offset(int(offset))
            .limit(int(limit))
        )
        jobs = s.execute(q).scalars().all()
        for j in jobs:
            s.expunge(j)
        return list(jobs), total


def transition(
    database_url: str,
    job_id: str,
    *,
    from_statuses: Iterable[Any],
    to_status: Any,
    **fields: Any,
) -> bool:
    """Atomically move a job to ``to_status`` if its status is one of ``from_statuses``.

    Returns True when this caller won the transition.
    """

    values = _column_values(dict(fields, status=to_status))
    return _conditional_update(database_url, job_id, from_statuses, values)


def update_fields(
    database_url: str,
    job_id: str,
    *,
    only_if_statuses: Optional[Iterable[Any]] = None,
    **fields: Any,
) -> bool:
    return _conditional_update(database_url, job_id, only_if_statuses, _column_values(fields))


def _conditional_update(
    database_url: str,
    job_id: str,
    statuses: Optional[Iterable[Any]],
    values: Dict[str, Any],
) -> bool:
    sm = get_sessionmaker(database_url)
    with sm() as s:
        stmt = update(ScheduledJob).where(ScheduledJob.job_id == str(job_id))
        if statuses is not None:
            stmt = stmt.where(ScheduledJob.status.in_(_status_values(statuses)))
        res = s.execute(stmt.values(**values).execution_options(synchronize_session=False))
        s.commit()
        return int(res.rowcount or 0) == 1


def finish_cycle(
    database_url: str,
    job_id: str,
    *,
    from_statuses: Iterable[Any],
    to_status: Any,
    succeeded: bool,
    processing_ms: float,
    finished_at: datetime,
    error_message: Optional[str],
    **fields: Any,
) -> bool:
    """Close an execution cycle: counters, running average and final status in one update.

    Only one cycle per job is ever in flight, so reading the counters and
    writing them back inside one session cannot lose an update. The final
    write stays conditional so it never overwrites a concurrent cancel.
    """

    sm = get_sessionmaker(database_url)
    with sm() as s:
        job = s.get(ScheduledJob, str(job_id))
        if job is None:
            return False
        run_count = int(job.run_count or 0) + 1
        avg = running_average(job.avg_processing_ms, run_count, processing_ms)

        values: Dict[str, Any] = dict(
            status=to_status,
            run_count=run_count,
            avg_processing_ms=avg,
            last_run_at=finished_at,
            **fields,
        )
        if succeeded:
            values["success_count"] = int(job.success_count or 0) + 1
        else:
            values["failure_count"] = int(job.failure_count or 0) + 1
            values["last_error_message"] = error_message
            values["last_error_at"] = finished_at

        stmt = (
            update(ScheduledJob)
            .where(ScheduledJob.job_id == str(job_id))
            .where(ScheduledJob.status.in_(_status_values(from_statuses)))
            .values(**_column_values(values))
            .execution_options(synchronize_session=False)
        )
        res = s.execute(stmt)
        s.commit()
        return int(res.rowcount or 0) == 1


def get_job_customer(database_url: str, job_id: str, customer_id: str) -> Optional[JobCustomer]:
    sm = get_sessionmaker(database_url)
    with sm() as s:
        row = s.execute(
            select(JobCustomer)
            .where(JobCustomer.job_id == str(job_id))
            .where(JobCustomer.customer_id == str(customer_id))
        ).scalar_one_or_none()
        if row is not None:
            s.expunge(row)
        return row


def pending_customers(database_url: str, job_id: str) -> List[JobCustomer]:
    sm = get_sessionmaker(database_url)
    with sm() as s:
        rows = s.execute(
            select(JobCustomer)
            .where(JobCustomer.job_id == str(job_id))
            .where(JobCustomer.send_status == SendStatus.PENDING.value)
            .order_by(JobCustomer.position.asc())
        ).scalars().all()
        for r in rows:
            s.expunge(r)
        return list(rows)


def set_customer_outcome(
    database_url: str,
    job_id: str,
    customer_id: str,
    *,
    send_status: Any,
    at: datetime,
    error_message: Optional[str] = None,
) -> bool:
    """Write a terminal send status, but only over a PENDING record."""

    status = SendStatus(send_status)
    values: Dict[str, Any] = {"send_status": status.value, "error_message": error_message}
    if status in (SendStatus.SENT, SendStatus.BOUNCED, SendStatus.SKIPPED):
        values["sent_at"] = to_db_time(at)

    sm = get_sessionmaker(database_url)
    with sm() as s:
        res = s.execute(
            update(JobCustomer)
            .where(JobCustomer.job_id == str(job_id))
            .where(JobCustomer.customer_id == str(customer_id))
            .where(JobCustomer.send_status == SendStatus.PENDING.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        s.commit()
        return int(res.rowcount or 0) == 1


def reset_customers(database_url: str, job_id: str, *, statuses: Iterable[Any]) -> int:
    """Put customers in ``statuses`` back to PENDING for a new cycle."""

    sm = get_sessionmaker(database_url)
    with sm() as s:
        res = s.execute(
            update(JobCustomer)
            .where(JobCustomer.job_id == str(job_id))
            .where(JobCustomer.send_status.in_([SendStatus(x).value for x in statuses]))
            .values(send_status=SendStatus.PENDING.value, sent_at=None, error_message=None)
            .execution_options(synchronize_session=False)
        )
        s.commit()
        return int(res.rowcount or 0)


def customer_statuses(database_url: str, job_id: str) -> List[str]:
    sm = get_sessionmaker(database_url)
    with sm() as s:
        rows = s.execute(
            select(JobCustomer.send_status)
            .where(JobCustomer.job_id == str(job_id))
            .order_by(JobCustomer.position.asc())
        ).scalars().all()
        return list(rows)


def append_history(
    database_url: str,
    job_id: str,
    *,
    action: Any,
    at: datetime,
    details: Optional[str] = None,
    result: Optional[Dict[str, Any]] = None,
    executed_by: Optional[Dict[str, Any]] = None,
) -> None:
    sm = get_sessionmaker(database_url)
    with sm() as s:
        s.add(
            JobHistoryEntry(
                job_id=str(job_id),
                executed_at=to_db_time(at),
                action=str(getattr(action, "value", action)),
                details=details,
                result_json=_dumps(result),
                executed_by_json=_dumps(executed_by),
            )
        )
        s.commit()


def due_job_ids(database_url: str, *, now: datetime, statuses: Iterable[Any], limit: int) -> List[str]:
    sm = get_sessionmaker(database_url)
    with sm() as s:
        q = (
            select(ScheduledJob.job_id)
            .where(ScheduledJob.is_active.is_(True))
            .where(ScheduledJob.next_run_at.is_not(None))
            .where(ScheduledJob.next_run_at <= to_db_time(now))
            .where(ScheduledJob.status.in_(_status_values(statuses)))
            .order_by(ScheduledJob.next_run_at.asc())
            .limit(int(limit))
        )
        return list(s.execute(q).scalars().all())


def jobs_due_within(
    database_url: str,
    *,
    now: datetime,
    until: datetime,
    statuses: Iterable[Any],
    limit: int,
) -> List[ScheduledJob]:
    """Active jobs whose next run falls in ``(now, until]``."""

    sm = get_sessionmaker(database_url)
    with sm() as s:
        q = (
            select(ScheduledJob)
            .where(ScheduledJob.is_active.is_(True))
            .where(ScheduledJob.next_run_at > to_db_time(now))
            .where(ScheduledJob.next_run_at <= to_db_time(until))
            .where(ScheduledJob.status.in_(_status_values(statuses)))
            .order_by(ScheduledJob.next_run_at.asc())
            .limit(int(limit))
        )
        jobs = s.execute(q).scalars().all()
        for j in jobs:
            s.expunge(j)
        return list(jobs)


def upcoming_jobs(database_url: str, *, statuses: Iterable[Any], limit: int) -> List[ScheduledJob]:
    sm = get_sessionmaker(database_url)
    with sm() as s:
        q = (
            select(ScheduledJob)
            .where(ScheduledJob.is_active.is_(True))
            .where(ScheduledJob.next_run_at.is_not(None))
            .where(ScheduledJob.status.in_(_status_values(statuses)))
            .order_by(ScheduledJob.next_run_at.asc())
            .limit(int(limit))
        )
        jobs = s.execute(q).scalars().all()
        for j in jobs:
            s.expunge(j)
        return list(jobs)


def recent_jobs(database_url: str, *, statuses: Iterable[Any], limit: int) -> List[ScheduledJob]:
    sm = get_sessionmaker(database_url)
    with sm() as s:
        q = (
            select(ScheduledJob)
            .where(ScheduledJob.status.in_(_status_values(statuses)))
            .where(ScheduledJob.last_run_at.is_not(None))
            .order_by(ScheduledJob.last_run_at.desc())
            .limit(int(limit))
        )
        jobs = s.execute(q).scalars().all()
        for j in jobs:
            s.expunge(j)
        return list(jobs)


def job_aggregates(database_url: str) -> Dict[str, Any]:
    """Raw counts behind the dashboard statistics."""

    sm = get_sessionmaker(database_url)
    with sm() as s:
        total = int(s.execute(select(func.count()).select_from(ScheduledJob)).scalar_one())
        active = int(
            s.execute(
                select(func.count()).select_from(ScheduledJob).where(ScheduledJob.is_active.is_(True))
            ).scalar_one()
        )
        by_status = {
            str(k): int(v)
            for k, v in s.execute(
                select(ScheduledJob.status, func.count()).group_by(ScheduledJob.status)
            ).all()
        }
        by_type = {
            str(k): int(v)
            for k, v in s.execute(
                select(ScheduledJob.job_type, func.count()).group_by(ScheduledJob.job_type)
            ).all()
        }
        avg_ms = s.execute(
            select(func.avg(ScheduledJob.avg_processing_ms)).where(ScheduledJob.avg_processing_ms.is_not(None))
        ).scalar_one()
        send_counts = Counter(
            {
                str(k): int(v)
                for k, v in s.execute(
                    select(JobCustomer.send_status, func.count()).group_by(JobCustomer.send_status)
                ).all()
            }
        )

        total_matches = 0
        processed_projects = 0
        for raw in s.execute(select(ScheduledJob.cache_json).where(ScheduledJob.cache_json.is_not(None))).scalars():
            cache = _safe_json_loads(raw)
            if not isinstance(cache, dict):
                continue
            total_matches += int(cache.get("total_matches") or 0)
            processed_projects += int(cache.get("processed_projects") or 0)

        return {
            "total": total,
            "active": active,
            "by_status": by_status,
            "by_type": by_type,
            "avg_processing_ms": float(avg_ms) if avg_ms is not None else None,
            "send_counts": dict(send_counts),
            "total_matches": total_matches,
            "processed_projects": processed_projects,
        }


def delete_job(database_url: str, job_id: str, *, unless_statuses: Iterable[Any] = ()) -> Optional[bool]:
    """Physically remove a job with its customers and history.

    Returns None when the job does not exist and False when its status is in
    ``unless_statuses``.
    """

    sm = get_sessionmaker(database_url)
    with sm() as s:
        exists = s.execute(
            select(ScheduledJob.job_id).where(ScheduledJob.job_id == str(job_id))
        ).scalar_one_or_none()
        if exists is None:
            return None

        blocked = _status_values(unless_statuses)
        stmt = delete(ScheduledJob).where(ScheduledJob.job_id == str(job_id))
        if blocked:
            stmt = stmt.where(ScheduledJob.status.not_in(blocked))
        res = s.execute(stmt.execution_options(synchronize_session=False))
        if int(res.rowcount or 0) != 1:
            s.rollback()
            return False

        s.execute(delete(JobCustomer).where(JobCustomer.job_id == str(job_id)))
        s.execute(delete(JobHistoryEntry).where(JobHistoryEntry.job_id == str(job_id)))
        s.commit()
        return True


def create_customer(
    database_url: str,
    *,
    name: str,
    email: str,
    company: Optional[str] = None,
) -> Dict[str, Any]:
    sm = get_sessionmaker(database_url)
    with sm() as s:
        c = Customer(name=str(name).strip(), email=str(email).strip().lower(), company=company)
        s.add(c)
        try:
            s.commit()
        except IntegrityError:
            s.rollback()
            raise ValidationError(f"A customer with email {email!r} already exists.") from None
        return c.to_dict()


def get_customer(database_url: str, customer_id: str) -> Optional[Dict[str, Any]]:
    sm = get_sessionmaker(database_url)
    with sm() as s:
        c = s.get(Customer, str(customer_id))
        return c.to_dict() if c else None


def list_customers(database_url: str) -> List[Dict[str, Any]]:
    sm = get_sessionmaker(database_url)
    with sm() as s:
        rows = s.execute(select(Customer).order_by(Customer.name.asc())).scalars().all()
        return [c.to_dict() for c in rows]
