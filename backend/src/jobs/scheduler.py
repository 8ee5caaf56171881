"""
Scheduler runner using APScheduler with Postgres advisory locks.

This module provides a singleton scheduler that runs background jobs
using APScheduler. Jobs are coordinated via Postgres advisory locks
keyed by the jobs table so only one API process runs a job at a time.
Other databases (SQLite in tests and local runs) have no advisory locks;
there the job simply runs.

Usage:
    scheduler = get_scheduler()
    scheduler.add_interval_job(run_refund_reconciliation, "refund_reconciliation", minutes=15)
    scheduler.start()
"""
import hashlib
from datetime import datetime, timezone
from functools import wraps
from typing import Callable, Optional

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import select, text
from sqlalchemy.orm import Session

from src.lib.db import get_db_context
from src.lib.logging import get_logger
from src.models.jobs import Job, JobStatus, JobType

logger = get_logger(__name__)


# Singleton scheduler instance
_scheduler: Optional["SchedulerManager"] = None


def get_lock_key(job_id: str) -> int:
    """
    Generate a consistent integer lock key from job ID for pg_advisory_lock.

    Args:
        job_id: Job identifier string

    Returns:
        Positive integer within the Postgres bigint range
    """
    hash_bytes = hashlib.sha256(job_id.encode()).digest()[:8]
    return int.from_bytes(hash_bytes, byteorder="big", signed=False) & (2**63 - 1)


def supports_advisory_locks(db: Session) -> bool:
    return db.get_bind().dialect.name == "postgresql"


def try_acquire_lock(db: Session, lock_key: int) -> bool:
    """Try to acquire a session-level Postgres advisory lock."""
    if not supports_advisory_locks(db):
        return True
    result = db.execute(
        text("SELECT pg_try_advisory_lock(:lock_key)"),
        {"lock_key": lock_key},
    )
    return bool(result.scalar())


def release_lock(db: Session, lock_key: int) -> None:
    if supports_advisory_locks(db):
        db.execute(text("SELECT pg_advisory_unlock(:lock_key)"), {"lock_key": lock_key})


def _start_job_record(db: Session, lock_key: int, job_type: JobType) -> Job:
    now = datetime.now(timezone.utc)
    job_record = db.execute(select(Job).where(Job.lock_key == lock_key)).scalar_one_or_none()
    if job_record is None:
        job_record = Job(
            type=job_type,
            scheduled_for=now,
            run_at=now,
            status=JobStatus.PROCESSING,
            attempts=1,
            lock_key=lock_key,
        )
        db.add(job_record)
    else:
        job_record.status = JobStatus.PROCESSING
        job_record.run_at = now
        job_record.attempts += 1
        job_record.last_error = None
    db.commit()
    return job_record


def with_advisory_lock(job_id: str, job_type: JobType = JobType.OTHER):
    """
    Decorator to wrap a job function with a Postgres advisory lock.

    The wrapped function runs at most once at a time across processes and
    its outcome is recorded on the job's row.

    Example:
        @with_advisory_lock("refund_reconciliation", JobType.REFUND_RECONCILIATION)
        def run_refund_reconciliation():
            ...
    """
    def decorator(func: Callable):
        @wraps(func)
        def wrapper(*args, **kwargs):
            lock_key = get_lock_key(job_id)

            with get_db_context() as db:
                if not try_acquire_lock(db, lock_key):
                    logger.info(f"Job {job_id} already running (lock {lock_key}), skipping")
                    return None

                try:
                    logger.info(f"Job {job_id} acquired lock {lock_key}, executing")
                    job_record = _start_job_record(db, lock_key, job_type)

                    try:
                        result = func(*args, **kwargs)
                    except Exception as e:
                        job_record.status = JobStatus.FAILED
                        job_record.last_error = str(e)
                        db.commit()
                        logger.error(f"Job {job_id} failed: {e}", exc_info=True)
                        raise

                    job_record.status = JobStatus.DONE
                    job_record.payload = result if isinstance(result, dict) else None
                    db.commit()
                    logger.info(f"Job {job_id} completed successfully")
                    return result
                finally:
                    release_lock(db, lock_key)

        return wrapper
    return decorator


class SchedulerManager:
    """
    Manager for APScheduler with lifecycle management.
    """

    def __init__(self):
        self.scheduler = BackgroundScheduler(
            timezone="UTC",
            job_defaults={
                "coalesce": True,  # Combine missed runs
                "max_instances": 1,
                "misfire_grace_time": 300,
            },
        )
        self.scheduler.add_listener(self._on_job_executed, EVENT_JOB_EXECUTED)
        self.scheduler.add_listener(self._on_job_error, EVENT_JOB_ERROR)
        logger.info("SchedulerManager initialized")

    def _on_job_executed(self, event):
        logger.info(f"Job {event.job_id} executed (result: {event.retval})")

    def _on_job_error(self, event):
        logger.error(
            f"Job {event.job_id} raised {event.exception.__class__.__name__}: "
            f"{event.exception}",
            exc_info=event.exception,
        )

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def start(self) -> None:
        """Start the scheduler."""
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info("Scheduler started")
        else:
            logger.warning("Scheduler already running")

    def shutdown(self, wait: bool = True) -> None:
        """
        Shutdown the scheduler.

        Args:
            wait: Whether to wait for running jobs to finish
        """
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
            logger.info("Scheduler shutdown")
        else:
            logger.warning("Scheduler not running")

    def add_interval_job(
        self,
        func: Callable,
        job_id: str,
        seconds: Optional[int] = None,
        minutes: Optional[int] = None,
        hours: Optional[int] = None,
        **kwargs
    ) -> None:
        """
        Add an interval-scheduled job.

        Args:
            func: Job function (should be decorated with @with_advisory_lock)
            job_id: Unique job identifier
            seconds: Interval in seconds
            minutes: Interval in minutes
            hours: Interval in hours
            **kwargs: Additional APScheduler job options
        """
        if not any([seconds, minutes, hours]):
            raise ValueError("At least one of seconds, minutes, or hours must be specified")

        trigger = IntervalTrigger(
            seconds=seconds or 0,
            minutes=minutes or 0,
            hours=hours or 0,
            timezone="UTC",
        )
        self.scheduler.add_job(func, trigger=trigger, id=job_id, replace_existing=True, **kwargs)
        logger.info(
            f"Added interval job: {job_id} "
            f"(seconds={seconds}, minutes={minutes}, hours={hours})"
        )

    def remove_job(self, job_id: str) -> None:
        self.scheduler.remove_job(job_id)
        logger.info(f"Removed job: {job_id}")

    def get_jobs(self) -> list:
        """Get list of scheduled jobs."""
        return self.scheduler.get_jobs()


def get_scheduler() -> SchedulerManager:
    """
    Get singleton scheduler instance.
    """
    global _scheduler

    if _scheduler is None:
        _scheduler = SchedulerManager()

    return _scheduler
