"""
Background jobs for expiry and full cleanup.

Schedules live in an APScheduler job store (SQLAlchemy-backed by default) so
planned expirations survive a restart. Job callables are registered by textual
reference and resolve the lifecycle bound with :func:`bind_lifecycle` when they
fire.
"""
import hashlib
import logging
import os
import uuid
from datetime import datetime, timezone
from typing import TYPE_CHECKING, List, Optional

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.base import JobLookupError
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger

from .storage import DATA_DIR, _safe_int_env, sanitize_log_value, utcnow

if TYPE_CHECKING:
    from .lifecycle import CleanupReport, FileLifecycle

logger = logging.getLogger("fileservice.jobs")

MEMORY_JOBSTORE = "memory"
DEFAULT_JOBSTORE_URL = f"sqlite:///{DATA_DIR / 'jobs.sqlite'}"
EXPIRY_JOB_PREFIX = "expire-"
EXPIRY_SWEEP_JOB_ID = "cleanup_expired_files"
FULL_CLEANUP_JOB_ID = "cleanup_all_files"

EXPIRY_JOB_REF = "fileservice.jobs:run_expiry_cleanup"
FULL_CLEANUP_JOB_REF = "fileservice.jobs:run_full_cleanup"

_lifecycle: Optional["FileLifecycle"] = None


def bind_lifecycle(lifecycle: Optional["FileLifecycle"]) -> None:
    """Point the job callables at *lifecycle* (``None`` unbinds)."""

    global _lifecycle
    _lifecycle = lifecycle


def run_expiry_cleanup(file_name: Optional[str] = None) -> Optional["CleanupReport"]:
    if _lifecycle is None:
        logger.warning(
            "expiry_job_skipped reason=lifecycle_unbound trigger=%s",
            sanitize_log_value(file_name),
        )
        return None
    logger.debug("expiry_job_fired trigger=%s", sanitize_log_value(file_name))
    return _lifecycle.delete_expired_files()


def run_full_cleanup() -> Optional["CleanupReport"]:
    if _lifecycle is None:
        logger.warning("cleanup_job_skipped reason=lifecycle_unbound")
        return None
    return _lifecycle.delete_all_files()


def resolve_jobstore_url() -> str:
    return os.environ.get("FILESERVICE_JOBSTORE_URL") or DEFAULT_JOBSTORE_URL


def create_scheduler(jobstore_url: Optional[str] = None) -> BackgroundScheduler:
    url = jobstore_url or resolve_jobstore_url()
    if url == MEMORY_JOBSTORE:
        jobstore = MemoryJobStore()
    else:
        jobstore = SQLAlchemyJobStore(url=url)
    return BackgroundScheduler(
        jobstores={"default": jobstore},
        executors={"default": ThreadPoolExecutor(4)},
        job_defaults={"coalesce": True, "misfire_grace_time": None, "max_instances": 1},
        timezone=timezone.utc,
        daemon=True,
    )


def expiry_job_id(file_name: str) -> str:
    digest = hashlib.sha1(file_name.encode("utf-8")).hexdigest()
    return f"{EXPIRY_JOB_PREFIX}{digest}"


class ExpiryScheduler:
    """Registers deferred deletions and manual cleanup runs on a scheduler."""

    def __init__(self, scheduler: Optional[BackgroundScheduler] = None) -> None:
        self.scheduler = scheduler if scheduler is not None else create_scheduler()

    @property
    def running(self) -> bool:
        return bool(self.scheduler.running)

    def start(self, paused: bool = False) -> None:
        if not self.scheduler.running:
            self.scheduler.start(paused=paused)
            logger.info("scheduler_started paused=%s", paused)

    def shutdown(self, wait: bool = False) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
            logger.info("scheduler_stopped")

    def schedule_expiry(self, file_name: str, when: datetime) -> str:
        job_id = expiry_job_id(file_name)
        self.scheduler.add_job(
            EXPIRY_JOB_REF,
            trigger=DateTrigger(run_date=when, timezone=timezone.utc),
            args=[file_name],
            id=job_id,
            name=f"Expire {file_name}",
            replace_existing=True,
        )
        logger.info(
            "expiry_scheduled filename=%s job_id=%s run_at=%s",
            sanitize_log_value(file_name),
            job_id,
            when.isoformat(),
        )
        return job_id

    def cancel_expiry(self, file_name: str) -> bool:
        job_id = expiry_job_id(file_name)
        try:
            self.scheduler.remove_job(job_id)
        except JobLookupError:
            return False
        logger.info(
            "expiry_cancelled filename=%s job_id=%s",
            sanitize_log_value(file_name),
            job_id,
        )
        return True

    def pending_expiries(self) -> List[str]:
        return [
            job.id
            for job in self.scheduler.get_jobs()
            if job.id.startswith(EXPIRY_JOB_PREFIX)
        ]

    def cancel_all(self) -> int:
        cancelled = 0
        for job_id in self.pending_expiries():
            try:
                self.scheduler.remove_job(job_id)
            except JobLookupError:
                continue
            cancelled += 1
        return cancelled

    def _enqueue(self, func_ref: str, prefix: str, name: str) -> str:
        job_id = f"{prefix}-{uuid.uuid4().hex}"
        self.scheduler.add_job(
            func_ref,
            trigger=DateTrigger(run_date=utcnow(), timezone=timezone.utc),
            id=job_id,
            name=name,
        )
        logger.info("job_enqueued job_id=%s name=%s", job_id, name)
        return job_id

    def enqueue_cleanup(self) -> str:
        return self._enqueue(FULL_CLEANUP_JOB_REF, "cleanup-manual", "Delete all files")

    def enqueue_expiry_cleanup(self) -> str:
        return self._enqueue(EXPIRY_JOB_REF, "expiry-manual", "Delete expired files")

    def schedule_recurring(
        self,
        sweep_minutes: Optional[int] = None,
        full_cleanup_cron: Optional[str] = None,
    ) -> None:
        if sweep_minutes is None:
            sweep_minutes = _safe_int_env("FILESERVICE_EXPIRY_SWEEP_MINUTES", 5)
        self.scheduler.add_job(
            EXPIRY_JOB_REF,
            trigger="interval",
            minutes=max(1, sweep_minutes),
            id=EXPIRY_SWEEP_JOB_ID,
            name="Clean up expired files",
            replace_existing=True,
        )

        if full_cleanup_cron:
            try:
                trigger = CronTrigger.from_crontab(full_cleanup_cron, timezone=timezone.utc)
            except ValueError as error:
                logger.error(
                    "full_cleanup_cron_invalid value=%s error=%s",
                    sanitize_log_value(full_cleanup_cron),
                    error,
                )
                return
            self.scheduler.add_job(
                FULL_CLEANUP_JOB_REF,
                trigger=trigger,
                id=FULL_CLEANUP_JOB_ID,
                name="Delete all files",
                replace_existing=True,
            )
            logger.info(
                "full_cleanup_scheduled cron=%s", sanitize_log_value(full_cleanup_cron)
            )
        else:
            try:
                self.scheduler.remove_job(FULL_CLEANUP_JOB_ID)
            except JobLookupError:
                pass
