"""
Background marking jobs on rq.

Single-session jobs use ``mark:<session_id>:<scheme_id|active>`` as the rq job
id, so enqueuing the same work twice while it is still pending is a no-op.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any, Protocol

from redis import Redis
from rq import Queue
from rq.job import JobStatus

from ..domain.services import MarkingEngine
from .config import QueueConfig, get_settings
from .db import make_engine_and_session
from .logging import LogContext, get_logger
from .notifications import LoggingNotifier
from .uow import UnitOfWork

logger = get_logger(__name__)

PENDING_STATUSES = frozenset(
    {JobStatus.QUEUED, JobStatus.STARTED, JobStatus.DEFERRED, JobStatus.SCHEDULED}
)
MARK_JOB = "surveymark.infrastructure.jobs.run_marking_job"
BATCH_JOB = "surveymark.application.batch.run_batch_job"


def idempotency_key(session_id: int, scheme_id: int | None = None) -> str:
    return f"mark:{session_id}:{scheme_id if scheme_id is not None else 'active'}"


class JobScheduler(Protocol):
    def enqueue(self, session_id: int, scheme_id: int | None = None) -> str: ...


def build_queue(config: QueueConfig | None = None) -> Queue:
    config = config or get_settings().queue
    return Queue(config.queue_name, connection=Redis.from_url(config.redis_url))


class RQJobScheduler:
    """
    Schedules marking work on an rq queue.

    Example:
        >>> scheduler = RQJobScheduler.from_config()
        >>> scheduler.enqueue(42)
        'mark:42:active'
    """

    def __init__(self, queue: Queue, config: QueueConfig | None = None):
        self.queue = queue
        self.config = config or get_settings().queue

    @classmethod
    def from_config(cls, config: QueueConfig | None = None) -> RQJobScheduler:
        config = config or get_settings().queue
        return cls(build_queue(config), config)

    def _pending(self, job_id: str) -> bool:
        job = self.queue.fetch_job(job_id)
        return job is not None and job.get_status() in PENDING_STATUSES

    def enqueue(self, session_id: int, scheme_id: int | None = None) -> str:
        job_id = idempotency_key(session_id, scheme_id)
        if self._pending(job_id):
            logger.info(f"Marking job {job_id} already pending")
            return job_id
        job = self.queue.enqueue(
            MARK_JOB,
            session_id,
            scheme_id,
            job_id=job_id,
            job_timeout=self.config.job_timeout_seconds,
            result_ttl=self.config.result_ttl_seconds,
        )
        logger.info(f"Enqueued marking job {job.id}")
        return job.id

    def enqueue_batch(
        self, batch_id: str, session_ids: Sequence[int], scheme_id: int | None = None
    ) -> str:
        job = self.queue.enqueue(
            BATCH_JOB,
            batch_id,
            list(session_ids),
            scheme_id,
            job_id=f"batch:{batch_id}",
            job_timeout=self.config.job_timeout_seconds * max(len(session_ids), 1),
            result_ttl=self.config.result_ttl_seconds,
        )
        logger.info(f"Enqueued batch job {job.id} for {len(session_ids)} sessions")
        return job.id


def run_marking_job(session_id: int, scheme_id: int | None = None) -> dict[str, Any]:
    """Worker entry point: mark one session with a fresh engine and database session."""
    with LogContext(session_id=session_id, scheme_id=scheme_id):
        engine, SessionLocal = make_engine_and_session()
        try:
            result = MarkingEngine(UnitOfWork(SessionLocal), notifier=LoggingNotifier()).mark(
                session_id, scheme_id
            )
        finally:
            engine.dispose()
        return {
            "session_id": result.session_id,
            "marked": result.marked,
            "total_score": result.total_score,
            "max_possible": result.max_possible,
            "percentage": result.percentage,
            "grade": result.grade,
            "reason": result.reason,
        }
