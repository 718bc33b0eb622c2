"""
Batch marking.

Sessions are marked concurrently by a bounded thread pool, each in its own
unit of work. A failing session is recorded and never stops the rest. The
final status record is kept in a TTL-bound store so callers can poll for it.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from rq import get_current_job

from ..domain.models import MarkResult
from ..domain.schemas import BatchMarkingInput
from ..domain.services import MarkingEngine
from ..infrastructure.config import MarkingConfig, get_settings
from ..infrastructure.db import make_engine_and_session
from ..infrastructure.exceptions import create_user_friendly_error_message
from ..infrastructure.jobs import RQJobScheduler
from ..infrastructure.logging import LogContext, get_logger
from ..infrastructure.notifications import LoggingNotifier
from ..infrastructure.status_store import (
    BatchStatusStore,
    InMemoryBatchStatusStore,
    build_status_store,
)
from ..infrastructure.uow import UnitOfWork

logger = get_logger(__name__)

MarkFn = Callable[[int, int | None], MarkResult]
ProgressFn = Callable[[int, int], None]


@dataclass(frozen=True, slots=True)
class BatchItemError:
    session_id: int
    message: str
    error_type: str = "Exception"
    detail: str = ""


@dataclass(slots=True)
class BatchResult:
    batch_id: str
    total: int
    processed: int = 0
    marked: int = 0
    skipped: int = 0
    errors: list[BatchItemError] = field(default_factory=list)
    results: list[MarkResult] = field(default_factory=list)
    started_at: str = ""
    finished_at: str | None = None

    @property
    def failed(self) -> int:
        return len(self.errors)

    @property
    def successful(self) -> int:
        """Sessions that completed without raising, marked or skipped."""
        return self.marked + self.skipped

    @property
    def status(self) -> str:
        if self.finished_at is None:
            return "running"
        return "completed_with_errors" if self.errors else "completed"

    def to_record(self) -> dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "status": self.status,
            "total": self.total,
            "processed": self.processed,
            "successful": self.successful,
            "marked": self.marked,
            "skipped": self.skipped,
            "failed": self.failed,
            "errors": [asdict(e) for e in self.errors],
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }


class BatchMarkingCoordinator:
    """
    Fans a list of sessions out to a worker pool and aggregates the outcome.

    Example:
        >>> coordinator = BatchMarkingCoordinator.for_engine(engine)
        >>> result = coordinator.mark_batch([1, 2, 3])
        >>> result.to_record()["status"]
        'completed'
    """

    def __init__(
        self,
        mark: MarkFn,
        status_store: BatchStatusStore | None = None,
        config: MarkingConfig | None = None,
        on_progress: ProgressFn | None = None,
    ):
        self._mark = mark
        self.config = config or get_settings().marking
        self.status_store = status_store or InMemoryBatchStatusStore()
        self.on_progress = on_progress

    @classmethod
    def for_engine(cls, engine: MarkingEngine, **kwargs: Any) -> BatchMarkingCoordinator:
        return cls(lambda session_id, scheme_id: engine.mark(session_id, scheme_id), **kwargs)

    def status(self, batch_id: str) -> dict[str, Any] | None:
        return self.status_store.get(batch_id)

    def mark_batch(
        self,
        session_ids: Sequence[int],
        scheme_id: int | None = None,
        batch_id: str | None = None,
        max_workers: int | None = None,
    ) -> BatchResult:
        data = BatchMarkingInput(session_ids=list(session_ids), scheme_id=scheme_id)
        batch = BatchResult(
            batch_id=batch_id or uuid4().hex,
            total=len(data.session_ids),
            started_at=datetime.now(UTC).isoformat(),
        )
        workers = min(max_workers or self.config.batch_max_workers, batch.total)

        with LogContext(batch_id=batch.batch_id, operation="mark_batch"):
            logger.info(f"Starting batch of {batch.total} sessions with {workers} workers")
            self._save(batch)

            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="marking") as pool:
                futures = {
                    pool.submit(self._mark_one, batch.batch_id, sid, data.scheme_id): sid
                    for sid in data.session_ids
                }
                for future in as_completed(futures):
                    session_id = futures[future]
                    try:
                        result = future.result()
                    except Exception as e:
                        batch.errors.append(
                            BatchItemError(
                                session_id=session_id,
                                message=create_user_friendly_error_message(e),
                                error_type=type(e).__name__,
                                detail=str(e),
                            )
                        )
                    else:
                        batch.results.append(result)
                        if result.marked:
                            batch.marked += 1
                        else:
                            batch.skipped += 1
                    batch.processed += 1
                    if (
                        batch.processed % self.config.progress_interval == 0
                        or batch.processed == batch.total
                    ):
                        self._report_progress(batch)

            batch.finished_at = datetime.now(UTC).isoformat()
            self._save(batch)
            logger.info(
                f"Batch finished: {batch.successful} successful "
                f"({batch.marked} marked, {batch.skipped} skipped), {batch.failed} failed"
            )
        return batch

    def _mark_one(self, batch_id: str, session_id: int, scheme_id: int | None) -> MarkResult:
        with LogContext(batch_id=batch_id, session_id=session_id):
            try:
                return self._mark(session_id, scheme_id)
            except Exception as e:
                logger.error(f"Marking session {session_id} failed: {e}", exc_info=True)
                raise

    def _report_progress(self, batch: BatchResult) -> None:
        logger.info(f"{batch.processed}/{batch.total} processed")
        self._save(batch)
        if self.on_progress is not None:
            self.on_progress(batch.processed, batch.total)

    def _save(self, batch: BatchResult) -> None:
        self.status_store.put(
            batch.batch_id, batch.to_record(), self.config.batch_status_ttl_seconds
        )


def enqueue_batch(
    scheduler: RQJobScheduler,
    session_ids: Sequence[int],
    scheme_id: int | None = None,
    status_store: BatchStatusStore | None = None,
    config: MarkingConfig | None = None,
) -> str:
    """Queue a batch for a worker process and return its batch id for polling."""
    config = config or get_settings().marking
    status_store = status_store or build_status_store(config)
    data = BatchMarkingInput(session_ids=list(session_ids), scheme_id=scheme_id)
    batch = BatchResult(
        batch_id=uuid4().hex,
        total=len(data.session_ids),
        started_at=datetime.now(UTC).isoformat(),
    )
    status_store.put(
        batch.batch_id, {**batch.to_record(), "status": "queued"}, config.batch_status_ttl_seconds
    )
    scheduler.enqueue_batch(batch.batch_id, data.session_ids, data.scheme_id)
    logger.info(f"Queued batch {batch.batch_id} of {batch.total} sessions")
    return batch.batch_id


def run_batch_job(
    batch_id: str, session_ids: list[int], scheme_id: int | None = None
) -> dict[str, Any]:
    """rq entry point: mark a batch and mirror progress into the job's meta."""
    job = get_current_job()

    def publish(processed: int, total: int) -> None:
        if job is not None:
            job.meta.update({"state": "running", "processed": processed, "total": total})
            job.save_meta()

    engine, SessionLocal = make_engine_and_session()
    try:
        marking = MarkingEngine(UnitOfWork(SessionLocal), notifier=LoggingNotifier())
        coordinator = BatchMarkingCoordinator.for_engine(
            marking, status_store=build_status_store(), on_progress=publish
        )
        record = coordinator.mark_batch(session_ids, scheme_id, batch_id=batch_id).to_record()
    finally:
        engine.dispose()
    if job is not None:
        job.meta.update({"state": record["status"]})
        job.save_meta()
    return record

