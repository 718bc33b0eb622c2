"""
TTL-bound storage for batch marking status records.

Records are plain JSON-compatible dicts. The in-memory store serves a single
process; the Redis store lets a worker and a poller in different processes
share progress.
"""

from __future__ import annotations

import json
import threading
import time
from typing import Any, Protocol

from redis import Redis

from .config import MarkingConfig, QueueConfig, get_settings
from .logging import get_logger

logger = get_logger(__name__)


class BatchStatusStore(Protocol):
    def put(self, batch_id: str, record: dict[str, Any], ttl_seconds: int) -> None: ...

    def get(self, batch_id: str) -> dict[str, Any] | None: ...


class InMemoryBatchStatusStore:
    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._records: dict[str, tuple[float, dict[str, Any]]] = {}
        self._lock = threading.Lock()

    def put(self, batch_id: str, record: dict[str, Any], ttl_seconds: int) -> None:
        with self._lock:
            self._records[batch_id] = (self._clock() + ttl_seconds, dict(record))

    def get(self, batch_id: str) -> dict[str, Any] | None:
        with self._lock:
            entry = self._records.get(batch_id)
            if entry is None:
                return None
            expires_at, record = entry
            if self._clock() >= expires_at:
                del self._records[batch_id]
                return None
            return dict(record)


class RedisBatchStatusStore:
    """Status records as JSON strings under ``batch:<id>`` with a Redis expiry."""

    def __init__(self, client: Redis, prefix: str = "batch"):
        self.client = client
        self.prefix = prefix

    def key(self, batch_id: str) -> str:
        return f"{self.prefix}:{batch_id}"

    def put(self, batch_id: str, record: dict[str, Any], ttl_seconds: int) -> None:
        self.client.setex(self.key(batch_id), ttl_seconds, json.dumps(record, default=str))

    def get(self, batch_id: str) -> dict[str, Any] | None:
        raw = self.client.get(self.key(batch_id))
        if raw is None:
            return None
        return json.loads(raw)


def build_status_store(
    marking: MarkingConfig | None = None, queue: QueueConfig | None = None
) -> BatchStatusStore:
    settings = get_settings()
    marking = marking or settings.marking
    if marking.status_backend == "redis":
        queue = queue or settings.queue
        logger.info("Using Redis batch status store")
        return RedisBatchStatusStore(Redis.from_url(queue.redis_url, decode_responses=True))
    return InMemoryBatchStatusStore()
