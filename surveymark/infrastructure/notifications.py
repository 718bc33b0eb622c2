from __future__ import annotations

from typing import Protocol

from .logging import get_logger

logger = get_logger(__name__)


class Notifier(Protocol):
    """Told once a session has been marked and committed."""

    def notify_marked(self, session_id: int) -> None: ...


class LoggingNotifier:
    def notify_marked(self, session_id: int) -> None:
        logger.info(f"Session {session_id} marked; results ready")
