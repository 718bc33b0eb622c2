from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy.orm import Session, sessionmaker


class UnitOfWork:
    """One SQLAlchemy session per transaction: commit on success, roll back on any error."""

    def __init__(self, SessionLocal: sessionmaker):
        self.SessionLocal = SessionLocal

    @contextmanager
    def begin(self) -> Iterator[Session]:
        s = self.SessionLocal()
        try:
            yield s
            s.commit()
        except Exception:
            s.rollback()
            raise
        finally:
            s.close()

    @contextmanager
    def read(self) -> Iterator[Session]:
        """Read-only session; nothing is committed."""
        s = self.SessionLocal()
        try:
            yield s
        finally:
            s.rollback()
            s.close()
