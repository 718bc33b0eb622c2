# surveymark/infrastructure/repositories_base.py
from __future__ import annotations

import builtins
from collections.abc import Iterable
from typing import Any, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .exceptions import NotFoundError, handle_database_error
from .logging import get_logger

T = TypeVar("T")  # ORM model type


class BaseRepository[T]:
    """
    Generic repository over one ORM class.

    Subclasses set ``model`` and may override ``entity_name`` and ``not_found``
    to raise a more specific lookup error.
    """

    model: type[T]
    entity_name: str = "Record"

    def __init__(self, session: Session):
        if getattr(self, "model", None) is None:
            raise ValueError(f"{self.__class__.__name__}.model must be set to an ORM class.")
        self.s = session
        self.logger = get_logger(self.__class__.__name__)

    def not_found(self, id_: Any) -> Exception:
        return NotFoundError(self.entity_name, id_)

    def _handle_error(self, error: Exception, operation: str) -> None:
        db_error = handle_database_error(error, operation)
        self.logger.error(f"Database error in {operation}: {str(error)}", exc_info=True)
        raise db_error from error

    # ---------- Read ----------
    def get(self, id_: Any) -> T | None:
        return self.s.get(self.model, id_)

    def get_by_id_required(self, id_: Any) -> T:
        obj = self.get(id_)
        if obj is None:
            raise self.not_found(id_)
        return obj

    def list(
        self,
        *filters: Any,
        order_by: Iterable[Any] | None = None,
        limit: int | None = None,
    ) -> builtins.list[T]:
        stmt = select(self.model)
        for f in filters:
            stmt = stmt.where(f)
        if order_by:
            stmt = stmt.order_by(*order_by)
        if limit:
            stmt = stmt.limit(limit)
        return list(self.s.scalars(stmt).all())

    def first(self, *filters: Any, order_by: Iterable[Any] | None = None) -> T | None:
        found = self.list(*filters, order_by=order_by, limit=1)
        return found[0] if found else None

    def count(self, *filters: Any) -> int:
        q = self.s.query(self.model)
        for f in filters:
            q = q.filter(f)
        return int(q.count())

    # ---------- Write ----------
    def create(self, **fields: Any) -> T:
        obj = self.model(**fields)
        self.s.add(obj)
        try:
            self.s.flush()  # get PKs without committing
        except SQLAlchemyError as e:
            self._handle_error(e, f"create_{self.model.__tablename__}")
        return obj

    def update(self, obj: T, **fields: Any) -> T:
        for k, v in fields.items():
            setattr(obj, k, v)
        self.s.flush()
        return obj

    def delete(self, obj: T) -> None:
        self.s.delete(obj)
        self.s.flush()
