# surveymark/infrastructure/repositories_session.py
from __future__ import annotations

import builtins
from collections import Counter
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..domain.models import ResponseSession, SessionState
from ..domain.schemas import SessionCreationInput
from .exceptions import SessionNotFoundError
from .logging import log_database_operation as log_op
from .models import ResponseSessionORM, utcnow
from .repositories_base import BaseRepository as GenericBaseRepository

# lifecycle target state -> timestamp column stamped on entry
STATE_TIMESTAMPS = {
    SessionState.STARTED: "started_at",
    SessionState.COMPLETED: "completed_at",
    SessionState.SUBMITTED: "submitted_at",
    SessionState.MARKED: "marked_at",
}


def session_to_domain(rs: ResponseSessionORM) -> ResponseSession:
    return ResponseSession(
        id=rs.id,
        assessment_id=rs.assessment_id,
        user_id=rs.user_id,
        respondent_name=rs.respondent_name,
        state=SessionState(rs.state),
        country_code=rs.country_code,
        total_score=rs.total_score or 0.0,
        max_possible_score=rs.max_possible_score or 0.0,
        grade=rs.grade,
        feedback=rs.feedback,
    )


class ResponseSessionRepo(GenericBaseRepository[ResponseSessionORM]):
    model = ResponseSessionORM
    entity_name = "Response session"

    def __init__(self, session: Session):
        super().__init__(session)

    def not_found(self, id_: Any) -> Exception:
        return SessionNotFoundError(id_)

    # -------- Read --------

    @log_op("session.get_required")
    def get_by_id_required(self, id_: Any) -> ResponseSessionORM:
        return super().get_by_id_required(id_)

    @log_op("session.get_for_update")
    def get_for_update(self, id_: int) -> ResponseSessionORM:
        """Row-locked read on backends that support it (ignored by SQLite)."""
        stmt = select(ResponseSessionORM).where(ResponseSessionORM.id == id_).with_for_update()
        found = self.s.scalars(stmt).one_or_none()
        if found is None:
            raise self.not_found(id_)
        return found

    @log_op("session.for_assessment")
    def for_assessment(
        self, assessment_id: int, state: SessionState | str | None = None
    ) -> builtins.list[ResponseSessionORM]:
        filters: list[Any] = [ResponseSessionORM.assessment_id == assessment_id]
        if state is not None:
            filters.append(ResponseSessionORM.state == str(state))
        return self.list(*filters, order_by=[ResponseSessionORM.id])

    @log_op("session.state_counts")
    def state_counts(self, assessment_id: int) -> dict[str, int]:
        return dict(Counter(rs.state for rs in self.for_assessment(assessment_id)))

    # -------- Write --------

    @log_op("session.create")
    def create_session(self, **fields: Any) -> ResponseSessionORM:
        """One session per user and assessment; a duplicate raises ``IntegrityError``."""
        data = SessionCreationInput(**fields)
        return self.create(**data.model_dump(), state=SessionState.DRAFT.value)

    @log_op("session.transition")
    def set_state(self, rs: ResponseSessionORM, state: SessionState) -> ResponseSessionORM:
        rs.state = state.value
        column = STATE_TIMESTAMPS.get(state)
        if column is not None:
            setattr(rs, column, utcnow())
        self.s.flush()
        return rs

    @log_op("session.record_marks")
    def record_marks(
        self,
        rs: ResponseSessionORM,
        total_score: float,
        max_possible_score: float,
        grade: str,
        feedback: str,
    ) -> ResponseSessionORM:
        rs.total_score = total_score
        rs.max_possible_score = max_possible_score
        rs.grade = grade
        rs.feedback = feedback
        return self.set_state(rs, SessionState.MARKED)

    @log_op("session.clear_marks")
    def clear_marks(self, rs: ResponseSessionORM) -> ResponseSessionORM:
        rs.total_score = 0.0
        rs.max_possible_score = 0.0
        rs.grade = None
        rs.feedback = None
        rs.started_at = rs.completed_at = rs.submitted_at = rs.marked_at = None
        self.s.flush()
        return rs
