# surveymark/infrastructure/repositories_response.py
from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from ..domain.models import Response, ResponseMap
from ..domain.schemas import ResponseInput
from .exceptions import ValidationError
from .logging import log_database_operation
from .models import OptionORM, ResponseORM, SelectedOptionORM
from .repositories_base import BaseRepository


def response_to_domain(r: ResponseORM) -> Response:
    return Response(
        id=r.id,
        session_id=r.session_id,
        question_id=r.question_id,
        value=r.value,
        selected_option_ids=frozenset(so.option_id for so in r.selected_options),
    )


class ResponseRepo(BaseRepository[ResponseORM]):
    """Recorded answers; one row per (session, question)."""

    model = ResponseORM
    entity_name = "Response"

    def __init__(self, session: Session):
        super().__init__(session)

    @log_database_operation("response.lookup_for_session")
    def lookup_for_session(self, session_id: int) -> ResponseMap:
        """Fresh snapshot of every answer in the session, keyed by question id."""
        stmt = (
            select(ResponseORM)
            .where(ResponseORM.session_id == session_id)
            .options(selectinload(ResponseORM.selected_options))
        )
        return ResponseMap(response_to_domain(r) for r in self.s.scalars(stmt))

    def find(self, session_id: int, question_id: int) -> ResponseORM | None:
        return self.first(ResponseORM.session_id == session_id, ResponseORM.question_id == question_id)

    @log_database_operation("response.upsert")
    def upsert(
        self,
        session_id: int,
        question_id: int,
        value: dict[str, Any] | None = None,
        option_ids: Sequence[int] = (),
    ) -> ResponseORM:
        """Create or replace the answer to one question, including its selected options."""
        data = ResponseInput(
            session_id=session_id, question_id=question_id, value=value, option_ids=list(option_ids)
        )
        if data.option_ids:
            valid = set(
                self.s.scalars(
                    select(OptionORM.id).where(
                        OptionORM.question_id == data.question_id,
                        OptionORM.id.in_(data.option_ids),
                    )
                )
            )
            invalid = sorted(set(data.option_ids) - valid)
            if invalid:
                raise ValidationError(
                    "option_ids", f"options {invalid} do not belong to this question", invalid
                )

        response = self.find(data.session_id, data.question_id)
        if response is None:
            response = ResponseORM(session_id=data.session_id, question_id=data.question_id)
            self.s.add(response)
        response.value = data.value
        wanted = set(data.option_ids)
        # keep existing rows so the (response_id, option_id) unique key is never re-inserted
        response.selected_options = [so for so in response.selected_options if so.option_id in wanted]
        present = {so.option_id for so in response.selected_options}
        for option_id in data.option_ids:
            if option_id not in present:
                response.selected_options.append(SelectedOptionORM(option_id=option_id))
        self.s.flush()
        return response

    @log_database_operation("response.delete_for_session")
    def delete_for_session(self, session_id: int) -> int:
        responses = self.list(ResponseORM.session_id == session_id)
        for response in responses:
            self.s.delete(response)
        self.s.flush()
        return len(responses)

    @log_database_operation("response.delete")
    def delete(self, session_id: int, question_id: int) -> bool:
        """Remove one answer; False when there was none."""
        response = self.find(session_id, question_id)
        if response is None:
            return False
        self.s.delete(response)
        self.s.flush()
        return True
