# surveymark/infrastructure/repositories_scheme.py
from __future__ import annotations

import builtins
from collections.abc import Iterable
from typing import Any

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..domain.models import (
    GradeBoundaryTable,
    MarkingRule,
    MarkingScheme,
    QuestionType,
    ScoreRecord,
)
from ..domain.schemas import (
    MarkingRuleInput,
    MarkingSchemeInput,
    SchemeSettingsInput,
    available_rule_types,
)
from .exceptions import (
    MalformedGradeBoundariesError,
    NoActiveSchemeError,
    QuestionNotFoundError,
    SchemeNotFoundError,
    ValidationError,
)
from .logging import log_database_operation
from .models import (
    MarkingRuleORM,
    MarkingSchemeORM,
    QuestionORM,
    ResponseORM,
    ResponseScoreORM,
    SectionORM,
)
from .repositories_base import BaseRepository


def scheme_to_domain(scheme: MarkingSchemeORM) -> MarkingScheme:
    """Map a stored scheme; unusable settings raise ``MalformedGradeBoundariesError``."""
    try:
        settings = SchemeSettingsInput.model_validate(scheme.settings or {})
    except PydanticValidationError as e:
        raise MalformedGradeBoundariesError(
            "; ".join(err["msg"] for err in e.errors()), scheme.id
        ) from e
    return MarkingScheme(
        id=scheme.id,
        assessment_id=scheme.assessment_id,
        name=scheme.name,
        total_possible_score=scheme.total_possible_score or 0.0,
        is_active=scheme.is_active,
        passing_score=settings.passing_score,
        grade_boundaries=GradeBoundaryTable.from_mapping(settings.grade_boundaries),
        feedback_templates=dict(settings.feedback_templates),
    )


def rule_to_domain(rule: MarkingRuleORM) -> MarkingRule:
    return MarkingRule(
        id=rule.id,
        scheme_id=rule.scheme_id,
        question_id=rule.question_id,
        rule_type=rule.rule_type,
        points=rule.points or 0.0,
        criteria=dict(rule.criteria or {}),
        is_active=rule.is_active,
        order=rule.order,
    )


class MarkingSchemeRepo(BaseRepository[MarkingSchemeORM]):
    """Marking schemes; at most one active scheme per assessment."""

    model = MarkingSchemeORM
    entity_name = "Marking scheme"

    def __init__(self, session: Session):
        super().__init__(session)

    def not_found(self, id_: Any) -> Exception:
        return SchemeNotFoundError(id_)

    @log_database_operation("scheme.resolve")
    def resolve(self, assessment_id: int, scheme_id: int | None = None) -> MarkingSchemeORM:
        """The explicitly requested scheme, else the assessment's single active scheme."""
        if scheme_id is not None:
            scheme = self.get_by_id_required(scheme_id)
            if scheme.assessment_id != assessment_id:
                raise SchemeNotFoundError(scheme_id)
            return scheme
        active = self.list(
            MarkingSchemeORM.assessment_id == assessment_id,
            MarkingSchemeORM.is_active.is_(True),
            order_by=[MarkingSchemeORM.id],
        )
        if not active:
            raise NoActiveSchemeError(assessment_id)
        if len(active) > 1:
            self.logger.warning(
                f"Assessment {assessment_id} has {len(active)} active schemes; using {active[0].id}"
            )
        return active[0]

    @log_database_operation("scheme.create")
    def create_scheme(self, settings: dict[str, Any] | None = None, **fields: Any) -> MarkingSchemeORM:
        data = MarkingSchemeInput(**fields)
        validated = SchemeSettingsInput.model_validate(settings or {})
        scheme = self.create(**data.model_dump(), settings=validated.model_dump())
        if scheme.is_active:
            self._deactivate_others(scheme)
        return scheme

    @log_database_operation("scheme.update_settings")
    def update_settings(self, scheme_id: int, settings: dict[str, Any]) -> MarkingSchemeORM:
        scheme = self.get_by_id_required(scheme_id)
        scheme.settings = SchemeSettingsInput.model_validate(settings).model_dump()
        self.s.flush()
        return scheme

    @log_database_operation("scheme.activate")
    def activate(self, scheme_id: int) -> MarkingSchemeORM:
        scheme = self.get_by_id_required(scheme_id)
        scheme.is_active = True
        self._deactivate_others(scheme)
        return scheme

    @log_database_operation("scheme.deactivate")
    def deactivate(self, scheme_id: int) -> MarkingSchemeORM:
        return self.update(self.get_by_id_required(scheme_id), is_active=False)

    def _deactivate_others(self, scheme: MarkingSchemeORM) -> None:
        for other in self.list(
            MarkingSchemeORM.assessment_id == scheme.assessment_id,
            MarkingSchemeORM.id != scheme.id,
            MarkingSchemeORM.is_active.is_(True),
        ):
            other.is_active = False
        self.s.flush()


class MarkingRuleRepo(BaseRepository[MarkingRuleORM]):
    model = MarkingRuleORM
    entity_name = "Marking rule"

    def __init__(self, session: Session):
        super().__init__(session)

    @log_database_operation("rule.active_for_scheme")
    def active_for_scheme(self, scheme_id: int) -> builtins.list[MarkingRuleORM]:
        return self.list(
            MarkingRuleORM.scheme_id == scheme_id,
            MarkingRuleORM.is_active.is_(True),
            order_by=[MarkingRuleORM.order, MarkingRuleORM.id],
        )

    @log_database_operation("rule.create")
    def create_rule(self, **fields: Any) -> MarkingRuleORM:
        """Validate criteria and question-type compatibility, then store the rule."""
        data = MarkingRuleInput(**fields)
        question = self.s.get(QuestionORM, data.question_id)
        if question is None:
            raise QuestionNotFoundError(data.question_id)
        scheme = self.s.get(MarkingSchemeORM, data.scheme_id)
        if scheme is None:
            raise SchemeNotFoundError(data.scheme_id)

        section = self.s.get(SectionORM, question.section_id)
        if section is None or section.assessment_id != scheme.assessment_id:
            raise ValidationError(
                "question_id", "question belongs to a different assessment", data.question_id
            )
        allowed = available_rule_types(QuestionType(question.question_type))
        if data.rule_type not in allowed:
            raise ValidationError(
                "rule_type",
                f"{data.rule_type} is not compatible with {question.question_type} questions; "
                f"available: {', '.join(allowed)}",
                str(data.rule_type),
            )
        return self.create(
            scheme_id=data.scheme_id,
            question_id=data.question_id,
            rule_type=str(data.rule_type),
            points=data.points,
            criteria=data.criteria,
            is_active=data.is_active,
            order=data.order,
        )


class ResponseScoreRepo(BaseRepository[ResponseScoreORM]):
    model = ResponseScoreORM
    entity_name = "Response score"

    def __init__(self, session: Session):
        super().__init__(session)

    def for_session(self, session_id: int, scheme_id: int | None = None) -> builtins.list[ResponseScoreORM]:
        stmt = (
            select(ResponseScoreORM)
            .join(ResponseORM, ResponseScoreORM.response_id == ResponseORM.id)
            .where(ResponseORM.session_id == session_id)
            .order_by(ResponseScoreORM.id)
        )
        if scheme_id is not None:
            stmt = stmt.where(ResponseScoreORM.scheme_id == scheme_id)
        return list(self.s.scalars(stmt))

    @log_database_operation("score.delete_for_session")
    def delete_for_session(self, session_id: int, scheme_id: int | None = None) -> int:
        existing = self.for_session(session_id, scheme_id)
        for score in existing:
            self.s.delete(score)
        # deletes must reach the database before replacements reuse the unique key
        self.s.flush()
        return len(existing)

    @log_database_operation("score.replace_for_session")
    def replace_for_session(
        self, session_id: int, scheme_id: int, records: Iterable[ScoreRecord]
    ) -> builtins.list[ResponseScoreORM]:
        """Overwrite the session's scores under ``scheme_id``; re-marking never accumulates rows."""
        self.delete_for_session(session_id, scheme_id)
        rows = [
            ResponseScoreORM(
                response_id=r.response_id,
                scheme_id=scheme_id,
                rule_id=r.rule_id,
                score_earned=r.earned,
                max_possible_score=r.possible,
                scoring_details=r.details,
            )
            for r in records
        ]
        self.s.add_all(rows)
        self.s.flush()
        return rows
