# surveymark/infrastructure/repositories_assessment.py
from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from ..domain import conditions
from ..domain.models import (
    AssessmentStructure,
    ConditionalRule,
    LogicOperator,
    Option,
    Question,
    QuestionType,
    RestrictionSet,
    Section,
)
from ..domain.schemas import ConditionalRuleInput, OptionInput, QuestionInput, SectionInput
from .exceptions import ConditionalRuleError, NotFoundError, QuestionNotFoundError, ValidationError
from .logging import log_database_operation
from .models import AssessmentORM, OptionORM, QuestionORM, SectionORM
from .repositories_base import BaseRepository


def _int_or_zero(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def rules_from_json(is_conditional: bool, raw: list[dict[str, Any]] | None) -> tuple[ConditionalRule, ...]:
    """Stored condition dicts to domain rules; incomplete entries become rules that never match."""
    if not is_conditional or not raw:
        return ()
    rules = []
    for entry in raw:
        entry = entry or {}
        values = entry.get("trigger_values") or []
        if not isinstance(values, list):
            values = [values]
        rules.append(
            ConditionalRule(
                trigger_question_id=_int_or_zero(entry.get("trigger_question_id")),
                trigger_kind=str(entry.get("trigger_response_type") or entry.get("trigger_kind") or ""),
                trigger_values=tuple(str(v) for v in values if v is not None),
                operator=str(entry.get("operator") or ""),
                logic_operator=str(entry.get("logic_operator") or LogicOperator.AND),
            )
        )
    return tuple(rules)


def option_to_domain(o: OptionORM) -> Option:
    return Option(
        id=o.id,
        question_id=o.question_id,
        order=o.order,
        is_correct=o.is_correct,
        points=o.points,
        text=o.text,
    )


def question_to_domain(q: QuestionORM) -> Question:
    return Question(
        id=q.id,
        section_id=q.section_id,
        question_type=QuestionType(q.question_type),
        order=q.order,
        is_required=q.is_required,
        text=q.text,
        restrictions=RestrictionSet.of(q.restricted_countries),
        conditions=rules_from_json(q.is_conditional, q.visibility_conditions),
        options=tuple(option_to_domain(o) for o in q.options),
    )


def section_to_domain(s: SectionORM) -> Section:
    return Section(
        id=s.id,
        assessment_id=s.assessment_id,
        order=s.order,
        name=s.name,
        restrictions=RestrictionSet.of(s.restricted_countries),
        conditions=rules_from_json(s.is_conditional, s.visibility_conditions),
        questions=tuple(question_to_domain(q) for q in s.questions),
    )


class AssessmentRepo(BaseRepository[AssessmentORM]):
    """Assessments with their sections, questions and options."""

    model = AssessmentORM
    entity_name = "Assessment"

    def __init__(self, session: Session):
        super().__init__(session)

    @log_database_operation("assessment.load_structure")
    def load_structure(self, assessment_id: int) -> AssessmentStructure:
        """Load the full question tree as immutable domain values."""
        stmt = (
            select(AssessmentORM)
            .where(AssessmentORM.id == assessment_id)
            .options(
                selectinload(AssessmentORM.sections)
                .selectinload(SectionORM.questions)
                .selectinload(QuestionORM.options)
            )
            .execution_options(populate_existing=True)
        )
        assessment = self.s.scalars(stmt).one_or_none()
        if assessment is None:
            raise self.not_found(assessment_id)
        return AssessmentStructure(
            id=assessment.id,
            title=assessment.title,
            restrictions=RestrictionSet.of(assessment.restricted_countries),
            sections=tuple(section_to_domain(s) for s in assessment.sections),
        )

    @log_database_operation("assessment.create")
    def create_assessment(
        self, title: str, restricted_countries: Sequence[str] | None = None, **fields: Any
    ) -> AssessmentORM:
        return self.create(
            title=title.strip(), restricted_countries=list(restricted_countries or []), **fields
        )

    @log_database_operation("section.create")
    def add_section(self, **fields: Any) -> SectionORM:
        data = SectionInput(**fields)
        self.get_by_id_required(data.assessment_id)
        section = SectionORM(**data.model_dump())
        self.s.add(section)
        self.s.flush()
        return section

    @log_database_operation("question.create")
    def add_question(self, **fields: Any) -> QuestionORM:
        data = QuestionInput(**fields)
        if self.s.get(SectionORM, data.section_id) is None:
            raise NotFoundError("Section", data.section_id)
        question = QuestionORM(**data.model_dump())
        self.s.add(question)
        self.s.flush()
        return question

    @log_database_operation("option.create")
    def add_option(self, **fields: Any) -> OptionORM:
        data = OptionInput(**fields)
        if self.s.get(QuestionORM, data.question_id) is None:
            raise QuestionNotFoundError(data.question_id)
        option = OptionORM(**data.model_dump())
        self.s.add(option)
        self.s.flush()
        return option

    def get_question_required(self, question_id: int) -> QuestionORM:
        question = self.s.get(QuestionORM, question_id)
        if question is None:
            raise QuestionNotFoundError(question_id)
        return question

    def get_section_required(self, section_id: int) -> SectionORM:
        section = self.s.get(SectionORM, section_id)
        if section is None:
            raise NotFoundError("Section", section_id)
        return section

    # -------- Visibility conditions --------

    @log_database_operation("condition.set")
    def set_condition(
        self, target_kind: str, target_id: int, rules: Sequence[dict[str, Any] | ConditionalRuleInput]
    ) -> SectionORM | QuestionORM:
        """
        Replace the visibility conditions of a section or question.

        Every trigger must precede the target in assessment order; an empty
        ``rules`` list makes the item unconditional.
        """
        target_orm = self._condition_target(target_kind, target_id)
        assessment_id = (
            target_orm.assessment_id
            if isinstance(target_orm, SectionORM)
            else target_orm.section.assessment_id
        )
        structure = self.load_structure(assessment_id)
        target = (
            structure.section(target_id)
            if isinstance(target_orm, SectionORM)
            else structure.question(target_id)
        )

        validated = [
            r if isinstance(r, ConditionalRuleInput) else ConditionalRuleInput(**r) for r in rules
        ]
        for rule in validated:
            conditions.validate_precedence(target, rule.trigger_question_id, structure)

        target_orm.is_conditional = bool(validated)
        target_orm.visibility_conditions = [
            {
                "trigger_question_id": r.trigger_question_id,
                "trigger_response_type": str(r.trigger_kind),
                "trigger_values": list(r.trigger_values),
                "operator": str(r.operator),
                "logic_operator": str(r.logic_operator),
            }
            for r in validated
        ] or None
        self.s.flush()
        return target_orm

    def _condition_target(self, target_kind: str, target_id: int) -> SectionORM | QuestionORM:
        match target_kind:
            case "section":
                return self.get_section_required(target_id)
            case "question":
                return self.get_question_required(target_id)
            case _:
                raise ConditionalRuleError(f"Unknown condition target '{target_kind}'")

    @log_database_operation("restriction.set")
    def set_restrictions(
        self, target_kind: str, target_id: int, country_codes: Sequence[str]
    ) -> AssessmentORM | SectionORM | QuestionORM:
        match target_kind:
            case "assessment":
                target: Any = self.get_by_id_required(target_id)
            case "section":
                target = self.get_section_required(target_id)
            case "question":
                target = self.get_question_required(target_id)
            case _:
                raise ValidationError(
                    "target_kind", f"Unknown restriction target '{target_kind}'", target_kind
                )
        target.restricted_countries = sorted(RestrictionSet.of(country_codes).countries)
        self.s.flush()
        return target
