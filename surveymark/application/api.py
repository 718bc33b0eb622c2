"""
Application API layer for visibility, response recording and marking.

Read functions take an open SQLAlchemy ``Session``; marking functions take a
session factory because every mark runs in its own unit of work.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from sqlalchemy.orm import Session, sessionmaker

from ..domain import conditions, lifecycle, restrictions
from ..domain.models import (
    CompletionStats,
    MarkResult,
    Question,
    QuestionType,
    RestrictionSet,
    RuleType,
    Section,
    SessionState,
)
from ..domain.schemas import ResponseInput, SessionCreationInput, available_rule_types, validate_input
from ..domain.services import MarkingEngine, passing_percentage
from ..domain.visibility import IntegrityWarning, VisibilityResolver
from ..infrastructure.exceptions import (
    NotFoundError,
    ResponseLockedError,
    SurveyMarkError,
    ValidationError,
    create_user_friendly_error_message,
    log_error_details,
)
from ..infrastructure.jobs import JobScheduler, RQJobScheduler
from ..infrastructure.logging import get_logger, log_operation, set_context
from ..infrastructure.models import (
    MarkingRuleORM,
    MarkingSchemeORM,
    QuestionORM,
    ResponseORM,
    ResponseSessionORM,
    SectionORM,
)
from ..infrastructure.notifications import Notifier
from ..infrastructure.repositories import (
    AssessmentRepo,
    MarkingRuleRepo,
    MarkingSchemeRepo,
    ResponseRepo,
    ResponseScoreRepo,
    ResponseSessionRepo,
)
from ..infrastructure.repositories_scheme import scheme_to_domain
from ..infrastructure.status_store import BatchStatusStore, build_status_store
from ..infrastructure.uow import UnitOfWork
from .batch import BatchMarkingCoordinator, BatchResult, enqueue_batch

logger = get_logger(__name__)


def _resolver(session: Session, response_session_id: int) -> VisibilityResolver:
    """A fresh resolver over the current answers; nothing is cached between calls."""
    rs = ResponseSessionRepo(session).get_by_id_required(response_session_id)
    return VisibilityResolver(
        AssessmentRepo(session).load_structure(rs.assessment_id),
        ResponseRepo(session).lookup_for_session(rs.id),
        rs.country_code,
    )


# ---------------------------------------------------------------------------
# Visibility
# ---------------------------------------------------------------------------


@log_operation("resolve_visible_sections")
def resolve_visible_sections(session: Session, response_session_id: int) -> list[Section]:
    """
    Sections the respondent currently sees, in order.

    Example:
        >>> [s.name for s in resolve_visible_sections(session, 12)]
        ['Background', 'Experience']
    """
    return _resolver(session, response_session_id).visible_sections()


@log_operation("resolve_visible_questions")
def resolve_visible_questions(
    session: Session, response_session_id: int, section_id: int | None = None
) -> list[Question]:
    resolver = _resolver(session, response_session_id)
    if section_id is None:
        return resolver.visible_questions()
    section = resolver.structure.section(section_id)
    if section is None:
        raise NotFoundError("Section", section_id)
    return resolver.visible_questions_in_section(section)


def can_complete(session: Session, response_session_id: int) -> bool:
    return _resolver(session, response_session_id).can_complete()


@log_operation("completion_stats")
def completion_stats(session: Session, response_session_id: int) -> CompletionStats:
    return _resolver(session, response_session_id).completion_stats()


def next_question(
    session: Session, response_session_id: int, current_question_id: int | None = None
) -> Question | None:
    resolver = _resolver(session, response_session_id)
    current = (
        resolver.structure.question(current_question_id)
        if current_question_id is not None
        else None
    )
    if current_question_id is not None and current is None:
        return None
    return resolver.next_visible_question(current)


def previous_question(
    session: Session, response_session_id: int, current_question_id: int
) -> Question | None:
    resolver = _resolver(session, response_session_id)
    current = resolver.structure.question(current_question_id)
    if current is None:
        return None
    return resolver.previous_visible_question(current)


@log_operation("visibility_report")
def visibility_report(session: Session, response_session_id: int) -> dict[str, Any]:
    """Visibility summary plus integrity warnings for one session."""
    resolver = _resolver(session, response_session_id)
    warnings: list[IntegrityWarning] = resolver.integrity_warnings()
    return {
        **resolver.summary(),
        "integrity_warnings": [w.message for w in warnings],
    }


# ---------------------------------------------------------------------------
# Respondent sessions and responses
# ---------------------------------------------------------------------------


@log_operation("create_response_session")
def create_response_session(
    session: Session,
    assessment_id: int,
    user_id: int,
    respondent_name: str,
    country_code: str | None = None,
) -> ResponseSessionORM:
    """
    Open a draft response session for a user.

    Raises:
        ValidationError: If input data is invalid
        IntegrityError: If the user already has a session for the assessment
    """
    validation_result = validate_input(
        SessionCreationInput,
        {
            "assessment_id": assessment_id,
            "user_id": user_id,
            "respondent_name": respondent_name,
            "country_code": country_code,
        },
    )
    if not validation_result.success:
        error_msg = "; ".join(f"{e.field}: {e.message}" for e in validation_result.errors)
        logger.warning(f"Session creation validation failed: {error_msg}")
        raise ValidationError("session_data", error_msg)

    AssessmentRepo(session).get_by_id_required(assessment_id)
    set_context(user_id=user_id)
    rs = ResponseSessionRepo(session).create_session(**validation_result.data)
    logger.info(f"Created response session {rs.id} for user {user_id}")
    return rs


@log_operation("record_response")
def record_response(
    session: Session,
    response_session_id: int,
    question_id: int,
    value: dict[str, Any] | None = None,
    option_ids: Sequence[int] = (),
) -> ResponseORM:
    """
    Create or replace an answer.

    Draft and started sessions move to ``in_progress`` on their first
    answer; sessions past completion reject writes.
    """
    validation_result = validate_input(
        ResponseInput,
        {
            "session_id": response_session_id,
            "question_id": question_id,
            "value": value,
            "option_ids": list(option_ids),
        },
    )
    if not validation_result.success:
        error_msg = "; ".join(f"{e.field}: {e.message}" for e in validation_result.errors)
        raise ValidationError("response", error_msg)

    sessions = ResponseSessionRepo(session)
    rs = sessions.get_by_id_required(response_session_id)
    if not lifecycle.accepts_responses(rs.state):
        raise ResponseLockedError(rs.state, rs.id)

    question = AssessmentRepo(session).get_question_required(question_id)
    if question.section.assessment_id != rs.assessment_id:
        raise ValidationError("question_id", "question belongs to a different assessment", question_id)

    try:
        response = ResponseRepo(session).upsert(rs.id, question_id, value, option_ids)
    except SurveyMarkError:
        raise
    except Exception as e:
        error_details = log_error_details(e, {"session_id": rs.id, "question_id": question_id})
        logger.error("Failed to record response", extra=error_details)
        raise SurveyMarkError(
            f"Failed to record response to question {question_id}: {str(e)}",
            details=error_details,
            user_message=create_user_friendly_error_message(e),
        ) from e

    if lifecycle.may_begin_answering(rs.state):
        sessions.set_state(rs, SessionState.IN_PROGRESS)
    return response


@log_operation("clear_response")
def clear_response(session: Session, response_session_id: int, question_id: int) -> bool:
    """
    Remove one answer. Items triggered by it are hidden again on the next
    visibility call; their own answers stay stored.
    """
    rs = ResponseSessionRepo(session).get_by_id_required(response_session_id)
    if not lifecycle.accepts_responses(rs.state):
        raise ResponseLockedError(rs.state, rs.id)
    return ResponseRepo(session).delete(rs.id, question_id)


@log_operation("apply_session_event")
def apply_event(
    session: Session,
    response_session_id: int,
    event: lifecycle.Event | str,
    purge_responses: bool = False,
) -> ResponseSessionORM:
    """
    Move a session through its lifecycle.

    ``complete`` and ``submit`` require every visible required question to
    be answered. ``reset`` returns to draft, clears computed scores and keeps
    answers unless ``purge_responses`` is set.

    Raises:
        InvalidStateError: If the event is not allowed from the current state
    """
    event = lifecycle.Event(event)
    sessions = ResponseSessionRepo(session)
    rs = sessions.get_by_id_required(response_session_id)

    ready = True
    if event in lifecycle.NEEDS_COMPLETION:
        ready = _resolver(session, rs.id).can_complete()
    target = lifecycle.apply(event, rs.state, can_complete=ready, session_id=rs.id)

    if event == lifecycle.Event.RESET:
        ResponseScoreRepo(session).delete_for_session(rs.id)
        sessions.clear_marks(rs)
        if purge_responses:
            purged = ResponseRepo(session).delete_for_session(rs.id)
            logger.info(f"Purged {purged} responses from session {rs.id}")

    sessions.set_state(rs, target)
    logger.info(f"Session {rs.id}: {event} -> {target}")
    return rs


def allowed_events(session: Session, response_session_id: int) -> list[str]:
    rs = ResponseSessionRepo(session).get_by_id_required(response_session_id)
    ready = _resolver(session, rs.id).can_complete()
    return [str(e) for e in lifecycle.Event if lifecycle.may(e, rs.state, can_complete=ready)]


# ---------------------------------------------------------------------------
# Authoring
# ---------------------------------------------------------------------------


@log_operation("set_condition")
def set_condition(
    session: Session, target_kind: str, target_id: int, rules: Sequence[dict[str, Any]]
) -> SectionORM | QuestionORM:
    """Replace the visibility conditions on a section or question."""
    return AssessmentRepo(session).set_condition(target_kind, target_id, rules)


@log_operation("set_restrictions")
def set_restrictions(
    session: Session, target_kind: str, target_id: int, country_codes: Sequence[str]
) -> str:
    """Replace the country denylist of an assessment, section or question; returns its description."""
    target = AssessmentRepo(session).set_restrictions(target_kind, target_id, country_codes)
    return restrictions.describe(RestrictionSet.of(target.restricted_countries))


def available_trigger_questions(
    session: Session, target_kind: str, target_id: int
) -> list[Question]:
    repo = AssessmentRepo(session)
    if target_kind == "section":
        assessment_id = repo.get_section_required(target_id).assessment_id
        structure = repo.load_structure(assessment_id)
        target: Section | Question | None = structure.section(target_id)
    else:
        assessment_id = repo.get_question_required(target_id).section.assessment_id
        structure = repo.load_structure(assessment_id)
        target = structure.question(target_id)
    return conditions.available_trigger_questions(target, structure)


def dependency_graph(session: Session, assessment_id: int) -> dict[str, list[dict[str, Any]]]:
    return conditions.dependency_graph(AssessmentRepo(session).load_structure(assessment_id))


def conditional_summary(session: Session, assessment_id: int) -> dict[str, Any]:
    return conditions.conditional_summary(AssessmentRepo(session).load_structure(assessment_id))


@log_operation("create_marking_scheme")
def create_marking_scheme(
    session: Session,
    assessment_id: int,
    name: str,
    total_possible_score: float = 0.0,
    settings: dict[str, Any] | None = None,
    is_active: bool = True,
    description: str | None = None,
) -> MarkingSchemeORM:
    AssessmentRepo(session).get_by_id_required(assessment_id)
    return MarkingSchemeRepo(session).create_scheme(
        settings=settings,
        assessment_id=assessment_id,
        name=name,
        description=description,
        total_possible_score=total_possible_score,
        is_active=is_active,
    )


@log_operation("create_marking_rule")
def create_marking_rule(
    session: Session,
    scheme_id: int,
    question_id: int,
    rule_type: RuleType | str,
    points: float,
    criteria: dict[str, Any] | None = None,
    order: int = 0,
    is_active: bool = True,
) -> MarkingRuleORM:
    return MarkingRuleRepo(session).create_rule(
        scheme_id=scheme_id,
        question_id=question_id,
        rule_type=rule_type,
        points=points,
        criteria=criteria or {},
        order=order,
        is_active=is_active,
    )


def activate_scheme(session: Session, scheme_id: int) -> MarkingSchemeORM:
    return MarkingSchemeRepo(session).activate(scheme_id)


def rule_types_for_question(session: Session, question_id: int) -> list[str]:
    question = AssessmentRepo(session).get_question_required(question_id)
    return [str(t) for t in available_rule_types(QuestionType(question.question_type))]


# ---------------------------------------------------------------------------
# Marking
# ---------------------------------------------------------------------------


@log_operation("mark_session")
def mark(
    SessionLocal: sessionmaker,
    session_id: int,
    scheme_id: int | None = None,
    notifier: Notifier | None = None,
    allow_remark: bool = False,
) -> MarkResult:
    """
    Mark one session atomically.

    Example:
        >>> result = mark(SessionLocal, 12)
        >>> result.marked, result.grade
        (True, 'B')
    """
    engine = MarkingEngine(UnitOfWork(SessionLocal), notifier=notifier)
    return engine.mark(session_id, scheme_id, allow_remark=allow_remark)


@log_operation("preview_marks")
def preview_marks(
    SessionLocal: sessionmaker, session_id: int, scheme_id: int | None = None
) -> MarkResult:
    return MarkingEngine(UnitOfWork(SessionLocal)).preview(session_id, scheme_id)


@log_operation("mark_batch")
def mark_batch(
    SessionLocal: sessionmaker,
    session_ids: Sequence[int],
    scheme_id: int | None = None,
    notifier: Notifier | None = None,
    status_store: BatchStatusStore | None = None,
    max_workers: int | None = None,
) -> BatchResult:
    """Mark many sessions concurrently; per-session failures are collected, not raised."""
    engine = MarkingEngine(UnitOfWork(SessionLocal), notifier=notifier)
    coordinator = BatchMarkingCoordinator.for_engine(engine, status_store=status_store)
    return coordinator.mark_batch(session_ids, scheme_id, max_workers=max_workers)


def enqueue_marking(
    session_id: int, scheme_id: int | None = None, scheduler: JobScheduler | None = None
) -> str:
    """Schedule marking on the background queue; returns the job id."""
    scheduler = scheduler or RQJobScheduler.from_config()
    return scheduler.enqueue(session_id, scheme_id)


@log_operation("enqueue_marking_batch")
def enqueue_marking_batch(
    session_ids: Sequence[int],
    scheme_id: int | None = None,
    scheduler: RQJobScheduler | None = None,
    status_store: BatchStatusStore | None = None,
) -> str:
    """Queue a batch for an rq worker; poll ``batch_status`` with the returned id."""
    return enqueue_batch(
        scheduler or RQJobScheduler.from_config(), session_ids, scheme_id, status_store=status_store
    )


def batch_status(batch_id: str, status_store: BatchStatusStore | None = None) -> dict[str, Any] | None:
    return (status_store or build_status_store()).get(batch_id)


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------


@log_operation("session_stats_for_assessment")
def session_stats_for_assessment(session: Session, assessment_id: int) -> dict[str, Any]:
    """Counts by state, average score and pass rate over marked sessions."""
    AssessmentRepo(session).get_by_id_required(assessment_id)
    sessions_repo = ResponseSessionRepo(session)
    sessions = sessions_repo.for_assessment(assessment_id)
    by_state = {str(state): 0 for state in SessionState}
    by_state.update(sessions_repo.state_counts(assessment_id))

    scored = [rs for rs in sessions if rs.state in (SessionState.MARKED, SessionState.PUBLISHED)]
    # unrounded, so the average is rounded once
    percentages = [
        rs.total_score / rs.max_possible_score * 100 if rs.max_possible_score else 0.0
        for rs in scored
    ]

    pass_rate = None
    active = MarkingSchemeRepo(session).first(
        MarkingSchemeORM.assessment_id == assessment_id,
        MarkingSchemeORM.is_active.is_(True),
        order_by=[MarkingSchemeORM.id],
    )
    threshold = passing_percentage(scheme_to_domain(active)) if active is not None else None
    if threshold is not None and percentages:
        passed = sum(1 for p in percentages if p >= threshold)
        pass_rate = round(passed / len(percentages) * 100, 2)

    return {
        "assessment_id": assessment_id,
        "total_sessions": len(sessions),
        "by_state": by_state,
        "scored_sessions": len(scored),
        "average_score": (
            round(sum(rs.total_score for rs in scored) / len(scored), 2) if scored else None
        ),
        "average_percentage": (
            round(sum(percentages) / len(percentages), 2) if percentages else None
        ),
        "pass_rate": pass_rate,
    }
