from __future__ import annotations

import logging
import re
from collections import defaultdict
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from sqlalchemy.orm import Session

from ..infrastructure.config import MarkingConfig, get_settings
from ..infrastructure.exceptions import NothingToGradeError
from ..infrastructure.logging import LogContext, get_logger
from ..infrastructure.notifications import Notifier
from ..infrastructure.repositories import (
    AssessmentRepo,
    MarkingRuleRepo,
    MarkingSchemeRepo,
    ResponseRepo,
    ResponseScoreRepo,
    ResponseSessionRepo,
)
from ..infrastructure.repositories_scheme import rule_to_domain, scheme_to_domain
from ..infrastructure.uow import UnitOfWork
from . import lifecycle
from .models import (
    AssessmentStructure,
    MarkingRule,
    MarkingScheme,
    MarkResult,
    ResponseLookup,
    ScoreRecord,
    SessionState,
)
from .rules import RuleEvaluator
from .visibility import VisibilityResolver

PLACEHOLDER = re.compile(r"%\{(\w+)\}")


def format_number(value: float) -> str:
    value = round(float(value), 2)
    return str(int(value)) if value.is_integer() else f"{value:g}"


def calculate_percentage(total_score: float, max_possible: float) -> float:
    if max_possible <= 0:
        return 0.0
    return round(total_score / max_possible * 100, 2)


def passing_percentage(scheme: MarkingScheme) -> float | None:
    """The scheme's passing score as a percentage of its total possible score."""
    if scheme.passing_score is None:
        return None
    if scheme.total_possible_score > 0:
        return scheme.passing_score / scheme.total_possible_score * 100
    return scheme.passing_score


def render_feedback(
    templates: Mapping[str, str],
    grade: str,
    *,
    name: str,
    score: float,
    max_score: float,
    percentage: float,
) -> str:
    """Interpolate the template for ``grade``; no template means no feedback."""
    template = templates.get(grade)
    if not template:
        return ""
    values = {
        "name": name,
        "score": format_number(score),
        "max_score": format_number(max_score),
        "percentage": format_number(percentage),
        "grade": grade,
    }
    return PLACEHOLDER.sub(lambda m: values.get(m.group(1), m.group(0)), template)


@dataclass(frozen=True, slots=True)
class GradingOutcome:
    total_score: float
    max_possible: float
    percentage: float
    grade: str
    feedback: str
    passed: bool | None
    scores: tuple[ScoreRecord, ...]


def grade_responses(
    structure: AssessmentStructure,
    responses: ResponseLookup,
    country_code: str | None,
    scheme: MarkingScheme,
    rules: Iterable[MarkingRule],
    evaluator: RuleEvaluator,
    respondent_name: str = "",
    default_grade: str = "F",
) -> GradingOutcome:
    """
    Score every visible, answered question that has active rules.

    Per question the best-earning rule wins; ties go to the lowest ``order``.
    Questions hidden by restrictions or conditions contribute nothing, even
    when an answer to them is still stored.
    """
    rules_by_question: dict[int, list[MarkingRule]] = defaultdict(list)
    for rule in sorted(rules, key=lambda r: (r.order, r.id)):
        if rule.is_active:
            rules_by_question[rule.question_id].append(rule)

    resolver = VisibilityResolver(structure, responses, country_code)
    scores: list[ScoreRecord] = []
    for question in resolver.visible_questions():
        candidates = rules_by_question.get(question.id)
        response = responses.get(question.id)
        if not candidates or response is None:
            continue

        best_rule, best = None, None
        for rule in candidates:
            outcome = evaluator.evaluate(rule, response, question)
            if best is None or outcome.earned > best.earned:
                best_rule, best = rule, outcome
        scores.append(
            ScoreRecord(
                question_id=question.id,
                response_id=response.id,
                rule_id=best_rule.id,
                earned=best.earned,
                possible=best.possible,
                details=best.details,
            )
        )

    total = round(sum(s.earned for s in scores), 2)
    max_possible = round(sum(s.possible for s in scores), 2)
    percentage = calculate_percentage(total, max_possible)
    grade = scheme.grade_boundaries.resolve(percentage, default=default_grade)
    threshold = passing_percentage(scheme)

    return GradingOutcome(
        total_score=total,
        max_possible=max_possible,
        percentage=percentage,
        grade=grade,
        feedback=render_feedback(
            scheme.feedback_templates,
            grade,
            name=respondent_name,
            score=total,
            max_score=max_possible,
            percentage=percentage,
        ),
        passed=None if threshold is None else percentage >= threshold,
        scores=tuple(scores),
    )


class MarkingEngine:
    """
    Marks one response session inside a single unit of work.

    Scores, the session's totals and its move to ``marked`` commit together;
    any error rolls everything back and leaves the session as it was, so the
    call can be retried. Re-marking recomputes and overwrites stored scores.

    Example:
        >>> engine = MarkingEngine(UnitOfWork(SessionLocal))
        >>> result = engine.mark(session_id=12)
        >>> result.grade
        'B'
    """

    def __init__(
        self,
        uow: UnitOfWork,
        evaluator: RuleEvaluator | None = None,
        notifier: Notifier | None = None,
        config: MarkingConfig | None = None,
        logger: logging.Logger | None = None,
    ):
        self.uow = uow
        self.config = config or get_settings().marking
        self.evaluator = evaluator or RuleEvaluator(default_keyword_method=self.config.keyword_policy)
        self.notifier = notifier
        self.logger = logger or get_logger(__name__)

    def mark(
        self, session_id: int, scheme_id: int | None = None, *, allow_remark: bool = False
    ) -> MarkResult:
        """
        Grade a submitted session.

        Returns ``MarkResult(marked=False)`` when the session is not in a
        markable state; raises ``ConfigurationError`` subclasses when there is
        no scheme or nothing to grade.
        """
        with LogContext(session_id=session_id, scheme_id=scheme_id, operation="mark"):
            with self.uow.begin() as s:
                result = self._mark(s, session_id, scheme_id, allow_remark)
            if result.marked:
                self._notify(session_id)
            return result

    def preview(self, session_id: int, scheme_id: int | None = None) -> MarkResult:
        """Compute marks without persisting anything or changing state."""
        with self.uow.read() as s:
            rs = ResponseSessionRepo(s).get_by_id_required(session_id)
            scheme, outcome = self._grade(
                s, rs.id, rs.assessment_id, rs.country_code, rs.respondent_name, scheme_id
            )
            return self._result(session_id, scheme, outcome, marked=False, reason="preview")

    def _mark(
        self, s: Session, session_id: int, scheme_id: int | None, allow_remark: bool
    ) -> MarkResult:
        sessions = ResponseSessionRepo(s)
        rs = sessions.get_for_update(session_id)
        remarking = allow_remark and rs.state == SessionState.MARKED
        if not (lifecycle.can_be_marked(rs.state) or remarking):
            self.logger.info(f"Session {session_id} not marked: state is {rs.state}")
            return MarkResult.not_marked(session_id, f"session is {rs.state}")

        scheme, outcome = self._grade(
            s, rs.id, rs.assessment_id, rs.country_code, rs.respondent_name, scheme_id
        )
        ResponseScoreRepo(s).replace_for_session(rs.id, scheme.id, outcome.scores)
        sessions.record_marks(
            rs,
            total_score=outcome.total_score,
            max_possible_score=outcome.max_possible,
            grade=outcome.grade,
            feedback=outcome.feedback,
        )
        self.logger.info(
            f"Marked session {session_id}: {format_number(outcome.total_score)}/"
            f"{format_number(outcome.max_possible)} ({outcome.percentage}%) grade {outcome.grade}"
        )
        return self._result(session_id, scheme, outcome, marked=True)

    def _grade(
        self,
        s: Session,
        session_id: int,
        assessment_id: int,
        country_code: str | None,
        respondent_name: str,
        scheme_id: int | None,
    ) -> tuple[MarkingScheme, GradingOutcome]:
        scheme = scheme_to_domain(MarkingSchemeRepo(s).resolve(assessment_id, scheme_id))
        rules = [rule_to_domain(r) for r in MarkingRuleRepo(s).active_for_scheme(scheme.id)]
        if not rules:
            raise NothingToGradeError(scheme.id)

        outcome = grade_responses(
            AssessmentRepo(s).load_structure(assessment_id),
            ResponseRepo(s).lookup_for_session(session_id),
            country_code,
            scheme,
            rules,
            self.evaluator,
            respondent_name=respondent_name,
            default_grade=self.config.default_grade,
        )
        return scheme, outcome

    @staticmethod
    def _result(
        session_id: int,
        scheme: MarkingScheme,
        outcome: GradingOutcome,
        marked: bool,
        reason: str | None = None,
    ) -> MarkResult:
        return MarkResult(
            session_id=session_id,
            marked=marked,
            total_score=outcome.total_score,
            max_possible=outcome.max_possible,
            percentage=outcome.percentage,
            grade=outcome.grade,
            feedback=outcome.feedback,
            passed=outcome.passed,
            scheme_id=scheme.id,
            reason=reason,
            scores=outcome.scores,
        )

    def _notify(self, session_id: int) -> None:
        if self.notifier is None or not self.config.notify_on_mark:
            return
        try:
            self.notifier.notify_marked(session_id)
        except Exception as e:
            # marks are already committed at this point
            self.logger.error(f"Notification for session {session_id} failed: {e}", exc_info=True)
