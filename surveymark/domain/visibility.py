"""
Per-session visibility resolution.

A resolver is cheap to build and holds no cached answers: every query
re-reads the response lookup it was given, so a changed trigger answer is
reflected on the next call. Answers to items that become hidden stay in
storage and are simply left out of navigation, completion and grading.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from ..infrastructure.logging import get_logger
from . import conditions, restrictions
from .models import (
    AssessmentStructure,
    CompletionStats,
    ProgressCount,
    Question,
    ResponseLookup,
    Section,
)

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class IntegrityWarning:
    item_kind: str
    item_id: int
    trigger_question_id: int
    message: str


class VisibilityResolver:
    """
    Decides which sections and questions a respondent sees.

    Example:
        >>> resolver = VisibilityResolver(structure, responses, country_code="GB")
        >>> [q.id for q in resolver.visible_questions()]
        [1, 2, 5]
    """

    def __init__(
        self,
        structure: AssessmentStructure,
        responses: ResponseLookup,
        country_code: str | None = None,
    ):
        self.structure = structure
        self.responses = responses
        self.country_code = country_code

    # -------- Visibility --------

    def is_section_visible(self, section: Section) -> bool:
        if not restrictions.accessible(self.structure, self.country_code):
            return False
        if not restrictions.accessible(section, self.country_code):
            return False
        return conditions.evaluate_all(section.conditions, self.responses)

    def is_question_visible(self, question: Question) -> bool:
        section = self.structure.section_of(question)
        if section is None or not self.is_section_visible(section):
            return False
        if not restrictions.accessible(question, self.country_code):
            return False
        return conditions.evaluate_all(question.conditions, self.responses)

    def visible_sections(self) -> list[Section]:
        return [s for s in self.structure.sections if self.is_section_visible(s)]

    def visible_questions_in_section(self, section: Section) -> list[Question]:
        if not self.is_section_visible(section):
            return []
        return [
            q
            for q in sorted(section.questions, key=lambda q: (q.order, q.id))
            if restrictions.accessible(q, self.country_code)
            and conditions.evaluate_all(q.conditions, self.responses)
        ]

    def visible_questions(self) -> list[Question]:
        return [q for s in self.visible_sections() for q in self.visible_questions_in_section(s)]

    # -------- Navigation --------

    @staticmethod
    def _step(items: list[Any], current: Any, offset: int) -> Any:
        if current is None:
            return items[0] if offset > 0 and items else None
        ids = [item.id for item in items]
        if current.id not in ids:
            return None
        index = ids.index(current.id) + offset
        if 0 <= index < len(items):
            return items[index]
        return None

    def next_visible_question(self, current: Question | None = None) -> Question | None:
        return self._step(self.visible_questions(), current, 1)

    def previous_visible_question(self, current: Question | None) -> Question | None:
        return self._step(self.visible_questions(), current, -1)

    def next_visible_section(self, current: Section | None = None) -> Section | None:
        return self._step(self.visible_sections(), current, 1)

    def previous_visible_section(self, current: Section | None) -> Section | None:
        return self._step(self.visible_sections(), current, -1)

    def next_visible_question_in_section(
        self, section: Section, current: Question | None = None
    ) -> Question | None:
        return self._step(self.visible_questions_in_section(section), current, 1)

    def previous_visible_question_in_section(
        self, section: Section, current: Question | None
    ) -> Question | None:
        return self._step(self.visible_questions_in_section(section), current, -1)

    # -------- Completion --------

    def is_answered(self, question: Question) -> bool:
        response = self.responses.get(question.id)
        return response is not None and response.has_value(question.question_type)

    def unanswered_required_questions(self) -> list[Question]:
        return [q for q in self.visible_questions() if q.is_required and not self.is_answered(q)]

    def first_unanswered_required_question(self) -> Question | None:
        missing = self.unanswered_required_questions()
        return missing[0] if missing else None

    def can_complete(self) -> bool:
        """All visible required questions are answered (vacuously true when there are none)."""
        return not self.unanswered_required_questions()

    def is_section_complete(self, section: Section) -> bool:
        return all(
            self.is_answered(q) for q in self.visible_questions_in_section(section) if q.is_required
        )

    def can_access_section(self, section: Section) -> bool:
        """A section opens once every required question in earlier visible sections is answered."""
        if not self.is_section_visible(section):
            return False
        for earlier in self.visible_sections():
            if earlier.id == section.id:
                return True
            if not self.is_section_complete(earlier):
                return False
        return False

    def completion_stats(self) -> CompletionStats:
        sections = self.visible_sections()
        questions = [q for s in sections for q in self.visible_questions_in_section(s)]
        required = [q for q in questions if q.is_required]
        answered = {q.id for q in questions if self.is_answered(q)}

        return CompletionStats(
            sections=ProgressCount(
                total=len(sections), done=sum(1 for s in sections if self.is_section_complete(s))
            ),
            questions=ProgressCount(total=len(questions), done=len(answered)),
            required=ProgressCount(
                total=len(required), done=sum(1 for q in required if q.id in answered)
            ),
            can_complete=all(q.id in answered for q in required),
        )

    # -------- Diagnostics --------

    def integrity_warnings(self) -> list[IntegrityWarning]:
        """
        Visible conditional items whose trigger question is currently hidden.

        These are data consistency warnings: the item's condition was met by an
        answer the respondent can no longer see or change.
        """
        warnings: list[IntegrityWarning] = []

        def check(kind: str, item: Section | Question) -> None:
            for rule in item.conditions:
                trigger = self.structure.question(rule.trigger_question_id)
                if trigger is not None and self.is_question_visible(trigger):
                    continue
                warnings.append(
                    IntegrityWarning(
                        item_kind=kind,
                        item_id=item.id,
                        trigger_question_id=rule.trigger_question_id,
                        message=(
                            f"Visible {kind} {item.id} depends on hidden question "
                            f"{rule.trigger_question_id}"
                        ),
                    )
                )

        for section in self.visible_sections():
            if section.is_conditional:
                check("section", section)
            for question in self.visible_questions_in_section(section):
                if question.is_conditional:
                    check("question", question)

        if warnings:
            logger.warning(f"Visibility integrity check found {len(warnings)} issue(s)")
        return warnings

    def summary(self) -> dict[str, Any]:
        all_questions = self.structure.questions()
        visible_sections = self.visible_sections()
        visible_questions = [
            q for s in visible_sections for q in self.visible_questions_in_section(s)
        ]
        if restrictions.accessible(self.structure, self.country_code):
            country_restricted = [
                q
                for q in all_questions
                if not restrictions.accessible(q, self.country_code)
                or not restrictions.accessible(self.structure.section_of(q), self.country_code)
            ]
        else:
            country_restricted = all_questions
        return {
            "country_code": self.country_code,
            "total_sections": len(self.structure.sections),
            "visible_sections": len(visible_sections),
            "total_questions": len(all_questions),
            "visible_questions": len(visible_questions),
            "country_restricted_questions": len(country_restricted),
            "conditionally_hidden_questions": (
                len(all_questions) - len(visible_questions) - len(country_restricted)
            ),
        }
