from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol


class QuestionType(StrEnum):
    MULTIPLE_CHOICE = "multiple_choice"
    RADIO = "radio"
    BOOLEAN = "boolean"
    RICHTEXT = "richtext"
    DATE = "date"
    RANGE = "range"
    FILE_UPLOAD = "file_upload"

    @property
    def is_choice(self) -> bool:
        return self in CHOICE_TYPES


CHOICE_TYPES = frozenset({QuestionType.MULTIPLE_CHOICE, QuestionType.RADIO, QuestionType.BOOLEAN})


class TriggerKind(StrEnum):
    OPTION_SELECTED = "option_selected"
    VALUE_EQUALS = "value_equals"
    VALUE_RANGE = "value_range"


class ConditionOperator(StrEnum):
    CONTAINS = "contains"
    ANY = "any"
    EQUALS = "equals"
    EXACT = "exact"
    NOT_CONTAINS = "not_contains"
    NONE = "none"
    ALL = "all"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    BETWEEN = "between"


class LogicOperator(StrEnum):
    AND = "and"
    OR = "or"


class RuleType(StrEnum):
    EXACT_MATCH = "exact_match"
    OPTION_BASED = "option_based"
    RANGE_BASED = "range_based"
    TOLERANCE_BASED = "tolerance_based"
    KEYWORD_BASED = "keyword_based"
    CONTENT_ANALYSIS = "content_analysis"
    PARTIAL_MATCH = "partial_match"
    STEP_BASED = "step_based"
    DATE_RANGE_BASED = "date_range_based"
    FORMAT_BASED = "format_based"
    FILE_BASED = "file_based"
    TIME_BASED = "time_based"
    OVERLAP_BASED = "overlap_based"
    STRENGTH_BASED = "strength_based"
    SIZE_BASED = "size_based"
    TYPE_BASED = "type_based"


class SessionState(StrEnum):
    DRAFT = "draft"
    STARTED = "started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SUBMITTED = "submitted"
    UNDER_REVIEW = "under_review"
    MARKED = "marked"
    PUBLISHED = "published"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


@dataclass(frozen=True, slots=True)
class RestrictionSet:
    """Denylist of ISO country codes."""

    countries: frozenset[str] = frozenset()

    @classmethod
    def of(cls, codes: Iterable[str] | None) -> RestrictionSet:
        return cls(frozenset(c.strip().upper() for c in (codes or ()) if c and c.strip()))

    def __bool__(self) -> bool:
        return bool(self.countries)

    def __contains__(self, country_code: object) -> bool:
        return isinstance(country_code, str) and country_code.upper() in self.countries


@dataclass(frozen=True, slots=True)
class ConditionalRule:
    """
    Visibility trigger embedded in a section or question.

    ``trigger_kind`` and ``operator`` are kept as stored strings so that an
    unknown value read back from storage fails closed at evaluation time.
    """

    trigger_question_id: int
    trigger_kind: str
    trigger_values: tuple[str, ...]
    operator: str
    logic_operator: str = LogicOperator.AND

    def to_dict(self) -> dict[str, Any]:
        return {
            "trigger_question_id": self.trigger_question_id,
            "trigger_response_type": str(self.trigger_kind),
            "trigger_values": list(self.trigger_values),
            "operator": str(self.operator),
            "logic_operator": str(self.logic_operator),
        }


@dataclass(frozen=True, slots=True)
class Option:
    id: int
    question_id: int
    order: int = 0
    is_correct: bool = False
    points: float | None = None
    text: str = ""


@dataclass(frozen=True, slots=True)
class Question:
    id: int
    section_id: int
    question_type: QuestionType
    order: int
    is_required: bool = False
    text: str = ""
    restrictions: RestrictionSet = RestrictionSet()
    conditions: tuple[ConditionalRule, ...] = ()
    options: tuple[Option, ...] = ()

    @property
    def is_conditional(self) -> bool:
        return bool(self.conditions)

    @property
    def is_choice(self) -> bool:
        return self.question_type.is_choice


@dataclass(frozen=True, slots=True)
class Section:
    id: int
    assessment_id: int
    order: int
    name: str = ""
    restrictions: RestrictionSet = RestrictionSet()
    conditions: tuple[ConditionalRule, ...] = ()
    questions: tuple[Question, ...] = ()

    @property
    def is_conditional(self) -> bool:
        return bool(self.conditions)


@dataclass(slots=True)
class AssessmentStructure:
    """An assessment with its sections and questions, in display order."""

    id: int
    title: str = ""
    restrictions: RestrictionSet = RestrictionSet()
    sections: tuple[Section, ...] = ()
    _questions: dict[int, Question] = field(init=False, repr=False, default_factory=dict)
    _sections: dict[int, Section] = field(init=False, repr=False, default_factory=dict)

    def __post_init__(self) -> None:
        self.sections = tuple(sorted(self.sections, key=lambda s: (s.order, s.id)))
        self._sections = {s.id: s for s in self.sections}
        self._questions = {q.id: q for s in self.sections for q in s.questions}

    def question(self, question_id: int) -> Question | None:
        return self._questions.get(question_id)

    def section(self, section_id: int) -> Section | None:
        return self._sections.get(section_id)

    def section_of(self, question: Question) -> Section | None:
        return self._sections.get(question.section_id)

    def questions(self) -> list[Question]:
        """All questions ordered by (section order, question order)."""
        return [
            q for s in self.sections for q in sorted(s.questions, key=lambda q: (q.order, q.id))
        ]


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, set, dict)):
        return len(value) == 0
    return False


@dataclass(frozen=True, slots=True)
class Response:
    """One recorded answer: a value payload and/or a set of selected options."""

    id: int
    session_id: int
    question_id: int
    value: Mapping[str, Any] | None = None
    selected_option_ids: frozenset[int] = frozenset()

    def scalar(self) -> Any:
        """The comparable value, by key priority ``value``, ``text``, ``number``, ``date``."""
        if self.value is None:
            return None
        if not isinstance(self.value, Mapping):
            return self.value
        for key in ("value", "text", "number", "date"):
            if self.value.get(key) is not None:
                return self.value[key]
        return None

    def text(self) -> str | None:
        raw = self.scalar()
        if raw is None:
            return None
        return raw if isinstance(raw, str) else str(raw)

    def has_value(self, question_type: QuestionType | None = None) -> bool:
        """Answered check: choice types need a selection, others a non-blank value."""
        if question_type is not None and question_type.is_choice:
            return bool(self.selected_option_ids)
        if question_type is None and self.selected_option_ids:
            return True
        if self.value is None:
            return False
        if isinstance(self.value, Mapping):
            return any(not _is_blank(v) for v in self.value.values())
        return not _is_blank(self.value)


class ResponseLookup(Protocol):
    def get(self, question_id: int) -> Response | None: ...


class ResponseMap:
    """In-memory ResponseLookup keyed by question id."""

    def __init__(self, responses: Iterable[Response] = ()):
        self._by_question: dict[int, Response] = {r.question_id: r for r in responses}

    def get(self, question_id: int) -> Response | None:
        return self._by_question.get(question_id)

    def __iter__(self) -> Iterator[Response]:
        return iter(self._by_question.values())

    def __len__(self) -> int:
        return len(self._by_question)


@dataclass(frozen=True, slots=True)
class GradeBoundaryTable:
    """Grade labels with minimum percentages, kept sorted by descending threshold."""

    boundaries: tuple[tuple[str, float], ...] = ()

    def __post_init__(self) -> None:
        ordered = tuple(sorted(self.boundaries, key=lambda b: b[1], reverse=True))
        object.__setattr__(self, "boundaries", ordered)

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, float] | None) -> GradeBoundaryTable:
        return cls(tuple((str(label), float(threshold)) for label, threshold in (mapping or {}).items()))

    def resolve(self, percentage: float, default: str = "F") -> str:
        for label, threshold in self.boundaries:
            if percentage >= threshold:
                return label
        return default

    def labels(self) -> list[str]:
        return [label for label, _ in self.boundaries]

    def to_dict(self) -> dict[str, float]:
        return dict(self.boundaries)


@dataclass(frozen=True, slots=True)
class MarkingScheme:
    id: int
    assessment_id: int
    name: str
    total_possible_score: float = 0.0
    is_active: bool = True
    passing_score: float | None = None
    grade_boundaries: GradeBoundaryTable = GradeBoundaryTable()
    feedback_templates: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class MarkingRule:
    id: int
    scheme_id: int
    question_id: int
    rule_type: str
    points: float
    criteria: Mapping[str, Any] = field(default_factory=dict)
    is_active: bool = True
    order: int = 0


@dataclass(frozen=True, slots=True)
class RuleOutcome:
    earned: float
    possible: float
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ScoreRecord:
    question_id: int
    response_id: int
    rule_id: int
    earned: float
    possible: float
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ResponseSession:
    id: int
    assessment_id: int
    user_id: int
    respondent_name: str
    state: SessionState = SessionState.DRAFT
    country_code: str | None = None
    total_score: float = 0.0
    max_possible_score: float = 0.0
    grade: str | None = None
    feedback: str | None = None


@dataclass(frozen=True, slots=True)
class MarkResult:
    session_id: int
    marked: bool
    total_score: float = 0.0
    max_possible: float = 0.0
    percentage: float = 0.0
    grade: str | None = None
    feedback: str = ""
    passed: bool | None = None
    scheme_id: int | None = None
    reason: str | None = None
    scores: tuple[ScoreRecord, ...] = ()

    @classmethod
    def not_marked(cls, session_id: int, reason: str) -> MarkResult:
        return cls(session_id=session_id, marked=False, reason=reason)


@dataclass(frozen=True, slots=True)
class ProgressCount:
    total: int = 0
    done: int = 0

    @property
    def percentage(self) -> float:
        return round(self.done / self.total * 100, 1) if self.total else 0.0


@dataclass(frozen=True, slots=True)
class CompletionStats:
    sections: ProgressCount
    questions: ProgressCount
    required: ProgressCount
    can_complete: bool

    @property
    def all_required_completed(self) -> bool:
        return self.required.total > 0 and self.required.done == self.required.total

    @property
    def is_fully_answered(self) -> bool:
        return self.questions.total > 0 and self.questions.done == self.questions.total

    def to_dict(self) -> dict[str, Any]:
        return {
            "sections": {
                "total": self.sections.total,
                "completed": self.sections.done,
                "percentage": self.sections.percentage,
            },
            "questions": {
                "total": self.questions.total,
                "answered": self.questions.done,
                "percentage": self.questions.percentage,
            },
            "required_questions": {
                "total": self.required.total,
                "answered": self.required.done,
                "percentage": self.required.percentage,
                "all_completed": self.all_required_completed,
            },
            "overall": {
                "can_complete": self.can_complete,
                "is_fully_answered": self.is_fully_answered,
            },
        }
