"""
Pydantic schemas for input validation across the marking engine.

Authoring inputs (sections, questions, visibility conditions, schemes, rules)
and respondent inputs (sessions, responses) are validated here before they
reach the repositories. Rule criteria get one model per rule type so that a
rule's shape is checked when it is built rather than when it is evaluated.
"""

from __future__ import annotations

import re
from datetime import date, time
from html import unescape
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .models import (
    ConditionOperator,
    LogicOperator,
    QuestionType,
    RuleType,
    TriggerKind,
)


class BaseValidationSchema(BaseModel):
    """Base schema with common validation utilities."""

    model_config = ConfigDict(
        str_strip_whitespace=True, validate_assignment=True, use_enum_values=True
    )

    @field_validator("*", mode="before")
    def sanitize_strings(cls, v):
        """Strip markup and control characters from free-text authoring input."""
        if isinstance(v, str):
            cleaned = unescape(v.strip())
            cleaned = re.sub(
                r"<\s*script[^>]*>.*?<\s*/\s*script\s*>",
                "",
                cleaned,
                flags=re.IGNORECASE | re.DOTALL,
            )
            cleaned = re.sub(r"<[^>]+>", "", cleaned)
            cleaned = re.sub(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f-\x9f]", "", cleaned)
            return cleaned
        return v


def _clean_country_codes(v: list[str] | None) -> list[str]:
    codes = []
    for code in v or []:
        code = (code or "").strip().upper()
        if not code:
            continue
        if not re.fullmatch(r"[A-Z]{2}", code):
            raise ValueError(f"'{code}' is not an ISO 3166-1 alpha-2 country code")
        if code not in codes:
            codes.append(code)
    return codes


# ---------------------------------------------------------------------------
# Authoring: structure and visibility conditions
# ---------------------------------------------------------------------------

OPTION_OPERATORS = frozenset(
    {
        ConditionOperator.CONTAINS,
        ConditionOperator.ANY,
        ConditionOperator.EQUALS,
        ConditionOperator.EXACT,
        ConditionOperator.NOT_CONTAINS,
        ConditionOperator.NONE,
        ConditionOperator.ALL,
    }
)
VALUE_OPERATORS = frozenset(
    {
        ConditionOperator.EQUALS,
        ConditionOperator.NOT_EQUALS,
        ConditionOperator.CONTAINS,
        ConditionOperator.GREATER_THAN,
        ConditionOperator.LESS_THAN,
    }
)
OPERATORS_BY_KIND = {
    TriggerKind.OPTION_SELECTED: OPTION_OPERATORS,
    TriggerKind.VALUE_EQUALS: VALUE_OPERATORS,
    TriggerKind.VALUE_RANGE: frozenset({ConditionOperator.BETWEEN}),
}


class ConditionalRuleInput(BaseModel):
    """A visibility condition as submitted by an author."""

    trigger_question_id: int = Field(..., gt=0)
    trigger_kind: TriggerKind = Field(..., alias="trigger_response_type")
    trigger_values: list[str] = Field(..., min_length=1)
    operator: ConditionOperator
    logic_operator: LogicOperator = LogicOperator.AND

    model_config = ConfigDict(str_strip_whitespace=True, populate_by_name=True)

    @field_validator("trigger_values", mode="before")
    def stringify_values(cls, v):
        if isinstance(v, (str, int, float)):
            v = [v]
        return [str(item) for item in v or [] if item is not None and str(item).strip()]

    @model_validator(mode="after")
    def validate_operator_for_kind(self):
        allowed = OPERATORS_BY_KIND[self.trigger_kind]
        if self.operator not in allowed:
            raise ValueError(
                f"operator '{self.operator}' is not valid for {self.trigger_kind} triggers"
            )
        if self.trigger_kind == TriggerKind.VALUE_RANGE:
            if len(self.trigger_values) < 2:
                raise ValueError("value_range triggers need a minimum and a maximum value")
            try:
                low, high = float(self.trigger_values[0]), float(self.trigger_values[1])
            except ValueError:
                raise ValueError("value_range bounds must be numeric") from None
            if low > high:
                raise ValueError("value_range minimum cannot exceed maximum")
        if self.trigger_kind == TriggerKind.OPTION_SELECTED:
            if not all(v.isdigit() for v in self.trigger_values):
                raise ValueError("option_selected trigger values must be option ids")
        if self.operator in (ConditionOperator.GREATER_THAN, ConditionOperator.LESS_THAN):
            try:
                float(self.trigger_values[0])
            except ValueError:
                raise ValueError(f"'{self.operator}' needs a numeric trigger value") from None
        return self


class SectionInput(BaseValidationSchema):
    """Validation schema for sections."""

    assessment_id: int = Field(..., gt=0)
    name: str = Field(..., min_length=1, max_length=255)
    order: int = Field(..., gt=0)
    restricted_countries: list[str] = Field(default_factory=list)

    @field_validator("restricted_countries")
    def validate_countries(cls, v):
        return _clean_country_codes(v)


class QuestionInput(BaseValidationSchema):
    """Validation schema for questions."""

    section_id: int = Field(..., gt=0)
    text: str = Field(..., min_length=1, max_length=5000)
    question_type: QuestionType
    order: int = Field(..., gt=0)
    is_required: bool = False
    restricted_countries: list[str] = Field(default_factory=list)

    @field_validator("restricted_countries")
    def validate_countries(cls, v):
        return _clean_country_codes(v)


class OptionInput(BaseValidationSchema):
    question_id: int = Field(..., gt=0)
    text: str = Field(..., min_length=1, max_length=500)
    order: int = Field(0, ge=0)
    is_correct: bool = False
    points: float | None = Field(None, ge=0)


# ---------------------------------------------------------------------------
# Marking: rule criteria, one model per rule type
# ---------------------------------------------------------------------------


class CriteriaModel(BaseModel):
    """Criteria are stored as JSON; unknown keys are tolerated."""

    model_config = ConfigDict(extra="ignore", frozen=True)


class ExactMatchCriteria(CriteriaModel):
    expected_values: list[str] = Field(..., min_length=1)
    case_sensitive: bool = False
    trim_whitespace: bool = True

    @field_validator("expected_values", mode="before")
    def stringify(cls, v):
        if isinstance(v, (str, int, float)):
            v = [v]
        return [str(item) for item in v or []]


class OptionBasedCriteria(CriteriaModel):
    partial_credit: bool = True
    cap_at_points: bool = True
    minimum_score: float | None = Field(None, ge=0)


class RangeCriteria(CriteriaModel):
    min: float
    max: float
    tolerance: float = Field(0.0, ge=0)

    @model_validator(mode="after")
    def validate_bounds(self):
        if self.min > self.max:
            raise ValueError("min cannot exceed max")
        return self


class ToleranceCriteria(CriteriaModel):
    expected_value: float
    tolerance: float = Field(0.0, ge=0)


KeywordMethod = Literal["any", "all", "proportional"]


class KeywordCriteria(CriteriaModel):
    keywords: list[str] = Field(..., min_length=1)
    scoring_method: KeywordMethod | None = None
    case_sensitive: bool = False

    @field_validator("keywords")
    def drop_blank_keywords(cls, v):
        cleaned = [k.strip() for k in v if k and k.strip()]
        if not cleaned:
            raise ValueError("at least one non-blank keyword is required")
        return cleaned


class ContentCheck(CriteriaModel):
    type: Literal["word_count", "sentence_count", "paragraph_count", "keyword_presence"]
    min: int | None = Field(None, ge=0)
    max: int | None = Field(None, ge=0)
    keywords: list[str] = Field(default_factory=list)
    points: float = Field(1.0, gt=0)

    @model_validator(mode="after")
    def validate_check(self):
        if self.type == "keyword_presence" and not self.keywords:
            raise ValueError("keyword_presence checks need keywords")
        if self.min is not None and self.max is not None and self.min > self.max:
            raise ValueError("min cannot exceed max")
        return self


class ContentAnalysisCriteria(CriteriaModel):
    content_analysis_rules: list[ContentCheck] = Field(..., min_length=1)
    policy: Literal["weighted", "all_or_nothing"] = "weighted"


class PartialMatchCriteria(CriteriaModel):
    expected_values: list[str] = Field(..., min_length=1)
    partial_match_threshold: float = Field(0.7, ge=0, le=1)
    scoring_method: Literal["full", "proportional"] = "full"


class StepInterval(CriteriaModel):
    min: float
    max: float
    points: float | None = Field(None, ge=0)


class StepBasedCriteria(CriteriaModel):
    step_intervals: list[StepInterval] = Field(..., min_length=1)


class DateRangeCriteria(CriteriaModel):
    start_date: date
    end_date: date

    @model_validator(mode="after")
    def validate_dates(self):
        if self.start_date > self.end_date:
            raise ValueError("start_date cannot be after end_date")
        return self


class FormatBasedCriteria(CriteriaModel):
    format: Literal["email", "url", "phone", "pattern"] = "pattern"
    format_pattern: str | None = None

    @model_validator(mode="after")
    def validate_pattern(self):
        if self.format == "pattern":
            if not self.format_pattern:
                raise ValueError("format_pattern is required for pattern formats")
            try:
                re.compile(self.format_pattern)
            except re.error as e:
                raise ValueError(f"format_pattern is not a valid regular expression: {e}") from e
        return self


class FileCriteria(CriteriaModel):
    allowed_types: list[str] | None = None
    max_size: int | None = Field(None, gt=0)


class FileBasedCriteria(CriteriaModel):
    file_criteria: FileCriteria = Field(default_factory=FileCriteria)


class SizeBasedCriteria(CriteriaModel):
    max_size: int = Field(..., gt=0)


class TypeBasedCriteria(CriteriaModel):
    allowed_types: list[str] = Field(..., min_length=1)


class TimeBasedCriteria(CriteriaModel):
    """``time_tolerance`` is in seconds either side of ``expected_time``."""

    expected_time: time
    time_tolerance: float = Field(0.0, ge=0)


class OverlapCriteria(DateRangeCriteria):
    scoring_method: Literal["full", "proportional"] = "full"


class StrengthRequirements(CriteriaModel):
    min_length: int = Field(8, ge=1)


class StrengthCriteria(CriteriaModel):
    strength_criteria: StrengthRequirements = Field(default_factory=StrengthRequirements)


CRITERIA_MODELS: dict[RuleType, type[CriteriaModel]] = {
    RuleType.EXACT_MATCH: ExactMatchCriteria,
    RuleType.OPTION_BASED: OptionBasedCriteria,
    RuleType.RANGE_BASED: RangeCriteria,
    RuleType.TOLERANCE_BASED: ToleranceCriteria,
    RuleType.KEYWORD_BASED: KeywordCriteria,
    RuleType.CONTENT_ANALYSIS: ContentAnalysisCriteria,
    RuleType.PARTIAL_MATCH: PartialMatchCriteria,
    RuleType.STEP_BASED: StepBasedCriteria,
    RuleType.DATE_RANGE_BASED: DateRangeCriteria,
    RuleType.FORMAT_BASED: FormatBasedCriteria,
    RuleType.FILE_BASED: FileBasedCriteria,
    RuleType.TIME_BASED: TimeBasedCriteria,
    RuleType.OVERLAP_BASED: OverlapCriteria,
    RuleType.STRENGTH_BASED: StrengthCriteria,
    RuleType.SIZE_BASED: SizeBasedCriteria,
    RuleType.TYPE_BASED: TypeBasedCriteria,
}


def parse_criteria(rule_type: RuleType, raw: dict[str, Any] | None) -> CriteriaModel:
    """Validate stored criteria for ``rule_type``; raises pydantic ``ValidationError``."""
    return CRITERIA_MODELS[rule_type].model_validate(raw or {})


RULE_TYPES_BY_QUESTION_TYPE: dict[QuestionType, tuple[RuleType, ...]] = {
    QuestionType.MULTIPLE_CHOICE: (RuleType.OPTION_BASED,),
    QuestionType.RADIO: (RuleType.OPTION_BASED,),
    QuestionType.BOOLEAN: (RuleType.OPTION_BASED, RuleType.EXACT_MATCH),
    QuestionType.RICHTEXT: (
        RuleType.EXACT_MATCH,
        RuleType.KEYWORD_BASED,
        RuleType.CONTENT_ANALYSIS,
        RuleType.PARTIAL_MATCH,
        RuleType.FORMAT_BASED,
        RuleType.STRENGTH_BASED,
    ),
    QuestionType.DATE: (
        RuleType.EXACT_MATCH,
        RuleType.DATE_RANGE_BASED,
        RuleType.OVERLAP_BASED,
        RuleType.TIME_BASED,
    ),
    QuestionType.RANGE: (
        RuleType.EXACT_MATCH,
        RuleType.RANGE_BASED,
        RuleType.TOLERANCE_BASED,
        RuleType.STEP_BASED,
    ),
    QuestionType.FILE_UPLOAD: (RuleType.FILE_BASED, RuleType.SIZE_BASED, RuleType.TYPE_BASED),
}


def available_rule_types(question_type: QuestionType | str) -> tuple[RuleType, ...]:
    return RULE_TYPES_BY_QUESTION_TYPE.get(QuestionType(question_type), ())


class MarkingRuleInput(BaseModel):
    """A marking rule with criteria checked against its rule type."""

    scheme_id: int = Field(..., gt=0)
    question_id: int = Field(..., gt=0)
    rule_type: RuleType
    points: float = Field(..., ge=0)
    criteria: dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True
    order: int = Field(0, ge=0)

    @model_validator(mode="after")
    def validate_criteria(self):
        try:
            criteria = parse_criteria(self.rule_type, self.criteria)
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(x) for x in err['loc']) or 'criteria'}: {err['msg']}"
                for err in e.errors()
            )
            raise ValueError(f"invalid criteria for {self.rule_type}: {problems}") from None
        minimum = getattr(criteria, "minimum_score", None)
        if minimum is not None and minimum > self.points:
            raise ValueError("minimum_score cannot exceed the rule's points")
        return self


DEFAULT_GRADE = "F"


class SchemeSettingsInput(BaseModel):
    """Passing score, grade boundaries and feedback templates of a scheme."""

    passing_score: float | None = Field(None, ge=0)
    grade_boundaries: dict[str, float] = Field(default_factory=dict)
    feedback_templates: dict[str, str] = Field(default_factory=dict)

    @field_validator("grade_boundaries")
    def validate_boundaries(cls, v):
        for label, threshold in v.items():
            if not label or not label.strip():
                raise ValueError("grade labels cannot be blank")
            if not 0 <= threshold <= 100:
                raise ValueError(f"boundary for grade '{label}' must be between 0 and 100")
        return v

    @model_validator(mode="after")
    def validate_templates(self):
        known = set(self.grade_boundaries) | {DEFAULT_GRADE}
        unknown = [grade for grade in self.feedback_templates if grade not in known]
        if self.grade_boundaries and unknown:
            raise ValueError(f"feedback templates for unknown grades: {', '.join(sorted(unknown))}")
        return self


class MarkingSchemeInput(BaseValidationSchema):
    assessment_id: int = Field(..., gt=0)
    name: str = Field(..., min_length=1, max_length=255)
    description: str | None = Field(None, max_length=10000)
    total_possible_score: float = Field(0.0, ge=0)
    is_active: bool = True


# ---------------------------------------------------------------------------
# Respondent input
# ---------------------------------------------------------------------------


class SessionCreationInput(BaseValidationSchema):
    """Validation schema for creating response sessions."""

    assessment_id: int = Field(..., gt=0)
    user_id: int = Field(..., gt=0)
    respondent_name: str = Field(..., min_length=2, max_length=100)
    country_code: str | None = Field(None)

    @field_validator("respondent_name")
    def validate_respondent_name(cls, v):
        if not v or not v.strip():
            raise ValueError("Respondent name cannot be empty")
        if re.search(r'[<>"\\]', v):
            raise ValueError("Respondent name contains invalid characters")
        return v.strip()

    @field_validator("country_code")
    def validate_country_code(cls, v):
        if v is None or not v.strip():
            return None
        return _clean_country_codes([v])[0]


class ResponseInput(BaseModel):
    """A respondent's answer: a value payload, selected options, or both."""

    session_id: int = Field(..., gt=0)
    question_id: int = Field(..., gt=0)
    value: dict[str, Any] | None = None
    option_ids: list[int] = Field(default_factory=list)

    @field_validator("option_ids")
    def validate_option_ids(cls, v):
        if any(i <= 0 for i in v):
            raise ValueError("option ids must be positive")
        if len(set(v)) != len(v):
            raise ValueError("option ids must be unique")
        return v

    @model_validator(mode="after")
    def validate_has_content(self):
        if self.value is None and not self.option_ids:
            raise ValueError("a response needs a value or at least one selected option")
        return self


class BatchMarkingInput(BaseModel):
    session_ids: list[int] = Field(..., min_length=1)
    scheme_id: int | None = Field(None, gt=0)

    @field_validator("session_ids")
    def validate_session_ids(cls, v):
        if any(i <= 0 for i in v):
            raise ValueError("session ids must be positive")
        return list(dict.fromkeys(v))


# ---------------------------------------------------------------------------
# Structured validation results
# ---------------------------------------------------------------------------


class ValidationErrorDetail(BaseModel):
    """Schema for validation error details."""

    field: str
    message: str
    value: Any = None


class ValidationResponse(BaseModel):
    """Schema for validation responses."""

    success: bool
    errors: list[ValidationErrorDetail] = []
    data: dict[str, Any] | None = None


def validate_input(schema_class: type[BaseModel], data: dict[str, Any]) -> ValidationResponse:
    """
    Validate ``data`` against ``schema_class`` and return a structured result.

    Example:
        >>> result = validate_input(ResponseInput, {"session_id": 1, "question_id": 2})
        >>> result.success
        False
    """
    try:
        validated = schema_class(**data)
        return ValidationResponse(success=True, data=validated.model_dump())
    except ValidationError as e:
        errors = [
            ValidationErrorDetail(
                field=".".join(str(x) for x in error["loc"]) or "general",
                message=error["msg"],
                value=error.get("input"),
            )
            for error in e.errors()
        ]
        return ValidationResponse(success=False, errors=errors)
