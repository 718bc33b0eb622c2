"""
Marking rule evaluation.

``RuleEvaluator.evaluate`` turns one rule and one response into a
``RuleOutcome`` (earned, possible, details). It never raises: malformed
criteria, unparseable answers and unknown rule types all score zero with the
problem recorded in ``details`` so one bad rule cannot abort a marking run.

Keyword and content-analysis scoring curves are strategies so an
installation can swap the rubric without touching dispatch.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date, time
from typing import Any, Protocol

from pydantic import ValidationError

from ..infrastructure.logging import get_logger
from .models import MarkingRule, Question, Response, RuleOutcome, RuleType
from .schemas import (
    ContentAnalysisCriteria,
    ContentCheck,
    DateRangeCriteria,
    ExactMatchCriteria,
    FileBasedCriteria,
    FormatBasedCriteria,
    KeywordCriteria,
    OptionBasedCriteria,
    OverlapCriteria,
    PartialMatchCriteria,
    RangeCriteria,
    SizeBasedCriteria,
    StepBasedCriteria,
    StrengthCriteria,
    TimeBasedCriteria,
    ToleranceCriteria,
    TypeBasedCriteria,
    parse_criteria,
)

logger = get_logger(__name__)

EMAIL_PATTERN = re.compile(r"[A-Za-z0-9.!#$%&'*+/=?^_`{|}~-]+@[A-Za-z0-9-]+(\.[A-Za-z0-9-]+)+")
URL_PATTERN = re.compile(r"https?://[^\s/$.?#][^\s]*", re.IGNORECASE)
PHONE_PATTERN = re.compile(r"[\d\s\-+()]+")


# ---------------------------------------------------------------------------
# Scoring strategies
# ---------------------------------------------------------------------------


class KeywordScoringPolicy(Protocol):
    def score(self, matched: int, total: int, points: float, method: str) -> float: ...


class DefaultKeywordPolicy:
    """``proportional`` scales by matched/total; ``all`` needs every keyword; ``any`` needs one."""

    def score(self, matched: int, total: int, points: float, method: str) -> float:
        if total == 0:
            return 0.0
        if method == "proportional":
            return round(matched / total * points, 2)
        if method == "all":
            return points if matched == total else 0.0
        return points if matched > 0 else 0.0


@dataclass(frozen=True, slots=True)
class CheckResult:
    check: ContentCheck
    measured: int
    met: bool


class ContentAnalysisPolicy(Protocol):
    def score(self, results: list[CheckResult], points: float) -> float: ...


class WeightedContentPolicy:
    """Earn the share of rule points matching the weight of the checks that passed."""

    def score(self, results: list[CheckResult], points: float) -> float:
        total = sum(r.check.points for r in results)
        if total <= 0:
            return 0.0
        met = sum(r.check.points for r in results if r.met)
        return round(points * met / total, 2)


class AllOrNothingContentPolicy:
    def score(self, results: list[CheckResult], points: float) -> float:
        return points if results and all(r.met for r in results) else 0.0


DEFAULT_CONTENT_POLICIES: dict[str, ContentAnalysisPolicy] = {
    "weighted": WeightedContentPolicy(),
    "all_or_nothing": AllOrNothingContentPolicy(),
}


# ---------------------------------------------------------------------------
# Value extraction
# ---------------------------------------------------------------------------


def _number(response: Response) -> float | None:
    value = response.value
    raw = None
    if isinstance(value, Mapping):
        for key in ("number", "rating", "value"):
            if value.get(key) is not None:
                raw = value[key]
                break
    else:
        raw = value
    if raw is None or isinstance(raw, bool):
        return None
    return float(raw)


def _date(response: Response) -> date | None:
    value = response.value
    raw = value.get("date") if isinstance(value, Mapping) else value
    if raw is None:
        return None
    if isinstance(raw, date):
        return raw
    return date.fromisoformat(str(raw)[:10])


def _file(response: Response) -> Mapping[str, Any] | None:
    value = response.value
    if not isinstance(value, Mapping):
        return None
    nested = value.get("file")
    return nested if isinstance(nested, Mapping) else value


def _time(response: Response) -> time | None:
    value = response.value
    raw = value.get("time") if isinstance(value, Mapping) else value
    if raw is None:
        return None
    if isinstance(raw, time):
        return raw
    return time.fromisoformat(str(raw).strip())


def _seconds(t: time) -> float:
    return t.hour * 3600 + t.minute * 60 + t.second + t.microsecond / 1_000_000


def _date_span(response: Response) -> tuple[date, date] | None:
    value = response.value
    if not isinstance(value, Mapping):
        return None
    start, end = value.get("start_date"), value.get("end_date")
    if not start or not end:
        return None
    return date.fromisoformat(str(start)[:10]), date.fromisoformat(str(end)[:10])


def _similarity(a: str, b: str) -> float:
    words_a = set(w for w in re.split(r"\W+", a.lower()) if w)
    words_b = set(w for w in re.split(r"\W+", b.lower()) if w)
    union = words_a | words_b
    return len(words_a & words_b) / len(union) if union else 0.0


def _in_bounds(measured: int, check: ContentCheck) -> bool:
    if check.min is not None and measured < check.min:
        return False
    if check.max is not None and measured > check.max:
        return False
    return True


# ---------------------------------------------------------------------------
# Evaluator
# ---------------------------------------------------------------------------


class RuleEvaluator:
    """
    Evaluates a marking rule against a response.

    Example:
        >>> evaluator = RuleEvaluator()
        >>> outcome = evaluator.evaluate(rule, response, question)
        >>> outcome.earned, outcome.possible
        (5.0, 5.0)
    """

    def __init__(
        self,
        keyword_policy: KeywordScoringPolicy | None = None,
        content_policies: Mapping[str, ContentAnalysisPolicy] | None = None,
        default_keyword_method: str = "any",
    ):
        self.keyword_policy = keyword_policy or DefaultKeywordPolicy()
        self.content_policies = dict(content_policies or DEFAULT_CONTENT_POLICIES)
        self.default_keyword_method = default_keyword_method

    def evaluate(
        self, rule: MarkingRule, response: Response, question: Question | None = None
    ) -> RuleOutcome:
        points = max(float(rule.points or 0), 0.0)
        base = {"rule_id": rule.id, "rule_type": str(rule.rule_type)}

        try:
            rule_type = RuleType(rule.rule_type)
        except ValueError:
            logger.warning(f"Unsupported rule type '{rule.rule_type}' on rule {rule.id}")
            return RuleOutcome(0.0, points, {**base, "anomaly": "unsupported rule type"})

        try:
            criteria = parse_criteria(rule_type, dict(rule.criteria or {}))
        except ValidationError as e:
            logger.warning(f"Malformed criteria on rule {rule.id}: {e.error_count()} error(s)")
            return RuleOutcome(0.0, points, {**base, "anomaly": "malformed criteria"})

        try:
            earned, details = self._dispatch(rule_type, criteria, points, response, question)
        except (TypeError, ValueError, ArithmeticError, re.error) as e:
            logger.warning(f"Could not evaluate rule {rule.id} against response {response.id}: {e}")
            return RuleOutcome(0.0, points, {**base, "anomaly": "unparseable response value"})

        return RuleOutcome(round(max(earned, 0.0), 2), points, {**base, **details})

    def _dispatch(
        self,
        rule_type: RuleType,
        criteria: Any,
        points: float,
        response: Response,
        question: Question | None,
    ) -> tuple[float, dict[str, Any]]:
        match rule_type:
            case RuleType.EXACT_MATCH:
                return self._exact_match(criteria, points, response)
            case RuleType.OPTION_BASED:
                return self._option_based(criteria, points, response, question)
            case RuleType.RANGE_BASED:
                return self._range_based(criteria, points, response)
            case RuleType.TOLERANCE_BASED:
                return self._tolerance_based(criteria, points, response)
            case RuleType.KEYWORD_BASED:
                return self._keyword_based(criteria, points, response)
            case RuleType.CONTENT_ANALYSIS:
                return self._content_analysis(criteria, points, response)
            case RuleType.PARTIAL_MATCH:
                return self._partial_match(criteria, points, response)
            case RuleType.STEP_BASED:
                return self._step_based(criteria, points, response)
            case RuleType.DATE_RANGE_BASED:
                return self._date_range(criteria, points, response)
            case RuleType.FORMAT_BASED:
                return self._format_based(criteria, points, response)
            case RuleType.FILE_BASED:
                return self._file_based(criteria, points, response)
            case RuleType.SIZE_BASED:
                return self._size_based(criteria, points, response)
            case RuleType.TYPE_BASED:
                return self._type_based(criteria, points, response)
            case RuleType.TIME_BASED:
                return self._time_based(criteria, points, response)
            case RuleType.OVERLAP_BASED:
                return self._overlap_based(criteria, points, response)
            case RuleType.STRENGTH_BASED:
                return self._strength_based(criteria, points, response)

    # -------- Text rules --------

    def _exact_match(
        self, criteria: ExactMatchCriteria, points: float, response: Response
    ) -> tuple[float, dict[str, Any]]:
        text = response.text()
        if text is None:
            return 0.0, {"matched": False, "reason": "no value"}

        def normalise(value: str) -> str:
            if criteria.trim_whitespace:
                value = value.strip()
            return value if criteria.case_sensitive else value.casefold()

        answer = normalise(text)
        matched = any(normalise(expected) == answer for expected in criteria.expected_values)
        return (points if matched else 0.0), {"matched": matched}

    def _partial_match(
        self, criteria: PartialMatchCriteria, points: float, response: Response
    ) -> tuple[float, dict[str, Any]]:
        text = response.text()
        if text is None:
            return 0.0, {"similarity": 0.0}
        similarity = max(_similarity(text, phrase) for phrase in criteria.expected_values)
        details = {"similarity": round(similarity, 3)}
        if similarity < criteria.partial_match_threshold:
            return 0.0, details
        if criteria.scoring_method == "proportional":
            return round(similarity * points, 2), details
        return points, details

    def _keyword_based(
        self, criteria: KeywordCriteria, points: float, response: Response
    ) -> tuple[float, dict[str, Any]]:
        text = response.text() or ""
        haystack = text if criteria.case_sensitive else text.casefold()
        matched = [
            k
            for k in criteria.keywords
            if (k if criteria.case_sensitive else k.casefold()) in haystack
        ]
        method = criteria.scoring_method or self.default_keyword_method
        earned = self.keyword_policy.score(len(matched), len(criteria.keywords), points, method)
        return earned, {
            "matched_keywords": matched,
            "total_keywords": len(criteria.keywords),
            "scoring_method": method,
        }

    def _content_analysis(
        self, criteria: ContentAnalysisCriteria, points: float, response: Response
    ) -> tuple[float, dict[str, Any]]:
        text = response.text() or ""
        results = []
        for check in criteria.content_analysis_rules:
            match check.type:
                case "word_count":
                    measured = len(text.split())
                case "sentence_count":
                    measured = len([s for s in re.split(r"[.!?]+", text) if s.strip()])
                case "paragraph_count":
                    measured = len([p for p in re.split(r"\n\s*\n", text) if p.strip()])
                case "keyword_presence":
                    lowered = text.casefold()
                    measured = sum(1 for k in check.keywords if k.casefold() in lowered)
            if check.type == "keyword_presence" and check.min is None and check.max is None:
                met = measured > 0
            else:
                met = _in_bounds(measured, check)
            results.append(CheckResult(check, measured, met))

        policy = self.content_policies.get(criteria.policy, WeightedContentPolicy())
        earned = policy.score(results, points)
        return earned, {
            "policy": criteria.policy,
            "checks": [
                {"type": r.check.type, "measured": r.measured, "met": r.met} for r in results
            ],
        }

    def _format_based(
        self, criteria: FormatBasedCriteria, points: float, response: Response
    ) -> tuple[float, dict[str, Any]]:
        text = (response.text() or "").strip()
        if not text:
            return 0.0, {"matched": False}
        match criteria.format:
            case "email":
                pattern = EMAIL_PATTERN
            case "url":
                pattern = URL_PATTERN
            case "phone":
                pattern = PHONE_PATTERN
            case _:
                pattern = re.compile(criteria.format_pattern)
        matched = pattern.fullmatch(text) is not None
        return (points if matched else 0.0), {"matched": matched, "format": criteria.format}

    # -------- Choice rules --------

    def _option_based(
        self,
        criteria: OptionBasedCriteria,
        points: float,
        response: Response,
        question: Question | None,
    ) -> tuple[float, dict[str, Any]]:
        options = {o.id: o for o in (question.options if question else ())}
        correct = {o.id for o in options.values() if o.is_correct}
        selected = set(response.selected_option_ids)
        details: dict[str, Any] = {
            "selected": sorted(selected),
            "correct": sorted(correct),
        }

        if not criteria.partial_credit:
            exact = bool(correct) and selected == correct
            return (points if exact else 0.0), {**details, "exact": exact}

        earned = 0.0
        for option_id in selected & correct:
            option = options[option_id]
            earned += option.points if option.points is not None else points
        if criteria.minimum_score is not None:
            earned = max(earned, criteria.minimum_score)
        # the floor never lifts a question above its possible points
        if criteria.cap_at_points:
            earned = min(earned, points)
        return earned, details

    # -------- Numeric and date rules --------

    def _range_based(
        self, criteria: RangeCriteria, points: float, response: Response
    ) -> tuple[float, dict[str, Any]]:
        value = _number(response)
        if value is None:
            return 0.0, {"in_range": False}
        inside = criteria.min - criteria.tolerance <= value <= criteria.max + criteria.tolerance
        return (points if inside else 0.0), {"value": value, "in_range": inside}

    def _tolerance_based(
        self, criteria: ToleranceCriteria, points: float, response: Response
    ) -> tuple[float, dict[str, Any]]:
        value = _number(response)
        if value is None:
            return 0.0, {"within_tolerance": False}
        difference = abs(value - criteria.expected_value)
        within = difference <= criteria.tolerance
        return (points if within else 0.0), {
            "value": value,
            "difference": round(difference, 6),
            "within_tolerance": within,
        }

    def _step_based(
        self, criteria: StepBasedCriteria, points: float, response: Response
    ) -> tuple[float, dict[str, Any]]:
        value = _number(response)
        if value is None:
            return 0.0, {"interval": None}
        for index, interval in enumerate(criteria.step_intervals):
            if interval.min <= value <= interval.max:
                awarded = interval.points if interval.points is not None else points
                return min(awarded, points), {"value": value, "interval": index}
        return 0.0, {"value": value, "interval": None}

    def _date_range(
        self, criteria: DateRangeCriteria, points: float, response: Response
    ) -> tuple[float, dict[str, Any]]:
        answered = _date(response)
        if answered is None:
            return 0.0, {"in_range": False}
        inside = criteria.start_date <= answered <= criteria.end_date
        return (points if inside else 0.0), {"date": answered.isoformat(), "in_range": inside}

    def _time_based(
        self, criteria: TimeBasedCriteria, points: float, response: Response
    ) -> tuple[float, dict[str, Any]]:
        answered = _time(response)
        if answered is None:
            return 0.0, {"within_tolerance": False}
        difference = abs(_seconds(answered) - _seconds(criteria.expected_time))
        within = difference <= criteria.time_tolerance
        return (points if within else 0.0), {
            "time": answered.isoformat(),
            "difference_seconds": round(difference, 3),
            "within_tolerance": within,
        }

    def _overlap_based(
        self, criteria: OverlapCriteria, points: float, response: Response
    ) -> tuple[float, dict[str, Any]]:
        span = _date_span(response)
        if span is None:
            return 0.0, {"overlap_days": None}
        start = max(span[0], criteria.start_date)
        end = min(span[1], criteria.end_date)
        if start > end:
            return 0.0, {"overlap_days": None}
        overlap_days = (end - start).days
        expected_days = (criteria.end_date - criteria.start_date).days
        details = {"overlap_days": overlap_days, "expected_days": expected_days}
        if criteria.scoring_method == "proportional" and expected_days > 0:
            return round(overlap_days / expected_days * points, 2), details
        return points, details

    # -------- Text strength --------

    def _strength_based(
        self, criteria: StrengthCriteria, points: float, response: Response
    ) -> tuple[float, dict[str, Any]]:
        text = response.text()
        if text is None:
            return 0.0, {"checks_met": []}
        checks = {
            "length": len(text) >= criteria.strength_criteria.min_length,
            "uppercase": re.search(r"[A-Z]", text) is not None,
            "lowercase": re.search(r"[a-z]", text) is not None,
            "digit": re.search(r"\d", text) is not None,
        }
        met = [name for name, passed in checks.items() if passed]
        return round(points * len(met) / len(checks), 2), {"checks_met": met}

    # -------- File rules --------

    def _file_based(
        self, criteria: FileBasedCriteria, points: float, response: Response
    ) -> tuple[float, dict[str, Any]]:
        metadata = _file(response)
        if not metadata:
            return 0.0, {"accepted": False, "reason": "no file"}
        limits = criteria.file_criteria
        if limits.allowed_types and metadata.get("content_type") not in limits.allowed_types:
            return 0.0, {"accepted": False, "reason": "file type not allowed"}
        if limits.max_size is not None and int(metadata.get("size") or 0) > limits.max_size:
            return 0.0, {"accepted": False, "reason": "file too large"}
        return points, {"accepted": True}

    def _size_based(
        self, criteria: SizeBasedCriteria, points: float, response: Response
    ) -> tuple[float, dict[str, Any]]:
        metadata = _file(response)
        if not metadata or metadata.get("size") is None:
            return 0.0, {"accepted": False, "reason": "no file size"}
        accepted = int(metadata["size"]) <= criteria.max_size
        return (points if accepted else 0.0), {"accepted": accepted}

    def _type_based(
        self, criteria: TypeBasedCriteria, points: float, response: Response
    ) -> tuple[float, dict[str, Any]]:
        metadata = _file(response)
        if not metadata:
            return 0.0, {"accepted": False, "reason": "no file"}
        accepted = metadata.get("content_type") in criteria.allowed_types
        return (points if accepted else 0.0), {"accepted": accepted}
