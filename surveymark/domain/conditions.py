"""
Visibility condition evaluation.

A condition is checked against the respondent's answer to its trigger
question. Anything that cannot be evaluated (no answer, unknown trigger kind
or operator, non-numeric input to a numeric comparison) counts as "condition
not met", so a broken condition hides its item rather than failing the page.

Authoring helpers at the bottom validate that a trigger question precedes
the item it controls, which keeps the dependency graph acyclic.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from ..infrastructure.exceptions import ConditionalRuleError
from ..infrastructure.logging import get_logger
from .models import (
    AssessmentStructure,
    ConditionalRule,
    ConditionOperator,
    LogicOperator,
    Question,
    Response,
    ResponseLookup,
    Section,
    TriggerKind,
)

logger = get_logger(__name__)


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _as_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def _option_selected(rule: ConditionalRule, response: Response) -> bool:
    selected = {str(option_id) for option_id in response.selected_option_ids}
    wanted = {v.strip() for v in rule.trigger_values}

    match rule.operator:
        case ConditionOperator.CONTAINS | ConditionOperator.ANY:
            return bool(selected & wanted)
        case ConditionOperator.EQUALS | ConditionOperator.EXACT:
            return selected == wanted
        case ConditionOperator.NOT_CONTAINS | ConditionOperator.NONE:
            return not (selected & wanted)
        case ConditionOperator.ALL:
            return wanted <= selected
        case _:
            logger.debug(f"Unknown option operator '{rule.operator}'")
            return False


def _value_equals(rule: ConditionalRule, response: Response) -> bool:
    raw = response.scalar()
    if raw is None or not rule.trigger_values:
        return False
    text = _as_text(raw)

    match rule.operator:
        case ConditionOperator.EQUALS:
            return text in rule.trigger_values
        case ConditionOperator.NOT_EQUALS:
            return text not in rule.trigger_values
        case ConditionOperator.CONTAINS:
            return any(v and v in text for v in rule.trigger_values)
        case ConditionOperator.GREATER_THAN | ConditionOperator.LESS_THAN:
            value, target = _as_number(raw), _as_number(rule.trigger_values[0])
            if value is None or target is None:
                return False
            if rule.operator == ConditionOperator.GREATER_THAN:
                return value > target
            return value < target
        case _:
            logger.debug(f"Unknown value operator '{rule.operator}'")
            return False


def _value_range(rule: ConditionalRule, response: Response) -> bool:
    if len(rule.trigger_values) < 2:
        return False
    value = _as_number(response.scalar())
    low, high = _as_number(rule.trigger_values[0]), _as_number(rule.trigger_values[1])
    if value is None or low is None or high is None:
        return False
    return low <= value <= high


def evaluate(rule: ConditionalRule, response: Response | None) -> bool:
    """True when ``response`` satisfies ``rule``; an absent response never does."""
    if response is None:
        return False

    match rule.trigger_kind:
        case TriggerKind.OPTION_SELECTED:
            return _option_selected(rule, response)
        case TriggerKind.VALUE_EQUALS:
            return _value_equals(rule, response)
        case TriggerKind.VALUE_RANGE:
            return _value_range(rule, response)
        case _:
            logger.debug(f"Unknown trigger kind '{rule.trigger_kind}'")
            return False


def evaluate_all(rules: Sequence[ConditionalRule], responses: ResponseLookup) -> bool:
    """Combine several conditions with the first rule's logic operator."""
    if not rules:
        return True
    results = (evaluate(rule, responses.get(rule.trigger_question_id)) for rule in rules)

    match rules[0].logic_operator:
        case LogicOperator.AND:
            return all(results)
        case LogicOperator.OR:
            return any(results)
        case _:
            return False


def describe(rule: ConditionalRule, trigger_text: str | None = None) -> str:
    subject = f"'{trigger_text}'" if trigger_text else f"question {rule.trigger_question_id}"
    values = ", ".join(rule.trigger_values)

    match rule.trigger_kind:
        case TriggerKind.OPTION_SELECTED:
            if rule.operator in (ConditionOperator.NOT_CONTAINS, ConditionOperator.NONE):
                return f"Shown when {subject} has none of options {values} selected"
            if rule.operator == ConditionOperator.ALL:
                return f"Shown when {subject} has all of options {values} selected"
            if rule.operator in (ConditionOperator.EQUALS, ConditionOperator.EXACT):
                return f"Shown when {subject} has exactly options {values} selected"
            return f"Shown when {subject} has any of options {values} selected"
        case TriggerKind.VALUE_EQUALS:
            verb = str(rule.operator).replace("_", " ")
            return f"Shown when {subject} {verb} {values}"
        case TriggerKind.VALUE_RANGE if len(rule.trigger_values) >= 2:
            low, high = rule.trigger_values[0], rule.trigger_values[1]
            return f"Shown when {subject} is between {low} and {high}"
        case _:
            return f"Shown when {subject} meets an unsupported condition"


# ---------------------------------------------------------------------------
# Authoring
# ---------------------------------------------------------------------------


def precedes(trigger: Question, target: Section | Question, structure: AssessmentStructure) -> bool:
    """True when ``trigger`` comes strictly before ``target`` in assessment order."""
    trigger_section = structure.section_of(trigger)
    if trigger_section is None:
        return False

    if isinstance(target, Section):
        return trigger_section.order < target.order

    if trigger.id == target.id:
        return False
    target_section = structure.section_of(target)
    if target_section is None:
        return False
    if trigger_section.id == target_section.id:
        return trigger.order < target.order
    return trigger_section.order < target_section.order


def validate_precedence(
    target: Section | Question, trigger_question_id: int, structure: AssessmentStructure
) -> Question:
    """Return the trigger question, or raise ``ConditionalRuleError`` for an illegal reference."""
    trigger = structure.question(trigger_question_id)
    if trigger is None:
        raise ConditionalRuleError(
            f"Trigger question {trigger_question_id} is not part of assessment {structure.id}",
            trigger_question_id,
        )
    if isinstance(target, Question) and trigger.id == target.id:
        raise ConditionalRuleError("A question cannot be conditional on itself", trigger.id)
    if isinstance(target, Section) and trigger.section_id == target.id:
        raise ConditionalRuleError(
            "A section cannot be conditional on one of its own questions", trigger.id
        )
    if not precedes(trigger, target, structure):
        raise ConditionalRuleError(
            "Trigger question must come before the item it controls", trigger.id
        )
    return trigger


def available_trigger_questions(
    target: Section | Question, structure: AssessmentStructure
) -> list[Question]:
    return [q for q in structure.questions() if precedes(q, target, structure)]


def dependency_graph(structure: AssessmentStructure) -> dict[str, list[dict[str, Any]]]:
    """Nodes for every section and question, edges from trigger question to controlled item."""
    nodes: list[dict[str, Any]] = []
    edges: list[dict[str, Any]] = []

    def add_edges(kind: str, item: Section | Question) -> None:
        for rule in item.conditions:
            edges.append(
                {
                    "from": f"question:{rule.trigger_question_id}",
                    "to": f"{kind}:{item.id}",
                    "trigger_kind": str(rule.trigger_kind),
                    "operator": str(rule.operator),
                    "values": list(rule.trigger_values),
                }
            )

    for section in structure.sections:
        nodes.append(
            {
                "id": f"section:{section.id}",
                "label": section.name,
                "conditional": section.is_conditional,
            }
        )
        add_edges("section", section)
        for question in sorted(section.questions, key=lambda q: (q.order, q.id)):
            nodes.append(
                {
                    "id": f"question:{question.id}",
                    "label": question.text,
                    "conditional": question.is_conditional,
                }
            )
            add_edges("question", question)

    return {"nodes": nodes, "edges": edges}


def conditional_summary(structure: AssessmentStructure) -> dict[str, Any]:
    questions = structure.questions()
    conditional_sections = [s for s in structure.sections if s.is_conditional]
    conditional_questions = [q for q in questions if q.is_conditional]
    triggers = {
        rule.trigger_question_id
        for item in [*conditional_sections, *conditional_questions]
        for rule in item.conditions
    }
    return {
        "total_sections": len(structure.sections),
        "conditional_sections": len(conditional_sections),
        "total_questions": len(questions),
        "conditional_questions": len(conditional_questions),
        "trigger_questions": sorted(triggers),
        "has_conditional_logic": bool(conditional_sections or conditional_questions),
    }
