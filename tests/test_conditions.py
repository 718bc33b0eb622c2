import pytest

from surveymark.domain import conditions
from surveymark.domain.models import (
    AssessmentStructure,
    ConditionalRule,
    Question,
    QuestionType,
    Response,
    ResponseMap,
    Section,
)
from surveymark.infrastructure.exceptions import ConditionalRuleError


def rule(kind, operator, *values, trigger=1, logic="and"):
    return ConditionalRule(
        trigger_question_id=trigger,
        trigger_kind=kind,
        trigger_values=tuple(str(v) for v in values),
        operator=operator,
        logic_operator=logic,
    )


def selected(*option_ids, question_id=1):
    return Response(id=1, session_id=1, question_id=question_id, selected_option_ids=frozenset(option_ids))


def valued(value, question_id=1):
    return Response(id=1, session_id=1, question_id=question_id, value=value)


class TestOptionSelected:
    @pytest.mark.parametrize(
        "operator,chosen,expected",
        [
            ("contains", (3,), True),
            ("any", (4, 9), True),
            ("contains", (9,), False),
            ("equals", (3, 4), True),
            ("exact", (3,), False),
            ("not_contains", (9,), True),
            ("none", (3, 9), False),
            ("all", (3, 4, 9), True),
            ("all", (3,), False),
        ],
    )
    def test_operators(self, operator, chosen, expected):
        assert conditions.evaluate(rule("option_selected", operator, 3, 4), selected(*chosen)) is expected

    def test_missing_response_never_matches(self):
        assert conditions.evaluate(rule("option_selected", "not_contains", 3), None) is False

    def test_unknown_operator_fails_closed(self):
        assert conditions.evaluate(rule("option_selected", "between", 3), selected(3)) is False


class TestValueEquals:
    def test_equals_uses_value_key_first(self):
        response = valued({"value": "Yes", "text": "No"})
        assert conditions.evaluate(rule("value_equals", "equals", "Yes"), response)

    def test_falls_back_through_text_number_date(self):
        assert conditions.evaluate(rule("value_equals", "equals", "hello"), valued({"text": "hello"}))
        assert conditions.evaluate(rule("value_equals", "equals", "7"), valued({"number": 7.0}))
        assert conditions.evaluate(
            rule("value_equals", "equals", "2024-01-31"), valued({"date": "2024-01-31"})
        )

    def test_booleans_compare_as_lowercase_words(self):
        assert conditions.evaluate(rule("value_equals", "equals", "true"), valued({"value": True}))

    def test_not_equals_and_contains(self):
        response = valued({"text": "remote first"})
        assert conditions.evaluate(rule("value_equals", "not_equals", "office"), response)
        assert conditions.evaluate(rule("value_equals", "contains", "remote"), response)
        assert not conditions.evaluate(rule("value_equals", "contains", "hybrid"), response)

    def test_numeric_comparisons_use_first_value(self):
        response = valued({"number": 10})
        assert conditions.evaluate(rule("value_equals", "greater_than", 5, 50), response)
        assert not conditions.evaluate(rule("value_equals", "less_than", 5), response)

    def test_unparseable_number_fails_closed(self):
        assert not conditions.evaluate(rule("value_equals", "greater_than", 5), valued({"text": "lots"}))
        assert not conditions.evaluate(rule("value_equals", "greater_than", "many"), valued({"number": 3}))

    def test_empty_payload_never_matches(self):
        assert not conditions.evaluate(rule("value_equals", "not_equals", "x"), valued({}))


class TestValueRange:
    @pytest.mark.parametrize("value,expected", [(0, True), (2, True), (1.5, True), (3, False), (-1, False)])
    def test_inclusive_bounds(self, value, expected):
        assert conditions.evaluate(rule("value_range", "between", 0, 2), valued({"number": value})) is expected

    def test_needs_two_bounds(self):
        assert not conditions.evaluate(rule("value_range", "between", 0), valued({"number": 0}))

    def test_non_numeric_value_fails_closed(self):
        assert not conditions.evaluate(rule("value_range", "between", 0, 2), valued({"text": "one"}))


def test_unknown_trigger_kind_fails_closed():
    assert not conditions.evaluate(rule("file_uploaded", "contains", 1), selected(1))


class TestEvaluateAll:
    def test_empty_rules_are_satisfied(self):
        assert conditions.evaluate_all((), ResponseMap())

    def test_and_requires_every_rule(self):
        responses = ResponseMap([selected(3, question_id=1), valued({"number": 1}, question_id=2)])
        rules = (
            rule("option_selected", "contains", 3, trigger=1),
            rule("value_range", "between", 5, 9, trigger=2),
        )
        assert not conditions.evaluate_all(rules, responses)

    def test_or_uses_first_rules_operator(self):
        responses = ResponseMap([selected(3, question_id=1)])
        rules = (
            rule("option_selected", "contains", 9, trigger=1, logic="or"),
            rule("option_selected", "contains", 3, trigger=1),
        )
        assert conditions.evaluate_all(rules, responses)

    def test_dangling_trigger_is_not_met(self):
        assert not conditions.evaluate_all((rule("option_selected", "none", 3, trigger=99),), ResponseMap())


def test_describe():
    assert (
        conditions.describe(rule("option_selected", "contains", 3), "Manager?")
        == "Shown when 'Manager?' has any of options 3 selected"
    )
    assert (
        conditions.describe(rule("value_range", "between", 0, 2))
        == "Shown when question 1 is between 0 and 2"
    )
    assert "not equals" in conditions.describe(rule("value_equals", "not_equals", "x"))


def structure():
    def q(id_, section_id, order):
        return Question(id=id_, section_id=section_id, question_type=QuestionType.RICHTEXT, order=order)

    return AssessmentStructure(
        id=1,
        sections=(
            Section(id=10, assessment_id=1, order=1, questions=(q(1, 10, 1), q(2, 10, 2))),
            Section(id=20, assessment_id=1, order=2, questions=(q(3, 20, 1),)),
        ),
    )


class TestPrecedence:
    def test_earlier_question_in_same_section_is_allowed(self):
        st = structure()
        assert conditions.validate_precedence(st.question(2), 1, st).id == 1

    def test_question_in_earlier_section_is_allowed(self):
        st = structure()
        assert conditions.validate_precedence(st.question(3), 2, st).id == 2
        assert conditions.validate_precedence(st.section(20), 1, st).id == 1

    @pytest.mark.parametrize(
        "target,trigger",
        [
            (("question", 1), 2),  # forward reference
            (("question", 2), 2),  # self reference
            (("section", 10), 1),  # own question
            (("question", 1), 99),  # missing trigger
            (("section", 10), 3),  # later section
        ],
    )
    def test_illegal_references(self, target, trigger):
        st = structure()
        kind, target_id = target
        item = st.section(target_id) if kind == "section" else st.question(target_id)
        with pytest.raises(ConditionalRuleError):
            conditions.validate_precedence(item, trigger, st)

    def test_available_trigger_questions(self):
        st = structure()
        assert [q.id for q in conditions.available_trigger_questions(st.question(3), st)] == [1, 2]
        assert [q.id for q in conditions.available_trigger_questions(st.question(1), st)] == []


def test_dependency_graph_and_summary():
    st = structure()
    controlled = Section(
        id=20,
        assessment_id=1,
        order=2,
        conditions=(rule("option_selected", "contains", 5, trigger=1),),
        questions=st.section(20).questions,
    )
    st = AssessmentStructure(id=1, sections=(st.section(10), controlled))

    graph = conditions.dependency_graph(st)
    assert [n["id"] for n in graph["nodes"]] == [
        "section:10",
        "question:1",
        "question:2",
        "section:20",
        "question:3",
    ]
    assert graph["edges"] == [
        {
            "from": "question:1",
            "to": "section:20",
            "trigger_kind": "option_selected",
            "operator": "contains",
            "values": ["5"],
        }
    ]

    summary = conditions.conditional_summary(st)
    assert summary["conditional_sections"] == 1
    assert summary["conditional_questions"] == 0
    assert summary["trigger_questions"] == [1]
    assert summary["has_conditional_logic"] is True
