import logging

import pytest

from surveymark.domain.models import (
    AssessmentStructure,
    ConditionalRule,
    Option,
    Question,
    QuestionType,
    Response,
    ResponseMap,
    RestrictionSet,
    Section,
)
from surveymark.domain.visibility import VisibilityResolver

YES, NO = 101, 102


def when_yes(trigger=1):
    return (
        ConditionalRule(
            trigger_question_id=trigger,
            trigger_kind="option_selected",
            trigger_values=(str(YES),),
            operator="contains",
        ),
    )


def build(assessment_restrictions=(), section_two_restrictions=()):
    """
    Section 1: q1 radio (required), q2 richtext shown when q1 is yes.
    Section 2 (shown when q1 is yes): q3 richtext (required), q4 range restricted in FR.
    Section 3: q5 boolean (required).
    """
    q1 = Question(
        id=1,
        section_id=10,
        question_type=QuestionType.RADIO,
        order=1,
        is_required=True,
        options=(Option(id=YES, question_id=1, order=1), Option(id=NO, question_id=1, order=2)),
    )
    q2 = Question(id=2, section_id=10, question_type=QuestionType.RICHTEXT, order=2, conditions=when_yes())
    q3 = Question(id=3, section_id=20, question_type=QuestionType.RICHTEXT, order=1, is_required=True)
    q4 = Question(
        id=4,
        section_id=20,
        question_type=QuestionType.RANGE,
        order=2,
        restrictions=RestrictionSet.of(["FR"]),
    )
    q5 = Question(id=5, section_id=30, question_type=QuestionType.BOOLEAN, order=1, is_required=True)
    return AssessmentStructure(
        id=1,
        restrictions=RestrictionSet.of(assessment_restrictions),
        sections=(
            Section(id=30, assessment_id=1, order=3, questions=(q5,)),
            Section(id=10, assessment_id=1, order=1, questions=(q2, q1)),
            Section(
                id=20,
                assessment_id=1,
                order=2,
                conditions=when_yes(),
                restrictions=RestrictionSet.of(section_two_restrictions),
                questions=(q3, q4),
            ),
        ),
    )


def picked(question_id, *option_ids):
    return Response(
        id=question_id, session_id=1, question_id=question_id, selected_option_ids=frozenset(option_ids)
    )


def written(question_id, value):
    return Response(id=question_id, session_id=1, question_id=question_id, value=value)


def resolver(*responses, country=None, **kwargs):
    return VisibilityResolver(build(**kwargs), ResponseMap(responses), country)


def ids(items):
    return [item.id for item in items]


class TestVisibleItems:
    def test_unanswered_trigger_hides_dependents(self):
        r = resolver()
        assert ids(r.visible_sections()) == [10, 30]
        assert ids(r.visible_questions()) == [1, 5]

    def test_matching_answer_reveals_dependents_in_order(self):
        r = resolver(picked(1, YES))
        assert ids(r.visible_sections()) == [10, 20, 30]
        assert ids(r.visible_questions()) == [1, 2, 3, 4, 5]

    def test_restricted_question_hidden_for_that_country_only(self):
        assert ids(resolver(picked(1, YES), country="FR").visible_questions()) == [1, 2, 3, 5]
        assert ids(resolver(picked(1, YES), country="GB").visible_questions()) == [1, 2, 3, 4, 5]

    def test_restricted_section_hides_its_questions(self):
        r = resolver(picked(1, YES), country="DE", section_two_restrictions=["DE"])
        assert ids(r.visible_sections()) == [10, 30]
        section = r.structure.section(20)
        assert r.visible_questions_in_section(section) == []
        assert not r.is_question_visible(r.structure.question(3))

    def test_assessment_restriction_hides_everything(self):
        r = resolver(picked(1, YES), country="US", assessment_restrictions=["US"])
        assert r.visible_sections() == []
        assert r.visible_questions() == []

    def test_stored_answers_in_hidden_branch_are_ignored(self):
        r = resolver(picked(1, NO), written(3, {"text": "left over"}))
        assert 3 not in ids(r.visible_questions())
        assert r.can_complete() is False  # q5 still unanswered


class TestNavigation:
    def test_next_from_start_and_end(self):
        r = resolver(picked(1, YES))
        assert r.next_visible_question().id == 1
        assert r.next_visible_question(r.structure.question(2)).id == 3
        assert r.next_visible_question(r.structure.question(5)) is None

    def test_previous(self):
        r = resolver(picked(1, YES))
        assert r.previous_visible_question(r.structure.question(3)).id == 2
        assert r.previous_visible_question(r.structure.question(1)) is None
        assert r.previous_visible_question(None) is None

    def test_navigation_skips_hidden_branch(self):
        r = resolver(picked(1, NO))
        assert r.next_visible_question(r.structure.question(1)).id == 5
        assert r.next_visible_section(r.structure.section(10)).id == 30
        assert r.previous_visible_section(r.structure.section(30)).id == 10

    def test_current_item_not_visible_returns_none(self):
        r = resolver(picked(1, NO))
        assert r.next_visible_question(r.structure.question(3)) is None

    def test_within_section(self):
        r = resolver(picked(1, YES), country="FR")
        section = r.structure.section(20)
        assert r.next_visible_question_in_section(section).id == 3
        assert r.next_visible_question_in_section(section, r.structure.question(3)) is None
        assert r.previous_visible_question_in_section(section, r.structure.question(3)) is None


class TestCompletion:
    def test_choice_question_needs_a_selection(self):
        r = resolver(picked(1))
        assert not r.is_answered(r.structure.question(1))

    def test_text_question_needs_non_blank_value(self):
        r = resolver(picked(1, YES), written(3, {"text": "   "}))
        assert not r.is_answered(r.structure.question(3))

    def test_unanswered_required_questions_in_order(self):
        r = resolver(picked(1, YES))
        assert ids(r.unanswered_required_questions()) == [3, 5]
        assert r.first_unanswered_required_question().id == 3
        assert r.can_complete() is False

    def test_can_complete_when_visible_required_answered(self):
        r = resolver(picked(1, NO), picked(5, 7))
        assert r.can_complete() is True

    def test_can_complete_is_vacuous_without_visible_questions(self):
        r = resolver(country="US", assessment_restrictions=["US"])
        assert r.can_complete() is True
        stats = r.completion_stats()
        assert stats.can_complete is True
        assert stats.all_required_completed is False

    def test_section_access_follows_required_answers(self):
        r = resolver(picked(1, YES))
        assert r.can_access_section(r.structure.section(10))
        assert r.can_access_section(r.structure.section(20))
        assert not r.can_access_section(r.structure.section(30))

    def test_completion_stats(self):
        r = resolver(picked(1, YES), written(2, {"text": "notes"}), written(3, {"text": "done"}))
        stats = r.completion_stats()
        assert (stats.sections.total, stats.sections.done) == (3, 2)
        assert (stats.questions.total, stats.questions.done) == (5, 3)
        assert (stats.required.total, stats.required.done) == (3, 2)
        assert stats.can_complete is False
        data = stats.to_dict()
        assert data["questions"]["percentage"] == 60.0
        assert data["required_questions"]["all_completed"] is False


class TestDiagnostics:
    def test_visible_item_with_hidden_trigger_is_reported(self, propagate_logs, caplog):
        base = build()
        q1 = base.question(1)
        hidden_trigger = Question(
            id=q1.id,
            section_id=q1.section_id,
            question_type=q1.question_type,
            order=q1.order,
            restrictions=RestrictionSet.of(["FR"]),
            options=q1.options,
        )
        sections = []
        for section in base.sections:
            if section.id == 10:
                section = Section(
                    id=10,
                    assessment_id=1,
                    order=1,
                    questions=(hidden_trigger, base.question(2)),
                )
            sections.append(section)
        structure = AssessmentStructure(id=1, sections=tuple(sections))
        r = VisibilityResolver(structure, ResponseMap([picked(1, YES)]), "FR")

        with caplog.at_level(logging.WARNING, logger="surveymark"):
            warnings = r.integrity_warnings()

        assert {(w.item_kind, w.item_id) for w in warnings} == {("section", 20), ("question", 2)}
        assert all(w.trigger_question_id == 1 for w in warnings)
        assert "integrity check" in caplog.text

    def test_consistent_structure_has_no_warnings(self):
        assert resolver(picked(1, YES)).integrity_warnings() == []

    def test_summary_counts(self):
        summary = resolver(picked(1, YES), country="FR").summary()
        assert summary["total_sections"] == 3
        assert summary["visible_questions"] == 4
        assert summary["country_restricted_questions"] == 1
        assert summary["conditionally_hidden_questions"] == 0

        hidden = resolver(picked(1, NO)).summary()
        assert hidden["visible_questions"] == 2
        assert hidden["conditionally_hidden_questions"] == 3


@pytest.mark.parametrize("country", [None, "GB"])
def test_resolution_is_repeatable(country):
    r = resolver(picked(1, YES), country=country)
    assert ids(r.visible_questions()) == ids(r.visible_questions())
