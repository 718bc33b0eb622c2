import pytest
from pydantic import ValidationError as PydanticValidationError

from conftest import answer_all, make_session
from surveymark.application import api
from surveymark.domain.models import SessionState
from surveymark.infrastructure.exceptions import (
    ConditionalRuleError,
    IntegrityError,
    NotFoundError,
    ResponseLockedError,
    ValidationError,
)
from surveymark.infrastructure.models import MarkingSchemeORM, ResponseSessionORM
from surveymark.infrastructure.repositories import AssessmentRepo


def ids(items):
    return [item.id for item in items]


@pytest.fixture
def session_factory(SessionLocal, survey):
    """Returns a factory for an open ORM session plus an answered response session id."""

    def open_session(state=SessionState.IN_PROGRESS, country_code=None, manages=True):
        s = SessionLocal()
        session_id = make_session(s, survey, state=state, country_code=country_code)
        answer_all(s, survey, session_id, manages=manages)
        s.commit()
        return s, session_id

    return open_session


class TestVisibility:
    def test_sections_follow_answers(self, session_factory, survey):
        s, sid = session_factory(manages=False)
        with s:
            assert ids(api.resolve_visible_sections(s, sid)) == [survey.background_id, survey.wrap_up_id]

    def test_questions_follow_answers_and_country(self, session_factory, survey):
        s, sid = session_factory(country_code="fr")
        with s:
            assert ids(api.resolve_visible_questions(s, sid)) == [
                survey.q_manages,
                survey.q_years,
                survey.q_approach,
                survey.q_terms,
            ]
            assert ids(api.resolve_visible_questions(s, sid, survey.management_id)) == [survey.q_approach]

    def test_unknown_section(self, session_factory):
        s, sid = session_factory()
        with s, pytest.raises(NotFoundError):
            api.resolve_visible_questions(s, sid, section_id=9999)

    def test_unknown_session(self, SessionLocal, survey):
        with SessionLocal() as s, pytest.raises(NotFoundError):
            api.resolve_visible_sections(s, 9999)

    def test_answer_change_is_seen_immediately(self, session_factory, survey):
        s, sid = session_factory(manages=False)
        with s:
            assert survey.q_approach not in ids(api.resolve_visible_questions(s, sid))
            api.record_response(s, sid, survey.q_manages, option_ids=[survey.yes])
            assert survey.q_approach in ids(api.resolve_visible_questions(s, sid))

    def test_navigation(self, session_factory, survey):
        s, sid = session_factory(manages=False)
        with s:
            assert api.next_question(s, sid).id == survey.q_manages
            assert api.next_question(s, sid, survey.q_years).id == survey.q_terms
            assert api.next_question(s, sid, survey.q_approach) is None
            assert api.next_question(s, sid, 9999) is None
            assert api.previous_question(s, sid, survey.q_terms).id == survey.q_years

    def test_completion(self, session_factory):
        s, sid = session_factory()
        with s:
            assert api.can_complete(s, sid) is True
            stats = api.completion_stats(s, sid)
            assert (stats.required.total, stats.required.done) == (4, 4)
            assert (stats.questions.total, stats.questions.done) == (5, 4)

    def test_visibility_report(self, session_factory):
        s, sid = session_factory(manages=False)
        with s:
            report = api.visibility_report(s, sid)
            assert report["visible_sections"] == 2
            assert report["integrity_warnings"] == []


class TestSessions:
    def test_create(self, SessionLocal, survey):
        with SessionLocal() as s:
            rs = api.create_response_session(s, survey.assessment_id, 5, "  Grace Hopper ", "gb")
            assert rs.state == SessionState.DRAFT
            assert rs.respondent_name == "Grace Hopper"
            assert rs.country_code == "GB"

    def test_invalid_input(self, SessionLocal, survey):
        with SessionLocal() as s:
            with pytest.raises(ValidationError) as exc_info:
                api.create_response_session(s, survey.assessment_id, 5, "<script>")
            assert "respondent_name" in str(exc_info.value)

    def test_unknown_assessment(self, SessionLocal, survey):
        with SessionLocal() as s, pytest.raises(NotFoundError):
            api.create_response_session(s, 9999, 5, "Grace Hopper")

    def test_one_session_per_user_and_assessment(self, SessionLocal, survey):
        with SessionLocal() as s:
            api.create_response_session(s, survey.assessment_id, 5, "Grace Hopper")
            with pytest.raises(IntegrityError):
                api.create_response_session(s, survey.assessment_id, 5, "Grace Hopper")


class TestRecordResponse:
    def test_first_answer_starts_the_session(self, SessionLocal, survey):
        with SessionLocal() as s:
            sid = make_session(s, survey, state=SessionState.DRAFT)
            api.record_response(s, sid, survey.q_years, value={"number": 4})
            assert s.get(ResponseSessionORM, sid).state == SessionState.IN_PROGRESS

    def test_answer_is_replaced(self, session_factory, survey):
        s, sid = session_factory()
        with s:
            api.record_response(s, sid, survey.q_manages, option_ids=[survey.no])
            response = api.record_response(s, sid, survey.q_manages, option_ids=[survey.yes])
            assert [so.option_id for so in response.selected_options] == [survey.yes]

    def test_locked_after_submission(self, session_factory, survey):
        s, sid = session_factory(state=SessionState.SUBMITTED)
        with s, pytest.raises(ResponseLockedError):
            api.record_response(s, sid, survey.q_years, value={"number": 1})

    def test_question_from_other_assessment(self, session_factory, survey):
        s, sid = session_factory()
        with s:
            repo = AssessmentRepo(s)
            other = repo.create_assessment("Other")
            section = repo.add_section(assessment_id=other.id, name="Only", order=1)
            stray = repo.add_question(section_id=section.id, text="Stray", question_type="richtext", order=1)
            with pytest.raises(ValidationError):
                api.record_response(s, sid, stray.id, value={"text": "hi"})

    def test_option_from_another_question(self, session_factory, survey):
        s, sid = session_factory()
        with s, pytest.raises(ValidationError) as exc_info:
            api.record_response(s, sid, survey.q_manages, option_ids=[survey.agree])
        assert exc_info.value.field == "option_ids"

    def test_empty_answer(self, session_factory, survey):
        s, sid = session_factory()
        with s, pytest.raises(ValidationError):
            api.record_response(s, sid, survey.q_years)

    def test_clearing_a_trigger_answer_hides_its_dependents(self, session_factory, survey):
        s, sid = session_factory()
        with s:
            assert survey.management_id in ids(api.resolve_visible_sections(s, sid))
            assert api.clear_response(s, sid, survey.q_manages) is True
            assert survey.management_id not in ids(api.resolve_visible_sections(s, sid))
            assert survey.q_approach not in ids(api.resolve_visible_questions(s, sid))
            assert api.can_complete(s, sid) is False
            assert api.clear_response(s, sid, survey.q_manages) is False

    def test_clearing_is_locked_after_submission(self, session_factory, survey):
        s, sid = session_factory(state=SessionState.SUBMITTED)
        with s, pytest.raises(ResponseLockedError):
            api.clear_response(s, sid, survey.q_years)


class TestAuthoring:
    def test_forward_trigger_is_rejected(self, SessionLocal, survey):
        with SessionLocal() as s, pytest.raises(ConditionalRuleError):
            api.set_condition(
                s,
                "question",
                survey.q_manages,
                [
                    {
                        "trigger_question_id": survey.q_terms,
                        "trigger_response_type": "option_selected",
                        "trigger_values": [survey.agree],
                        "operator": "contains",
                    }
                ],
            )

    def test_range_bounds_must_be_ordered(self, SessionLocal, survey):
        with SessionLocal() as s, pytest.raises(PydanticValidationError):
            api.set_condition(
                s,
                "question",
                survey.q_terms,
                [
                    {
                        "trigger_question_id": survey.q_years,
                        "trigger_response_type": "value_range",
                        "trigger_values": ["5", "1"],
                        "operator": "between",
                    }
                ],
            )

    def test_unknown_target_kind(self, SessionLocal, survey):
        with SessionLocal() as s, pytest.raises(ConditionalRuleError):
            api.set_condition(s, "assessment", survey.assessment_id, [])

    def test_clearing_conditions(self, SessionLocal, survey):
        with SessionLocal() as s:
            section = api.set_condition(s, "section", survey.management_id, [])
            assert section.is_conditional is False
            assert api.conditional_summary(s, survey.assessment_id)["conditional_sections"] == 0

    def test_country_restrictions(self, session_factory, survey):
        s, sid = session_factory(country_code="de")
        with s:
            assert survey.q_comments in ids(api.resolve_visible_questions(s, sid))
            assert api.set_restrictions(s, "question", survey.q_comments, ["de", "fr", " "]) == (
                "Restricted in DE and FR"
            )
            assert survey.q_comments not in ids(api.resolve_visible_questions(s, sid))
            assert api.set_restrictions(s, "section", survey.wrap_up_id, ["DE"]) == "Restricted in DE"
            assert survey.wrap_up_id not in ids(api.resolve_visible_sections(s, sid))
            assert api.set_restrictions(s, "question", survey.q_comments, []) == "Available worldwide"

    def test_unknown_restriction_target(self, SessionLocal, survey):
        with SessionLocal() as s, pytest.raises(ValidationError) as exc_info:
            api.set_restrictions(s, "option", survey.yes, ["DE"])
        assert exc_info.value.field == "target_kind"

    def test_available_triggers(self, SessionLocal, survey):
        with SessionLocal() as s:
            assert ids(api.available_trigger_questions(s, "section", survey.management_id)) == [
                survey.q_manages,
                survey.q_years,
            ]
            assert ids(api.available_trigger_questions(s, "question", survey.q_approach)) == [
                survey.q_manages,
                survey.q_years,
            ]

    def test_dependency_graph(self, SessionLocal, survey):
        with SessionLocal() as s:
            edges = api.dependency_graph(s, survey.assessment_id)["edges"]
            assert {(e["from"], e["to"]) for e in edges} == {
                (f"question:{survey.q_manages}", f"section:{survey.management_id}"),
                (f"question:{survey.q_years}", f"question:{survey.q_start}"),
            }

    def test_rule_must_suit_question_type(self, SessionLocal, survey, scheme):
        with SessionLocal() as s:
            assert api.rule_types_for_question(s, survey.q_manages) == ["option_based"]
            with pytest.raises(ValidationError) as exc_info:
                api.create_marking_rule(
                    s, scheme.scheme_id, survey.q_manages, "keyword_based", 5, {"keywords": ["x"]}
                )
            assert exc_info.value.field == "rule_type"

    def test_rule_criteria_are_validated(self, SessionLocal, survey, scheme):
        with SessionLocal() as s, pytest.raises(PydanticValidationError):
            api.create_marking_rule(
                s, scheme.scheme_id, survey.q_years, "range_based", 5, {"min": 10, "max": 1}
            )

    def test_scheme_boundaries_are_validated(self, SessionLocal, survey):
        with SessionLocal() as s, pytest.raises(PydanticValidationError):
            api.create_marking_scheme(
                s, survey.assessment_id, "Broken", settings={"grade_boundaries": {"A": 120}}
            )

    def test_one_active_scheme_per_assessment(self, SessionLocal, survey, scheme):
        with SessionLocal() as s:
            second = api.create_marking_scheme(s, survey.assessment_id, "Second", total_possible_score=10)
            assert s.get(MarkingSchemeORM, scheme.scheme_id).is_active is False
            api.activate_scheme(s, scheme.scheme_id)
            assert second.is_active is False
            assert s.get(MarkingSchemeORM, scheme.scheme_id).is_active is True


class TestMarkingFacade:
    def test_mark_and_preview(self, SessionLocal, survey, scheme):
        with SessionLocal() as s:
            sid = make_session(s, survey)
            answer_all(s, survey, sid)
            s.commit()

        preview = api.preview_marks(SessionLocal, sid)
        result = api.mark(SessionLocal, sid)

        assert (preview.marked, result.marked) == (False, True)
        assert preview.total_score == result.total_score == 20

    def test_session_statistics(self, SessionLocal, survey, scheme):
        with SessionLocal() as s:
            strong = make_session(s, survey, user_id=1)
            answer_all(s, survey, strong)
            weak = make_session(s, survey, user_id=2)
            answer_all(s, survey, weak, manages=False, years=1)
            make_session(s, survey, user_id=3, state=SessionState.DRAFT)
            s.commit()
        api.mark(SessionLocal, strong)
        api.mark(SessionLocal, weak)

        with SessionLocal() as s:
            stats = api.session_stats_for_assessment(s, survey.assessment_id)

        assert stats["total_sessions"] == 3
        assert stats["by_state"]["marked"] == 2
        assert stats["by_state"]["draft"] == 1
        assert stats["by_state"]["cancelled"] == 0
        assert stats["scored_sessions"] == 2
        assert stats["average_score"] == 12.5
        assert stats["average_percentage"] == 66.67
        assert stats["pass_rate"] == 50.0

    def test_statistics_without_marks(self, SessionLocal, survey):
        with SessionLocal() as s:
            stats = api.session_stats_for_assessment(s, survey.assessment_id)
        assert stats["total_sessions"] == 0
        assert stats["average_score"] is None
        assert stats["pass_rate"] is None
