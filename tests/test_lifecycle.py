import pytest

from conftest import answer_all, make_session
from surveymark.application import api
from surveymark.domain import lifecycle
from surveymark.domain.lifecycle import Event
from surveymark.domain.models import SessionState as S
from surveymark.domain.services import MarkingEngine
from surveymark.infrastructure.exceptions import InvalidStateError
from surveymark.infrastructure.models import ResponseSessionORM
from surveymark.infrastructure.repositories import ResponseRepo, ResponseScoreRepo
from surveymark.infrastructure.uow import UnitOfWork


class TestTransitions:
    @pytest.mark.parametrize(
        "event,state,target",
        [
            (Event.START, S.DRAFT, S.STARTED),
            (Event.BEGIN_ANSWERING, S.STARTED, S.IN_PROGRESS),
            (Event.BEGIN_ANSWERING, S.DRAFT, S.IN_PROGRESS),
            (Event.COMPLETE, S.IN_PROGRESS, S.COMPLETED),
            (Event.SUBMIT, S.COMPLETED, S.SUBMITTED),
            (Event.SUBMIT, S.IN_PROGRESS, S.SUBMITTED),
            (Event.SEND_FOR_REVIEW, S.SUBMITTED, S.UNDER_REVIEW),
            (Event.MARK, S.UNDER_REVIEW, S.MARKED),
            (Event.PUBLISH, S.MARKED, S.PUBLISHED),
            (Event.REOPEN, S.SUBMITTED, S.IN_PROGRESS),
            (Event.EXPIRE, S.IN_PROGRESS, S.EXPIRED),
            (Event.RESET, S.PUBLISHED, S.DRAFT),
        ],
    )
    def test_valid_transitions(self, event, state, target):
        assert lifecycle.apply(event, state) == target

    @pytest.mark.parametrize(
        "event,state",
        [
            (Event.SUBMIT, S.DRAFT),
            (Event.MARK, S.IN_PROGRESS),
            (Event.PUBLISH, S.SUBMITTED),
            (Event.CANCEL, S.MARKED),
            (Event.CANCEL, S.CANCELLED),
            (Event.EXPIRE, S.SUBMITTED),
        ],
    )
    def test_invalid_transitions_raise(self, event, state):
        with pytest.raises(InvalidStateError) as exc_info:
            lifecycle.apply(event, state, session_id=7)
        assert exc_info.value.session_id == 7
        assert exc_info.value.state == str(state)

    def test_completion_gate(self):
        assert not lifecycle.may_complete(S.IN_PROGRESS, can_complete=False)
        assert not lifecycle.may_submit(S.COMPLETED, can_complete=False)
        assert lifecycle.may_submit(S.COMPLETED)
        with pytest.raises(InvalidStateError):
            lifecycle.apply(Event.COMPLETE, S.IN_PROGRESS, can_complete=False)

    def test_guards_reject_unknown_values(self):
        assert lifecycle.may("teleport", S.DRAFT) is False
        assert lifecycle.may(Event.START, "limbo") is False

    def test_state_predicates(self):
        assert lifecycle.can_be_marked(S.SUBMITTED)
        assert not lifecycle.can_be_marked(S.MARKED)
        assert lifecycle.accepts_responses(S.STARTED)
        assert not lifecycle.accepts_responses(S.SUBMITTED)

    def test_cancel_from_any_open_state(self):
        open_states = set(S) - lifecycle.TERMINAL_STATES
        assert all(lifecycle.may_cancel(state) for state in open_states)


def in_progress(SessionLocal, survey, answered=True):
    with SessionLocal() as s:
        session_id = make_session(s, survey, state=S.IN_PROGRESS)
        if answered:
            answer_all(s, survey, session_id)
        s.commit()
    return session_id


class TestApplyEvent:
    def test_complete_then_submit(self, SessionLocal, survey):
        session_id = in_progress(SessionLocal, survey)
        with SessionLocal() as s:
            api.apply_event(s, session_id, "complete")
            rs = api.apply_event(s, session_id, Event.SUBMIT)
            s.commit()
            assert rs.state == S.SUBMITTED
            assert rs.completed_at is not None
            assert rs.submitted_at is not None

    def test_submit_requires_required_answers(self, SessionLocal, survey):
        session_id = in_progress(SessionLocal, survey, answered=False)
        with SessionLocal() as s:
            with pytest.raises(InvalidStateError):
                api.apply_event(s, session_id, Event.SUBMIT)
            assert "submit" not in api.allowed_events(s, session_id)

    def test_required_question_in_hidden_section_does_not_block(self, SessionLocal, survey):
        session_id = in_progress(SessionLocal, survey, answered=False)
        with SessionLocal() as s:
            answer_all(s, survey, session_id, manages=False)
            assert api.apply_event(s, session_id, Event.COMPLETE).state == S.COMPLETED

    def test_allowed_events(self, SessionLocal, survey):
        session_id = in_progress(SessionLocal, survey)
        with SessionLocal() as s:
            assert api.allowed_events(s, session_id) == [
                "complete",
                "submit",
                "cancel",
                "expire",
                "reset",
            ]

    def test_reset_clears_marks_and_keeps_answers(self, SessionLocal, survey, scheme):
        with SessionLocal() as s:
            session_id = make_session(s, survey)
            answer_all(s, survey, session_id)
            s.commit()
        MarkingEngine(UnitOfWork(SessionLocal)).mark(session_id)

        with SessionLocal() as s:
            rs = api.apply_event(s, session_id, Event.RESET)
            s.commit()

        with SessionLocal() as s:
            rs = s.get(ResponseSessionORM, session_id)
            assert rs.state == S.DRAFT
            assert (rs.total_score, rs.grade, rs.feedback) == (0, None, None)
            assert rs.marked_at is None
            assert ResponseScoreRepo(s).for_session(session_id) == []
            assert len(ResponseRepo(s).lookup_for_session(session_id)) == 4

    def test_reset_can_purge_answers(self, SessionLocal, survey):
        session_id = in_progress(SessionLocal, survey)
        with SessionLocal() as s:
            api.apply_event(s, session_id, "reset", purge_responses=True)
            s.commit()
            assert len(ResponseRepo(s).lookup_for_session(session_id)) == 0

    def test_unknown_event_is_rejected(self, SessionLocal, survey):
        session_id = in_progress(SessionLocal, survey)
        with SessionLocal() as s:
            with pytest.raises(ValueError):
                api.apply_event(s, session_id, "teleport")
