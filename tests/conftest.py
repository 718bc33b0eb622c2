"""
Shared fixtures: a file-backed SQLite database and a seeded onboarding survey.

Survey layout (section order / question order):

    1 Background
        q_manages   radio, required          options yes (correct), no
        q_years     range, required
    2 Management   shown when q_manages has "yes" selected
        q_approach  richtext, required
        q_comments  richtext, hidden in FR
    3 Wrap up
        q_terms     boolean, required        options agree (correct), disagree
        q_start     date, shown when q_years is between 0 and 2
"""

import logging
import os
from types import SimpleNamespace

os.environ.setdefault("ENVIRONMENT", "test")

import pytest

from surveymark.domain.models import SessionState
from surveymark.infrastructure.db import initialise_database, make_engine_and_session
from surveymark.infrastructure.repositories import (
    AssessmentRepo,
    MarkingRuleRepo,
    MarkingSchemeRepo,
    ResponseRepo,
    ResponseSessionRepo,
)


@pytest.fixture
def SessionLocal(tmp_path):
    engine, factory = make_engine_and_session(f"sqlite:///{tmp_path / 'marking.db'}")
    initialise_database(engine)
    yield factory
    engine.dispose()


def build_survey(s) -> SimpleNamespace:
    repo = AssessmentRepo(s)
    assessment = repo.create_assessment("Onboarding survey")

    background = repo.add_section(assessment_id=assessment.id, name="Background", order=1)
    q_manages = repo.add_question(
        section_id=background.id,
        text="Do you manage a team?",
        question_type="radio",
        order=1,
        is_required=True,
    )
    yes = repo.add_option(question_id=q_manages.id, text="Yes", order=1, is_correct=True)
    no = repo.add_option(question_id=q_manages.id, text="No", order=2)
    q_years = repo.add_question(
        section_id=background.id,
        text="Years of experience",
        question_type="range",
        order=2,
        is_required=True,
    )

    management = repo.add_section(assessment_id=assessment.id, name="Management", order=2)
    q_approach = repo.add_question(
        section_id=management.id,
        text="Describe your management approach",
        question_type="richtext",
        order=1,
        is_required=True,
    )
    q_comments = repo.add_question(
        section_id=management.id,
        text="Any other comments?",
        question_type="richtext",
        order=2,
        restricted_countries=["FR"],
    )

    wrap_up = repo.add_section(assessment_id=assessment.id, name="Wrap up", order=3)
    q_terms = repo.add_question(
        section_id=wrap_up.id,
        text="Do you agree to the terms?",
        question_type="boolean",
        order=1,
        is_required=True,
    )
    agree = repo.add_option(question_id=q_terms.id, text="Agree", order=1, is_correct=True)
    disagree = repo.add_option(question_id=q_terms.id, text="Disagree", order=2)
    q_start = repo.add_question(
        section_id=wrap_up.id,
        text="When did you start managing?",
        question_type="date",
        order=2,
    )

    repo.set_condition(
        "section",
        management.id,
        [
            {
                "trigger_question_id": q_manages.id,
                "trigger_response_type": "option_selected",
                "trigger_values": [str(yes.id)],
                "operator": "contains",
            }
        ],
    )
    repo.set_condition(
        "question",
        q_start.id,
        [
            {
                "trigger_question_id": q_years.id,
                "trigger_response_type": "value_range",
                "trigger_values": ["0", "2"],
                "operator": "between",
            }
        ],
    )

    return SimpleNamespace(
        assessment_id=assessment.id,
        background_id=background.id,
        management_id=management.id,
        wrap_up_id=wrap_up.id,
        q_manages=q_manages.id,
        q_years=q_years.id,
        q_approach=q_approach.id,
        q_comments=q_comments.id,
        q_terms=q_terms.id,
        q_start=q_start.id,
        yes=yes.id,
        no=no.id,
        agree=agree.id,
        disagree=disagree.id,
    )


def build_scheme(s, ids: SimpleNamespace) -> SimpleNamespace:
    """Active scheme worth 20 points: 5 each for manages, years, approach and terms."""
    schemes = MarkingSchemeRepo(s)
    scheme = schemes.create_scheme(
        assessment_id=ids.assessment_id,
        name="Default",
        total_possible_score=20,
        settings={
            "passing_score": 10,
            "grade_boundaries": {"A": 80, "B": 60, "C": 40},
            "feedback_templates": {
                "A": "Well done %{name}: %{score}/%{max_score} (%{percentage}%)",
                "F": "Keep trying, %{name}.",
            },
        },
    )
    rules = MarkingRuleRepo(s)
    r_manages = rules.create_rule(
        scheme_id=scheme.id, question_id=ids.q_manages, rule_type="option_based", points=5
    )
    r_years = rules.create_rule(
        scheme_id=scheme.id,
        question_id=ids.q_years,
        rule_type="range_based",
        points=5,
        criteria={"min": 3, "max": 10},
    )
    r_approach = rules.create_rule(
        scheme_id=scheme.id,
        question_id=ids.q_approach,
        rule_type="keyword_based",
        points=5,
        criteria={"keywords": ["delegate", "feedback"], "scoring_method": "proportional"},
    )
    r_terms = rules.create_rule(
        scheme_id=scheme.id, question_id=ids.q_terms, rule_type="option_based", points=5
    )
    return SimpleNamespace(
        scheme_id=scheme.id,
        r_manages=r_manages.id,
        r_years=r_years.id,
        r_approach=r_approach.id,
        r_terms=r_terms.id,
    )


def make_session(
    s,
    ids: SimpleNamespace,
    user_id: int = 1,
    state: SessionState = SessionState.SUBMITTED,
    country_code: str | None = None,
    name: str = "Ada Lovelace",
) -> int:
    sessions = ResponseSessionRepo(s)
    rs = sessions.create_session(
        assessment_id=ids.assessment_id,
        user_id=user_id,
        respondent_name=name,
        country_code=country_code,
    )
    if state != SessionState.DRAFT:
        sessions.set_state(rs, state)
    return rs.id


def answer_all(s, ids: SimpleNamespace, session_id: int, manages: bool = True, years: int = 5):
    """A complete, fully-correct set of answers."""
    responses = ResponseRepo(s)
    responses.upsert(session_id, ids.q_manages, option_ids=[ids.yes if manages else ids.no])
    responses.upsert(session_id, ids.q_years, value={"number": years})
    if manages:
        responses.upsert(
            session_id, ids.q_approach, value={"text": "I delegate and give regular feedback"}
        )
    responses.upsert(session_id, ids.q_terms, option_ids=[ids.agree])


@pytest.fixture
def survey(SessionLocal):
    with SessionLocal() as s:
        ids = build_survey(s)
        s.commit()
    return ids


@pytest.fixture
def scheme(SessionLocal, survey):
    with SessionLocal() as s:
        scheme_ids = build_scheme(s, survey)
        s.commit()
    return scheme_ids


@pytest.fixture
def propagate_logs(monkeypatch):
    """Let caplog see records from the package logger, which does not propagate by default."""
    monkeypatch.setattr(logging.getLogger("surveymark"), "propagate", True)
