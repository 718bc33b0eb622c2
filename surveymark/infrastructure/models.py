from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


class Base(DeclarativeBase):
    pass


class AssessmentORM(Base):
    __tablename__ = "assessments"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    restricted_countries: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    metadata_: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), default=utcnow, nullable=False
    )

    sections: Mapped[list[SectionORM]] = relationship(
        back_populates="assessment", cascade="all, delete-orphan", order_by="SectionORM.order"
    )
    marking_schemes: Mapped[list[MarkingSchemeORM]] = relationship(
        back_populates="assessment", cascade="all, delete-orphan"
    )


class SectionORM(Base):
    __tablename__ = "sections"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    assessment_id: Mapped[int] = mapped_column(
        ForeignKey("assessments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    order: Mapped[int] = mapped_column(Integer, nullable=False)
    restricted_countries: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    is_conditional: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    visibility_conditions: Mapped[list[dict[str, Any]] | None] = mapped_column(JSON, nullable=True)

    __table_args__ = (
        UniqueConstraint("assessment_id", "order", name="uq_section_assessment_order"),
    )

    assessment: Mapped[AssessmentORM] = relationship(back_populates="sections")
    questions: Mapped[list[QuestionORM]] = relationship(
        back_populates="section", cascade="all, delete-orphan", order_by="QuestionORM.order"
    )


class QuestionORM(Base):
    __tablename__ = "questions"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    section_id: Mapped[int] = mapped_column(
        ForeignKey("sections.id", ondelete="CASCADE"), nullable=False, index=True
    )
    text: Mapped[str] = mapped_column(Text, nullable=False)
    question_type: Mapped[str] = mapped_column(String(32), nullable=False)
    is_required: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    order: Mapped[int] = mapped_column(Integer, nullable=False)
    restricted_countries: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    is_conditional: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    visibility_conditions: Mapped[list[dict[str, Any]] | None] = mapped_column(JSON, nullable=True)

    section: Mapped[SectionORM] = relationship(back_populates="questions")
    options: Mapped[list[OptionORM]] = relationship(
        back_populates="question", cascade="all, delete-orphan", order_by="OptionORM.order"
    )


class OptionORM(Base):
    __tablename__ = "question_options"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    question_id: Mapped[int] = mapped_column(
        ForeignKey("questions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    text: Mapped[str] = mapped_column(String(500), nullable=False)
    order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_correct: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    points: Mapped[float | None] = mapped_column(Numeric(10, 2, asdecimal=False), nullable=True)

    question: Mapped[QuestionORM] = relationship(back_populates="options")


class ResponseSessionORM(Base):
    __tablename__ = "response_sessions"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    assessment_id: Mapped[int] = mapped_column(
        ForeignKey("assessments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    respondent_name: Mapped[str] = mapped_column(String(100), nullable=False)
    country_code: Mapped[str | None] = mapped_column(String(2), nullable=True)
    state: Mapped[str] = mapped_column(String(32), default="draft", nullable=False, index=True)
    total_score: Mapped[float] = mapped_column(
        Numeric(10, 2, asdecimal=False), default=0.0, nullable=False
    )
    max_possible_score: Mapped[float] = mapped_column(
        Numeric(10, 2, asdecimal=False), default=0.0, nullable=False
    )
    grade: Mapped[str | None] = mapped_column(String(16), nullable=True)
    feedback: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSON, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    marked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), default=utcnow, onupdate=utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("user_id", "assessment_id", name="uq_session_user_assessment"),
        CheckConstraint(
            "total_score >= 0 AND max_possible_score >= 0", name="ck_session_scores_non_negative"
        ),
    )

    responses: Mapped[list[ResponseORM]] = relationship(
        back_populates="session", cascade="all, delete-orphan"
    )


class ResponseORM(Base):
    __tablename__ = "responses"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    session_id: Mapped[int] = mapped_column(
        ForeignKey("response_sessions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    question_id: Mapped[int] = mapped_column(
        ForeignKey("questions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    value: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), default=utcnow, onupdate=utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("session_id", "question_id", name="uq_response_session_question"),
    )

    session: Mapped[ResponseSessionORM] = relationship(back_populates="responses")
    selected_options: Mapped[list[SelectedOptionORM]] = relationship(
        back_populates="response", cascade="all, delete-orphan"
    )
    scores: Mapped[list[ResponseScoreORM]] = relationship(
        back_populates="response", cascade="all, delete-orphan"
    )


class SelectedOptionORM(Base):
    __tablename__ = "response_selected_options"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    response_id: Mapped[int] = mapped_column(
        ForeignKey("responses.id", ondelete="CASCADE"), nullable=False, index=True
    )
    option_id: Mapped[int] = mapped_column(
        ForeignKey("question_options.id", ondelete="CASCADE"), nullable=False, index=True
    )

    __table_args__ = (UniqueConstraint("response_id", "option_id", name="uq_selected_option"),)

    response: Mapped[ResponseORM] = relationship(back_populates="selected_options")


class MarkingSchemeORM(Base):
    __tablename__ = "marking_schemes"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    assessment_id: Mapped[int] = mapped_column(
        ForeignKey("assessments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    total_possible_score: Mapped[float] = mapped_column(
        Numeric(10, 2, asdecimal=False), default=0.0, nullable=False
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False, index=True)
    settings: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), default=utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint("total_possible_score >= 0", name="ck_scheme_total_non_negative"),
    )

    assessment: Mapped[AssessmentORM] = relationship(back_populates="marking_schemes")
    rules: Mapped[list[MarkingRuleORM]] = relationship(
        back_populates="scheme", cascade="all, delete-orphan", order_by="MarkingRuleORM.order"
    )
    scores: Mapped[list[ResponseScoreORM]] = relationship(
        back_populates="scheme", cascade="all, delete-orphan"
    )


class MarkingRuleORM(Base):
    __tablename__ = "marking_rules"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    scheme_id: Mapped[int] = mapped_column(
        ForeignKey("marking_schemes.id", ondelete="CASCADE"), nullable=False, index=True
    )
    question_id: Mapped[int] = mapped_column(
        ForeignKey("questions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    rule_type: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    points: Mapped[float] = mapped_column(
        Numeric(10, 2, asdecimal=False), default=0.0, nullable=False
    )
    criteria: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False, index=True)
    order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    scheme: Mapped[MarkingSchemeORM] = relationship(back_populates="rules")


class ResponseScoreORM(Base):
    __tablename__ = "response_scores"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    response_id: Mapped[int] = mapped_column(
        ForeignKey("responses.id", ondelete="CASCADE"), nullable=False, index=True
    )
    scheme_id: Mapped[int] = mapped_column(
        ForeignKey("marking_schemes.id", ondelete="CASCADE"), nullable=False, index=True
    )
    rule_id: Mapped[int] = mapped_column(
        ForeignKey("marking_rules.id", ondelete="CASCADE"), nullable=False, index=True
    )
    score_earned: Mapped[float] = mapped_column(
        Numeric(10, 2, asdecimal=False), default=0.0, nullable=False
    )
    max_possible_score: Mapped[float] = mapped_column(
        Numeric(10, 2, asdecimal=False), default=0.0, nullable=False
    )
    scoring_details: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    feedback: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), default=utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("response_id", "scheme_id", name="uq_score_response_scheme"),
        CheckConstraint(
            "score_earned >= 0 AND max_possible_score >= 0", name="ck_score_non_negative"
        ),
    )

    response: Mapped[ResponseORM] = relationship(back_populates="scores")
    scheme: Mapped[MarkingSchemeORM] = relationship(back_populates="scores")
