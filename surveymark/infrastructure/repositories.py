"""
Repository re-exports.

    from surveymark.infrastructure.repositories import ResponseSessionRepo, ...
"""

from __future__ import annotations

from .repositories_assessment import AssessmentRepo
from .repositories_response import ResponseRepo
from .repositories_scheme import MarkingRuleRepo, MarkingSchemeRepo, ResponseScoreRepo
from .repositories_session import ResponseSessionRepo

__all__ = [
    "AssessmentRepo",
    "MarkingRuleRepo",
    "MarkingSchemeRepo",
    "ResponseRepo",
    "ResponseScoreRepo",
    "ResponseSessionRepo",
]
