"""Country denylist checks for assessments, sections and questions."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Protocol

from .models import RestrictionSet


class Restrictable(Protocol):
    restrictions: RestrictionSet


def accessible(item: Restrictable, country_code: str | None) -> bool:
    """
    True unless ``country_code`` is on the item's denylist.

    An item without restrictions, or a respondent without a country, is
    always accessible.
    """
    restrictions = getattr(item, "restrictions", None)
    if not restrictions or not country_code:
        return True
    return country_code not in restrictions


def restricted(item: Restrictable, country_code: str | None) -> bool:
    return not accessible(item, country_code)


def describe(restrictions: RestrictionSet | None, names: Mapping[str, str] | None = None) -> str:
    if not restrictions:
        return "Available worldwide"
    labels = sorted((names or {}).get(code, code) for code in restrictions.countries)
    if len(labels) == 1:
        return f"Restricted in {labels[0]}"
    return f"Restricted in {', '.join(labels[:-1])} and {labels[-1]}"
