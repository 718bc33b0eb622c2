from surveymark.domain import restrictions
from surveymark.domain.models import Question, QuestionType, RestrictionSet


def question(codes=None):
    return Question(
        id=1,
        section_id=1,
        question_type=QuestionType.RICHTEXT,
        order=1,
        restrictions=RestrictionSet.of(codes),
    )


def test_unrestricted_item_is_accessible_everywhere():
    assert restrictions.accessible(question(), "FR")
    assert restrictions.accessible(question([]), "FR")


def test_listed_country_is_denied():
    q = question(["FR", "DE"])
    assert not restrictions.accessible(q, "FR")
    assert restrictions.restricted(q, "DE")
    assert restrictions.accessible(q, "GB")


def test_country_codes_compare_case_insensitively():
    q = question([" fr "])
    assert not restrictions.accessible(q, "fr")
    assert not restrictions.accessible(q, "FR")


def test_missing_country_code_is_always_accessible():
    q = question(["FR"])
    assert restrictions.accessible(q, None)
    assert restrictions.accessible(q, "")


def test_item_without_restrictions_attribute_is_accessible():
    class Plain:
        pass

    assert restrictions.accessible(Plain(), "FR")


def test_describe():
    assert restrictions.describe(RestrictionSet()) == "Available worldwide"
    assert restrictions.describe(None) == "Available worldwide"
    assert restrictions.describe(RestrictionSet.of(["FR"])) == "Restricted in FR"
    assert (
        restrictions.describe(RestrictionSet.of(["FR", "DE", "ES"]), {"FR": "France"})
        == "Restricted in DE, ES and France"
    )
