"""Unit tests for the compatibility scorer."""
import math

import pytest

from matching.errors import OracleError
from matching.scoring import (
    CompatibilityScorer,
    ScoringWeights,
    haversine_km,
    parse_leading_number,
    token_overlap,
    tokenize,
)
from models import Condition, Donation, Request, Urgency


def make_donation(**fields):
    values = dict(
        donor_org_id="donor-1",
        category="food",
        quantity="10 boxes",
        condition=Condition.NEW,
        description="10 boxes canned vegetables",
        latitude=12.97,
        longitude=77.59,
    )
    values.update(fields)
    return Donation(**values)


def make_request(**fields):
    values = dict(
        requesting_org_id="ngo-a",
        category="food",
        quantity="a lot",
        urgency=Urgency.HIGH,
        description="need canned vegetables",
        latitude=12.98,
        longitude=77.60,
    )
    values.update(fields)
    return Request(**values)


class BrokenOracle:
    def __init__(self, answer=None, error=None):
        self.answer = answer
        self.error = error
        self.calls = 0

    def similarity(self, text_a, text_b):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.answer


def test_nearby_food_match_scores_at_least_85():
    result = CompatibilityScorer().score(make_donation(), make_request())

    assert result.score >= 85
    assert result.breakdown["category"] == 40
    assert result.breakdown["urgency"] == 20
    assert result.breakdown["description"] == 20
    assert result.breakdown["proximity"] == pytest.approx(19.38, abs=0.05)
    assert result.breakdown["quantity"] == 0
    assert len(result.explanation) == 5


def test_score_is_deterministic():
    scorer = CompatibilityScorer()
    donation, request = make_donation(), make_request()

    first = scorer.score(donation, request)
    second = scorer.score(donation, request)

    assert first.score == second.score
    assert first.explanation == second.explanation
    assert first.breakdown == second.breakdown


def test_category_mismatch_caps_score():
    result = CompatibilityScorer().score(
        make_donation(category="books", quantity="10"), make_request(quantity="10")
    )

    assert result.breakdown["category"] == 0
    assert result.score == 30
    assert any("capped" in note for note in result.explanation)


def test_category_alias_counts_as_match():
    result = CompatibilityScorer().score(
        make_donation(category="clothes"), make_request(category="Clothing")
    )
    assert result.breakdown["category"] == 40


@pytest.mark.parametrize(
    "urgency, points",
    [(Urgency.LOW, 0), (Urgency.MEDIUM, 10), (Urgency.HIGH, 20)],
)
def test_urgency_points(urgency, points):
    result = CompatibilityScorer().score(make_donation(), make_request(urgency=urgency))
    assert result.breakdown["urgency"] == points


def test_missing_location_contributes_nothing():
    result = CompatibilityScorer().score(
        make_donation(latitude=None, longitude=None), make_request()
    )
    assert result.breakdown["proximity"] == 0
    assert "proximity: location unknown" in result.explanation


def test_proximity_is_zero_beyond_radius():
    far = make_request(latitude=13.97, longitude=77.59)  # ~111 km north
    result = CompatibilityScorer().score(make_donation(), far)
    assert result.breakdown["proximity"] == 0


def test_empty_description_scores_zero():
    result = CompatibilityScorer().score(make_donation(description=""), make_request())
    assert result.breakdown["description"] == 0


def test_quantity_ratio():
    result = CompatibilityScorer().score(
        make_donation(quantity="10 boxes"), make_request(quantity="5 boxes")
    )
    assert result.breakdown["quantity"] == 5


def test_total_is_clamped_to_100():
    scorer = CompatibilityScorer(weights=ScoringWeights(category=90, urgency_high=90))
    assert scorer.score(make_donation(), make_request()).score == 100


def test_tokenize_drops_stop_words_and_numbers():
    assert tokenize("We NEED 10 boxes of the canned beans!") == {"boxes", "canned", "beans"}
    assert tokenize(None) == set()


def test_token_overlap_uses_smaller_side():
    assert token_overlap("canned vegetables and rice", "canned vegetables") == 1.0
    assert token_overlap("winter jackets", "canned vegetables") == 0.0
    assert token_overlap("", "canned vegetables") == 0.0


def test_haversine_one_degree_of_longitude_at_equator():
    assert haversine_km((0.0, 0.0), (0.0, 1.0)) == pytest.approx(111.19, abs=0.05)


def test_parse_leading_number():
    assert parse_leading_number("10 boxes") == 10
    assert parse_leading_number("about 2.5 kg") == 2.5
    assert parse_leading_number("some") is None


@pytest.mark.parametrize(
    "oracle",
    [
        BrokenOracle(error=RuntimeError("service down")),
        BrokenOracle(error=OracleError("bad gateway")),
        BrokenOracle(answer="very similar"),
        BrokenOracle(answer=1.7),
        BrokenOracle(answer=math.nan),
        BrokenOracle(answer=None),
        BrokenOracle(answer=True),
    ],
)
def test_oracle_failure_falls_back_to_token_overlap(oracle):
    donation, request = make_donation(), make_request()
    baseline = CompatibilityScorer().score(donation, request)

    result = CompatibilityScorer(oracle=oracle).score(donation, request)

    assert oracle.calls == 1
    assert result.score == baseline.score
    assert result.oracle_used is False
    assert any("unavailable" in note for note in result.explanation)


def test_oracle_augments_token_overlap():
    oracle = BrokenOracle(answer=0.5)
    result = CompatibilityScorer(oracle=oracle).score(make_donation(), make_request())

    # (0.5 semantic + 1.0 keyword overlap) / 2 * 20
    assert result.breakdown["description"] == 15
    assert result.oracle_used is True


def test_oracle_replace_mode():
    oracle = BrokenOracle(answer=0.25)
    scorer = CompatibilityScorer(oracle=oracle, oracle_mode="replace")
    assert scorer.score(make_donation(), make_request()).breakdown["description"] == 5


def test_oracle_not_consulted_without_descriptions():
    oracle = BrokenOracle(answer=1.0)
    result = CompatibilityScorer(oracle=oracle).score(
        make_donation(description=""), make_request()
    )
    assert oracle.calls == 0
    assert result.breakdown["description"] == 0


def test_unknown_oracle_mode_rejected():
    with pytest.raises(ValueError):
        CompatibilityScorer(oracle_mode="vote")
