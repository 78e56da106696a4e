"""Compatibility scoring for (donation, request) pairs.

Criteria, in precedence order:

1. category   - exact category match
2. urgency    - request urgency (low / medium / high)
3. description- token overlap between the two descriptions, or the oracle
4. proximity  - haversine distance decaying linearly to a maximum radius
5. quantity   - ratio of the leading numbers of both quantity strings

The total is clamped to [0, 100]. Without an oracle the result depends only on
the two records, so repeated calls return identical results.
"""
import logging
import re
from math import atan2, cos, radians, sin, sqrt
from typing import Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from models import Donation, Request, Urgency

from .oracle import SimilarityOracle, check_similarity

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0

DEFAULT_CATEGORIES = ("food", "clothing", "books", "other")
CATEGORY_ALIASES = {"clothes": "clothing", "book": "books"}

STOP_WORDS = frozenset(
    """
    a an and are as at be but by for from has have i in is it its of on or our
    so that the their them they this to was we were will with you your
    any some all more most very just also into per each other than then
    need needs needed require requires required request requesting want wants
    looking please urgently urgent
    """.split()
)

_TOKEN_RE = re.compile(r"[a-z]+")
_NUMBER_RE = re.compile(r"\d+(?:\.\d+)?")


class CategoryRegistry:
    """Known donation categories. Open-ended: more can be registered at startup."""

    def __init__(self, categories: Iterable[str] = DEFAULT_CATEGORIES, aliases=None):
        self._categories = set()
        self._aliases = dict(CATEGORY_ALIASES)
        if aliases:
            self._aliases.update(aliases)
        for category in categories:
            self.register(category)

    def register(self, category: str) -> str:
        name = category.strip().lower()
        if not name:
            raise ValueError("Category name cannot be empty")
        self._categories.add(name)
        return name

    def normalize(self, category: str) -> str:
        name = (category or "").strip().lower()
        return self._aliases.get(name, name)

    def is_known(self, category: str) -> bool:
        return self.normalize(category) in self._categories

    def __contains__(self, category: str) -> bool:
        return self.is_known(category)

    @property
    def names(self) -> List[str]:
        return sorted(self._categories)


class ScoringWeights(BaseModel):
    model_config = ConfigDict(frozen=True)

    category: float = 40.0
    urgency_low: float = 0.0
    urgency_medium: float = 10.0
    urgency_high: float = 20.0
    description: float = 20.0
    proximity: float = 20.0
    proximity_max_km: float = Field(default=50.0, gt=0)
    quantity: float = 10.0
    category_mismatch_cap: float = 30.0

    def urgency_points(self, urgency: Urgency) -> float:
        return {
            Urgency.LOW: self.urgency_low,
            Urgency.MEDIUM: self.urgency_medium,
            Urgency.HIGH: self.urgency_high,
        }[Urgency(urgency)]


class ScoreResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    score: float
    explanation: List[str]
    breakdown: Dict[str, float]
    oracle_used: bool = False


def tokenize(text: Optional[str]) -> set:
    if not text:
        return set()
    return {
        token
        for token in _TOKEN_RE.findall(text.lower())
        if len(token) > 1 and token not in STOP_WORDS
    }


def token_overlap(text_a: Optional[str], text_b: Optional[str]) -> float:
    """Overlap coefficient |A & B| / min(|A|, |B|); 0.0 when either side is empty."""
    tokens_a = tokenize(text_a)
    tokens_b = tokenize(text_b)
    if not tokens_a or not tokens_b:
        return 0.0
    return len(tokens_a & tokens_b) / min(len(tokens_a), len(tokens_b))


def haversine_km(origin: Tuple[float, float], target: Tuple[float, float]) -> float:
    lat1, lng1 = origin
    lat2, lng2 = target
    dlat = radians(lat2 - lat1)
    dlng = radians(lng2 - lng1)
    a = sin(dlat / 2) ** 2 + cos(radians(lat1)) * cos(radians(lat2)) * sin(dlng / 2) ** 2
    return 2 * EARTH_RADIUS_KM * atan2(sqrt(a), sqrt(1 - a))


def parse_leading_number(quantity: Optional[str]) -> Optional[float]:
    if not quantity:
        return None
    found = _NUMBER_RE.search(quantity)
    if found is None:
        return None
    return float(found.group())


def location_of(record) -> Optional[Tuple[float, float]]:
    if record.latitude is None or record.longitude is None:
        return None
    return (record.latitude, record.longitude)


class CompatibilityScorer:
    def __init__(
        self,
        weights: Optional[ScoringWeights] = None,
        categories: Optional[CategoryRegistry] = None,
        oracle: Optional[SimilarityOracle] = None,
        oracle_mode: str = "augment",
    ):
        if oracle_mode not in ("augment", "replace"):
            raise ValueError(f"Unknown oracle mode: {oracle_mode}")
        self.weights = weights or ScoringWeights()
        self.categories = categories or CategoryRegistry()
        self.oracle = oracle
        self.oracle_mode = oracle_mode

    def score(self, donation: Donation, request: Request) -> ScoreResult:
        w = self.weights
        breakdown: Dict[str, float] = {}
        explanation: List[str] = []

        donation_category = self.categories.normalize(donation.category)
        request_category = self.categories.normalize(request.category)
        category_match = donation_category == request_category
        breakdown["category"] = w.category if category_match else 0.0
        if category_match:
            explanation.append(f"category: both '{donation_category}'")
        else:
            explanation.append(
                f"category: '{donation_category}' does not match '{request_category}'"
            )

        breakdown["urgency"] = w.urgency_points(request.urgency)
        explanation.append(f"urgency: request is {Urgency(request.urgency).value}")

        similarity, used_oracle, note = self._description_similarity(
            donation.description, request.description
        )
        breakdown["description"] = w.description * similarity
        explanation.append(note)

        breakdown["proximity"], note = self._proximity(donation, request)
        explanation.append(note)

        breakdown["quantity"], note = self._quantity(donation.quantity, request.quantity)
        explanation.append(note)

        total = sum(breakdown.values())
        if not category_match and total > w.category_mismatch_cap:
            total = w.category_mismatch_cap
            explanation.append(f"capped at {w.category_mismatch_cap:g}: category mismatch")
        total = round(min(max(total, 0.0), 100.0), 2)

        return ScoreResult(
            score=total,
            explanation=explanation,
            breakdown={key: round(value, 2) for key, value in breakdown.items()},
            oracle_used=used_oracle,
        )

    def _description_similarity(self, text_a, text_b) -> Tuple[float, bool, str]:
        overlap = token_overlap(text_a, text_b)
        if not text_a or not text_b:
            return 0.0, False, "description: missing on one side"
        if self.oracle is None:
            return overlap, False, f"description: {overlap:.0%} keyword overlap"

        try:
            hint = check_similarity(self.oracle.similarity(text_a, text_b))
        except Exception as exc:
            logger.warning("Similarity oracle failed, using keyword overlap: %s", exc)
            return overlap, False, (
                f"description: {overlap:.0%} keyword overlap (similarity service unavailable)"
            )

        if self.oracle_mode == "replace":
            return hint, True, f"description: {hint:.0%} semantic similarity"
        combined = (hint + overlap) / 2
        return combined, True, (
            f"description: {combined:.0%} similarity "
            f"(semantic {hint:.0%}, keywords {overlap:.0%})"
        )

    def _proximity(self, donation, request) -> Tuple[float, str]:
        origin = location_of(donation)
        target = location_of(request)
        if origin is None or target is None:
            return 0.0, "proximity: location unknown"
        distance = haversine_km(origin, target)
        radius = self.weights.proximity_max_km
        points = max(0.0, self.weights.proximity * (1 - distance / radius))
        return points, f"proximity: {distance:.1f} km apart"

    def _quantity(self, offered, wanted) -> Tuple[float, str]:
        offered_n = parse_leading_number(offered)
        wanted_n = parse_leading_number(wanted)
        if offered_n is None or wanted_n is None:
            return 0.0, "quantity: not comparable"
        largest = max(offered_n, wanted_n)
        if largest <= 0:
            return 0.0, "quantity: not comparable"
        ratio = min(offered_n, wanted_n) / largest
        return self.weights.quantity * ratio, f"quantity: {offered_n:g} offered, {wanted_n:g} wanted"
