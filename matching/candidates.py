import logging
from typing import List, Optional

from pydantic import BaseModel, Field, computed_field

from models import Donation, DonationStatus, Request

from .scoring import CompatibilityScorer
from .store import EntityStore

logger = logging.getLogger(__name__)


class Candidate(BaseModel):
    donation_id: str
    request_id: str
    score: float
    explanation: List[str]
    breakdown: dict = Field(default_factory=dict)


class CandidateList(BaseModel):
    candidates: List[Candidate] = Field(default_factory=list)
    donations_considered: int = 0
    requests_considered: int = 0
    donations_skipped: int = 0
    requests_skipped: int = 0
    pairs_skipped_by_city: int = 0

    @computed_field
    @property
    def truncated(self) -> bool:
        return bool(self.donations_skipped or self.requests_skipped)


def _most_recent(records: list, limit: int) -> tuple:
    """Keep the ``limit`` newest records, returned oldest first."""
    ordered = sorted(enumerate(records), key=lambda pair: (pair[1].created_at, pair[0]))
    kept = [record for _, record in ordered[-limit:]] if limit else []
    return kept, len(records) - len(kept)


class CandidateGenerator:
    """Ranks open donations against unfulfilled requests. Never writes."""

    def __init__(
        self,
        store: EntityStore,
        scorer: CompatibilityScorer,
        max_items_per_side: int = 200,
        same_city_only: bool = False,
    ):
        self.store = store
        self.scorer = scorer
        self.max_items_per_side = max_items_per_side
        self.same_city_only = same_city_only

    def generate(
        self,
        donation_id: Optional[str] = None,
        request_id: Optional[str] = None,
        min_score: Optional[float] = None,
        limit: Optional[int] = None,
    ) -> CandidateList:
        result = CandidateList()

        if donation_id is not None:
            donation = self.store.get(Donation, donation_id)
            donations = [donation] if donation.status == DonationStatus.OPEN else []
        else:
            donations, result.donations_skipped = _most_recent(
                self.store.query(Donation, status=DonationStatus.OPEN),
                self.max_items_per_side,
            )

        if request_id is not None:
            request = self.store.get(Request, request_id)
            requests = [request] if not request.fulfilled else []
        else:
            requests, result.requests_skipped = _most_recent(
                self.store.query(Request, fulfilled=False),
                self.max_items_per_side,
            )

        result.donations_considered = len(donations)
        result.requests_considered = len(requests)
        if result.truncated:
            logger.warning(
                "Candidate generation bounded to %d records per side: "
                "%d donations and %d requests left out",
                self.max_items_per_side,
                result.donations_skipped,
                result.requests_skipped,
            )

        ranked = []
        for d_index, donation in enumerate(donations):
            for r_index, request in enumerate(requests):
                if self.same_city_only and not _same_city(donation, request):
                    result.pairs_skipped_by_city += 1
                    continue
                scored = self.scorer.score(donation, request)
                if min_score is not None and scored.score < min_score:
                    continue
                candidate = Candidate(
                    donation_id=donation.id,
                    request_id=request.id,
                    score=scored.score,
                    explanation=scored.explanation,
                    breakdown=scored.breakdown,
                )
                ranked.append((-scored.score, d_index, r_index, candidate))

        # Ties: oldest donation first, then oldest request.
        ranked.sort(key=lambda row: row[:3])
        result.candidates = [row[3] for row in ranked]
        if limit is not None:
            result.candidates = result.candidates[:limit]
        return result


def _same_city(donation: Donation, request: Request) -> bool:
    if not donation.city or not request.city:
        return True
    return donation.city.strip().lower() == request.city.strip().lower()
