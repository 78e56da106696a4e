"""Public API of the matching engine.

The orchestrator validates input, checks the caller's role and ownership, and
delegates to the candidate generator and the claim arbiter. It never touches
record versions itself except through the store's compare-and-update.
"""
import logging
from datetime import timedelta
from typing import Callable, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from models import (
    Donation,
    DonationStatus,
    Match,
    MatchStatus,
    OrgRole,
    Request,
    utcnow,
)
from schemas import DonationCreate, RequestCreate

from .arbiter import ClaimArbiter, ClaimResult, ReleaseResult
from .candidates import CandidateGenerator, CandidateList
from .errors import (
    Conflict,
    Forbidden,
    InvalidTransition,
    NotFound,
    ValidationError,
)
from .events import EventBus, EventKind, LifecycleEvent
from .scoring import CompatibilityScorer
from .store import EntityStore

logger = logging.getLogger(__name__)


class CallerContext(BaseModel):
    """Who is calling, as vouched for by the identity provider."""

    model_config = ConfigDict(frozen=True)

    org_id: str
    role: OrgRole


class ReconciliationReport(BaseModel):
    requests_marked: List[str] = Field(default_factory=list)
    orphaned_donations: List[str] = Field(default_factory=list)
    dangling_matches: List[str] = Field(default_factory=list)


def _validate(schema, data):
    if isinstance(data, BaseModel):
        data = data.model_dump()
    try:
        return schema.model_validate(data)
    except PydanticValidationError as exc:
        errors = exc.errors(include_url=False, include_context=False, include_input=False)
        fields = ", ".join(".".join(str(part) for part in err["loc"]) for err in errors)
        raise ValidationError(f"Invalid {schema.__name__}: {fields}", errors=errors) from exc


class LifecycleOrchestrator:
    def __init__(
        self,
        store: EntityStore,
        scorer: Optional[CompatibilityScorer] = None,
        events: Optional[EventBus] = None,
        max_items_per_side: int = 200,
        same_city_only: bool = False,
        retry_limit: int = 3,
        clock: Callable = utcnow,
    ):
        self.store = store
        self.scorer = scorer or CompatibilityScorer()
        self.categories = self.scorer.categories
        self.events = events or EventBus()
        self.clock = clock
        self.retry_limit = max(1, retry_limit)
        self.generator = CandidateGenerator(
            store,
            self.scorer,
            max_items_per_side=max_items_per_side,
            same_city_only=same_city_only,
        )
        self.arbiter = ClaimArbiter(store, self.scorer, retry_limit=retry_limit, clock=clock)

    # -- registration ------------------------------------------------------

    def register_donation(
        self, caller: CallerContext, data: Union[DonationCreate, dict]
    ) -> Donation:
        self._require_role(caller, OrgRole.DONOR, "register donations")
        payload = _validate(DonationCreate, data)
        now = self.clock()
        donation = Donation(
            donor_org_id=caller.org_id,
            category=self._known_category(payload.category),
            quantity=payload.quantity,
            condition=payload.condition,
            description=payload.description,
            city=payload.city,
            latitude=payload.latitude,
            longitude=payload.longitude,
            status=DonationStatus.OPEN,
            created_at=now,
            updated_at=now,
        )
        donation_id = self.store.create(Donation, donation)
        self._emit(EventKind.DONATION_REGISTERED, caller, donation_id=donation_id)
        return self.store.get(Donation, donation_id)

    def register_request(
        self, caller: CallerContext, data: Union[RequestCreate, dict]
    ) -> Request:
        self._require_role(caller, OrgRole.RECIPIENT, "register requests")
        payload = _validate(RequestCreate, data)
        now = self.clock()
        request = Request(
            requesting_org_id=caller.org_id,
            category=self._known_category(payload.category),
            quantity=payload.quantity,
            urgency=payload.urgency,
            description=payload.description,
            city=payload.city,
            latitude=payload.latitude,
            longitude=payload.longitude,
            fulfilled=False,
            created_at=now,
            updated_at=now,
        )
        request_id = self.store.create(Request, request)
        self._emit(EventKind.REQUEST_REGISTERED, caller, request_id=request_id)
        return self.store.get(Request, request_id)

    # -- matching ----------------------------------------------------------

    def suggest_matches(
        self,
        donation_id: Optional[str] = None,
        request_id: Optional[str] = None,
        min_score: Optional[float] = None,
        limit: Optional[int] = None,
    ) -> CandidateList:
        """Rank candidates for one donation or one request."""
        if (donation_id is None) == (request_id is None):
            raise ValidationError("Give exactly one of donation_id or request_id")
        return self.generator.generate(
            donation_id=donation_id,
            request_id=request_id,
            min_score=min_score,
            limit=limit,
        )

    def generate_candidates(
        self, min_score: Optional[float] = None, limit: Optional[int] = None
    ) -> CandidateList:
        return self.generator.generate(min_score=min_score, limit=limit)

    def claim(
        self,
        caller: CallerContext,
        donation_id: str,
        request_id: Optional[str] = None,
    ) -> ClaimResult:
        self._require_role(caller, OrgRole.RECIPIENT, "claim donations")
        if request_id is not None:
            request = self.store.get(Request, request_id)
            if request.requesting_org_id != caller.org_id:
                raise Forbidden(
                    "You can only claim against your own requests.", request_id=request_id
                )

        result = self.arbiter.claim(donation_id, caller.org_id, request_id=request_id)
        self._emit(
            EventKind.DONATION_CLAIMED,
            caller,
            donation_id=donation_id,
            request_id=request_id,
            match_id=result.match.id,
        )
        if request_id is not None and not result.warnings:
            self._emit(
                EventKind.REQUEST_FULFILLED,
                caller,
                request_id=request_id,
                match_id=result.match.id,
            )
        return result

    def complete(self, caller: CallerContext, match_id: str) -> Match:
        match = self.store.get(Match, match_id)
        self._require_party(caller, match, "complete")
        completed = self.arbiter.complete(match_id)
        self._emit(
            EventKind.MATCH_COMPLETED,
            caller,
            donation_id=completed.donation_id,
            request_id=completed.request_id,
            match_id=match_id,
        )
        return completed

    def cancel(
        self,
        caller: CallerContext,
        donation_id: Optional[str] = None,
        match_id: Optional[str] = None,
    ) -> ReleaseResult:
        """Cancel by match (release the donation) or by donation (withdraw it)."""
        if (donation_id is None) == (match_id is None):
            raise ValidationError("Give exactly one of donation_id or match_id")

        if match_id is not None:
            match = self.store.get(Match, match_id)
            self._require_party(caller, match, "cancel")
            result = self.arbiter.release(match_id)
            self._emit(
                EventKind.MATCH_RELEASED,
                caller,
                donation_id=result.donation.id,
                request_id=result.match.request_id,
                match_id=match_id,
            )
            return result

        donation = self.store.get(Donation, donation_id)
        if caller.org_id != donation.donor_org_id:
            raise Forbidden("Only the donating organization can withdraw a donation.")
        result = self.arbiter.withdraw(donation_id)
        self._emit(
            EventKind.DONATION_WITHDRAWN,
            caller,
            donation_id=donation_id,
            match_id=result.match.id if result.match else None,
        )
        return result

    def fulfill_request_manually(self, caller: CallerContext, request_id: str) -> Request:
        request = self.store.get(Request, request_id)
        if request.requesting_org_id != caller.org_id:
            raise Forbidden("You can only fulfil your own requests.", request_id=request_id)

        # Setting the flag is idempotent, so a lost race is simply re-read.
        for _ in range(self.retry_limit):
            if request.fulfilled:
                return request

            def fulfil(record: Request) -> None:
                record.fulfilled = True
                record.updated_at = self.clock()

            try:
                self.store.compare_and_update(Request, request_id, request.version, fulfil)
            except Conflict:
                request = self.store.get(Request, request_id)
                continue
            self._emit(EventKind.REQUEST_FULFILLED, caller, request_id=request_id)
            return self.store.get(Request, request_id)

        raise Conflict(f"Request {request_id} keeps changing; re-read and retry", id=request_id)

    # -- reads -------------------------------------------------------------

    def get_donation(self, donation_id: str) -> Donation:
        return self.store.get(Donation, donation_id)

    def get_request(self, request_id: str) -> Request:
        return self.store.get(Request, request_id)

    def get_match(self, match_id: str) -> Match:
        return self.store.get(Match, match_id)

    def list_donations(
        self,
        status: Optional[DonationStatus] = None,
        category: Optional[str] = None,
        donor_org_id: Optional[str] = None,
        city: Optional[str] = None,
    ) -> List[Donation]:
        equals = {}
        if status is not None:
            equals["status"] = DonationStatus(status)
        if category is not None:
            equals["category"] = self.categories.normalize(category)
        if donor_org_id is not None:
            equals["donor_org_id"] = donor_org_id
        predicate = None
        if city:
            wanted = city.strip().lower()
            predicate = lambda d: (d.city or "").strip().lower() == wanted  # noqa: E731
        return self.store.query(Donation, predicate, **equals)

    def list_requests(
        self,
        fulfilled: Optional[bool] = None,
        requesting_org_id: Optional[str] = None,
        category: Optional[str] = None,
    ) -> List[Request]:
        equals = {}
        if fulfilled is not None:
            equals["fulfilled"] = fulfilled
        if requesting_org_id is not None:
            equals["requesting_org_id"] = requesting_org_id
        if category is not None:
            equals["category"] = self.categories.normalize(category)
        return self.store.query(Request, **equals)

    def list_matches(
        self,
        status: Optional[MatchStatus] = None,
        claimant_org_id: Optional[str] = None,
        donation_id: Optional[str] = None,
    ) -> List[Match]:
        equals = {}
        if status is not None:
            equals["status"] = MatchStatus(status)
        if claimant_org_id is not None:
            equals["claimant_org_id"] = claimant_org_id
        if donation_id is not None:
            equals["donation_id"] = donation_id
        return self.store.query(Match, **equals)

    # -- maintenance -------------------------------------------------------

    def reconcile(self) -> ReconciliationReport:
        """Repair what lost secondary updates left behind.

        Unmarked requests of live matches are marked fulfilled, and active
        matches their donation no longer points at are cancelled. Donations
        pointing at a missing match are only reported.
        """
        report = ReconciliationReport()

        for match in self.store.query(
            Match, lambda m: m.status in (MatchStatus.ACTIVE, MatchStatus.COMPLETED)
        ):
            donation = self.store.get(Donation, match.donation_id)
            if donation.match_id != match.id:
                if match.status == MatchStatus.ACTIVE:
                    try:
                        self.arbiter.cancel_match(match)
                    except (InvalidTransition, Conflict) as exc:
                        logger.warning("Could not cancel dangling match %s: %s", match.id, exc)
                        continue
                    report.dangling_matches.append(match.id)
                continue
            if match.request_id is None:
                continue
            request = self.store.get(Request, match.request_id)
            if request.fulfilled:
                continue

            def fulfil(record: Request, match_id=match.id) -> None:
                record.fulfilled = True
                record.fulfilled_by_match_id = match_id
                record.updated_at = self.clock()

            try:
                self.store.compare_and_update(Request, request.id, request.version, fulfil)
                report.requests_marked.append(request.id)
            except Conflict:
                logger.warning("Request %s changed during reconciliation; skipped", request.id)

        for donation in self.store.query(
            Donation,
            lambda d: d.status in (DonationStatus.MATCHED, DonationStatus.COMPLETED),
        ):
            if donation.match_id is None:
                report.orphaned_donations.append(donation.id)
                continue
            try:
                self.store.get(Match, donation.match_id)
            except NotFound:
                report.orphaned_donations.append(donation.id)

        if report.orphaned_donations or report.dangling_matches:
            logger.warning(
                "Reconciliation found %d orphaned donations and cancelled %d dangling matches",
                len(report.orphaned_donations),
                len(report.dangling_matches),
            )
        return report

    def release_stale_matches(self, max_age: timedelta) -> List[str]:
        """Release active matches older than ``max_age``. Meant for a periodic sweep."""
        cutoff = self.clock() - max_age
        released = []
        for match in self.store.query(
            Match, lambda m: m.created_at < cutoff, status=MatchStatus.ACTIVE
        ):
            try:
                result = self.arbiter.release(match.id)
            except (InvalidTransition, Conflict) as exc:
                logger.info("Skipping stale match %s: %s", match.id, exc)
                continue
            released.append(match.id)
            self.events.emit(
                LifecycleEvent(
                    kind=EventKind.MATCH_RELEASED,
                    donation_id=result.donation.id,
                    request_id=match.request_id,
                    match_id=match.id,
                )
            )
        if released:
            logger.info("Released %d stale matches", len(released))
        return released

    # -- helpers -----------------------------------------------------------

    def _known_category(self, category: str) -> str:
        if not self.categories.is_known(category):
            raise ValidationError(
                f"Unknown category '{category}'",
                errors=[{"loc": ["category"], "msg": f"expected one of {self.categories.names}"}],
            )
        return self.categories.normalize(category)

    def _require_role(self, caller: CallerContext, role: OrgRole, action: str) -> None:
        if caller.role != role:
            raise Forbidden(f"Only {role.value} organizations can {action}.")

    def _require_party(self, caller: CallerContext, match: Match, action: str) -> None:
        if caller.org_id == match.claimant_org_id:
            return
        donation = self.store.get(Donation, match.donation_id)
        if caller.org_id != donation.donor_org_id:
            raise Forbidden(f"Only the claimant or the donor can {action} this match.")

    def _emit(self, kind: EventKind, caller: CallerContext, **ids) -> None:
        self.events.emit(LifecycleEvent(kind=kind, org_id=caller.org_id, at=self.clock(), **ids))


