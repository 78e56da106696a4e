"""Claim arbitration and the donation/match state machine.

    open --claim--> matched --complete--> completed
    matched --release--> open        (match cancelled)
    open | matched --withdraw--> cancelled

A claim is decided by the donation's compare-and-update: of N claimants that
read the same open version, exactly one can move it forward, and that update
is never retried. Once a donation is matched, complete, release and withdraw
are decided by the match's update instead: the match leaves `active` first and
the donation follows, so a donation only reopens after its old match is
cancelled. The follow-up updates (donation, request) are retried a bounded
number of times.
"""
import logging
from typing import Callable, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from models import (
    Donation,
    DonationStatus,
    Match,
    MatchStatus,
    Request,
    new_id,
    utcnow,
)

from .errors import (
    AlreadyClaimed,
    Conflict,
    EngineError,
    InvalidTransition,
    PartialCancellationConflict,
    PartialCompletionConflict,
    PartialFulfillmentConflict,
    RequestAlreadyFulfilled,
)
from .scoring import CompatibilityScorer
from .store import EntityStore

logger = logging.getLogger(__name__)


class ClaimResult(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    match: Match
    score: Optional[float] = None
    warnings: List[EngineError] = Field(default_factory=list)


class ReleaseResult(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    match: Optional[Match] = None
    donation: Donation
    warnings: List[EngineError] = Field(default_factory=list)


class ClaimArbiter:
    def __init__(
        self,
        store: EntityStore,
        scorer: CompatibilityScorer,
        retry_limit: int = 3,
        clock: Callable = utcnow,
    ):
        self.store = store
        self.scorer = scorer
        self.retry_limit = max(1, retry_limit)
        self.clock = clock

    # -- claim -----------------------------------------------------------

    def claim(
        self,
        donation_id: str,
        claimant_org_id: str,
        request_id: Optional[str] = None,
    ) -> ClaimResult:
        donation = self.store.get(Donation, donation_id)
        if donation.status != DonationStatus.OPEN:
            raise AlreadyClaimed(
                f"Donation {donation_id} is {donation.status.value}, not open",
                donation_id=donation_id,
            )

        request = None
        score = None
        if request_id is not None:
            request = self.store.get(Request, request_id)
            if request.fulfilled:
                raise RequestAlreadyFulfilled(
                    f"Request {request_id} is already fulfilled", request_id=request_id
                )
            score = self.scorer.score(donation, request).score

        match_id = new_id()
        now = self.clock()

        def take(record: Donation) -> None:
            record.status = DonationStatus.MATCHED
            record.match_id = match_id
            record.updated_at = now

        try:
            claimed_version = self.store.compare_and_update(
                Donation, donation_id, donation.version, take
            )
        except Conflict as exc:
            raise AlreadyClaimed(
                f"Donation {donation_id} was claimed by another organization",
                donation_id=donation_id,
            ) from exc

        match = Match(
            id=match_id,
            donation_id=donation_id,
            request_id=request_id,
            claimant_org_id=claimant_org_id,
            status=MatchStatus.ACTIVE,
            score=score,
            created_at=now,
            updated_at=now,
        )
        try:
            self.store.create(Match, match)
        except EngineError:
            logger.error(
                "Could not record match %s for donation %s; reopening the donation",
                match_id,
                donation_id,
            )
            self._reopen_after_failed_match(donation_id, claimed_version, match_id)
            raise

        logger.info(
            "Donation %s claimed by org %s (match %s, score %s)",
            donation_id,
            claimant_org_id,
            match_id,
            score,
        )

        warnings: List[EngineError] = []
        if request is not None:
            warning = self._mark_fulfilled(request, match_id)
            if warning is not None:
                warnings.append(warning)

        return ClaimResult(match=self.store.get(Match, match_id), score=score, warnings=warnings)

    def _reopen_after_failed_match(self, donation_id, claimed_version, match_id) -> None:
        def reopen(record: Donation) -> None:
            if record.match_id == match_id:
                record.status = DonationStatus.OPEN
                record.match_id = None
                record.updated_at = self.clock()

        try:
            self.store.compare_and_update(Donation, donation_id, claimed_version, reopen)
        except EngineError as exc:
            logger.error(
                "Donation %s left matched to missing match %s: %s",
                donation_id,
                match_id,
                exc,
            )

    def _mark_fulfilled(self, request: Request, match_id: str) -> Optional[EngineError]:
        current = request
        for attempt in range(self.retry_limit):
            if attempt:
                current = self.store.get(Request, request.id)
            if current.fulfilled:
                if current.fulfilled_by_match_id == match_id:
                    return None
                break

            def fulfil(record: Request) -> None:
                record.fulfilled = True
                record.fulfilled_by_match_id = match_id
                record.updated_at = self.clock()

            try:
                self.store.compare_and_update(Request, request.id, current.version, fulfil)
                return None
            except Conflict:
                logger.debug("Request %s changed while marking fulfilled, retrying", request.id)

        warning = PartialFulfillmentConflict(
            f"Match {match_id} committed but request {request.id} could not be marked fulfilled",
            match_id=match_id,
            request_id=request.id,
        )
        logger.warning(warning.message)
        return warning

    # -- complete --------------------------------------------------------

    def complete(self, match_id: str) -> Match:
        match = self.store.get(Match, match_id)
        if match.status == MatchStatus.CANCELLED:
            raise InvalidTransition(f"Match {match_id} was cancelled", match_id=match_id)

        donation = self.store.get(Donation, match.donation_id)
        if donation.match_id != match.id or donation.status not in (
            DonationStatus.MATCHED,
            DonationStatus.COMPLETED,
        ):
            raise InvalidTransition(
                f"Donation {donation.id} is {donation.status.value}; cannot complete match {match_id}",
                match_id=match_id,
                donation_id=donation.id,
            )

        if match.status == MatchStatus.ACTIVE:
            now = self.clock()

            def finish(record: Match) -> None:
                record.status = MatchStatus.COMPLETED
                record.completed_at = now
                record.updated_at = now

            self.store.compare_and_update(Match, match_id, match.version, finish)
        else:
            # Interrupted completion: only the donation step can be left.
            logger.info("Resuming completion of match %s", match_id)

        if not self._settle_donation(match, DonationStatus.COMPLETED):
            raise PartialCompletionConflict(
                f"Match {match_id} completed but donation {donation.id} could not be updated; "
                "re-read and complete again",
                match_id=match_id,
                donation_id=donation.id,
            )
        logger.info("Match %s completed (donation %s)", match_id, donation.id)
        return self.store.get(Match, match_id)

    # -- release / withdraw ------------------------------------------------

    def release(self, match_id: str) -> ReleaseResult:
        """Cancel an active match and put its donation back in the open pool.

        The match is cancelled before the donation reopens, so a new claim can
        never coexist with the old match.
        """
        match = self.store.get(Match, match_id)
        donation = self.store.get(Donation, match.donation_id)
        owns_donation = donation.match_id == match.id

        if match.status == MatchStatus.ACTIVE:
            if owns_donation and donation.status != DonationStatus.MATCHED:
                raise InvalidTransition(
                    f"Donation {donation.id} is {donation.status.value}",
                    donation_id=donation.id,
                )
            match = self.cancel_match(match)
        elif not (
            match.status == MatchStatus.CANCELLED
            and owns_donation
            and donation.status == DonationStatus.MATCHED
        ):
            raise InvalidTransition(
                f"Match {match_id} is {match.status.value}; only active matches can be cancelled",
                match_id=match_id,
            )
        else:
            logger.info("Resuming release of match %s", match_id)

        if not self._settle_donation(match, DonationStatus.OPEN):
            raise PartialCancellationConflict(
                f"Match {match_id} cancelled but donation {donation.id} could not be reopened; "
                "re-read and cancel again",
                match_id=match_id,
                donation_id=donation.id,
            )
        donation = self.store.get(Donation, donation.id)

        warnings = []
        warning = self._undo_fulfilment(match)
        if warning is not None:
            warnings.append(warning)
        logger.info(
            "Match %s released; donation %s is %s", match_id, donation.id, donation.status.value
        )
        return ReleaseResult(match=match, donation=donation, warnings=warnings)

    def withdraw(self, donation_id: str) -> ReleaseResult:
        """Cancel a donation for good, cancelling its active match first if it has one."""
        donation = self.store.get(Donation, donation_id)
        if donation.status not in (DonationStatus.OPEN, DonationStatus.MATCHED):
            raise InvalidTransition(
                f"Donation {donation_id} is {donation.status.value} and cannot be cancelled",
                donation_id=donation_id,
            )

        if donation.match_id is None:
            self.store.compare_and_update(
                Donation, donation_id, donation.version, self._cancel_donation
            )
            logger.info("Donation %s withdrawn", donation_id)
            return ReleaseResult(donation=self.store.get(Donation, donation_id))

        match = self.cancel_match(self.store.get(Match, donation.match_id))
        if not self._withdraw_donation(match):
            raise PartialCancellationConflict(
                f"Match {match.id} cancelled but donation {donation_id} could not be withdrawn; "
                "cancel the donation again",
                match_id=match.id,
                donation_id=donation_id,
            )
        logger.info("Donation %s withdrawn", donation_id)

        warnings = []
        warning = self._undo_fulfilment(match)
        if warning is not None:
            warnings.append(warning)
        return ReleaseResult(
            match=match, donation=self.store.get(Donation, donation_id), warnings=warnings
        )

    # -- helpers -----------------------------------------------------------

    def _cancel_donation(self, record: Donation) -> None:
        record.status = DonationStatus.CANCELLED
        record.match_id = None
        record.updated_at = self.clock()

    def cancel_match(self, match: Match) -> Match:
        """Move a match to cancelled. Idempotent; a completed match cannot be cancelled."""
        current = match
        for attempt in range(self.retry_limit):
            if attempt:
                current = self.store.get(Match, match.id)
            if current.status == MatchStatus.CANCELLED:
                return current
            if current.status != MatchStatus.ACTIVE:
                raise InvalidTransition(
                    f"Match {match.id} is {current.status.value}", match_id=match.id
                )

            def cancel(record: Match) -> None:
                now = self.clock()
                record.status = MatchStatus.CANCELLED
                record.cancelled_at = now
                record.updated_at = now

            try:
                self.store.compare_and_update(Match, match.id, current.version, cancel)
                return self.store.get(Match, match.id)
            except Conflict:
                logger.debug("Match %s changed while cancelling, retrying", match.id)
        raise Conflict(f"Match {match.id} keeps changing; re-read and retry", id=match.id)

    def _settle_donation(self, match: Match, status: DonationStatus) -> bool:
        """Move the donation held by ``match`` from matched to completed or open.

        Retries on version conflicts and returns False when the retries run out.
        """
        for _ in range(self.retry_limit):
            donation = self.store.get(Donation, match.donation_id)
            if donation.match_id != match.id:
                if status == DonationStatus.OPEN:
                    # Already released; nothing points at this match any more.
                    return True
                raise InvalidTransition(
                    f"Donation {donation.id} is no longer held by match {match.id}",
                    donation_id=donation.id,
                    match_id=match.id,
                )
            if donation.status == status:
                return True
            if donation.status != DonationStatus.MATCHED:
                raise InvalidTransition(
                    f"Donation {donation.id} is {donation.status.value}",
                    donation_id=donation.id,
                )

            def settle(record: Donation) -> None:
                record.status = status
                if status == DonationStatus.OPEN:
                    record.match_id = None
                record.updated_at = self.clock()

            try:
                self.store.compare_and_update(Donation, donation.id, donation.version, settle)
                return True
            except Conflict:
                logger.debug("Donation %s changed while settling, retrying", donation.id)
        logger.warning("Gave up moving donation %s to %s", match.donation_id, status.value)
        return False

    def _withdraw_donation(self, match: Match) -> bool:
        """Cancel the donation once ``match`` is cancelled. False when retries run out."""
        for _ in range(self.retry_limit):
            donation = self.store.get(Donation, match.donation_id)
            if donation.status == DonationStatus.CANCELLED:
                return True
            if donation.status == DonationStatus.COMPLETED:
                raise InvalidTransition(
                    f"Donation {donation.id} is completed", donation_id=donation.id
                )
            if donation.match_id not in (None, match.id):
                raise Conflict(
                    f"Donation {donation.id} was claimed again; re-read and retry",
                    id=donation.id,
                )
            try:
                self.store.compare_and_update(
                    Donation, donation.id, donation.version, self._cancel_donation
                )
                return True
            except Conflict:
                logger.debug("Donation %s changed while withdrawing, retrying", donation.id)
        logger.warning("Gave up withdrawing donation %s", match.donation_id)
        return False

    def _undo_fulfilment(self, match: Match) -> Optional[EngineError]:
        if match.request_id is None:
            return None
        for _ in range(self.retry_limit):
            request = self.store.get(Request, match.request_id)
            if request.fulfilled_by_match_id != match.id:
                return None

            def reopen(record: Request) -> None:
                record.fulfilled = False
                record.fulfilled_by_match_id = None
                record.updated_at = self.clock()

            try:
                self.store.compare_and_update(Request, request.id, request.version, reopen)
                return None
            except Conflict:
                logger.debug("Request %s changed while reopening, retrying", request.id)

        warning = PartialFulfillmentConflict(
            f"Match {match.id} cancelled but request {match.request_id} is still marked fulfilled",
            match_id=match.id,
            request_id=match.request_id,
        )
        logger.warning(warning.message)
        return warning
