from typing import List, Optional

from fastapi import APIRouter, Query

from matching import CandidateList
from models import Donation, DonationStatus
from schemas import ClaimIn, ClaimOut, DonationCreate
from services import OrchestratorDep
from .auth import CallerDep

router = APIRouter(tags=["donations"])


@router.post("/", response_model=Donation, status_code=201)
def create_donation(donation_in: DonationCreate, engine: OrchestratorDep, caller: CallerDep):
    """
    Offer a new donation. Only donor organizations can do this.
    """
    return engine.register_donation(caller, donation_in)


@router.get("/", response_model=List[Donation])
def list_donations(
    engine: OrchestratorDep,
    status: Optional[DonationStatus] = None,
    category: Optional[str] = None,
    donor_org_id: Optional[str] = None,
    city: Optional[str] = None,
):
    """
    List donations, optionally filtered by status, category, donor and city.
    """
    return engine.list_donations(
        status=status, category=category, donor_org_id=donor_org_id, city=city
    )


@router.get("/{donation_id}", response_model=Donation)
def get_donation(donation_id: str, engine: OrchestratorDep):
    return engine.get_donation(donation_id)


@router.get("/{donation_id}/suggestions", response_model=CandidateList)
def donation_suggestions(
    donation_id: str,
    engine: OrchestratorDep,
    min_score: Optional[float] = Query(default=None, ge=0, le=100),
    limit: Optional[int] = Query(default=None, ge=1),
):
    """
    Open requests ranked by compatibility with this donation.
    """
    return engine.suggest_matches(donation_id=donation_id, min_score=min_score, limit=limit)


@router.post("/{donation_id}/claim", response_model=ClaimOut)
def claim_donation(
    donation_id: str,
    engine: OrchestratorDep,
    caller: CallerDep,
    claim_in: Optional[ClaimIn] = None,
):
    """
    Claim an open donation, optionally against one of the caller's requests.
    Losing a race answers 409 AlreadyClaimed; re-run suggestions before trying again.
    """
    request_id = claim_in.request_id if claim_in else None
    result = engine.claim(caller, donation_id, request_id=request_id)
    return ClaimOut(
        match_id=result.match.id,
        donation_id=donation_id,
        request_id=request_id,
        score=result.score,
        warnings=[warning.to_dict() for warning in result.warnings],
    )


@router.post("/{donation_id}/cancel", response_model=Donation)
def cancel_donation(donation_id: str, engine: OrchestratorDep, caller: CallerDep):
    """
    Withdraw a donation. An active match on it is cancelled too.
    """
    return engine.cancel(caller, donation_id=donation_id).donation
