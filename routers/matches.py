from typing import List, Optional

from fastapi import APIRouter, Query

from matching import CandidateList, LifecycleEvent, ReconciliationReport
from models import Match, MatchStatus
from services import OrchestratorDep, RecentEventsDep
from .auth import CallerDep

router = APIRouter(tags=["matches"])


@router.get("/", response_model=List[Match])
def list_matches(
    engine: OrchestratorDep,
    status: Optional[MatchStatus] = None,
    claimant_org_id: Optional[str] = None,
    donation_id: Optional[str] = None,
):
    return engine.list_matches(
        status=status, claimant_org_id=claimant_org_id, donation_id=donation_id
    )


@router.get("/candidates", response_model=CandidateList)
def list_candidates(
    engine: OrchestratorDep,
    min_score: Optional[float] = Query(default=None, ge=0, le=100),
    limit: Optional[int] = Query(default=None, ge=1),
):
    """
    Every open donation against every unfulfilled request, best first.
    Bounded per side; skipped counts are reported in the body.
    """
    return engine.generate_candidates(min_score=min_score, limit=limit)


@router.post("/reconcile", response_model=ReconciliationReport)
def reconcile(engine: OrchestratorDep, caller: CallerDep):
    return engine.reconcile()


@router.get("/events", response_model=List[LifecycleEvent])
def recent_events(recent: RecentEventsDep, limit: int = Query(default=50, ge=1, le=500)):
    return recent.latest(limit)


@router.get("/{match_id}", response_model=Match)
def get_match(match_id: str, engine: OrchestratorDep):
    return engine.get_match(match_id)


@router.post("/{match_id}/complete", response_model=Match)
def complete_match(match_id: str, engine: OrchestratorDep, caller: CallerDep):
    """
    Mark the hand-over as done. Donation and match both become completed.
    """
    return engine.complete(caller, match_id)


@router.post("/{match_id}/cancel", response_model=Match)
def cancel_match(match_id: str, engine: OrchestratorDep, caller: CallerDep):
    """
    Cancel an active match; the donation goes back to the open pool.
    """
    return engine.cancel(caller, match_id=match_id).match
