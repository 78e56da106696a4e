from typing import List, Optional

from fastapi import APIRouter, Query

from matching import CandidateList
from models import Request as RequestModel
from schemas import RequestCreate
from services import OrchestratorDep
from .auth import CallerDep

router = APIRouter(tags=["requests"])


@router.post("/", response_model=RequestModel, status_code=201)
def create_request(request_data: RequestCreate, engine: OrchestratorDep, caller: CallerDep):
    return engine.register_request(caller, request_data)


@router.get("/", response_model=List[RequestModel])
def list_requests(
    engine: OrchestratorDep,
    fulfilled: Optional[bool] = None,
    requesting_org_id: Optional[str] = None,
    category: Optional[str] = None,
):
    return engine.list_requests(
        fulfilled=fulfilled, requesting_org_id=requesting_org_id, category=category
    )


@router.get("/{request_id}", response_model=RequestModel)
def get_request(request_id: str, engine: OrchestratorDep):
    return engine.get_request(request_id)


@router.get("/{request_id}/suggestions", response_model=CandidateList)
def request_suggestions(
    request_id: str,
    engine: OrchestratorDep,
    min_score: Optional[float] = Query(default=None, ge=0, le=100),
    limit: Optional[int] = Query(default=None, ge=1),
):
    """
    Open donations ranked by compatibility with this request.
    """
    return engine.suggest_matches(request_id=request_id, min_score=min_score, limit=limit)


@router.post("/{request_id}/fulfill", response_model=RequestModel)
def fulfill_request(request_id: str, engine: OrchestratorDep, caller: CallerDep):
    """
    Mark a request as fulfilled outside the platform. Idempotent.
    """
    return engine.fulfill_request_manually(caller, request_id)
