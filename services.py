"""Builds the matching engine from settings and exposes it to the routers."""
import logging
from typing import Annotated, Optional

from fastapi import Depends, Request
from sqlalchemy.engine import Engine

from config import Settings
from matching import (
    CategoryRegistry,
    CompatibilityScorer,
    EventBus,
    HttpSimilarityOracle,
    LifecycleOrchestrator,
    MemoryStore,
    RecentEvents,
    ScoringWeights,
    SqlStore,
)
from matching.scoring import DEFAULT_CATEGORIES

logger = logging.getLogger(__name__)


def build_scorer(settings: Settings) -> CompatibilityScorer:
    weights = ScoringWeights(
        category=settings.category_weight,
        urgency_low=settings.urgency_low_weight,
        urgency_medium=settings.urgency_medium_weight,
        urgency_high=settings.urgency_high_weight,
        description=settings.description_weight,
        proximity=settings.proximity_weight,
        proximity_max_km=settings.proximity_max_km,
        quantity=settings.quantity_weight,
        category_mismatch_cap=settings.category_mismatch_cap,
    )
    categories = CategoryRegistry(list(DEFAULT_CATEGORIES) + list(settings.extra_categories))

    oracle = None
    if settings.oracle_url:
        oracle = HttpSimilarityOracle(
            settings.oracle_url,
            api_key=settings.oracle_api_key,
            timeout=settings.oracle_timeout,
        )
        logger.info("Using similarity oracle at %s (%s)", settings.oracle_url, settings.oracle_mode)

    return CompatibilityScorer(
        weights=weights,
        categories=categories,
        oracle=oracle,
        oracle_mode=settings.oracle_mode,
    )


def build_orchestrator(
    settings: Settings,
    db_engine: Optional[Engine] = None,
    recent_events: Optional[RecentEvents] = None,
) -> LifecycleOrchestrator:
    if settings.store_backend == "memory":
        store = MemoryStore()
    else:
        store = SqlStore(db_engine)
    logger.info("Matching engine using %s store", settings.store_backend)

    events = EventBus()
    if recent_events is not None:
        events.subscribe(recent_events)

    return LifecycleOrchestrator(
        store,
        scorer=build_scorer(settings),
        events=events,
        max_items_per_side=settings.max_items_per_side,
        same_city_only=settings.same_city_only,
        retry_limit=settings.secondary_retry_limit,
    )


def get_orchestrator(request: Request) -> LifecycleOrchestrator:
    return request.app.state.orchestrator


def get_recent_events(request: Request) -> RecentEvents:
    return request.app.state.recent_events


OrchestratorDep = Annotated[LifecycleOrchestrator, Depends(get_orchestrator)]
RecentEventsDep = Annotated[RecentEvents, Depends(get_recent_events)]
