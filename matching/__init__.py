"""Matching & claim allocation engine."""
from .arbiter import ClaimArbiter, ClaimResult, ReleaseResult
from .candidates import Candidate, CandidateGenerator, CandidateList
from .errors import (
    AlreadyClaimed,
    Conflict,
    EngineError,
    Forbidden,
    InvalidTransition,
    NotFound,
    OracleError,
    PartialCancellationConflict,
    PartialCompletionConflict,
    PartialFulfillmentConflict,
    RequestAlreadyFulfilled,
    StoreUnavailable,
    ValidationError,
)
from .events import EventBus, EventKind, LifecycleEvent, RecentEvents
from .lifecycle import CallerContext, LifecycleOrchestrator, ReconciliationReport
from .oracle import HttpSimilarityOracle, SimilarityOracle
from .scoring import CategoryRegistry, CompatibilityScorer, ScoreResult, ScoringWeights
from .store import EntityStore, MemoryStore, SqlStore

__all__ = [
    "AlreadyClaimed",
    "CallerContext",
    "Candidate",
    "CandidateGenerator",
    "CandidateList",
    "CategoryRegistry",
    "ClaimArbiter",
    "ClaimResult",
    "CompatibilityScorer",
    "Conflict",
    "EngineError",
    "EntityStore",
    "EventBus",
    "EventKind",
    "Forbidden",
    "HttpSimilarityOracle",
    "InvalidTransition",
    "LifecycleEvent",
    "LifecycleOrchestrator",
    "MemoryStore",
    "NotFound",
    "OracleError",
    "PartialCancellationConflict",
    "PartialCompletionConflict",
    "PartialFulfillmentConflict",
    "RecentEvents",
    "ReconciliationReport",
    "ReleaseResult",
    "RequestAlreadyFulfilled",
    "ScoreResult",
    "ScoringWeights",
    "SimilarityOracle",
    "SqlStore",
    "StoreUnavailable",
    "ValidationError",
]
