import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from config import Settings, get_settings
from db import create_db_and_tables, make_engine
from logging_config import setup_logging
from matching import EngineError, RecentEvents
from routers import auth, donations, matches, requests
from services import build_orchestrator

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    "NotFound": 404,
    "Conflict": 409,
    "AlreadyClaimed": 409,
    "RequestAlreadyFulfilled": 409,
    "InvalidTransition": 409,
    "PartialCompletionConflict": 409,
    "PartialCancellationConflict": 409,
    "PartialFulfillmentConflict": 409,
    "ValidationError": 422,
    "Forbidden": 403,
    "StoreUnavailable": 503,
}


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(settings.log_level)

    app = FastAPI(title="ShareMatch")

    db_engine = make_engine(settings.database_url, echo=settings.database_echo)
    recent_events = RecentEvents()
    app.state.settings = settings
    app.state.db_engine = db_engine
    app.state.recent_events = recent_events
    app.state.orchestrator = build_orchestrator(settings, db_engine, recent_events)

    @app.on_event("startup")
    def on_startup() -> None:
        create_db_and_tables(db_engine)

    @app.exception_handler(EngineError)
    def engine_error_handler(request: Request, exc: EngineError):
        status_code = ERROR_STATUS.get(exc.kind, 400)
        if status_code >= 500:
            logger.error("%s on %s %s: %s", exc.kind, request.method, request.url.path, exc)
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    @app.get("/")
    def read_root():
        return {"service": "ShareMatch", "store": settings.store_backend}

    app.include_router(auth.router)
    app.include_router(donations.router, prefix="/donations")
    app.include_router(requests.router, prefix="/requests")
    app.include_router(matches.router, prefix="/matches")

    return app


app = create_app()
