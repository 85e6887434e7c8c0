import logging
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from .config import Settings
from .database import DatabaseManager
from .orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)

CORS_ALLOW_HEADERS = ['authorization', 'x-client-info', 'apikey', 'content-type']


def cors_headers(allow_origins: List[str], origin: Optional[str]) -> Dict[str, str]:
    """CORS headers for a response to a request from ``origin``."""
    headers = {'Access-Control-Allow-Headers': ', '.join(CORS_ALLOW_HEADERS)}
    if '*' in allow_origins:
        headers['Access-Control-Allow-Origin'] = '*'
    elif origin and origin in allow_origins:
        headers['Access-Control-Allow-Origin'] = origin
        headers['Vary'] = 'Origin'
    return headers


def create_app(
    settings: Optional[Settings] = None,
    orchestrator: Optional[SyncOrchestrator] = None
) -> FastAPI:
    """Build the HTTP boundary.

    Sync endpoints always answer 200 with a JSON body carrying ``success``.
    Allowed origins come from ``settings.cors_allow_origins``.
    """
    if settings is None:
        settings = Settings()

    app = FastAPI(title="feedsync", version="1.0")
    app.state.settings = settings
    app.state.orchestrator = orchestrator
    allow_origins = list(settings.cors_allow_origins)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allow_origins,
        allow_methods=["*"],
        allow_headers=CORS_ALLOW_HEADERS,
    )

    @app.on_event("startup")
    async def on_startup():
        if app.state.orchestrator is None:
            app.state.settings.ensure_directories()
            db_manager = DatabaseManager(app.state.settings)
            db_manager.init_db()
            app.state.orchestrator = SyncOrchestrator(app.state.settings, db_manager=db_manager)
        logger.info("feedsync server started")

    @app.options("/{path:path}")
    async def preflight(path: str, request: Request):
        return PlainTextResponse("ok", headers=cors_headers(allow_origins, request.headers.get("Origin")))

    @app.get("/health")
    async def health():
        return {"ok": True}

    @app.post("/sync-external-calendar")
    async def sync_external_calendar(request: Request):
        payload = await _read_json(request)
        orch: SyncOrchestrator = app.state.orchestrator
        result = await orch.handle_sync_request(request.headers.get("Authorization"), payload)
        return JSONResponse(
            result, status_code=200, headers=cors_headers(allow_origins, request.headers.get("Origin"))
        )

    @app.post("/auto-sync-calendars")
    async def auto_sync_calendars(request: Request):
        orch: SyncOrchestrator = app.state.orchestrator
        result = await orch.handle_auto_sync_request(request.headers.get("Authorization"))
        return JSONResponse(
            result, status_code=200, headers=cors_headers(allow_origins, request.headers.get("Origin"))
        )

    return app


async def _read_json(request: Request) -> Optional[Dict[str, Any]]:
    try:
        payload = await request.json()
    except ValueError:
        return None
    return payload if isinstance(payload, dict) else None
