"""
Pipeline Pulse — API Server
============================

Sales and marketing attribution API over the Supabase tables filled by the
Close, Calendly and Typeform syncs.

Route groups:
  /api/health                - Health check and integration status
  /api/dashboard             - KPI dashboard
  /api/enhanced-dashboard    - Dashboard with revenue, attribution, rep names
  /api/contacts/*            - Contact list, search and detail
  /api/close-users/*         - Sales reps and their contacts/deals
  /api/sync/*                - Sync triggers and live status
  /api/attribution/*         - Multi-touch attribution
  /api/metrics               - Revenue for a date range
  /api/field-coverage-report - Data quality per table
  /api/database-health       - Row counts and repairable gaps
  /api/cache/*               - Cache stats and clearing
  /api/data-enhancement/*    - Data repairs

Errors are always returned as {"success": false, "error": "<message>"}.
"""

import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from dashboard.api.middleware import ResponseCacheMiddleware
from scripts.lib.logger import setup_logger

load_dotenv()

logger = setup_logger("api")

VERSION = "1.0.0"


def _integration_clients():
    from integrations.calendly import CalendlyClient
    from integrations.close import CloseClient
    from integrations.notion import NotionClient
    from integrations.typeform import TypeformClient

    return {
        "close": CloseClient(),
        "calendly": CalendlyClient(),
        "typeform": TypeformClient(),
        "notion": NotionClient(),
    }


# ─── Lifespan ─────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app):
    """Application startup and shutdown."""
    logger.info("Starting Pipeline Pulse...")

    app.state.integrations = _integration_clients()
    for name, client in app.state.integrations.items():
        logger.info("%s integration: %s", client.NAME,
                    "configured" if client.is_configured else "not configured")

    # Supabase connection check
    try:
        from scripts.lib.supabase_client import get_client
        get_client()
        logger.info("Supabase connected")
    except Exception as e:
        logger.warning("Supabase not available: %s", e)

    logger.info("Pipeline Pulse ready")
    yield
    logger.info("Shutting down Pipeline Pulse...")


# ─── App Setup ────────────────────────────────────────────────

cors_origins = os.getenv(
    "CORS_ORIGINS", "http://localhost:3000,http://localhost:8001"
).split(",")

app = FastAPI(
    title="Pipeline Pulse",
    version=VERSION,
    description="Sales & Marketing Attribution Dashboard API",
    lifespan=lifespan,
)

app.add_middleware(ResponseCacheMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ─── Error Envelope ───────────────────────────────────────────

@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    problems = []
    for err in exc.errors():
        location = ".".join(str(p) for p in err.get("loc", ()) if p not in ("query", "body", "path"))
        problems.append(f"{location}: {err.get('msg')}" if location else err.get("msg", ""))
    return JSONResponse(
        status_code=400,
        content={"success": False, "error": "; ".join(problems) or "Invalid request"},
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error("Unhandled error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"success": False, "error": "Internal server error"})


# ─── Include Routers ──────────────────────────────────────────

from dashboard.api.routers.dashboard import router as dashboard_router
from dashboard.api.routers.contacts import router as contacts_router
from dashboard.api.routers.close_users import router as close_users_router
from dashboard.api.routers.sync import router as sync_router
from dashboard.api.routers.attribution import router as attribution_router
from dashboard.api.routers.metrics import router as metrics_router
from dashboard.api.routers.data_enhancement import router as data_enhancement_router

app.include_router(dashboard_router)
app.include_router(contacts_router)
app.include_router(close_users_router)
app.include_router(sync_router)
app.include_router(attribution_router)
app.include_router(metrics_router)
app.include_router(data_enhancement_router)


# ─── Health ───────────────────────────────────────────────────

@app.get("/api/health", tags=["system"])
async def health():
    """Health check with service and integration status."""
    supabase_ok = False
    try:
        from scripts.lib.supabase_client import get_client
        get_client()
        supabase_ok = True
    except Exception as e:
        logger.debug("Supabase health check failed: %s", e)

    clients = getattr(app.state, "integrations", None) or _integration_clients()

    return {
        "success": True,
        "status": "healthy" if supabase_ok else "degraded",
        "service": "Pipeline Pulse",
        "version": VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "integrations": {
            "supabase": supabase_ok,
            **{name: client.get_status() for name, client in clients.items()},
        },
    }
