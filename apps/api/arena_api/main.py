"""FastAPI entrypoint for the Beam Arena match service."""

from __future__ import annotations

import logging
import os
import sys
from datetime import datetime

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .routers.agents import router as agents_router
from .routers.challenges import router as challenges_router
from .services.arena_engine import get_engine, start_match_scheduler, stop_match_scheduler
from .services.auto_challenger import auto_challenger_status, start_auto_challenger, stop_auto_challenger
from .storage.match_history import init_db as init_history_db
from .storage.profiles import init_db as init_profiles_db
from .storage.profiles import seed_default_roster

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger("arena_api")


def _truthy_env(name: str, default: bool = False) -> bool:
    raw = str(os.environ.get(name) or "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}

app = FastAPI(title="Beam Arena API", version="0.1.0")

_cors_origins = [o.strip() for o in os.environ.get("ARENA_CORS_ORIGINS", "*").split(",")]
_cors_allow_credentials = "*" not in _cors_origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=_cors_allow_credentials,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(agents_router)
app.include_router(challenges_router)


@app.on_event("startup")
def startup() -> None:
    logger.info("[STARTUP] Beam Arena API starting up at %s", datetime.utcnow().isoformat())
    try:
        logger.info("[STARTUP] Initializing profile database...")
        init_profiles_db()
        created = seed_default_roster()
        logger.info("[STARTUP] Profile database initialized (%d roster agents seeded)", created)
    except Exception as e:
        logger.error("[STARTUP] Failed to initialize profile database: %s", e)
        raise

    try:
        logger.info("[STARTUP] Initializing match history database...")
        init_history_db()
        logger.info("[STARTUP] Match history database initialized successfully")
    except Exception as e:
        logger.error("[STARTUP] Failed to initialize match history database: %s", e)
        raise

    refunds = get_engine().recover()
    if refunds:
        logger.warning("[STARTUP] Refunded %d stakes left in escrow by a previous run", len(refunds))

    if _truthy_env("ARENA_AUTOSTART_SCHEDULER", default=True):
        start_match_scheduler()
        logger.info("[STARTUP] Match scheduler autostart is enabled")

    if _truthy_env("ARENA_AUTOSTART_AUTOPILOT", default=False):
        start_auto_challenger()
        logger.info("[STARTUP] Auto challenger autostart is enabled")

    logger.info("[STARTUP] Beam Arena API startup complete")


@app.on_event("shutdown")
def shutdown() -> None:
    stop_auto_challenger()
    stop_match_scheduler()


@app.get("/healthz")
def healthz() -> dict[str, str]:
    logger.debug("[HEALTH] Health check requested")
    from .storage.profiles import _backend as profiles_backend
    try:
        profiles_backend().ping()
    except Exception as exc:
        logger.warning("[HEALTH] DB ping failed: %s", exc)
        return JSONResponse(status_code=503, content={"status": "error", "detail": str(exc)})
    return {"status": "ok"}


@app.get("/api/v1/status")
def engine_status() -> dict[str, object]:
    status = get_engine().status()
    status["autopilot"] = auto_challenger_status()
    return status
