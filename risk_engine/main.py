"""
main.py
-------
Entry point of the Risk & Refund Engine API.

Middleware registration order (they run in reverse):
  1. CORS            → registered first, runs last
  2. SecurityHeaders → security headers on every response
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from risk_engine.api.middlewares import SecurityHeadersMiddleware, setup_cors
from risk_engine.api.routers import fraud, refunds
from risk_engine.core.config import settings
from risk_engine.core.exceptions import RiskEngineException
from risk_engine.domain.rules import rule_registry
from risk_engine.infrastructure.cache.redis_client import redis_manager
from risk_engine.infrastructure.database.session import AsyncSessionLocal, dispose_db, init_db
from risk_engine.services.container import build_services

logging.basicConfig(
    level  = settings.LOG_LEVEL,
    format = "%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # ── Startup ───────────────────────────────────────────────────────
    await redis_manager.connect()
    if settings.DEBUG:
        await init_db()
    app.state.services = build_services(redis_manager.get_client(), AsyncSessionLocal)
    logger.info(f"[RiskEngine] Started | model_version={rule_registry.version}")
    yield
    # ── Shutdown ──────────────────────────────────────────────────────
    await redis_manager.disconnect()
    await dispose_db()


app = FastAPI(
    title    = "Risk & Refund Engine API",
    version  = "1.0.0",
    docs_url = "/docs"  if settings.DEBUG else None,
    redoc_url= "/redoc" if settings.DEBUG else None,
    lifespan = lifespan,
)

# ── Middlewares (register in this exact order) ────────────────────────
setup_cors(app, allowed_origins=settings.ALLOWED_ORIGINS)
app.add_middleware(SecurityHeadersMiddleware)

# ── Routers ───────────────────────────────────────────────────────────
app.include_router(fraud.router)
app.include_router(refunds.router)


# ── Global exception handler ──────────────────────────────────────────
@app.exception_handler(RiskEngineException)
async def risk_exception_handler(
    request: Request, exc: RiskEngineException
) -> JSONResponse:
    return JSONResponse(
        status_code = exc.status_code,
        content     = {"error": exc.message},
    )


# ── Health check ──────────────────────────────────────────────────────
@app.get("/health")
async def health_check():
    redis_ok = await redis_manager.ping()
    return {
        "status":        "ok",
        "environment":   settings.ENVIRONMENT,
        "model_version": rule_registry.version,
        "redis":         "ok" if redis_ok else "degraded",
    }
