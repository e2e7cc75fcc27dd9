"""
TRAPWATCH FastAPI Application — Entry Point

Wires up routers, middleware, and startup/shutdown lifecycle hooks.
On startup the telemetry client (mock simulator or live HTTP service) and the
FleetOrchestrator are created and the refresh scheduler is started; every
completed refresh cycle is pushed to WebSocket dashboards.
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.routers import fleet, realtime
from common.config import get_settings
from common.logging_config import configure_logging
from ingestion.client_factory import create_telemetry_client
from streaming.fleet_orchestrator import FleetOrchestrator

log = logging.getLogger("trapwatch.api")

VERSION = "0.1.0"


# ─────────────────────────────────────────────────────────────────────────────
# Lifespan (startup / shutdown)
# ─────────────────────────────────────────────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    FastAPI lifespan context manager.
    Runs startup logic before yield, teardown logic after.
    """
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format, service_name="trapwatch.api")
    log.info(
        "TRAPWATCH API starting up — environment=%s telemetry_mode=%s",
        settings.environment,
        settings.telemetry_mode,
    )

    client = create_telemetry_client(settings)
    orchestrator = FleetOrchestrator(client, settings=settings)
    unsubscribe = orchestrator.subscribe(realtime.notify_kpis_updated)
    app.state.orchestrator = orchestrator
    await orchestrator.start()

    yield

    log.info("TRAPWATCH API shutting down...")
    unsubscribe()
    await orchestrator.stop()
    await client.close()
    app.state.orchestrator = None
    log.info("Telemetry client closed.")


# ─────────────────────────────────────────────────────────────────────────────
# Application factory
# ─────────────────────────────────────────────────────────────────────────────

app = FastAPI(
    title="TRAPWATCH Steam Trap Fleet Monitoring API",
    description=(
        "Live health of a plant's steam traps: per-device status classification, "
        "fleet KPIs (efficiency, uptime, estimated energy loss), tier filtering "
        "and real-time KPI updates over WebSocket."
    ),
    version=VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
)


# ─────────────────────────────────────────────────────────────────────────────
# CORS Middleware
# ─────────────────────────────────────────────────────────────────────────────

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ─────────────────────────────────────────────────────────────────────────────
# Request Timing Middleware
# ─────────────────────────────────────────────────────────────────────────────


@app.middleware("http")
async def request_timing_middleware(request: Request, call_next) -> Response:
    """
    Adds X-Process-Time header to every response and emits structured access logs.
    """
    start = time.perf_counter()
    response: Response = await call_next(request)
    elapsed_ms = (time.perf_counter() - start) * 1_000
    response.headers["X-Process-Time"] = f"{elapsed_ms:.2f}ms"
    log.info(
        "method=%s path=%s status=%d duration_ms=%.2f",
        request.method,
        request.url.path,
        response.status_code,
        elapsed_ms,
    )
    return response


# ─────────────────────────────────────────────────────────────────────────────
# Global Exception Handlers
# ─────────────────────────────────────────────────────────────────────────────


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Let FastAPI handle HTTPExceptions normally (404, 422, 503, etc.)
    if isinstance(exc, HTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail},
            headers=getattr(exc, "headers", None) or {},
        )
    log.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"detail": "An unexpected internal error occurred. Please try again."},
    )


# ─────────────────────────────────────────────────────────────────────────────
# Routers
# ─────────────────────────────────────────────────────────────────────────────


app.include_router(fleet.router, prefix="/fleet", tags=["Fleet"])
app.include_router(realtime.router)


# ─────────────────────────────────────────────────────────────────────────────
# System Endpoints
# ─────────────────────────────────────────────────────────────────────────────


@app.get("/health", tags=["System"], summary="System health check")
async def health_check(request: Request) -> dict:
    """
    Returns API health and scheduler state.

    'degraded' while the device set has not been loaded yet (e.g. the telemetry
    service is unreachable) or the scheduler is not running.
    """
    settings = get_settings()
    orchestrator = getattr(request.app.state, "orchestrator", None)

    checks: dict[str, str] = {}
    if orchestrator is None:
        checks["orchestrator"] = "error: not initialised"
    else:
        checks["scheduler"] = "ok" if orchestrator.running else "error: not running"
        checks["device_set"] = "ok" if orchestrator.devices_loaded else "error: not loaded"

    overall = "healthy" if all(v == "ok" for v in checks.values()) else "degraded"
    return {
        "status": overall,
        "service": "trapwatch-api",
        "version": VERSION,
        "environment": settings.environment,
        "telemetry_mode": settings.telemetry_mode,
        "websocket_connections": realtime.manager.get_connection_count(),
        "checks": checks,
    }


@app.get("/", tags=["System"], include_in_schema=False)
async def root() -> dict:
    return {"service": "TRAPWATCH Steam Trap Fleet Monitoring API", "docs": "/docs"}


if __name__ == "__main__":
    import uvicorn

    _settings = get_settings()
    uvicorn.run("api.main:app", host=_settings.api_host, port=_settings.api_port)
