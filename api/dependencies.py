"""
TRAPWATCH — FastAPI Dependencies

The orchestrator is created once in the application lifespan and stored on
app.state; routers reach it through get_orchestrator() so tests can swap it
via app.dependency_overrides.
"""

from __future__ import annotations

import logging

from fastapi import HTTPException, Request, status

from streaming.fleet_orchestrator import FleetOrchestrator

log = logging.getLogger(__name__)


def get_orchestrator(request: Request) -> FleetOrchestrator:
    """
    FastAPI dependency returning the running FleetOrchestrator.

    Raises:
        HTTPException 503: If the application has not finished starting up.
    """
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        log.warning("Request to %s before orchestrator was ready", request.url.path)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Fleet orchestrator not initialised",
        )
    return orchestrator
