# =============================================================================
# TRAPWATCH API — Real-time WebSocket Endpoints
# Pushes fresh fleet KPIs to connected dashboards after every refresh cycle
# =============================================================================

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Set

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from api.models.schemas import KpiResponse
from common.models import FleetKPIs

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/ws", tags=["WebSocket"])

HEARTBEAT_SECONDS = 30.0


def _now() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


# =============================================================================
# Connection Manager for WebSockets
# =============================================================================

class ConnectionManager:
    """Tracks dashboard WebSocket connections."""

    def __init__(self):
        self.active_connections: Set[WebSocket] = set()

    async def connect(self, websocket: WebSocket):
        """Accept and store a new WebSocket connection."""
        await websocket.accept()
        self.active_connections.add(websocket)
        logger.info("WebSocket connected (%d active)", len(self.active_connections))

    def disconnect(self, websocket: WebSocket):
        """Remove a WebSocket connection."""
        self.active_connections.discard(websocket)
        logger.info("WebSocket disconnected (%d active)", len(self.active_connections))

    async def broadcast(self, message: dict):
        """Send a message to every connected client, dropping dead connections."""
        if not self.active_connections:
            return

        message_json = json.dumps(message, default=str)
        disconnected = []
        for connection in list(self.active_connections):
            try:
                if connection.client_state == WebSocketState.CONNECTED:
                    await connection.send_text(message_json)
            except Exception as e:
                logger.warning("Failed to send WebSocket message: %s", e)
                disconnected.append(connection)

        for conn in disconnected:
            self.disconnect(conn)

    async def send_personal_message(self, message: dict, websocket: WebSocket):
        """Send a message to a specific client."""
        try:
            if websocket.client_state == WebSocketState.CONNECTED:
                await websocket.send_text(json.dumps(message, default=str))
        except Exception as e:
            logger.warning("Failed to send personal message: %s", e)

    def get_connection_count(self) -> int:
        return len(self.active_connections)


# Global connection manager instance
manager = ConnectionManager()


# =============================================================================
# WebSocket Endpoints
# =============================================================================

@router.websocket("/fleet")
async def fleet_websocket(websocket: WebSocket):
    """
    WebSocket endpoint for live fleet updates.

    Connection URL: ws://localhost:8000/ws/fleet

    Messages received from client:
    - {"type": "ping"}
    - {"type": "refresh"}           request a fleet refresh (fire-and-forget)

    Messages sent to client:
    - {"type": "connected", "data": {...current KPIs...}}
    - {"type": "kpis_updated", "data": {...}}   after every refresh cycle
    - {"type": "refresh_requested"}
    - {"type": "pong"} / {"type": "heartbeat"}
    """
    orchestrator = getattr(websocket.app.state, "orchestrator", None)
    await manager.connect(websocket)

    try:
        initial = KpiResponse.from_kpis(orchestrator.kpis).model_dump(mode="json") if orchestrator else None
        await manager.send_personal_message({
            "type": "connected",
            "timestamp": _now(),
            "data": initial,
        }, websocket)

        while True:
            try:
                data = await asyncio.wait_for(websocket.receive_text(), timeout=HEARTBEAT_SECONDS)
            except asyncio.TimeoutError:
                await manager.send_personal_message({"type": "heartbeat", "timestamp": _now()}, websocket)
                continue

            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                await manager.send_personal_message({
                    "type": "error",
                    "message": "Invalid JSON format",
                }, websocket)
                continue

            msg_type = message.get("type", "unknown") if isinstance(message, dict) else "unknown"
            if msg_type == "ping":
                await manager.send_personal_message({"type": "pong", "timestamp": _now()}, websocket)
            elif msg_type == "refresh" and orchestrator is not None:
                orchestrator.request_refresh()
                await manager.send_personal_message({
                    "type": "refresh_requested",
                    "timestamp": _now(),
                }, websocket)
            else:
                await manager.send_personal_message({
                    "type": "error",
                    "message": f"Unknown message type: {msg_type}",
                }, websocket)

    except WebSocketDisconnect:
        manager.disconnect(websocket)
    except Exception as e:
        logger.exception("WebSocket error: %s", e)
        manager.disconnect(websocket)


# =============================================================================
# Orchestrator subscriber
# =============================================================================

async def notify_kpis_updated(kpis: FleetKPIs):
    """Push freshly computed KPIs to every connected dashboard."""
    await manager.broadcast({
        "type": "kpis_updated",
        "timestamp": _now(),
        "data": KpiResponse.from_kpis(kpis).model_dump(mode="json"),
    })
