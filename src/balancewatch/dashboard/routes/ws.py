"""WebSocket hub broadcasting live series commits to dashboard clients."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Sequence
from typing import Any

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from balancewatch.models import HistoryPoint

log = structlog.get_logger(__name__)

router = APIRouter()


def commit_message(points: Sequence[HistoryPoint]) -> dict[str, Any]:
    """JSON payload for one display commit (Decimals as strings)."""
    return {
        "type": "balance_commit",
        "points": len(points),
        "latest": {
            "timestamp_ms": points[-1].timestamp_ms,
            "total_usd": str(points[-1].total_usd),
            "total_usd_usdt": str(points[-1].total_usd_usdt),
            "total_rlb": str(points[-1].total_rlb),
        }
        if points
        else None,
    }


class DashboardHub:
    """Manages WebSocket connections and broadcasts JSON messages to all clients."""

    def __init__(self) -> None:
        self.connections: list[WebSocket] = []
        self._tasks: set[asyncio.Task] = set()  # type: ignore[type-arg]

    async def connect(self, ws: WebSocket) -> None:
        """Accept a WebSocket connection and add it to the active connections list."""
        await ws.accept()
        self.connections.append(ws)
        log.info("dashboard_ws_connected", total=len(self.connections))

    def disconnect(self, ws: WebSocket) -> None:
        """Remove a WebSocket connection from the active connections list."""
        if ws in self.connections:
            self.connections.remove(ws)
        log.info("dashboard_ws_disconnected", total=len(self.connections))

    async def broadcast(self, message: dict[str, Any]) -> None:
        """Send a JSON message to all connected clients, removing broken connections."""
        text = json.dumps(message)
        for ws in self.connections.copy():
            try:
                await ws.send_text(text)
            except Exception:
                self.connections.remove(ws)
                log.warning("dashboard_ws_broadcast_error", remaining=len(self.connections))

    def publish_commit(self, points: Sequence[HistoryPoint]) -> None:
        """SeriesMerger commit listener: schedule a broadcast without blocking the caller."""
        if not self.connections:
            return
        task = asyncio.get_running_loop().create_task(self.broadcast(commit_message(points)))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    """WebSocket endpoint for live balance commits."""
    ws_hub: DashboardHub = websocket.app.state.hub
    await ws_hub.connect(websocket)
    try:
        while True:
            # Consume messages to keep connection alive
            await websocket.receive_text()
    except WebSocketDisconnect:
        ws_hub.disconnect(websocket)
