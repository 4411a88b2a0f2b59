"""WebSocket hub pushing ticker events to connected clients."""

from __future__ import annotations

import json

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from tickersync.logging import get_logger

logger = get_logger(__name__)

router = APIRouter()


class TickerHub:
    """Tracks client connections and broadcasts JSON events to all of them."""

    def __init__(self) -> None:
        self.connections: list[WebSocket] = []

    async def connect(self, ws: WebSocket) -> None:
        await ws.accept()
        self.connections.append(ws)
        logger.info("api_ws_connected", total=len(self.connections))

    def disconnect(self, ws: WebSocket) -> None:
        if ws in self.connections:
            self.connections.remove(ws)
        logger.info("api_ws_disconnected", total=len(self.connections))

    async def broadcast(self, event: dict) -> None:
        """Send an event to every client, dropping broken connections.

        Subscribed to TickerService, so it receives "ticker" and
        "ticker_error" events.
        """
        if not self.connections:
            return
        text = json.dumps(event)
        for ws in self.connections.copy():
            try:
                await ws.send_text(text)
            except Exception:
                self.connections.remove(ws)
                logger.warning("api_ws_broadcast_error", remaining=len(self.connections))


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    hub: TickerHub = websocket.app.state.hub
    await hub.connect(websocket)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        hub.disconnect(websocket)
