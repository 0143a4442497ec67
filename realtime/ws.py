from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from realtime.bus import Broadcaster


router = APIRouter()

HEARTBEAT_SECONDS = 15.0


@router.websocket("/ws")
async def ws(websocket: WebSocket) -> None:
    bus: Broadcaster = websocket.app.state.bus
    # Subscribe before accepting so nothing published after the handshake is missed.
    queue = await bus.subscribe()
    try:
        await websocket.accept()
        while True:
            try:
                message = await asyncio.wait_for(queue.get(), timeout=HEARTBEAT_SECONDS)
            except TimeoutError:
                ts = datetime.now(tz=UTC).isoformat().replace("+00:00", "Z")
                await websocket.send_text(
                    json.dumps({"type": "heartbeat", "data": {"ts": ts}})
                )
                continue
            await websocket.send_text(message.to_json())
    except WebSocketDisconnect:
        pass
    finally:
        await bus.unsubscribe(queue)
