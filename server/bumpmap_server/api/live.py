"""Live websocket endpoint — adapts a Starlette WebSocket to a hub connection."""

from __future__ import annotations

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

router = APIRouter()


@router.websocket("/ws")
async def live_socket(
    websocket: WebSocket,
    user_id: str | None = Query(default=None, alias="userId"),
) -> None:
    """Attach a client to the hub and feed it every inbound frame until it leaves."""
    from bumpmap_server.main import get_hub

    hub = get_hub()
    await websocket.accept()
    conn = await hub.attach(websocket.send_text, websocket.close, user_id=user_id)
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            data = message.get("text")
            if data is None:
                data = message.get("bytes") or b""
            await hub.handle_text(conn, data)
    except WebSocketDisconnect:
        pass
    finally:
        await hub.detach(conn)
