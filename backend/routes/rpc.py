"""WebSocket RPC endpoint."""

import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from protocol import RpcSession

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/ws")
async def ws_endpoint(websocket: WebSocket):
    core = websocket.app.state.agent_core
    origin = websocket.headers.get("origin", "")
    if origin and origin not in core.settings.web.cors_origins:
        logger.warning("Rejected WebSocket from origin %s", origin[:100])
        await websocket.close(code=4003, reason="Origin not allowed")
        return
    await websocket.accept()
    session = RpcSession(websocket, core)
    await session.open()
    try:
        while True:
            data = await websocket.receive_text()
            if data == "ping":
                session.send_text("pong")
            else:
                await session.handle_text(data)
    except WebSocketDisconnect:
        pass
    finally:
        await session.close()
