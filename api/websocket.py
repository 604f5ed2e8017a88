"""
WebSocket endpoint

URL: /ws

Connection flow:
  1. Accept the socket and open a ConnectionSession on the broadcaster
  2. Start a writer task that drains the session outbox to the socket
  3. Read {"type": ..., "data": {...}} envelopes and hand each to
     broadcaster.handle(), which never raises
  4. On disconnect: leave the lobby, stop the writer
"""
import asyncio
import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from core.broadcaster import ConnectionSession, SessionBroadcaster

router = APIRouter(tags=["websocket"])

logger = logging.getLogger(__name__)

MALFORMED = {"text": "Malformed message."}


async def _writer(websocket: WebSocket, session: ConnectionSession):
    """Forward queued envelopes in FIFO order until the close sentinel"""
    while True:
        message = await session.outbox.get()
        if message is None:
            break
        try:
            await websocket.send_json(message)
        except (WebSocketDisconnect, RuntimeError):
            logger.debug(f"Writer for {session.connection_id} stopped: socket closed")
            return

    if session.overflowed:
        # client fell too far behind
        try:
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        except RuntimeError:
            logger.debug(f"Socket {session.connection_id} already closed")


@router.websocket("/ws")
async def lobby_socket(websocket: WebSocket):
    broadcaster: SessionBroadcaster = websocket.app.state.broadcaster

    # 1. Accept
    await websocket.accept()
    session = broadcaster.connect()

    # 2. Writer
    writer = asyncio.create_task(_writer(websocket, session))

    # 3. Read loop
    try:
        while True:
            frame = await websocket.receive()
            if frame["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(frame.get("code", status.WS_1000_NORMAL_CLOSURE))

            raw = frame.get("text")
            if raw is None:
                # binary frames are not part of the protocol
                session.send("error_message", MALFORMED)
                continue
            try:
                envelope = json.loads(raw)
            except json.JSONDecodeError:
                session.send("error_message", MALFORMED)
                continue
            if not isinstance(envelope, dict) or not isinstance(envelope.get("type"), str):
                session.send("error_message", MALFORMED)
                continue
            broadcaster.handle(session, envelope["type"], envelope.get("data"))
    except WebSocketDisconnect:
        logger.info(f"Socket {session.connection_id} disconnected")
    finally:
        # 4. Cleanup
        broadcaster.disconnect(session)
        try:
            await asyncio.wait_for(writer, timeout=1.0)
        except asyncio.TimeoutError:
            logger.warning(f"Writer for {session.connection_id} did not drain in time")
