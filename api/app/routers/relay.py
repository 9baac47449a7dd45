"""WebSocket endpoint: one handler per connected chat client."""

import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from app.exceptions import (
    ConnectionSetupError,
    ProtocolError,
    RegistryFull,
    RelayDegraded,
    StoreUnavailable,
)
from app.schemas.message import decode_message
from app.services.broadcaster import Broadcaster
from app.services.connection import ClientConnection

logger = logging.getLogger(__name__)

router = APIRouter(tags=["relay"])


async def _accept(websocket: WebSocket) -> None:
    try:
        await websocket.accept()
    except (RuntimeError, OSError) as exc:
        raise ConnectionSetupError(f"handshake failed: {exc}") from exc


async def _replay(conn: ClientConnection, broadcaster: Broadcaster) -> bool:
    """Register and send stored history. Returns False if setup was refused."""
    try:
        history = await broadcaster.admit(conn)
    except RegistryFull as exc:
        logger.warning("Rejecting connection: %s", exc)
        await conn.close(code=status.WS_1013_TRY_AGAIN_LATER)
        return False
    except StoreUnavailable:
        logger.exception("Could not read history for new connection")
        await conn.close(code=status.WS_1011_INTERNAL_ERROR)
        return False

    for message in history:
        if not await conn.send(message):
            return False
    await conn.go_live()
    return True


async def _receive_loop(conn: ClientConnection, broadcaster: Broadcaster) -> None:
    websocket = conn.websocket
    while not conn.closed:
        event = await websocket.receive()
        if conn.closed or event["type"] == "websocket.disconnect":
            return
        frame = event.get("text")
        if frame is None:
            frame = event.get("bytes")
        try:
            if frame is None:
                raise ProtocolError("empty frame")
            message = decode_message(frame)
        except ProtocolError as exc:
            logger.info("Closing connection on bad frame: %s", exc)
            await conn.close(code=status.WS_1003_UNSUPPORTED_DATA)
            return
        try:
            await broadcaster.submit(message)
        except RelayDegraded as exc:
            logger.warning("Closing connection: %s", exc)
            await conn.close(code=status.WS_1011_INTERNAL_ERROR)
            return


@router.websocket("/ws")
async def relay_socket(websocket: WebSocket):
    """Chat relay socket.

    Frames in both directions are JSON objects ``{"username": ..., "text": ...}``.
    On connect the client first receives every stored message in order,
    then every message relayed after it joined.
    """
    broadcaster: Broadcaster = websocket.app.state.broadcaster
    try:
        await _accept(websocket)
    except ConnectionSetupError as exc:
        logger.debug("Connection attempt rejected: %s", exc)
        return

    conn = ClientConnection(websocket, broadcaster.registry)
    try:
        if await _replay(conn, broadcaster):
            await _receive_loop(conn, broadcaster)
    except WebSocketDisconnect as exc:
        logger.debug("Client disconnected (code %s)", exc.code)
    finally:
        await broadcaster.registry.remove(conn)
        await conn.close()
