"""Per-client send path shared by history replay and broadcast fan-out."""

import asyncio
import logging
from typing import Optional

from starlette.websockets import WebSocket, WebSocketDisconnect, WebSocketState

from app.exceptions import SendError
from app.schemas.message import ChatMessage, encode_message
from app.services.connection_registry import ConnectionRegistry

logger = logging.getLogger(__name__)

# Normal closure, "going away" (page navigation, server shutdown) and
# abnormal closure, which Starlette reports when the ASGI stream has ended.
GRACEFUL_CLOSE_CODES = frozenset({1000, 1001, 1006})


class ClientConnection:
    """One attached WebSocket client.

    A new connection starts out replaying: messages fanned out to it are
    buffered until the handler has sent the history snapshot and calls
    ``go_live``. Writes are serialized by a per-connection lock.
    """

    def __init__(
        self,
        websocket: WebSocket,
        registry: ConnectionRegistry["ClientConnection"],
    ) -> None:
        self.websocket = websocket
        self._registry = registry
        self._send_lock = asyncio.Lock()
        self._pending: list[ChatMessage] = []
        self._live = False
        self._closed = False

    @property
    def live(self) -> bool:
        return self._live

    @property
    def closed(self) -> bool:
        return self._closed

    def _stream_ended(self) -> bool:
        return (
            self._closed
            or self.websocket.client_state == WebSocketState.DISCONNECTED
            or self.websocket.application_state == WebSocketState.DISCONNECTED
        )

    async def _write(self, message: ChatMessage) -> None:
        if self._stream_ended():
            raise SendError("stream ended", graceful=True)
        try:
            await self.websocket.send_text(encode_message(message))
        except WebSocketDisconnect as exc:
            raise SendError(
                f"peer disconnected (code {exc.code})",
                graceful=exc.code in GRACEFUL_CLOSE_CODES,
            ) from exc
        except (RuntimeError, OSError) as exc:
            raise SendError(str(exc) or type(exc).__name__) from exc

    async def send(self, message: ChatMessage) -> bool:
        """Write one message. Returns False if it could not be delivered.

        Expected disconnects are ignored. Any other failure drops this
        connection from the registry and closes it.
        """
        async with self._send_lock:
            try:
                await self._write(message)
                return True
            except SendError as exc:
                if exc.graceful:
                    return False
                logger.warning("error: %s", exc)
        await self._registry.remove(self)
        await self.close(code=1011)
        return False

    async def deliver(self, message: ChatMessage) -> bool:
        """Fan-out entry point: buffer while replaying, send once live."""
        if not self._live:
            self._pending.append(message)
            return True
        return await self.send(message)

    async def go_live(self) -> None:
        while self._pending:
            await self.send(self._pending.pop(0))
        self._live = True

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None:
        if self._closed:
            return
        self._closed = True
        self._pending.clear()
        if self.websocket.application_state == WebSocketState.DISCONNECTED:
            return
        if self.websocket.client_state == WebSocketState.DISCONNECTED:
            return
        try:
            await self.websocket.close(code=code, reason=reason)
        except (RuntimeError, OSError) as exc:
            logger.debug("close on dead socket ignored: %s", exc)
