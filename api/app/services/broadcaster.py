"""Single serialization point for the relay.

Every inbound message goes through one queue and one consumer task. That
consumer is the only writer to history and the only caller of fan-out, so
the order messages are persisted in is the order every client receives
them.
"""

import asyncio
import logging
from typing import Protocol

from app.exceptions import RelayDegraded, StoreUnavailable
from app.schemas.message import ChatMessage
from app.services.connection_registry import ConnectionRegistry
from app.services.history_store import HistoryStore

logger = logging.getLogger(__name__)


class Recipient(Protocol):
    async def deliver(self, message: ChatMessage) -> bool: ...


class Broadcaster:
    def __init__(
        self,
        registry: ConnectionRegistry,
        store: HistoryStore,
        *,
        queue_maxsize: int = 0,
        append_retries: int = 3,
        retry_base_delay: float = 0.5,
        retry_max_delay: float = 5.0,
    ) -> None:
        self.registry = registry
        self.store = store
        self.append_retries = append_retries
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self._queue: asyncio.Queue[ChatMessage] = asyncio.Queue(maxsize=queue_maxsize)
        # Held across append + fan-out and across admission, so a joining
        # client's history snapshot and its first live message never overlap.
        self._lock = asyncio.Lock()
        self._degraded = False
        self.processed_count = 0

    @property
    def degraded(self) -> bool:
        return self._degraded

    @property
    def queue_size(self) -> int:
        return self._queue.qsize()

    async def submit(self, message: ChatMessage) -> None:
        """Queue an inbound message for persistence and fan-out."""
        if self._degraded:
            raise RelayDegraded("history store unavailable, not accepting messages")
        await self._queue.put(message)

    async def admit(self, conn: Recipient) -> list[ChatMessage]:
        """Register ``conn`` and return the history it must replay first.

        Raises RegistryFull or StoreUnavailable; on the latter the
        connection is deregistered again.
        """
        async with self._lock:
            await self.registry.add(conn)
            try:
                if await self.store.is_empty():
                    return []
                return await self.store.read_all()
            except StoreUnavailable:
                await self.registry.remove(conn)
                raise

    async def run(self) -> None:
        """Consume the queue forever. Started in lifespan, cancelled on shutdown."""
        while True:
            message = await self._queue.get()
            try:
                await self.process(message)
            except Exception:
                logger.exception("broadcaster: failed to process message")
            finally:
                self._queue.task_done()

    async def join(self) -> None:
        """Wait until every queued message has been processed."""
        await self._queue.join()

    async def process(self, message: ChatMessage) -> None:
        async with self._lock:
            await self._persist(message)
            await self.registry.for_each(lambda conn: conn.deliver(message))
        self.processed_count += 1

    async def _persist(self, message: ChatMessage) -> bool:
        attempt = 0
        while True:
            try:
                await self.store.append(message)
                return True
            except Exception as exc:
                # Untyped store errors get the same retry-then-degrade policy.
                if self._degraded:
                    logger.error("History append failed while degraded: %s", exc)
                    return False
                if attempt >= self.append_retries:
                    self._degraded = True
                    logger.critical(
                        "History store unavailable after %d attempt(s); "
                        "relay degraded, refusing new messages",
                        attempt + 1,
                        exc_info=exc,
                    )
                    return False
                delay = min(self.retry_base_delay * 2**attempt, self.retry_max_delay)
                logger.warning(
                    "History append failed (attempt %d/%d), retrying in %.2fs: %s",
                    attempt + 1,
                    self.append_retries + 1,
                    delay,
                    exc,
                )
                await asyncio.sleep(delay)
                attempt += 1
