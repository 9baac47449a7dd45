"""Set of currently attached client connections."""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Generic, TypeVar

from app.exceptions import RegistryFull

C = TypeVar("C")


class ConnectionRegistry(Generic[C]):
    """asyncio.Lock-guarded connection set.

    Handlers add and remove concurrently while the broadcaster traverses.
    ``max_connections=0`` means unlimited.
    """

    def __init__(self, max_connections: int = 0) -> None:
        self._connections: set[C] = set()
        self._lock = asyncio.Lock()
        self.max_connections = max_connections

    async def add(self, conn: C) -> None:
        async with self._lock:
            if conn in self._connections:
                return
            if self.max_connections and len(self._connections) >= self.max_connections:
                raise RegistryFull(
                    f"connection limit reached ({self.max_connections})"
                )
            self._connections.add(conn)

    async def remove(self, conn: C) -> bool:
        """Deregister ``conn``. Returns False if it was not registered."""
        async with self._lock:
            if conn not in self._connections:
                return False
            self._connections.discard(conn)
            return True

    async def for_each(self, fn: Callable[[C], Awaitable[object]]) -> list[object]:
        """Await ``fn(conn)`` for every connection registered at call time.

        Runs the calls concurrently on a snapshot taken under the lock, so
        ``fn`` may deregister connections without deadlocking.
        """
        async with self._lock:
            snapshot = list(self._connections)
        if not snapshot:
            return []
        return list(await asyncio.gather(*(fn(conn) for conn in snapshot)))

    def __contains__(self, conn: object) -> bool:
        return conn in self._connections

    def __len__(self) -> int:
        return len(self._connections)

    @property
    def client_count(self) -> int:
        return len(self._connections)
