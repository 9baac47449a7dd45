"""Append-only chat history, keyed by a fixed log name."""

import abc
import logging

from sqlalchemy import exists, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import Settings
from app.exceptions import StoreUnavailable
from app.models.message import StoredMessage
from app.schemas.message import ChatMessage

logger = logging.getLogger(__name__)


class HistoryStore(abc.ABC):
    """Ordered, never-pruned log of every message the relay accepted."""

    @abc.abstractmethod
    async def append(self, message: ChatMessage) -> None:
        """Persist ``message`` at the tail. Raises StoreUnavailable."""

    @abc.abstractmethod
    async def read_all(self) -> list[ChatMessage]:
        """Return every stored message, oldest first. Raises StoreUnavailable."""

    @abc.abstractmethod
    async def is_empty(self) -> bool:
        """Cheap existence check used to skip replay. Raises StoreUnavailable."""


class SQLHistoryStore(HistoryStore):
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        log_name: str = "chat_messages",
    ) -> None:
        self._session_factory = session_factory
        self.log_name = log_name

    async def append(self, message: ChatMessage) -> None:
        try:
            async with self._session_factory() as session:
                session.add(
                    StoredMessage(
                        log_name=self.log_name,
                        username=message.username,
                        text=message.text,
                    )
                )
                await session.commit()
        except (SQLAlchemyError, OSError) as exc:
            raise StoreUnavailable(f"append to '{self.log_name}' failed") from exc

    async def read_all(self) -> list[ChatMessage]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(StoredMessage.username, StoredMessage.text)
                    .where(StoredMessage.log_name == self.log_name)
                    .order_by(StoredMessage.id.asc())
                )
                rows = result.all()
        except (SQLAlchemyError, OSError) as exc:
            raise StoreUnavailable(f"read of '{self.log_name}' failed") from exc
        return [ChatMessage(username=row.username, text=row.text) for row in rows]

    async def is_empty(self) -> bool:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(exists().where(StoredMessage.log_name == self.log_name))
                )
                return not result.scalar_one()
        except (SQLAlchemyError, OSError) as exc:
            raise StoreUnavailable(f"lookup of '{self.log_name}' failed") from exc


class InMemoryHistoryStore(HistoryStore):
    """Process-local history. Lost on restart; for development and tests."""

    def __init__(self, messages: list[ChatMessage] | None = None) -> None:
        self._messages: list[ChatMessage] = list(messages or [])

    async def append(self, message: ChatMessage) -> None:
        self._messages.append(message)

    async def read_all(self) -> list[ChatMessage]:
        return list(self._messages)

    async def is_empty(self) -> bool:
        return not self._messages


def create_history_store(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> HistoryStore:
    if settings.history_backend == "sql":
        if session_factory is None:
            from app.database import AsyncSessionFactory

            session_factory = AsyncSessionFactory
        return SQLHistoryStore(session_factory, settings.history_log_name)
    if settings.history_backend == "memory":
        logger.warning("Using in-memory history store; history will not survive restarts")
        return InMemoryHistoryStore()
    raise ValueError(f"Unknown history backend: {settings.history_backend!r}")
