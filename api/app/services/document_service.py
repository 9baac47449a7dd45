"""Boot-time snapshot of the read-only document collection."""

import logging

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.document import Document

logger = logging.getLogger(__name__)


async def load_documents(
    session_factory: async_sessionmaker[AsyncSession],
) -> list[dict]:
    """Fetch every document once. A failure yields an empty snapshot."""
    try:
        async with session_factory() as session:
            result = await session.execute(
                select(Document.data).order_by(Document.created_at.asc())
            )
            documents = list(result.scalars().all())
    except (SQLAlchemyError, OSError):
        logger.exception("Failed to load documents; serving an empty listing")
        return []
    logger.info("Loaded %d document(s)", len(documents))
    return documents
