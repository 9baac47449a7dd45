from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Index, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class StoredMessage(Base):
    """One entry of a named append-only chat log. ``id`` is the log position."""

    __tablename__ = "chat_messages"
    __table_args__ = (Index("ix_chat_messages_log_name_id", "log_name", "id"),)

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    log_name: Mapped[str] = mapped_column(String(100))
    username: Mapped[str] = mapped_column(Text, default="")
    text: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
