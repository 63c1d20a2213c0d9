"""
Per-key model row with its usage accounting.

Each row is one (key, model) pair. `usage` is an opaque JSON string holding
the four rate windows (rpm, rph, rpd, tpm), kept as text for compatibility
with existing rows. Encoding/decoding happens only in
services.usage_codec.

Concurrency: `usage` is updated read-modify-write under a row lock
(SELECT … FOR UPDATE) by services.usage_store.
"""

import uuid
import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.sql import func
from sqlalchemy.orm import Mapped, mapped_column

from keyrotation.core.database import Base


class GeminiKeyModel(Base):
    """One enabled-or-not model under a Gemini key, plus its usage blob."""

    __tablename__ = "gemini_key_models"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    key_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("gemini_keys.id", ondelete="CASCADE"),
        nullable=False,
    )
    model: Mapped[str] = mapped_column(String(100), nullable=False)
    priority: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
        server_default="1",
    )
    is_enabled: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        server_default="true",
    )
    usage: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default="{}",
        server_default="{}",
    )
    last_used: Mapped[datetime.datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (
        UniqueConstraint("key_id", "model", name="uq_gemini_key_models_key_model"),
        Index("ix_gemini_key_models_key_priority", "key_id", "priority"),
    )

    def __repr__(self) -> str:
        return (
            f"<GeminiKeyModel id={self.id!s:.8} model={self.model} "
            f"priority={self.priority} enabled={self.is_enabled}>"
        )
