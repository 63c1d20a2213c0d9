"""
Excluded (key, model) pairs for one company.

A row is written when a model's daily quota (rpd) is used up across the
company's pool. Selection skips the pair until `retry_at`; after that the
selector re-checks the rpd window and either deletes the row or pushes
`retry_at` further out (see services.model_selector.next_retry).
"""

import uuid
import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from keyrotation.core.database import Base

REASON_RPD_EXHAUSTED = "RPD_EXHAUSTED"


class ExcludedModel(Base):
    """One (company, key, model) taken out of rotation until retry_at."""

    __tablename__ = "excluded_models"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    company_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("companies.id", ondelete="CASCADE"),
        nullable=False,
    )
    key_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("gemini_keys.id", ondelete="CASCADE"),
        nullable=False,
    )
    model: Mapped[str] = mapped_column(String(100), nullable=False)
    reason: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default=REASON_RPD_EXHAUSTED,
        server_default=REASON_RPD_EXHAUSTED,
    )
    excluded_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )
    retry_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )
    retry_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default="0",
    )
    last_retry_at: Mapped[datetime.datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    __table_args__ = (
        UniqueConstraint("company_id", "key_id", "model", name="uq_excluded_models_company_key_model"),
        Index("ix_excluded_models_retry_at", "retry_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<ExcludedModel model={self.model} key={self.key_id!s:.8} "
            f"retry_at={self.retry_at} retries={self.retry_count}>"
        )
