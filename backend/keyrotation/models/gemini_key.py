"""
Gemini API key model — a provider credential owned by a company.

Security notes:
  • The raw key IS stored: it is needed to call the provider. It must never
    be logged or returned by the HTTP layer (see mask_api_key).
  • CENTRAL keys have no company and are shared by companies that opt in.
  • `is_active` marks the key currently preferred for its company; exactly
    one key per company is expected to be active at a time.
"""

import uuid
import datetime

from sqlalchemy import Boolean, CheckConstraint, DateTime, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.sql import func
from sqlalchemy.orm import Mapped, mapped_column

from keyrotation.core.database import Base

KEY_TYPE_COMPANY = "COMPANY"
KEY_TYPE_CENTRAL = "CENTRAL"


class GeminiKey(Base):
    """Gemini credential belonging to a company (or to the platform)."""

    __tablename__ = "gemini_keys"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    company_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("companies.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    name: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )
    api_key: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )
    key_type: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
        default=KEY_TYPE_COMPANY,
        server_default=KEY_TYPE_COMPANY,
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default="false",
    )
    priority: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
        server_default="1",
    )
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (
        CheckConstraint(
            "key_type IN ('COMPANY', 'CENTRAL')",
            name="key_type_valid",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<GeminiKey id={self.id!s:.8} name={self.name!r} "
            f"type={self.key_type} active={self.is_active}>"
        )
