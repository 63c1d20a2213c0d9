"""
Company model — one tenant of the engagement platform.

A company owns its Gemini keys. `use_central_keys` lets a company draw on
the platform's shared (central) keys before its own.
"""

import uuid
import datetime

from sqlalchemy import Boolean, DateTime, Text, Uuid
from sqlalchemy.sql import func
from sqlalchemy.orm import Mapped, mapped_column

from keyrotation.core.database import Base


class Company(Base):
    """One tenant, the top-level isolation boundary for keys."""

    __tablename__ = "companies"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    name: Mapped[str] = mapped_column(
        Text, nullable=False,
    )
    use_central_keys: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default="false",
    )
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return f"<Company id={self.id!s:.8} name={self.name!r}>"
