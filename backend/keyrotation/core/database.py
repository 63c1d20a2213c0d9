"""
Async engine, session factory, and ORM base for the key-rotation tables.

Rules enforced:
  • Services never open the engine directly: they get `async_session_factory`
    injected (see services.usage_store.SqlAlchemyUsageStore).
  • Usage rows are written inside `session.begin()` blocks so the row lock
    taken by SELECT … FOR UPDATE is released on commit.
  • One MetaData with a naming convention, so constraints created by
    create_all (tests) and by Alembic (production) carry the same names.
"""

from sqlalchemy import MetaData, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from keyrotation.core.config import settings

NAMING_CONVENTION = {
    "ix": "ix_%(table_name)s_%(column_0_N_name)s",
    "uq": "uq_%(table_name)s_%(column_0_N_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
}

# ── Engine ──────────────────────────────────────────────────
engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DEBUG,
    pool_pre_ping=True,
)

async_session_factory = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,  # records are built from rows after commit
)


async def ping_database(bind: AsyncEngine = engine) -> None:
    """Round-trip a SELECT 1. Raises whatever the driver raises."""
    async with bind.connect() as conn:
        await conn.execute(text("SELECT 1"))


# ── ORM Base ────────────────────────────────────────────────
class Base(DeclarativeBase):
    """Declarative base shared by companies, gemini_keys and gemini_key_models."""

    metadata = MetaData(naming_convention=NAMING_CONVENTION)
