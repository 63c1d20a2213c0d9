"""
Alembic migration environment — async variant.

Key design:
  • DB URL comes from keyrotation.core.config (single source of truth),
    NOT from alembic.ini, so secrets aren't duplicated.
  • target_metadata points to Base.metadata so `alembic revision
    --autogenerate` can diff the ORM models against the live schema.
  • compare_type is on: the usage column is TEXT and must stay TEXT
    (existing rows hold the JSON windows blob as text).
  • Uses asyncpg via run_async_migrations().
"""

import asyncio
from logging.config import fileConfig
from typing import Any

from alembic import context
from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import async_engine_from_config

from keyrotation.core.config import settings
from keyrotation.core.database import Base

# Import all models so Base.metadata is fully populated
import keyrotation.models.company  # noqa: F401
import keyrotation.models.excluded_model  # noqa: F401
import keyrotation.models.gemini_key  # noqa: F401
import keyrotation.models.gemini_key_model  # noqa: F401

config = context.config
config.set_main_option("sqlalchemy.url", settings.DATABASE_URL)

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata

_COMMON_OPTIONS: dict[str, Any] = {
    "target_metadata": target_metadata,
    "compare_type": True,
}


# ── Offline mode (emit SQL, no connection) ─────────────────
def run_migrations_offline() -> None:
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **_COMMON_OPTIONS,
    )
    with context.begin_transaction():
        context.run_migrations()


# ── Online (async) mode ────────────────────────────────────
def _run_with_connection(connection: Connection) -> None:
    context.configure(connection=connection, **_COMMON_OPTIONS)
    with context.begin_transaction():
        context.run_migrations()


async def _run_async() -> None:
    engine = async_engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    async with engine.connect() as connection:
        await connection.run_sync(_run_with_connection)
    await engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(_run_async())
