from __future__ import annotations

import asyncio

from alembic import context
from sqlalchemy.engine import Connection

from kanbanpulse.core.config import get_settings
from kanbanpulse.domain.models import Base
from kanbanpulse.persistence.db import build_engine


config = context.config
target_metadata = Base.metadata


def _database_url() -> str:
    # Prefer an explicit -x url=... override, then the app settings.
    return context.get_x_argument(as_dictionary=True).get("url") or get_settings().database_url


def run_migrations_offline() -> None:
    context.configure(
        url=_database_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def _run_sync_migrations(connection: Connection) -> None:
    context.configure(connection=connection, target_metadata=target_metadata)
    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online() -> None:
    engine = build_engine(_database_url())
    async with engine.connect() as connection:
        await connection.run_sync(_run_sync_migrations)
    await engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
