"""
Alembic environment for the reminder engine schema (SQLAlchemy ≥2.0, async).

Reads the connection string from ``config.settings`` (or alembic.ini),
targets ``db.db.Base.metadata`` and supports offline SQL generation as well
as online migrations through asyncpg. SQLite URLs run in batch mode so the
same revisions work against the test database.
"""

from __future__ import annotations

import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

from db.db import Base  # noqa: E402
target_metadata = Base.metadata


def _database_url() -> str:
    from config import settings

    url = (
        settings.DATABASE_URL
        or settings.DATABASE_PUBLIC_URL
        or config.get_main_option("sqlalchemy.url")
    )
    if not url:
        raise RuntimeError("DATABASE_URL not set and sqlalchemy.url missing from alembic.ini")
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql+asyncpg://", 1)
    elif url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


def _configure_kwargs(url: str) -> dict:
    return {
        "target_metadata": target_metadata,
        "compare_type": True,
        "render_as_batch": url.startswith("sqlite"),
    }


def run_migrations_offline() -> None:
    url = _database_url()
    context.configure(
        url=url,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **_configure_kwargs(url),
    )
    with context.begin_transaction():
        context.run_migrations()


def _make_async_engine(url: str) -> AsyncEngine:
    return create_async_engine(url, poolclass=pool.NullPool)


async def run_migrations_online() -> None:
    url = _database_url()
    engine = _make_async_engine(url)

    def _run(sync_conn) -> None:
        context.configure(connection=sync_conn, **_configure_kwargs(url))
        with context.begin_transaction():
            context.run_migrations()

    async with engine.connect() as conn:
        await conn.run_sync(_run)
    await engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
