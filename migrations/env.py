"""Alembic environment for the campaign, company and research tables."""

from __future__ import annotations

import asyncio
import logging
import os
import ssl
from logging.config import fileConfig
from typing import Any

import certifi
from alembic import context
from sqlalchemy import engine_from_config, pool
from sqlalchemy.engine import Connection
from sqlalchemy.engine.url import make_url
from sqlalchemy.ext.asyncio import async_engine_from_config
from sqlmodel import SQLModel

from app.config import settings
from app.core.database import async_database_url
from app.models import research_record  # noqa: F401 - registers the research tables

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

logger = logging.getLogger("research.alembic")
logger.setLevel(logging.INFO)
target_metadata = SQLModel.metadata


def _resolve_database_url() -> str:
    """Environment first, then alembic.ini, then application settings."""
    candidates = (
        ("environment variable", os.environ.get("DATABASE_URL")),
        ("alembic.ini", config.get_main_option("sqlalchemy.url")),
        ("app settings", settings.database_url),
    )
    for source, value in candidates:
        if value:
            rendered = make_url(value).render_as_string(hide_password=True)
            logger.info("Research migrations use DATABASE_URL from %s: %s", source, rendered)
            return value
    raise RuntimeError("DATABASE_URL must be set to run research migrations.")


def _asyncpg_connect_args(url: str) -> dict[str, Any]:
    """TLS for hosted Postgres; asyncpg takes an SSLContext instead of sslmode."""
    parsed = make_url(url)
    host = (parsed.host or "").lower()
    wants_tls = (
        "supabase.co" in host
        or parsed.query.get("sslmode") == "require"
        or os.environ.get("PGSSLMODE", "").lower() == "require"
    )
    if not wants_tls:
        return {}
    ctx = ssl.create_default_context(cafile=os.environ.get("ALEMBIC_CA_FILE") or certifi.where())
    return {"ssl": ctx}


def _configure(connection: Connection) -> None:
    context.configure(connection=connection, target_metadata=target_metadata, compare_type=True)
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_offline() -> None:
    """Emit SQL without a live connection."""
    context.configure(
        url=_resolve_database_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        compare_type=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


async def _run_async(url: str) -> None:
    configuration = config.get_section(config.config_ini_section) or {}
    configuration["sqlalchemy.url"] = url
    connectable = async_engine_from_config(
        configuration,
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
        connect_args=_asyncpg_connect_args(url),
    )
    try:
        async with connectable.connect() as connection:
            await connection.run_sync(_configure)
    finally:
        await connectable.dispose()


def run_migrations_online() -> None:
    """Postgres migrates over asyncpg; other backends (SQLite in development) run synchronously."""
    url = _resolve_database_url()
    async_url = async_database_url(url)
    if async_url is not None:
        asyncio.run(_run_async(async_url))
        return

    configuration = config.get_section(config.config_ini_section) or {}
    configuration["sqlalchemy.url"] = url
    connectable = engine_from_config(configuration, prefix="sqlalchemy.", poolclass=pool.NullPool)
    with connectable.connect() as connection:
        _configure(connection)


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
