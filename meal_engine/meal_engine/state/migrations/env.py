"""Alembic environment for the meal subscription engine schema.

Runs in both online and offline (SQL-generation) mode against PostgreSQL or
a local SQLite file.  ``target_metadata`` is ``meal_engine.state.tables.Base``
so ``--autogenerate`` compares against the ORM definitions.
"""

from __future__ import annotations

import logging
import os
from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

from meal_engine.config import load_engine_settings
from meal_engine.state.tables import Base

config = context.config

if config.config_file_name is not None and config.config_file_name.endswith(".ini"):
    fileConfig(config.config_file_name)

logger = logging.getLogger("alembic.env")

target_metadata = Base.metadata

# ---------------------------------------------------------------------------
# Database URL resolution
# ---------------------------------------------------------------------------


def _sync_url(url: str) -> str:
    """Swap the async driver for its synchronous counterpart.

    Alembic's ``MigrationContext`` needs a synchronous engine: asyncpg URLs
    move to psycopg, aiosqlite URLs to the built-in sqlite driver.
    """
    if url.startswith("postgresql+asyncpg://"):
        url = "postgresql+psycopg://" + url[len("postgresql+asyncpg://") :]
    elif url.startswith("postgresql://"):
        url = "postgresql+psycopg://" + url[len("postgresql://") :]
    elif url.startswith("sqlite+aiosqlite://"):
        url = "sqlite://" + url[len("sqlite+aiosqlite://") :]
    return url.replace("ssl=require", "sslmode=require")


def _get_database_url() -> str:
    """``ALEMBIC_DATABASE_URL`` wins, then ``sqlalchemy.url``, then ``MEAL_DATABASE_URL``."""
    url = os.environ.get("ALEMBIC_DATABASE_URL") or config.get_main_option("sqlalchemy.url")
    if not url:
        url = load_engine_settings().database_url
        logger.info("Using engine database URL: %s", url[:40] + "...")
    return _sync_url(url)


def _configure_kwargs(url: str) -> dict[str, object]:
    # SQLite cannot ALTER most constraints in place.
    return {
        "target_metadata": target_metadata,
        "compare_type": True,
        "render_as_batch": url.startswith("sqlite"),
    }


# ---------------------------------------------------------------------------
# Offline / online
# ---------------------------------------------------------------------------


def run_migrations_offline() -> None:
    url = _get_database_url()
    context.configure(
        url=url,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **_configure_kwargs(url),
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    url = _get_database_url()
    configuration = config.get_section(config.config_ini_section, {})
    configuration["sqlalchemy.url"] = url

    connectable = engine_from_config(configuration, prefix="sqlalchemy.", poolclass=pool.NullPool)
    with connectable.connect() as connection:
        context.configure(connection=connection, **_configure_kwargs(url))
        with context.begin_transaction():
            context.run_migrations()
    connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
