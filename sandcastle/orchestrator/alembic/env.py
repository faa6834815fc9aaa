"""Migration environment for the workspace/build schema.

The URL comes from ``SANDCASTLE_DATABASE_URL``; migrations always run on a
synchronous psycopg connection.
"""

from __future__ import annotations

from logging.config import fileConfig
from typing import Any

from alembic import context
from sqlalchemy import create_engine, pool

from sandcastle.orchestrator.db.engine import normalize_database_url
from sandcastle.orchestrator.db.tables import Base
from sandcastle.orchestrator.settings import get_settings

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def _database_url() -> str:
    url = get_settings().database_url
    if not url:
        msg = "SANDCASTLE_DATABASE_URL is not set; nothing to migrate."
        raise RuntimeError(msg)
    return normalize_database_url(url)


def _own_tables_only(obj: Any, name: str | None, type_: str, reflected: bool, compare_to: Any) -> bool:
    # Tables that live in the same database but not in Base are left alone.
    return not (type_ == "table" and reflected and compare_to is None)


_COMPARE = {"include_object": _own_tables_only, "compare_type": True, "compare_server_default": True}


def run_migrations_offline() -> None:
    """Emit SQL instead of executing it."""
    context.configure(
        url=_database_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **_COMPARE,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    engine = create_engine(_database_url(), poolclass=pool.NullPool)
    with engine.connect() as connection:
        context.configure(connection=connection, target_metadata=target_metadata, **_COMPARE)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
