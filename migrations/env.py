"""Alembic environment for the bundle sync tables.

Runs synchronously: the asyncpg/aiosqlite URL from DATABASE_URL is mapped to
its sync driver before the engine is built.
"""
from logging.config import fileConfig
import os
import re

from alembic import context
from sqlalchemy import engine_from_config, pool
from sqlalchemy import text

from dotenv import load_dotenv

load_dotenv()

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)


def _sync_url(url: str) -> str:
    return (
        url.replace("postgresql+asyncpg://", "postgresql://")
        .replace("sqlite+aiosqlite://", "sqlite://")
    )


database_url = os.getenv("DATABASE_URL") or config.get_main_option("sqlalchemy.url") or "sqlite:///bundles.db"
config.set_main_option("sqlalchemy.url", _sync_url(database_url))

try:
    from sqlalchemy.dialects.postgresql.base import PGDialect

    _original_get_server_version_info = PGDialect._get_server_version_info

    def _cockroach_safe_server_version(self, connection):
        version_str = connection.scalar(text("SELECT version()"))
        if isinstance(version_str, bytes):
            version_str = version_str.decode("utf-8", errors="ignore")

        # CockroachDB reports its own version; present it as a PostgreSQL 13
        if version_str and "CockroachDB" in version_str and re.search(r"v(\d+)\.(\d+)\.(\d+)", version_str):
            return (13, 0)

        return _original_get_server_version_info(self, connection)

    PGDialect._get_server_version_info = _cockroach_safe_server_version
except (ImportError, AttributeError):
    pass

from database import Base  # noqa: E402

target_metadata = Base.metadata


def run_migrations_offline() -> None:
    """Emit SQL to stdout without connecting."""
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(connection=connection, target_metadata=target_metadata)

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
