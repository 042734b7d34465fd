"""Alembic environment for the Stratus PostgreSQL schema.

SQLite databases never go through Alembic: db.py creates their tables on
first connect. Only PostgreSQL URLs are accepted here.
"""

import logging
import os
import sys
from logging.config import fileConfig

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, ROOT)

from dotenv import load_dotenv
load_dotenv(os.path.join(ROOT, ".env"))

from alembic import context
from sqlalchemy import create_engine, text
from sqlalchemy.pool import NullPool

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name, disable_existing_loggers=False)

log = logging.getLogger("stratus.migrations")

# Serializes concurrent `alembic upgrade` runs (rolling deploys)
MIGRATION_LOCK_ID = 727002


def database_url() -> str:
    """The explicit environment DSN wins over alembic.ini; always psycopg 3."""
    url = (os.environ.get("STRATUS_POSTGRES_DSN")
           or os.environ.get("DATABASE_URL")
           or config.get_main_option("sqlalchemy.url"))
    if not url:
        raise RuntimeError("No database URL: set STRATUS_POSTGRES_DSN or sqlalchemy.url")
    if url.startswith("sqlite"):
        raise RuntimeError("Alembic manages PostgreSQL only; db.py bootstraps SQLite itself")
    for prefix in ("postgres://", "postgresql://"):
        if url.startswith(prefix):
            return "postgresql+psycopg://" + url[len(prefix):]
    return url


def run_migrations_offline():
    """Emit the migration SQL without connecting."""
    context.configure(
        url=database_url(),
        target_metadata=None,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online():
    """Apply migrations under a session advisory lock."""
    engine = create_engine(database_url(), poolclass=NullPool)
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT pg_advisory_lock(:id)"), {"id": MIGRATION_LOCK_ID})
            try:
                context.configure(connection=connection, target_metadata=None,
                                  transaction_per_migration=True)
                with context.begin_transaction():
                    context.run_migrations()
            finally:
                connection.execute(text("SELECT pg_advisory_unlock(:id)"),
                                   {"id": MIGRATION_LOCK_ID})
                connection.commit()
    finally:
        engine.dispose()
    log.info("MIGRATIONS applied")


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
