"""Alembic environment for the LifeStory schema. Migrations run on a sync psycopg2 engine."""

from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine, pool

from lifestory.config import get_settings
from lifestory.db import models  # noqa: F401 - registers the tables on Base.metadata
from lifestory.db.base import Base

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

DATABASE_URL = get_settings().database_url_sync

# JSONB columns and string enums should show up as type changes in autogenerate
CONFIGURE_OPTIONS = {"target_metadata": Base.metadata, "compare_type": True}


def run_migrations_offline() -> None:
    """Emit the migration SQL instead of running it (`alembic upgrade --sql`)."""
    context.configure(
        url=DATABASE_URL,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **CONFIGURE_OPTIONS,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    engine = create_engine(DATABASE_URL, poolclass=pool.NullPool)
    try:
        with engine.connect() as connection:
            context.configure(connection=connection, **CONFIGURE_OPTIONS)
            with context.begin_transaction():
                context.run_migrations()
    finally:
        engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
