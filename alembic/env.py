"""Alembic migration environment.

Runs migrations for the knowledge metadata tables (agents,
knowledge_entries) over a synchronous psycopg connection.
"""

from logging.config import fileConfig

from sqlalchemy import create_engine, pool

from alembic import context

# Import models so Alembic can detect them
from src.db.models import Base
from src.core.config import get_settings

# this is the Alembic Config object
config = context.config

# Load settings
settings = get_settings()

# Convert async URL to sync for Alembic
# postgresql+asyncpg:// -> postgresql+psycopg://
sync_url = settings.get_database_url.replace("postgresql+asyncpg://", "postgresql+psycopg://")
config.set_main_option("sqlalchemy.url", sync_url)

# Interpret the config file for Python logging
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# Model metadata for 'autogenerate' support
target_metadata = Base.metadata


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode, emitting SQL without a DBAPI connection."""
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode.

    Creates an Engine and associates a connection with the context.
    """
    connectable = create_engine(
        config.get_main_option("sqlalchemy.url"),
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
