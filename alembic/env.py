"""Alembic environment for the Pulse schema.

Two tables are managed here: the append-only ``activity_sessions`` log and
the ``user_stats`` counter rows.  The database URL comes from
``DATABASE_URL`` (``.env``), the same variable the bot and API read, so
``alembic upgrade head`` migrates exactly the database the tracker writes.
"""

from __future__ import annotations

import os
from logging.config import fileConfig

from dotenv import load_dotenv

from alembic import context

load_dotenv()

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# Models must be imported for autogenerate to see activity_sessions / user_stats
from pulse.database.engine import create_db_engine  # noqa: E402
from pulse.database.models import Base  # noqa: E402

target_metadata = Base.metadata


def _database_url() -> str:
    url = os.getenv("DATABASE_URL") or config.get_main_option("sqlalchemy.url")
    if not url:
        raise RuntimeError("DATABASE_URL is not set; cannot run Pulse migrations")
    return url


def run_migrations_offline() -> None:
    """Emit SQL for the Pulse tables without connecting."""
    context.configure(
        url=_database_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Migrate the live database through the tracker's own engine factory."""
    connectable = create_db_engine(_database_url())
    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,  # enum value lists on kind / status
        )
        with context.begin_transaction():
            context.run_migrations()
    connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
