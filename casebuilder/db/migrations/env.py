"""
Alembic environment for the checkpoint tables.

The target database defaults to ``settings.DATABASE_URL`` and can be
overridden per run with ``alembic -x database_url=...``. Async driver URLs
are mapped to the dialect's sync driver before connecting.
"""

from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine, pool

from casebuilder.config import settings
from casebuilder.models import Base  # registers Checkpoint and UndoLogEntry
from casebuilder.models.database import sync_database_url

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

database_url = sync_database_url(
    context.get_x_argument(as_dictionary=True).get("database_url", settings.DATABASE_URL)
)
target_metadata = Base.metadata

# SQLite cannot ALTER most constraints in place
render_as_batch = database_url.startswith("sqlite")


def run_migrations_offline() -> None:
    """Emit the migration SQL without connecting."""
    context.configure(
        url=database_url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        render_as_batch=render_as_batch,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Apply migrations over a short-lived connection."""
    engine = create_engine(database_url, poolclass=pool.NullPool)
    try:
        with engine.connect() as connection:
            context.configure(
                connection=connection,
                target_metadata=target_metadata,
                render_as_batch=render_as_batch,
            )
            with context.begin_transaction():
                context.run_migrations()
    finally:
        engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
