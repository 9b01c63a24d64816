"""
Alembic environment for the credit ledger tables.

The database URL resolves the same way the service resolves it
(CREDITLEDGER_DATABASE_URL, else the SQLite file under the data directory),
unless the caller already set one: init_db() passes the URL explicitly and
asks for the ini logging config to be left alone.
"""

from logging.config import fileConfig

from alembic import context
from sqlmodel import SQLModel

from creditledger.config import settings
from creditledger.core.database import build_engine
from creditledger.models import ledger  # noqa: F401  (registers the tables)

config = context.config

if config.attributes.get("configure_logger", True) and config.config_file_name is not None:
    fileConfig(config.config_file_name, disable_existing_loggers=False)

if not config.attributes.get("url_from_caller"):
    config.set_main_option("sqlalchemy.url", settings.resolved_database_url())

target_metadata = SQLModel.metadata


def run_migrations_offline() -> None:
    """Emit the migration SQL instead of running it."""
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    engine = build_engine(config.get_main_option("sqlalchemy.url"))
    try:
        with engine.connect() as connection:
            context.configure(
                connection=connection,
                target_metadata=target_metadata,
                compare_type=True,
                # SQLite cannot ALTER most constraints in place
                render_as_batch=connection.dialect.name == "sqlite",
            )
            with context.begin_transaction():
                context.run_migrations()
    finally:
        engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
