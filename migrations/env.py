from logging.config import fileConfig
import os
import sys

from alembic import context
from dotenv import load_dotenv
from sqlalchemy import engine_from_config, pool, text

# project root on sys.path so 'signoff' imports when alembic runs from anywhere
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
load_dotenv()

import signoff.models  # noqa: E402,F401  populates Base.metadata
from signoff.config import settings  # noqa: E402
from signoff.database import Base  # noqa: E402

config = context.config
if config.config_file_name:
    fileConfig(config.config_file_name)

database_url = settings.database_sync_url or config.get_main_option("sqlalchemy.url")
config.set_main_option("sqlalchemy.url", database_url)

target_metadata = Base.metadata


def _configure(**kwargs) -> None:
    context.configure(
        target_metadata=target_metadata,
        compare_type=True,
        # SQLite cannot ALTER most constraints in place
        render_as_batch=database_url.startswith("sqlite"),
        **kwargs,
    )


def run_migrations_offline():
    _configure(url=database_url, literal_binds=True, dialect_opts={"paramstyle": "named"})
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online():
    connectable = engine_from_config(
        config.get_section(config.config_ini_section),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with connectable.connect() as connection:
        if connection.dialect.name == "postgresql":
            # trigram index backs the approval title search
            connection.execute(text('CREATE EXTENSION IF NOT EXISTS "pg_trgm"'))
            connection.commit()
        _configure(connection=connection)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
