# alembic/env.py
import sys
from logging.config import fileConfig
from pathlib import Path

from alembic import context
from sqlalchemy import create_engine, pool
from sqlalchemy.engine import URL, make_url

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.append(str(PROJECT_ROOT))

from workshop.database import Base
from workshop import models  # noqa: F401  registers every store on Base.metadata
from workshop.settings.config import settings

# Alembic runs synchronously; swap the async driver for its blocking twin.
SYNC_DRIVERS = {
    "sqlite+aiosqlite": "sqlite",
    "postgresql+asyncpg": "postgresql+psycopg2",
}

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def sync_url(raw: str) -> URL:
    url = make_url(raw)
    return url.set(drivername=SYNC_DRIVERS.get(url.drivername, url.drivername))


def _configure(**kwargs) -> None:
    # SQLite cannot ALTER most columns in place, so always batch.
    context.configure(target_metadata=target_metadata, compare_type=True, render_as_batch=True, **kwargs)


def run_migrations_offline() -> None:
    _configure(
        url=sync_url(settings.DATABASE_URL).render_as_string(hide_password=False),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = create_engine(sync_url(settings.DATABASE_URL), poolclass=pool.NullPool)
    with connectable.connect() as connection:
        _configure(connection=connection, transaction_per_migration=True)
        with context.begin_transaction():
            context.run_migrations()
    connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
