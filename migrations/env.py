import asyncio
import ssl
from logging.config import fileConfig

from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import create_async_engine

from alembic import context

from sitewise.shared.db.base import Base
# Import all models so Base knows about them!
import sitewise.models  # noqa: F401

from sitewise.shared.core.config import get_settings


settings = get_settings()

# this is the Alembic Config object, which provides
# access to the values within the .ini file in use.
config = context.config

# Interpret the config file for Python logging.
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode.

    Calls to context.execute() here emit the given string to the
    script output.
    """
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
    context.configure(connection=connection, target_metadata=target_metadata)

    with context.begin_transaction():
        context.run_migrations()


def _connect_args() -> dict:
    connect_args = {"statement_cache_size": 0}  # Required for pgbouncer transaction pooling
    ssl_mode = settings.DB_SSL_MODE.lower()
    if ssl_mode == "disable":
        connect_args["ssl"] = False
    elif settings.DB_SSL_CA_CERT_PATH:
        ssl_context = ssl.create_default_context(cafile=settings.DB_SSL_CA_CERT_PATH)
        ssl_context.check_hostname = (ssl_mode == "verify-full")
        connect_args["ssl"] = ssl_context
    else:
        connect_args["ssl"] = "require"
    return connect_args


async def run_async_migrations() -> None:
    """Create an async Engine and associate a connection with the context."""
    connectable = create_async_engine(
        settings.DATABASE_URL,
        poolclass=pool.NullPool,
        connect_args=_connect_args(),
    )

    async with connectable.connect() as connection:
        await connection.run_sync(do_run_migrations)

    await connectable.dispose()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode."""
    # Escape % characters for ConfigParser interpolation
    config.set_main_option("sqlalchemy.url", settings.DATABASE_URL.replace("%", "%%"))
    asyncio.run(run_async_migrations())


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
