import re
import ssl
import sys
import time
from typing import List, Tuple
from uuid import UUID

import structlog
from fastapi import Request
from sqlalchemy import event, exc, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import Pool

from sitewise.models.tenant import Tenant
from sitewise.shared.core.config import get_settings

logger = structlog.get_logger()
settings = get_settings()

if not settings.DATABASE_URL:
    logger.critical("startup_failed_missing_db_url",
                    msg="DATABASE_URL is not set. The application cannot start.")
    sys.exit(1)

# Connection-record key carrying the tenant id while a tenant scope owns the connection.
TENANT_SCOPE_KEY = "tenant_scope"

# Tables whose rows belong to exactly one tenant (RLS-protected on Postgres).
TENANT_SCOPED_TABLES = frozenset({
    "user_tenant_roles",
    "staff_activities",
    "attendances",
    "audit_events",
})

_TENANT_TABLE_PATTERN = re.compile(
    r"\b(" + "|".join(sorted(TENANT_SCOPED_TABLES)) + r")\b",
    re.IGNORECASE,
)
_GUARDED_VERBS = ("select", "insert", "update", "delete", "with")

# SSL Context: Configurable SSL modes for different environments
# Options: disable, require, verify-ca, verify-full
ssl_mode = settings.DB_SSL_MODE.lower()
connect_args = {}
if "postgresql" in settings.DATABASE_URL:
    connect_args["statement_cache_size"] = 0  # Required for pgbouncer transaction pooling

if "sqlite" in settings.DATABASE_URL:
    pass
elif ssl_mode == "disable":
    logger.warning("database_ssl_disabled",
                   msg="SSL disabled - INSECURE, do not use in production!")
    connect_args["ssl"] = False

elif ssl_mode == "require":
    ssl_context = ssl.create_default_context()
    if settings.DB_SSL_CA_CERT_PATH:
        ssl_context.load_verify_locations(cafile=settings.DB_SSL_CA_CERT_PATH)
        ssl_context.verify_mode = ssl.CERT_REQUIRED
        logger.info("database_ssl_require_verified", ca_cert=settings.DB_SSL_CA_CERT_PATH)
    elif settings.is_production:
        logger.critical("database_ssl_require_failed_production",
                        msg="SSL CA verification is REQUIRED in production.")
        raise ValueError("DB_SSL_CA_CERT_PATH is mandatory when DB_SSL_MODE=require in production.")
    else:
        ssl_context.check_hostname = False
        ssl_context.verify_mode = ssl.CERT_NONE
        logger.warning("database_ssl_require_insecure",
                       msg="SSL enabled but CA verification skipped. MitM risk!")
    connect_args["ssl"] = ssl_context

elif ssl_mode in ("verify-ca", "verify-full"):
    if not settings.DB_SSL_CA_CERT_PATH:
        raise ValueError(f"DB_SSL_CA_CERT_PATH required for ssl_mode={ssl_mode}")
    ssl_context = ssl.create_default_context(cafile=settings.DB_SSL_CA_CERT_PATH)
    ssl_context.verify_mode = ssl.CERT_REQUIRED
    ssl_context.check_hostname = (ssl_mode == "verify-full")
    connect_args["ssl"] = ssl_context
    logger.info("database_ssl_verified", mode=ssl_mode, ca_cert=settings.DB_SSL_CA_CERT_PATH)

else:
    raise ValueError(f"Invalid DB_SSL_MODE: {ssl_mode}. Use: disable, require, verify-ca, verify-full")

# Pool Configuration: Use NullPool for testing to avoid connection leaks across loops
pool_args = {}
if settings.TESTING or "sqlite" in settings.DATABASE_URL:
    from sqlalchemy.pool import NullPool
    pool_args["poolclass"] = NullPool
else:
    pool_args["pool_size"] = settings.DB_POOL_SIZE
    pool_args["max_overflow"] = settings.DB_MAX_OVERFLOW

effective_url = settings.DATABASE_URL
if settings.TESTING and "sqlite" not in effective_url:
    effective_url = "sqlite+aiosqlite:///:memory:"

engine = create_async_engine(
    effective_url,
    echo=settings.DEBUG,
    pool_pre_ping=True,
    pool_recycle=300,
    connect_args=connect_args,
    **pool_args
)

SLOW_QUERY_THRESHOLD_SECONDS = 0.2


@event.listens_for(engine.sync_engine, "before_cursor_execute")
def before_cursor_execute(conn, _cursor, _statement, _parameters, _context, _executemany):
    """Record query start time."""
    conn.info.setdefault("query_start_time", []).append(time.perf_counter())


@event.listens_for(engine.sync_engine, "after_cursor_execute")
def after_cursor_execute(conn, _cursor, statement, parameters, _context, _executemany):
    """Log slow queries."""
    total = time.perf_counter() - conn.info["query_start_time"].pop(-1)
    if total > SLOW_QUERY_THRESHOLD_SECONDS:
        logger.warning(
            "slow_query_detected",
            duration_seconds=round(total, 3),
            statement=statement[:200] + "..." if len(statement) > 200 else statement,
            parameters=str(parameters)[:100] if parameters else None
        )


# expire_on_commit=False: objects stay readable after the scope's transaction commits
async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def apply_tenant_context(session: AsyncSession, tenant_id, org_id) -> None:
    """
    Set the transaction-local RLS variables for a tenant.

    Postgres discards `set_config(..., true)` and `SET LOCAL` at commit or
    rollback, so nothing survives into the next checkout of the connection.
    Other dialects only get the connection marker (see TenantContextManager).
    """
    conn = await session.connection()
    if conn.dialect.name != "postgresql":
        return
    await session.execute(
        text("SELECT set_config('app.tenant_id', :tid, true)"),
        {"tid": str(tenant_id)},
    )
    await session.execute(
        text("SELECT set_config('app.org_id', :oid, true)"),
        {"oid": str(org_id) if org_id else ""},
    )
    await session.execute(text("SET LOCAL row_security = on"))


async def apply_system_context(session: AsyncSession) -> None:
    """
    Allow tenant directory reads for scheduled jobs (`tenant_directory_read` policy).
    Tenant-owned rows stay invisible until a tenant scope is opened.
    """
    conn = await session.connection()
    conn.info["rls_context_set"] = True
    if conn.dialect.name != "postgresql":
        return
    await session.execute(text("SELECT set_config('app.system_scope', 'on', true)"))


async def list_tenant_directory(session_maker: async_sessionmaker | None = None) -> List[Tuple[UUID, UUID]]:
    """(tenant_id, org_id) for every tenant, oldest first, read under the system context."""
    session_maker = session_maker or async_session_maker
    async with session_maker() as session:
        async with session.begin():
            await apply_system_context(session)
            result = await session.execute(select(Tenant.id, Tenant.org_id).order_by(Tenant.created_at))
            return [(row.id, row.org_id) for row in result.all()]


async def get_db(request: Request = None) -> AsyncSession:
    """
    FastAPI dependency that provides a database session.

    Billing webhooks are org-level and carry no tenant; tenant-owned tables
    remain guarded by `check_rls_policy` regardless.
    """
    async with async_session_maker() as session:
        rls_context_set = True

        if request is not None:
            tenant_id = getattr(request.state, "tenant_id", None)
            org_id = getattr(request.state, "org_id", None)
            if tenant_id:
                try:
                    await apply_tenant_context(session, tenant_id, org_id)
                except Exception as e:
                    rls_context_set = False
                    logger.warning("rls_context_set_failed", error=str(e))

        session.info["rls_context_set"] = rls_context_set
        conn = await session.connection()
        conn.info["rls_context_set"] = rls_context_set

        try:
            yield session
        finally:
            await session.close()


@event.listens_for(Engine, "before_cursor_execute", retval=True)
def check_rls_policy(conn, _cursor, statement, parameters, _context, _executemany):
    """
    Multi-tenancy statement guard.

    Aborts execution when a session explicitly failed to set its RLS context,
    and when a statement touches a tenant-owned table on a connection that is
    not inside a tenant scope.
    """
    stmt_lower = statement.lstrip().lower()
    if "alembic" in stmt_lower:
        return statement, parameters

    rls_status = conn.info.get("rls_context_set")
    unscoped_tenant_access = (
        stmt_lower.startswith(_GUARDED_VERBS)
        and conn.info.get(TENANT_SCOPE_KEY) is None
        and _TENANT_TABLE_PATTERN.search(stmt_lower) is not None
    )

    if rls_status is False or unscoped_tenant_access:
        from sitewise.shared.core.ops_metrics import RLS_CONTEXT_MISSING
        if statement.split():
            RLS_CONTEXT_MISSING.labels(statement_type=statement.split()[0].upper()).inc()

        logger.critical(
            "rls_enforcement_violation_detected",
            statement=statement[:200],
            error="Query executed WITHOUT tenant insulation set. RLS policy violated!"
        )

        from sitewise.shared.core.exceptions import TenantIsolationError
        raise TenantIsolationError(
            "RLS context missing - query execution aborted",
            details={
                "reason": "Multi-tenant isolation enforcement failed",
                "action": "Open a tenant scope before touching tenant-owned tables."
            }
        )

    return statement, parameters


@event.listens_for(Pool, "checkin")
def clear_tenant_scope_on_checkin(_dbapi_connection, connection_record):
    """A connection must never go back to the pool still bound to a tenant."""
    if connection_record is None:
        return
    leaked = connection_record.info.pop(TENANT_SCOPE_KEY, None)
    connection_record.info.pop("rls_context_set", None)
    if leaked is not None:
        from sitewise.shared.core.ops_metrics import TENANT_SCOPE_LEAKS
        TENANT_SCOPE_LEAKS.labels(stage="checkin").inc()
        logger.critical("tenant_scope_leak_detected", stage="checkin", tenant_id=str(leaked))


@event.listens_for(Pool, "checkout")
def reject_scoped_connection_on_checkout(_dbapi_connection, connection_record, _connection_proxy):
    """Discard a connection that still carries a tenant marker; the pool retries with a fresh one."""
    leaked = connection_record.info.get(TENANT_SCOPE_KEY)
    if leaked is not None:
        from sitewise.shared.core.ops_metrics import TENANT_SCOPE_LEAKS
        TENANT_SCOPE_LEAKS.labels(stage="checkout").inc()
        logger.critical("tenant_scope_leak_detected", stage="checkout", tenant_id=str(leaked))
        connection_record.info.pop(TENANT_SCOPE_KEY, None)
        raise exc.DisconnectionError("connection still bound to a tenant scope")
