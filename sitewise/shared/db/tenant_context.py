"""
Tenant Context Manager

Every piece of business logic that touches tenant-owned rows runs inside a
scoped unit of work:

- one session, one transaction
- Postgres RLS variables (`app.tenant_id`, `app.org_id`) set transaction-locally
- the connection marked with the tenant id for the duration (checked by the
  statement guard and the pool checkin/checkout listeners in `session.py`)
- a `TenantScope` handle whose every query carries the tenant predicate

The raw session is never handed to callers.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, TypeVar
from uuid import UUID

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import InstrumentedAttribute

from sitewise.models.tenant import Tenant
from sitewise.shared.core.exceptions import ScopeViolation
from sitewise.shared.core.ops_metrics import TENANT_SCOPES_OPENED
from sitewise.shared.db.session import TENANT_SCOPE_KEY, apply_tenant_context

logger = structlog.get_logger()

T = TypeVar("T")

_active_scope: ContextVar[Optional["TenantScope"]] = ContextVar("sitewise_tenant_scope", default=None)


def current_scope() -> Optional["TenantScope"]:
    """The scope owning the current task, if any."""
    return _active_scope.get()


class TenantScope:
    """
    Tenant-bound query handle.

    Only models with a `tenant_id` column can be queried through it; the
    tenant predicate is added to every statement.
    """

    def __init__(self, session: AsyncSession, tenant_id: UUID, org_id: UUID):
        self._session = session
        self.tenant_id = tenant_id
        self.org_id = org_id

    def _tenant_column(self, model) -> InstrumentedAttribute:
        column = getattr(model, "tenant_id", None)
        if column is None:
            raise ScopeViolation(
                f"{getattr(model, '__name__', model)} is not tenant-owned and cannot be queried through a tenant scope",
                code="scope_model_not_tenant_owned",
            )
        return column

    async def get_tenant(self) -> Tenant:
        tenant = await self._session.get(Tenant, self.tenant_id)
        if tenant is None:
            raise ScopeViolation(f"Tenant {self.tenant_id} is not visible in its own scope")
        return tenant

    async def select(self, model, *criteria, order_by=None, limit: int | None = None) -> list:
        stmt = select(model).where(self._tenant_column(model) == self.tenant_id, *criteria)
        if order_by is not None:
            stmt = stmt.order_by(order_by)
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def distinct(self, column: InstrumentedAttribute, *criteria) -> list:
        """Distinct values of one column of a tenant-owned model."""
        model = column.class_
        stmt = (
            select(column)
            .where(self._tenant_column(model) == self.tenant_id, *criteria)
            .distinct()
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def count(self, model, *criteria) -> int:
        stmt = (
            select(func.count())
            .select_from(model)
            .where(self._tenant_column(model) == self.tenant_id, *criteria)
        )
        result = await self._session.execute(stmt)
        return int(result.scalar_one())

    async def add(self, obj: T) -> T:
        """Insert a tenant-owned row, tagging it with this scope's tenant (and org, when the model has one)."""
        self._tenant_column(type(obj))
        if obj.tenant_id is None:
            obj.tenant_id = self.tenant_id
        elif obj.tenant_id != self.tenant_id:
            raise ScopeViolation(
                f"Cannot write a row for tenant {obj.tenant_id} inside the scope of tenant {self.tenant_id}",
                details={"scope_tenant_id": str(self.tenant_id), "row_tenant_id": str(obj.tenant_id)},
            )
        if hasattr(type(obj), "org_id"):
            if obj.org_id is None:
                obj.org_id = self.org_id
            elif obj.org_id != self.org_id:
                raise ScopeViolation(
                    f"Cannot write a row for org {obj.org_id} inside the scope of org {self.org_id}",
                    details={"scope_org_id": str(self.org_id), "row_org_id": str(obj.org_id)},
                )
        self._session.add(obj)
        await self._session.flush()
        return obj

    async def delete_where(self, model, *criteria) -> int:
        stmt = (
            delete(model)
            .where(self._tenant_column(model) == self.tenant_id, *criteria)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount or 0

    async def delete_older_than(self, column: InstrumentedAttribute, cutoff: datetime) -> int:
        """Delete rows whose timestamp column is strictly before `cutoff`."""
        return await self.delete_where(column.class_, column < cutoff)


class TenantContextManager:
    """Opens tenant-scoped units of work on top of a session factory."""

    def __init__(self, session_maker: async_sessionmaker | None = None):
        if session_maker is None:
            from sitewise.shared.db.session import async_session_maker
            session_maker = async_session_maker
        self.session_maker = session_maker

    @asynccontextmanager
    async def scoped(self, tenant_id: UUID, org_id: UUID | None = None) -> AsyncIterator[TenantScope]:
        """
        Yield a `TenantScope` for `tenant_id`.

        Commits when the block exits normally and rolls back on error. When
        `org_id` is given it must match the tenant's owning org.
        """
        if tenant_id is None:
            TENANT_SCOPES_OPENED.labels(outcome="violation").inc()
            raise ScopeViolation("A tenant id is required to open a tenant scope", code="scope_missing_tenant")

        active = _active_scope.get()
        if active is not None:
            if active.tenant_id == tenant_id and (org_id is None or org_id == active.org_id):
                yield active
                return
            TENANT_SCOPES_OPENED.labels(outcome="violation").inc()
            raise ScopeViolation(
                f"Cannot open a scope for tenant {tenant_id} inside the scope of tenant {active.tenant_id}",
                code="scope_nested_tenant_mismatch",
                details={"active_tenant_id": str(active.tenant_id), "requested_tenant_id": str(tenant_id)},
            )

        async with self.session_maker() as session:
            async with session.begin():
                await apply_tenant_context(session, tenant_id, org_id)
                conn = await session.connection()
                conn.info[TENANT_SCOPE_KEY] = str(tenant_id)
                token = None
                try:
                    tenant = await session.get(Tenant, tenant_id)
                    if tenant is None:
                        raise ScopeViolation(f"Tenant {tenant_id} does not exist", code="scope_unknown_tenant")
                    if org_id is not None and tenant.org_id != org_id:
                        raise ScopeViolation(
                            f"Tenant {tenant_id} does not belong to org {org_id}",
                            code="scope_org_mismatch",
                            details={"tenant_id": str(tenant_id), "org_id": str(org_id)},
                        )
                    scope = TenantScope(session, tenant_id, tenant.org_id)
                    token = _active_scope.set(scope)
                    TENANT_SCOPES_OPENED.labels(outcome="ok").inc()
                    yield scope
                    # Flush while the connection is still marked; commit follows on exit.
                    await session.flush()
                except ScopeViolation:
                    if token is None:
                        TENANT_SCOPES_OPENED.labels(outcome="violation").inc()
                    raise
                finally:
                    if token is not None:
                        _active_scope.reset(token)
                    conn.info.pop(TENANT_SCOPE_KEY, None)

    async def run_scoped(
        self,
        tenant_id: UUID,
        org_id: UUID | None,
        work: Callable[[TenantScope], Awaitable[T]],
    ) -> T:
        async with self.scoped(tenant_id, org_id) as scope:
            return await work(scope)


async def run_scoped(tenant_id: UUID, org_id: UUID | None, work: Callable[[TenantScope], Awaitable[Any]]) -> Any:
    """Module-level shortcut on the default session factory."""
    return await TenantContextManager().run_scoped(tenant_id, org_id, work)
