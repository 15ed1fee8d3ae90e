"""
AV30 Compute Service

Nightly rollup of distinct active staff per org:

1. resolve (tenant, org) pairs through tenant-scoped reads, failing the batch
   if any tenant cannot be resolved
2. per tenant, inside its own scope, collect distinct staff ids with a
   qualifying activity at or after `now - 30 days`
3. union the ids per org so a person active in two sites counts once
4. write one counter per org, zero included, updating the existing row

A tenant whose query fails is logged and its org left unwritten; the other
orgs are persisted and the run then raises `UsageAggregationError`.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Set
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from sitewise.models.activity import StaffActivity
from sitewise.models.usage import UsageCounter
from sitewise.modules.usage.domain.activity import qualifying_activity_types
from sitewise.shared.core.exceptions import TenantNotAccessible, UsageAggregationError
from sitewise.shared.core.ops_metrics import AV30_ORGS_COMPUTED, AV30_TENANT_FAILURES
from sitewise.shared.db.tenant_context import TenantContextManager

logger = structlog.get_logger()

AV30_WINDOW = timedelta(days=30)  # exactly 30 x 24h, not calendar months


@dataclass(frozen=True)
class TenantOrgContext:
    tenant_id: UUID
    org_id: UUID


@dataclass(frozen=True)
class Av30Result:
    org_id: UUID
    av30: int
    calculated_at: datetime


class Av30ComputeService:
    def __init__(
        self,
        session_maker: async_sessionmaker | None = None,
        context_manager: TenantContextManager | None = None,
        allow_list_version: str | None = None,
    ):
        if session_maker is None:
            from sitewise.shared.db.session import async_session_maker
            session_maker = async_session_maker
        self.session_maker = session_maker
        self.context_manager = context_manager or TenantContextManager(session_maker)
        self.allowed_types = qualifying_activity_types(allow_list_version)

    async def resolve_contexts(self, tenant_ids: Iterable[UUID]) -> List[TenantOrgContext]:
        """Scoped read of each tenant row. Any failure aborts the whole batch."""
        contexts: List[TenantOrgContext] = []
        for tenant_id in tenant_ids:
            try:
                async with self.context_manager.scoped(tenant_id) as scope:
                    tenant = await scope.get_tenant()
                    contexts.append(TenantOrgContext(tenant_id=tenant.id, org_id=tenant.org_id))
            except Exception as e:
                logger.error("av30_tenant_resolution_failed", tenant_id=str(tenant_id), error=str(e))
                raise TenantNotAccessible(str(tenant_id), details={"reason": str(e)}) from e
        return contexts

    async def _active_staff_for_tenant(self, context: TenantOrgContext, window_start: datetime) -> Set[UUID]:
        async with self.context_manager.scoped(context.tenant_id, context.org_id) as scope:
            staff_ids = await scope.distinct(
                StaffActivity.staff_user_id,
                StaffActivity.occurred_at >= window_start,
                StaffActivity.activity_type.in_([t.value for t in self.allowed_types]),
            )
        return set(staff_ids)

    async def compute_for_tenants(self, contexts: Iterable[TenantOrgContext], now: datetime) -> List[Av30Result]:
        unique: Dict[UUID, TenantOrgContext] = {}
        for context in contexts:
            unique.setdefault(context.tenant_id, context)
        if not unique:
            return []

        window_start = now - AV30_WINDOW
        staff_by_org: Dict[UUID, Set[UUID]] = {}
        failures: List[Dict[str, str]] = []
        failed_orgs: Set[UUID] = set()
        first_error: Exception | None = None
        for context in unique.values():
            org_staff = staff_by_org.setdefault(context.org_id, set())
            try:
                org_staff |= await self._active_staff_for_tenant(context, window_start)
            except Exception as e:  # noqa: BLE001 - Intentional catch-all for tenant isolation
                AV30_TENANT_FAILURES.inc()
                logger.error(
                    "av30_tenant_failed",
                    tenant_id=str(context.tenant_id),
                    org_id=str(context.org_id),
                    error_type=type(e).__name__,
                )
                failures.append({
                    "tenant_id": str(context.tenant_id),
                    "org_id": str(context.org_id),
                    "error": type(e).__name__,
                })
                failed_orgs.add(context.org_id)
                first_error = first_error or e

        # An org with a failed site would be undercounted; keep its previous counter.
        results = [
            Av30Result(org_id=org_id, av30=len(staff_ids), calculated_at=now)
            for org_id, staff_ids in staff_by_org.items()
            if org_id not in failed_orgs
        ]
        if results:
            await self._persist(results)

        AV30_ORGS_COMPUTED.set(len(results))
        logger.info(
            "av30_compute_complete",
            tenants=len(unique),
            orgs=len(results),
            failed_tenants=len(failures),
            window_start=window_start.isoformat(),
        )

        if failures:
            raise UsageAggregationError(
                f"AV30 aggregation failed for {len(failures)} tenant(s)",
                details={
                    "failed_tenants": failures,
                    "persisted_orgs": [str(result.org_id) for result in results],
                },
            ) from first_error
        return results

    async def _persist(self, results: List[Av30Result]) -> None:
        """Update each org's counter in place, or insert it. One transaction for the batch."""
        async with self.session_maker() as session:
            async with session.begin():
                for result in results:
                    existing = (
                        await session.execute(
                            select(UsageCounter).where(UsageCounter.org_id == result.org_id).with_for_update()
                        )
                    ).scalar_one_or_none()
                    if existing is not None:
                        existing.av30 = result.av30
                        existing.calculated_at = result.calculated_at
                    else:
                        session.add(
                            UsageCounter(
                                org_id=result.org_id,
                                av30=result.av30,
                                calculated_at=result.calculated_at,
                            )
                        )
