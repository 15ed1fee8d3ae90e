"""
Retention Sweeper

Deletes expired staff activity, attendance and audit rows tenant by tenant.
Each tenant runs in its own scope and its own transaction; a failing tenant
is reported and the sweep moves on.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import async_sessionmaker

from sitewise.modules.governance.domain.retention.policy import (
    RetentionCategory,
    RetentionConfigService,
)
from sitewise.modules.governance.domain.retention.strategy import DeletionStrategy, HardDeleteStrategy
from sitewise.shared.core.config import get_settings
from sitewise.shared.core.logging import audit_log
from sitewise.shared.core.ops_metrics import RETENTION_ROWS_DELETED, RETENTION_TENANT_FAILURES
from sitewise.shared.db.base import utcnow
from sitewise.shared.db.session import list_tenant_directory
from sitewise.shared.db.tenant_context import TenantContextManager

logger = structlog.get_logger()


@dataclass
class TenantRetentionFailure:
    tenant_id: UUID
    org_id: UUID
    error: str


@dataclass
class RetentionRunReport:
    skipped: bool = False
    tenants_processed: int = 0
    failures: List[TenantRetentionFailure] = field(default_factory=list)
    deleted: Dict[RetentionCategory, int] = field(
        default_factory=lambda: {category: 0 for category in RetentionCategory}
    )

    @property
    def ok(self) -> bool:
        return not self.failures


class RetentionSweeper:
    def __init__(
        self,
        session_maker: async_sessionmaker | None = None,
        context_manager: TenantContextManager | None = None,
        config_service: RetentionConfigService | None = None,
        strategy: DeletionStrategy | None = None,
        enabled: bool | None = None,
    ):
        if session_maker is None:
            from sitewise.shared.db.session import async_session_maker
            session_maker = async_session_maker
        self.session_maker = session_maker
        self.context_manager = context_manager or TenantContextManager(session_maker)
        self.config_service = config_service or RetentionConfigService(session_maker)
        self.strategy = strategy or HardDeleteStrategy()
        self.enabled = get_settings().RETENTION_ENABLED if enabled is None else enabled

    async def _sweep_tenant(self, tenant_id: UUID, org_id: UUID, now: datetime) -> Dict[RetentionCategory, int]:
        policy = await self.config_service.resolve_for_org(org_id)
        deleted: Dict[RetentionCategory, int] = {}
        async with self.context_manager.scoped(tenant_id, org_id) as scope:
            for category in RetentionCategory:
                cutoff = now - timedelta(days=policy.days_for(category))
                deleted[category] = await self.strategy.expire(scope, category, cutoff)
        return deleted

    async def run(self, now: datetime | None = None) -> RetentionRunReport:
        report = RetentionRunReport()
        if not self.enabled:
            logger.warning(
                "retention_sweep_skipped",
                reason="RETENTION_ENABLED is false; no data modified",
            )
            report.skipped = True
            return report

        now = now or utcnow()
        tenants = await list_tenant_directory(self.session_maker)

        for tenant_id, org_id in tenants:
            try:
                deleted = await self._sweep_tenant(tenant_id, org_id, now)
            except Exception as e:  # noqa: BLE001 - Intentional catch-all for tenant isolation
                RETENTION_TENANT_FAILURES.inc()
                logger.error(
                    "retention_tenant_failed",
                    tenant_id=str(tenant_id),
                    org_id=str(org_id),
                    error_type=type(e).__name__,
                )
                report.failures.append(TenantRetentionFailure(tenant_id, org_id, type(e).__name__))
                continue

            report.tenants_processed += 1
            for category, count in deleted.items():
                report.deleted[category] += count
                RETENTION_ROWS_DELETED.labels(category=category.value).inc(count)

            audit_log(
                "retention_tenant_swept",
                tenant_id=str(tenant_id),
                org_id=str(org_id),
                details={category.value: count for category, count in deleted.items()},
            )

        logger.info(
            "retention_sweep_complete",
            tenants=len(tenants),
            processed=report.tenants_processed,
            failed=len(report.failures),
        )
        return report
