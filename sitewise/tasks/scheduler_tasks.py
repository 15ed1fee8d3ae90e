import asyncio
import time
import uuid
from datetime import datetime
from typing import Iterable, List, Optional
from uuid import UUID

import structlog
from celery import shared_task
from sqlalchemy.ext.asyncio import async_sessionmaker

from sitewise.modules.governance.domain.retention.sweeper import RetentionRunReport, RetentionSweeper
from sitewise.modules.usage.domain.av30 import Av30ComputeService, Av30Result
from sitewise.shared.core.ops_metrics import SCHEDULER_JOB_DURATION, SCHEDULER_JOB_RUNS
from sitewise.shared.db.base import utcnow
from sitewise.shared.db.session import list_tenant_directory

logger = structlog.get_logger()


# Helper to run async code in sync Celery task
def run_async(coro):
    return asyncio.run(_run_and_dispose(coro))


async def _run_and_dispose(coro):
    """Pooled connections are bound to the loop that opened them; drop them with the loop."""
    from sitewise.shared.db.session import engine
    try:
        return await coro
    finally:
        await engine.dispose()


async def run_usage_aggregation(
    tenant_ids: Optional[Iterable[UUID]] = None,
    now: Optional[datetime] = None,
    session_maker: async_sessionmaker | None = None,
) -> List[Av30Result]:
    """
    Nightly AV30 rollup. Re-running with the same `now` rewrites the same
    counters. Resolution and scoping failures propagate to the caller.
    """
    if session_maker is None:
        from sitewise.shared.db.session import async_session_maker
        session_maker = async_session_maker

    job_name = "usage_aggregation"
    structlog.contextvars.bind_contextvars(correlation_id=str(uuid.uuid4()), job_type=job_name)
    start_time = time.time()
    now = now or utcnow()

    try:
        service = Av30ComputeService(session_maker)
        if tenant_ids is None:
            tenant_ids = [tenant_id for tenant_id, _ in await list_tenant_directory(session_maker)]
        contexts = await service.resolve_contexts(tenant_ids)
        results = await service.compute_for_tenants(contexts, now)
    except Exception as e:
        logger.error("scheduler_job_failed", job=job_name, error=str(e))
        SCHEDULER_JOB_RUNS.labels(job_name=job_name, status="failure").inc()
        raise
    finally:
        SCHEDULER_JOB_DURATION.labels(job_name=job_name).observe(time.time() - start_time)
        structlog.contextvars.unbind_contextvars("correlation_id", "job_type")

    SCHEDULER_JOB_RUNS.labels(job_name=job_name, status="success").inc()
    logger.info("usage_aggregation_complete", orgs=len(results), now=now.isoformat())
    return results


async def run_retention_sweep(
    now: Optional[datetime] = None,
    session_maker: async_sessionmaker | None = None,
) -> RetentionRunReport:
    """Nightly retention sweep. A skipped or partially failed run is reported, not raised."""
    job_name = "retention_sweep"
    structlog.contextvars.bind_contextvars(correlation_id=str(uuid.uuid4()), job_type=job_name)
    start_time = time.time()

    try:
        report = await RetentionSweeper(session_maker).run(now)
    except Exception as e:
        logger.error("scheduler_job_failed", job=job_name, error=str(e))
        SCHEDULER_JOB_RUNS.labels(job_name=job_name, status="failure").inc()
        raise
    finally:
        SCHEDULER_JOB_DURATION.labels(job_name=job_name).observe(time.time() - start_time)
        structlog.contextvars.unbind_contextvars("correlation_id", "job_type")

    if report.skipped:
        status = "skipped"
    elif report.failures:
        status = "partial"
    else:
        status = "success"
    SCHEDULER_JOB_RUNS.labels(job_name=job_name, status=status).inc()
    return report


@shared_task(name="scheduler.usage_aggregation")
def usage_aggregation_task(tenant_ids: Optional[List[str]] = None):
    """Celery entry point; tenant ids arrive as JSON strings."""
    ids = [UUID(t) for t in tenant_ids] if tenant_ids is not None else None
    results = run_async(run_usage_aggregation(ids))
    return [{"org_id": str(r.org_id), "av30": r.av30} for r in results]


@shared_task(name="scheduler.retention_sweep")
def retention_sweep_task():
    report = run_async(run_retention_sweep())
    return {
        "skipped": report.skipped,
        "tenants_processed": report.tenants_processed,
        "tenants_failed": len(report.failures),
        "deleted": {category.value: count for category, count in report.deleted.items()},
    }
