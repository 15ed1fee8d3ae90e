"""
Cron entry point for the AV30 usage aggregation.

    python scripts/run_usage_aggregation.py [TENANT_ID ...]

With no tenant ids every tenant is aggregated. Exits non-zero when a tenant
cannot be resolved so the scheduler alerts.
"""
import sys
from uuid import UUID

from sitewise.shared.core.logging import setup_logging
from sitewise.tasks.scheduler_tasks import run_async, run_usage_aggregation


def main(argv: list[str]) -> int:
    setup_logging()
    tenant_ids = [UUID(arg) for arg in argv] or None
    results = run_async(run_usage_aggregation(tenant_ids))
    for result in results:
        print(f"org={result.org_id} av30={result.av30}")
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
