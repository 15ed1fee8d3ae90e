"""
Cron entry point for the retention sweep.

    RETENTION_ENABLED=true python scripts/run_retention_sweep.py

Exits 1 when any tenant failed, 0 otherwise (including a skipped run).
"""
import sys

from sitewise.shared.core.logging import setup_logging
from sitewise.tasks.scheduler_tasks import run_async, run_retention_sweep


def main() -> int:
    setup_logging()
    report = run_async(run_retention_sweep())
    if report.skipped:
        print("Retention sweep skipped: RETENTION_ENABLED is false. No data modified.")
        return 0
    print(
        f"Retention sweep processed {report.tenants_processed} tenants, "
        f"{len(report.failures)} failed; deleted "
        + ", ".join(f"{category.value}={count}" for category, count in report.deleted.items())
    )
    return 1 if report.failures else 0


if __name__ == "__main__":
    sys.exit(main())
