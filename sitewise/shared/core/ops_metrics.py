"""
Operational Metrics for SiteWise

Prometheus metrics for tenant isolation, webhook reconciliation and the
scheduled usage/retention jobs.
"""

from prometheus_client import Counter, Histogram, Gauge

# --- RLS & Tenant Isolation ---
RLS_CONTEXT_MISSING = Counter(
    "sitewise_ops_rls_context_missing_total",
    "Total number of database statements aborted because no tenant context was set",
    ["statement_type"]
)

TENANT_SCOPE_LEAKS = Counter(
    "sitewise_ops_tenant_scope_leaks_total",
    "Connections returned to (or taken from) the pool still carrying a tenant scope marker",
    ["stage"]  # 'checkin', 'checkout'
)

TENANT_SCOPES_OPENED = Counter(
    "sitewise_ops_tenant_scopes_opened_total",
    "Total number of tenant-scoped units of work opened",
    ["outcome"]  # 'ok', 'violation'
)

# --- Billing ---
BILLING_WEBHOOKS_TOTAL = Counter(
    "sitewise_ops_billing_webhooks_total",
    "Billing webhook deliveries by provider and outcome",
    ["provider", "outcome"]  # ok, ignored_duplicate, ignored_unknown, invalid_signature, malformed, deferred
)

# --- Scheduled Jobs ---
SCHEDULER_JOB_RUNS = Counter(
    "sitewise_scheduler_job_runs_total",
    "Total number of scheduled job runs",
    ["job_name", "status"]
)

SCHEDULER_JOB_DURATION = Histogram(
    "sitewise_scheduler_job_duration_seconds",
    "Duration of scheduled jobs in seconds",
    ["job_name"],
    buckets=(1, 5, 10, 30, 60, 120, 300, 600)
)

RETENTION_ROWS_DELETED = Counter(
    "sitewise_ops_retention_rows_deleted_total",
    "Rows removed by the retention sweeper",
    ["category"]
)

RETENTION_TENANT_FAILURES = Counter(
    "sitewise_ops_retention_tenant_failures_total",
    "Tenants whose retention sweep failed"
)

AV30_ORGS_COMPUTED = Gauge(
    "sitewise_ops_av30_orgs_computed",
    "Number of orgs whose AV30 counter was written by the last aggregation run"
)

AV30_TENANT_FAILURES = Counter(
    "sitewise_ops_av30_tenant_failures_total",
    "Tenants whose active-staff query failed during AV30 aggregation"
)
