from sitewise.models.tenant import Org, Tenant, UserTenantRole, TenantRole, STAFF_ROLES
from sitewise.models.activity import StaffActivity, Attendance, AuditEvent
from sitewise.models.usage import UsageCounter
from sitewise.models.retention import RetentionPolicy
from sitewise.models.billing import (
    Subscription,
    BillingEvent,
    BillingEventOutcome,
    PendingOrder,
    PendingOrderStatus,
)

__all__ = [
    "Org",
    "Tenant",
    "UserTenantRole",
    "TenantRole",
    "STAFF_ROLES",
    "StaffActivity",
    "Attendance",
    "AuditEvent",
    "UsageCounter",
    "RetentionPolicy",
    "Subscription",
    "BillingEvent",
    "BillingEventOutcome",
    "PendingOrder",
    "PendingOrderStatus",
]
