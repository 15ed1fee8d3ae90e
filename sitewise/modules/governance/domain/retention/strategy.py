from abc import ABC, abstractmethod
from datetime import datetime

from sqlalchemy.orm import InstrumentedAttribute

from sitewise.models.activity import Attendance, AuditEvent, StaffActivity
from sitewise.modules.governance.domain.retention.policy import RetentionCategory
from sitewise.shared.db.tenant_context import TenantScope

# Timestamp column that ages each category.
CATEGORY_COLUMNS: dict[RetentionCategory, InstrumentedAttribute] = {
    RetentionCategory.STAFF_ACTIVITY: StaffActivity.occurred_at,
    RetentionCategory.ATTENDANCE: Attendance.timestamp,
    RetentionCategory.AUDIT_EVENT: AuditEvent.created_at,
}


class DeletionStrategy(ABC):
    """How expired rows of one category leave a tenant. Runs inside the tenant's scope."""

    @abstractmethod
    async def expire(self, scope: TenantScope, category: RetentionCategory, cutoff: datetime) -> int:
        """Handle rows strictly older than `cutoff`; return how many were affected."""


class HardDeleteStrategy(DeletionStrategy):
    # TODO: swap in an anonymising strategy for attendance and audit events once legal review signs off.
    async def expire(self, scope: TenantScope, category: RetentionCategory, cutoff: datetime) -> int:
        return await scope.delete_older_than(CATEGORY_COLUMNS[category], cutoff)
