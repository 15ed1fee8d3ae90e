"""
AV30 activity recording.

AV30 (Active staff/Volunteers in the last 30 days) counts unique staff users
with at least one qualifying activity in the trailing window. Producers
(attendance recording, rota actions) call `record_activity` from inside their
own tenant scope; the nightly aggregation reads the rows back.
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import FrozenSet
from uuid import UUID

import structlog

from sitewise.models.activity import StaffActivity
from sitewise.models.tenant import STAFF_ROLES, UserTenantRole
from sitewise.shared.core.config import get_settings
from sitewise.shared.core.exceptions import ConfigurationError
from sitewise.shared.db.base import utcnow
from sitewise.shared.db.tenant_context import TenantContextManager, TenantScope

logger = structlog.get_logger()


class Av30ActivityType(str, Enum):
    """Activities that qualify a staff user for AV30."""
    ATTENDANCE_RECORDED = "ATTENDANCE_RECORDED"    # records or checks attendance
    ASSIGNMENT_PUBLISHED = "ASSIGNMENT_PUBLISHED"  # scheduled on a rota
    ASSIGNMENT_ACCEPTED = "ASSIGNMENT_ACCEPTED"
    ASSIGNMENT_DECLINED = "ASSIGNMENT_DECLINED"


# Versioned allow-lists. Adding a version is a product decision; settings only pick one.
AV30_ALLOW_LISTS: dict[str, FrozenSet[Av30ActivityType]] = {
    "v1": frozenset(Av30ActivityType),
}


def qualifying_activity_types(version: str | None = None) -> FrozenSet[Av30ActivityType]:
    version = version or get_settings().AV30_ALLOW_LIST_VERSION
    try:
        return AV30_ALLOW_LISTS[version]
    except KeyError:
        raise ConfigurationError(
            f"Unknown AV30 allow-list version '{version}'",
            code="av30_allow_list_unknown",
            details={"known_versions": sorted(AV30_ALLOW_LISTS)},
        ) from None


class Av30ActivityService:
    def __init__(self, context_manager: TenantContextManager | None = None, allow_list_version: str | None = None):
        self.context_manager = context_manager or TenantContextManager()
        self.allowed_types = qualifying_activity_types(allow_list_version)

    async def is_staff_user(self, scope: TenantScope, user_id: UUID) -> bool:
        roles = await scope.distinct(UserTenantRole.role, UserTenantRole.user_id == user_id)
        return any(role in STAFF_ROLES for role in roles)

    async def record_activity(
        self,
        scope: TenantScope,
        activity_type: Av30ActivityType,
        subject_user_id: UUID,
        occurred_at: datetime | None = None,
    ) -> bool:
        """
        Write one immutable activity row inside the caller's scope.

        Returns False without writing when the subject holds no staff role in
        the scope's tenant (parents do not count towards AV30).
        """
        activity_type = Av30ActivityType(activity_type)
        if activity_type not in self.allowed_types:
            raise ValueError(f"{activity_type.value} is not an AV30 qualifying activity")

        if not await self.is_staff_user(scope, subject_user_id):
            logger.debug(
                "av30_activity_skipped_non_staff",
                tenant_id=str(scope.tenant_id),
                activity_type=activity_type.value,
            )
            return False

        await scope.add(
            StaffActivity(
                tenant_id=scope.tenant_id,
                org_id=scope.org_id,
                staff_user_id=subject_user_id,
                activity_type=activity_type.value,
                occurred_at=occurred_at or utcnow(),
            )
        )
        return True

    async def record_activity_with_ids(
        self,
        tenant_id: UUID,
        org_id: UUID,
        activity_type: Av30ActivityType,
        subject_user_id: UUID,
        occurred_at: datetime | None = None,
    ) -> bool:
        """For callers holding ids but no open scope; reuses the active scope when it matches."""
        async with self.context_manager.scoped(tenant_id, org_id) as scope:
            return await self.record_activity(scope, activity_type, subject_user_id, occurred_at)
