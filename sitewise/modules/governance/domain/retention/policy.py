from dataclasses import dataclass
from enum import Enum
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from sitewise.models.retention import RetentionPolicy


class RetentionCategory(str, Enum):
    """Deletion order is the declaration order: least sensitive first."""
    STAFF_ACTIVITY = "staff_activity"
    ATTENDANCE = "attendance"
    AUDIT_EVENT = "audit_event"


DEFAULT_ATTENDANCE_RETENTION_DAYS = 730
DEFAULT_STAFF_ACTIVITY_RETENTION_DAYS = 365
DEFAULT_AUDIT_EVENT_RETENTION_DAYS = 365


@dataclass(frozen=True)
class ResolvedRetentionPolicy:
    attendance_retention_days: int = DEFAULT_ATTENDANCE_RETENTION_DAYS
    staff_activity_retention_days: int = DEFAULT_STAFF_ACTIVITY_RETENTION_DAYS
    audit_event_retention_days: int = DEFAULT_AUDIT_EVENT_RETENTION_DAYS
    is_default: bool = True

    def days_for(self, category: RetentionCategory) -> int:
        return {
            RetentionCategory.STAFF_ACTIVITY: self.staff_activity_retention_days,
            RetentionCategory.ATTENDANCE: self.attendance_retention_days,
            RetentionCategory.AUDIT_EVENT: self.audit_event_retention_days,
        }[category]


class RetentionConfigService:
    """Resolves an org's retention windows, falling back to fixed defaults per field."""

    def __init__(self, session_maker: async_sessionmaker | None = None):
        if session_maker is None:
            from sitewise.shared.db.session import async_session_maker
            session_maker = async_session_maker
        self.session_maker = session_maker

    async def resolve_for_org(self, org_id: UUID) -> ResolvedRetentionPolicy:
        async with self.session_maker() as session:
            result = await session.execute(select(RetentionPolicy).where(RetentionPolicy.org_id == org_id))
            row = result.scalar_one_or_none()

        if row is None:
            return ResolvedRetentionPolicy()

        return ResolvedRetentionPolicy(
            attendance_retention_days=_positive_or_default(
                row.attendance_retention_days, DEFAULT_ATTENDANCE_RETENTION_DAYS
            ),
            staff_activity_retention_days=_positive_or_default(
                row.staff_activity_retention_days, DEFAULT_STAFF_ACTIVITY_RETENTION_DAYS
            ),
            audit_event_retention_days=_positive_or_default(
                row.audit_event_retention_days, DEFAULT_AUDIT_EVENT_RETENTION_DAYS
            ),
            is_default=False,
        )


def _positive_or_default(value: int | None, default: int) -> int:
    # Zero or negative would delete everything up to `now`.
    if value is None or value <= 0:
        return default
    return value
