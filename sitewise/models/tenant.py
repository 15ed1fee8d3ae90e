from uuid import UUID, uuid4
from enum import Enum
from datetime import datetime
from typing import List
from sqlalchemy import String, ForeignKey, DateTime, UniqueConstraint, Uuid, event
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.orm.base import NO_VALUE, NEVER_SET
from sitewise.shared.db.base import Base, utcnow


class TenantRole(str, Enum):
    """Roles a user can hold within a single tenant."""
    ADMIN = "admin"
    COORDINATOR = "coordinator"
    TEACHER = "teacher"
    STAFF = "staff"
    PARENT = "parent"


# Roles that count towards AV30 (parents are end users, not staff).
STAFF_ROLES = frozenset({
    TenantRole.ADMIN.value,
    TenantRole.COORDINATOR.value,
    TenantRole.TEACHER.value,
    TenantRole.STAFF.value,
})


class Org(Base):
    __tablename__ = "orgs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(255))
    slug: Mapped[str] = mapped_column(String(100), unique=True)
    plan_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    billing_provider: Mapped[str | None] = mapped_column(String(20), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    tenants: Mapped[List["Tenant"]] = relationship(back_populates="org")


class Tenant(Base):
    """
    A site owned by exactly one org. `org_id` never changes after creation;
    every scoped unit of work checks the pairing.
    """
    __tablename__ = "tenants"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    org_id: Mapped[UUID] = mapped_column(ForeignKey("orgs.id", ondelete="CASCADE"), index=True)
    name: Mapped[str] = mapped_column(String(255))
    slug: Mapped[str] = mapped_column(String(100), unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    org: Mapped["Org"] = relationship(back_populates="tenants")


@event.listens_for(Tenant.org_id, "set")
def _org_id_is_immutable(target, value, oldvalue, _initiator):
    if oldvalue in (NO_VALUE, NEVER_SET, None) or oldvalue == value:
        return value
    raise ValueError(f"Tenant {target.id} cannot move from org {oldvalue} to {value}")


class UserTenantRole(Base):
    __tablename__ = "user_tenant_roles"
    __table_args__ = (
        UniqueConstraint("user_id", "tenant_id", "role", name="uq_user_tenant_roles_user_tenant_role"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    tenant_id: Mapped[UUID] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), index=True)
    user_id: Mapped[UUID] = mapped_column(Uuid, index=True)
    role: Mapped[str] = mapped_column(String(20))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
