from uuid import UUID, uuid4
from sqlalchemy import Integer, ForeignKey, Uuid
from sqlalchemy.orm import Mapped, mapped_column
from sitewise.shared.db.base import Base


class RetentionPolicy(Base):
    """Per-org override of retention windows. Null columns fall back to the defaults."""
    __tablename__ = "retention_policies"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    org_id: Mapped[UUID] = mapped_column(ForeignKey("orgs.id", ondelete="CASCADE"), unique=True)
    attendance_retention_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    staff_activity_retention_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    audit_event_retention_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
