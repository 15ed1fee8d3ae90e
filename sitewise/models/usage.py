from uuid import UUID, uuid4
from datetime import datetime
from sqlalchemy import Integer, ForeignKey, DateTime, Uuid
from sqlalchemy.orm import Mapped, mapped_column
from sitewise.shared.db.base import Base, utcnow


class UsageCounter(Base):
    """Latest AV30 value per org. One row per org, overwritten by each aggregation run."""
    __tablename__ = "usage_counters"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    org_id: Mapped[UUID] = mapped_column(ForeignKey("orgs.id", ondelete="CASCADE"), unique=True)
    av30: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    calculated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
