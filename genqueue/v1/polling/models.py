from datetime import datetime
from enum import Enum

from sqlalchemy import JSON, Index, Integer, SmallInteger, String
from sqlalchemy.orm import Mapped, mapped_column

from genqueue.infra.database import Base, UTCDateTime


class PollingStatus(str, Enum):
    PENDING = "pending"
    POLLING = "polling"
    FAILED = "failed"


class PollingEntry(Base):
    """One generation awaiting completion, with the item ids of all its batches."""

    __tablename__ = "polling_queue"

    generation_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    workflow_type: Mapped[str] = mapped_column(String(50), nullable=False)
    item_ids: Mapped[list[str]] = mapped_column(JSON, nullable=False)
    priority: Mapped[int] = mapped_column(SmallInteger, nullable=False, default=5)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PollingStatus.PENDING.value
    )
    last_error: Mapped[str | None] = mapped_column(String(500), nullable=True)
    added_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    last_poll_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (Index("ix_polling_queue_order", "status", "priority", "added_at"),)

    def to_dict(self) -> dict:
        return {
            "generation_id": self.generation_id,
            "workflow_type": self.workflow_type,
            "item_ids": list(self.item_ids),
            "item_count": len(self.item_ids),
            "priority": self.priority,
            "attempts": self.attempts,
            "status": self.status,
            "last_error": self.last_error,
            "added_at": self.added_at.isoformat(),
            "last_poll_at": self.last_poll_at.isoformat() if self.last_poll_at else None,
        }
