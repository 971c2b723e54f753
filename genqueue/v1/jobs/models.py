"""
Background job table.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import JSON, CheckConstraint, Index, Integer, SmallInteger, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from genqueue.infra.database import Base, UTCDateTime


class JobStatus(str, Enum):
    """Job status enumeration."""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"
    CANCELLED = "cancelled"


# Statuses a tick may pick up
READY_STATUSES = (JobStatus.QUEUED.value, JobStatus.RETRYING.value)

# Statuses still owned by the queue; status writes are gated on these
ACTIVE_STATUSES = (
    JobStatus.QUEUED.value,
    JobStatus.PROCESSING.value,
    JobStatus.RETRYING.value,
)

# Statuses removed by retention cleanup
FINISHED_STATUSES = (
    JobStatus.COMPLETED.value,
    JobStatus.FAILED.value,
    JobStatus.CANCELLED.value,
)


class Job(Base):
    """
    Background job row.

    Lower ``priority`` runs first; ties go to the earliest ``scheduled_at``.
    """

    __tablename__ = "background_jobs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    type: Mapped[str] = mapped_column(
        String(100), nullable=False, comment="Job type identifier"
    )
    payload: Mapped[dict[str, Any]] = mapped_column(
        JSON, nullable=False, default=dict, comment="Job-specific parameters"
    )
    priority: Mapped[int] = mapped_column(
        SmallInteger, nullable=False, default=10, comment="Lower is more urgent"
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=JobStatus.QUEUED.value
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    scheduled_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, comment="Earliest time to run job"
    )

    # Results and progress
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    result: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    dedupe_key: Mapped[str | None] = mapped_column(
        String(64), nullable=True, comment="Hash of type and payload"
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('queued', 'processing', 'completed', 'failed', 'retrying', 'cancelled')",
            name="background_jobs_status_check",
        ),
        CheckConstraint("attempts <= max_attempts", name="background_jobs_attempts_check"),
        Index("ix_background_jobs_ready", "status", "priority", "scheduled_at"),
        Index("ix_background_jobs_dedupe", "dedupe_key", "status"),
        Index("ix_background_jobs_created", "created_at"),
    )

    def is_active(self) -> bool:
        """Check if job is still owned by the queue."""
        return self.status in ACTIVE_STATUSES

    def to_status_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "status": self.status,
            "progress": self.progress,
            "message": self.message,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "priority": self.priority,
            "last_error": self.last_error,
            "result": self.result,
            "scheduled_at": self.scheduled_at.isoformat() if self.scheduled_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }
