"""Database models for transcoding jobs."""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime, Float, Index, Integer, JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from mediaforge.core.database import Base


class JobStatus(str, Enum):
    """Job processing status."""
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class JobType(str, Enum):
    """Kind of media a job processes."""
    VIDEO = "video"
    AUDIO = "audio"


TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)
INCOMPLETE_STATUSES = (JobStatus.QUEUED, JobStatus.PROCESSING)


class ProcessingJobRecord(Base):
    """Persisted state of a transcoding job.

    The original file, options and outputs are stored as JSON documents so a
    resumed job is processed exactly as it was submitted.
    """

    __tablename__ = "processing_jobs"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)

    content_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(10), nullable=False)

    # Status tracking
    status: Mapped[str] = mapped_column(
        String(20), default=JobStatus.QUEUED.value, nullable=False, index=True
    )
    progress: Mapped[float] = mapped_column(Float, default=0.0)
    current_step: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)

    # Documents
    original_file: Mapped[dict] = mapped_column(JSON, nullable=False)
    options: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    outputs: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_processing_jobs_status_created", "status", "created_at"),
        Index("ix_processing_jobs_status_updated", "status", "updated_at"),
    )

    def __repr__(self) -> str:
        return f"<ProcessingJobRecord(id={self.id}, type={self.type}, status={self.status})>"
