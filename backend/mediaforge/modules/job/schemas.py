"""Pydantic schemas for the transcoding job queue."""

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field

from mediaforge.modules.job.models import JobStatus, JobType
from mediaforge.modules.transcoding.schemas import (
    MediaMetadata,
    ProcessingOptions,
    ProcessingOutput,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OriginalFile(BaseModel):
    """The submitted input and its probed metadata."""
    key: str
    url: str
    metadata: MediaMetadata


class ProcessingJob(BaseModel):
    """A transcoding job and its lifecycle state."""
    id: str = Field(..., description="uuid4 hex")
    content_id: str
    user_id: str
    type: JobType
    status: JobStatus = JobStatus.QUEUED
    progress: float = Field(default=0.0, ge=0, le=100)
    current_step: Optional[str] = None
    original_file: OriginalFile
    options: ProcessingOptions = Field(default_factory=ProcessingOptions)
    outputs: list[ProcessingOutput] = Field(default_factory=list)
    error: Optional[str] = None
    retry_count: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    class Config:
        from_attributes = True

    def touch(self) -> None:
        self.updated_at = utcnow()

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED)


class JobProgress(BaseModel):
    """Payload of ``job:progress`` events."""
    job_id: str
    content_id: str
    status: JobStatus
    progress: float = Field(..., ge=0, le=100)
    current_step: Optional[str] = None


class QueueStats(BaseModel):
    """Scheduler occupancy."""
    queued: int = Field(..., description="Pending jobs, including those waiting to retry")
    processing: int
    max_concurrent: int
    capacity: int = Field(..., description="Maximum number of pending jobs")


# ==================== API ====================

class JobSubmitRequest(BaseModel):
    """Request to transcode an uploaded asset."""
    content_id: str = Field(..., min_length=1, max_length=255)
    user_id: str = Field(..., min_length=1, max_length=255)
    file_url: str = Field(..., min_length=1, description="Local path, URL or storage key")
    options: Optional[ProcessingOptions] = None


class JobSubmitResponse(BaseModel):
    """Response after a job was queued."""
    job_id: str
    status: JobStatus
    message: str


class JobCancelResponse(BaseModel):
    job_id: str
    cancelled: bool
    message: str
