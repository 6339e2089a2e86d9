"""Transcoding job queue: scheduling, retries, persistence and resumption."""

from mediaforge.modules.job.events import EventEmitter
from mediaforge.modules.job.models import JobStatus, JobType, ProcessingJobRecord
from mediaforge.modules.job.repository import InMemoryJobStore, JobStore, SqlJobStore
from mediaforge.modules.job.retry import (
    ConstantBackoff,
    ExponentialBackoff,
    LinearBackoff,
    RetryPolicy,
)
from mediaforge.modules.job.schemas import JobProgress, OriginalFile, ProcessingJob, QueueStats
from mediaforge.modules.job.service import (
    JobNotFoundError,
    JobQueueError,
    JobTimeoutError,
    QueueConfig,
    QueueFullError,
    ShuttingDownError,
    TranscodingPipeline,
    build_pipeline,
)

__all__ = [
    # Models
    "JobStatus",
    "JobType",
    "ProcessingJobRecord",
    # Schemas
    "JobProgress",
    "OriginalFile",
    "ProcessingJob",
    "QueueStats",
    # Store
    "JobStore",
    "SqlJobStore",
    "InMemoryJobStore",
    # Retry
    "RetryPolicy",
    "ConstantBackoff",
    "LinearBackoff",
    "ExponentialBackoff",
    # Service
    "EventEmitter",
    "JobQueueError",
    "JobNotFoundError",
    "JobTimeoutError",
    "QueueFullError",
    "ShuttingDownError",
    "QueueConfig",
    "TranscodingPipeline",
    "build_pipeline",
]
