"""Job store implementations.

Every write is an upsert by job id, so persisting the same job state twice is
harmless.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Iterable, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from mediaforge.core.database import Base
from mediaforge.modules.job.models import JobStatus, ProcessingJobRecord
from mediaforge.modules.job.schemas import OriginalFile, ProcessingJob
from mediaforge.modules.transcoding.schemas import ProcessingOptions, ProcessingOutput


def _as_utc(value: datetime) -> datetime:
    # SQLite drops the offset on the way back
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _status_values(statuses: Iterable[JobStatus]) -> list[str]:
    return [JobStatus(s).value for s in statuses]


class JobStore(ABC):
    """Durable storage for job state."""

    async def initialize(self) -> None:
        """Prepare the backing store (create tables etc.)."""

    async def close(self) -> None:
        """Release connections held by the store."""

    @abstractmethod
    async def upsert(self, job: ProcessingJob) -> None:
        """Insert or replace a job by id."""

    @abstractmethod
    async def get(self, job_id: str) -> Optional[ProcessingJob]:
        """Get a job by id."""

    @abstractmethod
    async def list_by_status(self, statuses: Iterable[JobStatus]) -> list[ProcessingJob]:
        """List jobs in any of the statuses, oldest first."""

    @abstractmethod
    async def delete_older_than(self, cutoff: datetime, statuses: Iterable[JobStatus]) -> int:
        """Delete jobs in the statuses last updated before ``cutoff``."""


class SqlJobStore(JobStore):
    """SQLAlchemy (async) job store."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        engine: Optional[AsyncEngine] = None,
    ):
        self.session_maker = session_maker
        self.engine = engine

    async def initialize(self) -> None:
        if self.engine is None:
            return
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()

    @staticmethod
    def to_record(job: ProcessingJob) -> ProcessingJobRecord:
        return ProcessingJobRecord(
            id=job.id,
            content_id=job.content_id,
            user_id=job.user_id,
            type=job.type.value,
            status=job.status.value,
            progress=job.progress,
            current_step=job.current_step,
            error=job.error,
            retry_count=job.retry_count,
            original_file=job.original_file.model_dump(mode="json"),
            options=job.options.model_dump(mode="json"),
            outputs=[output.model_dump(mode="json") for output in job.outputs],
            created_at=job.created_at,
            updated_at=job.updated_at,
        )

    @staticmethod
    def to_schema(record: ProcessingJobRecord) -> ProcessingJob:
        return ProcessingJob(
            id=record.id,
            content_id=record.content_id,
            user_id=record.user_id,
            type=record.type,
            status=record.status,
            progress=record.progress,
            current_step=record.current_step,
            error=record.error,
            retry_count=record.retry_count,
            original_file=OriginalFile.model_validate(record.original_file),
            options=ProcessingOptions.model_validate(record.options or {}),
            outputs=[ProcessingOutput.model_validate(o) for o in record.outputs or []],
            created_at=_as_utc(record.created_at),
            updated_at=_as_utc(record.updated_at),
        )

    async def upsert(self, job: ProcessingJob) -> None:
        async with self.session_maker() as session:
            await session.merge(self.to_record(job))
            await session.commit()

    async def get(self, job_id: str) -> Optional[ProcessingJob]:
        async with self.session_maker() as session:
            record = await session.get(ProcessingJobRecord, job_id)
            return self.to_schema(record) if record else None

    async def list_by_status(self, statuses: Iterable[JobStatus]) -> list[ProcessingJob]:
        query = (
            select(ProcessingJobRecord)
            .where(ProcessingJobRecord.status.in_(_status_values(statuses)))
            .order_by(ProcessingJobRecord.created_at)
        )
        async with self.session_maker() as session:
            result = await session.execute(query)
            return [self.to_schema(record) for record in result.scalars().all()]

    async def delete_older_than(self, cutoff: datetime, statuses: Iterable[JobStatus]) -> int:
        statement = delete(ProcessingJobRecord).where(
            ProcessingJobRecord.status.in_(_status_values(statuses)),
            ProcessingJobRecord.updated_at < cutoff,
        )
        async with self.session_maker() as session:
            result = await session.execute(statement)
            await session.commit()
            return result.rowcount or 0


class InMemoryJobStore(JobStore):
    """Process-local job store, used in tests and single-shot tooling."""

    def __init__(self):
        self._jobs: dict[str, ProcessingJob] = {}

    async def upsert(self, job: ProcessingJob) -> None:
        self._jobs[job.id] = job.model_copy(deep=True)

    async def get(self, job_id: str) -> Optional[ProcessingJob]:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    async def list_by_status(self, statuses: Iterable[JobStatus]) -> list[ProcessingJob]:
        wanted = set(_status_values(statuses))
        jobs = [job for job in self._jobs.values() if job.status.value in wanted]
        jobs.sort(key=lambda job: job.created_at)
        return [job.model_copy(deep=True) for job in jobs]

    async def delete_older_than(self, cutoff: datetime, statuses: Iterable[JobStatus]) -> int:
        wanted = set(_status_values(statuses))
        stale = [
            job_id for job_id, job in self._jobs.items()
            if job.status.value in wanted and job.updated_at < cutoff
        ]
        for job_id in stale:
            del self._jobs[job_id]
        return len(stale)
