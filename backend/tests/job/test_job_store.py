"""Tests for the SQL and in-memory job stores."""

from datetime import timedelta

import pytest
import pytest_asyncio

from mediaforge.core.database import create_engine, create_session_maker
from mediaforge.modules.job.models import TERMINAL_STATUSES, JobStatus, JobType
from mediaforge.modules.job.repository import InMemoryJobStore, SqlJobStore
from mediaforge.modules.job.schemas import OriginalFile, ProcessingJob, utcnow
from mediaforge.modules.transcoding.schemas import (
    MediaMetadata,
    ProcessingOptions,
    ProcessingOutput,
)


def make_job(job_id: str, status: JobStatus = JobStatus.QUEUED, age_minutes: float = 0) -> ProcessingJob:
    stamp = utcnow() - timedelta(minutes=age_minutes)
    return ProcessingJob(
        id=job_id,
        content_id="content-1",
        user_id="user-1",
        type=JobType.VIDEO,
        status=status,
        original_file=OriginalFile(
            key="uploads/in.mp4",
            url="https://uploads.example.com/uploads/in.mp4",
            metadata=MediaMetadata(duration=60, width=1920, height=1080, has_video=True),
        ),
        options=ProcessingOptions(transcode_qualities=["720p"], thumbnail_count=3),
        created_at=stamp,
        updated_at=stamp,
    )


@pytest_asyncio.fixture(params=["sql", "memory"])
async def store(request, tmp_path):
    if request.param == "memory":
        yield InMemoryJobStore()
        return

    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}")
    sql_store = SqlJobStore(create_session_maker(engine), engine=engine)
    await sql_store.initialize()
    yield sql_store
    await sql_store.close()


class TestJobStore:
    @pytest.mark.asyncio
    async def test_round_trip(self, store) -> None:
        job = make_job("job-1")
        job.outputs = [ProcessingOutput(quality="720p", format="mp4", url="https://cdn/x", key="x")]

        await store.upsert(job)
        loaded = await store.get("job-1")

        assert loaded.model_dump() == job.model_dump()
        assert loaded.options.transcode_qualities == ["720p"]
        assert loaded.created_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_upsert_is_idempotent(self, store) -> None:
        job = make_job("job-1")
        await store.upsert(job)
        await store.upsert(job)

        job.status = JobStatus.PROCESSING
        job.progress = 40
        await store.upsert(job)

        assert len(await store.list_by_status(list(JobStatus))) == 1
        loaded = await store.get("job-1")
        assert loaded.status == JobStatus.PROCESSING
        assert loaded.progress == 40

    @pytest.mark.asyncio
    async def test_unknown_job(self, store) -> None:
        assert await store.get("missing") is None

    @pytest.mark.asyncio
    async def test_list_by_status_is_oldest_first(self, store) -> None:
        await store.upsert(make_job("newest", age_minutes=1))
        await store.upsert(make_job("oldest", age_minutes=30))
        await store.upsert(make_job("done", JobStatus.COMPLETED, age_minutes=60))
        await store.upsert(make_job("running", JobStatus.PROCESSING, age_minutes=10))

        jobs = await store.list_by_status([JobStatus.QUEUED, JobStatus.PROCESSING])

        assert [job.id for job in jobs] == ["oldest", "running", "newest"]

    @pytest.mark.asyncio
    async def test_delete_older_than(self, store) -> None:
        await store.upsert(make_job("old-done", JobStatus.COMPLETED, age_minutes=120))
        await store.upsert(make_job("old-failed", JobStatus.FAILED, age_minutes=120))
        await store.upsert(make_job("new-done", JobStatus.COMPLETED, age_minutes=1))
        await store.upsert(make_job("old-queued", JobStatus.QUEUED, age_minutes=120))

        deleted = await store.delete_older_than(utcnow() - timedelta(minutes=60), TERMINAL_STATUSES)

        assert deleted == 2
        remaining = await store.list_by_status(list(JobStatus))
        assert sorted(job.id for job in remaining) == ["new-done", "old-queued"]
