"""Tests for the Celery maintenance tasks."""

import os
import time
from datetime import timedelta

import pytest

from mediaforge.core.database import create_engine, create_session_maker
from mediaforge.modules.job.models import JobStatus, JobType
from mediaforge.modules.job.repository import SqlJobStore
from mediaforge.modules.job.schemas import OriginalFile, ProcessingJob, utcnow
from mediaforge.modules.transcoding import tasks
from mediaforge.modules.transcoding.schemas import MediaMetadata


def stored_job(job_id: str, status: JobStatus, age_days: float) -> ProcessingJob:
    stamp = utcnow() - timedelta(days=age_days)
    return ProcessingJob(
        id=job_id,
        content_id="c",
        user_id="u",
        type=JobType.VIDEO,
        status=status,
        original_file=OriginalFile(key="in.mp4", url="in.mp4", metadata=MediaMetadata()),
        created_at=stamp,
        updated_at=stamp,
    )


def test_cleanup_temp_files_task(tmp_path, monkeypatch) -> None:
    stale = tmp_path / "output" / "old.mp4"
    stale.parent.mkdir()
    stale.write_bytes(b"x")
    old = time.time() - 3 * 3600
    os.utime(stale, (old, old))
    monkeypatch.setattr(tasks.settings, "TEMP_DIR", str(tmp_path))

    result = tasks.cleanup_temp_files_task(max_age_hours=1)

    assert result == {"status": "completed", "removed": 1}
    assert not stale.exists()


@pytest.mark.asyncio
async def test_purge_finished_jobs(tmp_path, monkeypatch) -> None:
    url = f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}"
    engine = create_engine(url)
    store = SqlJobStore(create_session_maker(engine), engine=engine)
    await store.initialize()
    for job in (
        stored_job("old-completed", JobStatus.COMPLETED, 10),
        stored_job("old-failed", JobStatus.FAILED, 8),
        stored_job("recent-failed", JobStatus.FAILED, 1),
        stored_job("old-queued", JobStatus.QUEUED, 10),
    ):
        await store.upsert(job)

    monkeypatch.setattr(tasks, "create_engine", lambda: create_engine(url))

    purged = await tasks.purge_finished_jobs(retention_days=7)

    assert purged == 2
    assert await store.get("old-completed") is None
    assert await store.get("recent-failed") is not None
    assert await store.get("old-queued") is not None
    await store.close()
