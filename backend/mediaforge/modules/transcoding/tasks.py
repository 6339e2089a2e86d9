"""Celery maintenance tasks for the transcoding service.

These mirror the pipeline's periodic cleanup for deployments where the API
processes should not do housekeeping themselves.
"""

import asyncio
from datetime import datetime, timedelta, timezone

from mediaforge.core.celery_app import celery_app
from mediaforge.core.config import settings
from mediaforge.core.database import create_engine, create_session_maker
from mediaforge.core.storage import remove_stale_files
from mediaforge.modules.job.models import TERMINAL_STATUSES
from mediaforge.modules.job.repository import SqlJobStore


async def purge_finished_jobs(retention_days: int) -> int:
    """Delete completed/failed jobs not updated within ``retention_days``."""
    # A fresh engine per run: pooled connections cannot cross event loops
    engine = create_engine()
    try:
        store = SqlJobStore(create_session_maker(engine))
        cutoff = datetime.now(timezone.utc) - timedelta(days=retention_days)
        return await store.delete_older_than(cutoff, TERMINAL_STATUSES)
    finally:
        await engine.dispose()


@celery_app.task(name="transcoding.cleanup_temp_files")
def cleanup_temp_files_task(max_age_hours: float = settings.TEMP_FILE_MAX_AGE_HOURS) -> dict:
    """Remove stale files from the transcoding temp dir."""
    removed = remove_stale_files(settings.TEMP_DIR, max_age_hours * 3600)
    return {"status": "completed", "removed": len(removed)}


@celery_app.task(name="transcoding.purge_finished_jobs")
def purge_finished_jobs_task(retention_days: int = settings.JOB_RETENTION_DAYS) -> dict:
    """Purge finished jobs past the retention window."""
    purged = asyncio.run(purge_finished_jobs(retention_days))
    return {"status": "completed", "purged": purged}
