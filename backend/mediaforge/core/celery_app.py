"""Celery application configuration.

Only maintenance work runs on Celery; transcoding jobs are scheduled by the
in-process pipeline.
"""

from celery import Celery

from mediaforge.core.config import settings

celery_app = Celery(
    "mediaforge",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=3600,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    beat_schedule={
        "cleanup-temp-files": {
            "task": "transcoding.cleanup_temp_files",
            "schedule": settings.CLEANUP_INTERVAL_SECONDS,
        },
        "purge-finished-jobs": {
            "task": "transcoding.purge_finished_jobs",
            "schedule": settings.CLEANUP_INTERVAL_SECONDS,
        },
    },
)

celery_app.autodiscover_tasks(["mediaforge.modules.transcoding"])
