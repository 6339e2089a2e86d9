"""Transcoding job queue and scheduler.

The pipeline owns a bounded FIFO of pending jobs and a bounded set of
in-flight jobs. All of its state is mutated on the event loop it runs on;
encoders run as separate OS processes and blob-store calls run in worker
threads.
"""

import asyncio
import logging
import os
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from datetime import timedelta
from functools import partial
from typing import Optional
from urllib.parse import urlparse

from mediaforge.core.config import Settings, settings as default_settings
from mediaforge.core.database import create_engine, create_session_maker
from mediaforge.core.logging import correlation_scope, log_error, log_info, log_warning
from mediaforge.core.metrics import (
    JOB_DURATION_SECONDS,
    JOB_RETRIES_TOTAL,
    JOBS_TOTAL,
    update_queue_depth,
)
from mediaforge.core.storage import Storage, StorageConfig
from mediaforge.modules.job import events as ev
from mediaforge.modules.job.events import EventEmitter, EventHandler
from mediaforge.modules.job.models import INCOMPLETE_STATUSES, TERMINAL_STATUSES, JobStatus, JobType
from mediaforge.modules.job.repository import JobStore, SqlJobStore
from mediaforge.modules.job.retry import ConstantBackoff, RetryPolicy, retry_policy_from_settings
from mediaforge.modules.job.schemas import (
    JobProgress,
    OriginalFile,
    ProcessingJob,
    QueueStats,
    utcnow,
)
from mediaforge.modules.transcoding.engine import TranscodingEngine
from mediaforge.modules.transcoding.ffmpeg import FFmpegRunner, MetadataProber
from mediaforge.modules.transcoding.schemas import ProcessingOptions
from mediaforge.modules.transcoding.storage import FetchedInput, InputFetcher, OutputUploader

logger = logging.getLogger(__name__)


class JobQueueError(Exception):
    """Base exception for job queue errors."""
    pass


class QueueFullError(JobQueueError):
    """The pending queue is at capacity."""
    pass


class ShuttingDownError(JobQueueError):
    """The pipeline no longer accepts jobs."""
    pass


class JobNotFoundError(JobQueueError):
    """No job with the given id."""
    pass


class JobTimeoutError(JobQueueError):
    """A job attempt exceeded the job timeout."""
    retryable = True


@dataclass
class QueueConfig:
    """Scheduler limits and intervals."""
    max_concurrent_jobs: int = 3
    max_queue_size: int = 100
    max_retries: int = 3
    retry_delay_seconds: float = 30.0
    job_timeout_seconds: float = 30 * 60
    cleanup_interval_seconds: float = 60 * 60
    job_retention_days: int = 7
    temp_file_max_age_hours: float = 24
    shutdown_grace_seconds: float = 60.0

    @classmethod
    def from_settings(cls, settings: Settings = default_settings) -> "QueueConfig":
        return cls(
            max_concurrent_jobs=settings.MAX_CONCURRENT_TRANSCODING_JOBS,
            max_queue_size=settings.MAX_QUEUE_SIZE,
            max_retries=settings.JOB_MAX_RETRIES,
            retry_delay_seconds=settings.RETRY_DELAY_SECONDS,
            job_timeout_seconds=settings.JOB_TIMEOUT_SECONDS,
            cleanup_interval_seconds=settings.CLEANUP_INTERVAL_SECONDS,
            job_retention_days=settings.JOB_RETENTION_DAYS,
            temp_file_max_age_hours=settings.TEMP_FILE_MAX_AGE_HOURS,
            shutdown_grace_seconds=settings.SHUTDOWN_GRACE_SECONDS,
        )


@dataclass
class _ActiveJob:
    job: ProcessingJob
    task: asyncio.Task


class TranscodingPipeline:
    """Schedules transcoding jobs under bounded concurrency.

    Jobs are dispatched in FIFO order. A failed attempt is retried after the
    retry policy's delay and re-enters the queue at the back; a job that
    keeps failing ends ``failed`` with ``"Retry n/N: cause"`` as its error.
    """

    def __init__(
        self,
        engine: TranscodingEngine,
        store: JobStore,
        config: Optional[QueueConfig] = None,
        retry_policy: Optional[RetryPolicy] = None,
        events: Optional[EventEmitter] = None,
    ):
        self.engine = engine
        self.store = store
        self.config = config or QueueConfig()
        self.retry_policy = retry_policy or ConstantBackoff(self.config.retry_delay_seconds)
        self.events = events or EventEmitter()

        self._pending: "OrderedDict[str, ProcessingJob]" = OrderedDict()
        self._active: dict[str, _ActiveJob] = {}
        self._waiting: dict[str, tuple[ProcessingJob, asyncio.TimerHandle]] = {}
        self._inputs: dict[str, FetchedInput] = {}
        self._cleanup_task: Optional[asyncio.Task] = None
        self._shutting_down = False

    # ==================== Subscriptions ====================

    def on(self, event: str, handler: EventHandler) -> None:
        self.events.on(event, handler)

    def off(self, event: str, handler: EventHandler) -> bool:
        return self.events.off(event, handler)

    # ==================== Lifecycle ====================

    @property
    def is_shutting_down(self) -> bool:
        return self._shutting_down

    async def start(self) -> None:
        """Create the temp dir, resume incomplete jobs and start periodic cleanup."""
        os.makedirs(self.engine.temp_dir, exist_ok=True)
        await self.store.initialize()
        resumed = await self.resume_incomplete_jobs()
        if self.config.cleanup_interval_seconds > 0:
            self._cleanup_task = asyncio.create_task(self._cleanup_loop(), name="transcoding-cleanup")
        log_info(logger, "Transcoding pipeline started", resumed_jobs=resumed)

    async def shutdown(self) -> None:
        """Stop accepting jobs and drain in-flight work.

        In-flight jobs get ``shutdown_grace_seconds`` to finish; whatever is
        still running afterwards is marked failed and its encoder killed.
        Pending and retry-waiting jobs stay ``queued`` in the store and are
        resumed on the next start.
        """
        if self._shutting_down:
            return
        self._shutting_down = True
        log_info(logger, "Shutting down transcoding pipeline", active_jobs=len(self._active))

        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            await asyncio.wait({self._cleanup_task})
            self._cleanup_task = None

        for _, handle in self._waiting.values():
            handle.cancel()
        self._waiting.clear()
        self._pending.clear()

        tasks = {active.task for active in self._active.values()}
        if tasks:
            await asyncio.wait(tasks, timeout=self.config.shutdown_grace_seconds)

        remaining = list(self._active.values())
        for active in remaining:
            job = active.job
            if job.status == JobStatus.PROCESSING:
                self._mark_failed(job, "server shutdown")
                await self._persist(job)
                self.events.emit(ev.JOB_FAILED, job.model_copy(deep=True))
            active.task.cancel()
        if remaining:
            await asyncio.wait({active.task for active in remaining})

        for fetched in self._inputs.values():
            fetched.cleanup()
        self._inputs.clear()
        self._update_metrics()
        log_info(logger, "Transcoding pipeline stopped", killed_jobs=len(remaining))

    # ==================== Submission ====================

    async def queue_video_job(
        self,
        content_id: str,
        user_id: str,
        input_url: str,
        options: Optional[ProcessingOptions] = None,
    ) -> str:
        """Probe a video input and queue it for transcoding.

        Returns:
            The new job id

        Raises:
            ShuttingDownError: If the pipeline is shutting down
            QueueFullError: If the pending queue is at capacity
            ProbeFailedError: If the input cannot be probed
        """
        return await self._submit(JobType.VIDEO, content_id, user_id, input_url, options)

    async def queue_audio_job(
        self,
        content_id: str,
        user_id: str,
        input_url: str,
        options: Optional[ProcessingOptions] = None,
    ) -> str:
        """Probe an audio input and queue it for transcoding."""
        return await self._submit(JobType.AUDIO, content_id, user_id, input_url, options)

    def _check_accepting(self) -> None:
        if self._shutting_down:
            raise ShuttingDownError("Pipeline is shutting down")
        if self._queued_count() >= self.config.max_queue_size:
            self.events.emit(ev.QUEUE_FULL, self.get_queue_stats())
            raise QueueFullError(f"Queue is full ({self.config.max_queue_size} jobs)")

    async def _submit(
        self,
        job_type: JobType,
        content_id: str,
        user_id: str,
        input_url: str,
        options: Optional[ProcessingOptions],
    ) -> str:
        self._check_accepting()

        fetched = await self.engine.fetcher.fetch(input_url)
        try:
            metadata = await self.engine.extract_metadata(fetched.path)
            # The queue may have changed while the input was probed
            self._check_accepting()
        except BaseException:
            fetched.cleanup()
            raise

        job = ProcessingJob(
            id=uuid.uuid4().hex,
            content_id=content_id,
            user_id=user_id,
            type=job_type,
            status=JobStatus.QUEUED,
            progress=0.0,
            original_file=OriginalFile(
                key=urlparse(input_url).path.lstrip("/") or input_url,
                url=input_url,
                metadata=metadata,
            ),
            options=options or ProcessingOptions(),
        )

        self._pending[job.id] = job
        self._inputs[job.id] = fetched
        JOBS_TOTAL.labels(job_type=job_type.value, status=JobStatus.QUEUED.value).inc()
        log_info(logger, "Job queued", job_id=job.id, job_type=job_type.value, content_id=content_id)
        self.events.emit(ev.JOB_QUEUED, job.model_copy(deep=True))

        await self._persist(job)
        self._dispatch()
        return job.id

    # ==================== Queries ====================

    async def get_job_status(self, job_id: str) -> Optional[ProcessingJob]:
        """Look up a job: in flight, then pending, then the job store."""
        job = self._find_live(job_id)
        if job is not None:
            return job.model_copy(deep=True)
        return await self.store.get(job_id)

    async def require_job(self, job_id: str) -> ProcessingJob:
        job = await self.get_job_status(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        return job

    def _find_live(self, job_id: str) -> Optional[ProcessingJob]:
        if job_id in self._active:
            return self._active[job_id].job
        if job_id in self._pending:
            return self._pending[job_id]
        if job_id in self._waiting:
            return self._waiting[job_id][0]
        return None

    def _queued_count(self) -> int:
        return len(self._pending) + len(self._waiting)

    def get_queue_stats(self) -> QueueStats:
        return QueueStats(
            queued=self._queued_count(),
            processing=len(self._active),
            max_concurrent=self.config.max_concurrent_jobs,
            capacity=self.config.max_queue_size,
        )

    # ==================== Cancellation ====================

    async def cancel_job(self, job_id: str) -> bool:
        """Cancel a pending, retry-waiting or in-flight job.

        An in-flight job's encoder is killed and awaited before this returns.
        Outputs uploaded before the cancel stay on the job record.

        Returns:
            False if the job is unknown or already finished
        """
        if job_id in self._pending:
            job = self._pending.pop(job_id)
            await self._cancel_idle(job)
            return True

        if job_id in self._waiting:
            job, handle = self._waiting.pop(job_id)
            handle.cancel()
            await self._cancel_idle(job)
            return True

        active = self._active.get(job_id)
        if active is None or active.job.is_terminal:
            return False

        # QUEUED here means the failed attempt is still being written back
        # before its retry timer starts; the task sees the cancel and stops
        in_retry_handoff = active.job.status == JobStatus.QUEUED
        self._mark_failed(active.job, "cancelled")
        await self._persist(active.job)
        JOBS_TOTAL.labels(job_type=active.job.type.value, status=JobStatus.FAILED.value).inc()
        self.events.emit(ev.JOB_FAILED, active.job.model_copy(deep=True))
        if not in_retry_handoff:
            active.task.cancel()
        await asyncio.wait({active.task})
        log_info(logger, "In-flight job cancelled", job_id=job_id)
        return True

    async def _cancel_idle(self, job: ProcessingJob) -> None:
        self._mark_failed(job, "cancelled")
        await self._persist(job)
        self._release_input(job.id)
        JOBS_TOTAL.labels(job_type=job.type.value, status=JobStatus.FAILED.value).inc()
        self.events.emit(ev.JOB_FAILED, job.model_copy(deep=True))
        self._update_metrics()
        log_info(logger, "Queued job cancelled", job_id=job.id)

    # ==================== Scheduling ====================

    def _dispatch(self) -> None:
        """Start pending jobs while slots are free. Runs on the event loop only."""
        if self._shutting_down:
            return

        if not self._pending and len(self._active) < self.config.max_concurrent_jobs:
            self.events.emit(ev.QUEUE_EMPTY, self.get_queue_stats())

        while len(self._active) < self.config.max_concurrent_jobs and self._pending:
            _, job = self._pending.popitem(last=False)
            job.status = JobStatus.PROCESSING
            job.current_step = None
            job.touch()
            task = asyncio.create_task(self._run_job(job), name=f"transcode-{job.id}")
            # Runs even when the task is cancelled before its first step
            task.add_done_callback(partial(self._on_task_done, job))
            self._active[job.id] = _ActiveJob(job=job, task=task)

        self._update_metrics()

    def _on_task_done(self, job: ProcessingJob, task: asyncio.Task) -> None:
        """Free the slot of a finished attempt and dispatch the next job."""
        active = self._active.get(job.id)
        if active is not None and active.task is task:
            del self._active[job.id]
        if job.is_terminal:
            self._release_input(job.id)
        if not task.cancelled() and task.exception() is not None:
            log_error(logger, "Job task crashed", task.exception(), job_id=job.id)
        self._dispatch()

    async def _run_job(self, job: ProcessingJob) -> None:
        started = time.monotonic()
        with correlation_scope(job.id):
            try:
                await self._persist(job)
                self.events.emit(ev.JOB_STARTED, job.model_copy(deep=True))
                log_info(logger, "Job started", job_id=job.id, retry_count=job.retry_count)

                fetched = self._inputs.get(job.id)
                try:
                    outputs = await asyncio.wait_for(
                        self.engine.process_job(
                            job,
                            partial(self._on_progress, job),
                            fetched.path if fetched else None,
                        ),
                        timeout=self.config.job_timeout_seconds,
                    )
                except asyncio.TimeoutError:
                    await self._handle_failure(job, JobTimeoutError(
                        f"Job timed out after {self.config.job_timeout_seconds:g}s"
                    ))
                except Exception as e:
                    await self._handle_failure(job, e)
                else:
                    await self._complete(job, outputs)
            finally:
                JOB_DURATION_SECONDS.labels(job_type=job.type.value).observe(time.monotonic() - started)

    async def _complete(self, job: ProcessingJob, outputs: list) -> None:
        if job.status != JobStatus.PROCESSING:
            # Cancelled or shut down while the engine was finishing
            return
        job.outputs = list(outputs)
        job.status = JobStatus.COMPLETED
        job.progress = 100.0
        job.current_step = None
        job.error = None
        job.touch()
        await self._persist(job)

        JOBS_TOTAL.labels(job_type=job.type.value, status=JobStatus.COMPLETED.value).inc()
        log_info(logger, "Job completed", job_id=job.id, output_count=len(job.outputs))
        self.events.emit(ev.JOB_COMPLETED, job.model_copy(deep=True))

    async def _handle_failure(self, job: ProcessingJob, error: BaseException) -> None:
        if job.status != JobStatus.PROCESSING:
            return

        cause = str(error) or error.__class__.__name__
        max_retries = self.config.max_retries
        retryable = getattr(error, "retryable", True)

        if not retryable or job.retry_count >= max_retries:
            self._mark_failed(
                job,
                f"Retry {job.retry_count}/{max_retries}: {cause}" if job.retry_count > 0 else cause,
            )
            await self._persist(job)
            JOBS_TOTAL.labels(job_type=job.type.value, status=JobStatus.FAILED.value).inc()
            log_error(logger, "Job failed", error, job_id=job.id, retry_count=job.retry_count)
            self.events.emit(ev.JOB_FAILED, job.model_copy(deep=True))
            return

        job.retry_count += 1
        job.status = JobStatus.QUEUED
        job.progress = 0.0
        job.current_step = None
        job.outputs = []
        job.error = f"Retry {job.retry_count}/{max_retries}: {cause}"
        job.touch()
        await self._persist(job)

        if job.status == JobStatus.FAILED:
            # Cancelled while the retry was being written; the store must end failed
            await self._persist(job)
            return
        JOB_RETRIES_TOTAL.labels(job_type=job.type.value).inc()

        if self._shutting_down:
            # Left queued in the store for the next start
            return

        delay = self.retry_policy.delay(job.retry_count)
        log_warning(
            logger,
            f"Job attempt failed, retrying in {delay:g}s",
            job_id=job.id,
            retry_count=job.retry_count,
            cause=cause,
        )
        handle = asyncio.get_running_loop().call_later(delay, self._requeue, job.id)
        self._waiting[job.id] = (job, handle)

    def _requeue(self, job_id: str) -> None:
        entry = self._waiting.pop(job_id, None)
        if entry is None or self._shutting_down:
            return
        job = entry[0]
        self._pending[job.id] = job
        self.events.emit(ev.JOB_REQUEUED, job.model_copy(deep=True))
        self._dispatch()

    async def _on_progress(self, job: ProcessingJob, progress: float, current_step: str) -> None:
        if job.status != JobStatus.PROCESSING:
            return

        progress = max(0.0, min(100.0, float(progress)))
        previous_band = int(job.progress // 10)
        job.progress = progress
        job.current_step = current_step
        job.touch()

        self.events.emit(ev.JOB_PROGRESS, JobProgress(
            job_id=job.id,
            content_id=job.content_id,
            status=job.status,
            progress=progress,
            current_step=current_step,
        ))

        if int(progress // 10) != previous_band or progress >= 100:
            await self._persist(job)

    # ==================== Resumption & maintenance ====================

    async def resume_incomplete_jobs(self) -> int:
        """Re-queue jobs the store still holds as queued or processing.

        Returns:
            Number of resumed jobs
        """
        try:
            jobs = await self.store.list_by_status(INCOMPLETE_STATUSES)
        except Exception as e:
            log_error(logger, "Failed to load incomplete jobs", e)
            return 0

        resumed = 0
        for job in jobs:
            if self._find_live(job.id) is not None:
                continue
            job.status = JobStatus.QUEUED
            job.progress = 0.0
            job.current_step = None
            job.touch()
            await self._persist(job)
            self._pending[job.id] = job
            resumed += 1

        if resumed:
            log_info(logger, f"Resumed {resumed} incomplete jobs")
        self._dispatch()
        return resumed

    async def run_cleanup(self) -> int:
        """Purge finished jobs past retention and stale temp files."""
        cutoff = utcnow() - timedelta(days=self.config.job_retention_days)
        purged = 0
        try:
            purged = await self.store.delete_older_than(cutoff, TERMINAL_STATUSES)
            if purged:
                log_info(logger, f"Purged {purged} finished jobs")
        except Exception as e:
            log_error(logger, "Failed to purge finished jobs", e)

        await self.engine.cleanup(self.config.temp_file_max_age_hours)
        return purged

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.cleanup_interval_seconds)
            await self.run_cleanup()

    # ==================== Helpers ====================

    @staticmethod
    def _mark_failed(job: ProcessingJob, error: str) -> None:
        job.status = JobStatus.FAILED
        job.error = error
        job.current_step = None
        job.touch()

    async def _persist(self, job: ProcessingJob) -> None:
        try:
            await self.store.upsert(job)
        except Exception as e:
            log_error(logger, "Failed to persist job", e, job_id=job.id, status=job.status.value)

    def _release_input(self, job_id: str) -> None:
        fetched = self._inputs.pop(job_id, None)
        if fetched is not None:
            fetched.cleanup()

    def _update_metrics(self) -> None:
        update_queue_depth(self._queued_count(), len(self._active))


def build_pipeline(
    settings: Settings = default_settings,
    store: Optional[JobStore] = None,
    storage: Optional[Storage] = None,
) -> TranscodingPipeline:
    """Wire up a pipeline from settings.

    Args:
        settings: Application settings
        store: Job store (SQL store on ``DATABASE_URL`` when omitted)
        storage: Blob storage (built from the storage settings when omitted)
    """
    storage = storage or Storage(StorageConfig.from_settings(settings))

    engine = TranscodingEngine(
        prober=MetadataProber(settings.FFPROBE_PATH, settings.FFMPEG_KILL_GRACE_SECONDS),
        runner=FFmpegRunner(settings.FFMPEG_PATH, settings.FFMPEG_KILL_GRACE_SECONDS),
        uploader=OutputUploader(storage),
        fetcher=InputFetcher(storage, settings.TEMP_DIR),
        temp_dir=settings.TEMP_DIR,
    )

    if store is None:
        db_engine = create_engine(settings.DATABASE_URL, settings.DATABASE_ECHO)
        store = SqlJobStore(create_session_maker(db_engine), engine=db_engine)

    return TranscodingPipeline(
        engine=engine,
        store=store,
        config=QueueConfig.from_settings(settings),
        retry_policy=retry_policy_from_settings(settings),
    )
