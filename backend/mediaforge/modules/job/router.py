"""API Router for the transcoding job queue."""

from fastapi import APIRouter, Depends, HTTPException, Request, status

from mediaforge.modules.job.schemas import (
    JobCancelResponse,
    JobSubmitRequest,
    JobSubmitResponse,
    ProcessingJob,
    QueueStats,
)
from mediaforge.modules.job.models import JobStatus, JobType
from mediaforge.modules.job.service import (
    JobNotFoundError,
    QueueFullError,
    ShuttingDownError,
    TranscodingPipeline,
)
from mediaforge.modules.transcoding.ffmpeg import ProbeFailedError, TranscodingError

router = APIRouter(prefix="/jobs", tags=["jobs"])


def get_pipeline(request: Request) -> TranscodingPipeline:
    """Dependency to get the pipeline built in the application lifespan."""
    return request.app.state.pipeline


async def _submit(
    job_type: JobType,
    body: JobSubmitRequest,
    pipeline: TranscodingPipeline,
) -> JobSubmitResponse:
    submit = pipeline.queue_video_job if job_type == JobType.VIDEO else pipeline.queue_audio_job
    try:
        job_id = await submit(body.content_id, body.user_id, body.file_url, body.options)
    except (QueueFullError, ShuttingDownError) as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    except ProbeFailedError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    except TranscodingError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

    return JobSubmitResponse(
        job_id=job_id,
        status=JobStatus.QUEUED,
        message=f"{job_type.value.capitalize()} job queued",
    )


@router.post("/video", response_model=JobSubmitResponse, status_code=status.HTTP_202_ACCEPTED)
async def submit_video_job(
    body: JobSubmitRequest,
    pipeline: TranscodingPipeline = Depends(get_pipeline),
) -> JobSubmitResponse:
    """Probe a video and queue it for transcoding."""
    return await _submit(JobType.VIDEO, body, pipeline)


@router.post("/audio", response_model=JobSubmitResponse, status_code=status.HTTP_202_ACCEPTED)
async def submit_audio_job(
    body: JobSubmitRequest,
    pipeline: TranscodingPipeline = Depends(get_pipeline),
) -> JobSubmitResponse:
    """Probe an audio file and queue it for transcoding."""
    return await _submit(JobType.AUDIO, body, pipeline)


@router.get("/stats", response_model=QueueStats)
async def get_queue_stats(
    pipeline: TranscodingPipeline = Depends(get_pipeline),
) -> QueueStats:
    return pipeline.get_queue_stats()


@router.get("/{job_id}", response_model=ProcessingJob)
async def get_job(
    job_id: str,
    pipeline: TranscodingPipeline = Depends(get_pipeline),
) -> ProcessingJob:
    try:
        return await pipeline.require_job(job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.post("/{job_id}/cancel", response_model=JobCancelResponse)
async def cancel_job(
    job_id: str,
    pipeline: TranscodingPipeline = Depends(get_pipeline),
) -> JobCancelResponse:
    """Cancel a queued or running job.

    Returns 404 for unknown jobs and 409 for jobs that already finished.
    """
    if await pipeline.cancel_job(job_id):
        return JobCancelResponse(job_id=job_id, cancelled=True, message="Job cancelled")

    try:
        job = await pipeline.require_job(job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    raise HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail=f"Job already {job.status.value}",
    )
