"""API Router for streaming delivery."""

from fastapi import APIRouter, Depends, HTTPException, Request, status

from mediaforge.modules.job.models import JobStatus
from mediaforge.modules.job.router import get_pipeline
from mediaforge.modules.job.service import JobNotFoundError, TranscodingPipeline
from mediaforge.modules.streaming.schemas import (
    ManifestRequest,
    PreloadingRequest,
    PreloadingStrategy,
    QualityLevel,
    QualityRecommendationRequest,
    StreamingManifest,
    StreamingMetadata,
)
from mediaforge.modules.streaming.service import StreamingOptimizer

router = APIRouter(prefix="/streaming", tags=["streaming"])


def get_optimizer(request: Request) -> StreamingOptimizer:
    """Dependency to get the optimizer built in the application lifespan."""
    return request.app.state.streaming_optimizer


@router.post("/jobs/{job_id}/manifest", response_model=StreamingManifest)
async def build_job_manifest(
    job_id: str,
    body: ManifestRequest,
    pipeline: TranscodingPipeline = Depends(get_pipeline),
    optimizer: StreamingOptimizer = Depends(get_optimizer),
) -> StreamingManifest:
    """Build a delivery manifest from a completed job's outputs.

    Returns 404 for unknown jobs and 409 until the job has completed.
    """
    try:
        job = await pipeline.require_job(job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    if job.status != JobStatus.COMPLETED:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Job is {job.status.value}, manifests need a completed job",
        )

    metadata = StreamingMetadata(
        duration=job.original_file.metadata.duration,
        content_type=job.type.value,
        artist_id=job.user_id,
        content_id=job.content_id,
        tier=body.tier,
        drm_protected=body.drm_protected,
        geo_restrictions=body.geo_restrictions,
    )
    return optimizer.build_manifest(job.outputs, metadata, body.delivery_options)


@router.post("/recommend", response_model=QualityLevel)
async def recommend_quality(
    body: QualityRecommendationRequest,
    optimizer: StreamingOptimizer = Depends(get_optimizer),
) -> QualityLevel:
    try:
        return optimizer.recommend_quality(body.qualities, body.bandwidth, body.device_info)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))


@router.post("/preloading", response_model=PreloadingStrategy)
async def preloading_strategy(
    body: PreloadingRequest,
    optimizer: StreamingOptimizer = Depends(get_optimizer),
) -> PreloadingStrategy:
    return optimizer.generate_preloading_strategy(body.manifest, body.delivery_options)
