"""Pydantic schemas for the transcoding engine."""

from typing import Optional

from pydantic import BaseModel, Field, field_validator

from mediaforge.modules.transcoding.models import (
    DEFAULT_THUMBNAIL_COUNT,
    MAX_THUMBNAIL_COUNT,
    VIDEO_PRESETS_BY_NAME,
    WatermarkPosition,
)


class MediaMetadata(BaseModel):
    """Container and stream facts extracted by ffprobe."""
    duration: float = Field(default=0.0, ge=0, description="Duration in seconds")
    width: int = Field(default=0, ge=0)
    height: int = Field(default=0, ge=0)
    file_size: int = Field(default=0, ge=0, description="Size in bytes")
    format: str = Field(default="", description="Container format name")
    bitrate: int = Field(default=0, ge=0, description="Bits per second")
    frame_rate: float = Field(default=0.0, ge=0)
    has_audio: bool = False
    has_video: bool = False
    audio_codec: Optional[str] = None
    video_codec: Optional[str] = None
    sample_rate: Optional[int] = None
    channels: Optional[int] = None

    class Config:
        frozen = True


class ProcessingOutput(BaseModel):
    """One rendition, image or playlist produced for a job."""
    quality: str = Field(..., description="e.g. 720p, preview, thumbnail-3, hls, high, waveform-data")
    format: str = Field(..., description="mp4, mp3, jpg, png, gif, json or hls")
    url: str
    key: str
    file_size: int = Field(default=0, ge=0)
    duration: Optional[float] = None
    width: Optional[int] = None
    height: Optional[int] = None
    bitrate: Optional[int] = None

    class Config:
        frozen = True


class Watermark(BaseModel):
    """Text watermark drawn on video renditions."""
    text: str = Field(..., min_length=1, max_length=200)
    position: WatermarkPosition = WatermarkPosition.TOP_LEFT


class ProcessingOptions(BaseModel):
    """Per-job processing options, validated once at submission."""
    generate_thumbnails: bool = True
    thumbnail_count: int = Field(default=DEFAULT_THUMBNAIL_COUNT, ge=1, le=MAX_THUMBNAIL_COUNT)
    generate_preview: bool = Field(
        default=True,
        description="Preview clip for video, waveform image for audio",
    )
    generate_sprite: bool = False
    generate_animated_preview: bool = Field(
        default=False,
        description="Short looping GIF cut at the first thumbnail position",
    )
    generate_waveform_data: bool = Field(
        default=False,
        description="JSON waveform peaks for audio jobs",
    )
    transcode_qualities: Optional[list[str]] = Field(
        default=None,
        description="Subset of video presets to render",
    )
    generate_hls: bool = True
    audio_normalization: bool = True
    watermark: Optional[Watermark] = None

    @field_validator("transcode_qualities")
    @classmethod
    def validate_qualities(cls, v: Optional[list[str]]) -> Optional[list[str]]:
        """Reject preset names the engine does not know."""
        if v is None:
            return v
        unknown = [name for name in v if name not in VIDEO_PRESETS_BY_NAME]
        if unknown:
            allowed = ", ".join(VIDEO_PRESETS_BY_NAME)
            raise ValueError(f"Unknown quality {unknown[0]!r}; expected one of: {allowed}")
        return v
