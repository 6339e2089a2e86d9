"""Pydantic schemas for streaming delivery."""

from typing import Literal, Optional

from pydantic import BaseModel, Field

from mediaforge.modules.streaming.models import DeviceType, StreamingType


class QualityLevel(BaseModel):
    """One variant of a manifest's quality ladder."""
    quality: str
    bandwidth: int = Field(..., ge=0, description="Bits per second")
    resolution: str = Field(..., description="WxH")
    url: str
    codecs: str
    frame_rate: Optional[float] = None


class ThumbnailTrack(BaseModel):
    """Sprite sheet used for scrubbing previews."""
    url: str
    interval: int
    columns: int
    rows: int
    width: int
    height: int


class StreamingMetadata(BaseModel):
    duration: float = Field(..., ge=0)
    content_type: Literal["video", "audio"]
    artist_id: str
    content_id: str
    tier: Optional[str] = None
    is_live: bool = False
    drm_protected: bool = False
    geo_restrictions: Optional[list[str]] = None


class StreamingManifest(BaseModel):
    type: StreamingType
    master_playlist: str
    qualities: list[QualityLevel] = Field(..., description="Descending by bandwidth")
    thumbnails: Optional[ThumbnailTrack] = None
    metadata: StreamingMetadata


class BandwidthInfo(BaseModel):
    """Network measurement as reported by the client."""
    estimated: float = Field(default=0.0, ge=0, description="Bits per second")
    effective: str = Field(default="4g", description="Effective connection class")
    rtt: float = Field(default=0.0, ge=0, description="Round trip time in ms")
    downlink: float = Field(..., ge=0, description="Mbps")
    type: str = Field(default="4g", description="Connection class")


class UserLocation(BaseModel):
    country: str
    region: str
    coordinates: Optional[tuple[float, float]] = None


class ScreenSize(BaseModel):
    width: int = Field(..., ge=0)
    height: int = Field(..., ge=0)


class DeviceCapabilities(BaseModel):
    hls: bool = True
    dash: bool = True
    hevc: bool = False
    av1: bool = False


class DeviceInfo(BaseModel):
    type: DeviceType
    screen_size: Optional[ScreenSize] = None
    capabilities: Optional[DeviceCapabilities] = None


class DeliveryPreferences(BaseModel):
    max_quality: Optional[str] = None
    autoplay: Optional[bool] = None
    data_saver: bool = False
    preferred_language: Optional[str] = None


class DeliveryOptions(BaseModel):
    """Client context a manifest is tailored to."""
    user_location: Optional[UserLocation] = None
    device_info: Optional[DeviceInfo] = None
    connection_info: Optional[BandwidthInfo] = None
    preferences: Optional[DeliveryPreferences] = None

    class Config:
        frozen = True


class PreloadingStrategy(BaseModel):
    preload_amount: int = Field(..., description="Bytes to buffer ahead")
    chunk_size: int = Field(..., description="Bytes per range request")
    max_concurrent: int
    priorities: list[str]


# ==================== API ====================

class ManifestRequest(BaseModel):
    """Build a manifest for a completed job."""
    delivery_options: DeliveryOptions = Field(default_factory=DeliveryOptions)
    tier: Optional[str] = None
    drm_protected: bool = False
    geo_restrictions: Optional[list[str]] = None


class QualityRecommendationRequest(BaseModel):
    qualities: list[QualityLevel] = Field(..., min_length=1)
    bandwidth: BandwidthInfo
    device_info: Optional[DeviceInfo] = None


class PreloadingRequest(BaseModel):
    manifest: StreamingManifest
    delivery_options: DeliveryOptions = Field(default_factory=DeliveryOptions)
