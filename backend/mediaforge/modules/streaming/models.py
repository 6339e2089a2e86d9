"""Streaming delivery constants: bitrate ladder, connection classes, cache TTLs."""

from dataclasses import dataclass
from enum import Enum


class StreamingType(str, Enum):
    """Delivery technology of a manifest."""
    HLS = "hls"
    DASH = "dash"
    PROGRESSIVE = "progressive"


class DeviceType(str, Enum):
    MOBILE = "mobile"
    TABLET = "tablet"
    DESKTOP = "desktop"
    TV = "tv"


class AssetKind(str, Enum):
    """Asset classes with their own cache lifetime."""
    VIDEO = "video"
    AUDIO = "audio"
    THUMBNAIL = "thumbnail"
    HLS = "hls"


@dataclass(frozen=True)
class AbrRung:
    """One rung of the adaptive bitrate table."""
    name: str
    bandwidth: int  # bits per second
    resolution: str  # WxH

    @property
    def width(self) -> int:
        return int(self.resolution.split("x")[0])

    @property
    def height(self) -> int:
        return int(self.resolution.split("x")[1])


# Highest first
ABR_LADDER: tuple[AbrRung, ...] = (
    AbrRung("1080p", 5_000_000, "1920x1080"),
    AbrRung("720p", 3_000_000, "1280x720"),
    AbrRung("480p", 1_500_000, "854x480"),
    AbrRung("360p", 800_000, "640x360"),
    AbrRung("240p", 400_000, "426x240"),
)

ABR_BY_NAME = {rung.name: rung for rung in ABR_LADDER}

DEFAULT_RUNG = ABR_BY_NAME["480p"]

# Switch quality at 80% of measured capacity
SWITCH_THRESHOLD = 0.8

DEFAULT_CODECS = "avc1.640028,mp4a.40.2"
DASH_VIDEO_CODEC = "avc1.640028"
DEFAULT_FRAME_RATE = 30.0

SLOW_CONNECTIONS = frozenset(("2g", "slow-2g"))
FAST_CONNECTIONS = frozenset(("5g", "wifi"))

# Progressive loading
CHUNK_SIZE = 1024 * 1024
PRELOAD_SIZE = 5 * 1024 * 1024
MAX_CONCURRENT_CHUNKS = 3
MAX_CONCURRENT_CHUNKS_CAP = 6
MOBILE_PRELOAD_FACTOR = 0.7

PRELOAD_PRIORITIES = (
    "audio",
    "video-360p",
    "video-480p",
    "thumbnails",
    "video-720p",
    "video-1080p",
)

# Scrubbing thumbnails (matches the engine's sprite sheet)
THUMBNAIL_TRACK_INTERVAL = 10
THUMBNAIL_TRACK_COLUMNS = 10
THUMBNAIL_TRACK_ROWS = 10
THUMBNAIL_TRACK_WIDTH = 160
THUMBNAIL_TRACK_HEIGHT = 90

# Cache lifetimes in seconds
CACHE_TTLS = {
    AssetKind.VIDEO: 7 * 24 * 60 * 60,
    AssetKind.AUDIO: 30 * 24 * 60 * 60,
    AssetKind.THUMBNAIL: 30 * 24 * 60 * 60,
    AssetKind.HLS: 60 * 60,
}
EDGE_TTL = 24 * 60 * 60

BANDWIDTH_HISTORY_SIZE = 10
BANDWIDTH_WEIGHT_BASE = 1.2

# Downlink (Mbps) lower bounds, fastest first
CONNECTION_THRESHOLDS = (
    (20.0, "5g"),
    (4.0, "4g"),
    (0.75, "3g"),
    (0.25, "2g"),
)
