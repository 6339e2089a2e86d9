"""Rendition presets and toolchain constants for the transcoding engine."""

from dataclasses import dataclass
from enum import Enum


class WatermarkPosition(str, Enum):
    """Where a text watermark is drawn on the frame."""
    TOP_LEFT = "top-left"
    TOP_RIGHT = "top-right"
    BOTTOM_LEFT = "bottom-left"
    BOTTOM_RIGHT = "bottom-right"
    CENTER = "center"


class OutputFormat(str, Enum):
    """Container/format of a produced output."""
    MP4 = "mp4"
    MP3 = "mp3"
    JPG = "jpg"
    PNG = "png"
    GIF = "gif"
    JSON = "json"
    HLS = "hls"


@dataclass(frozen=True)
class VideoPreset:
    """Target size and bitrates for one video rendition."""
    name: str
    width: int
    height: int
    video_bitrate: str
    audio_bitrate: str


@dataclass(frozen=True)
class AudioPreset:
    """Bitrate and sample rate for one audio rendition."""
    name: str
    bitrate: str
    sample_rate: int


# Highest first; quality selection keeps this order.
VIDEO_PRESETS: tuple[VideoPreset, ...] = (
    VideoPreset("1080p", 1920, 1080, "5000k", "192k"),
    VideoPreset("720p", 1280, 720, "3000k", "128k"),
    VideoPreset("480p", 854, 480, "1500k", "128k"),
    VideoPreset("360p", 640, 360, "800k", "96k"),
)

VIDEO_PRESETS_BY_NAME = {preset.name: preset for preset in VIDEO_PRESETS}

FALLBACK_VIDEO_PRESET = VIDEO_PRESETS_BY_NAME["360p"]

AUDIO_PRESETS: tuple[AudioPreset, ...] = (
    AudioPreset("high", "320k", 48000),
    AudioPreset("medium", "192k", 44100),
    AudioPreset("low", "128k", 44100),
)

# Thumbnails
THUMBNAIL_WIDTH = 1280
THUMBNAIL_HEIGHT = 720
DEFAULT_THUMBNAIL_COUNT = 6
MAX_THUMBNAIL_COUNT = 20

# Preview clip
PREVIEW_START_SECONDS = 30.0
PREVIEW_DURATION_SECONDS = 30.0
PREVIEW_WIDTH = 854
PREVIEW_HEIGHT = 480
PREVIEW_VIDEO_BITRATE = "1000k"
PREVIEW_AUDIO_BITRATE = "96k"

# Animated GIF preview, cut from the first thumbnail position
ANIMATED_PREVIEW_DURATION_SECONDS = 3.0
ANIMATED_PREVIEW_FPS = 10
ANIMATED_PREVIEW_WIDTH = 480
ANIMATED_PREVIEW_HEIGHT = 270

# Segmented streaming
HLS_SEGMENT_SECONDS = 4
HLS_PLAYLIST_NAME = "playlist.m3u8"
HLS_SEGMENT_PATTERN = "segment%03d.ts"
HLS_PLAYLIST_CONTENT_TYPE = "application/vnd.apple.mpegurl"
HLS_SEGMENT_CONTENT_TYPE = "video/MP2T"

# Scrubbing sprite sheet
SPRITE_COLUMNS = 10
SPRITE_ROWS = 10
SPRITE_TILE_WIDTH = 160
SPRITE_TILE_HEIGHT = 90

# Audio waveform image
WAVEFORM_WIDTH = 1200
WAVEFORM_HEIGHT = 300
WAVEFORM_COLOR = "0x3b82f6"

# Waveform peak data: mono PCM resampled before peak picking
WAVEFORM_PEAK_SAMPLE_RATE = 8000
WAVEFORM_ZOOM_LEVELS = (1, 2, 4, 8)

# Outputs are content-addressed by job, so they can be cached for a year.
OUTPUT_CACHE_CONTROL = "max-age=31536000"

CONTENT_TYPES = {
    "mp4": "video/mp4",
    "mp3": "audio/mpeg",
    "jpg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "json": "application/json",
    "m3u8": HLS_PLAYLIST_CONTENT_TYPE,
    "ts": HLS_SEGMENT_CONTENT_TYPE,
}
