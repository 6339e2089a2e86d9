"""FFmpeg/ffprobe wrappers.

Every invocation is an asyncio subprocess in its own process group, so a
cancelled job (timeout, cancel, shutdown) can take down the encoder together
with anything it forked.
"""

import asyncio
import json
import logging
import math
import os
import signal
from typing import Any, Optional, Sequence

from mediaforge.modules.transcoding.models import (
    ANIMATED_PREVIEW_DURATION_SECONDS,
    ANIMATED_PREVIEW_FPS,
    ANIMATED_PREVIEW_HEIGHT,
    ANIMATED_PREVIEW_WIDTH,
    HLS_SEGMENT_SECONDS,
    PREVIEW_AUDIO_BITRATE,
    PREVIEW_HEIGHT,
    PREVIEW_VIDEO_BITRATE,
    PREVIEW_WIDTH,
    SPRITE_COLUMNS,
    SPRITE_ROWS,
    SPRITE_TILE_HEIGHT,
    SPRITE_TILE_WIDTH,
    THUMBNAIL_HEIGHT,
    THUMBNAIL_WIDTH,
    WAVEFORM_COLOR,
    WAVEFORM_HEIGHT,
    WAVEFORM_PEAK_SAMPLE_RATE,
    WAVEFORM_WIDTH,
    AudioPreset,
    VideoPreset,
    WatermarkPosition,
)
from mediaforge.modules.transcoding.schemas import MediaMetadata, ProcessingOptions, Watermark

logger = logging.getLogger(__name__)

STDERR_TAIL_CHARS = 2000


class TranscodingError(Exception):
    """Base exception for transcoding failures."""
    retryable = True

    def __init__(self, message: str, retryable: Optional[bool] = None):
        super().__init__(message)
        if retryable is not None:
            self.retryable = retryable


class ProbeFailedError(TranscodingError):
    """Input is missing, unreadable or holds no audio/video stream."""
    retryable = False


class EncodeFailedError(TranscodingError):
    """ffmpeg exited non-zero."""

    def __init__(self, message: str, stderr: str = ""):
        super().__init__(message)
        self.stderr = stderr


def parse_frame_rate(value: Optional[str]) -> float:
    """Parse an ffprobe rate such as ``30000/1001`` or ``25``.

    A zero denominator or an unparsable value yields 0.0.
    """
    if not value:
        return 0.0

    parts = value.split("/")
    try:
        if len(parts) == 2:
            numerator = float(parts[0])
            denominator = float(parts[1])
            rate = numerator / denominator if denominator > 0 else 0.0
        else:
            rate = float(value)
    except ValueError:
        return 0.0

    if not math.isfinite(rate) or rate < 0:
        return 0.0
    return rate


def _to_float(value: Any) -> float:
    try:
        result = float(value)
    except (TypeError, ValueError):
        return 0.0
    return result if math.isfinite(result) and result > 0 else 0.0


def _to_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _stderr_tail(stderr: Optional[bytes]) -> str:
    if not stderr:
        return ""
    text = stderr.decode("utf-8", errors="replace").strip()
    return text[-STDERR_TAIL_CHARS:]


def _signal_group(process: asyncio.subprocess.Process, sig: int) -> None:
    try:
        os.killpg(process.pid, sig)
    except ProcessLookupError:
        pass


async def terminate_process_group(
    process: asyncio.subprocess.Process,
    grace_seconds: float,
) -> None:
    """SIGTERM the process group, SIGKILL it after the grace period, await exit."""
    if process.returncode is not None:
        return

    _signal_group(process, signal.SIGTERM)
    try:
        await asyncio.wait_for(process.wait(), grace_seconds)
    except asyncio.TimeoutError:
        logger.warning(
            "Process did not exit after SIGTERM, killing",
            extra={"pid": process.pid, "grace_seconds": grace_seconds},
        )
        _signal_group(process, signal.SIGKILL)
        await process.wait()


async def _run_process(
    cmd: Sequence[str],
    grace_seconds: float,
    capture_stdout: bool = False,
) -> tuple[int, bytes, bytes]:
    """Run a command in a new session; on cancellation kill it and re-raise."""
    process = await asyncio.create_subprocess_exec(
        *cmd,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE if capture_stdout else asyncio.subprocess.DEVNULL,
        stderr=asyncio.subprocess.PIPE,
        start_new_session=True,
    )
    try:
        stdout, stderr = await process.communicate()
    except asyncio.CancelledError:
        await terminate_process_group(process, grace_seconds)
        raise
    return process.returncode, stdout or b"", stderr or b""


class MetadataProber:
    """Extracts container and stream metadata with ffprobe."""

    def __init__(self, ffprobe_path: str = "ffprobe", kill_grace_seconds: float = 5.0):
        self.ffprobe_path = ffprobe_path
        self.kill_grace_seconds = kill_grace_seconds

    def build_command(self, input_path: str) -> list[str]:
        return [
            self.ffprobe_path,
            "-v", "quiet",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            input_path,
        ]

    async def probe(self, input_path: str) -> MediaMetadata:
        """Probe a local media file.

        Args:
            input_path: Path to the media file

        Returns:
            MediaMetadata for the file

        Raises:
            ProbeFailedError: If the file is missing, ffprobe fails, its output
                is not JSON, or the file has neither audio nor video
        """
        if not os.path.isfile(input_path):
            raise ProbeFailedError(f"Input file not found: {input_path}")

        try:
            returncode, stdout, stderr = await _run_process(
                self.build_command(input_path),
                self.kill_grace_seconds,
                capture_stdout=True,
            )
        except OSError as e:
            raise ProbeFailedError(f"Could not run ffprobe: {e}") from e

        if returncode != 0:
            raise ProbeFailedError(
                f"ffprobe exited with code {returncode}: {_stderr_tail(stderr) or 'no output'}"
            )

        try:
            info = json.loads(stdout)
        except json.JSONDecodeError as e:
            raise ProbeFailedError(f"ffprobe returned invalid JSON: {e}") from e

        return self.parse_probe_output(info, fallback_size=os.path.getsize(input_path))

    @staticmethod
    def parse_probe_output(info: dict, fallback_size: int = 0) -> MediaMetadata:
        """Build MediaMetadata from ffprobe's JSON document."""
        if not isinstance(info, dict):
            raise ProbeFailedError("ffprobe output is not an object")

        streams = info.get("streams") or []
        fmt = info.get("format") or {}

        video = next((s for s in streams if s.get("codec_type") == "video"), None)
        audio = next((s for s in streams if s.get("codec_type") == "audio"), None)

        if video is None and audio is None:
            raise ProbeFailedError("Input has no audio or video stream")

        file_size = _to_int(fmt.get("size"))

        return MediaMetadata(
            duration=_to_float(fmt.get("duration")),
            width=max(_to_int(video.get("width")) or 0, 0) if video else 0,
            height=max(_to_int(video.get("height")) or 0, 0) if video else 0,
            file_size=file_size if file_size and file_size > 0 else fallback_size,
            format=fmt.get("format_name") or "",
            bitrate=max(_to_int(fmt.get("bit_rate")) or 0, 0),
            frame_rate=parse_frame_rate(video.get("r_frame_rate")) if video else 0.0,
            has_audio=audio is not None,
            has_video=video is not None,
            audio_codec=audio.get("codec_name") if audio else None,
            video_codec=video.get("codec_name") if video else None,
            sample_rate=_to_int(audio.get("sample_rate")) if audio else None,
            channels=_to_int(audio.get("channels")) if audio else None,
        )


class FFmpegRunner:
    """Runs ffmpeg and turns a non-zero exit into EncodeFailedError."""

    def __init__(self, ffmpeg_path: str = "ffmpeg", kill_grace_seconds: float = 5.0):
        self.ffmpeg_path = ffmpeg_path
        self.kill_grace_seconds = kill_grace_seconds

    async def run(self, args: Sequence[str]) -> None:
        """Run ``ffmpeg -y <args>`` to completion.

        Cancelling the awaiting task terminates the encoder's process group
        and waits for it to exit before CancelledError propagates.
        """
        cmd = [self.ffmpeg_path, "-y", *args]
        logger.debug("Running ffmpeg", extra={"command": cmd})

        try:
            returncode, _, stderr = await _run_process(cmd, self.kill_grace_seconds)
        except OSError as e:
            raise EncodeFailedError(f"Could not start ffmpeg: {e}") from e

        if returncode != 0:
            tail = _stderr_tail(stderr)
            raise EncodeFailedError(
                f"ffmpeg exited with code {returncode}: {tail or 'no output'}",
                stderr=tail,
            )


# ============================================
# Command builders
# ============================================

WATERMARK_COORDINATES = {
    WatermarkPosition.TOP_LEFT: ("10", "10"),
    WatermarkPosition.TOP_RIGHT: ("w-tw-10", "10"),
    WatermarkPosition.BOTTOM_LEFT: ("10", "h-th-10"),
    WatermarkPosition.BOTTOM_RIGHT: ("w-tw-10", "h-th-10"),
    WatermarkPosition.CENTER: ("(w-tw)/2", "(h-th)/2"),
}


def escape_drawtext(text: str) -> str:
    """Escape text for a drawtext option inside a filter graph."""
    # Option level
    value = text.replace("\\", "\\\\").replace("'", "\\'").replace(":", "\\:")
    # Filter graph level
    for ch in ("\\", "'", "[", "]", ",", ";"):
        value = value.replace(ch, "\\" + ch)
    return value


def build_drawtext_filter(watermark: Watermark) -> str:
    x, y = WATERMARK_COORDINATES[WatermarkPosition(watermark.position)]
    return (
        f"drawtext=text={escape_drawtext(watermark.text)}"
        f":fontcolor=white:fontsize=24:x={x}:y={y}:expansion=none"
    )


def scale_and_pad(width: int, height: int) -> str:
    """Fit into WxH preserving aspect ratio, letterboxing the rest."""
    return (
        f"scale={width}:{height}:force_original_aspect_ratio=decrease,"
        f"pad={width}:{height}:(ow-iw)/2:(oh-ih)/2"
    )


def build_video_args(
    input_path: str,
    output_path: str,
    preset: VideoPreset,
    options: ProcessingOptions,
) -> list[str]:
    """Build ffmpeg arguments for one H.264/AAC rendition."""
    video_filter = scale_and_pad(preset.width, preset.height)
    if options.watermark:
        video_filter = f"{video_filter},{build_drawtext_filter(options.watermark)}"

    args = [
        "-i", input_path,
        "-c:v", "libx264",
        "-c:a", "aac",
        "-b:v", preset.video_bitrate,
        "-b:a", preset.audio_bitrate,
        "-vf", video_filter,
        "-preset", "fast",
        "-crf", "23",
        "-movflags", "+faststart",
        "-pix_fmt", "yuv420p",
        "-g", "50",
        "-sc_threshold", "0",
        "-force_key_frames", "expr:gte(t,n_forced*2)",
    ]
    if options.audio_normalization:
        args.extend(["-af", "loudnorm"])
    args.append(output_path)
    return args


def build_audio_args(
    input_path: str,
    output_path: str,
    preset: AudioPreset,
    normalize: bool = True,
) -> list[str]:
    args = [
        "-i", input_path,
        "-vn",
        "-c:a", "libmp3lame",
        "-b:a", preset.bitrate,
        "-ar", str(preset.sample_rate),
    ]
    if normalize:
        args.extend(["-af", "loudnorm"])
    args.append(output_path)
    return args


def build_thumbnail_args(input_path: str, output_path: str, timestamp: float) -> list[str]:
    return [
        "-ss", f"{timestamp:.3f}",
        "-i", input_path,
        "-frames:v", "1",
        "-vf", scale_and_pad(THUMBNAIL_WIDTH, THUMBNAIL_HEIGHT),
        "-q:v", "2",
        output_path,
    ]


def build_preview_args(
    input_path: str,
    output_path: str,
    start: float,
    duration: float,
) -> list[str]:
    return [
        "-ss", f"{start:.3f}",
        "-i", input_path,
        "-t", f"{duration:.3f}",
        "-c:v", "libx264",
        "-c:a", "aac",
        "-b:v", PREVIEW_VIDEO_BITRATE,
        "-b:a", PREVIEW_AUDIO_BITRATE,
        "-vf", scale_and_pad(PREVIEW_WIDTH, PREVIEW_HEIGHT),
        "-movflags", "+faststart",
        output_path,
    ]


def build_hls_args(input_path: str, playlist_path: str, segment_path: str) -> list[str]:
    return [
        "-i", input_path,
        "-c:v", "libx264",
        "-c:a", "aac",
        "-preset", "fast",
        "-hls_time", str(HLS_SEGMENT_SECONDS),
        "-hls_playlist_type", "vod",
        "-hls_flags", "temp_file",
        "-hls_segment_filename", segment_path,
        "-f", "hls",
        playlist_path,
    ]


def build_sprite_args(input_path: str, output_path: str, duration: float) -> list[str]:
    """One pass: sample frames evenly, shrink, and tile them into one image."""
    tiles = SPRITE_COLUMNS * SPRITE_ROWS
    fps = tiles / duration if duration > 0 else 0.1
    return [
        "-i", input_path,
        "-vf", (
            f"fps={fps:.6f},"
            f"scale={SPRITE_TILE_WIDTH}:{SPRITE_TILE_HEIGHT},"
            f"tile={SPRITE_COLUMNS}x{SPRITE_ROWS}"
        ),
        "-frames:v", "1",
        "-q:v", "3",
        output_path,
    ]


def build_waveform_args(input_path: str, output_path: str) -> list[str]:
    return [
        "-i", input_path,
        "-filter_complex",
        f"showwavespic=s={WAVEFORM_WIDTH}x{WAVEFORM_HEIGHT}:colors={WAVEFORM_COLOR}",
        "-frames:v", "1",
        output_path,
    ]


def build_animated_preview_args(input_path: str, output_path: str, start: float) -> list[str]:
    """Short GIF loop; the palette is generated and applied in the same pass."""
    return [
        "-ss", f"{start:.3f}",
        "-t", f"{ANIMATED_PREVIEW_DURATION_SECONDS:.3f}",
        "-i", input_path,
        "-filter_complex", (
            f"fps={ANIMATED_PREVIEW_FPS},"
            f"scale={ANIMATED_PREVIEW_WIDTH}:{ANIMATED_PREVIEW_HEIGHT}:flags=lanczos,"
            "split[frames][copy];"
            "[copy]palettegen=reserve_transparent=0[palette];"
            "[frames][palette]paletteuse"
        ),
        "-loop", "0",
        output_path,
    ]


def build_waveform_pcm_args(input_path: str, output_path: str) -> list[str]:
    """Decode the first audio stream to mono 16-bit WAV for peak extraction."""
    return [
        "-i", input_path,
        "-vn",
        "-map", "0:a:0",
        "-ac", "1",
        "-ar", str(WAVEFORM_PEAK_SAMPLE_RATE),
        "-c:a", "pcm_s16le",
        "-f", "wav",
        output_path,
    ]
