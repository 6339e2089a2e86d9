"""Transcoding engine.

Produces the renditions, images and playlists of a job with ffmpeg and
uploads each of them to blob storage. Failures of a single output are logged
and skipped; a job only fails when none of its quality renditions survive.
"""

import asyncio
import json
import logging
import os
import shutil
import sys
import uuid
import wave
from array import array
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional, Sequence

from mediaforge.core.logging import log_error, log_warning
from mediaforge.core.metrics import RENDITION_FAILURES_TOTAL
from mediaforge.core.storage import remove_stale_files
from mediaforge.modules.transcoding.ffmpeg import (
    EncodeFailedError,
    FFmpegRunner,
    MetadataProber,
    TranscodingError,
    build_animated_preview_args,
    build_audio_args,
    build_hls_args,
    build_preview_args,
    build_sprite_args,
    build_thumbnail_args,
    build_video_args,
    build_waveform_args,
    build_waveform_pcm_args,
)
from mediaforge.modules.transcoding.models import (
    ANIMATED_PREVIEW_DURATION_SECONDS,
    ANIMATED_PREVIEW_HEIGHT,
    ANIMATED_PREVIEW_WIDTH,
    AUDIO_PRESETS,
    CONTENT_TYPES,
    DEFAULT_THUMBNAIL_COUNT,
    FALLBACK_VIDEO_PRESET,
    HLS_PLAYLIST_NAME,
    HLS_SEGMENT_PATTERN,
    PREVIEW_DURATION_SECONDS,
    PREVIEW_HEIGHT,
    PREVIEW_START_SECONDS,
    PREVIEW_WIDTH,
    SPRITE_COLUMNS,
    SPRITE_ROWS,
    SPRITE_TILE_HEIGHT,
    SPRITE_TILE_WIDTH,
    THUMBNAIL_HEIGHT,
    THUMBNAIL_WIDTH,
    VIDEO_PRESETS,
    WAVEFORM_HEIGHT,
    WAVEFORM_PEAK_SAMPLE_RATE,
    WAVEFORM_WIDTH,
    WAVEFORM_ZOOM_LEVELS,
    OutputFormat,
    VideoPreset,
)
from mediaforge.modules.transcoding.schemas import (
    MediaMetadata,
    ProcessingOptions,
    ProcessingOutput,
)
from mediaforge.modules.transcoding.storage import (
    FetchedInput,
    InputFetcher,
    OutputUploader,
    generate_output_prefix,
)

if TYPE_CHECKING:
    from mediaforge.modules.job.schemas import ProcessingJob

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float, str], Awaitable[None]]
RenditionCallback = Callable[[int, int, str], Awaitable[None]]


def parse_bitrate(value: str) -> int:
    """Convert an ffmpeg bitrate like ``3000k`` to bits per second."""
    value = value.strip().lower()
    multipliers = {"k": 1_000, "m": 1_000_000}
    if value and value[-1] in multipliers:
        return int(float(value[:-1]) * multipliers[value[-1]])
    return int(float(value))


def thumbnail_timestamps(duration: float, count: int) -> list[float]:
    """Evenly spaced timestamps that avoid the very first and last frame."""
    interval = duration / (count + 1)
    return [interval * i for i in range(1, count + 1)]


def preview_window(duration: float) -> tuple[float, float]:
    """Start offset and length of the preview clip for an input duration."""
    start = PREVIEW_START_SECONDS if duration > PREVIEW_START_SECONDS else 0.0
    if duration <= 0:
        return start, PREVIEW_DURATION_SECONDS
    return start, min(PREVIEW_DURATION_SECONDS, duration - start)


def animated_preview_start(duration: float, thumbnail_count: int) -> float:
    """First thumbnail position, pulled back so the loop fits in the input."""
    start = thumbnail_timestamps(duration, thumbnail_count)[0] if duration > 0 else 0.0
    if start + ANIMATED_PREVIEW_DURATION_SECONDS > duration:
        start = max(0.0, duration - ANIMATED_PREVIEW_DURATION_SECONDS)
    return start


def read_pcm_samples(path: str) -> array:
    """Signed 16-bit samples of a mono PCM WAV file."""
    try:
        with wave.open(path, "rb") as wav:
            if wav.getsampwidth() != 2:
                raise EncodeFailedError(f"Expected 16-bit PCM, got {wav.getsampwidth() * 8}-bit")
            frames = wav.readframes(wav.getnframes())
    except (wave.Error, EOFError) as e:
        raise EncodeFailedError(f"ffmpeg produced unreadable waveform audio: {e}") from e

    samples = array("h", frames)
    if sys.byteorder == "big":
        samples.byteswap()
    return samples


def extract_peaks(samples: Sequence[int], width: int = WAVEFORM_WIDTH) -> list[float]:
    """Reduce samples to at most ``width`` peaks in [0, 1]."""
    if not samples:
        return []
    per_peak = max(1, len(samples) // width)
    peaks = []
    for index in range(min(width, len(samples))):
        chunk = samples[index * per_peak:(index + 1) * per_peak]
        peak = max((abs(s) for s in chunk), default=0) / 32768
        peaks.append(round(min(peak, 1.0), 4))
    return peaks


def decimate_peaks(peaks: Sequence[float], factor: int) -> list[float]:
    """Keep the maximum of every ``factor`` consecutive peaks."""
    return [max(peaks[i:i + factor]) for i in range(0, len(peaks), factor)]


def build_waveform_document(peaks: list[float], duration: float) -> dict[str, Any]:
    return {
        "peaks": peaks,
        "length": len(peaks),
        "sample_rate": WAVEFORM_PEAK_SAMPLE_RATE,
        "channels": 1,
        "duration": duration,
        "width": WAVEFORM_WIDTH,
        "height": WAVEFORM_HEIGHT,
        "zoom_levels": {
            str(factor): peaks if factor == 1 else decimate_peaks(peaks, factor)
            for factor in WAVEFORM_ZOOM_LEVELS
        },
    }


class TranscodingEngine:
    """Turns one input file into delivery-ready outputs."""

    def __init__(
        self,
        prober: MetadataProber,
        runner: FFmpegRunner,
        uploader: OutputUploader,
        fetcher: InputFetcher,
        temp_dir: str,
    ):
        self.prober = prober
        self.runner = runner
        self.uploader = uploader
        self.fetcher = fetcher
        self.temp_dir = temp_dir
        self.output_dir = os.path.join(temp_dir, "output")

    def _temp_output(self, extension: str) -> str:
        os.makedirs(self.output_dir, exist_ok=True)
        return os.path.join(self.output_dir, f"{uuid.uuid4().hex}.{extension}")

    async def _encode_and_upload(
        self,
        args_for: Callable[[str], list[str]],
        extension: str,
        key: str,
    ):
        """Encode into a temp file, upload it under ``key`` and remove the file."""
        output_path = self._temp_output(extension)
        try:
            await self.runner.run(args_for(output_path))
            return await self.uploader.upload(output_path, key, CONTENT_TYPES[extension])
        finally:
            if os.path.exists(output_path):
                os.unlink(output_path)

    async def extract_metadata(self, input_path: str) -> MediaMetadata:
        return await self.prober.probe(input_path)

    def select_qualities(
        self,
        metadata: MediaMetadata,
        requested: Optional[list[str]] = None,
    ) -> list[VideoPreset]:
        """Pick the video presets to render.

        Presets taller than the input are never selected. When nothing is
        left, 360p is rendered so every video gets at least one rendition.
        """
        selected = [p for p in VIDEO_PRESETS if p.height <= metadata.height]
        if requested:
            selected = [p for p in selected if p.name in requested]
        if not selected:
            selected = [FALLBACK_VIDEO_PRESET]
        return selected

    async def process_video(
        self,
        input_path: str,
        output_prefix: str,
        options: ProcessingOptions,
        metadata: Optional[MediaMetadata] = None,
        on_rendition: Optional[RenditionCallback] = None,
    ) -> list[ProcessingOutput]:
        """Render every selected quality and, optionally, an HLS rendition.

        Args:
            input_path: Local input file
            output_prefix: Storage key prefix for the outputs
            options: Processing options of the job
            metadata: Probed metadata (probed here when omitted)
            on_rendition: Awaited with (done, total, quality) after each attempt

        Returns:
            Outputs in preset order, followed by the HLS output

        Raises:
            EncodeFailedError: If every quality rendition failed
        """
        if metadata is None:
            metadata = await self.extract_metadata(input_path)

        qualities = self.select_qualities(metadata, options.transcode_qualities)
        outputs: list[ProcessingOutput] = []
        last_error: Optional[TranscodingError] = None

        for done, preset in enumerate(qualities, start=1):
            key = f"{output_prefix}-{preset.name}.mp4"
            try:
                result = await self._encode_and_upload(
                    lambda path, p=preset: build_video_args(input_path, path, p, options),
                    "mp4",
                    key,
                )
                outputs.append(ProcessingOutput(
                    quality=preset.name,
                    format=OutputFormat.MP4.value,
                    url=result.url,
                    key=key,
                    file_size=result.file_size,
                    duration=metadata.duration,
                    width=preset.width,
                    height=preset.height,
                    bitrate=parse_bitrate(preset.video_bitrate),
                ))
            except TranscodingError as e:
                last_error = e
                RENDITION_FAILURES_TOTAL.labels(kind="video").inc()
                log_error(logger, f"Failed to process video quality {preset.name}", e, quality=preset.name)

            if on_rendition is not None:
                await on_rendition(done, len(qualities), preset.name)

        if not outputs:
            message = str(last_error) if last_error else "no quality could be rendered"
            raise EncodeFailedError(f"All video renditions failed: {message}")

        if options.generate_hls:
            try:
                outputs.append(await self.generate_hls(input_path, output_prefix, metadata))
            except TranscodingError as e:
                RENDITION_FAILURES_TOTAL.labels(kind="hls").inc()
                log_error(logger, "Failed to generate HLS rendition", e)

        return outputs

    async def generate_hls(
        self,
        input_path: str,
        output_prefix: str,
        metadata: Optional[MediaMetadata] = None,
    ) -> ProcessingOutput:
        """Segment the input and upload the playlist with all segments."""
        work_dir = os.path.join(self.output_dir, f"hls-{uuid.uuid4().hex}")
        os.makedirs(work_dir, exist_ok=True)
        playlist_key = f"{output_prefix}-hls/{HLS_PLAYLIST_NAME}"

        try:
            await self.runner.run(build_hls_args(
                input_path,
                os.path.join(work_dir, HLS_PLAYLIST_NAME),
                os.path.join(work_dir, HLS_SEGMENT_PATTERN),
            ))

            playlist_url = ""
            total_size = 0
            for name in sorted(os.listdir(work_dir)):
                extension = name.rsplit(".", 1)[-1]
                result = await self.uploader.upload(
                    os.path.join(work_dir, name),
                    f"{output_prefix}-hls/{name}",
                    CONTENT_TYPES.get(extension, "application/octet-stream"),
                )
                total_size += result.file_size
                if name == HLS_PLAYLIST_NAME:
                    playlist_url = result.url

            if not playlist_url:
                raise EncodeFailedError("ffmpeg produced no HLS playlist")

            return ProcessingOutput(
                quality="hls",
                format=OutputFormat.HLS.value,
                url=playlist_url,
                key=playlist_key,
                file_size=total_size,
                duration=metadata.duration if metadata else None,
            )
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)

    async def process_audio(
        self,
        input_path: str,
        output_prefix: str,
        options: ProcessingOptions,
        metadata: Optional[MediaMetadata] = None,
    ) -> list[ProcessingOutput]:
        """Render one mp3 per audio preset plus optional waveform image and peaks.

        Raises:
            EncodeFailedError: If every audio rendition failed
        """
        if metadata is None:
            metadata = await self.extract_metadata(input_path)

        outputs: list[ProcessingOutput] = []
        last_error: Optional[TranscodingError] = None

        for preset in AUDIO_PRESETS:
            key = f"{output_prefix}-{preset.name}.mp3"
            try:
                result = await self._encode_and_upload(
                    lambda path, p=preset: build_audio_args(
                        input_path, path, p, options.audio_normalization
                    ),
                    "mp3",
                    key,
                )
                outputs.append(ProcessingOutput(
                    quality=preset.name,
                    format=OutputFormat.MP3.value,
                    url=result.url,
                    key=key,
                    file_size=result.file_size,
                    duration=metadata.duration,
                    bitrate=parse_bitrate(preset.bitrate),
                ))
            except TranscodingError as e:
                last_error = e
                RENDITION_FAILURES_TOTAL.labels(kind="audio").inc()
                log_error(logger, f"Failed to process audio quality {preset.name}", e, quality=preset.name)

        if not outputs:
            message = str(last_error) if last_error else "no quality could be rendered"
            raise EncodeFailedError(f"All audio renditions failed: {message}")

        if options.generate_preview:
            try:
                outputs.append(await self.generate_waveform(input_path, output_prefix))
            except TranscodingError as e:
                RENDITION_FAILURES_TOTAL.labels(kind="waveform").inc()
                log_error(logger, "Failed to generate waveform", e)

        if options.generate_waveform_data:
            try:
                outputs.append(await self.generate_waveform_data(input_path, output_prefix, metadata))
            except TranscodingError as e:
                RENDITION_FAILURES_TOTAL.labels(kind="waveform_data").inc()
                log_error(logger, "Failed to extract waveform peaks", e)

        return outputs

    async def generate_waveform(self, input_path: str, output_prefix: str) -> ProcessingOutput:
        key = f"{output_prefix}-waveform.png"
        result = await self._encode_and_upload(
            lambda path: build_waveform_args(input_path, path),
            "png",
            key,
        )
        return ProcessingOutput(
            quality="waveform",
            format=OutputFormat.PNG.value,
            url=result.url,
            key=key,
            file_size=result.file_size,
            width=WAVEFORM_WIDTH,
            height=WAVEFORM_HEIGHT,
        )

    async def generate_waveform_data(
        self,
        input_path: str,
        output_prefix: str,
        metadata: Optional[MediaMetadata] = None,
    ) -> ProcessingOutput:
        """Upload waveform peaks, with pre-decimated zoom levels, as JSON."""
        if metadata is None:
            metadata = await self.extract_metadata(input_path)

        pcm_path = self._temp_output("wav")
        document_path = self._temp_output("json")
        key = f"{output_prefix}-waveform.json"
        try:
            await self.runner.run(build_waveform_pcm_args(input_path, pcm_path))
            samples = await asyncio.to_thread(read_pcm_samples, pcm_path)
            document = build_waveform_document(extract_peaks(samples), metadata.duration)
            with open(document_path, "w") as f:
                json.dump(document, f, separators=(",", ":"))
            result = await self.uploader.upload(document_path, key, CONTENT_TYPES["json"])
        finally:
            for path in (pcm_path, document_path):
                if os.path.exists(path):
                    os.unlink(path)

        return ProcessingOutput(
            quality="waveform-data",
            format=OutputFormat.JSON.value,
            url=result.url,
            key=key,
            file_size=result.file_size,
            duration=metadata.duration,
            width=WAVEFORM_WIDTH,
            height=WAVEFORM_HEIGHT,
        )

    async def generate_thumbnails(
        self,
        input_path: str,
        output_prefix: str,
        count: int = DEFAULT_THUMBNAIL_COUNT,
        metadata: Optional[MediaMetadata] = None,
    ) -> list[ProcessingOutput]:
        """Extract ``count`` evenly spaced frames; failed frames are skipped."""
        if metadata is None:
            metadata = await self.extract_metadata(input_path)

        outputs: list[ProcessingOutput] = []
        for index, timestamp in enumerate(thumbnail_timestamps(metadata.duration, count), start=1):
            key = f"{output_prefix}-thumb-{index}.jpg"
            try:
                result = await self._encode_and_upload(
                    lambda path, ts=timestamp: build_thumbnail_args(input_path, path, ts),
                    "jpg",
                    key,
                )
            except TranscodingError as e:
                RENDITION_FAILURES_TOTAL.labels(kind="thumbnail").inc()
                log_error(logger, f"Failed to generate thumbnail {index}", e, timestamp=timestamp)
                continue

            outputs.append(ProcessingOutput(
                quality=f"thumbnail-{index}",
                format=OutputFormat.JPG.value,
                url=result.url,
                key=key,
                file_size=result.file_size,
                width=THUMBNAIL_WIDTH,
                height=THUMBNAIL_HEIGHT,
            ))
        return outputs

    async def generate_preview(
        self,
        input_path: str,
        output_prefix: str,
        metadata: Optional[MediaMetadata] = None,
    ) -> ProcessingOutput:
        if metadata is None:
            metadata = await self.extract_metadata(input_path)

        start, duration = preview_window(metadata.duration)
        key = f"{output_prefix}-preview.mp4"
        result = await self._encode_and_upload(
            lambda path: build_preview_args(input_path, path, start, duration),
            "mp4",
            key,
        )
        return ProcessingOutput(
            quality="preview",
            format=OutputFormat.MP4.value,
            url=result.url,
            key=key,
            file_size=result.file_size,
            duration=duration,
            width=PREVIEW_WIDTH,
            height=PREVIEW_HEIGHT,
        )

    async def generate_sprite(
        self,
        input_path: str,
        output_prefix: str,
        metadata: Optional[MediaMetadata] = None,
    ) -> ProcessingOutput:
        """Tile scaled-down frames into a single scrubbing sprite sheet."""
        if metadata is None:
            metadata = await self.extract_metadata(input_path)

        key = f"{output_prefix}-sprite.jpg"
        result = await self._encode_and_upload(
            lambda path: build_sprite_args(input_path, path, metadata.duration),
            "jpg",
            key,
        )
        return ProcessingOutput(
            quality="sprite",
            format=OutputFormat.JPG.value,
            url=result.url,
            key=key,
            file_size=result.file_size,
            width=SPRITE_COLUMNS * SPRITE_TILE_WIDTH,
            height=SPRITE_ROWS * SPRITE_TILE_HEIGHT,
        )

    async def generate_animated_preview(
        self,
        input_path: str,
        output_prefix: str,
        thumbnail_count: int = DEFAULT_THUMBNAIL_COUNT,
        metadata: Optional[MediaMetadata] = None,
    ) -> ProcessingOutput:
        if metadata is None:
            metadata = await self.extract_metadata(input_path)

        start = animated_preview_start(metadata.duration, thumbnail_count)
        length = ANIMATED_PREVIEW_DURATION_SECONDS
        if metadata.duration > 0:
            length = min(length, metadata.duration)
        key = f"{output_prefix}-preview.gif"
        result = await self._encode_and_upload(
            lambda path: build_animated_preview_args(input_path, path, start),
            "gif",
            key,
        )
        return ProcessingOutput(
            quality="animated-preview",
            format=OutputFormat.GIF.value,
            url=result.url,
            key=key,
            file_size=result.file_size,
            duration=length,
            width=ANIMATED_PREVIEW_WIDTH,
            height=ANIMATED_PREVIEW_HEIGHT,
        )

    async def process_job(
        self,
        job: "ProcessingJob",
        on_progress: ProgressCallback,
        input_path: Optional[str] = None,
    ) -> list[ProcessingOutput]:
        """Run a whole job and return its outputs.

        Args:
            job: The job to process
            on_progress: Awaited with (progress, current_step)
            input_path: Local copy of the input fetched at submission, if any

        Returns:
            All outputs produced for the job
        """
        if input_path and os.path.isfile(input_path):
            fetched = FetchedInput(path=input_path)
        else:
            fetched = await self.fetcher.fetch(job.original_file.url)

        output_prefix = generate_output_prefix(job.user_id, job.content_id, job.id)
        try:
            if job.type == "audio":
                return await self._process_audio_job(job, fetched.path, output_prefix, on_progress)
            return await self._process_video_job(job, fetched.path, output_prefix, on_progress)
        finally:
            fetched.cleanup()

    async def _process_video_job(
        self,
        job: "ProcessingJob",
        input_path: str,
        output_prefix: str,
        on_progress: ProgressCallback,
    ) -> list[ProcessingOutput]:
        options = job.options
        outputs: list[ProcessingOutput] = []

        await on_progress(10, "Processing video metadata")
        metadata = await self.extract_metadata(input_path)

        if options.generate_thumbnails:
            await on_progress(20, "Generating thumbnails")
            outputs.extend(await self.generate_thumbnails(
                input_path, output_prefix, options.thumbnail_count, metadata
            ))

        if options.generate_preview:
            await on_progress(30, "Creating preview clip")
            try:
                outputs.append(await self.generate_preview(input_path, output_prefix, metadata))
            except TranscodingError as e:
                RENDITION_FAILURES_TOTAL.labels(kind="preview").inc()
                log_error(logger, "Failed to generate preview clip", e)

        if options.generate_sprite:
            try:
                outputs.append(await self.generate_sprite(input_path, output_prefix, metadata))
            except TranscodingError as e:
                RENDITION_FAILURES_TOTAL.labels(kind="sprite").inc()
                log_error(logger, "Failed to generate sprite sheet", e)

        if options.generate_animated_preview:
            try:
                outputs.append(await self.generate_animated_preview(
                    input_path, output_prefix, options.thumbnail_count, metadata
                ))
            except TranscodingError as e:
                RENDITION_FAILURES_TOTAL.labels(kind="animated_preview").inc()
                log_error(logger, "Failed to generate animated preview", e)

        await on_progress(40, "Starting video transcoding")
        # Renditions fill 40..90, or 40..80 when 90 is kept for the HLS step
        span = 40 if options.generate_hls else 50

        async def on_rendition(done: int, total: int, quality: str) -> None:
            await on_progress(40 + done / total * span, f"Transcoded {quality} quality")
            if done == total and options.generate_hls:
                await on_progress(90, "Generating streaming playlist")

        outputs.extend(await self.process_video(
            input_path, output_prefix, options, metadata, on_rendition
        ))

        await on_progress(100, "Video processing completed")
        return outputs

    async def _process_audio_job(
        self,
        job: "ProcessingJob",
        input_path: str,
        output_prefix: str,
        on_progress: ProgressCallback,
    ) -> list[ProcessingOutput]:
        await on_progress(10, "Processing audio metadata")
        metadata = await self.extract_metadata(input_path)

        await on_progress(30, "Transcoding audio")
        outputs = await self.process_audio(input_path, output_prefix, job.options, metadata)

        await on_progress(100, "Audio processing completed")
        return outputs

    async def cleanup(self, max_age_hours: float = 24) -> int:
        """Remove temp files older than ``max_age_hours``. Never raises."""
        try:
            removed = await asyncio.to_thread(
                remove_stale_files, self.temp_dir, max_age_hours * 3600
            )
        except OSError as e:
            log_warning(logger, f"Temp file cleanup failed: {e}", temp_dir=self.temp_dir)
            return 0

        if removed:
            logger.info(f"Cleaned up {len(removed)} temp files", extra={"temp_dir": self.temp_dir})
        return len(removed)
