"""Shared fakes for the ffmpeg toolchain, blob store and transcoding engine."""

import asyncio
import os
import wave
from array import array
from typing import Awaitable, Callable, Optional

import pytest

from mediaforge.core.storage import StorageResult
from mediaforge.modules.transcoding.engine import TranscodingEngine
from mediaforge.modules.transcoding.ffmpeg import EncodeFailedError, ProbeFailedError
from mediaforge.modules.transcoding.schemas import MediaMetadata, ProcessingOutput
from mediaforge.modules.transcoding.storage import FetchedInput


def video_metadata(width: int = 1920, height: int = 1080, duration: float = 60.0) -> MediaMetadata:
    return MediaMetadata(
        duration=duration,
        width=width,
        height=height,
        file_size=10_000_000,
        format="mov,mp4,m4a,3gp,3g2,mj2",
        bitrate=5_000_000,
        frame_rate=30.0,
        has_audio=True,
        has_video=True,
        audio_codec="aac",
        video_codec="h264",
        sample_rate=48000,
        channels=2,
    )


def audio_metadata(duration: float = 180.0) -> MediaMetadata:
    return MediaMetadata(
        duration=duration,
        file_size=4_000_000,
        format="mp3",
        bitrate=192_000,
        has_audio=True,
        audio_codec="mp3",
        sample_rate=44100,
        channels=2,
    )


class FakeProber:
    """Returns canned metadata; raises ProbeFailedError when ``fail`` is set."""

    def __init__(self, metadata: Optional[MediaMetadata] = None):
        self.metadata = metadata or video_metadata()
        self.fail = False
        self.calls: list[str] = []

    async def probe(self, input_path: str) -> MediaMetadata:
        self.calls.append(input_path)
        if self.fail:
            raise ProbeFailedError(f"Input has no audio or video stream: {input_path}")
        return self.metadata


class FakeRunner:
    """Writes a small file to the output path instead of encoding.

    ``fail_when`` receives the argument list and decides whether the run fails.
    HLS runs write a playlist and two segments; PCM runs write ``pcm_samples``
    as a mono 16-bit WAV.
    """

    def __init__(self):
        self.calls: list[list[str]] = []
        self.fail_when: Callable[[list[str]], bool] = lambda args: False
        self.delay = 0.0
        self.pcm_samples: list[int] = [0, 16384, -32768, 8192] * 600

    async def run(self, args):
        args = list(args)
        self.calls.append(args)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_when(args):
            raise EncodeFailedError("ffmpeg exited with code 1: boom", stderr="boom")

        output = args[-1]
        if "-hls_segment_filename" in args:
            segment_pattern = args[args.index("-hls_segment_filename") + 1]
            for index in range(2):
                with open(segment_pattern % index, "wb") as f:
                    f.write(b"\x47" * 188)
            with open(output, "w") as f:
                f.write("#EXTM3U\n")
            return

        if "pcm_s16le" in args:
            with wave.open(output, "wb") as wav:
                wav.setnchannels(1)
                wav.setsampwidth(2)
                wav.setframerate(8000)
                wav.writeframes(array("h", self.pcm_samples).tobytes())
            return

        with open(output, "wb") as f:
            f.write(b"data")


class FakeUploader:
    """Records uploads and answers with CDN URLs."""

    def __init__(self):
        self.uploads: list[tuple[str, str]] = []

    async def upload(self, file_path: str, key: str, content_type: str) -> StorageResult:
        self.uploads.append((key, content_type))
        return StorageResult(
            success=True,
            key=key,
            url=f"https://cdn.test/{key}",
            file_size=os.path.getsize(file_path),
        )


class FakeFetcher:
    """Uses every URL in place as a local path."""

    def __init__(self):
        self.fetched: list[str] = []

    async def fetch(self, url: str) -> FetchedInput:
        self.fetched.append(url)
        return FetchedInput(path=url)


ProcessFn = Callable[..., Awaitable[list[ProcessingOutput]]]


class FakeEngine:
    """Engine double for scheduler tests.

    ``process`` is awaited as ``process(job, on_progress)`` and defaults to a
    job that reports full progress and returns a single 720p output.
    """

    def __init__(self, temp_dir: str, metadata: Optional[MediaMetadata] = None):
        self.temp_dir = temp_dir
        self.fetcher = FakeFetcher()
        self.metadata = metadata or video_metadata()
        self.probe_error: Optional[Exception] = None
        self.process: ProcessFn = self._succeed
        self.processed: list[str] = []
        self.cleanups = 0

    async def extract_metadata(self, input_path: str) -> MediaMetadata:
        if self.probe_error is not None:
            raise self.probe_error
        return self.metadata

    async def process_job(self, job, on_progress, input_path=None) -> list[ProcessingOutput]:
        self.processed.append(job.id)
        return await self.process(job, on_progress)

    async def cleanup(self, max_age_hours: float = 24) -> int:
        self.cleanups += 1
        return 0

    @staticmethod
    async def _succeed(job, on_progress) -> list[ProcessingOutput]:
        await on_progress(50, "Transcoding")
        await on_progress(100, "Video processing completed")
        return [
            ProcessingOutput(
                quality="720p",
                format="mp4",
                url=f"https://cdn.test/{job.id}-720p.mp4",
                key=f"{job.id}-720p.mp4",
                file_size=4,
            )
        ]


@pytest.fixture
def input_file(tmp_path) -> str:
    path = tmp_path / "input.mp4"
    path.write_bytes(b"not really a video")
    return str(path)


@pytest.fixture
def prober() -> FakeProber:
    return FakeProber()


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def uploader() -> FakeUploader:
    return FakeUploader()


@pytest.fixture
def engine(tmp_path, prober, runner, uploader) -> TranscodingEngine:
    return TranscodingEngine(
        prober=prober,
        runner=runner,
        uploader=uploader,
        fetcher=FakeFetcher(),
        temp_dir=str(tmp_path / "work"),
    )


@pytest.fixture
def fake_engine(tmp_path) -> FakeEngine:
    return FakeEngine(str(tmp_path / "work"))


@pytest.fixture
def make_video_metadata() -> Callable[..., MediaMetadata]:
    return video_metadata


@pytest.fixture
def make_audio_metadata() -> Callable[..., MediaMetadata]:
    return audio_metadata
