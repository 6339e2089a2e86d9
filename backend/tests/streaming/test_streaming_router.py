"""API tests for the streaming endpoints."""

import asyncio

import httpx
import pytest
import pytest_asyncio

from mediaforge.main import create_app
from mediaforge.modules.job.models import JobStatus
from mediaforge.modules.job.repository import InMemoryJobStore
from mediaforge.modules.job.service import QueueConfig, TranscodingPipeline
from mediaforge.modules.streaming.service import StreamingOptimizer
from mediaforge.modules.transcoding.schemas import ProcessingOutput

PREFIX = "/api/v1/streaming"


@pytest.fixture
def renditions(fake_engine):
    """Jobs produce a 720p and a 480p MP4 plus an HLS playlist."""

    async def process(job, on_progress):
        await on_progress(100, "done")
        return [
            ProcessingOutput(quality=quality, format=fmt, url=f"https://storage.local/{job.id}/{name}", key=name)
            for quality, fmt, name in (
                ("720p", "mp4", "720p.mp4"),
                ("480p", "mp4", "480p.mp4"),
                ("hls", "hls", "hls/master.m3u8"),
            )
        ]

    fake_engine.process = process


@pytest_asyncio.fixture
async def pipeline(fake_engine, renditions):
    pipeline = TranscodingPipeline(
        engine=fake_engine,
        store=InMemoryJobStore(),
        config=QueueConfig(cleanup_interval_seconds=0, shutdown_grace_seconds=0.05),
    )
    await pipeline.start()
    yield pipeline
    await pipeline.shutdown()


@pytest_asyncio.fixture
async def client(pipeline):
    optimizer = StreamingOptimizer("cdn.test")
    app = create_app(pipeline=pipeline, optimizer=optimizer)
    app.state.pipeline = pipeline
    app.state.streaming_optimizer = optimizer
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client


async def completed_job(pipeline: TranscodingPipeline, input_file: str) -> str:
    job_id = await pipeline.queue_video_job("content-1", "artist-1", input_file)
    for _ in range(200):
        job = await pipeline.get_job_status(job_id)
        if job.status == JobStatus.COMPLETED:
            return job_id
        await asyncio.sleep(0.01)
    raise AssertionError("job did not complete")


class TestManifestEndpoint:
    @pytest.mark.asyncio
    async def test_manifest_for_completed_job(self, client, pipeline, input_file) -> None:
        job_id = await completed_job(pipeline, input_file)

        response = await client.post(
            f"{PREFIX}/jobs/{job_id}/manifest",
            json={
                "tier": "premium",
                "delivery_options": {"device_info": {"type": "mobile"}},
            },
        )

        assert response.status_code == 200
        manifest = response.json()
        assert manifest["type"] == "hls"
        assert [q["quality"] for q in manifest["qualities"]] == ["720p", "480p"]
        assert manifest["qualities"][0]["url"] == f"https://cdn.test/{job_id}/720p.mp4?device=mobile"
        assert manifest["metadata"] == {
            "duration": 60.0,
            "content_type": "video",
            "artist_id": "artist-1",
            "content_id": "content-1",
            "tier": "premium",
            "is_live": False,
            "drm_protected": False,
            "geo_restrictions": None,
        }
        assert manifest["master_playlist"].startswith("#EXTM3U\n#EXT-X-VERSION:6\n")

    @pytest.mark.asyncio
    async def test_unknown_job(self, client) -> None:
        response = await client.post(f"{PREFIX}/jobs/nope/manifest", json={})
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_job_not_completed(self, client, pipeline, fake_engine, input_file) -> None:
        gate = asyncio.Event()

        async def process(job, on_progress):
            await gate.wait()
            return []

        fake_engine.process = process
        job_id = await pipeline.queue_video_job("content-1", "artist-1", input_file)

        response = await client.post(f"{PREFIX}/jobs/{job_id}/manifest", json={})

        assert response.status_code == 409
        assert response.json()["detail"] == "Job is processing, manifests need a completed job"
        gate.set()


class TestAdaptationEndpoints:
    def ladder(self) -> list[dict]:
        return [
            {"quality": "720p", "bandwidth": 3_000_000, "resolution": "1280x720", "url": "a", "codecs": "c"},
            {"quality": "360p", "bandwidth": 800_000, "resolution": "640x360", "url": "b", "codecs": "c"},
        ]

    @pytest.mark.asyncio
    async def test_recommend(self, client) -> None:
        response = await client.post(
            f"{PREFIX}/recommend",
            json={"qualities": self.ladder(), "bandwidth": {"downlink": 5.0}},
        )

        assert response.status_code == 200
        assert response.json()["quality"] == "720p"

    @pytest.mark.asyncio
    async def test_recommend_data_saver(self, client) -> None:
        response = await client.post(
            f"{PREFIX}/recommend",
            json={
                "qualities": self.ladder(),
                "bandwidth": {"downlink": 5.0, "type": "2g"},
                "device_info": {"type": "mobile"},
            },
        )

        assert response.json()["quality"] == "360p"

    @pytest.mark.asyncio
    async def test_recommend_requires_a_ladder(self, client) -> None:
        response = await client.post(
            f"{PREFIX}/recommend",
            json={"qualities": [], "bandwidth": {"downlink": 5.0}},
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_preloading(self, client) -> None:
        manifest = {
            "type": "progressive",
            "master_playlist": "{}",
            "qualities": self.ladder(),
            "metadata": {"duration": 60, "content_type": "video", "artist_id": "a", "content_id": "c"},
        }

        response = await client.post(
            f"{PREFIX}/preloading",
            json={"manifest": manifest, "delivery_options": {"connection_info": {"downlink": 0.2, "type": "2g"}}},
        )

        assert response.status_code == 200
        assert response.json()["max_concurrent"] == 1
        assert response.json()["chunk_size"] == 512 * 1024
