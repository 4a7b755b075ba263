import asyncio
import json
from pathlib import Path

import pytest

from conftest import FailingBackend, FakeMediaToolkit, FixtureFactory, build_engine, object_rows
from sentinel_vision.config import ProcessingConfig, PrometheusConfig
from sentinel_vision.errors import ProcessingError, ResourceNotFoundError, ValidationError
from sentinel_vision.media import VideoMetadata
from sentinel_vision.pipeline import (
    COMPLETED,
    FAILED,
    InMemoryJobStore,
    ProcessingJob,
    ProcessingOptions,
    VideoPipeline,
    estimate_processing_time,
)
from sentinel_vision.telemetry import MetricsPublisher

KNIFE_IN_EVERY_FRAME = object_rows(("knife", 0.8, 100, 100, 50, 50), ("person", 0.9, 10, 10, 40, 120))


def _pipeline(config: ProcessingConfig, media: FakeMediaToolkit, factory=None, **kwargs) -> VideoPipeline:
    factory = factory or FixtureFactory({"object_detection_v1": KNIFE_IN_EVERY_FRAME})
    return VideoPipeline(build_engine(factory), config, media=media, **kwargs)


def test_end_to_end_ten_second_video(processing_config: ProcessingConfig, fake_media: FakeMediaToolkit) -> None:
    store = InMemoryJobStore()
    pipeline = _pipeline(processing_config, fake_media, store=store)

    async def scenario():
        submitted = await pipeline.submit("vid-1", "/videos/clip.mp4", {"frameRate": 1})
        return submitted, await pipeline.wait("vid-1")

    submitted, job = asyncio.run(scenario())
    assert submitted.status == "processing"
    assert submitted.metadata.duration == 10.0
    assert submitted.estimated_time == 9

    assert job.status == COMPLETED
    assert job.progress == 100
    assert job.error is None
    assert job.frames_extracted == 10
    assert len(job.thumbnails) == 10
    assert sorted(fake_media.timestamps()) == pytest.approx([float(i) for i in range(10)])

    root = Path(processing_config.output_dir) / "vid-1"
    assert sorted(path.name for path in (root / "frames").iterdir())[:2] == ["frame_0001.jpg", "frame_0002.jpg"]
    assert len(list((root / "frames").iterdir())) == 10
    assert len(list((root / "thumbnails").glob("thumb_*.jpg"))) == 10

    report = job.report
    assert report.total_frames == 10
    assert report.threats_detected <= 10
    assert [frame.frame_number for frame in report.frames] == list(range(1, 11))
    assert [frame.timestamp for frame in report.frames] == [float(i) for i in range(10)]
    levels = {det.class_name: det.threat_level for det in report.frames[0].detections}
    assert levels == {"knife": "high", "person": "low"}

    on_disk = json.loads((root / "analysis" / "threat_analysis.json").read_text(encoding="utf-8"))
    assert on_disk["total_frames"] == 10
    assert on_disk["frames"][0]["detections"][0]["class"] in {"knife", "person"}

    record = store.get("vid-1")
    assert record["status"] == COMPLETED
    assert set(record["stage_times"]) == {"probe", "extract_frames", "thumbnails", "detect_threats"}


def test_progress_is_monotonic_and_terminal_once(processing_config: ProcessingConfig, fake_media: FakeMediaToolkit) -> None:
    pipeline = _pipeline(processing_config, fake_media)
    observed = []
    pipeline.add_listener(lambda job: observed.append((job.status, job.progress)))

    async def scenario():
        await pipeline.submit("vid-2", "/videos/clip.mp4", {"frame_rate": 2.0})
        await pipeline.wait("vid-2")

    asyncio.run(scenario())
    progresses = [progress for _, progress in observed]
    assert all(0 <= value <= 100 for value in progresses)
    assert progresses == sorted(progresses)
    statuses = [status for status, _ in observed]
    assert statuses.count(COMPLETED) == 1
    assert statuses[-1] == COMPLETED
    assert statuses[:-1] == ["processing"] * (len(statuses) - 1)
    assert 40 in progresses and 60 in progresses


def test_probe_failure_fails_job_without_raising(processing_config: ProcessingConfig) -> None:
    media = FakeMediaToolkit(probe_failures=10)
    pipeline = _pipeline(processing_config, media)

    async def scenario():
        submitted = await pipeline.submit("vid-3", "/videos/broken.mp4")
        return submitted, await pipeline.wait("vid-3")

    submitted, job = asyncio.run(scenario())
    assert submitted.status == FAILED
    assert job.error.startswith("probe:")
    # initial attempt plus media_retries
    assert [call[0] for call in media.calls] == ["probe"] * 3


def test_transient_media_errors_are_retried(processing_config: ProcessingConfig) -> None:
    media = FakeMediaToolkit(probe_failures=2, extract_failures=1)
    pipeline = _pipeline(processing_config, media)

    async def scenario():
        await pipeline.submit("vid-4", "/videos/flaky.mp4")
        return await pipeline.wait("vid-4")

    job = asyncio.run(scenario())
    assert job.status == COMPLETED
    assert [call[0] for call in media.calls].count("probe") == 3
    assert [call[0] for call in media.calls].count("extract_frames") == 2


def test_stage_failure_is_recorded(processing_config: ProcessingConfig) -> None:
    media = FakeMediaToolkit(extract_failures=10)
    pipeline = _pipeline(processing_config, media)

    async def scenario():
        await pipeline.submit("vid-5", "/videos/clip.mp4")
        return await pipeline.wait("vid-5")

    job = asyncio.run(scenario())
    assert job.status == FAILED
    assert job.error.startswith("extract_frames:")
    assert job.thumbnails == []
    assert job.report is None
    assert "thumbnails" not in job.stage_times


def test_detection_failure_is_recorded(processing_config: ProcessingConfig, fake_media: FakeMediaToolkit) -> None:
    factory = FixtureFactory({"object_detection_v1": FailingBackend})
    pipeline = _pipeline(processing_config, fake_media, factory=factory)

    async def scenario():
        await pipeline.submit("vid-6", "/videos/clip.mp4")
        return await pipeline.wait("vid-6")

    job = asyncio.run(scenario())
    assert job.status == FAILED
    assert job.error.startswith("detect_threats:")
    assert job.progress < 100

    with pytest.raises(ProcessingError):
        job.advance(100)


def test_skipped_extraction_yields_empty_report(processing_config: ProcessingConfig, fake_media: FakeMediaToolkit) -> None:
    pipeline = _pipeline(processing_config, fake_media)
    options = ProcessingOptions(extract_frames=False)

    async def scenario():
        await pipeline.submit("vid-7", "/videos/clip.mp4", options)
        return await pipeline.wait("vid-7")

    job = asyncio.run(scenario())
    assert job.status == COMPLETED
    assert job.frames_extracted == 0
    assert job.report.total_frames == 0
    assert job.report.frames == []
    assert len(job.thumbnails) == 10


def test_all_stages_disabled_completes(processing_config: ProcessingConfig, fake_media: FakeMediaToolkit) -> None:
    pipeline = _pipeline(processing_config, fake_media)
    options = {"extractFrames": False, "generateThumbnails": False, "detectThreats": False}

    async def scenario():
        await pipeline.submit("vid-8", "/videos/clip.mp4", options)
        return await pipeline.wait("vid-8")

    job = asyncio.run(scenario())
    assert job.status == COMPLETED
    assert job.progress == 100
    assert job.report is None


@pytest.mark.parametrize("options", [{"frameRate": 0}, {"frame_rate": -1.0}, {"bogus": True}, {"extract_frames": "yes"}])
def test_invalid_options_are_rejected(processing_config: ProcessingConfig, fake_media: FakeMediaToolkit, options) -> None:
    pipeline = _pipeline(processing_config, fake_media)
    with pytest.raises(ValidationError):
        asyncio.run(pipeline.submit("vid-9", "/videos/clip.mp4", options))
    assert fake_media.calls == []


def test_resubmitting_running_job_is_rejected(processing_config: ProcessingConfig) -> None:
    media = FakeMediaToolkit(delay=0.2)
    pipeline = _pipeline(processing_config, media)

    async def scenario():
        await pipeline.submit("vid-10", "/videos/clip.mp4")
        with pytest.raises(ValidationError):
            await pipeline.submit("vid-10", "/videos/clip.mp4")
        await pipeline.wait("vid-10")
        # terminal jobs may be replaced
        again = await pipeline.submit("vid-10", "/videos/clip.mp4")
        await pipeline.wait("vid-10")
        return again

    again = asyncio.run(scenario())
    assert again.status == "processing"
    assert pipeline.status("vid-10").status == COMPLETED


def test_concurrent_jobs_are_bounded(tmp_path: Path) -> None:
    config = ProcessingConfig(output_dir=str(tmp_path / "out"), max_concurrent_jobs=1, media_retry_backoff=0.0)
    media = FakeMediaToolkit(delay=0.1)
    pipeline = _pipeline(config, media)

    async def scenario():
        for index in range(3):
            await pipeline.submit(f"vid-{index}", "/videos/clip.mp4")
        return [await pipeline.wait(f"vid-{index}") for index in range(3)]

    jobs = asyncio.run(scenario())
    assert [job.status for job in jobs] == [COMPLETED] * 3
    assert media.peak == 1
    assert len(pipeline.jobs()) == 3


def test_status_and_delete(processing_config: ProcessingConfig, fake_media: FakeMediaToolkit) -> None:
    store = InMemoryJobStore()
    pipeline = _pipeline(processing_config, fake_media, store=store)
    with pytest.raises(ResourceNotFoundError):
        pipeline.status("missing")

    async def scenario():
        await pipeline.delete("missing")
        await pipeline.submit("vid-11", "/videos/clip.mp4")
        await pipeline.wait("vid-11")
        thumbnail = await pipeline.get_thumbnail("vid-11", 3)
        with pytest.raises(ResourceNotFoundError):
            await pipeline.get_thumbnail("vid-11", 42)
        await pipeline.delete("vid-11")
        await pipeline.delete("vid-11")
        return thumbnail

    thumbnail = asyncio.run(scenario())
    assert thumbnail == fake_media.frame
    assert not (Path(processing_config.output_dir) / "vid-11").exists()
    assert store.get("vid-11") is None
    with pytest.raises(ResourceNotFoundError):
        pipeline.status("vid-11")


def test_resubmission_discards_previous_artifacts(processing_config: ProcessingConfig, fake_media: FakeMediaToolkit) -> None:
    pipeline = _pipeline(processing_config, fake_media)

    async def scenario():
        await pipeline.submit("vid-15", "/videos/clip.mp4", {"frame_rate": 2.0})
        await pipeline.wait("vid-15")
        await pipeline.submit("vid-15", "/videos/clip.mp4", {"generate_thumbnails": False, "frame_rate": 1.0})
        job = await pipeline.wait("vid-15")
        with pytest.raises(ResourceNotFoundError):
            await pipeline.get_thumbnail("vid-15", 0)
        return job

    job = asyncio.run(scenario())
    assert job.status == COMPLETED
    assert job.thumbnails == []
    assert job.frames_extracted == 10
    root = Path(processing_config.output_dir) / "vid-15"
    assert len(list((root / "frames").iterdir())) == 10
    assert not (root / "thumbnails").exists()


def test_delete_during_probe_leaves_no_record(processing_config: ProcessingConfig) -> None:
    media = FakeMediaToolkit(probe_delay=0.2)
    store = InMemoryJobStore()
    pipeline = _pipeline(processing_config, media, store=store)

    async def scenario():
        submission = asyncio.create_task(pipeline.submit("vid-16", "/videos/clip.mp4"))
        await asyncio.sleep(0.05)
        await pipeline.delete("vid-16")
        with pytest.raises(ResourceNotFoundError):
            await submission

    asyncio.run(scenario())
    assert store.get("vid-16") is None
    assert pipeline.jobs() == []
    assert not (Path(processing_config.output_dir) / "vid-16").exists()


def test_thumbnails_require_metadata(processing_config: ProcessingConfig, fake_media: FakeMediaToolkit) -> None:
    pipeline = _pipeline(processing_config, fake_media)
    job = ProcessingJob(
        job_id="job-17",
        video_id="vid-17",
        source_path="/videos/clip.mp4",
        options=ProcessingOptions(),
        started_at=0.0,
    )
    with pytest.raises(ProcessingError):
        asyncio.run(pipeline._generate_thumbnails(job))


def test_snapshots_are_isolated(processing_config: ProcessingConfig, fake_media: FakeMediaToolkit) -> None:
    pipeline = _pipeline(processing_config, fake_media)

    async def scenario():
        await pipeline.submit("vid-12", "/videos/clip.mp4")
        return await pipeline.wait("vid-12")

    job = asyncio.run(scenario())
    job.thumbnails.clear()
    job.report.frames.clear()
    fresh = pipeline.status("vid-12")
    assert len(fresh.thumbnails) == 10
    assert len(fresh.report.frames) == 10


def test_job_metrics(processing_config: ProcessingConfig, fake_media: FakeMediaToolkit) -> None:
    metrics = MetricsPublisher(PrometheusConfig(enabled=True))
    metrics.start(serve=False)
    pipeline = _pipeline(processing_config, fake_media, metrics=metrics)

    async def scenario():
        await pipeline.submit("vid-13", "/videos/clip.mp4")
        await pipeline.wait("vid-13")

    asyncio.run(scenario())
    assert metrics.sample("video_jobs_submitted_total") == 1.0
    assert metrics.sample("video_jobs_total", {"status": COMPLETED}) == 1.0
    assert metrics.sample("analyzed_frames_total", {"source": "pipeline"}) == 10.0
    assert metrics.sample("detections_total", {"source": "pipeline", "threat_level": "high"}) == 10.0


def test_unstarted_metrics_ignore_submissions() -> None:
    metrics = MetricsPublisher(PrometheusConfig(enabled=True))
    metrics.job_submitted()
    assert metrics.sample("video_jobs_submitted_total") is None


def test_estimate_processing_time() -> None:
    full_hd = VideoMetadata(duration=60.0, width=1920, height=1080, fps=30.0)
    assert estimate_processing_time(full_hd) == 120
    small = VideoMetadata(duration=10.0, width=1280, height=720, fps=30.0)
    assert estimate_processing_time(small) == 9
