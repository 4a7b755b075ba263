import asyncio
from typing import List, Optional

import pytest

from conftest import FixtureFactory, build_engine, make_jpeg, object_rows
from sentinel_vision.config import LiveFeedConfig
from sentinel_vision.detector import CategoryFlags
from sentinel_vision.errors import DuplicateFeedError, ValidationError
from sentinel_vision.frame_sources import (
    FFmpegFrameSource,
    FrameSourceError,
    MJPEGSplitter,
    SyntheticFrameSource,
    create_frame_source,
)
from sentinel_vision.live_feed import FeedSettings, LiveFeedStreamer


class ScriptedSource:
    """Yields ``count`` frames (forever when None) and records close()."""

    def __init__(self, frames: List[bytes], count: Optional[int] = None):
        self._frames = frames
        self.count = count
        self.closed = 0

    async def frames(self):
        index = 0
        while self.count is None or index < self.count:
            yield self._frames[index % len(self._frames)]
            index += 1
            await asyncio.sleep(0.001)

    def close(self) -> None:
        self.closed += 1


def _streamer(sources: dict, count: Optional[int] = None, factory: Optional[FixtureFactory] = None) -> LiveFeedStreamer:
    def source_factory(camera_id, config, fps):
        source = ScriptedSource([make_jpeg(320, 240)], count)
        sources[camera_id] = source
        return source

    engine = build_engine(factory)
    return LiveFeedStreamer(engine, LiveFeedConfig(), source_factory=source_factory)


def test_frames_are_pushed_with_detections() -> None:
    rows = object_rows(("person", 0.9, 10, 10, 40, 80), ("car", 0.8, 200, 200, 100, 60))
    sources: dict = {}
    streamer = _streamer(sources, count=5, factory=FixtureFactory({"object_detection_v1": rows}))
    received = []

    async def scenario():
        subscription = await streamer.start(
            "cam-1",
            FeedSettings(categories=CategoryFlags(vehicles=False)),
            lambda frame, detections: received.append((frame, detections)),
        )
        await subscription.wait()
        return subscription

    subscription = asyncio.run(scenario())
    assert len(received) == 5
    assert all(frame.startswith(b"\xff\xd8") for frame, _ in received)
    assert all([det.class_name for det in dets] == ["person"] for _, dets in received)
    assert subscription.frames_delivered == 5
    assert not subscription.active
    # an exhausted feed releases its source and its camera slot
    assert sources["cam-1"].closed >= 1
    assert streamer.active_feeds() == []


def test_duplicate_feed_is_rejected() -> None:
    sources: dict = {}
    streamer = _streamer(sources)

    async def scenario():
        await streamer.start("cam-1", None, lambda frame, dets: None)
        try:
            with pytest.raises(DuplicateFeedError):
                await streamer.start("cam-1", None, lambda frame, dets: None)
            assert streamer.active_feeds() == ["cam-1"]
        finally:
            await streamer.stop_all()

    asyncio.run(scenario())
    assert sources["cam-1"].closed >= 1


def test_stop_releases_source_and_unknown_stop_is_noop() -> None:
    sources: dict = {}
    streamer = _streamer(sources)
    delivered = []

    async def scenario():
        await streamer.stop("never-started")
        subscription = await streamer.start("cam-2", FeedSettings(), lambda frame, dets: delivered.append(1))
        await asyncio.sleep(0.05)
        await streamer.stop("cam-2")
        count = len(delivered)
        await asyncio.sleep(0.02)
        assert len(delivered) == count
        assert not subscription.active
        # camera can be reused after stop
        second = await streamer.start("cam-2", FeedSettings(), lambda frame, dets: None)
        await second.stop()
        await second.stop()

    asyncio.run(scenario())
    assert delivered
    assert sources["cam-2"].closed >= 1
    assert streamer.active_feeds() == []


def test_async_callback_and_subscriber_errors() -> None:
    sources: dict = {}
    streamer = _streamer(sources, count=4)
    seen = []

    async def on_frame(frame, detections):
        seen.append(len(frame))
        if len(seen) == 2:
            raise RuntimeError("subscriber went away")

    async def scenario():
        subscription = await streamer.start("cam-3", None, on_frame)
        await subscription.wait()

    asyncio.run(scenario())
    assert len(seen) == 4


def test_analysis_errors_do_not_end_feed() -> None:
    sources: dict = {}
    engine = build_engine()

    def source_factory(camera_id, config, fps):
        source = ScriptedSource([b"garbage", make_jpeg()], 4)
        sources[camera_id] = source
        return source

    streamer = LiveFeedStreamer(engine, LiveFeedConfig(), source_factory=source_factory)
    received = []

    async def scenario():
        subscription = await streamer.start("cam-4", None, lambda frame, dets: received.append(dets))
        await subscription.wait()

    asyncio.run(scenario())
    assert received == [[], [], [], []]


def test_invalid_settings() -> None:
    streamer = _streamer({})
    with pytest.raises(ValidationError):
        asyncio.run(streamer.start("cam-5", FeedSettings(target_fps=0), lambda frame, dets: None))
    with pytest.raises(ValidationError):
        asyncio.run(streamer.start("", None, lambda frame, dets: None))


def test_synthetic_source_emits_jpegs() -> None:
    source = SyntheticFrameSource("cam", LiveFeedConfig(target_fps=100.0, frame_width=64, frame_height=48))

    async def scenario():
        frames = []
        async for frame in source.frames():
            frames.append(frame)
            if len(frames) == 3:
                source.close()
        return frames

    frames = asyncio.run(scenario())
    assert len(frames) == 3
    assert all(frame.startswith(b"\xff\xd8") and frame.endswith(b"\xff\xd9") for frame in frames)


def test_mjpeg_splitter_handles_chunk_boundaries() -> None:
    first, second = make_jpeg(32, 32, 10), make_jpeg(32, 32, 200)
    stream = b"noise" + first + second + first[:7]
    splitter = MJPEGSplitter()
    images = []
    for start in range(0, len(stream), 5):
        images.extend(splitter.feed(stream[start : start + 5]))
    assert images == [first, second]
    assert splitter.feed(first[7:]) == [first]


def test_frame_source_factory() -> None:
    assert isinstance(create_frame_source("cam", LiveFeedConfig()), SyntheticFrameSource)
    ffmpeg = create_frame_source("cam", LiveFeedConfig(source="ffmpeg", sample_video="clip.mp4"), 2.0)
    assert isinstance(ffmpeg, FFmpegFrameSource)
    command = ffmpeg._build_command()
    assert command[:2] == ["ffmpeg", "-hide_banner"]
    assert ["-stream_loop", "-1"] == command[command.index("-stream_loop") : command.index("-stream_loop") + 2]
    assert command[command.index("-r") + 1] == "2"
    assert command[-1] == "pipe:1"
    with pytest.raises(FrameSourceError):
        create_frame_source("cam", LiveFeedConfig(source="rtsp"))


def test_ffmpeg_source_without_stdout_pipe_raises(monkeypatch) -> None:
    source = FFmpegFrameSource("cam", LiveFeedConfig(source="ffmpeg", sample_video="clip.mp4"))
    monkeypatch.setattr(source, "start", lambda: None)

    async def scenario():
        async for _ in source.frames():
            pass

    with pytest.raises(FrameSourceError):
        asyncio.run(scenario())
