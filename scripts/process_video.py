#!/usr/bin/env python3
"""
CLI entrypoint for analyzing a single video file end to end.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

if __package__ is None or __package__ == "":
    repo_root = Path(__file__).resolve().parents[1]
    src_dir = repo_root / "src"
    if str(src_dir) not in sys.path:
        sys.path.insert(0, str(src_dir))

from sentinel_vision import ModelRegistry, ProcessingOptions, ServiceConfig, ThreatDetector, VideoPipeline, load_config
from sentinel_vision.cli import add_logging_arguments, setup_logging
from sentinel_vision.config import ConfigError
from sentinel_vision.telemetry import MetricsPublisher


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Analyze a video file for threats")
    parser.add_argument("video", help="Path to the video file")
    parser.add_argument("-c", "--config", help="Path to YAML configuration file (optional)")
    parser.add_argument("--video-id", help="Identifier for the job (default: file stem)")
    parser.add_argument("--output-dir", help="Override processing.output_dir")
    parser.add_argument("--frame-rate", type=float, default=1.0, help="Frames sampled per second (default: 1)")
    parser.add_argument("--no-frames", action="store_true", help="Skip frame extraction")
    parser.add_argument("--no-thumbnails", action="store_true", help="Skip thumbnail generation")
    parser.add_argument("--no-detection", action="store_true", help="Skip threat detection")
    parser.add_argument(
        "--backend",
        choices=["auto", "real", "synthetic"],
        help="Override registry.backend_mode",
    )
    add_logging_arguments(parser)
    return parser.parse_args(argv)


async def run(config: ServiceConfig, args: argparse.Namespace) -> dict:
    metrics = MetricsPublisher(config.prometheus)
    metrics.start()
    registry = ModelRegistry(config.registry, metrics=metrics)
    engine = ThreatDetector(registry, config.detector, config.tracker)
    pipeline = VideoPipeline(engine, config.processing, metrics=metrics)
    options = ProcessingOptions(
        extract_frames=not args.no_frames,
        generate_thumbnails=not args.no_thumbnails,
        detect_threats=not args.no_detection,
        frame_rate=args.frame_rate,
    )
    video_id = args.video_id or Path(args.video).stem
    try:
        await registry.load_default_models()
        await pipeline.submit(video_id, args.video, options)
        job = await pipeline.wait(video_id)
    finally:
        await pipeline.close()
        await registry.close()
    return job.to_dict()


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv or sys.argv[1:])
    setup_logging(args)
    logger = logging.getLogger(__name__)

    try:
        config = load_config(args.config) if args.config else ServiceConfig()
    except ConfigError as exc:
        logger.error("Failed to load config: %s", exc)
        return 2
    if args.output_dir:
        config.processing.output_dir = args.output_dir
    if args.backend:
        config.registry.backend_mode = args.backend

    logger.info("Analyzing %s (frame rate %.2f)", args.video, args.frame_rate)
    try:
        summary = asyncio.run(run(config, args))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except Exception as exc:
        logger.exception("Processing failed with error: %s", exc)
        return 1

    summary.pop("report", None)
    print(json.dumps(summary, indent=2))
    return 0 if summary["status"] == "completed" else 1


if __name__ == "__main__":
    raise SystemExit(main())
