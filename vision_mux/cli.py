"""Command-line runner: build the vision runtime and print ranked detections."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional, Sequence

from .config import VISION_PROFILE_PATH, load_vision_profile
from .errors import ConfigurationError
from .kinds import PipelineKind
from .logging_utils import get_logger, log_message
from .manager import VisionPipelineManager
from .sources import FrameSource, VideoFileSource


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Run the robot vision pipelines against a camera or a recorded video",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m vision_mux --enable fiducial --frames 30
  python -m vision_mux --video-file match.mp4 --enable yellow --enable purple
        """,
    )
    parser.add_argument("--profile", type=Path, default=VISION_PROFILE_PATH, help="Vision profile JSON")
    parser.add_argument("--video-file", "-f", type=str, default=None, help="Replay a video instead of the camera")
    parser.add_argument("--loop", action="store_true", help="Loop the video file")
    parser.add_argument(
        "--enable",
        "-e",
        action="append",
        default=[],
        metavar="KIND",
        help="Pipeline to enable (repeatable): " + ", ".join(kind.key for kind in PipelineKind),
    )
    parser.add_argument("--frames", "-n", type=int, default=30, help="Number of frames to process")
    parser.add_argument("--parallel", action="store_true", help="Dispatch each frame to backends in parallel")
    parser.add_argument("--log-level", default="INFO", help="Logging level (default: INFO)")
    return parser.parse_args(argv)


def _format_record(record) -> str:
    label = record.label or record.kind.key
    return f"{label} conf={record.confidence:.2f} {record.payload}"


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    get_logger().setLevel(getattr(logging, str(args.log_level).upper(), logging.INFO))

    profile = load_vision_profile(args.profile)
    if args.parallel:
        profile["preferences"]["dispatch_mode"] = "parallel"

    source: Optional[FrameSource] = VideoFileSource(args.video_file, loop=args.loop) if args.video_file else None
    try:
        kinds: List[PipelineKind] = [PipelineKind.parse(text) for text in args.enable]
        manager = VisionPipelineManager.from_profile(profile, source=source)
    except (ConfigurationError, ValueError) as exc:
        log_message(f"Vision start-up failed: {exc}", level="error")
        return 2

    with manager:
        for kind in kinds:
            manager.set_enabled(kind, True)
        for kind in kinds:
            if not manager.is_enabled(kind):
                log_message(f"{kind.key} is not configured in this profile; skipping", level="warning")

        processed = 0
        misses = 0
        while processed < args.frames and misses < 50:
            dispatch = manager.process_next_frame()
            if dispatch is None:
                misses += 1
                continue
            processed += 1
            for kind in dispatch.dispatched:
                ranked = manager.rank_by_confidence(manager.get_latest_detections(kind))
                if not ranked:
                    continue
                lines = "\n  ".join(_format_record(record) for record in ranked)
                log_message(f"frame {dispatch.frame_index} {kind.key}:\n  {lines}")
    log_message(f"Processed {processed} frames")
    return 0 if processed else 1


if __name__ == "__main__":
    sys.exit(main())
