#!/usr/bin/env python3
"""
ClipCutter v1.0.0: main entry point.
Runs one clip job from the command line; also the launcher bundled by py2app.

Usage:
    python3 main.py "https://youtu.be/dQw4w9WgXcQ" 00:00:05 00:00:10 --aspect 9:16
"""

import argparse
import json
import sys
import threading
import traceback
from pathlib import Path
from datetime import datetime
import logging

# ── Determine project root ────────────────────────────────────────────
PROJECT_ROOT = Path(__file__).resolve().parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from clipcutter.core.constants import (
    APP_NAME, APP_VERSION, AVAILABLE_QUALITIES, LOG_DIR, ClipStatus, ErrorCode,
)
from clipcutter.core.config import AppConfig
from clipcutter.core.diagnostics import get_diagnostics
from clipcutter.core.error_codes import JobError
from clipcutter.core.job_coordinator import JobCoordinator
from clipcutter.core.models import AspectRatio, ClipJob

LOG_FILE = LOG_DIR / "app.log"

logger = logging.getLogger(APP_NAME)


def setup_logging(verbose: bool = False):
    """Log to ~/Library/Logs/ClipCutter/app.log, and to stderr with --verbose."""
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    handlers = [logging.FileHandler(LOG_FILE, encoding="utf-8")]
    if verbose:
        handlers.append(logging.StreamHandler(sys.stderr))
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog=APP_NAME.lower(),
                                     description="Cut a clip out of a YouTube video.")
    parser.add_argument("url", nargs="?", help="YouTube video URL")
    parser.add_argument("start", nargs="?", help="start time, HH:MM:SS[.mmm]")
    parser.add_argument("end", nargs="?", help="end time, HH:MM:SS[.mmm]")
    parser.add_argument("--aspect", default=AspectRatio.ORIGINAL.value,
                        choices=[a.value for a in AspectRatio],
                        help="crop to this aspect ratio")
    parser.add_argument("--quality", choices=AVAILABLE_QUALITIES,
                        help="download quality (default from settings)")
    parser.add_argument("--height", type=int, help="rescale the clip to this height")
    parser.add_argument("--output-dir", help="where to save the clip")
    parser.add_argument("--config", type=Path, help="alternate config.json")
    parser.add_argument("--diagnostics", action="store_true",
                        help="print tool versions and paths, then exit")
    parser.add_argument("--clear-cache", action="store_true",
                        help="remove every cached video and metadata entry, then exit")
    parser.add_argument("-v", "--verbose", action="store_true", help="log to stderr")
    return parser


def print_progress(job: ClipJob):
    label = {
        ClipStatus.FETCHING: "Downloading",
        ClipStatus.TRANSCODING: "Clipping",
    }.get(job.status)
    if label:
        sys.stdout.write(f"\r{label:<12} {job.progress * 100:5.1f}%")
        sys.stdout.flush()


def run_job(coordinator: JobCoordinator, job: ClipJob) -> ClipJob:
    """Run in a worker thread so Ctrl-C can cancel the running tool."""
    worker = threading.Thread(target=coordinator.run, args=(job,), daemon=True)
    worker.start()
    try:
        while worker.is_alive():
            worker.join(0.2)
    except KeyboardInterrupt:
        coordinator.cancel()
        worker.join()
    return job


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)

    logger.info("=" * 60)
    logger.info("%s v%s starting at %s", APP_NAME, APP_VERSION, datetime.now().isoformat())
    logger.info("Python: %s", sys.executable)
    logger.info("Project root: %s", PROJECT_ROOT)
    logger.info("=" * 60)

    config = AppConfig(args.config) if args.config else AppConfig()
    if args.output_dir:
        config.output_dir = args.output_dir

    if args.diagnostics:
        print(json.dumps(get_diagnostics(config), indent=2))
        return 0

    try:
        coordinator = JobCoordinator.from_config(config)
    except JobError as e:
        logger.error("Startup failed: %s", e)
        print(f"Error: {e.message}", file=sys.stderr)
        return 1

    if args.clear_cache:
        coordinator.cache_store.clear()
        coordinator.video_info.metadata_store.clear()
        print("Cache cleared.")
        return 0

    if not (args.url and args.start and args.end):
        build_parser().error("url, start and end are required")

    job = ClipJob(
        url=args.url,
        start_time=args.start,
        end_time=args.end,
        aspect_ratio=AspectRatio(args.aspect),
        quality=args.quality or config.default_quality,
        target_height=args.height,
    )
    coordinator.on_job_updated = print_progress
    coordinator.start()
    try:
        run_job(coordinator, job)
    finally:
        coordinator.shutdown()
    print()

    if job.status == ClipStatus.COMPLETE:
        print(f"Saved: {job.output_path}")
        return 0
    if job.error_code == ErrorCode.PROCESS_CANCELLED:
        print("Cancelled.", file=sys.stderr)
        return 130
    print(f"Error: {job.error} ({job.error_code})", file=sys.stderr)
    return 1


if __name__ == "__main__":
    try:
        sys.exit(main())
    except Exception as e:
        logger.critical("Fatal error: %s: %s\n%s", type(e).__name__, e, traceback.format_exc())
        print(f"Fatal error: {e}\nCheck logs at: {LOG_FILE}", file=sys.stderr)
        sys.exit(1)
