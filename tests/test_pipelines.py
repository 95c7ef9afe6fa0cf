#!/usr/bin/env python3
"""
Pipeline tests: yt-dlp and ffmpeg are replaced by small executable Python
scripts, the coordinator tests use in-process stand-ins for the pipelines.
"""

import json
import os
import sys
import tempfile
import threading
import time
from pathlib import Path
from unittest import mock

# Add project root to path
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

import unittest

import requests

from clipcutter.core.cache_store import CacheStore, MetadataStore
from clipcutter.core.cleanup import DeferredCleaner
from clipcutter.core.clip_pipeline import ClipPipeline
from clipcutter.core.constants import ClipStatus, ErrorCode
from clipcutter.core.error_codes import (
    ClipFailure, FetchFailure, JobError, OutputMissing, OutputTooSmall, RetryExhausted,
)
from clipcutter.core.fetch_pipeline import FetchPipeline
from clipcutter.core.job_coordinator import JobCoordinator, is_fetch_stage_retryable
from clipcutter.core.models import AspectRatio, ClipJob
from clipcutter.core.process_runner import ProcessRunner
from clipcutter.core.retry import RetryPolicy
from clipcutter.core.thumbnails import ThumbnailFetcher
from clipcutter.core.video_info import VideoInfoService

URL = "https://www.youtube.com/watch?v=dQw4w9WgXcQ"

FAKE_YTDLP = """#!__PYTHON__
import json, sys
args = sys.argv[1:]
with open(__file__ + ".calls", "a") as log:
    log.write(json.dumps(args) + "\\n")
if "--dump-json" in args:
    print(json.dumps({"id": "dQw4w9WgXcQ", "title": "Fake video", "duration": 212,
                      "thumbnail": "https://i.ytimg.com/vi/dQw4w9WgXcQ/hq.jpg",
                      "formats": [{"format_id": "18"}]}))
    sys.exit(0)
target = args[args.index("--output") + 1].replace("%(ext)s", "mp4")
for pct in ("10.0", "50.0", "100.0"):
    print("[download]  %s%% of 10.00MiB at 1.00MiB/s ETA 00:01" % pct, flush=True)
with open(target, "wb") as f:
    f.write(b"v" * 4096)
"""

FAILING_YTDLP = """#!__PYTHON__
import sys
print("[youtube] dQw4w9WgXcQ: Downloading webpage", flush=True)
print("ERROR: [youtube] dQw4w9WgXcQ: Private video. Sign in if you've been granted access", flush=True)
sys.exit(1)
"""

FAKE_FFMPEG = """#!__PYTHON__
import json, sys
with open(__file__ + ".calls", "a") as log:
    log.write(json.dumps(sys.argv[1:]) + "\\n")
dest = sys.argv[-1]
sys.stderr.write("  Duration: 00:00:20.00, start: 0.000000, bitrate: 128 kb/s\\n")
for t in ("00:00:01.00", "00:00:03.00", "00:00:05.00"):
    sys.stderr.write("frame=   30 fps=0.0 q=-1.0 size=    1kB time=%s bitrate= 1.0kbits/s\\r" % t)
    sys.stderr.flush()
with open(dest, "wb") as f:
    f.write(b"c" * __SIZE__)
"""

SILENT_YTDLP = """#!__PYTHON__
for pct in ("50.0", "100.0"):
    print("[download]  %s%% of 10.00MiB at 1.00MiB/s ETA 00:01" % pct, flush=True)
"""

SILENT_FFMPEG = """#!__PYTHON__
import sys
sys.stderr.write("frame=   30 fps=0.0 q=-1.0 size=    1kB time=00:00:05.00 bitrate= 1.0kbits/s\\n")
"""

FAILING_FFMPEG = """#!__PYTHON__
import sys
sys.stderr.write("ffmpeg version 6.1\\n")
sys.stderr.write("/tmp/in.mp4: Invalid data found when processing input\\n")
sys.exit(1)
"""


def write_tool(directory: Path, name: str, body: str, **subs) -> Path:
    text = body.replace("__PYTHON__", sys.executable)
    for key, value in subs.items():
        text = text.replace(f"__{key}__", str(value))
    path = directory / name
    path.write_text(text)
    path.chmod(0o755)
    return path


def read_calls(tool: Path) -> list:
    log = Path(str(tool) + ".calls")
    if not log.exists():
        return []
    return [json.loads(line) for line in log.read_text().splitlines()]


class PipelineTestCase(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = Path(self._tmp.name)
        self.bin = self.tmp / "bin"
        self.bin.mkdir()
        self.temp_dir = self.tmp / "downloads"
        self.output_dir = self.tmp / "clips"
        self.runner = ProcessRunner(kill_grace_sec=1.0, scratch_home=self.tmp / "home")
        self.cleaner = DeferredCleaner(delay_sec=3600, runner=self.runner)
        self.no_wait = RetryPolicy(base_delay=0, name="test launch")

    def tearDown(self):
        self.cleaner.shutdown()
        self._tmp.cleanup()

    def make_fetcher(self, body: str = FAKE_YTDLP) -> FetchPipeline:
        tool = write_tool(self.bin, "yt-dlp", body)
        return FetchPipeline(self.runner, tool, temp_dir=self.temp_dir,
                             cleaner=self.cleaner, launch_policy=self.no_wait, timeout=30)

    def make_clipper(self, body: str = FAKE_FFMPEG, size: int = 4000) -> ClipPipeline:
        tool = write_tool(self.bin, "ffmpeg", body, SIZE=size)
        return ClipPipeline(self.runner, tool, output_dir=self.output_dir,
                            launch_policy=self.no_wait, timeout=30)

    def make_source(self, name: str = "source.mp4") -> Path:
        path = self.tmp / name
        path.write_bytes(b"s" * 5000)
        return path


# ── Fetch ─────────────────────────────────────────────────────────────

class TestFetchPipeline(PipelineTestCase):

    def test_fetch_produces_file(self):
        fetcher = self.make_fetcher()
        progress = []
        path = fetcher.fetch(URL, "720p", on_progress=progress.append)

        self.assertTrue(path.exists())
        self.assertEqual(path.parent, self.temp_dir)
        self.assertEqual(path.suffix, ".mp4")
        self.assertEqual(len(path.stem), 32)
        self.assertEqual(path.stat().st_size, 4096)
        self.assertEqual(progress, sorted(progress))
        self.assertEqual(progress[-1], 100.0)

    def test_fetch_arguments(self):
        fetcher = self.make_fetcher()
        fetcher.fetch(URL, "1080p")
        args = read_calls(fetcher.ytdlp_path)[0]
        self.assertEqual(args[-1], URL)
        self.assertIn("bestvideo[height<=1080]", args[args.index("--format") + 1])
        self.assertIn("--no-playlist", args)
        self.assertNotIn("--retries", args)

    def test_later_attempt_uses_premerged_format(self):
        fetcher = self.make_fetcher()
        fetcher.fetch(URL, "720p", attempt=2)
        args = read_calls(fetcher.ytdlp_path)[0]
        self.assertTrue(args[args.index("--format") + 1].startswith("best[height<=720]"))
        self.assertIn("--retries", args)

    def test_each_fetch_gets_its_own_file(self):
        fetcher = self.make_fetcher()
        a = fetcher.fetch(URL, "720p")
        b = fetcher.fetch(URL, "720p")
        self.assertNotEqual(a, b)
        self.assertTrue(a.exists() and b.exists())

    def test_temp_files_scheduled_for_cleanup(self):
        fetcher = self.make_fetcher()
        fetcher.fetch(URL, "720p")
        self.assertEqual(self.cleaner.pending, 1)

    def test_temp_files_removed_after_delay(self):
        self.cleaner.delay_sec = 0.1
        path = self.make_fetcher().fetch(URL, "720p")
        deadline = time.monotonic() + 5
        while path.exists() and time.monotonic() < deadline:
            time.sleep(0.05)
        self.assertFalse(path.exists())

    def test_leased_file_survives_cleanup(self):
        self.cleaner.delay_sec = 0.1
        path = self.make_fetcher().fetch(URL, "720p")
        with self.cleaner.lease(path):
            time.sleep(0.4)
            self.assertTrue(path.exists())

    def test_failure_is_classified(self):
        fetcher = self.make_fetcher(FAILING_YTDLP)
        with self.assertRaises(FetchFailure) as ctx:
            fetcher.fetch(URL, "720p")
        self.assertEqual(ctx.exception.code, ErrorCode.VIDEO_UNAVAILABLE)
        self.assertFalse(ctx.exception.retryable)
        self.assertIn("Private video", ctx.exception.output)

    def test_success_without_file_is_fetch_failure(self):
        fetcher = self.make_fetcher(SILENT_YTDLP)
        with self.assertRaises(FetchFailure) as ctx:
            fetcher.fetch(URL, "720p")
        self.assertEqual(ctx.exception.code, ErrorCode.OUTPUT_MISSING)
        self.assertFalse(ctx.exception.retryable)
        self.assertIsInstance(ctx.exception.__cause__, OutputMissing)

    def test_missing_tool(self):
        fetcher = FetchPipeline(self.runner, self.bin / "missing-yt-dlp",
                                temp_dir=self.temp_dir, cleaner=self.cleaner,
                                launch_policy=self.no_wait)
        with self.assertRaises(FetchFailure) as ctx:
            fetcher.fetch(URL, "720p")
        self.assertEqual(ctx.exception.code, ErrorCode.LAUNCH_FAILED)

    def test_invalid_url_never_launches(self):
        fetcher = self.make_fetcher()
        with self.assertRaises(JobError) as ctx:
            fetcher.fetch("https://example.com/watch?v=dQw4w9WgXcQ", "720p")
        self.assertEqual(ctx.exception.code, ErrorCode.INVALID_URL)
        self.assertEqual(read_calls(fetcher.ytdlp_path), [])


# ── Clip ──────────────────────────────────────────────────────────────

class TestClipPipeline(PipelineTestCase):

    def test_clip_writes_output(self):
        clipper = self.make_clipper()
        progress = []
        out = clipper.clip(self.make_source(), "00:00:05", "00:00:10",
                           on_progress=progress.append)

        self.assertTrue(out.exists())
        self.assertEqual(out.parent, self.output_dir)
        self.assertGreaterEqual(out.stat().st_size, 1000)
        self.assertTrue(out.name.startswith("ClipCutter_"))
        self.assertTrue(out.name.endswith("_00-00-05_to_00-00-10.mp4"))
        self.assertEqual(progress, sorted(progress))
        self.assertEqual(progress[-1], 1.0)
        # no partial files left behind
        self.assertEqual([p.name for p in self.output_dir.iterdir()], [out.name])

    def test_copy_keeps_source_container(self):
        out = self.make_clipper().clip(self.make_source("source.webm"), "00:00:01", "00:00:02")
        self.assertEqual(out.suffix, ".webm")

    def test_cropped_clip_is_mp4_with_suffix(self):
        out = self.make_clipper().clip(self.make_source("source.webm"), "00:00:01", "00:00:02",
                                       aspect_ratio=AspectRatio.NINE_SIXTEEN)
        self.assertTrue(out.name.endswith("_9x16.mp4"))

    def test_explicit_output_path(self):
        target = self.tmp / "nested" / "clip.mp4"
        out = self.make_clipper().clip(self.make_source(), "00:00:01", "00:00:02",
                                       output_path=target)
        self.assertEqual(out, target)
        self.assertTrue(target.exists())

    def test_copy_maps_streams_explicitly(self):
        clipper = self.make_clipper()
        clipper.clip(self.make_source(), "00:00:05", "00:00:10")
        args = read_calls(clipper.ffmpeg_path)[0]
        maps = [args[i + 1] for i, a in enumerate(args) if a == "-map"]
        self.assertEqual(maps, ["0:v?", "0:a?"])
        self.assertEqual(args[args.index("-c") + 1], "copy")

    def test_too_small_output_rejected(self):
        clipper = self.make_clipper(size=10)
        with self.assertRaises(ClipFailure) as ctx:
            clipper.clip(self.make_source(), "00:00:05", "00:00:10")
        self.assertEqual(ctx.exception.code, ErrorCode.OUTPUT_TOO_SMALL)
        self.assertFalse(ctx.exception.retryable)
        self.assertIsInstance(ctx.exception.__cause__, OutputTooSmall)
        self.assertEqual(list(self.output_dir.iterdir()), [])

    def test_missing_output_rejected(self):
        clipper = self.make_clipper(SILENT_FFMPEG)
        with self.assertRaises(ClipFailure) as ctx:
            clipper.clip(self.make_source(), "00:00:05", "00:00:10")
        self.assertEqual(ctx.exception.code, ErrorCode.OUTPUT_MISSING)
        self.assertIsInstance(ctx.exception.__cause__, OutputMissing)
        self.assertEqual(list(self.output_dir.iterdir()), [])

    def test_tool_failure(self):
        clipper = self.make_clipper(FAILING_FFMPEG)
        with self.assertRaises(ClipFailure) as ctx:
            clipper.clip(self.make_source(), "00:00:05", "00:00:10")
        self.assertEqual(ctx.exception.code, ErrorCode.CLIP_FAILED)
        self.assertIn("Invalid data", ctx.exception.message)
        self.assertEqual(list(self.output_dir.iterdir()), [])

    def test_missing_source(self):
        with self.assertRaises(ClipFailure) as ctx:
            self.make_clipper().clip(self.tmp / "gone.mp4", "00:00:05", "00:00:10")
        self.assertEqual(ctx.exception.code, ErrorCode.SOURCE_MISSING)

    def test_reversed_range(self):
        with self.assertRaises(JobError) as ctx:
            self.make_clipper().clip(self.make_source(), "00:00:10", "00:00:05")
        self.assertEqual(ctx.exception.code, ErrorCode.INVALID_TIME_RANGE)


# ── Metadata and thumbnails ───────────────────────────────────────────

def fake_response(status: int = 200, content_type: str = "image/jpeg", chunks=(b"img",)):
    resp = mock.MagicMock()
    resp.status_code = status
    resp.headers = {"Content-Type": content_type}
    resp.iter_content.return_value = list(chunks)
    resp.__enter__.return_value = resp
    return resp


class TestThumbnailFetcher(unittest.TestCase):

    def make(self, *responses, **kwargs) -> ThumbnailFetcher:
        session = mock.MagicMock()
        session.get.side_effect = list(responses)
        kwargs.setdefault("policy", RetryPolicy(base_delay=0))
        return ThumbnailFetcher(session=session, **kwargs)

    def test_fetch(self):
        fetcher = self.make(fake_response(chunks=(b"ab", b"cd")))
        self.assertEqual(fetcher.fetch("https://i.ytimg.com/vi/x/hq.jpg"), (b"abcd", "jpg"))

    def test_server_error_retried(self):
        fetcher = self.make(fake_response(503), fake_response(content_type="image/webp"))
        self.assertEqual(fetcher.fetch("https://i.ytimg.com/x.webp")[1], "webp")
        self.assertEqual(fetcher.session.get.call_count, 2)

    def test_not_found_not_retried(self):
        fetcher = self.make(fake_response(404))
        with self.assertRaises(JobError) as ctx:
            fetcher.fetch("https://i.ytimg.com/x.jpg")
        self.assertEqual(ctx.exception.code, ErrorCode.THUMBNAIL_FAILED)
        self.assertEqual(fetcher.session.get.call_count, 1)

    def test_connection_errors_exhaust_retries(self):
        errors = [requests.exceptions.ConnectionError("down")] * 3
        fetcher = self.make(*errors)
        with self.assertRaises(RetryExhausted) as ctx:
            fetcher.fetch("https://i.ytimg.com/x.jpg")
        self.assertEqual(ctx.exception.code, ErrorCode.NETWORK_TRANSIENT)
        self.assertEqual(fetcher.session.get.call_count, 3)

    def test_plain_http_refused(self):
        fetcher = self.make()
        with self.assertRaises(JobError) as ctx:
            fetcher.fetch("http://i.ytimg.com/x.jpg")
        self.assertEqual(ctx.exception.code, ErrorCode.INVALID_ARGUMENT)
        fetcher.session.get.assert_not_called()

    def test_size_cap(self):
        fetcher = self.make(fake_response(chunks=(b"abcd", b"efgh")), max_bytes=5)
        with self.assertRaises(JobError):
            fetcher.fetch("https://i.ytimg.com/x.jpg")

    def test_unexpected_content_type(self):
        fetcher = self.make(fake_response(content_type="text/html"))
        with self.assertRaises(JobError):
            fetcher.fetch("https://i.ytimg.com/x.jpg")


class TestVideoInfoService(PipelineTestCase):

    def test_load_then_cached(self):
        tool = write_tool(self.bin, "yt-dlp", FAKE_YTDLP)
        store = MetadataStore(self.tmp / "cache", ttl_sec=3600)
        thumbnails = mock.MagicMock()
        thumbnails.fetch.return_value = (b"jpegdata", "jpg")
        service = VideoInfoService(self.runner, tool, store, thumbnails)

        first = service.load(URL)
        self.assertEqual(first["title"], "Fake video")
        self.assertEqual(first["duration"], 212.0)
        self.assertNotIn("formats", first)
        self.assertEqual(Path(first["thumbnail_path"]).read_bytes(), b"jpegdata")

        second = service.load(URL)
        self.assertEqual(second, first)
        self.assertEqual(len(read_calls(tool)), 1)
        thumbnails.fetch.assert_called_once()

    def test_thumbnail_failure_is_not_fatal(self):
        tool = write_tool(self.bin, "yt-dlp", FAKE_YTDLP)
        thumbnails = mock.MagicMock()
        thumbnails.fetch.side_effect = JobError(ErrorCode.THUMBNAIL_FAILED, "nope")
        service = VideoInfoService(self.runner, tool, MetadataStore(self.tmp / "cache"), thumbnails)
        with self.assertLogs("clipcutter.core.video_info", level="WARNING"):
            info = service.load(URL)
        self.assertEqual(info["title"], "Fake video")
        self.assertNotIn("thumbnail_path", info)

    def test_failure_classified(self):
        tool = write_tool(self.bin, "yt-dlp", FAILING_YTDLP)
        service = VideoInfoService(self.runner, tool)
        with self.assertRaises(JobError) as ctx:
            service.load(URL)
        self.assertEqual(ctx.exception.code, ErrorCode.VIDEO_UNAVAILABLE)


# ── Cleanup ───────────────────────────────────────────────────────────

class TestDeferredCleaner(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.dir = Path(self._tmp.name)
        self.cleaner = DeferredCleaner(delay_sec=60)

    def tearDown(self):
        self.cleaner.shutdown()
        self._tmp.cleanup()

    def touch(self, name: str) -> Path:
        path = self.dir / name
        path.write_bytes(b"x")
        return path

    def test_remove_prefix(self):
        a, b = self.touch("abc.mp4"), self.touch("abc.f137.mp4")
        other = self.touch("xyz.mp4")
        removed = self.cleaner.remove_prefix(self.dir, "abc")
        self.assertEqual(set(removed), {a, b})
        self.assertTrue(other.exists())

    def test_lease_blocks_removal(self):
        path = self.touch("abc.mp4")
        with self.cleaner.lease(path):
            with self.cleaner.lease(path):
                pass
            self.assertTrue(self.cleaner.is_leased(path))
            self.assertEqual(self.cleaner.remove_prefix(self.dir, "abc"), [])
        self.assertFalse(self.cleaner.is_leased(path))
        self.assertEqual(self.cleaner.remove_prefix(self.dir, "abc"), [path])

    @unittest.skipUnless(sys.platform.startswith("linux"), "uses /proc")
    def test_open_file_is_in_use(self):
        path = self.touch("abc.mp4")
        with open(path, "rb"):
            self.assertTrue(self.cleaner.is_file_in_use(path))
        self.assertFalse(self.cleaner.is_file_in_use(path))

    def test_sweep_stale(self):
        old, fresh = self.touch("old.mp4"), self.touch("fresh.mp4")
        past = time.time() - 3 * 3600
        os.utime(old, (past, past))
        self.assertEqual(self.cleaner.sweep_stale(self.dir, max_age_sec=3600), 1)
        self.assertFalse(old.exists())
        self.assertTrue(fresh.exists())

    def test_shutdown_cancels_pending(self):
        path = self.touch("abc.mp4")
        self.cleaner.schedule_prefix(self.dir, "abc")
        self.assertEqual(self.cleaner.pending, 1)
        self.cleaner.shutdown()
        self.assertEqual(self.cleaner.pending, 0)
        self.assertTrue(path.exists())

    def test_scheduled_removal(self):
        path = self.touch("abc.mp4")
        self.cleaner.schedule_prefix(self.dir, "abc", delay_sec=0.05)
        deadline = time.monotonic() + 5
        while path.exists() and time.monotonic() < deadline:
            time.sleep(0.02)
        self.assertFalse(path.exists())


# ── Coordinator ───────────────────────────────────────────────────────

class StubFetch:
    """Writes a fake download; fails with the queued errors first."""

    def __init__(self, temp_dir: Path, cleaner: DeferredCleaner, errors=()):
        self.temp_dir = temp_dir
        self.cleaner = cleaner
        self.errors = list(errors)
        self.calls = []
        self.started = threading.Event()
        self.block = False

    def fetch(self, reference, quality, on_progress=None, cancel_token=None, attempt=1):
        self.calls.append((reference, quality, attempt))
        self.started.set()
        if self.block:
            cancel_token.wait(10)
            cancel_token.raise_if_cancelled()
        if self.errors:
            raise self.errors.pop(0)
        for pct in (25.0, 75.0, 100.0):
            on_progress(pct)
        self.temp_dir.mkdir(parents=True, exist_ok=True)
        path = self.temp_dir / f"fetch{len(self.calls)}.mp4"
        path.write_bytes(b"v" * 2048)
        return path


class StubClip:

    def __init__(self, output_dir: Path, error: Exception | None = None):
        self.output_dir = output_dir
        self.error = error
        self.sources = []

    def clip(self, source, start_time, end_time, aspect_ratio=AspectRatio.ORIGINAL,
             target_height=None, on_progress=None, cancel_token=None):
        self.sources.append(Path(source))
        if self.error:
            raise self.error
        on_progress(0.5)
        on_progress(1.0)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        out = self.output_dir / f"clip{len(self.sources)}.mp4"
        out.write_bytes(b"c" * 2048)
        return out


class StubUsage:

    def __init__(self, allowed: bool = True):
        self.allowed = allowed
        self.recorded = 0

    def ensure_can_clip(self):
        if not self.allowed:
            raise JobError(ErrorCode.INSUFFICIENT_CREDITS, "No clips left")

    def record_clip(self):
        self.recorded += 1


class TestJobCoordinator(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = Path(self._tmp.name)
        self.cleaner = DeferredCleaner(delay_sec=3600)
        self.cache = CacheStore(self.tmp / "cache", ttl_sec=3600)
        self.fetch = StubFetch(self.tmp / "downloads", self.cleaner)
        self.clipper = StubClip(self.tmp / "clips")
        self.updates = []

    def tearDown(self):
        self.cleaner.shutdown()
        self._tmp.cleanup()

    def make(self, **kwargs) -> JobCoordinator:
        kwargs.setdefault("cache_store", self.cache)
        kwargs.setdefault("stage_policy", RetryPolicy(
            base_delay=0, is_retryable=is_fetch_stage_retryable, name="fetch"))
        coordinator = JobCoordinator(self.fetch, self.clipper, cleaner=self.cleaner, **kwargs)
        coordinator.on_job_updated = lambda job: self.updates.append((job.status, job.progress))
        return coordinator

    def job(self, **kwargs) -> ClipJob:
        kwargs.setdefault("url", URL)
        kwargs.setdefault("start_time", "00:00:05")
        kwargs.setdefault("end_time", "00:00:10")
        return ClipJob(**kwargs)

    def test_completes(self):
        job = self.make().run(self.job())
        self.assertEqual(job.status, ClipStatus.COMPLETE)
        self.assertEqual(job.progress, 1.0)
        self.assertTrue(Path(job.output_path).exists())
        self.assertIsNone(job.error_code)

    def test_progress_never_goes_backwards(self):
        self.make().run(self.job())
        progress = [p for _, p in self.updates]
        self.assertEqual(progress, sorted(progress))
        self.assertEqual(self.updates[-1], (ClipStatus.COMPLETE, 1.0))

    def test_second_job_served_from_cache(self):
        coordinator = self.make()
        first = coordinator.run(self.job())
        second = coordinator.run(self.job(start_time="00:01:00", end_time="00:01:30"))

        self.assertEqual(first.status, ClipStatus.COMPLETE)
        self.assertEqual(second.status, ClipStatus.COMPLETE)
        self.assertEqual(len(self.fetch.calls), 1)
        self.assertEqual(self.clipper.sources[0], self.clipper.sources[1])
        self.assertEqual(self.clipper.sources[1].parent.parent, self.tmp / "cache" / "videos")

    def test_quality_is_part_of_cache_key(self):
        coordinator = self.make()
        coordinator.run(self.job(quality="720p"))
        coordinator.run(self.job(quality="1080p"))
        self.assertEqual([c[1] for c in self.fetch.calls], ["720p", "1080p"])

    def test_without_cache_always_fetches(self):
        coordinator = self.make(cache_store=None)
        coordinator.run(self.job())
        coordinator.run(self.job())
        self.assertEqual(len(self.fetch.calls), 2)

    def test_expired_fragments_retry_fetch_stage(self):
        self.fetch.errors = [FetchFailure(ErrorCode.FRAGMENT_EXPIRED, "expired")] * 2
        job = self.make().run(self.job())
        self.assertEqual(job.status, ClipStatus.COMPLETE)
        self.assertEqual([c[2] for c in self.fetch.calls], [1, 2, 3])

    def test_fetch_stage_gives_up(self):
        self.fetch.errors = [FetchFailure(ErrorCode.NETWORK_TRANSIENT, "offline")] * 3
        job = self.make().run(self.job())
        self.assertEqual(job.status, ClipStatus.FAILED)
        self.assertEqual(job.error_code, ErrorCode.NETWORK_TRANSIENT)
        self.assertEqual(len(self.fetch.calls), 3)
        self.assertEqual(self.clipper.sources, [])

    def test_permanent_fetch_error_not_retried(self):
        self.fetch.errors = [FetchFailure(ErrorCode.VIDEO_UNAVAILABLE, "This video is private.")]
        job = self.make().run(self.job())
        self.assertEqual(job.status, ClipStatus.FAILED)
        self.assertEqual(job.error_code, ErrorCode.VIDEO_UNAVAILABLE)
        self.assertEqual(job.error, "This video is private.")
        self.assertEqual(len(self.fetch.calls), 1)

    def test_invalid_input_fails_before_fetch(self):
        coordinator = self.make()
        bad_range = coordinator.run(self.job(start_time="00:00:10", end_time="00:00:05"))
        bad_url = coordinator.run(self.job(url="https://vimeo.com/12345"))
        bad_time = coordinator.run(self.job(start_time="5s"))
        self.assertEqual(bad_range.error_code, ErrorCode.INVALID_TIME_RANGE)
        self.assertEqual(bad_url.error_code, ErrorCode.INVALID_URL)
        self.assertEqual(bad_time.error_code, ErrorCode.INVALID_TIME)
        self.assertEqual(self.fetch.calls, [])

    def test_end_past_video_length(self):
        info = mock.MagicMock()
        info.load.return_value = {"title": "Short", "duration": 8.0}
        info.metadata_store = None
        job = self.make(video_info=info).run(self.job(end_time="00:00:09"))
        self.assertEqual(job.error_code, ErrorCode.INVALID_TIME_RANGE)
        self.assertEqual(job.video_info["title"], "Short")
        self.assertEqual(self.fetch.calls, [])

    def test_clip_failure_keeps_cached_source(self):
        self.clipper.error = ClipFailure(ErrorCode.CLIP_FAILED, "ffmpeg failed")
        job = self.make().run(self.job())
        self.assertEqual(job.status, ClipStatus.FAILED)
        self.assertEqual(job.error_code, ErrorCode.CLIP_FAILED)
        self.assertEqual(len(self.cache), 1)

    def test_unexpected_error(self):
        self.clipper.error = RuntimeError("boom")
        with self.assertLogs("clipcutter.core.job_coordinator", level="ERROR"):
            job = self.make().run(self.job())
        self.assertEqual(job.status, ClipStatus.FAILED)
        self.assertEqual(job.error_code, ErrorCode.UNEXPECTED)

    def test_usage_gate(self):
        usage = StubUsage(allowed=False)
        job = self.make(usage=usage).run(self.job())
        self.assertEqual(job.error_code, ErrorCode.INSUFFICIENT_CREDITS)
        self.assertEqual(self.fetch.calls, [])

        usage = StubUsage()
        self.make(usage=usage).run(self.job())
        self.assertEqual(usage.recorded, 1)

    def test_cancel_running_job(self):
        self.fetch.block = True
        coordinator = self.make()
        job = self.job()
        worker = threading.Thread(target=coordinator.run, args=(job,))
        worker.start()
        self.assertTrue(self.fetch.started.wait(5))
        self.assertIs(coordinator.current_job, job)
        coordinator.cancel()
        worker.join(10)

        self.assertFalse(worker.is_alive())
        self.assertEqual(job.status, ClipStatus.FAILED)
        self.assertEqual(job.error_code, ErrorCode.PROCESS_CANCELLED)
        self.assertEqual(self.clipper.sources, [])
        self.assertIsNone(coordinator.current_job)
        self.assertEqual(len(self.fetch.calls), 1)

    def test_one_job_at_a_time(self):
        self.fetch.block = True
        coordinator = self.make()
        worker = threading.Thread(target=coordinator.run, args=(self.job(),))
        worker.start()
        try:
            self.assertTrue(self.fetch.started.wait(5))
            with self.assertRaises(RuntimeError):
                coordinator.run(self.job())
        finally:
            coordinator.cancel()
            worker.join(10)

    def test_callback_errors_are_logged(self):
        coordinator = self.make()

        def broken(job):
            raise ValueError("ui bug")

        coordinator.on_job_updated = broken
        with self.assertLogs("clipcutter.core.job_coordinator", level="ERROR"):
            job = coordinator.run(self.job())
        self.assertEqual(job.status, ClipStatus.COMPLETE)


class TestEndToEnd(PipelineTestCase):
    """Coordinator driving the real pipelines against the fake tools."""

    def test_job_with_fake_tools(self):
        fetcher = self.make_fetcher()
        clipper = self.make_clipper()
        cache = CacheStore(self.tmp / "cache", ttl_sec=3600)
        info = VideoInfoService(self.runner, fetcher.ytdlp_path, MetadataStore(self.tmp / "cache"))
        coordinator = JobCoordinator(fetcher, clipper, cache_store=cache, video_info=info,
                                     cleaner=self.cleaner)

        job = coordinator.run(ClipJob(url=URL, start_time="00:00:05", end_time="00:00:10",
                                      aspect_ratio=AspectRatio.ONE_ONE))
        self.assertEqual(job.status, ClipStatus.COMPLETE, job.error)
        self.assertTrue(Path(job.output_path).name.endswith("_1x1.mp4"))
        self.assertEqual(job.video_info["title"], "Fake video")
        self.assertEqual(cache.lookup("dQw4w9WgXcQ", "720p").metadata["title"], "Fake video")

        again = coordinator.run(ClipJob(url=URL, start_time="00:00:01", end_time="00:00:02"))
        self.assertEqual(again.status, ClipStatus.COMPLETE, again.error)
        calls = read_calls(fetcher.ytdlp_path)
        self.assertEqual(sum(1 for args in calls if "--dump-json" in args), 1)
        self.assertEqual(sum(1 for args in calls if "--output" in args), 1)


if __name__ == "__main__":
    unittest.main()
