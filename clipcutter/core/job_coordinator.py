"""
Job coordinator.
Runs one clip job at a time: metadata, cached-or-fetched source, clip.
"""

import itertools
import logging
import threading
from pathlib import Path
from typing import Callable, Optional

from clipcutter.core.cache_store import CacheStore, MetadataStore
from clipcutter.core.cleanup import DeferredCleaner
from clipcutter.core.clip_pipeline import ClipPipeline, parse_timestamp
from clipcutter.core.config import AppConfig
from clipcutter.core.constants import (
    ClipStatus, ErrorCode, DEFAULT_QUALITY, FETCH_PROGRESS_SHARE,
    FETCH_STAGE_RETRY_ERRORS, FFMPEG_BINARY, YTDLP_BINARY,
)
from clipcutter.core.diagnostics import require_binary
from clipcutter.core.error_codes import JobError, RetryExhausted
from clipcutter.core.fetch_pipeline import FetchPipeline
from clipcutter.core.models import ClipJob
from clipcutter.core.process_runner import CancelToken, ProcessRunner
from clipcutter.core.retry import RetryPolicy
from clipcutter.core.thumbnails import ThumbnailFetcher
from clipcutter.core.url_parse import validate_video_url
from clipcutter.core.video_info import VideoInfoService, get_video_duration

logger = logging.getLogger(__name__)


def is_fetch_stage_retryable(exc: BaseException) -> bool:
    return isinstance(exc, JobError) and exc.code in FETCH_STAGE_RETRY_ERRORS


class JobCoordinator:
    """
    Sequences the pipelines for a ClipJob and reports progress through
    on_job_updated. run() never raises JobError; failures land on the job.

    usage, when given, is the licensing collaborator: ensure_can_clip() is
    called before any work and record_clip() after a successful clip.
    """

    def __init__(self, fetch_pipeline: FetchPipeline, clip_pipeline: ClipPipeline,
                 cache_store: CacheStore | None = None,
                 video_info: VideoInfoService | None = None,
                 cleaner: DeferredCleaner | None = None,
                 usage=None,
                 stage_policy: RetryPolicy | None = None):
        self.fetch_pipeline = fetch_pipeline
        self.clip_pipeline = clip_pipeline
        self.cache_store = cache_store
        self.video_info = video_info
        self.cleaner = cleaner or fetch_pipeline.cleaner
        self.usage = usage
        self.stage_policy = stage_policy or RetryPolicy(
            is_retryable=is_fetch_stage_retryable, name="fetch")

        self._lock = threading.Lock()
        self._current_job: Optional[ClipJob] = None
        self._cancel_token: Optional[CancelToken] = None

        # Callbacks
        self.on_job_updated: Optional[Callable[[ClipJob], None]] = None

    @classmethod
    def from_config(cls, config: AppConfig, runner: ProcessRunner | None = None,
                    usage=None) -> "JobCoordinator":
        """Wire up stores and pipelines from the user's settings."""
        runner = runner or ProcessRunner()
        ytdlp = require_binary(YTDLP_BINARY, config.ytdlp_path)
        ffmpeg = require_binary(FFMPEG_BINARY, config.ffmpeg_path)
        cache_dir = Path(config.cache_dir)

        cleaner = DeferredCleaner(delay_sec=config.temp_cleanup_delay_sec, runner=runner)
        cache_store = CacheStore(
            cache_dir,
            ttl_sec=config.cache_ttl_sec,
            max_bytes=config.cache_max_bytes,
            max_entries=config.cache_max_entries,
            enabled=config.cache_enabled,
        )
        metadata_store = MetadataStore(
            cache_dir,
            ttl_sec=config.metadata_ttl_sec,
            max_entries=config.metadata_max_entries,
            enabled=config.cache_enabled,
        )
        thumbnails = ThumbnailFetcher() if config.cache_thumbnails else None
        return cls(
            fetch_pipeline=FetchPipeline(runner, ytdlp, ffmpeg_path=ffmpeg, cleaner=cleaner),
            clip_pipeline=ClipPipeline(runner, ffmpeg, output_dir=Path(config.output_dir)),
            cache_store=cache_store,
            video_info=VideoInfoService(runner, ytdlp, metadata_store, thumbnails),
            cleaner=cleaner,
            usage=usage,
        )

    # ── Lifecycle ─────────────────────────────────────────────────────

    def start(self):
        """Startup housekeeping: stale temp files, periodic TTL sweeps."""
        self.cleaner.sweep_stale(self.fetch_pipeline.temp_dir)
        for store in self._stores():
            store.sweep_expired()
            store.start_sweeper()

    def shutdown(self):
        self.cancel()
        for store in self._stores():
            store.stop_sweeper()
        self.cleaner.shutdown()

    def _stores(self):
        stores = [self.cache_store]
        if self.video_info:
            stores.append(self.video_info.metadata_store)
        return [s for s in stores if s is not None]

    # ── Job control ───────────────────────────────────────────────────

    @property
    def current_job(self) -> Optional[ClipJob]:
        return self._current_job

    def cancel(self):
        """Cancel the running job, if any. Later stages never start."""
        with self._lock:
            token = self._cancel_token
        if token:
            logger.info("Cancelling job %s", self._current_job.id if self._current_job else "?")
            token.cancel()

    def run(self, job: ClipJob) -> ClipJob:
        """Process job to completion or failure and return it."""
        token = CancelToken()
        with self._lock:
            if self._current_job is not None:
                raise RuntimeError("A clip job is already running")
            self._current_job = job
            self._cancel_token = token

        try:
            self._process_job(job, token)
        except RetryExhausted as e:
            self._handle_job_error(job, e.last_error if isinstance(e.last_error, JobError) else e)
        except JobError as e:
            self._handle_job_error(job, e)
        except Exception as e:
            logger.error("Unexpected error processing job %s: %s", job.id, e, exc_info=True)
            self._update(job, status=ClipStatus.FAILED,
                         error=str(e)[:2000], error_code=ErrorCode.UNEXPECTED)
        finally:
            with self._lock:
                self._current_job = None
                self._cancel_token = None
        return job

    # ── Pipeline ──────────────────────────────────────────────────────

    def _process_job(self, job: ClipJob, token: CancelToken):
        video_id = validate_video_url(job.url)
        end_s = parse_timestamp(job.end_time)
        if parse_timestamp(job.start_time) >= end_s:
            raise JobError(ErrorCode.INVALID_TIME_RANGE,
                           f"Start time {job.start_time} must be before end time {job.end_time}")

        if self.usage:
            self.usage.ensure_can_clip()

        self._update(job, status=ClipStatus.FETCHING, progress=0.0)

        if self.video_info:
            job.video_info = self.video_info.load(job.url, cancel_token=token)
            self._notify(job)
            duration = get_video_duration(job.video_info)
            # 0 means the duration is unknown (live streams, sparse metadata)
            if duration and end_s > duration:
                raise JobError(ErrorCode.INVALID_TIME_RANGE,
                               f"End time {job.end_time} is past the end of the video "
                               f"({duration:.0f}s)")

        quality = job.quality or DEFAULT_QUALITY
        source = self._cached_or_fetched(job, video_id, quality, token)

        token.raise_if_cancelled()
        self._update(job, status=ClipStatus.TRANSCODING,
                     progress=FETCH_PROGRESS_SHARE, source_path=str(source))

        def on_clip_progress(fraction: float):
            self._advance(job, FETCH_PROGRESS_SHARE + fraction * (1.0 - FETCH_PROGRESS_SHARE))

        with self.cleaner.lease(source):
            output = self.clip_pipeline.clip(
                source, job.start_time, job.end_time,
                aspect_ratio=job.aspect_ratio,
                target_height=job.target_height,
                on_progress=on_clip_progress,
                cancel_token=token,
            )

        if self.usage:
            try:
                self.usage.record_clip()
            except JobError as e:
                logger.error("Failed to record clip usage for job %s: %s", job.id, e)

        self._update(job, status=ClipStatus.COMPLETE, progress=1.0,
                     output_path=str(output), error=None, error_code=None)
        logger.info("Job %s complete: %s", job.id, output)

    def _cached_or_fetched(self, job: ClipJob, video_id: str, quality: str,
                           token: CancelToken) -> Path:
        if self.cache_store:
            entry = self.cache_store.lookup(video_id, quality)
            if entry:
                self._advance(job, FETCH_PROGRESS_SHARE)
                return Path(entry.file_path)

        attempts = itertools.count(1)

        def on_fetch_progress(percent: float):
            self._advance(job, percent / 100.0 * FETCH_PROGRESS_SHARE)

        def fetch_once() -> Path:
            return self.fetch_pipeline.fetch(
                job.url, quality, on_progress=on_fetch_progress,
                cancel_token=token, attempt=next(attempts))

        fetched = self.stage_policy.call(fetch_once, cancel_token=token)

        if not self.cache_store:
            return fetched
        with self.cleaner.lease(fetched):
            try:
                entry = self.cache_store.put(video_id, quality, fetched,
                                             metadata=job.video_info or {})
            except OSError as e:
                logger.error("Failed to cache %s: %s", video_id, e)
                entry = None
        return Path(entry.file_path) if entry else fetched

    # ── Job state updates ─────────────────────────────────────────────

    def _advance(self, job: ClipJob, progress: float):
        """Progress only moves forward within a job."""
        if progress > job.progress:
            self._update(job, progress=min(progress, 1.0))

    def _update(self, job: ClipJob, **changes):
        for key, value in changes.items():
            setattr(job, key, value)
        self._notify(job)

    def _notify(self, job: ClipJob):
        """Notify UI of job update."""
        if self.on_job_updated:
            try:
                self.on_job_updated(job)
            except Exception:
                logger.exception("on_job_updated callback failed")

    def _handle_job_error(self, job: ClipJob, error: JobError):
        if error.code == ErrorCode.PROCESS_CANCELLED:
            logger.info("Job %s cancelled", job.id)
        else:
            logger.error("Job %s failed: [%s] %s", job.id, error.code, error.message)
        self._update(job, status=ClipStatus.FAILED,
                     error=error.message, error_code=error.code)
