"""
Video download via yt-dlp.

The fetcher writes <base>.<ext> into the temp download directory, where
<base> is unique per attempt. Every <base>* file is handed to the deferred
cleaner whether the fetch succeeds or fails.
"""

import logging
import re
import uuid
from pathlib import Path

from clipcutter.core.constants import (
    DEFAULT_QUALITY_HEIGHT, FETCH_TIMEOUT_SEC, TEMP_DOWNLOAD_DIR, TEMP_SUFFIXES,
    LAUNCH_RETRY_ATTEMPTS, LAUNCH_RETRY_BASE_DELAY_SEC, RETRY_CAP_DELAY_SEC,
    ErrorCode,
)
from clipcutter.core.cleanup import DeferredCleaner
from clipcutter.core.error_codes import (
    FetchFailure, LaunchFailure, OutputMissing, ProcessTimeout, RetryExhausted,
)
from clipcutter.core.models import ProcessSpec
from clipcutter.core.process_runner import CancelToken, ProcessRunner
from clipcutter.core.progress_parser import DownloadProgress
from clipcutter.core.retry import RetryPolicy
from clipcutter.core.security_utils import minimal_env
from clipcutter.core.url_parse import validate_video_url

logger = logging.getLogger(__name__)

_HEIGHT_RE = re.compile(r"^(\d{2,4})p?$")
_OUTPUT_TAIL_CHARS = 2000

BEST_FORMAT = "bestvideo[ext=mp4]+bestaudio[ext=m4a]/bestvideo+bestaudio/best"


def _height_format(h: int) -> str:
    return (f"bestvideo[height<={h}][ext=mp4]+bestaudio[ext=m4a]"
            f"/bestvideo[height<={h}]+bestaudio[ext=m4a]"
            f"/bestvideo[height<={h}]+bestaudio"
            f"/best[height<={h}]/best")


def _premerged_format(h: int) -> str:
    # Single pre-merged stream first; avoids the separate merge step that
    # trips over expired fragment URLs.
    return f"best[height<={h}]/bestvideo[height<={h}]+bestaudio/best"


def build_format_expression(quality: str, attempt: int = 1) -> str:
    """
    yt-dlp --format value for a quality label ("Best", "1080p", ...).
    Unrecognized labels fall back to the 720p expression.
    """
    label = (quality or "").strip().lower()
    if label == "best":
        return BEST_FORMAT

    m = _HEIGHT_RE.match(label)
    if not m:
        logger.warning("Unrecognized quality %r; falling back to %dp",
                       quality, DEFAULT_QUALITY_HEIGHT)
        return _height_format(DEFAULT_QUALITY_HEIGHT)

    height = int(m.group(1))
    if attempt > 1:
        return _premerged_format(height)
    return _height_format(height)


# ── Error classification ─────────────────────────────────────────────

# (all of, any of, code, user-facing message); first match wins
_FETCH_ERROR_RULES = [
    ((), ("HTTP Error 429", "Too Many Requests"), ErrorCode.RATE_LIMITED,
     "YouTube has temporarily blocked downloads from your IP. "
     "Please wait a few hours before trying again."),
    ((), ("Sign in to confirm you're not a bot",), ErrorCode.RATE_LIMITED,
     "YouTube is requiring verification. This usually means too many downloads. "
     "Please wait before trying again."),
    (("fragment",), ("HTTP Error 403", "100%"), ErrorCode.FRAGMENT_EXPIRED,
     "Download completed but YouTube's access tokens expired. "
     "This is a temporary issue, please try again in a few seconds."),
    (("100%", "ERROR"), (), ErrorCode.FRAGMENT_EXPIRED,
     "Download completed but YouTube's access tokens expired. "
     "This is a temporary issue, please try again in a few seconds."),
    (("fragment", "not found"), (), ErrorCode.DOWNLOAD_FAILED,
     "The video stream was interrupted. Please try again with a lower quality "
     "setting (720p recommended)."),
    (("[Merger]", "ERROR"), (), ErrorCode.DOWNLOAD_FAILED,
     "Failed to merge video and audio streams. Please try again with a "
     "different quality setting."),
    (("ffmpeg", "Conversion failed"), (), ErrorCode.DOWNLOAD_FAILED,
     "FFmpeg failed to process the video. Please try a different video or "
     "quality setting."),
    ((), ("Sign in to confirm your age", "age-restricted"), ErrorCode.RESTRICTED_CONTENT,
     "This video is age-restricted. YouTube requires sign-in which is not supported."),
    ((), ("members-only",), ErrorCode.RESTRICTED_CONTENT,
     "This video is for members only and cannot be downloaded."),
    ((), ("Private video",), ErrorCode.VIDEO_UNAVAILABLE,
     "This video is private and cannot be downloaded."),
    ((), ("Video unavailable",), ErrorCode.VIDEO_UNAVAILABLE,
     "This video is unavailable or has been removed."),
    ((), ("geo-restricted", "not available in your country"), ErrorCode.GEO_BLOCKED,
     "This video is not available in your region."),
    ((), ("copyright",), ErrorCode.VIDEO_UNAVAILABLE,
     "This video has been blocked due to copyright."),
    ((), ("HTTP Error 404",), ErrorCode.VIDEO_UNAVAILABLE,
     "Video not found. Please check the URL."),
    ((), ("No video formats found",), ErrorCode.RESTRICTED_CONTENT,
     "No downloadable video formats found. The video may be restricted."),
    ((), ("HTTP Error 403",), ErrorCode.DOWNLOAD_FAILED,
     "Access denied. The video may be restricted or removed."),
    ((), ("Unable to download webpage", "Connection reset", "timed out",
          "Temporary failure in name resolution", "Network is unreachable"),
     ErrorCode.NETWORK_TRANSIENT,
     "Network error while contacting YouTube. Check your connection and try again."),
]


def _matches(output: str, all_of: tuple, any_of: tuple) -> bool:
    if not all(s in output for s in all_of):
        return False
    return not any_of or any(s in output for s in any_of)


def _last_error_line(output: str) -> str | None:
    idx = output.rfind("ERROR:")
    if idx < 0:
        return None
    line = output[idx + len("ERROR:"):].strip().splitlines()
    msg = line[0].strip() if line else ""
    # drop the trailing URL for a cleaner message
    msg = msg.split("https://", 1)[0].strip()
    return msg or None


def classify_fetch_error(output: str) -> tuple[str, str]:
    """Map fetcher output to (error code, user-facing message)."""
    output = output or ""
    for all_of, any_of, code, message in _FETCH_ERROR_RULES:
        if _matches(output, all_of, any_of):
            return code, message
    return ErrorCode.DOWNLOAD_FAILED, _last_error_line(output) or "Download failed."


def describe_fetch_error(output: str) -> str:
    return classify_fetch_error(output)[1]


# ── Pipeline ─────────────────────────────────────────────────────────

class FetchPipeline:
    """Drives yt-dlp for one reference at a time."""

    def __init__(self, runner: ProcessRunner, ytdlp_path: Path,
                 ffmpeg_path: Path | None = None,
                 temp_dir: Path = TEMP_DOWNLOAD_DIR,
                 cleaner: DeferredCleaner | None = None,
                 launch_policy: RetryPolicy | None = None,
                 timeout: float = FETCH_TIMEOUT_SEC):
        self.runner = runner
        self.ytdlp_path = Path(ytdlp_path)
        self.ffmpeg_path = Path(ffmpeg_path) if ffmpeg_path else None
        self.temp_dir = Path(temp_dir)
        self.cleaner = cleaner or DeferredCleaner(runner=runner)
        self.launch_policy = launch_policy or RetryPolicy(
            max_attempts=LAUNCH_RETRY_ATTEMPTS,
            base_delay=LAUNCH_RETRY_BASE_DELAY_SEC,
            cap_delay=RETRY_CAP_DELAY_SEC,
            name="yt-dlp launch",
        )
        self.timeout = timeout

    def build_args(self, reference: str, quality: str, base: str, attempt: int = 1) -> list[str]:
        output_template = str(self.temp_dir / f"{base}.%(ext)s")
        args = ["--format", build_format_expression(quality, attempt)]
        if self.ffmpeg_path:
            args += ["--ffmpeg-location", str(self.ffmpeg_path)]
        args += [
            "--output", output_template,
            "--no-playlist",
            "--newline",
            "--progress",
            "--no-part",
            "--concurrent-fragments", "4",
            "--no-warnings",
        ]
        if attempt > 1:
            args += ["--retries", "10", "--fragment-retries", "10", "--retry-sleep", "3"]
        args.append(reference)
        return args

    def fetch(self, reference: str, quality: str, on_progress=None,
              cancel_token: CancelToken | None = None, attempt: int = 1) -> Path:
        """
        Download reference at quality into the temp directory.
        on_progress receives the download percentage (0-100).
        Returns the path of the produced media file.
        """
        validate_video_url(reference)
        self.temp_dir.mkdir(parents=True, exist_ok=True)
        base = uuid.uuid4().hex
        tracker = DownloadProgress()

        def on_output(text: str):
            percent = tracker.feed(text)
            if percent is not None and on_progress:
                on_progress(percent)

        spec = ProcessSpec(
            executable=str(self.ytdlp_path),
            args=tuple(self.build_args(reference, quality, base, attempt)),
            env=self._env(),
            timeout=self.timeout,
            on_output=on_output,
            combined_output=True,
        )

        logger.info("Fetching %s at %s (attempt %d)", reference, quality, attempt)
        try:
            running = self.launch_policy.call(self.runner.start, spec, cancel_token=cancel_token)
            result = running.wait(cancel_token)

            if not result.ok:
                output = result.stdout_text
                code, message = classify_fetch_error(output)
                logger.error("yt-dlp failed (rc=%s, %s): %s",
                             result.exit_code, code, output[-300:])
                raise FetchFailure(code, message, output=output[-_OUTPUT_TAIL_CHARS:])

            path = self._locate_output(base)
            if on_progress and (tracker.last or 0.0) < 100.0:
                on_progress(100.0)
            logger.info("Downloaded video: %s (%d bytes)", path, path.stat().st_size)
            return path
        except ProcessTimeout as e:
            raise FetchFailure(ErrorCode.PROCESS_TIMEOUT,
                               f"Download timed out after {int(self.timeout)} seconds") from e
        except RetryExhausted as e:
            raise FetchFailure(ErrorCode.LAUNCH_FAILED,
                               f"Could not start yt-dlp: {e.last_error}",
                               retryable=False) from e
        except LaunchFailure as e:
            raise FetchFailure(ErrorCode.LAUNCH_FAILED, e.message, retryable=False) from e
        except OutputMissing as e:
            raise FetchFailure(e.code, e.message, retryable=False) from e
        finally:
            self.cleaner.schedule_prefix(self.temp_dir, base)

    def _env(self) -> dict:
        # yt-dlp needs to find ffmpeg for merging
        extra = [str(p.parent) for p in (self.ffmpeg_path, self.ytdlp_path) if p]
        return minimal_env(self.runner.scratch_home, extra_paths=extra)

    def _locate_output(self, base: str) -> Path:
        produced = [
            p for p in self.temp_dir.glob(f"{base}*")
            if p.is_file() and p.suffix not in TEMP_SUFFIXES
        ]
        if not produced:
            raise OutputMissing("Download finished but no video file was found")
        # Prefer the merged <base>.<ext> over intermediate <base>.f137.mp4 files
        exact = [p for p in produced if p.stem == base]
        candidates = exact or produced
        return max(candidates, key=lambda p: p.stat().st_size)
