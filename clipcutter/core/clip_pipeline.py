"""
Clip extraction using ffmpeg.

Trims [start, end) out of a local source file, optionally cropping to an
aspect ratio and rescaling to a target height. Output is written to a hidden
partial file and renamed into place only after it passes verification.
"""

import logging
import os
import re
from datetime import datetime
from pathlib import Path

from clipcutter.core.constants import (
    CLIP_TIMEOUT_SEC, DEFAULT_OUTPUT_DIR, FILTER_CHARS, MIN_OUTPUT_BYTES,
    OUTPUT_FILENAME_PREFIX, TIME_CHARS,
    LAUNCH_RETRY_ATTEMPTS, LAUNCH_RETRY_BASE_DELAY_SEC, RETRY_CAP_DELAY_SEC,
    ErrorCode,
)
from clipcutter.core.error_codes import (
    ClipFailure, JobError, LaunchFailure, OutputMissing, OutputTooSmall,
    ProcessTimeout, RetryExhausted,
)
from clipcutter.core.models import AspectRatio, ProcessSpec
from clipcutter.core.process_runner import CancelToken, ProcessRunner
from clipcutter.core.progress_parser import TranscodeProgress
from clipcutter.core.retry import RetryPolicy
from clipcutter.core.security_utils import (
    ensure_allowed_chars, minimal_env, sanitize_filename_part,
)

logger = logging.getLogger(__name__)

_TIMESTAMP_RE = re.compile(r"^(\d{1,2}):([0-5]\d):([0-5]\d)(\.\d{1,3})?$")
_MAX_TARGET_HEIGHT = 4320


def parse_timestamp(value: str) -> float:
    """'HH:MM:SS[.mmm]' -> seconds. Raises JobError(INVALID_TIME)."""
    text = (value or "").strip()
    try:
        ensure_allowed_chars(text, TIME_CHARS, "time")
    except JobError as e:
        raise JobError(ErrorCode.INVALID_TIME, e.message) from e
    m = _TIMESTAMP_RE.match(text)
    if not m:
        raise JobError(ErrorCode.INVALID_TIME, f"Time must be HH:MM:SS[.mmm], got {text!r}")
    h, mnt, s, frac = m.groups()
    return int(h) * 3600 + int(mnt) * 60 + int(s) + (float(frac) if frac else 0.0)


def build_filter_chain(aspect_ratio: AspectRatio = AspectRatio.ORIGINAL,
                       target_height: int | None = None) -> str | None:
    """Crop then scale, comma-joined; None when the frame is left untouched."""
    filters = []
    crop = AspectRatio(aspect_ratio).crop_filter
    if crop:
        filters.append(crop)
    if target_height is not None:
        if isinstance(target_height, bool) or not isinstance(target_height, int) \
                or not 0 < target_height <= _MAX_TARGET_HEIGHT:
            raise JobError(ErrorCode.INVALID_ARGUMENT,
                           f"Target height must be 1-{_MAX_TARGET_HEIGHT}, got {target_height!r}")
        filters.append(f"scale=-2:{target_height}")
    if not filters:
        return None
    return ensure_allowed_chars(",".join(filters), FILTER_CHARS, "filter")


def output_filename(start_time: str, end_time: str,
                    aspect_ratio: AspectRatio = AspectRatio.ORIGINAL,
                    ext: str = ".mp4", now: datetime | None = None) -> str:
    """ClipCutter_<yyyy-mm-dd_HH-MM-SS>_<start>_to_<end>[_<aspect>].<ext>"""
    stamp = (now or datetime.now()).strftime("%Y-%m-%d_%H-%M-%S")
    span = sanitize_filename_part(f"{start_time}_to_{end_time}")
    name = f"{OUTPUT_FILENAME_PREFIX}_{stamp}_{span}"
    suffix = AspectRatio(aspect_ratio).file_suffix
    if suffix:
        name += f"_{suffix}"
    return name + ext


def _partial_path(final: Path) -> Path:
    # Keep the extension so ffmpeg picks the right muxer
    return final.with_name(f".{final.stem}.partial{final.suffix}")


def _ffmpeg_error_summary(stderr: str) -> str:
    lines = [ln.strip() for ln in stderr.strip().splitlines() if ln.strip()]
    for ln in reversed(lines):
        if "Error" in ln or "Invalid" in ln or "failed" in ln:
            return ln[:300]
    return lines[-1][:300] if lines else "ffmpeg failed"


class ClipPipeline:
    """Drives ffmpeg for one clip at a time."""

    def __init__(self, runner: ProcessRunner, ffmpeg_path: Path,
                 output_dir: Path = DEFAULT_OUTPUT_DIR,
                 launch_policy: RetryPolicy | None = None,
                 timeout: float = CLIP_TIMEOUT_SEC):
        self.runner = runner
        self.ffmpeg_path = Path(ffmpeg_path)
        self.output_dir = Path(output_dir)
        self.launch_policy = launch_policy or RetryPolicy(
            max_attempts=LAUNCH_RETRY_ATTEMPTS,
            base_delay=LAUNCH_RETRY_BASE_DELAY_SEC,
            cap_delay=RETRY_CAP_DELAY_SEC,
            name="ffmpeg launch",
        )
        self.timeout = timeout

    def build_args(self, source: Path, start_time: str, end_time: str,
                   filters: str | None, destination: Path) -> list[str]:
        args = ["-i", str(source), "-ss", start_time, "-to", end_time]
        if filters:
            args += [
                "-map", "0:v:0", "-map", "0:a?",
                "-c:v", "libx264", "-c:a", "aac",
                "-preset", "medium", "-crf", "23",
                "-vf", filters,
            ]
        else:
            # Fast path: no re-encode. Only video and audio are mapped;
            # subtitle and data streams are dropped.
            args += ["-map", "0:v?", "-map", "0:a?", "-c", "copy"]
        args += ["-avoid_negative_ts", "make_zero", "-y", str(destination)]
        return args

    def clip(self, source_path: Path, start_time: str, end_time: str,
             aspect_ratio: AspectRatio = AspectRatio.ORIGINAL,
             target_height: int | None = None, on_progress=None,
             cancel_token: CancelToken | None = None,
             output_path: Path | None = None) -> Path:
        """
        Cut source_path to [start_time, end_time).
        on_progress receives a 0-1 fraction. Returns the final output path.
        """
        start_s = parse_timestamp(start_time)
        end_s = parse_timestamp(end_time)
        if start_s >= end_s:
            raise JobError(ErrorCode.INVALID_TIME_RANGE,
                           f"Start time {start_time} must be before end time {end_time}")

        filters = build_filter_chain(aspect_ratio, target_height)
        source = Path(source_path)
        if not source.is_file():
            raise ClipFailure(ErrorCode.SOURCE_MISSING, f"Source video not found: {source}")

        ext = ".mp4" if filters else (source.suffix or ".mp4")
        final = Path(output_path) if output_path else \
            self.output_dir / output_filename(start_time, end_time, aspect_ratio, ext)
        final.parent.mkdir(parents=True, exist_ok=True)
        partial = _partial_path(final)

        tracker = TranscodeProgress(expected_total=end_s - start_s)

        def on_error(text: str):
            fraction = tracker.feed(text)
            if fraction is not None and on_progress:
                on_progress(fraction)

        spec = ProcessSpec(
            executable=str(self.ffmpeg_path),
            args=tuple(self.build_args(source, start_time, end_time, filters, partial)),
            env=minimal_env(self.runner.scratch_home),
            timeout=self.timeout,
            on_error=on_error,
        )

        logger.info("Clipping %s [%s - %s] -> %s", source.name, start_time, end_time, final)
        try:
            running = self.launch_policy.call(self.runner.start, spec, cancel_token=cancel_token)
            result = running.wait(cancel_token)

            if not result.ok:
                stderr = result.stderr_text
                logger.error("ffmpeg failed (rc=%s): %s", result.exit_code, stderr[-300:])
                raise ClipFailure(ErrorCode.CLIP_FAILED,
                                  f"ffmpeg failed (rc={result.exit_code}): {_ffmpeg_error_summary(stderr)}",
                                  output=stderr[-2000:])

            self._verify(partial)
            os.replace(partial, final)
        except ProcessTimeout as e:
            raise ClipFailure(ErrorCode.PROCESS_TIMEOUT,
                              f"Clipping timed out after {int(self.timeout)} seconds") from e
        except RetryExhausted as e:
            raise ClipFailure(ErrorCode.LAUNCH_FAILED,
                              f"Could not start ffmpeg: {e.last_error}", retryable=False) from e
        except LaunchFailure as e:
            raise ClipFailure(ErrorCode.LAUNCH_FAILED, e.message, retryable=False) from e
        except (OutputMissing, OutputTooSmall) as e:
            raise ClipFailure(e.code, e.message, retryable=False) from e
        finally:
            partial.unlink(missing_ok=True)

        if on_progress and (tracker.last or 0.0) < 1.0:
            on_progress(1.0)
        logger.info("Clip written: %s (%d bytes)", final, final.stat().st_size)
        return final

    def _verify(self, partial: Path):
        if not partial.exists():
            raise OutputMissing("ffmpeg produced no output file")
        size = partial.stat().st_size
        if size < MIN_OUTPUT_BYTES:
            raise OutputTooSmall(partial, size, MIN_OUTPUT_BYTES)
