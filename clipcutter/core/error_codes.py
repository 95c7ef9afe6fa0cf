"""
Standardised error handling for ClipCutter.

Every failure raised by the engine is a JobError carrying a string code from
constants.ErrorCode. The subclasses name the failure kinds callers branch on.
"""

from clipcutter.core.constants import ErrorCode, RETRYABLE_ERRORS


class JobError(Exception):
    """Raised when a job encounters a known error condition."""

    def __init__(self, code: str, message: str, retryable: bool | None = None):
        self.code = code
        self.message = message
        # auto-detect retryable from code if not explicitly set
        self.retryable = retryable if retryable is not None else (code in RETRYABLE_ERRORS)
        super().__init__(f"[{code}] {message}")


# ── Process-level failures ────────────────────────────────────────────

class LaunchFailure(JobError):
    """The executable could not be started."""

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(ErrorCode.LAUNCH_FAILED, message, retryable=retryable)


class ProcessTimeout(JobError):
    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(ErrorCode.PROCESS_TIMEOUT,
                         f"Process timed out after {int(timeout)} seconds")


class ProcessCancelled(JobError):
    def __init__(self, message: str = "Process was cancelled"):
        super().__init__(ErrorCode.PROCESS_CANCELLED, message, retryable=False)


class NonZeroExit(JobError):
    """The process ran to completion but reported failure."""

    def __init__(self, exit_code: int, stdout: bytes = b"", stderr: bytes = b""):
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        tail = (stderr or stdout).decode("utf-8", errors="replace")[-300:]
        super().__init__(ErrorCode.NON_ZERO_EXIT,
                         f"Process failed with exit code {exit_code}: {tail}")


class OutputMissing(JobError):
    def __init__(self, message: str):
        super().__init__(ErrorCode.OUTPUT_MISSING, message, retryable=False)


class OutputTooSmall(JobError):
    def __init__(self, path, size: int, minimum: int):
        self.path = path
        self.size = size
        self.minimum = minimum
        super().__init__(ErrorCode.OUTPUT_TOO_SMALL,
                         f"Output {path} is {size} bytes (minimum {minimum})",
                         retryable=False)


# ── Store failures ────────────────────────────────────────────────────

class CacheIndexCorrupt(JobError):
    def __init__(self, path, reason: str):
        self.path = path
        super().__init__(ErrorCode.CACHE_INDEX_CORRUPT,
                         f"Cache index {path} unreadable: {reason}",
                         retryable=False)


# ── Retry failures ────────────────────────────────────────────────────

class RetryExhausted(JobError):
    """All attempts were consumed; wraps the last underlying error."""

    def __init__(self, last_error: BaseException, attempts: int):
        self.last_error = last_error
        self.attempts = attempts
        code = getattr(last_error, "code", ErrorCode.RETRY_EXHAUSTED)
        super().__init__(code,
                         f"Failed after {attempts} attempt(s): {last_error}",
                         retryable=False)


# ── Stage failures ────────────────────────────────────────────────────

class FetchFailure(JobError):
    """Raised by the fetch pipeline; output holds the tool's diagnostics."""

    def __init__(self, code: str, message: str, output: str = "",
                 retryable: bool | None = None):
        self.output = output
        super().__init__(code, message, retryable=retryable)


class ClipFailure(JobError):
    """Raised by the clip pipeline; output holds the tool's diagnostics."""

    def __init__(self, code: str, message: str, output: str = "",
                 retryable: bool | None = None):
        self.output = output
        super().__init__(code, message, retryable=retryable)


def is_retryable(code: str) -> bool:
    return code in RETRYABLE_ERRORS
