"""
Progress extraction from fetcher/transcoder output.

The parse_* functions are pure: text in, value or None out. Unmatched text is
"no signal", never an error. The trackers hold a rolling buffer of recent
output because a pattern may be split across two deliveries, and they only
report values that move forward.
"""

import re

from clipcutter.core.constants import PROGRESS_BUFFER_CHARS

_DURATION_RE = re.compile(r"Duration:\s*(\d{1,2}):(\d{2}):(\d{2}(?:\.\d+)?)")
_POSITION_RE = re.compile(r"time=\s*(\d{1,2}):(\d{2}):(\d{2}(?:\.\d+)?)")
_DOWNLOAD_RE = re.compile(r"\[download\]\s+(\d+(?:\.\d+)?)%")


def _to_seconds(h: str, m: str, s: str) -> float:
    return int(h) * 3600 + int(m) * 60 + float(s)


def parse_duration(text: str) -> float | None:
    """Total duration in seconds from a transcoder 'Duration: HH:MM:SS.ff' line."""
    m = _DURATION_RE.search(text or "")
    if not m:
        return None
    return _to_seconds(*m.groups())


def parse_position(text: str) -> float | None:
    """Latest 'time=HH:MM:SS.ff' position in seconds."""
    last = None
    for last in _POSITION_RE.finditer(text or ""):
        pass
    if last is None:
        return None
    return _to_seconds(*last.groups())


def parse_download_percent(text: str) -> float | None:
    """Latest '[download]  42.0%' value, clamped to 0-100."""
    last = None
    for last in _DOWNLOAD_RE.finditer(text or ""):
        pass
    if last is None:
        return None
    return min(max(float(last.group(1)), 0.0), 100.0)


def to_fraction(position: float, total: float) -> float | None:
    """position/total clamped to [0, 1]; None when total is unknown."""
    if not total or total <= 0:
        return None
    position = min(max(position, 0.0), total)
    return position / total


class _RollingBuffer:
    def __init__(self, limit: int = PROGRESS_BUFFER_CHARS):
        self.limit = limit
        self.text = ""

    def append(self, chunk: str) -> str:
        self.text = (self.text + chunk)[-self.limit:]
        return self.text


class TranscodeProgress:
    """
    Turns transcoder stderr chunks into a 0-1 fraction.

    expected_total caps the parsed duration; a trimmed clip only runs for
    end - start seconds of the source.
    """

    def __init__(self, expected_total: float | None = None,
                 buffer_chars: int = PROGRESS_BUFFER_CHARS):
        self.expected_total = expected_total
        self.total: float | None = None
        self.last: float | None = None
        self._buffer = _RollingBuffer(buffer_chars)

    def feed(self, chunk: str) -> float | None:
        """Returns a new, higher fraction or None."""
        text = self._buffer.append(chunk)

        if self.total is None:
            duration = parse_duration(text)
            if duration is not None:
                if self.expected_total:
                    duration = min(duration, self.expected_total)
                self.total = duration
            else:
                return None

        position = parse_position(text)
        if position is None:
            return None
        fraction = to_fraction(position, self.total)
        return self._advance(fraction)

    def _advance(self, value: float | None) -> float | None:
        if value is None:
            return None
        if self.last is not None and value <= self.last:
            return None
        self.last = value
        return value


class DownloadProgress:
    """Turns fetcher output chunks into a 0-100 percentage."""

    def __init__(self, buffer_chars: int = PROGRESS_BUFFER_CHARS):
        self.last: float | None = None
        self._buffer = _RollingBuffer(buffer_chars)

    def feed(self, chunk: str) -> float | None:
        percent = parse_download_percent(self._buffer.append(chunk))
        if percent is None:
            return None
        if self.last is not None and percent <= self.last:
            return None
        self.last = percent
        return percent
