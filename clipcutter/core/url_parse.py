"""
YouTube URL parsing and validation.
"""

import re
from urllib.parse import urlparse, parse_qs

from clipcutter.core.constants import (
    YOUTUBE_URL_PATTERNS, MAX_URL_LEN, VALID_VIDEO_HOSTS, SUSPICIOUS_URL_PATTERNS,
)
from clipcutter.core.error_codes import JobError, ErrorCode


def extract_video_id(url: str) -> str | None:
    """
    Extract the 11-character video_id from a YouTube URL.
    Returns None if the URL is not a valid YouTube URL.
    """
    url = url.strip()
    if not url:
        return None

    # Try regex patterns
    for pattern in YOUTUBE_URL_PATTERNS:
        m = re.search(pattern, url)
        if m:
            return m.group(1)

    # Fallback: parse query string for 'v' parameter
    parsed = urlparse(url)
    if 'youtube.com' in parsed.netloc or 'youtu.be' in parsed.netloc:
        qs = parse_qs(parsed.query)
        v = qs.get('v', [None])[0]
        if v and re.match(r'^[a-zA-Z0-9_-]{11}$', v):
            return v

    return None


def is_safe_video_url(url: str) -> bool:
    """
    Structural checks before a URL is handed to the fetcher:
    http(s) only, known hosts, bounded length, no control characters or
    embedded scheme tricks.
    """
    if not url or len(url) > MAX_URL_LEN:
        return False
    if any(c in url for c in ("\0", "\n", "\r")):
        return False

    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https"):
        return False
    if (parsed.hostname or "").lower() not in VALID_VIDEO_HOSTS:
        return False

    lowered = url.lower()
    # The scheme itself is "http(s):", so only look past it.
    rest = lowered.split("://", 1)[-1]
    return not any(p in rest for p in SUSPICIOUS_URL_PATTERNS)


def validate_video_url(url: str) -> str:
    """
    Validate a video URL and return the video_id (the content identifier).
    Raises JobError if invalid.
    """
    url = (url or "").strip()
    if not is_safe_video_url(url):
        raise JobError(ErrorCode.INVALID_URL, f"Not a valid YouTube URL: {url[:200]}")
    video_id = extract_video_id(url)
    if not video_id:
        raise JobError(ErrorCode.INVALID_URL, f"No video id in URL: {url[:200]}")
    return video_id
