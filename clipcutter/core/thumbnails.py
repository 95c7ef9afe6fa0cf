"""
Thumbnail download over HTTPS.
Transient failures (timeouts, connection errors, 429/5xx) are retried by a
RetryPolicy; anything else fails on the first attempt.
"""

import logging
import requests

from clipcutter.core.constants import (
    ErrorCode, THUMBNAIL_TIMEOUT_SEC, THUMBNAIL_MAX_BYTES, THUMBNAIL_EXTENSIONS,
)
from clipcutter.core.error_codes import JobError
from clipcutter.core.retry import RetryPolicy

logger = logging.getLogger(__name__)

_CHUNK_BYTES = 64 * 1024


class ThumbnailFetcher:
    """Fetches a video's thumbnail image for the metadata cache."""

    def __init__(self, session: requests.Session | None = None,
                 timeout: float = THUMBNAIL_TIMEOUT_SEC,
                 max_bytes: int = THUMBNAIL_MAX_BYTES,
                 policy: RetryPolicy | None = None):
        self.session = session or requests.Session()
        self.timeout = timeout
        self.max_bytes = max_bytes
        self.policy = policy or RetryPolicy(name="thumbnail download")

    def fetch(self, url: str, cancel_token=None) -> tuple[bytes, str]:
        """Returns (image bytes, file extension)."""
        return self.policy.call(self._fetch_once, url, cancel_token=cancel_token)

    def _fetch_once(self, url: str) -> tuple[bytes, str]:
        if not url or not url.startswith("https://"):
            raise JobError(ErrorCode.INVALID_ARGUMENT,
                           f"Refusing non-HTTPS thumbnail URL: {url[:100]!r}")
        try:
            resp = self.session.get(url, timeout=self.timeout, stream=True)
        except requests.exceptions.Timeout:
            raise JobError(ErrorCode.THUMBNAIL_FAILED,
                           "Thumbnail request timed out", retryable=True)
        except requests.exceptions.ConnectionError:
            raise JobError(ErrorCode.NETWORK_TRANSIENT,
                           "Network error fetching thumbnail", retryable=True)
        except requests.exceptions.RequestException as e:
            raise JobError(ErrorCode.THUMBNAIL_FAILED,
                           f"Thumbnail request failed: {e}", retryable=False)

        with resp:
            if resp.status_code == 429 or resp.status_code >= 500:
                raise JobError(ErrorCode.THUMBNAIL_FAILED,
                               f"Thumbnail server returned {resp.status_code}", retryable=True)
            if resp.status_code != 200:
                raise JobError(ErrorCode.THUMBNAIL_FAILED,
                               f"Thumbnail server returned {resp.status_code}", retryable=False)

            content_type = resp.headers.get("Content-Type", "").split(";")[0].strip().lower()
            ext = THUMBNAIL_EXTENSIONS.get(content_type)
            if ext is None:
                raise JobError(ErrorCode.THUMBNAIL_FAILED,
                               f"Unexpected thumbnail type {content_type!r}", retryable=False)

            data = bytearray()
            for chunk in resp.iter_content(chunk_size=_CHUNK_BYTES):
                data.extend(chunk)
                if len(data) > self.max_bytes:
                    raise JobError(ErrorCode.THUMBNAIL_FAILED,
                                   f"Thumbnail larger than {self.max_bytes} bytes", retryable=False)

        logger.debug("Fetched thumbnail %s (%d bytes)", url, len(data))
        return bytes(data), ext
