"""
YouTube metadata fetching via yt-dlp --dump-json.
"""

import json
import logging
from pathlib import Path

from clipcutter.core.cache_store import MetadataStore
from clipcutter.core.constants import ErrorCode, METADATA_TIMEOUT_SEC
from clipcutter.core.error_codes import JobError
from clipcutter.core.models import ProcessSpec
from clipcutter.core.process_runner import CancelToken, ProcessRunner
from clipcutter.core.security_utils import minimal_env
from clipcutter.core.thumbnails import ThumbnailFetcher
from clipcutter.core.url_parse import validate_video_url

logger = logging.getLogger(__name__)

# Subset of the yt-dlp dump kept in the metadata cache
PAYLOAD_FIELDS = (
    "id", "title", "duration", "uploader", "channel", "view_count",
    "upload_date", "thumbnail", "webpage_url", "width", "height",
)


def parse_video_info(output: str) -> dict:
    """
    Decode the JSON document yt-dlp prints. Falls back to the last line that
    decodes as a JSON object when other text is mixed into the output.
    """
    text = (output or "").strip()
    try:
        data = json.loads(text)
        if isinstance(data, dict):
            return data
    except json.JSONDecodeError:
        pass

    for line in reversed(text.splitlines()):
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data

    raise JobError(ErrorCode.METADATA_PARSE, "Failed to parse yt-dlp JSON output")


def summarize_video_info(data: dict) -> dict:
    payload = {k: data[k] for k in PAYLOAD_FIELDS if data.get(k) is not None}
    if "duration" in payload:
        payload["duration"] = float(payload["duration"])
    return payload


def classify_info_error(output: str) -> tuple[str, str]:
    lowered = (output or "").lower()
    if "private video" in lowered or "video unavailable" in lowered:
        return ErrorCode.VIDEO_UNAVAILABLE, "This video is unavailable or private."
    if "video not found" in lowered or "http error 404" in lowered:
        return ErrorCode.VIDEO_UNAVAILABLE, "Video not found. Please check the URL."
    if "sign in to confirm your age" in lowered or "age-restricted" in lowered:
        return ErrorCode.RESTRICTED_CONTENT, "This video is age-restricted."
    if "geo" in lowered and "block" in lowered:
        return ErrorCode.GEO_BLOCKED, "This video is not available in your region."
    if "copyright" in lowered:
        return ErrorCode.VIDEO_UNAVAILABLE, "This video has been blocked due to copyright."
    return ErrorCode.NETWORK_TRANSIENT, f"yt-dlp metadata fetch failed: {output[-200:].strip()}"


def get_video_duration(metadata: dict) -> float:
    """Get video duration in seconds from metadata."""
    return float(metadata.get('duration') or 0)


class VideoInfoService:
    """Loads descriptive metadata, serving repeats from the MetadataStore."""

    def __init__(self, runner: ProcessRunner, ytdlp_path: Path,
                 metadata_store: MetadataStore | None = None,
                 thumbnails: ThumbnailFetcher | None = None,
                 timeout: float = METADATA_TIMEOUT_SEC):
        self.runner = runner
        self.ytdlp_path = Path(ytdlp_path)
        self.metadata_store = metadata_store
        self.thumbnails = thumbnails
        self.timeout = timeout

    def load(self, reference: str, cancel_token: CancelToken | None = None) -> dict:
        video_id = validate_video_url(reference)

        if self.metadata_store:
            hit = self.metadata_store.lookup(video_id)
            if hit:
                logger.info("Metadata cache hit for %s", video_id)
                return self._with_thumbnail(hit.payload, hit.thumbnail_path)

        payload = summarize_video_info(self._dump_json(reference, cancel_token))
        payload.setdefault("id", video_id)

        thumbnail, ext = None, "jpg"
        if self.thumbnails and payload.get("thumbnail"):
            try:
                thumbnail, ext = self.thumbnails.fetch(payload["thumbnail"], cancel_token=cancel_token)
            except JobError as e:
                if e.code == ErrorCode.PROCESS_CANCELLED:
                    raise
                logger.warning("Thumbnail for %s unavailable: %s", video_id, e)

        if self.metadata_store:
            entry = self.metadata_store.put(video_id, payload, thumbnail=thumbnail, thumbnail_ext=ext)
            if entry:
                return self._with_thumbnail(entry.payload, entry.thumbnail_path)
        return dict(payload)

    def _dump_json(self, reference: str, cancel_token: CancelToken | None) -> dict:
        spec = ProcessSpec(
            executable=str(self.ytdlp_path),
            args=("--dump-json", "--no-playlist", "--no-warnings", reference),
            env=minimal_env(self.runner.scratch_home),
            timeout=self.timeout,
        )
        result = self.runner.run(spec, cancel_token)
        if not result.ok:
            code, message = classify_info_error(result.stderr_text or result.stdout_text)
            raise JobError(code, message)
        return parse_video_info(result.stdout_text)

    @staticmethod
    def _with_thumbnail(payload: dict, thumbnail_path: str | None) -> dict:
        info = dict(payload)
        if thumbnail_path:
            info["thumbnail_path"] = thumbnail_path
        return info
