"""
Shared constants for ClipCutter.
Defaults and error codes, imported by every other module.
"""

import pathlib
import tempfile

# ── Application identity ──────────────────────────────────────────────
APP_NAME = "ClipCutter"
APP_VERSION = "1.0.0"

# ── Filesystem paths ─────────────────────────────────────────────────
HOME = pathlib.Path.home()

DEFAULT_OUTPUT_DIR = HOME / "Downloads"
APP_SUPPORT_DIR = HOME / "Library" / "Application Support" / APP_NAME
APP_CACHE_DIR = APP_SUPPORT_DIR / "cache"
APP_BIN_DIR = APP_SUPPORT_DIR / "bin"
CONFIG_PATH = APP_SUPPORT_DIR / "config.json"
LOG_DIR = HOME / "Library" / "Logs" / APP_NAME

TEMP_DOWNLOAD_DIR = pathlib.Path(tempfile.gettempdir()) / APP_NAME
SCRATCH_HOME_DIR = pathlib.Path(tempfile.gettempdir()) / f"{APP_NAME}-home"

# Cache layout (relative to the cache root)
VIDEOS_DIRNAME = "videos"
METADATA_DIRNAME = "metadata"
CACHE_INDEX_FILENAME = "cache_index.json"
METADATA_INDEX_FILENAME = "metadata_index.json"
CACHED_VIDEO_STEM = "video"
CACHED_THUMBNAIL_STEM = "thumbnail"

# ── Job status values ─────────────────────────────────────────────────
class ClipStatus:
    PENDING = "pending"
    FETCHING = "fetching"
    TRANSCODING = "transcoding"
    COMPLETE = "complete"
    FAILED = "failed"

# ── Error codes ───────────────────────────────────────────────────────
class ErrorCode:
    # Non-retryable
    INVALID_URL = "ERR_INVALID_URL"
    INVALID_TIME = "ERR_INVALID_TIME"
    INVALID_TIME_RANGE = "ERR_INVALID_TIME_RANGE"
    INVALID_ARGUMENT = "ERR_INVALID_ARGUMENT"
    BINARY_NOT_FOUND = "ERR_BINARY_NOT_FOUND"
    LAUNCH_FAILED = "ERR_LAUNCH_FAILED"
    PROCESS_CANCELLED = "ERR_PROCESS_CANCELLED"
    NON_ZERO_EXIT = "ERR_NON_ZERO_EXIT"
    OUTPUT_MISSING = "ERR_OUTPUT_MISSING"
    OUTPUT_TOO_SMALL = "ERR_OUTPUT_TOO_SMALL"
    SOURCE_MISSING = "ERR_SOURCE_MISSING"
    CACHE_INDEX_CORRUPT = "ERR_CACHE_INDEX_CORRUPT"
    RETRY_EXHAUSTED = "ERR_RETRY_EXHAUSTED"
    VIDEO_UNAVAILABLE = "ERR_VIDEO_UNAVAILABLE"
    GEO_BLOCKED = "ERR_GEO_BLOCKED"
    RESTRICTED_CONTENT = "ERR_RESTRICTED_CONTENT"
    RATE_LIMITED = "ERR_RATE_LIMITED"
    METADATA_PARSE = "ERR_METADATA_PARSE"
    CLIP_FAILED = "ERR_CLIP_FAILED"
    INSUFFICIENT_CREDITS = "ERR_INSUFFICIENT_CREDITS"
    LICENSE_INVALID = "ERR_LICENSE_INVALID"
    UNEXPECTED = "ERR_UNEXPECTED"

    # Retryable
    PROCESS_TIMEOUT = "ERR_PROCESS_TIMEOUT"
    DOWNLOAD_FAILED = "ERR_DOWNLOAD_FAILED"
    FRAGMENT_EXPIRED = "ERR_FRAGMENT_EXPIRED"
    NETWORK_TRANSIENT = "ERR_NETWORK_TRANSIENT"
    THUMBNAIL_FAILED = "ERR_THUMBNAIL_FAILED"

RETRYABLE_ERRORS = {
    ErrorCode.PROCESS_TIMEOUT,
    ErrorCode.DOWNLOAD_FAILED,
    ErrorCode.FRAGMENT_EXPIRED,
    ErrorCode.NETWORK_TRANSIENT,
    ErrorCode.THUMBNAIL_FAILED,
}

# Codes worth re-running the whole fetch stage for
FETCH_STAGE_RETRY_ERRORS = {
    ErrorCode.FRAGMENT_EXPIRED,
    ErrorCode.NETWORK_TRANSIENT,
}

# ── Process execution ────────────────────────────────────────────────
SAFE_PATH = "/usr/bin:/bin"
ALLOWED_ENV_KEYS = frozenset({"PATH", "HOME", "TMPDIR", "LANG", "LC_ALL"})
DEFAULT_PROCESS_TIMEOUT_SEC = 120
KILL_GRACE_SEC = 5.0
READ_CHUNK_BYTES = 4096
OUTPUT_DRAIN_TIMEOUT_SEC = 2.0
CALLBACK_DRAIN_TIMEOUT_SEC = 2.0

FETCH_TIMEOUT_SEC = 900          # 15 minutes
CLIP_TIMEOUT_SEC = 300           # 5 minutes
METADATA_TIMEOUT_SEC = 30
VERSION_PROBE_TIMEOUT_SEC = 10

# ── Retry policy ──────────────────────────────────────────────────────
RETRY_MAX_ATTEMPTS = 3
RETRY_BASE_DELAY_SEC = 2.0
RETRY_CAP_DELAY_SEC = 5.0
LAUNCH_RETRY_ATTEMPTS = 3
LAUNCH_RETRY_BASE_DELAY_SEC = 0.5

# ── Cache defaults ────────────────────────────────────────────────────
CACHE_TTL_HOURS = 24
CACHE_MAX_BYTES = 5 * 1024 * 1024 * 1024   # 5 GB
CACHE_MAX_ENTRIES = 1000
METADATA_TTL_HOURS = 24
METADATA_MAX_ENTRIES = 1000
CACHE_SWEEP_INTERVAL_SEC = 3600

# ── Temporary downloads ──────────────────────────────────────────────
TEMP_CLEANUP_DELAY_SEC = 300     # 5 minutes
STALE_TEMP_AGE_SEC = 7200        # 2 hours
TEMP_SUFFIXES = (".part", ".ytdl", ".temp")

# ── Output verification ──────────────────────────────────────────────
MIN_OUTPUT_BYTES = 1000
OUTPUT_FILENAME_PREFIX = APP_NAME

# ── Progress mapping ─────────────────────────────────────────────────
FETCH_PROGRESS_SHARE = 0.5
PROGRESS_BUFFER_CHARS = 4096

# ── Quality labels ───────────────────────────────────────────────────
AVAILABLE_QUALITIES = ["360p", "480p", "720p", "1080p", "Best"]
DEFAULT_QUALITY = "720p"
DEFAULT_QUALITY_HEIGHT = 720

# ── Input allow-lists ────────────────────────────────────────────────
TIME_CHARS = frozenset("0123456789:.")
FILTER_CHARS = frozenset(
    "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
    "=:,()*/+-_.\\"
)

# ── URL validation ───────────────────────────────────────────────────
MAX_URL_LEN = 2048
VALID_VIDEO_HOSTS = {"youtube.com", "www.youtube.com", "youtu.be", "m.youtube.com"}
SUSPICIOUS_URL_PATTERNS = ("javascript:", "data:", "file:", "ftp:")
YOUTUBE_URL_PATTERNS = [
    r'(?:https?://)?(?:www\.)?youtube\.com/watch\?v=([a-zA-Z0-9_-]{11})',
    r'(?:https?://)?youtu\.be/([a-zA-Z0-9_-]{11})',
    r'(?:https?://)?(?:www\.)?youtube\.com/embed/([a-zA-Z0-9_-]{11})',
    r'(?:https?://)?(?:www\.)?youtube\.com/v/([a-zA-Z0-9_-]{11})',
    r'(?:https?://)?(?:www\.)?youtube\.com/shorts/([a-zA-Z0-9_-]{11})',
    r'(?:https?://)?m\.youtube\.com/watch\?v=([a-zA-Z0-9_-]{11})',
]

# ── Tool discovery ───────────────────────────────────────────────────
YTDLP_BINARY = "yt-dlp"
FFMPEG_BINARY = "ffmpeg"
HOMEBREW_PATHS = [
    "/opt/homebrew/bin",          # Apple Silicon default
    "/usr/local/bin",             # Intel Mac default
]

# ── Thumbnails ───────────────────────────────────────────────────────
THUMBNAIL_TIMEOUT_SEC = 15
THUMBNAIL_MAX_BYTES = 5 * 1024 * 1024
THUMBNAIL_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
}

# Characters forbidden in file names (macOS + safety)
UNSAFE_FILENAME_CHARS = r'[<>:"/\\|?*\x00-\x1f]'
