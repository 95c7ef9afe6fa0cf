"""
Diagnostics: tool discovery, version detection and system checks.
"""

import logging
import os
import shutil
from pathlib import Path

from clipcutter.core.constants import (
    APP_BIN_DIR, APP_CACHE_DIR, HOMEBREW_PATHS, TEMP_DOWNLOAD_DIR,
    VERSION_PROBE_TIMEOUT_SEC, YTDLP_BINARY, FFMPEG_BINARY, ErrorCode,
)
from clipcutter.core.error_codes import JobError, NonZeroExit
from clipcutter.core.models import ProcessSpec
from clipcutter.core.process_runner import ProcessRunner

logger = logging.getLogger(__name__)


def _is_executable(path: Path) -> bool:
    return path.is_file() and os.access(path, os.X_OK)


def find_binary(name: str, configured: str | None = None,
                search_dirs: list | None = None) -> Path | None:
    """
    Locate a tool: explicit path from config, the app's own bin/ folder,
    Homebrew prefixes, then PATH.
    """
    if configured:
        path = Path(configured).expanduser()
        if _is_executable(path):
            return path
        logger.warning("Configured %s path %s is not executable", name, path)

    dirs = search_dirs if search_dirs is not None else [APP_BIN_DIR, *HOMEBREW_PATHS]
    for d in dirs:
        candidate = Path(d) / name
        if _is_executable(candidate):
            return candidate

    found = shutil.which(name)
    return Path(found) if found else None


def require_binary(name: str, configured: str | None = None) -> Path:
    path = find_binary(name, configured)
    if path is None:
        raise JobError(ErrorCode.BINARY_NOT_FOUND, f"{name} not found. Install it or set its path in settings.")
    return path


def _probe_version(path: Path | None, flag: str, runner: ProcessRunner | None) -> str:
    if path is None:
        return "Not installed"
    runner = runner or ProcessRunner()
    try:
        result = runner.run(ProcessSpec(str(path), (flag,), timeout=VERSION_PROBE_TIMEOUT_SEC)).check()
    except NonZeroExit as e:
        return f"Error (rc={e.exit_code})"
    except JobError as e:
        return f"Error: {e.message}"
    lines = result.stdout_text.strip().splitlines()
    return lines[0] if lines else "Unknown"


def get_ytdlp_version(path: Path | None = None, runner: ProcessRunner | None = None) -> str:
    """Return yt-dlp version string, or error message."""
    return _probe_version(path or find_binary(YTDLP_BINARY), "--version", runner)


def get_ffmpeg_version(path: Path | None = None, runner: ProcessRunner | None = None) -> str:
    """Return the first line of `ffmpeg -version`, or error message."""
    return _probe_version(path or find_binary(FFMPEG_BINARY), "-version", runner)


def get_diagnostics(config=None, runner: ProcessRunner | None = None) -> dict:
    """Gather all diagnostic information."""
    ytdlp = find_binary(YTDLP_BINARY, config.ytdlp_path if config else None)
    ffmpeg = find_binary(FFMPEG_BINARY, config.ffmpeg_path if config else None)
    cache_dir = Path(config.cache_dir) if config else APP_CACHE_DIR
    return {
        "ytdlp_path": str(ytdlp) if ytdlp else None,
        "ytdlp_version": get_ytdlp_version(ytdlp, runner),
        "ffmpeg_path": str(ffmpeg) if ffmpeg else None,
        "ffmpeg_version": get_ffmpeg_version(ffmpeg, runner),
        "cache_dir": str(cache_dir),
        "temp_dir": str(TEMP_DOWNLOAD_DIR),
    }
