"""
Application configuration manager.
Stores settings in a JSON file under Application Support.
"""

import json
import logging
from pathlib import Path

from clipcutter.core.constants import (
    CONFIG_PATH, DEFAULT_OUTPUT_DIR, APP_CACHE_DIR, AVAILABLE_QUALITIES, DEFAULT_QUALITY,
    CACHE_TTL_HOURS, CACHE_MAX_BYTES, CACHE_MAX_ENTRIES,
    METADATA_TTL_HOURS, METADATA_MAX_ENTRIES, TEMP_CLEANUP_DELAY_SEC,
)

# Validation bounds
_TTL_HOURS_MIN = 1
_TTL_HOURS_MAX = 24 * 30
_CACHE_GB_MIN = 0.5
_CACHE_GB_MAX = 500
_MAX_ENTRIES_MIN = 1
_MAX_ENTRIES_MAX = 100_000
_CLEANUP_DELAY_MIN = 0
_CLEANUP_DELAY_MAX = 3600

_GB = 1024 ** 3

logger = logging.getLogger(__name__)

_DEFAULTS = {
    'output_dir': str(DEFAULT_OUTPUT_DIR),
    'cache_dir': str(APP_CACHE_DIR),
    'default_quality': DEFAULT_QUALITY,
    'cache_enabled': True,
    'cache_thumbnails': True,
    'cache_ttl_hours': CACHE_TTL_HOURS,
    'cache_max_gb': CACHE_MAX_BYTES / _GB,
    'cache_max_entries': CACHE_MAX_ENTRIES,
    'metadata_ttl_hours': METADATA_TTL_HOURS,
    'metadata_max_entries': METADATA_MAX_ENTRIES,
    'temp_cleanup_delay_sec': TEMP_CLEANUP_DELAY_SEC,
    'ytdlp_path': None,
    'ffmpeg_path': None,
}

# key -> (type, minimum, maximum)
_NUMERIC_BOUNDS = {
    'cache_ttl_hours': (float, _TTL_HOURS_MIN, _TTL_HOURS_MAX),
    'metadata_ttl_hours': (float, _TTL_HOURS_MIN, _TTL_HOURS_MAX),
    'cache_max_gb': (float, _CACHE_GB_MIN, _CACHE_GB_MAX),
    'cache_max_entries': (int, _MAX_ENTRIES_MIN, _MAX_ENTRIES_MAX),
    'metadata_max_entries': (int, _MAX_ENTRIES_MIN, _MAX_ENTRIES_MAX),
    'temp_cleanup_delay_sec': (float, _CLEANUP_DELAY_MIN, _CLEANUP_DELAY_MAX),
}


class AppConfig:
    """Manages application configuration stored as JSON."""

    def __init__(self, config_path: Path | None = None):
        self.path = config_path or CONFIG_PATH
        self._data: dict = {}
        self.load()

    def load(self):
        """Load config from disk, merging with defaults."""
        self._data = dict(_DEFAULTS)
        if self.path.exists():
            try:
                with open(self.path, 'r') as f:
                    saved = json.load(f)
            except (OSError, ValueError) as e:
                logger.warning("Failed to load config: %s", e)
                return
            if not isinstance(saved, dict):
                logger.warning("Ignoring config file %s: not a JSON object", self.path)
                return
            for key, value in saved.items():
                self._data[key] = self._validate(key, value)

    def save(self):
        """Persist config to disk."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, 'w') as f:
            json.dump(self._data, f, indent=2)

    def get(self, key: str, default=None):
        return self._data.get(key, default)

    def set(self, key: str, value):
        value = self._validate(key, value)
        self._data[key] = value
        self.save()

    def _validate(self, key: str, value):
        """Validate and coerce config values to safe ranges."""
        if key in _NUMERIC_BOUNDS:
            kind, lo, hi = _NUMERIC_BOUNDS[key]
            try:
                value = kind(value)
            except (TypeError, ValueError):
                logger.warning("Invalid %s %r, using default", key, value)
                return _DEFAULTS[key]
            return max(lo, min(hi, value))

        if key == 'default_quality':
            if value not in AVAILABLE_QUALITIES:
                logger.warning("Invalid default_quality %r, using %s", value, DEFAULT_QUALITY)
                return DEFAULT_QUALITY

        if key in ('cache_enabled', 'cache_thumbnails'):
            return bool(value)

        if key in ('ytdlp_path', 'ffmpeg_path'):
            return str(value) if value else None

        return value

    def as_dict(self) -> dict:
        return dict(self._data)

    @property
    def output_dir(self) -> str:
        return self._data.get('output_dir', str(DEFAULT_OUTPUT_DIR))

    @output_dir.setter
    def output_dir(self, value: str):
        self.set('output_dir', value)

    @property
    def cache_dir(self) -> str:
        return self._data.get('cache_dir', str(APP_CACHE_DIR))

    @property
    def default_quality(self) -> str:
        return self._data.get('default_quality', DEFAULT_QUALITY)

    @default_quality.setter
    def default_quality(self, value: str):
        self.set('default_quality', value)

    @property
    def cache_enabled(self) -> bool:
        return self._data.get('cache_enabled', True)

    @cache_enabled.setter
    def cache_enabled(self, value: bool):
        self.set('cache_enabled', value)

    @property
    def cache_thumbnails(self) -> bool:
        return self._data.get('cache_thumbnails', True)

    @property
    def cache_ttl_sec(self) -> float:
        return self._data['cache_ttl_hours'] * 3600

    @property
    def cache_max_bytes(self) -> int:
        return int(self._data['cache_max_gb'] * _GB)

    @property
    def cache_max_entries(self) -> int:
        return self._data['cache_max_entries']

    @property
    def metadata_ttl_sec(self) -> float:
        return self._data['metadata_ttl_hours'] * 3600

    @property
    def metadata_max_entries(self) -> int:
        return self._data['metadata_max_entries']

    @property
    def temp_cleanup_delay_sec(self) -> float:
        return self._data['temp_cleanup_delay_sec']

    @property
    def ytdlp_path(self) -> str | None:
        return self._data.get('ytdlp_path')

    @property
    def ffmpeg_path(self) -> str | None:
        return self._data.get('ffmpeg_path')
