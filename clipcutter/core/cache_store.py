"""
Content-addressed on-disk caches for fetched media and video metadata.

Layout under the cache root:
    videos/<key>/video.<ext>          one fetched media file per entry
    cache_index.json                  key -> CacheEntry
    metadata/<key>/thumbnail.<ext>    optional thumbnail per entry
    metadata_index.json               key -> MetadataEntry

The JSON index is the only source of truth: an artifact that is not in the
index is never rediscovered. Every mutation happens under one lock, and the
index file is replaced atomically so a reader never sees a partial write.

Example:
    cache = CacheStore(root)
    entry = cache.put("dQw4w9WgXcQ", "720p", downloaded_path, metadata=info)
    hit = cache.lookup("dQw4w9WgXcQ", "720p")
"""

import hashlib
import json
import logging
import os
import re
import shutil
import stat
import tempfile
import threading
import time
import uuid
from pathlib import Path

from clipcutter.core.constants import (
    APP_CACHE_DIR, VIDEOS_DIRNAME, METADATA_DIRNAME,
    CACHE_INDEX_FILENAME, METADATA_INDEX_FILENAME,
    CACHED_VIDEO_STEM, CACHED_THUMBNAIL_STEM,
    CACHE_TTL_HOURS, CACHE_MAX_BYTES, CACHE_MAX_ENTRIES,
    METADATA_TTL_HOURS, METADATA_MAX_ENTRIES, CACHE_SWEEP_INTERVAL_SEC,
    ErrorCode,
)
from clipcutter.core.error_codes import CacheIndexCorrupt, JobError
from clipcutter.core.models import CacheEntry, MetadataEntry
from clipcutter.core.security_utils import is_within

logger = logging.getLogger(__name__)

STAGING_DIRNAME = ".staging"
_KEY_RE = re.compile(r"^[0-9a-f]{64}$")
METADATA_QUALITY_TAG = "metadata"


def derive_key(content_id: str, quality: str) -> str:
    """
    Stable cache key for (content id, quality). The pair is JSON-encoded
    before hashing so ("a_b", "c") and ("a", "b_c") never share an input.
    """
    material = json.dumps([content_id, quality], ensure_ascii=False)
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


def format_bytes(num: int) -> str:
    size = float(num)
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024 or unit == "GB":
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} GB"


class IndexedStore:
    """
    Shared machinery: in-memory index mirrored to a JSON file, lazy purge on
    read, eviction by size/count (oldest creation first) and TTL sweeps.
    Subclasses define the entry type and what "reachable" means for it.
    """

    entry_cls = None
    label = "cache"

    def __init__(self, root: Path, dirname: str, index_filename: str,
                 ttl_sec: float, max_entries: int, max_bytes: int | None = None,
                 clock=time.time, enabled: bool = True):
        self.root = Path(root)
        self.entries_dir = self.root / dirname
        self.index_path = self.root / index_filename
        self.staging_dir = self.root / STAGING_DIRNAME / dirname
        self.ttl_sec = ttl_sec
        self.max_entries = max_entries
        self.max_bytes = max_bytes
        self.clock = clock
        self.enabled = enabled

        self._lock = threading.RLock()
        self._index: dict = {}
        self._sweeper: threading.Thread | None = None
        self._sweeper_stop = threading.Event()

        self.entries_dir.mkdir(parents=True, exist_ok=True)
        self.staging_dir.mkdir(parents=True, exist_ok=True)
        with self._lock:
            self._load_index()
            self._prune_orphans()

    # ── Reads ─────────────────────────────────────────────────────────

    def get(self, key: str):
        """
        Entry for key if present, unexpired and backed by a reachable file.
        Anything else purges the entry and returns None.
        """
        if not self.enabled:
            return None
        with self._lock:
            entry = self._index.get(key)
            if entry is None:
                return None

            if entry.expires_at <= self.clock():
                reason = "expired"
            elif not self._is_reachable(entry):
                reason = "file missing or unreadable"
            else:
                return entry

            logger.info("Dropping %s entry %s for %s: %s",
                        self.label, key[:12], entry.content_id, reason)
            self._remove_locked(key)
            self._persist_after_purge()
            return None

    def entries(self) -> list:
        with self._lock:
            return list(self._index.values())

    @property
    def total_size(self) -> int:
        with self._lock:
            return sum(e.size for e in self._index.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._index)

    # ── Mutations ─────────────────────────────────────────────────────

    def remove(self, key: str) -> bool:
        with self._lock:
            if key not in self._index:
                return False
            self._remove_locked(key)
            self._save_index()
            return True

    def clear(self):
        logger.info("Clearing %s at %s", self.label, self.entries_dir)
        with self._lock:
            self._index.clear()
            shutil.rmtree(self.entries_dir, ignore_errors=True)
            self.entries_dir.mkdir(parents=True, exist_ok=True)
            self._save_index()

    def sweep_expired(self) -> int:
        """Remove every expired entry. Returns how many were removed."""
        with self._lock:
            now = self.clock()
            expired = [k for k, e in self._index.items() if e.expires_at <= now]
            for key in expired:
                self._remove_locked(key)
            if expired:
                self._save_index()
                logger.info("Removed %d expired %s entries", len(expired), self.label)
            return len(expired)

    def evict(self) -> list[str]:
        """Enforce the size and count caps. Returns the evicted keys."""
        with self._lock:
            evicted = self._evict_locked()
            if evicted:
                self._save_index()
            return evicted

    # ── Periodic TTL sweep ────────────────────────────────────────────

    def start_sweeper(self, interval_sec: float = CACHE_SWEEP_INTERVAL_SEC):
        if self._sweeper and self._sweeper.is_alive():
            return
        self._sweeper_stop.clear()
        self._sweeper = threading.Thread(
            target=self._sweep_loop, args=(interval_sec,),
            name=f"{self.label}-sweeper", daemon=True)
        self._sweeper.start()

    def stop_sweeper(self):
        self._sweeper_stop.set()
        if self._sweeper:
            self._sweeper.join(timeout=5)
            self._sweeper = None

    def _sweep_loop(self, interval_sec: float):
        while not self._sweeper_stop.wait(interval_sec):
            try:
                self.sweep_expired()
            except Exception as e:
                logger.error("%s sweep failed: %s", self.label, e, exc_info=True)

    # ── Subclass hooks ────────────────────────────────────────────────

    def _is_reachable(self, entry) -> bool:
        raise NotImplementedError

    def _artifact_paths(self, entry) -> list[Path]:
        raise NotImplementedError

    def _is_contained(self, key: str, entry) -> bool:
        """Key is one of ours and every file it names lives in its entry dir."""
        if key != entry.key or not _KEY_RE.match(key):
            return False
        entry_dir = self.entries_dir / key
        return all(is_within(entry_dir, p) for p in self._artifact_paths(entry))

    # ── Internals (call with the lock held) ───────────────────────────

    def _commit_locked(self, entry, staged: Path | None, final: Path | None):
        """Replace any previous entry for the key with entry, then evict."""
        self._remove_locked(entry.key)
        if staged is not None:
            final.parent.mkdir(parents=True, exist_ok=True)
            os.replace(staged, final)
        self._index[entry.key] = entry
        evicted = self._evict_locked()
        self._save_index()
        if entry.key in evicted:
            logger.warning("%s entry for %s (%s) exceeds the cache limits; not retained",
                           self.label, entry.content_id, format_bytes(entry.size))
            return None
        return entry

    def _remove_locked(self, key: str):
        entry = self._index.pop(key, None)
        entry_dir = self.entries_dir / key
        if entry_dir.exists():
            try:
                shutil.rmtree(entry_dir)
            except OSError as e:
                logger.warning("Failed to remove %s: %s", entry_dir, e)
        return entry

    def _over_caps(self, count: int, size: int) -> bool:
        if count > self.max_entries:
            return True
        return self.max_bytes is not None and size > self.max_bytes

    def _evict_locked(self) -> list[str]:
        count = len(self._index)
        size = sum(e.size for e in self._index.values())
        if not self._over_caps(count, size):
            return []

        logger.info("%s over limits (%d entries, %s); evicting oldest",
                    self.label, count, format_bytes(size))
        evicted = []
        # sorted() is stable, so equal timestamps keep insertion order
        for entry in sorted(self._index.values(), key=lambda e: e.created_at):
            if not self._over_caps(count, size):
                break
            self._remove_locked(entry.key)
            evicted.append(entry.key)
            count -= 1
            size -= entry.size
        logger.info("%s reduced to %d entries (%s)", self.label, count, format_bytes(size))
        return evicted

    def _stage_file(self, source: Path, suffix: str, move: bool = False) -> Path:
        """Copy (or move) source into the staging area. Done outside the lock."""
        staged = self.staging_dir / f"{uuid.uuid4().hex}{suffix}"
        try:
            if move:
                shutil.move(str(source), staged)
            else:
                shutil.copyfile(source, staged)
        except BaseException:
            staged.unlink(missing_ok=True)
            raise
        return staged

    def _stage_bytes(self, data: bytes, suffix: str) -> Path:
        staged = self.staging_dir / f"{uuid.uuid4().hex}{suffix}"
        try:
            staged.write_bytes(data)
        except BaseException:
            staged.unlink(missing_ok=True)
            raise
        return staged

    def _load_index(self):
        if not self.index_path.exists():
            return
        try:
            with open(self.index_path, 'r', encoding='utf-8') as f:
                raw = json.load(f)
            if not isinstance(raw, dict):
                raise ValueError("index is not a mapping")
            loaded = {key: self.entry_cls.from_dict(value) for key, value in raw.items()}
        except (OSError, ValueError, KeyError, TypeError) as e:
            err = CacheIndexCorrupt(self.index_path, str(e))
            logger.warning("%s; starting with an empty %s", err, self.label)
            self._quarantine_index()
            return
        for key in [k for k, e in loaded.items() if not self._is_contained(k, e)]:
            logger.warning("Ignoring %s entry %r: points outside %s",
                           self.label, key[:80], self.entries_dir)
            del loaded[key]
        self._index = dict(sorted(loaded.items(), key=lambda kv: kv[1].created_at))
        logger.info("Loaded %s index: %d entries", self.label, len(self._index))

    def _quarantine_index(self):
        corrupt = self.index_path.with_name(self.index_path.name + ".corrupt")
        try:
            os.replace(self.index_path, corrupt)
        except OSError as e:
            logger.warning("Could not move corrupt index aside: %s", e)

    def _prune_orphans(self):
        """Drop directories and staging files the index does not know about."""
        for child in self.entries_dir.iterdir():
            if child.is_dir() and child.name not in self._index:
                shutil.rmtree(child, ignore_errors=True)
                logger.debug("Removed orphaned %s dir %s", self.label, child.name)
        for leftover in self.staging_dir.iterdir():
            if leftover.is_file():
                leftover.unlink(missing_ok=True)

    def _save_index(self):
        data = {key: entry.to_dict() for key, entry in self._index.items()}
        fd, tmp_name = tempfile.mkstemp(prefix=".index-", suffix=".tmp", dir=self.root)
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.index_path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _persist_after_purge(self):
        # A failed write here leaves a stale entry on disk that the next
        # read purges again; the read itself still reports a miss.
        try:
            self._save_index()
        except OSError as e:
            logger.error("Failed to save %s index after purge: %s", self.label, e)


class CacheStore(IndexedStore):
    """Fetched media, keyed by (content id, quality)."""

    entry_cls = CacheEntry
    label = "video cache"

    def __init__(self, root: Path = APP_CACHE_DIR,
                 ttl_sec: float = CACHE_TTL_HOURS * 3600,
                 max_bytes: int | None = CACHE_MAX_BYTES,
                 max_entries: int = CACHE_MAX_ENTRIES,
                 clock=time.time, enabled: bool = True):
        super().__init__(root, VIDEOS_DIRNAME, CACHE_INDEX_FILENAME,
                         ttl_sec=ttl_sec, max_entries=max_entries,
                         max_bytes=max_bytes, clock=clock, enabled=enabled)

    def lookup(self, content_id: str, quality: str) -> CacheEntry | None:
        entry = self.get(derive_key(content_id, quality))
        if entry:
            logger.info("Cache hit for %s at %s", content_id, quality)
        return entry

    def put(self, content_id: str, quality: str, source_path: Path,
            metadata: dict | None = None, move: bool = False) -> CacheEntry | None:
        """
        Copy (or move) a fetched file into the cache. Returns the stored
        entry, or None when caching is disabled or the file alone exceeds the
        size cap.
        """
        if not self.enabled:
            return None
        source = Path(source_path)
        if not source.is_file():
            raise JobError(ErrorCode.SOURCE_MISSING, f"Cannot cache missing file: {source}")

        key = derive_key(content_id, quality)
        suffix = source.suffix or ".mp4"
        staged = self._stage_file(source, suffix, move=move)
        size = staged.stat().st_size
        final = self.entries_dir / key / f"{CACHED_VIDEO_STEM}{suffix}"

        with self._lock:
            now = self.clock()
            entry = CacheEntry(
                key=key,
                content_id=content_id,
                quality=quality,
                file_path=str(final),
                created_at=now,
                expires_at=now + self.ttl_sec,
                size=size,
                metadata=dict(metadata or {}),
            )
            stored = self._commit_locked(entry, staged, final)

        if stored:
            logger.info("Cached %s at %s (%s)", content_id, quality, format_bytes(size))
        return stored

    def remove_video(self, content_id: str, quality: str) -> bool:
        return self.remove(derive_key(content_id, quality))

    def _is_reachable(self, entry: CacheEntry) -> bool:
        return _file_matches(Path(entry.file_path), entry.size)

    def _artifact_paths(self, entry: CacheEntry) -> list[Path]:
        return [Path(entry.file_path)]


class MetadataStore(IndexedStore):
    """Descriptive payloads (title, duration, thumbnail) keyed by content id."""

    entry_cls = MetadataEntry
    label = "metadata cache"

    def __init__(self, root: Path = APP_CACHE_DIR,
                 ttl_sec: float = METADATA_TTL_HOURS * 3600,
                 max_entries: int = METADATA_MAX_ENTRIES,
                 max_bytes: int | None = None,
                 clock=time.time, enabled: bool = True):
        super().__init__(root, METADATA_DIRNAME, METADATA_INDEX_FILENAME,
                         ttl_sec=ttl_sec, max_entries=max_entries,
                         max_bytes=max_bytes, clock=clock, enabled=enabled)

    @staticmethod
    def key_for(content_id: str) -> str:
        return derive_key(content_id, METADATA_QUALITY_TAG)

    def lookup(self, content_id: str) -> MetadataEntry | None:
        return self.get(self.key_for(content_id))

    def put(self, content_id: str, payload: dict,
            thumbnail: bytes | None = None,
            thumbnail_ext: str = "jpg") -> MetadataEntry | None:
        if not self.enabled:
            return None
        # Fail before touching the index if the payload cannot be persisted.
        json.dumps(payload)

        key = self.key_for(content_id)
        staged = final = None
        size = 0
        if thumbnail:
            suffix = f".{thumbnail_ext.lstrip('.')}"
            staged = self._stage_bytes(thumbnail, suffix)
            final = self.entries_dir / key / f"{CACHED_THUMBNAIL_STEM}{suffix}"
            size = len(thumbnail)

        with self._lock:
            now = self.clock()
            entry = MetadataEntry(
                key=key,
                content_id=content_id,
                payload=dict(payload),
                created_at=now,
                expires_at=now + self.ttl_sec,
                thumbnail_path=str(final) if final else None,
                size=size,
            )
            stored = self._commit_locked(entry, staged, final)

        if stored:
            logger.info("Cached metadata for %s", content_id)
        return stored

    def _is_reachable(self, entry: MetadataEntry) -> bool:
        if not entry.thumbnail_path:
            return True
        return _file_matches(Path(entry.thumbnail_path), entry.size)

    def _artifact_paths(self, entry: MetadataEntry) -> list[Path]:
        return [Path(entry.thumbnail_path)] if entry.thumbnail_path else []


def _file_matches(path: Path, expected_size: int) -> bool:
    """Regular, readable file of the recorded size."""
    try:
        st = path.stat()
    except OSError:
        return False
    if not stat.S_ISREG(st.st_mode) or not os.access(path, os.R_OK):
        return False
    return st.st_size == expected_size
