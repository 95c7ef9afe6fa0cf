"""
Cleanup: delete temporary fetch artifacts once nothing is using them.

Removal is deferred by a grace period after the fetch finishes and skips any
file that is leased by this application or still open in another process.
"""

import logging
import os
import shutil
import sys
import threading
import time
from contextlib import contextmanager
from pathlib import Path

from clipcutter.core.constants import (
    TEMP_CLEANUP_DELAY_SEC, STALE_TEMP_AGE_SEC, VERSION_PROBE_TIMEOUT_SEC,
)
from clipcutter.core.error_codes import JobError
from clipcutter.core.models import ProcessSpec

logger = logging.getLogger(__name__)

LSOF_PATHS = ("/usr/sbin/lsof", "/usr/bin/lsof")


def _open_in_proc(path: Path) -> bool:
    """Linux: scan /proc/<pid>/fd links for path."""
    target = os.path.realpath(path)
    for pid in os.listdir("/proc"):
        if not pid.isdigit():
            continue
        fd_dir = f"/proc/{pid}/fd"
        try:
            fds = os.listdir(fd_dir)
        except OSError:
            continue
        for fd in fds:
            try:
                if os.readlink(os.path.join(fd_dir, fd)) == target:
                    return True
            except OSError:
                continue
    return False


class DeferredCleaner:
    """
    Schedules removal of temp files sharing a base name.

    Pipelines call lease() around any use of a temp file so a pending removal
    leaves it alone.
    """

    def __init__(self, delay_sec: float = TEMP_CLEANUP_DELAY_SEC, runner=None):
        self.delay_sec = delay_sec
        self.runner = runner
        self._lock = threading.Lock()
        self._leases: dict[str, int] = {}
        self._timers: set[threading.Timer] = set()

    # ── Leases ────────────────────────────────────────────────────────

    def acquire(self, path: Path):
        key = os.path.realpath(path)
        with self._lock:
            self._leases[key] = self._leases.get(key, 0) + 1

    def release(self, path: Path):
        key = os.path.realpath(path)
        with self._lock:
            count = self._leases.get(key, 0) - 1
            if count > 0:
                self._leases[key] = count
            else:
                self._leases.pop(key, None)

    @contextmanager
    def lease(self, path: Path):
        self.acquire(path)
        try:
            yield path
        finally:
            self.release(path)

    def is_leased(self, path: Path) -> bool:
        with self._lock:
            return os.path.realpath(path) in self._leases

    # ── In-use detection ──────────────────────────────────────────────

    def is_file_in_use(self, path: Path) -> bool:
        if self.is_leased(path):
            return True
        if sys.platform.startswith("linux") and os.path.isdir("/proc"):
            return _open_in_proc(path)
        return self._open_per_lsof(path)

    def _open_per_lsof(self, path: Path) -> bool:
        lsof = next((p for p in LSOF_PATHS if os.access(p, os.X_OK)), None)
        if lsof is None or self.runner is None:
            return False
        spec = ProcessSpec(lsof, ("-t", "--", str(path)), timeout=VERSION_PROBE_TIMEOUT_SEC)
        try:
            result = self.runner.run(spec)
        except JobError as e:
            logger.debug("lsof check for %s failed: %s", path, e)
            return False
        # lsof exits 1 when no process has the file open
        return result.exit_code == 0 and bool(result.stdout.strip())

    # ── Deferred removal ──────────────────────────────────────────────

    def schedule_prefix(self, directory: Path, base: str, delay_sec: float | None = None):
        """Remove every directory/<base>* file after the grace delay."""
        delay = self.delay_sec if delay_sec is None else delay_sec
        timer = threading.Timer(delay, self._fire, args=(directory, base))
        timer.daemon = True
        with self._lock:
            self._timers.add(timer)
        timer.start()
        logger.debug("Scheduled cleanup of %s/%s* in %ss", directory, base, delay)
        return timer

    def _fire(self, directory: Path, base: str):
        with self._lock:
            self._timers = {t for t in self._timers if t.is_alive() and t is not threading.current_thread()}
        self.remove_prefix(directory, base)

    def remove_prefix(self, directory: Path, base: str) -> list[Path]:
        removed = []
        directory = Path(directory)
        if not directory.exists():
            return removed
        for path in directory.glob(f"{base}*"):
            if self._remove_if_idle(path):
                removed.append(path)
        return removed

    def sweep_stale(self, directory: Path, max_age_sec: float = STALE_TEMP_AGE_SEC,
                    now: float | None = None) -> int:
        """Remove files older than max_age_sec left behind by earlier runs."""
        directory = Path(directory)
        if not directory.exists():
            return 0
        now = time.time() if now is None else now
        count = 0
        for path in directory.iterdir():
            try:
                age = now - path.stat().st_mtime
            except OSError:
                continue
            if age > max_age_sec and self._remove_if_idle(path):
                count += 1
        if count:
            logger.info("Removed %d stale temp files from %s", count, directory)
        return count

    def _remove_if_idle(self, path: Path) -> bool:
        if self.is_file_in_use(path):
            logger.info("Skipping cleanup of %s: file in use", path)
            return False
        try:
            if path.is_dir():
                shutil.rmtree(path)
            else:
                path.unlink()
            logger.debug("Deleted: %s", path)
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.warning("Failed to delete %s: %s", path, e)
            return False

    def shutdown(self):
        """Cancel timers that have not fired yet."""
        with self._lock:
            timers, self._timers = self._timers, set()
        for t in timers:
            t.cancel()

    @property
    def pending(self) -> int:
        with self._lock:
            return sum(1 for t in self._timers if t.is_alive())
