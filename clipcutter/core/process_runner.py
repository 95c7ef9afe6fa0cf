"""
External process runner.

Launches one tool per call with an argument vector (never a shell) and a
minimal environment, streams its output to the caller while keeping a full
copy, and enforces a timeout. Natural exit, timeout and cancellation race
each other; a ResolveOnce guard lets exactly one of them produce the outcome.

Example:
    runner = ProcessRunner()
    result = runner.run(ProcessSpec("/usr/bin/ffmpeg", ("-version",), timeout=10))
"""

import codecs
import errno
import logging
import os
import queue
import signal
import subprocess
import threading
import time
from pathlib import Path

from clipcutter.core.constants import (
    KILL_GRACE_SEC, READ_CHUNK_BYTES, OUTPUT_DRAIN_TIMEOUT_SEC, CALLBACK_DRAIN_TIMEOUT_SEC,
)
from clipcutter.core.error_codes import (
    LaunchFailure, ProcessCancelled, ProcessTimeout,
)
from clipcutter.core.models import ProcessResult, ProcessSpec
from clipcutter.core.security_utils import check_argv, check_env, minimal_env

logger = logging.getLogger(__name__)

# OS errors at launch that may succeed on a later attempt
_TRANSIENT_LAUNCH_ERRNOS = {
    errno.EAGAIN, errno.ENOMEM, errno.EMFILE, errno.ENFILE, errno.ETXTBSY,
}

_STOP = object()


class CancelToken:
    """
    Cancellation flag shared between a job and whatever it is waiting on.
    Callbacks registered while the token is live run once on cancel();
    registering on an already-cancelled token runs the callback at once.
    """

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self):
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for cb in callbacks:
            try:
                cb()
            except Exception:
                logger.exception("Cancel callback failed")

    def register(self, callback):
        """Register callback; returns a function that unregisters it."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return lambda: self._unregister(callback)
        callback()
        return lambda: None

    def _unregister(self, callback):
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

    def wait(self, timeout: float | None = None) -> bool:
        """Sleep up to timeout; True if cancelled meanwhile."""
        return self._event.wait(timeout)

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise ProcessCancelled("Job was cancelled")


class ResolveOnce:
    """
    Two-state guard (RUNNING -> RESOLVED). The first resolve() wins and
    returns True; every later call is a no-op returning False.
    """

    RUNNING = "running"
    RESOLVED = "resolved"

    def __init__(self):
        self._lock = threading.Lock()
        self._done = threading.Event()
        self._state = self.RUNNING
        self._result = None
        self._error = None
        self.source = None

    @property
    def state(self) -> str:
        return self._state

    def resolve(self, result=None, error: BaseException | None = None,
                source: str = "") -> bool:
        with self._lock:
            if self._state != self.RUNNING:
                return False
            self._state = self.RESOLVED
            self._result = result
            self._error = error
            self.source = source
        self._done.set()
        return True

    def wait(self, timeout: float | None = None):
        if not self._done.wait(timeout):
            raise TimeoutError("Outcome not resolved yet")
        if self._error is not None:
            raise self._error
        return self._result


class RunningProcess:
    """Handle on a launched process. Created by ProcessRunner.start()."""

    def __init__(self, spec: ProcessSpec, popen: subprocess.Popen,
                 kill_grace_sec: float = KILL_GRACE_SEC):
        self.spec = spec
        self.pid = popen.pid
        self._proc = popen
        self._kill_grace_sec = kill_grace_sec
        self._started = time.monotonic()

        self._stdout = bytearray()
        self._stderr = bytearray()
        self._buf_lock = threading.Lock()
        self._resolution = ResolveOnce()
        self._exited = threading.Event()
        self._term_lock = threading.Lock()
        self._terminating = False

        self._deliveries: queue.Queue = queue.Queue()
        self._dispatcher = threading.Thread(
            target=self._dispatch, name=f"proc-{self.pid}-callbacks", daemon=True)
        self._dispatcher.start()

        self._readers: list[threading.Thread] = []
        if spec.combined_output:
            self._start_reader(popen.stdout, (self._stdout, self._stderr), spec.on_output)
        else:
            self._start_reader(popen.stdout, (self._stdout,), spec.on_output)
            # ffmpeg reports progress on stderr; fall back to on_output
            self._start_reader(popen.stderr, (self._stderr,), spec.on_error or spec.on_output)

        self._timer = threading.Timer(spec.timeout, self._on_timeout)
        self._timer.daemon = True
        self._timer.start()

        self._waiter = threading.Thread(
            target=self._wait_for_exit, name=f"proc-{self.pid}-wait", daemon=True)
        self._waiter.start()

    # ── Public API ────────────────────────────────────────────────────

    @property
    def resolved_by(self) -> str | None:
        """'exit', 'timeout' or 'cancel' once resolved."""
        return self._resolution.source

    @property
    def is_running(self) -> bool:
        return self._proc.poll() is None

    def wait(self, cancel_token: CancelToken | None = None) -> ProcessResult:
        """
        Block until the process exits, times out or is cancelled.
        Returns the ProcessResult or raises ProcessTimeout/ProcessCancelled.
        """
        unregister = cancel_token.register(self.cancel) if cancel_token else None
        try:
            return self._resolution.wait()
        finally:
            if unregister:
                unregister()

    def cancel(self):
        """Graceful terminate, forced kill after the grace window."""
        if self._exited.is_set():
            return
        self._terminate("cancel")
        if self._resolution.resolve(error=ProcessCancelled(), source="cancel"):
            logger.info("Cancelled %s (pid %s)", self._name, self.pid)

    # ── Internals ─────────────────────────────────────────────────────

    @property
    def _name(self) -> str:
        return Path(self.spec.executable).name

    def _start_reader(self, stream, targets, callback):
        t = threading.Thread(
            target=self._read_stream, args=(stream, targets, callback),
            name=f"proc-{self.pid}-reader", daemon=True)
        t.start()
        self._readers.append(t)

    def _read_stream(self, stream, targets, callback):
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while True:
                chunk = stream.read1(READ_CHUNK_BYTES)
                if not chunk:
                    break
                with self._buf_lock:
                    for buf in targets:
                        buf.extend(chunk)
                if callback:
                    text = decoder.decode(chunk)
                    if text:
                        self._deliveries.put((callback, text))
            if callback:
                tail = decoder.decode(b"", final=True)
                if tail:
                    self._deliveries.put((callback, tail))
        except (OSError, ValueError) as e:
            logger.debug("Output stream of pid %s closed: %s", self.pid, e)
        finally:
            try:
                stream.close()
            except OSError:
                pass

    def _dispatch(self):
        while True:
            item = self._deliveries.get()
            if item is _STOP:
                return
            callback, text = item
            try:
                callback(text)
            except Exception:
                logger.exception("Output callback of %s raised", self._name)

    def _wait_for_exit(self):
        exit_code = self._proc.wait()
        self._exited.set()
        self._timer.cancel()

        # Let readers drain what is left in the pipes. A grandchild holding
        # the pipe open must not block completion forever.
        for t in self._readers:
            t.join(OUTPUT_DRAIN_TIMEOUT_SEC)
        self._deliveries.put(_STOP)
        # A stuck callback must not hold the result back; late deliveries
        # keep draining on the daemon thread.
        self._dispatcher.join(CALLBACK_DRAIN_TIMEOUT_SEC)
        if self._dispatcher.is_alive():
            logger.warning("Output callbacks of %s still running; resolving without them",
                           self._name)

        with self._buf_lock:
            stdout, stderr = bytes(self._stdout), bytes(self._stderr)
        result = ProcessResult(
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
            duration=time.monotonic() - self._started,
        )
        if self._resolution.resolve(result=result, source="exit"):
            logger.debug("%s (pid %s) exited rc=%s in %.1fs",
                         self._name, self.pid, exit_code, result.duration)

    def _on_timeout(self):
        if self._exited.is_set():
            return
        self._terminate("timeout")
        if self._resolution.resolve(error=ProcessTimeout(self.spec.timeout), source="timeout"):
            logger.warning("%s (pid %s) timed out after %ss",
                           self._name, self.pid, self.spec.timeout)

    def _terminate(self, reason: str):
        with self._term_lock:
            if self._terminating or self._exited.is_set():
                return
            self._terminating = True
        logger.debug("Terminating %s (pid %s): %s", self._name, self.pid, reason)
        self._signal(signal.SIGTERM)
        threading.Thread(target=self._escalate, daemon=True).start()

    def _escalate(self):
        if self._exited.wait(self._kill_grace_sec):
            return
        logger.warning("%s (pid %s) ignored SIGTERM for %.1fs, killing",
                       self._name, self.pid, self._kill_grace_sec)
        self._signal(signal.SIGKILL)

    def _signal(self, sig):
        if self._proc.poll() is not None:
            return
        try:
            if os.name == "posix":
                # The tool runs in its own session; signal the whole group so
                # helpers it spawned (yt-dlp -> ffmpeg) go down with it.
                os.killpg(self._proc.pid, sig)
            else:
                self._proc.send_signal(sig)
        except ProcessLookupError:
            pass


class ProcessRunner:
    """Starts external tools. One instance can be shared by all pipelines."""

    def __init__(self, kill_grace_sec: float = KILL_GRACE_SEC,
                 scratch_home: Path | None = None):
        self.kill_grace_sec = kill_grace_sec
        self.scratch_home = scratch_home

    def start(self, spec: ProcessSpec) -> RunningProcess:
        """
        Launch the process described by spec.
        Raises LaunchFailure immediately if it cannot be started.
        """
        if not spec.timeout or spec.timeout <= 0:
            raise ValueError("ProcessSpec.timeout must be positive")
        args = check_argv([spec.executable, *spec.args])
        env = check_env(spec.env) if spec.env is not None else minimal_env(self.scratch_home)

        logger.debug("Running subprocess: %s", ' '.join(args))
        try:
            popen = subprocess.Popen(
                args,
                shell=False,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT if spec.combined_output else subprocess.PIPE,
                env=env,
                start_new_session=(os.name == "posix"),
            )
        except FileNotFoundError as e:
            raise LaunchFailure(f"Executable not found: {spec.executable}") from e
        except PermissionError as e:
            raise LaunchFailure(f"Permission denied: {spec.executable}") from e
        except OSError as e:
            raise LaunchFailure(
                f"Failed to launch {spec.executable}: {e}",
                retryable=e.errno in _TRANSIENT_LAUNCH_ERRNOS,
            ) from e

        return RunningProcess(spec, popen, self.kill_grace_sec)

    def run(self, spec: ProcessSpec, cancel_token: CancelToken | None = None) -> ProcessResult:
        """Launch and wait. Exit codes are returned, never interpreted."""
        if cancel_token:
            cancel_token.raise_if_cancelled()
        return self.start(spec).wait(cancel_token)
