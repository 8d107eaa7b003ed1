"""Cross-process pacing of GitHub requests through a shared, locked state file."""

from __future__ import annotations

import os
import re
import tempfile
import threading
import time
from pathlib import Path

import portalocker

from polyresearch import github_debug

THROTTLE_FILE_NAME = ".polyresearch-throttle"
DEFAULT_REQUEST_DELAY_MS = 1000

_U64_MAX = 2**64 - 1
_MILLIS_PATTERN = re.compile(r"\+?[0-9]+")


class ThrottleError(OSError):
    """Raised when the throttle state file cannot be used."""


class RequestThrottle:
    """Enforces a minimum gap between requests made by any local process."""

    def __init__(self, request_delay_ms: int, state_path: Path | str | None = None) -> None:
        self.request_delay = request_delay_ms / 1000.0
        self.state_path = Path(state_path) if state_path is not None else default_state_path()

    def acquire(self) -> None:
        """Block until the configured delay has passed since the last request."""
        if self.request_delay <= 0:
            return

        parent = self.state_path.parent
        try:
            parent.mkdir(parents=True, exist_ok=True)
        except OSError as error:
            raise ThrottleError(f"failed to create throttle directory `{parent}`") from error

        try:
            fd = os.open(self.state_path, os.O_RDWR | os.O_CREAT, 0o644)
            handle = os.fdopen(fd, "r+", encoding="utf-8")
        except OSError as error:
            raise ThrottleError(
                f"failed to open throttle state file `{self.state_path}`"
            ) from error

        with handle:
            try:
                portalocker.lock(handle, portalocker.LOCK_EX)
            except portalocker.exceptions.LockException as error:
                raise ThrottleError(
                    f"failed to lock throttle state file `{self.state_path}`"
                ) from error
            try:
                self._pace(handle)
            finally:
                portalocker.unlock(handle)

    def _pace(self, handle) -> None:
        last_request_at = _read_last_request(handle)
        if last_request_at is not None:
            wait = remaining_delay(last_request_at, self.request_delay)
            if wait is not None:
                github_debug.log_throttle_wait(wait)
                time.sleep(wait)
        _write_last_request(handle, time.time())


def _read_last_request(handle) -> float | None:
    try:
        handle.seek(0)
        contents = handle.read()
    except (OSError, UnicodeDecodeError) as error:
        raise ThrottleError("failed to read throttle state file") from error

    trimmed = contents.strip()
    if not trimmed or not _MILLIS_PATTERN.fullmatch(trimmed):
        return None
    millis = int(trimmed)
    if millis > _U64_MAX:
        return None
    return millis / 1000.0


def _write_last_request(handle, timestamp: float) -> None:
    millis = max(int(timestamp * 1000), 0)
    try:
        handle.seek(0)
        handle.truncate(0)
        handle.write(str(millis))
        handle.flush()
    except OSError as error:
        raise ThrottleError("failed to write throttle state file") from error


def remaining_delay(last_request_at: float, request_delay: float) -> float | None:
    """Seconds still to wait after a request at epoch ``last_request_at``, or None."""
    elapsed = time.time() - last_request_at
    if elapsed < 0:
        return None
    if elapsed < request_delay:
        return request_delay - elapsed
    return None


def default_state_path() -> Path:
    """The shared state file in the home directory, or the temp directory without one."""
    home = os.environ.get("HOME")
    if home:
        return Path(home) / THROTTLE_FILE_NAME
    return Path(tempfile.gettempdir()) / THROTTLE_FILE_NAME


_REQUEST_THROTTLE: RequestThrottle | None = None
_throttle_lock = threading.Lock()


def _get_or_init(request_delay_ms: int) -> RequestThrottle:
    global _REQUEST_THROTTLE
    with _throttle_lock:
        if _REQUEST_THROTTLE is None:
            _REQUEST_THROTTLE = RequestThrottle(request_delay_ms)
        return _REQUEST_THROTTLE


def init(request_delay_ms: int) -> None:
    """Configure the process-wide throttle; later calls have no effect."""
    _get_or_init(request_delay_ms)


def acquire_request_slot() -> None:
    """Wait for the process-wide throttle, initialising it with the default delay."""
    _get_or_init(DEFAULT_REQUEST_DELAY_MS).acquire()