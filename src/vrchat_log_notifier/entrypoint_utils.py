"""Process level guards shared by the launchers.

The notifier is meant to run unattended for whole VRChat sessions, so the
launcher wraps :func:`vrchat_log_notifier.app.main` in two guards:

* :class:`InstanceGuard` takes an exclusive lock in the storage root.  Two
  notifiers tailing the same log would deliver every notification twice, so
  failing to get the lock stops startup before any file is opened.
* :class:`MemoryGuard` watches the Python heap and forces a collection when
  allocations keep growing over a long session.
"""

from __future__ import annotations

import contextlib
import gc
import os
import sys
import threading
import tracemalloc
from typing import IO, Any, Callable, Optional, Type

__all__ = [
    "InstanceGuard",
    "InstanceLockError",
    "MemoryGuard",
    "run_guarded",
]


def _log(message: str) -> None:
    """Emit a diagnostic message to standard error."""

    sys.stderr.write(f"[vrchat-log-notifier] {message}\n")
    sys.stderr.flush()


def _env_number(name: str, default: Any, cast: Callable[[str], Any]) -> Any:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return cast(raw)
    except ValueError:
        _log(f"Ignoring invalid {name}={raw!r}")
        return default


class InstanceLockError(RuntimeError):
    """Another notifier instance already holds the lock."""


class InstanceGuard(contextlib.AbstractContextManager["InstanceGuard"]):
    """System wide exclusivity through a locked file."""

    def __init__(self, lock_path: str) -> None:
        self.lock_path = lock_path
        self._handle: Optional[IO[str]] = None

    def __enter__(self) -> "InstanceGuard":
        os.makedirs(os.path.dirname(self.lock_path) or ".", exist_ok=True)
        handle = open(self.lock_path, "a+", encoding="utf-8")
        try:
            self._lock(handle)
        except OSError as exc:
            handle.close()
            raise InstanceLockError(
                "Failed to obtain exclusivity. Is another notifier instance running?"
            ) from exc
        handle.seek(0)
        handle.truncate()
        handle.write(str(os.getpid()))
        handle.flush()
        self._handle = handle
        return self

    def __exit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[BaseException],
    ) -> Optional[bool]:
        handle = self._handle
        self._handle = None
        if handle is not None:
            try:
                self._unlock(handle)
            except OSError:
                pass
            handle.close()
        return None

    @staticmethod
    def _lock(handle: IO[str]) -> None:
        if os.name == "nt":
            import msvcrt

            handle.seek(0)
            msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)  # type: ignore[attr-defined]
        else:
            import fcntl

            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)

    @staticmethod
    def _unlock(handle: IO[str]) -> None:
        if os.name == "nt":
            import msvcrt

            handle.seek(0)
            msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)  # type: ignore[attr-defined]
        else:
            import fcntl

            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


MEMORY_LIMIT_ENV = "VRCLN_MEMORY_SOFT_LIMIT"
MEMORY_INTERVAL_ENV = "VRCLN_MEMORY_CHECK_INTERVAL"
DEFAULT_SOFT_LIMIT = 256 * 1024 * 1024
DEFAULT_CHECK_INTERVAL = 60.0


class MemoryGuard(contextlib.AbstractContextManager["MemoryGuard"]):
    """Forces a collection when the traced heap grows past a soft limit.

    Limits default to ``VRCLN_MEMORY_SOFT_LIMIT`` (bytes) and
    ``VRCLN_MEMORY_CHECK_INTERVAL`` (seconds).  A zero limit or interval turns
    the watchdog off.
    """

    def __init__(
        self,
        soft_limit: Optional[int] = None,
        check_interval: Optional[float] = None,
        report: Callable[[str], None] = _log,
    ) -> None:
        if soft_limit is None:
            soft_limit = _env_number(MEMORY_LIMIT_ENV, DEFAULT_SOFT_LIMIT, int)
        if check_interval is None:
            check_interval = _env_number(MEMORY_INTERVAL_ENV, DEFAULT_CHECK_INTERVAL, float)
        self.soft_limit = max(int(soft_limit), 0)
        self.check_interval = max(float(check_interval), 0.0)
        self.collections = 0
        self._report = report
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._owns_tracing = False

    @property
    def enabled(self) -> bool:
        return self.soft_limit > 0 and self.check_interval > 0

    def __enter__(self) -> "MemoryGuard":
        if not self.enabled:
            return self
        if not tracemalloc.is_tracing():
            tracemalloc.start()
            self._owns_tracing = True
        self._thread = threading.Thread(target=self._watch, name="MemoryGuard", daemon=True)
        self._thread.start()
        return self

    def __exit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[BaseException],
    ) -> Optional[bool]:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=max(self.check_interval, 1.0))
        if self._owns_tracing:
            tracemalloc.stop()
            self._owns_tracing = False
        return None

    def check(self) -> bool:
        """Collect once if the traced heap is over the limit."""

        if not tracemalloc.is_tracing():
            return False
        current, peak = tracemalloc.get_traced_memory()
        if current < self.soft_limit and peak < self.soft_limit * 1.5:
            return False
        self._report(f"MemoryGuard collecting (current={current} peak={peak} limit={self.soft_limit})")
        gc.collect()
        tracemalloc.reset_peak()
        self.collections += 1
        return True

    def _watch(self) -> None:
        while not self._stop_event.wait(self.check_interval):
            self.check()


def run_guarded(main: Callable[[], Any], lock_path: str) -> int:
    """Execute ``main`` while holding the instance lock and the memory guard.

    ``main`` must be a zero-argument callable returning either an ``int`` or
    ``None``.  A second instance exits with status 1 before ``main`` runs.
    """

    with contextlib.ExitStack() as stack:
        try:
            stack.enter_context(InstanceGuard(lock_path))
        except InstanceLockError as exc:
            _log(str(exc))
            return 1
        stack.enter_context(MemoryGuard())
        try:
            result = main()
        except KeyboardInterrupt:
            _log("Interrupted by user; shutting down cleanly.")
            return 0
    if isinstance(result, int):
        return result
    return 0
