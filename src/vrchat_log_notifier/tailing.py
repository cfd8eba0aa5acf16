"""Polling based log tailing.

VRChat keeps its output log open for the whole session and only ever appends
to it, so every subscription simply remembers how many bytes it has consumed
and reads the difference whenever the file grows.
"""
from __future__ import annotations

import codecs
import os
import re
import threading
import time
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set, Union

DIRECTORY_WARNING_INTERVAL_SECONDS = 10.0


def score_log_file(path: str) -> float:
    try:
        stat = os.stat(path)
    except OSError:
        return 0.0
    best = max(stat.st_mtime, stat.st_ctime)
    match = re.search(
        r"output_log_(\d{4})-(\d{2})-(\d{2})_(\d{2})-(\d{2})-(\d{2})\.txt$",
        os.path.basename(path),
        re.IGNORECASE,
    )
    if match:
        try:
            dt = datetime(
                int(match.group(1)),
                int(match.group(2)),
                int(match.group(3)),
                int(match.group(4)),
                int(match.group(5)),
                int(match.group(6)),
            )
            best = max(best, dt.timestamp())
        except ValueError:
            pass
    return best


class TailSubscription:
    """Follows one growing file and hands every appended chunk to ``on_append``.

    Only complete lines are handed over: text after the last newline is held
    back and prepended to the next read, so a line VRChat is still writing is
    never classified in pieces.

    ``interval`` is a number of seconds or a callable returning one; a callable
    is asked again before every wait.  ``offset`` defaults to the current end
    of the file.  When the subscription
    starts past the beginning of a file, ``on_initial_scan(path, offset)`` is
    called exactly once before the first ``on_append`` so the caller can look
    at what was already written.

    A file that disappears or shrinks ends the subscription.  Read errors are
    logged and retried on the next tick.
    """

    def __init__(
        self,
        path: str,
        on_append: Callable[[str], None],
        interval: Union[float, Callable[[], float]],
        logger=None,
        on_initial_scan: Optional[Callable[[str, int], None]] = None,
        offset: Optional[int] = None,
        on_dispose: Optional[Callable[["TailSubscription"], None]] = None,
    ) -> None:
        self.path = path
        self._interval = interval
        self._logger = logger
        self._on_append: Optional[Callable[[str], None]] = on_append
        self._on_initial_scan = on_initial_scan
        self._on_dispose = on_dispose
        if offset is None:
            try:
                offset = os.path.getsize(path)
            except OSError:
                offset = 0
        self.offset = max(int(offset), 0)
        self._scan_pending = self.offset > 0
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._partial_line = ""
        self._poll_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.disposed = False
        self.dispose_reason = ""

    @property
    def interval(self) -> float:
        value = self._interval() if callable(self._interval) else self._interval
        return max(float(value), 0.01)

    def _log(self, message: str, level: str = "INFO") -> None:
        if self._logger is not None:
            self._logger.log(message, level)

    def start(self) -> None:
        if self._thread is not None or self.disposed:
            return
        self._thread = threading.Thread(
            target=self._run, name=f"Tail[{os.path.basename(self.path)}]", daemon=True
        )
        self._thread.start()

    def _run(self) -> None:
        while not self._stop_event.is_set():
            self.poll()
            if self._stop_event.wait(self.interval):
                break

    def poll(self) -> None:
        """Run a single tick: read whatever was appended since the last one."""

        with self._poll_lock:
            if self.disposed:
                return
            self._run_initial_scan()
            try:
                size = os.path.getsize(self.path)
            except FileNotFoundError:
                self._log(f"Log file '{self.path}' disappeared; ending tail subscription.")
                self._dispose_locked("missing")
                return
            except OSError as exc:
                self._log(f"Failed to stat '{self.path}': {exc}", "ERROR")
                return

            if size < self.offset:
                self._log(f"Log file '{self.path}' shrank ({size} < {self.offset}); ending tail subscription.")
                self._dispose_locked("shrunk")
                return
            if size == self.offset:
                return

            try:
                with open(self.path, "rb") as handle:
                    handle.seek(self.offset)
                    data = handle.read(size - self.offset)
            except OSError as exc:
                self._log(f"Failed reading log '{self.path}': {exc}", "ERROR")
                return

            self.offset += len(data)
            text = self._partial_line + self._decoder.decode(data)
            complete = text.rfind("\n") + 1
            self._partial_line = text[complete:]
            text = text[:complete]
            callback = self._on_append
            if not text or callback is None:
                return
            try:
                callback(text)
            except Exception as exc:
                self._log(f"Processing appended text from '{self.path}' failed: {exc}", "ERROR")

    def _run_initial_scan(self) -> None:
        if not self._scan_pending:
            return
        self._scan_pending = False
        callback = self._on_initial_scan
        self._on_initial_scan = None
        if callback is None:
            return
        try:
            callback(self.path, self.offset)
        except Exception as exc:
            self._log(f"Initial scan of '{self.path}' failed: {exc}", "ERROR")

    def dispose(self) -> None:
        with self._poll_lock:
            self._dispose_locked("disposed")
        thread = self._thread
        if thread is not None and thread is not threading.current_thread() and thread.is_alive():
            thread.join(timeout=max(self.interval * 2, 1.0))

    def _dispose_locked(self, reason: str) -> None:
        if self.disposed:
            return
        self.disposed = True
        self.dispose_reason = reason
        self._stop_event.set()
        self._on_append = None
        self._partial_line = ""
        self._on_initial_scan = None
        on_dispose = self._on_dispose
        self._on_dispose = None
        if on_dispose is not None:
            on_dispose(self)


class DirectoryWatcher:
    """Creates a :class:`TailSubscription` for every matching log file.

    Files found on the first poll already hold earlier output, so they are
    tailed from their current end.  Only the newest of them is rewound through
    ``on_initial_scan``; older logs belong to finished sessions.
    Anything that shows up later is read from the beginning.
    """

    def __init__(
        self,
        config,
        on_append: Callable[[str], None],
        logger=None,
        on_initial_scan: Optional[Callable[[str, int], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._on_append = on_append
        self._on_initial_scan = on_initial_scan
        self._logger = logger
        self._clock = clock
        self._lock = threading.Lock()
        self._subscriptions: Dict[str, TailSubscription] = {}
        self._retired: Set[str] = set()
        self._first_poll = True
        self._last_dir_warning: Optional[float] = None
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _log(self, message: str, level: str = "INFO") -> None:
        if self._logger is not None:
            self._logger.log(message, level)

    @property
    def subscriptions(self) -> Dict[str, TailSubscription]:
        with self._lock:
            return dict(self._subscriptions)

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="DirectoryWatcher", daemon=True)
        self._thread.start()
        self._log(
            f"Log detection started with poll frequency {self._config.directory_poll_frequency_ms} "
            f"and parse frequency {self._config.parse_frequency_ms}."
        )

    def stop(self) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread() and thread.is_alive():
            thread.join(timeout=2.0)
        self._thread = None
        for subscription in list(self.subscriptions.values()):
            subscription.dispose()
        with self._lock:
            self._subscriptions.clear()
        self._log("Subscriptions cleared.")

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.poll()
            except Exception as exc:
                self._log(f"Log directory poll failed: {exc}", "ERROR")
            interval = max(self._config.directory_poll_frequency_ms, 50) / 1000.0
            if self._stop_event.wait(interval):
                break

    def poll(self, start: bool = True) -> List[TailSubscription]:
        """List the log directory once and subscribe to new matching files.

        Returns the subscriptions created by this poll.  ``start=False`` leaves
        them unstarted so the caller can drive ``poll()`` on them directly.
        """

        log_dir = self._config.expanded_log_root()
        marker = self._config.log_file_marker
        try:
            entries = [entry for entry in os.scandir(log_dir) if entry.is_file()]
        except OSError as exc:
            now = self._clock()
            if self._last_dir_warning is None or now - self._last_dir_warning > DIRECTORY_WARNING_INTERVAL_SECONDS:
                self._log(f"Waiting for VRChat log directory at {log_dir}: {exc}")
                self._last_dir_warning = now
            return []

        first_poll = self._first_poll
        self._first_poll = False
        with self._lock:
            candidates = [
                entry.path
                for entry in entries
                if marker in entry.name
                and entry.path not in self._subscriptions
                and entry.path not in self._retired
            ]
        candidates.sort(key=score_log_file)
        newest = candidates[-1] if first_poll and candidates else None

        created: List[TailSubscription] = []
        for path in candidates:
            subscription = TailSubscription(
                path,
                self._on_append,
                self._tail_interval,
                logger=self._logger,
                on_initial_scan=self._on_initial_scan if path == newest else None,
                offset=None if first_poll else 0,
                on_dispose=self._retire,
            )
            with self._lock:
                self._subscriptions[path] = subscription
            self._log(f"A tail subscription was added to {path}")
            created.append(subscription)

        for subscription in created:
            if start:
                subscription.poll()
                subscription.start()
        return created

    def _tail_interval(self) -> float:
        return max(self._config.parse_frequency_ms, 10) / 1000.0

    def _retire(self, subscription: TailSubscription) -> None:
        with self._lock:
            if self._subscriptions.get(subscription.path) is subscription:
                del self._subscriptions[subscription.path]
            if subscription.dispose_reason == "missing":
                self._retired.add(subscription.path)
        self._log(f"Tail subscription for {subscription.path} was removed.")
