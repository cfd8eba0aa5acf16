"""Notification admission and the timed dispatch queue."""
from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass, field, replace
from typing import Callable, Deque, List, Optional

from .parsing import (
    EventKind,
    KeywordLimitExceeded,
    PlayerJoined,
    PlayerLeft,
    PortalDropped,
    SessionState,
    WorldChanged,
)
from .settings import APP_NAME

DISPATCH_RESOLUTION_MS = 50
DEFAULT_HEIGHT = 175.0

GROUPABLE = frozenset({EventKind.PLAYER_JOINED, EventKind.PLAYER_LEFT})

_CATEGORY_NAMES = {
    EventKind.PLAYER_JOINED: "player_joined",
    EventKind.PLAYER_LEFT: "player_left",
    EventKind.WORLD_CHANGED: "world_changed",
    EventKind.KEYWORDS_EXCEEDED: "keywords_exceeded",
    EventKind.PORTAL_DROPPED: "portal_dropped",
}


@dataclass
class NotificationContent:
    title: str
    body: str = ""
    icon: str = "default"
    audio: str = "default"
    volume: float = 0.2
    timeout_seconds: float = 3.0
    height: float = DEFAULT_HEIGHT
    opacity: float = 1.0
    source_app: str = APP_NAME


@dataclass
class PendingNotification:
    category: Optional[EventKind]
    content: NotificationContent
    was_merged: bool = False
    merged_children: List[NotificationContent] = field(default_factory=list)

    @property
    def duration_ms(self) -> int:
        return max(int(self.content.timeout_seconds * 1000.0), 0)


class NotificationRouter:
    """Decides which events become notifications.

    Runs inside the extractor's critical section (it is the extractor's
    ``on_event`` callback), which is what makes the keyword cooldown update
    race free.  ``now`` is the extractor's timestamp for the line, so the
    silence window and the cooldown are compared on the clock that set them.
    Every decision reads the configuration again.
    """

    def __init__(self, config, enqueue: Callable[[PendingNotification], None], logger=None) -> None:
        self._config = config
        self._enqueue = enqueue
        self._logger = logger

    def __call__(self, event: object, session: SessionState, now: Optional[float] = None) -> None:
        self.handle(event, session, now)

    def handle(self, event: object, session: SessionState, now: Optional[float] = None) -> bool:
        """Enqueue a notification for ``event`` when policy allows it."""

        now = time.monotonic() if now is None else now
        kind = getattr(event, "kind", None)
        name = _CATEGORY_NAMES.get(kind)
        if name is None:
            return False
        options = self._config.category(name)
        if not options.enabled:
            return False

        if kind in GROUPABLE:
            if self._config.display_join_leave_silenced_override and session.is_silenced(now):
                self._log(f"Silenced {kind.value} notification during world join.")
                return False
        elif kind is EventKind.KEYWORDS_EXCEEDED:
            cooldown = float(self._config.keywords_exceeded_cooldown_seconds)
            last = session.last_keyword_warning_at
            if last is not None and now < last + cooldown:
                return False
            session.last_keyword_warning_at = now

        content = NotificationContent(
            title=self._title_for(event),
            icon=options.icon,
            audio=options.audio,
            volume=options.volume,
            timeout_seconds=options.timeout_seconds,
            opacity=float(self._config.opacity),
        )
        self._enqueue(PendingNotification(category=kind, content=content))
        return True

    def _title_for(self, event: object) -> str:
        if isinstance(event, (PlayerJoined, PlayerLeft)):
            return event.display_name
        if isinstance(event, WorldChanged):
            return event.world_name
        if isinstance(event, KeywordLimitExceeded):
            return "Maximum shader keywords exceeded!"
        if isinstance(event, PortalDropped):
            return "A portal has been spawned."
        return type(event).__name__

    def _log(self, message: str) -> None:
        if self._logger is not None:
            self._logger.log(message)


class DispatchEngine:
    """Single consumer of the notification queue.

    Each delivered notification holds the queue for its own display time, so
    notifications never overlap.  When a join or leave comes up, every other
    queued entry of the same category is folded into it.
    """

    def __init__(
        self,
        sink,
        config=None,
        logger=None,
        session_view: Optional[Callable[[], SessionState]] = None,
        on_fatal: Optional[Callable[[BaseException], None]] = None,
        tick_ms: int = DISPATCH_RESOLUTION_MS,
    ) -> None:
        self._sink = sink
        self._config = config
        self._logger = logger
        self._session_view = session_view
        self._on_fatal = on_fatal
        self.tick_ms = tick_ms
        self.quiet_remaining_ms = 0
        self._queue: Deque[PendingNotification] = deque()
        self._queue_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.failed = False

    def _log(self, message: str, level: str = "INFO") -> None:
        if self._logger is not None:
            self._logger.log(message, level)

    def enqueue(self, notification: PendingNotification) -> None:
        with self._queue_lock:
            self._queue.append(notification)

    def pending(self) -> List[PendingNotification]:
        with self._queue_lock:
            return list(self._queue)

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self.run, name="DispatchEngine", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread() and thread.is_alive():
            thread.join(timeout=timeout if timeout is not None else self.tick_ms * 2 / 1000.0)
        self._thread = None

    def run(self) -> None:
        while not self._stop_event.is_set():
            if not self.tick():
                self._stop_event.wait(self.tick_ms / 1000.0)

    def tick(self) -> bool:
        """Advance the queue by one resolution step.

        Returns True when a notification was handed to the sink.
        """

        self.quiet_remaining_ms = max(self.quiet_remaining_ms - self.tick_ms, 0)
        if self.quiet_remaining_ms > 0 or self.failed:
            return False
        entry = self._dequeue()
        if entry is None:
            return False

        self.quiet_remaining_ms = entry.duration_ms
        if entry.category in GROUPABLE:
            self._merge_burst(entry)

        content = self._finalize(entry)
        try:
            self._sink.deliver(content)
        except Exception as exc:
            self._log("An exception occurred while sending a routine event notification.", "ERROR")
            if self._logger is not None and hasattr(self._logger, "exception"):
                self._logger.exception(exc)
            self.failed = True
            self._stop_event.set()
            if self._on_fatal is not None:
                self._on_fatal(exc)
            return False
        return True

    def _dequeue(self) -> Optional[PendingNotification]:
        with self._queue_lock:
            while self._queue:
                entry = self._queue.popleft()
                if not entry.was_merged:
                    return entry
        return None

    def _merge_burst(self, head: PendingNotification) -> None:
        # Only this thread pops or merges; producers only ever append.
        for entry in self.pending():
            if entry.was_merged or entry.category is not head.category:
                continue
            entry.was_merged = True
            head.merged_children.append(entry.content)

    def _finalize(self, entry: PendingNotification) -> NotificationContent:
        content = replace(entry.content)
        if entry.merged_children:
            names = [entry.content.title] + [child.title for child in entry.merged_children]
            label = "Join" if entry.category is EventKind.PLAYER_JOINED else "Leave"
            content.body = ", ".join(names)
            content.title = f"Group {label}: {len(names)} users."
        if entry.category in GROUPABLE and self._show_player_count():
            session = self._session_view()
            content.title = f"{content.title}  <size=14>{session.occupancy()} users</size>"
        return content

    def _show_player_count(self) -> bool:
        if self._session_view is None or self._config is None:
            return False
        return bool(getattr(self._config, "display_player_count", False))
