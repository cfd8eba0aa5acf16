"""VRChat Log Notifier.

Watches the VRChat log directory and forwards join/leave, world, portal and
shader keyword events to XSOverlay (or the desktop) as notifications.  The
process runs headless; when ``pystray`` and ``Pillow`` are installed a tray
icon shows the current instance and offers reload/quit.
"""
from __future__ import annotations

import argparse
import importlib.util
import os
import signal
import sys
import threading
import time
from typing import Callable, Dict, List, Optional, Tuple

from .dispatch import DispatchEngine, NotificationContent, NotificationRouter, PendingNotification
from .entrypoint_utils import run_guarded
from .parsing import EventExtractor
from .settings import (
    APP_NAME,
    LOCK_FILE_NAME,
    AppConfig,
    AppLogger,
    _default_storage_root,
    _expand_path,
)
from .sinks import create_sink
from .tailing import DirectoryWatcher

_TRAY_SPEC = importlib.util.find_spec("pystray")
_PIL_SPEC = importlib.util.find_spec("PIL")
if _PIL_SPEC:
    from PIL import Image, ImageDraw
else:  # pragma: no cover - optional dependency
    Image = None  # type: ignore
    ImageDraw = None  # type: ignore

STARTUP_NOTIFICATION_HEIGHT = 110.0
STATUS_REFRESH_SECONDS = 1.0


class NotifierService:
    """Builds the pipeline once and owns its lifecycle.

    watcher → tail subscriptions → extractor → router → dispatch engine → sink
    """

    def __init__(self, config: AppConfig, logger: AppLogger, sink=None, clock: Callable[[], float] = time.monotonic) -> None:
        self.config = config
        self.logger = logger
        self.sink = sink if sink is not None else create_sink(config, logger)
        self.exit_code = 0
        self._stop_event = threading.Event()
        self.engine = DispatchEngine(
            self.sink,
            config,
            logger,
            session_view=lambda: self.extractor.snapshot(),
            on_fatal=self._on_fatal,
        )
        self.router = NotificationRouter(config, self.engine.enqueue, logger)
        self.extractor = EventExtractor(config, logger, on_event=self.router, clock=clock)
        self.watcher = DirectoryWatcher(
            config,
            self.extractor.process,
            logger,
            on_initial_scan=self.extractor.rewind,
            clock=clock,
        )

    def start(self) -> None:
        self.engine.start()
        self.logger.log("Dispatcher initialized.")
        self.announce_startup()
        self.watcher.start()

    def announce_startup(self) -> None:
        self.engine.enqueue(
            PendingNotification(
                category=None,
                content=NotificationContent(
                    title="Application Started",
                    body=f"{APP_NAME} has initialized.",
                    audio="default",
                    icon="default",
                    height=STARTUP_NOTIFICATION_HEIGHT,
                    opacity=float(self.config.opacity),
                ),
            )
        )

    def stop(self) -> None:
        self.logger.log("Cleaning up before termination.")
        self._stop_event.set()
        self.watcher.stop()
        self.engine.stop()
        close = getattr(self.sink, "close", None)
        if close is not None:
            close()
        self.logger.log("Exiting.")

    def request_stop(self) -> None:
        self._stop_event.set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._stop_event.wait(timeout)

    def reload_config(self) -> None:
        error = self.config.reload()
        if error:
            self.logger.log(error, "ERROR")
        else:
            self.logger.log(f"Settings reloaded from {self.config.config_path()}")

    def status(self) -> Tuple[bool, str]:
        """Whether a world is known, plus a one-line description for the tray."""

        session = self.extractor.snapshot()
        if not session.world_name:
            return False, "Waiting for a world"
        return True, f"{session.world_name} [{session.occupancy()}]"

    def _on_fatal(self, exc: BaseException) -> None:
        self.logger.log(f"Notification delivery failed ({exc}); terminating.", "ERROR")
        self.exit_code = 1
        self._stop_event.set()


class TrayIconController:
    """Tray icon showing the current instance, with reload and quit actions.

    The icon is blue while the notifier knows which world the user is in and
    grey otherwise.  pystray owns its own thread; every state change coming
    from the service goes through :meth:`update_state`.
    """

    IDLE_COLOUR = (128, 128, 128, 255)
    IN_WORLD_COLOUR = (46, 134, 222, 255)

    def __init__(self, service: NotifierService, logger: AppLogger) -> None:
        self.service = service
        self.logger = logger
        self.available = bool(_TRAY_SPEC and Image and ImageDraw)
        self.disabled_reason: Optional[str] = None
        if not self.available:
            self.disabled_reason = "install 'pystray' and 'Pillow' to enable it."
        self.icon: Optional["pystray.Icon"] = None
        self._images: Dict[bool, "Image.Image"] = {}
        self._thread: Optional[threading.Thread] = None
        self._ready = threading.Event()
        self._in_world = False
        self._status = "Waiting for a world"

    def start(self) -> None:
        if self.icon is not None:
            return
        reason = self._unavailable_reason()
        if reason is None:
            try:
                import pystray
            except Exception as exc:
                # pystray selects its display backend at import time.
                reason = f"failed to load pystray ({exc})."
        if reason is not None:
            self.available = False
            self.disabled_reason = reason
            self.logger.log(f"Tray icon disabled: {reason}")
            return

        self._images = {flag: self._create_icon(flag) for flag in (False, True)}
        menu = pystray.Menu(
            pystray.MenuItem(lambda item: self._status, lambda icon, item: None, enabled=False),
            pystray.Menu.SEPARATOR,
            pystray.MenuItem("Reload Settings", self._menu_reload),
            pystray.MenuItem("Quit", self._menu_quit),
        )
        self.icon = pystray.Icon("vrchat-log-notifier", self._images[False], APP_NAME, menu)
        self._thread = threading.Thread(target=self._run, name="TrayIcon", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        icon = self.icon
        if icon is not None and self._ready.is_set():
            try:
                icon.stop()
            except Exception as exc:
                self.logger.log(f"Failed to stop tray icon: {exc}", "ERROR")
        if self._thread is not None:
            self._thread.join(timeout=2.0)
        self.icon = None
        self._thread = None
        self._ready.clear()

    def update_state(self, in_world: bool, status: str) -> None:
        changed = in_world != self._in_world or status != self._status
        self._in_world = in_world
        self._status = status
        icon = self.icon
        if not changed or icon is None or not self._ready.is_set():
            return
        icon.icon = self._images[in_world]
        icon.title = f"{APP_NAME}: {status}"
        icon.update_menu()

    def _unavailable_reason(self) -> Optional[str]:
        if not self.available:
            return self.disabled_reason
        if sys.platform.startswith("linux") and not (
            os.environ.get("DISPLAY") or os.environ.get("WAYLAND_DISPLAY")
        ):
            return "no graphical display detected (DISPLAY/WAYLAND_DISPLAY not set)."
        return None

    def _run(self) -> None:
        icon = self.icon
        if icon is None:
            return
        try:
            icon.run(self._on_setup)
        except Exception as exc:
            self.available = False
            self.disabled_reason = f"failed to initialise system tray ({str(exc).strip() or type(exc).__name__})."
            self.logger.log(f"Tray icon disabled: {self.disabled_reason}")
        finally:
            self._ready.clear()

    def _on_setup(self, icon: "pystray.Icon") -> None:
        icon.visible = True
        self._ready.set()
        icon.icon = self._images[self._in_world]
        icon.title = f"{APP_NAME}: {self._status}"

    def _menu_reload(self, icon: "pystray.Icon", item: "pystray.MenuItem") -> None:
        self.service.reload_config()

    def _menu_quit(self, icon: "pystray.Icon", item: "pystray.MenuItem") -> None:
        self.service.request_stop()

    def _create_icon(self, in_world: bool) -> "Image.Image":
        size = 64
        image = Image.new("RGBA", (size, size), (0, 0, 0, 0))
        draw = ImageDraw.Draw(image)
        draw.ellipse((4, 4, size - 4, size - 4), fill=self.IN_WORLD_COLOUR if in_world else self.IDLE_COLOUR)
        draw.rectangle((20, 26, 44, 38), fill=(255, 255, 255, 220))
        return image


def _parse_args(argv: Optional[List[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="vrchat-log-notifier", description=APP_NAME)
    parser.add_argument("--storage-dir", help="folder holding config.json and the session logs")
    parser.add_argument("--no-tray", action="store_true", help="do not show the tray icon")
    parser.add_argument("--quiet", action="store_true", help="do not echo the session log to stderr")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    config, load_error = AppConfig.load(args.storage_dir)
    logger = AppLogger(config, echo=not args.quiet)
    logger.log(f"Log initialized at {logger.path}")
    if load_error:
        logger.log(load_error, "ERROR")

    service = NotifierService(config, logger)
    if threading.current_thread() is threading.main_thread():
        signal.signal(signal.SIGTERM, lambda signum, frame: service.request_stop())

    tray = None if args.no_tray else TrayIconController(service, logger)
    service.start()
    if tray is not None:
        tray.start()
    try:
        while not service.wait(STATUS_REFRESH_SECONDS):
            if tray is not None:
                tray.update_state(*service.status())
    finally:
        if tray is not None:
            tray.stop()
        service.stop()
    return service.exit_code


def run(argv: Optional[List[str]] = None) -> int:
    """Console entrypoint: ``main`` behind the single instance lock."""

    arguments = sys.argv[1:] if argv is None else argv
    storage_dir = _parse_args(arguments).storage_dir
    storage_root = _expand_path(storage_dir) if storage_dir else _default_storage_root()
    lock_path = os.path.join(storage_root, LOCK_FILE_NAME)
    return run_guarded(lambda: main(arguments), lock_path)


if __name__ == "__main__":
    raise SystemExit(run())
