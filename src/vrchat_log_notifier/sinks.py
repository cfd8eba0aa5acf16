"""Notification sinks.

A sink exposes ``deliver(content)`` and raises :class:`DeliveryError` when the
notification could not be handed over.  The dispatcher treats that as fatal,
so sinks only raise for failures that will not fix themselves.
"""
from __future__ import annotations

import json
import os
import socket
import subprocess
from typing import Optional

from .dispatch import NotificationContent
from .settings import APP_NAME

XSOVERLAY_HOST = "127.0.0.1"
XSOVERLAY_PORT = 42069
NOTIFY_SEND_TIMEOUT_SECONDS = 5.0


class DeliveryError(RuntimeError):
    """Raised when a sink cannot deliver a notification."""


def shutil_which(executable: str) -> Optional[str]:
    for directory in os.environ.get("PATH", "").split(os.pathsep):
        candidate = os.path.join(directory.strip(), executable)
        if os.path.isfile(candidate) and os.access(candidate, os.X_OK):
            return candidate
    return None


class XSOverlaySink:
    """Sends notifications to XSOverlay's local UDP listener."""

    def __init__(self, host: str = XSOVERLAY_HOST, port: int = XSOVERLAY_PORT) -> None:
        self.host = host
        self.port = port
        self._socket = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)

    @staticmethod
    def build_payload(content: NotificationContent) -> bytes:
        message = {
            "messageType": 1,
            "index": 0,
            "timeout": content.timeout_seconds,
            "height": content.height,
            "opacity": content.opacity,
            "volume": content.volume,
            "audioPath": content.audio,
            "title": content.title,
            "content": content.body,
            "useBase64Icon": False,
            "icon": content.icon,
            "sourceApp": content.source_app,
        }
        return json.dumps(message, ensure_ascii=False).encode("utf-8")

    def deliver(self, content: NotificationContent) -> None:
        try:
            self._socket.sendto(self.build_payload(content), (self.host, self.port))
        except OSError as exc:
            raise DeliveryError(f"XSOverlay send failed: {exc}") from exc

    def close(self) -> None:
        self._socket.close()


class DesktopSink:
    """Shows notifications through ``notify-send``."""

    def __init__(self, executable: Optional[str] = None) -> None:
        self._notify_send = executable or shutil_which("notify-send")

    def deliver(self, content: NotificationContent) -> None:
        if not self._notify_send:
            raise DeliveryError("notify-send is not available on PATH.")
        icon = content.icon if os.path.isfile(content.icon) else "dialog-information"
        command = [
            self._notify_send,
            "--app-name",
            content.source_app or APP_NAME,
            "--icon",
            icon,
            "--expire-time",
            str(max(int(content.timeout_seconds * 1000), 0)),
            content.title,
            content.body,
        ]
        try:
            result = subprocess.run(
                command,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=NOTIFY_SEND_TIMEOUT_SECONDS,
                check=False,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            raise DeliveryError(f"notify-send failed: {exc}") from exc
        if result.returncode != 0:
            raise DeliveryError(f"notify-send exited with status {result.returncode}")

    def close(self) -> None:
        pass


class LogSink:
    def __init__(self, logger) -> None:
        self._logger = logger

    def deliver(self, content: NotificationContent) -> None:
        message = f"Notification: {content.title}"
        if content.body:
            message += f" - {content.body}"
        self._logger.log(message)

    def close(self) -> None:
        pass


def create_sink(config, logger):
    kind = (config.notification_sink or "").strip().lower()
    if kind == "desktop":
        return DesktopSink()
    if kind == "log":
        return LogSink(logger)
    if kind != "xsoverlay":
        logger.log(f"Unknown notification sink '{config.notification_sink}'; using XSOverlay.", "ERROR")
    return XSOverlaySink(port=int(config.xsoverlay_port))
