"""Shared fixtures for the notifier tests."""

from typing import List, Tuple

import pytest

from vrchat_log_notifier.settings import AppConfig


class RecordingLogger:
    """Stands in for AppLogger and keeps every line in memory."""

    def __init__(self):
        self.lines: List[Tuple[str, str]] = []

    def log(self, message, level="INFO"):
        self.lines.append((level, message))

    def exception(self, exc):
        self.lines.append(("ERROR", str(exc)))

    def messages(self, level=None):
        return [message for lvl, message in self.lines if level is None or lvl == level]


class RecordingSink:
    def __init__(self):
        self.delivered = []
        self.closed = False

    def deliver(self, content):
        self.delivered.append(content)

    def close(self):
        self.closed = True


@pytest.fixture
def logger():
    return RecordingLogger()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def log_root(tmp_path):
    root = tmp_path / "VRChat"
    root.mkdir()
    return root


@pytest.fixture
def config(tmp_path, log_root):
    return AppConfig(install_dir=str(tmp_path / "home"), output_log_root=str(log_root))
