"""Configuration and logging shared by every part of the notifier.

The configuration lives in ``config.json`` inside the storage root and uses
PascalCase keys such as ``DisplayPlayerJoined``.  Missing keys fall back to
defaults, unknown keys are ignored and values of the wrong type are replaced
by the default instead of aborting the load.
"""
from __future__ import annotations

import json
import os
import sys
import threading
import traceback
from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

APP_NAME = "VRChat Log Notifier"
CONFIG_FILE_NAME = "config.json"
LOG_DIR_NAME = "Logs"
LOCK_FILE_NAME = "notifier.lock"
STORAGE_ENV_VAR = "VRCLN_HOME"

# Icon/audio references understood by the sinks without touching the disk.
BUILTIN_RESOURCES = frozenset({"", "default", "warning", "error"})

CATEGORIES = (
    "player_joined",
    "player_left",
    "world_changed",
    "keywords_exceeded",
    "portal_dropped",
)


def _expand_path(path: str) -> str:
    expanded = os.path.expanduser(os.path.expandvars(path.strip()))
    return os.path.abspath(expanded)


def _default_storage_root() -> str:
    override = os.environ.get(STORAGE_ENV_VAR)
    if override:
        return _expand_path(override)
    if os.name == "nt":
        root = os.path.join(os.environ.get("APPDATA", "~"), "..", "LocalLow", APP_NAME)
    else:
        root = os.path.join(os.path.expanduser("~/.local/share"), "vrchat-log-notifier")
    return _expand_path(root)


def _guess_vrchat_log_dir() -> str:
    if os.name == "nt":
        return _expand_path(os.path.join(os.environ.get("APPDATA", "~"), "..", "LocalLow", "VRChat", "VRChat"))
    candidates = [
        "~/.steam/steam/steamapps/compatdata/438100/pfx/drive_c/users/steamuser/AppData/LocalLow/VRChat/VRChat",
        "~/.local/share/Steam/steamapps/compatdata/438100/pfx/drive_c/users/steamuser/AppData/LocalLow/VRChat/VRChat",
    ]
    for candidate in candidates:
        path = _expand_path(candidate)
        if os.path.isdir(path):
            return path
    return _expand_path(candidates[0])


def _key(name: str) -> Dict[str, str]:
    return {"key": name}


def _coerce(value: Any, default: Any) -> Any:
    """Convert ``value`` to the type of ``default`` or return ``default``."""

    if isinstance(default, bool):
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.strip().lower() in {"true", "false"}:
            return value.strip().lower() == "true"
        return default
    if isinstance(default, int):
        if isinstance(value, bool):
            return default
        try:
            return int(value)
        except (TypeError, ValueError):
            return default
    if isinstance(default, float):
        if isinstance(value, bool):
            return default
        try:
            return float(value)
        except (TypeError, ValueError):
            return default
    if isinstance(default, str):
        return value if isinstance(value, str) else default
    return value


@dataclass(frozen=True)
class CategoryOptions:
    enabled: bool
    timeout_seconds: float
    volume: float
    icon: str
    audio: str


@dataclass
class AppConfig:
    install_dir: str = field(default_factory=_default_storage_root)

    # General
    parse_frequency_ms: int = field(default=300, metadata=_key("ParseFrequencyMilliseconds"))
    directory_poll_frequency_ms: int = field(default=5000, metadata=_key("DirectoryPollFrequencyMilliseconds"))
    output_log_root: str = field(default_factory=_guess_vrchat_log_dir, metadata=_key("OutputLogRoot"))
    log_file_marker: str = field(default="output_log", metadata=_key("LogFileMarker"))
    cold_start_scan_bytes: int = field(default=8 * 1024 * 1024, metadata=_key("ColdStartScanBytes"))
    log_notification_events: bool = field(default=True, metadata=_key("LogNotificationEvents"))
    opacity: float = field(default=0.75, metadata=_key("Opacity"))
    notification_sink: str = field(default="xsoverlay", metadata=_key("NotificationSink"))
    xsoverlay_port: int = field(default=42069, metadata=_key("XSOverlayPort"))
    display_player_count: bool = field(default=False, metadata=_key("DisplayPlayerCount"))

    # Player joined
    display_player_joined: bool = field(default=True, metadata=_key("DisplayPlayerJoined"))
    player_joined_timeout_seconds: float = field(default=2.5, metadata=_key("PlayerJoinedNotificationTimeoutSeconds"))
    player_joined_volume: float = field(default=0.2, metadata=_key("PlayerJoinedNotificationVolume"))
    player_joined_icon_path: str = field(default="Resources/Icons/player_joined.png", metadata=_key("PlayerJoinedIconPath"))
    player_joined_audio_path: str = field(default="Resources/Audio/player_joined.ogg", metadata=_key("PlayerJoinedAudioPath"))

    # Player left
    display_player_left: bool = field(default=True, metadata=_key("DisplayPlayerLeft"))
    player_left_timeout_seconds: float = field(default=2.5, metadata=_key("PlayerLeftNotificationTimeoutSeconds"))
    player_left_volume: float = field(default=0.2, metadata=_key("PlayerLeftNotificationVolume"))
    player_left_icon_path: str = field(default="Resources/Icons/player_left.png", metadata=_key("PlayerLeftIconPath"))
    player_left_audio_path: str = field(default="Resources/Audio/player_left.ogg", metadata=_key("PlayerLeftAudioPath"))

    # World changed
    display_world_changed: bool = field(default=True, metadata=_key("DisplayWorldChanged"))
    world_join_silence_seconds: float = field(default=20.0, metadata=_key("WorldJoinSilenceSeconds"))
    display_join_leave_silenced_override: bool = field(default=True, metadata=_key("DisplayJoinLeaveSilencedOverride"))
    world_changed_timeout_seconds: float = field(default=3.0, metadata=_key("WorldChangedNotificationTimeoutSeconds"))
    world_changed_volume: float = field(default=0.2, metadata=_key("WorldChangedNotificationVolume"))
    world_changed_icon_path: str = field(default="Resources/Icons/world_changed.png", metadata=_key("WorldChangedIconPath"))
    world_changed_audio_path: str = field(default="default", metadata=_key("WorldChangedAudioPath"))

    # Shader keywords exceeded
    display_keywords_exceeded: bool = field(default=False, metadata=_key("DisplayMaximumKeywordsExceeded"))
    keywords_exceeded_timeout_seconds: float = field(default=3.0, metadata=_key("MaximumKeywordsExceededTimeoutSeconds"))
    keywords_exceeded_cooldown_seconds: float = field(default=600.0, metadata=_key("MaximumKeywordsExceededCooldownSeconds"))
    keywords_exceeded_volume: float = field(default=0.2, metadata=_key("MaximumKeywordsExceededNotificationVolume"))
    keywords_exceeded_icon_path: str = field(default="Resources/Icons/keywords_exceeded.png", metadata=_key("MaximumKeywordsExceededIconPath"))
    keywords_exceeded_audio_path: str = field(default="warning", metadata=_key("MaximumKeywordsExceededAudioPath"))

    # Portal dropped
    display_portal_dropped: bool = field(default=True, metadata=_key("DisplayPortalDropped"))
    portal_dropped_timeout_seconds: float = field(default=3.0, metadata=_key("PortalDroppedTimeoutSeconds"))
    portal_dropped_volume: float = field(default=0.2, metadata=_key("PortalDroppedNotificationVolume"))
    portal_dropped_icon_path: str = field(default="Resources/Icons/portal_dropped.png", metadata=_key("PortalDroppedIconPath"))
    portal_dropped_audio_path: str = field(default="default", metadata=_key("PortalDroppedAudioPath"))

    _lock: Any = field(default_factory=threading.RLock, init=False, repr=False, compare=False)

    @classmethod
    def load(cls, storage_root: Optional[str] = None) -> Tuple["AppConfig", Optional[str]]:
        """Load ``config.json`` and write it back so newly added keys show up."""

        cfg = cls(install_dir=_expand_path(storage_root) if storage_root else _default_storage_root())
        cfg.ensure_install_dir()
        load_error = cfg.reload()
        if load_error is None:
            try:
                cfg.save()
            except OSError as exc:
                load_error = f"Failed to write settings: {exc}"
        return cfg, load_error

    def reload(self) -> Optional[str]:
        """Re-read the configuration file in place.

        Readers pick up the new values on their next decision, nothing caches
        individual settings.  Returns an error message when the file could not
        be parsed; the current values are kept in that case.
        """

        path = self.config_path()
        if not os.path.exists(path):
            return None
        try:
            with open(path, "r", encoding="utf-8") as handle:
                data = json.load(handle)
        except (OSError, ValueError) as exc:
            return f"Failed to load settings: {exc}"
        if not isinstance(data, dict):
            return "Failed to load settings: top level value is not an object"
        defaults = type(self)(install_dir=self.install_dir)
        with self._lock:
            for spec in self._persisted_fields():
                default = getattr(defaults, spec.name)
                raw = data.get(spec.metadata["key"], default)
                setattr(self, spec.name, _coerce(raw, default))
        return None

    def ensure_install_dir(self) -> None:
        os.makedirs(self.install_dir, exist_ok=True)

    def config_path(self) -> str:
        return os.path.join(self.install_dir, CONFIG_FILE_NAME)

    def log_dir(self) -> str:
        return os.path.join(self.install_dir, LOG_DIR_NAME)

    def as_dict(self) -> Dict[str, Any]:
        with self._lock:
            return {spec.metadata["key"]: getattr(self, spec.name) for spec in self._persisted_fields()}

    def save(self) -> None:
        self.ensure_install_dir()
        payload = self.as_dict()
        with self._lock:
            with open(self.config_path(), "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2, ensure_ascii=False)

    def expanded_log_root(self) -> str:
        return _expand_path(self.output_log_root)

    def category(self, name: str) -> CategoryOptions:
        with self._lock:
            return CategoryOptions(
                enabled=bool(getattr(self, f"display_{name}")),
                timeout_seconds=float(getattr(self, f"{name}_timeout_seconds")),
                volume=min(max(float(getattr(self, f"{name}_volume")), 0.0), 1.0),
                icon=self.resolve_resource(getattr(self, f"{name}_icon_path")),
                audio=self.resolve_resource(getattr(self, f"{name}_audio_path")),
            )

    def resolve_resource(self, value: str) -> str:
        if value.strip().lower() in BUILTIN_RESOURCES:
            return value
        if os.path.isabs(value):
            return value
        return os.path.join(self.install_dir, value.lstrip("\\/"))

    @staticmethod
    def _persisted_fields():
        return [spec for spec in fields(AppConfig) if "key" in spec.metadata]


class AppLogger:
    """Session log writer.

    Every run gets its own ``Logs/Session_<timestamp>.log`` file.  Lines look
    like ``[21:04:11] <EVENT> Portal dropped.``.
    """

    def __init__(self, config: AppConfig, echo: bool = False) -> None:
        self._config = config
        self._lock = threading.Lock()
        self._echo = echo
        started = datetime.now()
        self.path = os.path.join(config.log_dir(), f"Session_{started:%Y%m%d%H%M%S}.log")

    def log(self, message: str, level: str = "INFO") -> None:
        if level == "EVENT" and not self._config.log_notification_events:
            return
        timestamp = datetime.now().strftime("%H:%M:%S")
        line = f"[{timestamp}] <{level}> {message}"
        with self._lock:
            try:
                os.makedirs(os.path.dirname(self.path), exist_ok=True)
                with open(self.path, "a", encoding="utf-8") as handle:
                    handle.write(line + "\n")
            except OSError:
                pass
            if self._echo:
                sys.stderr.write(line + "\n")
                sys.stderr.flush()

    def exception(self, exc: BaseException) -> None:
        details = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)).rstrip()
        self.log(f"{exc}\n{details}", "ERROR")
