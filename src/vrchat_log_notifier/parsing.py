"""Turn raw VRChat log text into domain events.

VRChat changes its log format often enough that nothing here relies on a
fixed layout: every line is normalised and then matched against an ordered
table of substring rules.  The first rule that matches wins and a line yields
at most one event.
"""
from __future__ import annotations

import codecs
import enum
import re
import threading
import time
from dataclasses import dataclass, replace
from typing import Callable, List, Optional, Sequence, Tuple

PLAYER_PLACEHOLDER = "No username was provided."
WORLD_NAME_PLACEHOLDER = "Unknown world"
WORLD_ID_PLACEHOLDER = "unknown"

_USER_ID_SUFFIX = re.compile(r"\s*\((usr_[^\s\)]+)\)\s*$", re.IGNORECASE)
_WHITESPACE = re.compile(r"\s+")


class EventKind(enum.Enum):
    PLAYER_JOINED = "player_joined"
    PLAYER_LEFT = "player_left"
    WORLD_CHANGED = "world_changed"
    PORTAL_DROPPED = "portal_dropped"
    KEYWORDS_EXCEEDED = "keywords_exceeded"
    PLAYER_CAP_DISCOVERED = "player_cap_discovered"


@dataclass(frozen=True)
class PlayerJoined:
    display_name: str
    user_id: str = ""
    kind = EventKind.PLAYER_JOINED


@dataclass(frozen=True)
class PlayerLeft:
    display_name: str
    user_id: str = ""
    kind = EventKind.PLAYER_LEFT


@dataclass(frozen=True)
class WorldChanged:
    world_name: str
    world_id: str
    kind = EventKind.WORLD_CHANGED


@dataclass(frozen=True)
class PortalDropped:
    kind = EventKind.PORTAL_DROPPED


@dataclass(frozen=True)
class KeywordLimitExceeded:
    kind = EventKind.KEYWORDS_EXCEEDED


@dataclass(frozen=True)
class PlayerCapDiscovered:
    cap: int
    kind = EventKind.PLAYER_CAP_DISCOVERED


@dataclass
class SessionState:
    world_id: str = ""
    world_name: str = ""
    player_count: int = 0
    player_count_known: bool = False
    player_cap: int = 0
    player_cap_known: bool = False
    next_join_is_local_user: bool = False
    silenced_until: Optional[float] = None
    last_keyword_warning_at: Optional[float] = None

    def occupancy(self) -> str:
        count = str(self.player_count) if self.player_count_known else "??"
        cap = str(self.player_cap) if self.player_cap_known else "??"
        return f"{count}/{cap}"

    def is_silenced(self, now: float) -> bool:
        return self.silenced_until is not None and now < self.silenced_until


def strip_zero_width(text: str) -> str:
    return re.sub(r"[\u200b-\u200d\ufeff]", "", text)


def normalize_line(line: str) -> str:
    clean = strip_zero_width(line).replace("\r", "").replace("\n", "").replace("\t", "")
    return _WHITESPACE.sub(" ", clean.strip())


def trailing_field(tokens: Sequence[str], marker: str, placeholder: str) -> str:
    """Return every token after ``marker`` joined by single spaces."""

    try:
        index = list(tokens).index(marker)
    except ValueError:
        return placeholder
    value = " ".join(tokens[index + 1 :]).strip()
    return value or placeholder


def split_user_id(name: str) -> Tuple[str, str]:
    match = _USER_ID_SUFFIX.search(name)
    if not match:
        return name, ""
    display = name[: match.start()].strip()
    return display or PLAYER_PLACEHOLDER, match.group(1)


def parse_cap(tokens: Sequence[str]) -> Optional[int]:
    if not tokens:
        return None
    try:
        return int(tokens[-1].strip().rstrip("."))
    except ValueError:
        return None


Handler = Callable[["EventExtractor", str, List[str], float], Optional[object]]
Predicate = Callable[[str], bool]


def _on_world_name(extractor: "EventExtractor", line: str, tokens: List[str], now: float) -> None:
    extractor.session.world_name = trailing_field(tokens, "Room:", WORLD_NAME_PLACEHOLDER)
    return None


def _on_world_id(extractor: "EventExtractor", line: str, tokens: List[str], now: float) -> None:
    world_id = trailing_field(tokens, "Joining", WORLD_ID_PLACEHOLDER)
    extractor.session.world_id = world_id.split(" ", 1)[0]
    return None


def _on_world_joined(extractor: "EventExtractor", line: str, tokens: List[str], now: float) -> WorldChanged:
    session = extractor.session
    session.silenced_until = now + max(extractor.silence_seconds(), 0.0)
    session.next_join_is_local_user = True
    session.player_count_known = True
    return WorldChanged(
        world_name=session.world_name or WORLD_NAME_PLACEHOLDER,
        world_id=session.world_id or WORLD_ID_PLACEHOLDER,
    )


def _on_player_joined(extractor: "EventExtractor", line: str, tokens: List[str], now: float) -> Optional[PlayerJoined]:
    session = extractor.session
    name, user_id = split_user_id(trailing_field(tokens, "OnPlayerJoined", PLAYER_PLACEHOLDER))
    session.player_count += 1
    if session.next_join_is_local_user:
        session.next_join_is_local_user = False
        session.player_count = 1
        extractor.log(f"[{session.occupancy()}] Local user joined: {name}", "EVENT")
        return None
    return PlayerJoined(display_name=name, user_id=user_id)


def _on_player_left(extractor: "EventExtractor", line: str, tokens: List[str], now: float) -> PlayerLeft:
    name, user_id = split_user_id(trailing_field(tokens, "OnPlayerLeft", PLAYER_PLACEHOLDER))
    extractor.session.player_count -= 1
    return PlayerLeft(display_name=name, user_id=user_id)


def _on_keywords(extractor: "EventExtractor", line: str, tokens: List[str], now: float) -> KeywordLimitExceeded:
    return KeywordLimitExceeded()


def _on_portal(extractor: "EventExtractor", line: str, tokens: List[str], now: float) -> PortalDropped:
    return PortalDropped()


def _on_hard_max(extractor: "EventExtractor", line: str, tokens: List[str], now: float) -> Optional[PlayerCapDiscovered]:
    session = extractor.session
    cap = parse_cap(tokens)
    if cap is None:
        session.player_cap_known = False
        extractor.log("Failed to retrieve player cap data for instance.")
        return None
    session.player_cap = cap
    session.player_cap_known = True
    return PlayerCapDiscovered(cap=cap)


LINE_RULES: Tuple[Tuple[str, Predicate, Handler], ...] = (
    ("world_name", lambda line: "Joining or" in line, _on_world_name),
    ("world_id", lambda line: "Joining w" in line, _on_world_id),
    ("world_joined", lambda line: "Successfully joined room" in line, _on_world_joined),
    ("player_joined", lambda line: "[Behaviour] OnPlayerJoined" in line, _on_player_joined),
    ("player_left", lambda line: "[Behaviour] OnPlayerLeft " in line, _on_player_left),
    ("keywords", lambda line: "Maximum number (256)" in line, _on_keywords),
    (
        "portal",
        lambda line: "[Behaviour]" in line and "Portals/PortalInternalDynamic" in line,
        _on_portal,
    ),
    ("hard_max", lambda line: "[Behaviour] Hard max" in line, _on_hard_max),
)


def classify(line: str) -> Optional[Tuple[str, Handler]]:
    for name, predicate, handler in LINE_RULES:
        if predicate(line):
            return name, handler
    return None


class EventExtractor:
    """Owns the session state and classifies appended log text.

    ``on_event(event, session, now)`` is called for every produced event while
    the session lock is still held, so whoever decides about notifications
    sees the state exactly as it was right after that line, on the same clock
    that stamped it.

    The keyword warning cooldown starts armed at construction time; the first
    warning can only go out once a full cooldown has passed since startup.
    """

    def __init__(
        self,
        config,
        logger,
        on_event: Optional[Callable[[object, SessionState, float], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._logger = logger
        self._on_event = on_event
        self._clock = clock
        self._lock = threading.RLock()
        self.session = SessionState()
        self.session.last_keyword_warning_at = clock()

    def log(self, message: str, level: str = "INFO") -> None:
        if self._logger is not None:
            self._logger.log(message, level)

    def silence_seconds(self) -> float:
        return float(self._config.world_join_silence_seconds)

    def snapshot(self) -> SessionState:
        with self._lock:
            return replace(self.session)

    def process(self, text: str, now: Optional[float] = None) -> List[object]:
        """Classify every line of ``text`` and return the produced events."""

        events: List[object] = []
        if not text or not text.strip():
            return events
        with self._lock:
            for raw_line in text.split("\n"):
                line = normalize_line(raw_line)
                if not line:
                    continue
                event = self._process_line(line, self._clock() if now is None else now)
                if event is not None:
                    events.append(event)
        return events

    def _process_line(self, line: str, now: float) -> Optional[object]:
        match = classify(line)
        if match is None:
            return None
        _, handler = match
        event = handler(self, line, line.split(" "), now)
        if event is None:
            return None
        self._report(event)
        if self._on_event is not None:
            try:
                self._on_event(event, self.session, now)
            except Exception as exc:
                self.log(f"Event handler failed for {type(event).__name__}: {exc}", "ERROR")
        return event

    def _report(self, event: object) -> None:
        session = self.session
        if isinstance(event, WorldChanged):
            self.log(f"World changed to {event.world_name} -> {event.world_id}", "EVENT")
            if event.world_id != WORLD_ID_PLACEHOLDER:
                launch = event.world_id.replace(":", "&instanceId=", 1)
                self.log(f"https://vrchat.com/home/launch?worldId={launch}")
        elif isinstance(event, PlayerJoined):
            self.log(f"[{session.occupancy()}] Join: {event.display_name}", "EVENT")
        elif isinstance(event, PlayerLeft):
            self.log(f"[{session.occupancy()}] Leave: {event.display_name}", "EVENT")
        elif isinstance(event, KeywordLimitExceeded):
            self.log("Maximum shader keywords exceeded!", "EVENT")
        elif isinstance(event, PortalDropped):
            self.log("Portal dropped.", "EVENT")
        elif isinstance(event, PlayerCapDiscovered):
            self.log(f"Player cap is {event.cap}")

    def rewind(self, path: str, from_byte: int) -> bool:
        """Rebuild the session from the content already in ``path``.

        Walks the lines before ``from_byte`` backwards until the ``Hard max``
        line that opens the current instance.  Nothing is emitted; the state is
        only committed when that anchor carried a usable cap.  Returns whether
        the state was updated.
        """

        self.log(f"Rewinding time to collect metadata for first time read of log at {path}...")
        limit = max(int(self._config.cold_start_scan_bytes), 0)
        start = max(from_byte - limit, 0)
        try:
            with open(path, "rb") as handle:
                handle.seek(start)
                data = handle.read(max(from_byte - start, 0))
        except OSError as exc:
            self.log(f"Failed to rewind '{path}': {exc}", "ERROR")
            return False

        text = codecs.decode(data, "utf-8", "replace")
        world_name = ""
        world_id = ""
        players = 0
        cap: Optional[int] = None
        anchored = False
        for raw_line in reversed(text.split("\n")):
            line = normalize_line(raw_line)
            if not line:
                continue
            tokens = line.split(" ")
            if "[Behaviour] OnPlayerJoined" in line:
                players += 1
            elif "[Behaviour] OnPlayerLeft " in line:
                players -= 1
            elif "Joining or" in line:
                world_name = world_name or trailing_field(tokens, "Room:", WORLD_NAME_PLACEHOLDER)
            elif "Joining w" in line:
                world_id = world_id or trailing_field(tokens, "Joining", WORLD_ID_PLACEHOLDER).split(" ", 1)[0]
            elif "[Behaviour] Hard max" in line:
                anchored = True
                cap = parse_cap(tokens)
                break

        if not anchored or cap is None:
            self.log("No existing instance found.")
            return False

        with self._lock:
            session = self.session
            session.player_count = players
            session.player_count_known = True
            session.player_cap = cap
            session.player_cap_known = True
            if world_name:
                session.world_name = world_name
            if world_id:
                session.world_id = world_id
        self.log(f"Discovered instance {world_name or WORLD_NAME_PLACEHOLDER} ({world_id or WORLD_ID_PLACEHOLDER}).")
        self.log(f"Discovered {players} players with a cap of {cap}.")
        return True
