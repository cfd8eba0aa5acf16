"""Tests for notification admission and the dispatch queue."""

import pytest

from vrchat_log_notifier.dispatch import (
    DispatchEngine,
    NotificationContent,
    NotificationRouter,
    PendingNotification,
)
from vrchat_log_notifier.parsing import (
    EventExtractor,
    EventKind,
    KeywordLimitExceeded,
    PlayerCapDiscovered,
    PlayerJoined,
    PlayerLeft,
    PortalDropped,
    SessionState,
    WorldChanged,
)
from vrchat_log_notifier.sinks import DeliveryError


def pending(kind, title, timeout=0.1):
    return PendingNotification(category=kind, content=NotificationContent(title=title, timeout_seconds=timeout))


def drain(engine, ticks=200):
    for _ in range(ticks):
        engine.tick()


@pytest.fixture
def queue():
    return []


@pytest.fixture
def router(config, queue, logger):
    return NotificationRouter(config, queue.append, logger)


class TestRouter:
    def test_join_uses_category_options(self, router, queue, config):
        assert router.handle(PlayerJoined("Alice"), SessionState(), now=0.0)
        (entry,) = queue
        assert entry.category is EventKind.PLAYER_JOINED
        assert entry.content.title == "Alice"
        assert entry.content.timeout_seconds == config.player_joined_timeout_seconds
        assert entry.content.opacity == config.opacity
        assert entry.duration_ms == 2500

    def test_titles(self, router, queue, config):
        config.display_keywords_exceeded = True
        session = SessionState()
        router.handle(PlayerLeft("Bob"), session, now=0.0)
        router.handle(WorldChanged("The Black Cat", "wrld_1"), session, now=0.0)
        router.handle(KeywordLimitExceeded(), session, now=0.0)
        router.handle(PortalDropped(), session, now=0.0)
        assert [entry.content.title for entry in queue] == [
            "Bob",
            "The Black Cat",
            "Maximum shader keywords exceeded!",
            "A portal has been spawned.",
        ]

    def test_disabled_category(self, router, queue, config):
        config.display_portal_dropped = False
        assert not router.handle(PortalDropped(), SessionState(), now=0.0)
        assert queue == []

    def test_keywords_disabled_by_default(self, router, queue):
        assert not router.handle(KeywordLimitExceeded(), SessionState(), now=0.0)

    def test_player_cap_is_never_notified(self, router, queue):
        assert not router.handle(PlayerCapDiscovered(cap=16), SessionState(), now=0.0)
        assert queue == []

    def test_keyword_cooldown(self, router, queue, config):
        config.display_keywords_exceeded = True
        config.keywords_exceeded_cooldown_seconds = 600
        session = SessionState()
        assert router.handle(KeywordLimitExceeded(), session, now=100.0)
        assert not router.handle(KeywordLimitExceeded(), session, now=200.0)
        assert len(queue) == 1
        assert router.handle(KeywordLimitExceeded(), session, now=701.0)
        assert len(queue) == 2
        assert session.last_keyword_warning_at == 701.0

    def test_silenced_join_and_leave(self, router, queue):
        session = SessionState(silenced_until=20.0)
        assert not router.handle(PlayerJoined("Alice"), session, now=10.0)
        assert not router.handle(PlayerLeft("Alice"), session, now=10.0)
        assert router.handle(PlayerJoined("Bob"), session, now=20.0)
        assert [entry.content.title for entry in queue] == ["Bob"]

    def test_silence_does_not_affect_world_or_portal(self, router, queue):
        session = SessionState(silenced_until=20.0)
        assert router.handle(WorldChanged("W", "wrld_1"), session, now=10.0)
        assert router.handle(PortalDropped(), session, now=10.0)

    def test_silence_override_disabled(self, router, queue, config):
        config.display_join_leave_silenced_override = False
        assert router.handle(PlayerJoined("Alice"), SessionState(silenced_until=20.0), now=10.0)

    def test_configuration_is_read_per_decision(self, router, queue, config):
        assert router.handle(PortalDropped(), SessionState(), now=0.0)
        config.display_portal_dropped = False
        assert not router.handle(PortalDropped(), SessionState(), now=0.0)


class TestDispatchEngine:
    def test_join_burst_is_grouped(self, sink):
        engine = DispatchEngine(sink)
        names = ["A", "B", "C", "D", "E"]
        for name in names:
            engine.enqueue(pending(EventKind.PLAYER_JOINED, name, timeout=2.5))
        assert engine.tick()
        (content,) = sink.delivered
        assert content.title == "Group Join: 5 users."
        assert content.body == "A, B, C, D, E"
        drain(engine)
        assert len(sink.delivered) == 1
        assert engine.pending() == []

    def test_leave_burst_is_grouped_separately(self, sink):
        engine = DispatchEngine(sink)
        engine.enqueue(pending(EventKind.PLAYER_LEFT, "A"))
        engine.enqueue(pending(EventKind.PLAYER_JOINED, "B"))
        engine.enqueue(pending(EventKind.PLAYER_LEFT, "C"))
        drain(engine)
        assert [(c.title, c.body) for c in sink.delivered] == [
            ("Group Leave: 2 users.", "A, C"),
            ("B", ""),
        ]

    def test_single_join_is_not_grouped(self, sink):
        engine = DispatchEngine(sink)
        engine.enqueue(pending(EventKind.PLAYER_JOINED, "Alice"))
        drain(engine)
        assert [c.title for c in sink.delivered] == ["Alice"]

    def test_fifo_order_and_pacing(self, sink):
        engine = DispatchEngine(sink, tick_ms=50)
        engine.enqueue(pending(EventKind.WORLD_CHANGED, "World", timeout=0.1))
        engine.enqueue(pending(EventKind.PORTAL_DROPPED, "Portal", timeout=0.1))
        assert engine.tick()
        assert engine.quiet_remaining_ms == 100
        assert not engine.tick()
        assert engine.tick()
        assert [c.title for c in sink.delivered] == ["World", "Portal"]

    def test_empty_queue(self, sink):
        engine = DispatchEngine(sink)
        assert not engine.tick()
        assert sink.delivered == []

    def test_player_count_suffix(self, sink, config):
        config.display_player_count = True
        session = SessionState(player_count=3, player_count_known=True, player_cap=16, player_cap_known=True)
        engine = DispatchEngine(sink, config, session_view=lambda: session)
        engine.enqueue(pending(EventKind.PLAYER_JOINED, "Alice"))
        engine.enqueue(pending(EventKind.PORTAL_DROPPED, "Portal"))
        drain(engine)
        assert [c.title for c in sink.delivered] == ["Alice  <size=14>3/16 users</size>", "Portal"]

    def test_sink_failure_is_fatal(self, logger):
        class BrokenSink:
            def deliver(self, content):
                raise DeliveryError("unreachable")

        fatal = []
        engine = DispatchEngine(BrokenSink(), logger=logger, on_fatal=fatal.append)
        engine.enqueue(pending(EventKind.PORTAL_DROPPED, "Portal"))
        engine.enqueue(pending(EventKind.PORTAL_DROPPED, "Portal"))
        assert not engine.tick()
        assert engine.failed
        assert len(fatal) == 1
        assert isinstance(fatal[0], DeliveryError)
        drain(engine)
        assert len(fatal) == 1
        assert logger.messages("ERROR")

    def test_queued_content_is_not_mutated(self, sink):
        engine = DispatchEngine(sink)
        first = pending(EventKind.PLAYER_JOINED, "A")
        engine.enqueue(first)
        engine.enqueue(pending(EventKind.PLAYER_JOINED, "B"))
        engine.tick()
        assert first.content.title == "A"


class TestPipeline:
    def test_joins_become_one_group_notification(self, config, logger, sink):
        engine = DispatchEngine(sink, config, logger)
        router = NotificationRouter(config, engine.enqueue, logger)
        extractor = EventExtractor(config, logger, on_event=router)
        text = "\n".join(f"[Behaviour] OnPlayerJoined Player{i}" for i in range(5))
        assert len(extractor.process(text)) == 5
        drain(engine)
        (content,) = sink.delivered
        assert content.title == "Group Join: 5 users."
        assert content.body == "Player0, Player1, Player2, Player3, Player4"

    def test_silence_window_uses_extractor_clock(self, config, logger):
        queue = []
        router = NotificationRouter(config, queue.append, logger)
        extractor = EventExtractor(config, logger, on_event=router, clock=lambda: 0.0)
        extractor.process(
            "[Behaviour] Successfully joined room\n"
            "[Behaviour] OnPlayerJoined Me\n"
            "[Behaviour] OnPlayerJoined Alice\n"
        )
        assert [entry.content.title for entry in queue] == ["Unknown world"]
        extractor.process("[Behaviour] OnPlayerJoined Bob", now=config.world_join_silence_seconds + 1.0)
        assert [entry.content.title for entry in queue] == ["Unknown world", "Bob"]

    def test_first_keyword_warning_waits_for_cooldown(self, config, logger):
        config.display_keywords_exceeded = True
        config.keywords_exceeded_cooldown_seconds = 600
        queue = []
        router = NotificationRouter(config, queue.append, logger)
        extractor = EventExtractor(config, logger, on_event=router, clock=lambda: 1000.0)
        warning = "Maximum number (256) of shader keywords exceeded, keyword _FOO will be ignored."
        assert extractor.process(warning, now=1010.0) == [KeywordLimitExceeded()]
        assert queue == []
        extractor.process(warning, now=1601.0)
        assert [entry.content.title for entry in queue] == ["Maximum shader keywords exceeded!"]
