"""Tests for service wiring and the command line entrypoint."""

import sys
import time

import pytest

from vrchat_log_notifier.app import NotifierService, TrayIconController, _parse_args, run


def wait_for(predicate, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


@pytest.fixture
def service(config, logger, sink):
    return NotifierService(config, logger, sink=sink)


class TestNotifierService:
    def test_announce_startup(self, service):
        service.announce_startup()
        (entry,) = service.engine.pending()
        assert entry.category is None
        assert entry.content.title == "Application Started"
        assert entry.content.height == 110.0

    def test_extracted_events_reach_the_queue(self, service):
        service.extractor.process("[Behaviour] OnPlayerJoined Bob")
        assert [entry.content.title for entry in service.engine.pending()] == ["Bob"]

    def test_joins_after_world_join_are_silenced(self, config, logger, sink):
        service = NotifierService(config, logger, sink=sink, clock=lambda: 0.0)
        service.extractor.process(
            "[Behaviour] Successfully joined room\n"
            "[Behaviour] OnPlayerJoined Me\n"
            "[Behaviour] OnPlayerJoined Alice\n"
        )
        assert [entry.content.title for entry in service.engine.pending()] == ["Unknown world"]

    def test_status(self, service):
        assert service.status() == (False, "Waiting for a world")
        service.extractor.process("[Behaviour] Joining or Creating Room: Lobby\n[Behaviour] Successfully joined room")
        assert service.status() == (True, "Lobby [0/??]")

    def test_fatal_delivery_stops_the_service(self, service):
        service._on_fatal(RuntimeError("gone"))
        assert service.exit_code == 1
        assert service.wait(0)

    def test_reload_reports_errors(self, service, config, logger):
        config.ensure_install_dir()
        with open(config.config_path(), "w", encoding="utf-8") as handle:
            handle.write("{")
        service.reload_config()
        assert logger.messages("ERROR")

    def test_start_and_stop(self, service, sink, log_root):
        log = log_root / "output_log_2030-01-01_10-00-00.txt"
        log.write_bytes(b"")
        service.start()
        try:
            assert wait_for(lambda: len(sink.delivered) == 1)
            assert sink.delivered[0].title == "Application Started"
            assert wait_for(lambda: str(log) in service.watcher.subscriptions)
            with open(log, "a", encoding="utf-8") as handle:
                handle.write("[Behaviour] Instantiated Portals/PortalInternalDynamic\n")
            # The startup notification holds the queue for its full timeout.
            assert wait_for(lambda: len(sink.delivered) == 2, timeout=8.0)
            assert sink.delivered[1].title == "A portal has been spawned."
        finally:
            service.stop()
        assert sink.closed


class TestTrayIconController:
    @pytest.mark.skipif(not sys.platform.startswith("linux"), reason="display probe is Linux only")
    def test_disabled_without_display(self, service, logger, monkeypatch):
        monkeypatch.delenv("DISPLAY", raising=False)
        monkeypatch.delenv("WAYLAND_DISPLAY", raising=False)
        tray = TrayIconController(service, logger)
        tray.start()
        assert tray.icon is None
        assert any(message.startswith("Tray icon disabled") for message in logger.messages())
        tray.update_state(True, "ignored")
        tray.stop()


class TestCommandLine:
    def test_parse_args(self):
        args = _parse_args(["--storage-dir", "/tmp/x", "--no-tray", "--quiet"])
        assert args.storage_dir == "/tmp/x"
        assert args.no_tray
        assert args.quiet

    def test_second_instance_exits_with_one(self, tmp_path, monkeypatch):
        from vrchat_log_notifier.entrypoint_utils import InstanceGuard

        monkeypatch.setenv("VRCLN_MEMORY_SOFT_LIMIT", "0")
        home = tmp_path / "home"
        with InstanceGuard(str(home / "notifier.lock")):
            assert run(["--storage-dir", str(home), "--no-tray", "--quiet"]) == 1
