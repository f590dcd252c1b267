"""
test_daemon.py - daemon lifecycle

Checks:
1. setup: port advertised, reserved session, stale saves pruned
2. tick: idle ceiling → own snapshots deleted, port file released, stop
3. tick: another daemon advertised and nothing open → stop
4. tick: open sessions keep the daemon running
5. tick: a contended port file lock doesn't block request handling
"""

import asyncio
import logging
import os
import time
from collections.abc import Generator
from types import SimpleNamespace

import pytest
import uvicorn

from outpost_forms.app.daemon import FormsDaemon, bind_loopback_socket
from outpost_forms.core.portfile import advertise_port, port_file_lock, read_port
from outpost_forms.core.registry import SessionRegistry
from outpost_forms.core.settings import DaemonConfig
from outpost_forms.core.storage import atomic_write_json
from outpost_forms.domain.schemas import DaemonPaths

PORT = 9001


@pytest.fixture(autouse=True)
def restore_root_logger() -> Generator[None, None, None]:
    root = logging.getLogger()
    handlers = list(root.handlers)
    yield
    for handler in list(root.handlers):
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()


def make_daemon(paths: DaemonPaths, **timings) -> FormsDaemon:
    """A daemon as setup() leaves it, without a socket or uvicorn."""
    config = DaemonConfig(sweep_interval=5, **timings)
    daemon = FormsDaemon(paths, config)
    daemon.port = PORT
    daemon.registry = SessionRegistry(paths, PORT, config)
    daemon.server = SimpleNamespace(should_exit=False)
    return daemon


def write_snapshot(paths: DaemonPaths, port: int, form_id: str):
    path = paths.save_dir / f"form-{port}-{form_id}.json"
    atomic_write_json(path, {"id": form_id})
    return path


# =============================================================================
# 1. Setup
# =============================================================================


class TestSetup:
    """FormsDaemon.setup."""

    def test_setup(self, paths: DaemonPaths):
        stale = write_snapshot(paths, 8000, "1")
        then = time.time() - 3600
        os.utime(stale, (then, then))
        daemon = FormsDaemon(paths, DaemonConfig())
        sock = bind_loopback_socket()
        port = sock.getsockname()[1]
        try:
            server = daemon.setup(sock)
        finally:
            sock.close()

        assert isinstance(server, uvicorn.Server)
        assert daemon.port == port
        assert read_port(paths.port_file) == daemon.port
        assert "0" in daemon.registry.sessions
        assert daemon.log_file == paths.log_dir / f"server-{daemon.port}.log"
        assert not stale.exists()

    def test_config_from_default_yaml(self, paths: DaemonPaths):
        paths.config_file.write_text("daemon:\n  quiet_limit: 60\n", encoding="utf-8")

        assert FormsDaemon(paths).config.quiet_limit == 60


# =============================================================================
# 2-5. Watchdog tick
# =============================================================================


class TestTick:
    """FormsDaemon.tick."""

    @pytest.mark.asyncio
    async def test_idle_ceiling(self, paths: DaemonPaths):
        daemon = make_daemon(paths, idle_shutdown=10)
        advertise_port(paths.port_file, PORT)
        own = write_snapshot(paths, PORT, "1")
        other = write_snapshot(paths, 9002, "1")

        await daemon.tick()
        assert daemon.server.should_exit is False

        outcome = await daemon.tick()

        assert outcome.idle_expired
        assert daemon.server.should_exit is True
        assert not paths.port_file.exists()
        assert not own.exists()
        assert other.exists()

    @pytest.mark.asyncio
    async def test_idle_ceiling_keeps_newer_advertisement(self, paths: DaemonPaths):
        daemon = make_daemon(paths, idle_shutdown=5)
        advertise_port(paths.port_file, 9002)

        await daemon.tick()

        assert daemon.server.should_exit is True
        assert read_port(paths.port_file) == 9002

    @pytest.mark.asyncio
    async def test_superseded(self, paths: DaemonPaths):
        daemon = make_daemon(paths)
        advertise_port(paths.port_file, 9002)
        own = write_snapshot(paths, PORT, "1")
        other = write_snapshot(paths, 9002, "1")

        await daemon.tick()

        assert daemon.server.should_exit is True
        assert not own.exists()
        assert other.exists()

    @pytest.mark.asyncio
    async def test_still_advertised(self, paths: DaemonPaths):
        daemon = make_daemon(paths)
        advertise_port(paths.port_file, PORT)

        outcome = await daemon.tick()

        assert not outcome.any_open
        assert daemon.server.should_exit is False

    @pytest.mark.asyncio
    async def test_open_sessions_keep_running(self, paths: DaemonPaths, open_args: list[str]):
        daemon = make_daemon(paths)
        advertise_port(paths.port_file, 9002)
        daemon.registry.open(open_args)

        outcome = await daemon.tick()

        assert outcome.any_open
        assert daemon.server.should_exit is False

    @pytest.mark.asyncio
    async def test_contended_lock_keeps_loop_free(self, paths: DaemonPaths):
        daemon = make_daemon(paths, idle_shutdown=5)
        advertise_port(paths.port_file, PORT)
        events: list[str] = []

        async def ticked() -> None:
            await daemon.tick()
            events.append("ticked")

        async def request() -> None:
            await asyncio.sleep(0.01)
            events.append("served")

        with port_file_lock(paths.port_file):
            await asyncio.gather(ticked(), request())

        assert events == ["served", "ticked"]
        assert daemon.server.should_exit is True
        # the lock never came free, so the advertisement stays
        assert read_port(paths.port_file) == PORT


class TestRequestStop:
    """FormsDaemon.request_stop."""

    def test_exit_code_kept(self, paths: DaemonPaths):
        daemon = make_daemon(paths)

        daemon.request_stop(3)
        daemon.request_stop()

        assert daemon.exit_code == 3
        assert daemon.server.should_exit is True

    def test_before_setup(self, paths: DaemonPaths):
        daemon = FormsDaemon(paths, DaemonConfig())

        daemon.request_stop()

        assert daemon.exit_code == 0
