"""
Forms daemon: one process serving the session server on a loopback port.

Startup:
1. bind 127.0.0.1 on a port the OS picks
2. log to logs/server-<port>.log
3. advertise the port in logs/server-port.txt
4. sweep the registry every few seconds (watchdog task)
5. serve with uvicorn on the bound socket

Shutdown, whichever comes first:
- POST /stopSCCoPIFO
- no open session for the idle ceiling (48 hours): delete own snapshots,
  release the port file if it's still ours
- no open session and the port file names another daemon: delete own
  snapshots and leave the newer daemon in charge
Open sessions are closed (snapshotted) on the way out.
"""

import asyncio
import logging
import socket
from pathlib import Path

import httpx
import uvicorn

from outpost_forms.app.main import create_app
from outpost_forms.app.services.submit import Submitter
from outpost_forms.core.logging import configure_logging
from outpost_forms.core.portfile import advertise_port, read_port, release_port
from outpost_forms.core.registry import SessionRegistry, SweepOutcome
from outpost_forms.core.settings import DaemonConfig, SettingsCache, load_config
from outpost_forms.domain.constants import LOCALHOST, RESERVED_SESSION_ID
from outpost_forms.domain.schemas import DaemonPaths

logger = logging.getLogger(__name__)


def bind_loopback_socket() -> socket.socket:
    """A listening-ready socket on 127.0.0.1 with an ephemeral port."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    sock.bind((LOCALHOST, 0))
    return sock


class FormsDaemon:
    """
    Usage:
        exit_code = asyncio.run(FormsDaemon(DaemonPaths(Path.cwd())).run())

    Args:
        paths: daemon folders
        config: timings (default: from default.yaml)
        transport: httpx transport for the delivery endpoint (tests)
    """

    def __init__(
        self,
        paths: DaemonPaths,
        config: DaemonConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.paths = paths
        self.config = config or DaemonConfig.from_config(load_config(paths.config_file))
        self.transport = transport
        self.port: int | None = None
        self.registry: SessionRegistry | None = None
        self.server: uvicorn.Server | None = None
        self.log_file: Path | None = None
        self.exit_code = 0
        self._stopping = False

    # -------------------------------------------------------------------------
    # Setup
    # -------------------------------------------------------------------------

    def setup(self, sock: socket.socket) -> uvicorn.Server:
        """Everything up to serving: logging, registry, app, advertisement."""
        self.port = sock.getsockname()[1]
        self.log_file = configure_logging(self.paths.log_dir, f"server-{self.port}")
        logger.info(f"Listening for HTTP requests on port {self.port}...")

        self.registry = SessionRegistry(self.paths, self.port, self.config)
        # Keeps the daemon up until a first browser arrives.
        self.registry.keep_alive(RESERVED_SESSION_ID)

        settings = SettingsCache(self.paths.settings_file)
        submitter = Submitter(
            self.paths,
            settings,
            timeout=self.config.submit_timeout,
            transport=self.transport,
        )
        app = create_app(
            self.paths,
            self.registry,
            settings=settings,
            submitter=submitter,
            daemon=self,
            log_file=self.log_file,
        )

        advertise_port(self.paths.port_file, self.port)
        self.registry.prune_on_startup()

        config = uvicorn.Config(app, log_config=None, access_log=True)
        self.server = uvicorn.Server(config)
        return self.server

    # -------------------------------------------------------------------------
    # Watchdog
    # -------------------------------------------------------------------------

    async def tick(self) -> SweepOutcome:
        """
        One watchdog step: sweep sessions, then decide whether to exit.
        """
        outcome = self.registry.sweep()
        if outcome.idle_expired:
            self.registry.delete_own_snapshots()
            # port_file_lock sleeps while another daemon holds it
            await asyncio.to_thread(release_port, self.paths.port_file, self.port)
            self.request_stop()
        elif not outcome.any_open:
            advertised = read_port(self.paths.port_file)
            if advertised != self.port:
                logger.info(f"{self.paths.port_file} names {advertised}")
                self.registry.delete_own_snapshots()
                self.request_stop()
        return outcome

    async def watchdog(self) -> None:
        while not self._stopping:
            await asyncio.sleep(self.config.sweep_interval)
            try:
                await self.tick()
            except Exception as e:
                logger.exception(f"Watchdog failed: {e}")

    # -------------------------------------------------------------------------
    # Run & Stop
    # -------------------------------------------------------------------------

    def request_stop(self, exit_code: int = 0) -> None:
        """Ask uvicorn to finish; run() returns once it has."""
        if not self._stopping:
            logger.info("stopping")
        self._stopping = True
        self.exit_code = exit_code or self.exit_code
        if self.server is not None:
            self.server.should_exit = True

    async def run(self) -> int:
        sock = bind_loopback_socket()
        server = self.setup(sock)
        watchdog = asyncio.create_task(self.watchdog())
        try:
            await server.serve(sockets=[sock])
        except Exception as e:
            logger.exception(f"Server failed: {e}")
            self.exit_code = 1
        finally:
            self._stopping = True
            watchdog.cancel()
            try:
                await watchdog
            except asyncio.CancelledError:
                pass
            self.registry.close_all()
            sock.close()
            logger.info(f"exit {self.exit_code}")
        return self.exit_code
