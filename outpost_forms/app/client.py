"""
Discovery client: how the host's launcher reaches a daemon.

1. read the port from logs/server-port.txt
2. POST the launcher's arguments to /openOutpostMessage
3. 303 → the Location is the form page; 200 to an empty list → dry run
4. anything else → wait retry × 1 second and try again, starting a new
   daemon on retries 1 and 4; give up after 6 retries
"""

import asyncio
import json
import logging
import re
import subprocess
import sys
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from outpost_forms.core.portfile import read_port
from outpost_forms.core.settings import DaemonConfig
from outpost_forms.core.storage import unlink_quietly
from outpost_forms.domain.constants import (
    HTTP_OK,
    LOCALHOST,
    MISDIRECTED_REQUEST,
    OPEN_ROUTE,
    SEE_OTHER,
    SPAWN_ON_RETRIES,
    STOP_ROUTE,
)
from outpost_forms.domain.errors import ErrorKind, FormsError
from outpost_forms.domain.schemas import DaemonPaths
from outpost_forms.utils.retry import retry_with_linear_backoff

logger = logging.getLogger(__name__)

_SERVER_LOG = re.compile(r"^server-(\d+)\.log$")
_NAMED_SERVER_LOG = re.compile(r"-server-(\d+)\.log$")

REQUEST_TIMEOUT_SECONDS = 10.0


def spawn_daemon(paths: DaemonPaths) -> None:
    """Start `outpost-forms serve` detached from this process."""
    command = [sys.executable, "-m", "outpost_forms.cli", "serve"]
    logger.info(f"start {' '.join(command)} in {paths.base_dir}")
    try:
        subprocess.Popen(
            command,
            cwd=paths.base_dir,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
    except OSError as e:
        logger.error(f"Failed to start the daemon: {e}")


class DiscoveryClient:
    """
    Usage:
        client = DiscoveryClient(DaemonPaths(Path.cwd()))
        page_url = await client.open_message(args)

    Args:
        paths: daemon folders
        config: retry timing
        transport: httpx transport (tests pass httpx.MockTransport)
        sleep: awaitable delay (tests pass a fake)
        spawn: starts a daemon (tests pass a fake)
    """

    def __init__(
        self,
        paths: DaemonPaths,
        config: DaemonConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        spawn: Callable[[DaemonPaths], Any] = spawn_daemon,
    ):
        self.paths = paths
        self.config = config or DaemonConfig()
        self.transport = transport
        self.sleep = sleep
        self.spawn = spawn

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=self.transport,
            timeout=REQUEST_TIMEOUT_SECONDS,
            follow_redirects=False,
        )

    async def open_form(self, args: list[str]) -> str | None:
        """
        One attempt to open a session.

        Returns:
            the form page URL, or None for a successful dry run

        Raises:
            FormsError: no daemon, or it didn't open the session
            httpx.HTTPError: the daemon didn't answer
        """
        port = read_port(self.paths.port_file)
        if port is None:
            raise FormsError(
                ErrorKind.TRANSPORT_REFUSED,
                f"{self.paths.port_file} doesn't exist",
            )
        url = f"http://{LOCALHOST}:{port}{OPEN_ROUTE}"
        logger.info(f"{url} POST {json.dumps(args)}")

        async with self._client() as client:
            response = await client.post(url, json=args)

        if response.status_code == SEE_OTHER:
            location = response.headers.get("location")
            logger.info(f"opened form {location}")
            return location
        if response.status_code == HTTP_OK and not args:
            logger.info(f"HTTP response {response.status_code} {response.reason_phrase}")
            return None
        kind = (
            ErrorKind.CONFIGURATION
            if response.status_code == MISDIRECTED_REQUEST
            else ErrorKind.TRANSPORT_REFUSED
        )
        raise FormsError(
            kind,
            f"HTTP response {response.status_code} {response.reason_phrase}\n{response.text}",
            port=port,
        )

    def start_server(self, retry: int) -> None:
        logger.info(f"retries = {retry}")
        if retry in SPAWN_ON_RETRIES:
            self.spawn(self.paths)

    async def open_message(self, args: list[str]) -> str | None:
        """
        Open a session, starting a daemon if necessary.

        Raises:
            FormsError: every retry failed
        """
        max_retries = self.config.open_max_retries
        try:
            return await retry_with_linear_backoff(
                lambda: self.open_form(args),
                max_retries=max_retries,
                delay_step=self.config.open_retry_delay,
                exceptions=(FormsError, httpx.HTTPError),
                on_retry=self.start_server,
                sleep=self.sleep,
            )
        except (FormsError, httpx.HTTPError) as e:
            raise FormsError(
                ErrorKind.TRANSPORT_REFUSED,
                f"{max_retries} retries failed {json.dumps(args)}",
                error=str(e),
            ) from e

    def find_server_ports(self) -> list[int]:
        """Ports of every daemon that ever logged here, running or not."""
        ports: list[int] = []
        try:
            file_names = sorted(p.name for p in self.paths.log_dir.iterdir())
        except OSError as e:
            logger.warning(f"Failed to list {self.paths.log_dir}: {e}")
            return ports
        for file_name in file_names:
            for pattern in (_SERVER_LOG, _NAMED_SERVER_LOG):
                found = pattern.search(file_name)
                if found:
                    port = int(found.group(1))
                    if port not in ports:
                        ports.append(port)
        return ports

    async def stop_servers(self) -> list[int]:
        """
        Ask every daemon to stop. Failures are logged and ignored.

        Returns:
            the ports that were asked
        """
        ports = self.find_server_ports()
        unlink_quietly(self.paths.port_file)
        async with self._client() as client:

            async def stop_one(port: int) -> None:
                logger.info(f"stopping server on port {port}")
                try:
                    await client.post(f"http://{LOCALHOST}:{port}{STOP_ROUTE}")
                except httpx.HTTPError as e:
                    logger.info(f"port {port}: {e}")

            await asyncio.gather(*(stop_one(port) for port in ports))
        return ports
