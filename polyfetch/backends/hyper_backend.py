"""
Hypercore protocol backend.

hyper:// URLs are served by a hyper gateway daemon, which speaks the
hypercore protocol and exposes drives over plain HTTP at
`<gateway>/hyper/<key>/<path>`. The backend either uses an already running
gateway (config.gateway_url) or spawns one on first use and stops it on
teardown.
"""

import asyncio
import logging
import time
from typing import Any, Callable, Mapping, Optional
from urllib.parse import urlsplit

import aiohttp

from polyfetch.backends.http_backend import HTTPBackend
from polyfetch.config import HyperConfig
from polyfetch.core.protocol_registry import FetchHandler
from polyfetch.core.response import FetchResponse
from polyfetch.core.teardown import TeardownAction

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.25  # Seconds between gateway readiness checks
STOP_TIMEOUT = 5.0  # Seconds to wait for the gateway to exit before killing it


class HyperBackend:
    """
    Lazily started hyper gateway bridge.

    Args:
        config: Hyper settings
        register_teardown: Receives the gateway stop action when spawned
        http: HTTP backend used to talk to the gateway
    """

    def __init__(
        self,
        config: Optional[HyperConfig] = None,
        register_teardown: Optional[Callable[[TeardownAction], None]] = None,
        http: Optional[HTTPBackend] = None,
    ):
        self.config = config or HyperConfig()
        self._register_teardown = register_teardown
        self.http = http or HTTPBackend(register_teardown)
        self.gateway_url: Optional[str] = None
        self.process: Optional[asyncio.subprocess.Process] = None
        self.stopped = False

    def gateway_command(self):
        return [
            *self.config.gateway_command,
            "--port", str(self.config.port),
            "--persist", "true" if self.config.persist else "false",
            "--storage-location", str(self.config.storage),
        ]

    async def start(self) -> FetchHandler:
        """Connect to (or spawn) the gateway and return the fetch handler."""
        if self.config.gateway_url:
            self.gateway_url = self.config.gateway_url.rstrip("/")
            logger.info(f"Using hyper gateway at {self.gateway_url}")
        else:
            await self._spawn_gateway()
        return self.fetch

    async def _spawn_gateway(self) -> None:
        command = self.gateway_command()
        logger.info(f"Starting hyper gateway: {' '.join(command)}")

        self.config.storage.mkdir(parents=True, exist_ok=True)
        self.stopped = False
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except FileNotFoundError:
            raise ConnectionError(
                f"Hyper gateway command not found: {command[0]}. "
                "Install it or set hyper.gateway_url to a running gateway"
            )

        self.process = process
        if self._register_teardown is not None:
            self._register_teardown(self.stop)

        self.gateway_url = f"http://127.0.0.1:{self.config.port}"
        try:
            await self._wait_until_ready(process)
        except Exception:
            await self.stop()
            raise
        logger.info(f"Hyper gateway running at {self.gateway_url} (pid {process.pid})")

    async def _wait_until_ready(self, process: asyncio.subprocess.Process) -> None:
        deadline = time.monotonic() + self.config.startup_timeout
        while True:
            if self.stopped:
                raise ConnectionError("Hyper gateway was stopped during startup")
            if process.returncode is not None:
                raise ConnectionError(f"Hyper gateway exited with code {process.returncode}")
            try:
                response = await self.http.fetch(f"{self.gateway_url}/", {"method": "HEAD"})
                await response.read()
                return
            except aiohttp.ClientError:
                if time.monotonic() >= deadline:
                    raise ConnectionError(
                        f"Hyper gateway did not start within {self.config.startup_timeout}s"
                    )
                await asyncio.sleep(POLL_INTERVAL)

    def gateway_target(self, url: str) -> str:
        """Map hyper://<key>/<path>?<query> to the gateway's HTTP URL."""
        parts = urlsplit(url)
        target = f"{self.gateway_url}/hyper/{parts.netloc}{parts.path or '/'}"
        if parts.query:
            target += f"?{parts.query}"
        return target

    async def fetch(self, url: str, options: Mapping[str, Any]) -> FetchResponse:
        response = await self.http.fetch(self.gateway_target(url), options)
        response.url = url
        return response

    async def stop(self) -> None:
        self.stopped = True
        process = self.process
        self.process = None
        if process is None or process.returncode is not None:
            return

        logger.info(f"Stopping hyper gateway (pid {process.pid})")
        process.terminate()
        try:
            await asyncio.wait_for(process.wait(), STOP_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning("Hyper gateway did not exit, killing it")
            process.kill()
            await process.wait()
