"""
IPFS protocol backend.

Answers ipfs://, ipns:// and ipld:// URLs through a local IPFS daemon's
HTTP API (ipfshttpclient). The client is only created when the first
request arrives, and closed by the runtime's teardown.

URL mapping:
- ipfs://<cid>/<path>   -> cat /ipfs/<cid>/<path>
- ipns://<name>/<path>  -> cat /ipns/<name>/<path>
- ipld://<cid>/<path>   -> dag get <cid>/<path> (JSON)
- PUT/POST ipfs://      -> add bytes, answers with the new ipfs:// URL
"""

import asyncio
import json
import logging
from typing import Any, Callable, Mapping, Optional, Tuple, Type
from urllib.parse import urlsplit

from polyfetch.config import IPFSConfig
from polyfetch.core.protocol_registry import FetchHandler
from polyfetch.core.response import BufferedResponse, FetchResponse, encode_body, request_method
from polyfetch.core.teardown import TeardownAction

logger = logging.getLogger(__name__)

IPFS_ALIASES = ("ipns:", "ipld:")


class IPFSBackend:
    """
    Lazily connected IPFS backend.

    Args:
        config: IPFS settings (API address, timeout, retries)
        register_teardown: Receives the client's close action on connect
        client_factory: Builds the client; defaults to ipfshttpclient.Client
    """

    def __init__(
        self,
        config: Optional[IPFSConfig] = None,
        register_teardown: Optional[Callable[[TeardownAction], None]] = None,
        client_factory: Optional[Callable[[], Any]] = None,
    ):
        self.config = config or IPFSConfig()
        self.retry_attempts = max(1, self.config.retry_attempts)
        self.retry_backoff = max(0.1, self.config.retry_backoff)
        self._register_teardown = register_teardown
        self._client_factory = client_factory
        self.client = None

        self._transient_errors: Tuple[Type[BaseException], ...] = (ConnectionError, TimeoutError)
        self._daemon_error: Optional[Type[BaseException]] = None

    def _create_client(self):
        if self._client_factory is not None:
            return self._client_factory()

        import ipfshttpclient

        self._transient_errors = (
            ConnectionError,
            TimeoutError,
            ipfshttpclient.exceptions.ConnectionError,
            ipfshttpclient.exceptions.TimeoutError,
        )
        self._daemon_error = ipfshttpclient.exceptions.ErrorResponse
        return ipfshttpclient.Client(self.config.api_addr, timeout=self.config.timeout)

    async def start(self) -> FetchHandler:
        """Connect to the daemon and return the fetch handler."""
        try:
            client = await asyncio.to_thread(self._create_client)
            version = await self._execute_with_retries(client.version)
        except Exception as e:
            logger.error(f"Failed to connect to IPFS daemon at {self.config.api_addr}: {e}")
            logger.error(
                "Make sure IPFS daemon is running: ipfs daemon\n"
                "Install IPFS: https://docs.ipfs.tech/install/"
            )
            raise ConnectionError(f"IPFS connection failed: {e}")

        self.client = client
        if self._register_teardown is not None:
            self._register_teardown(self.close)

        logger.info(f"Connected to IPFS {version.get('Version', 'unknown')} at {self.config.api_addr}")
        return self.fetch

    async def close(self) -> None:
        if self.client is not None:
            await asyncio.to_thread(self.client.close)
            logger.debug("Closed IPFS client")
        self.client = None

    async def fetch(self, url: str, options: Mapping[str, Any]) -> FetchResponse:
        parts = urlsplit(url)
        scheme = parts.scheme.lower()
        method = request_method(options)

        try:
            if method in ("PUT", "POST"):
                if scheme != "ipfs":
                    return BufferedResponse.error(405, f"Cannot {method} to {scheme}://", url=url)
                return await self._add(url, encode_body(options.get("body")) or b"")

            if method not in ("GET", "HEAD"):
                return BufferedResponse.error(405, f"Method {method} not supported for {scheme}://", url=url)

            if scheme == "ipld":
                response = await self._dag_get(url, f"{parts.netloc}{parts.path}".rstrip("/"))
            else:
                response = await self._cat(url, f"/{scheme}/{parts.netloc}{parts.path}".rstrip("/"))
        except Exception as e:
            if self._daemon_error is not None and isinstance(e, self._daemon_error):
                message = str(e)
                status = 404 if "not found" in message.lower() or "no link named" in message.lower() else 500
                logger.debug(f"IPFS daemon error for {url}: {message}")
                return BufferedResponse.error(status, message, url=url)
            raise

        if method == "HEAD":
            response.content = b""
        return response

    async def _cat(self, url: str, ipfs_path: str) -> BufferedResponse:
        data = await self._execute_with_retries(self.client.cat, ipfs_path)
        logger.debug(f"Retrieved {ipfs_path} from IPFS ({len(data)} bytes)")
        return BufferedResponse(
            content=data,
            url=url,
            headers={"Content-Length": str(len(data))},
        )

    async def _dag_get(self, url: str, dag_path: str) -> BufferedResponse:
        node = await self._execute_with_retries(self.client.dag.get, dag_path)
        if hasattr(node, "as_json"):
            node = node.as_json()
        return BufferedResponse.from_text(
            json.dumps(node, default=str),
            url=url,
            content_type="application/json",
        )

    async def _add(self, url: str, data: bytes) -> BufferedResponse:
        cid = await self._execute_with_retries(self.client.add_bytes, data)
        location = f"ipfs://{cid}/"
        logger.debug(f"Stored {len(data)} bytes to IPFS as {cid}")
        return BufferedResponse.from_text(location, status=201, url=url, headers={"Location": location})

    async def _execute_with_retries(self, func, *args, **kwargs):
        """Run a blocking client call in a thread, retrying transient failures with backoff."""
        attempt = 0
        last_exc = None
        while attempt < self.retry_attempts:
            try:
                return await asyncio.to_thread(func, *args, **kwargs)
            except self._transient_errors as exc:
                last_exc = exc
                attempt += 1
                if attempt >= self.retry_attempts:
                    break
                delay = self.retry_backoff * (2 ** (attempt - 1))
                logger.warning(
                    f"IPFS operation failed (attempt {attempt}/{self.retry_attempts}): {exc}. "
                    f"Retrying in {delay:.2f}s"
                )
                await asyncio.sleep(delay)
        raise last_exc
