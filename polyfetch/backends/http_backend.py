"""
HTTP(S) protocol backend.

Answers http:// and https:// requests with aiohttp. A single ClientSession
is opened on the first request and closed by the runtime's teardown.
"""

import logging
from typing import Any, AsyncIterator, Callable, Mapping, Optional

import aiohttp

from polyfetch.core.response import FetchResponse, encode_body, request_method
from polyfetch.core.teardown import TeardownAction

logger = logging.getLogger(__name__)


class HTTPResponse(FetchResponse):
    """FetchResponse backed by a streaming aiohttp.ClientResponse."""

    def __init__(self, response: aiohttp.ClientResponse):
        self._response = response
        self.status = response.status
        self.url = str(response.url)
        self.headers = dict(response.headers)

    @property
    def body(self) -> AsyncIterator[bytes]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self._response.content.iter_any():
                yield chunk
        finally:
            self._response.release()

    async def read(self) -> bytes:
        try:
            return await self._response.read()
        finally:
            self._response.release()

    async def text(self, encoding: str = "utf-8") -> str:
        return (await self.read()).decode(encoding, errors="replace")


class HTTPBackend:
    """
    aiohttp-based handler for http: and https:.

    Args:
        register_teardown: Called with the session's close action when the
            session is created
        timeout: Optional aiohttp.ClientTimeout for every request
    """

    def __init__(
        self,
        register_teardown: Optional[Callable[[TeardownAction], None]] = None,
        timeout: Optional[aiohttp.ClientTimeout] = None,
    ):
        self._register_teardown = register_teardown
        self._timeout = timeout or aiohttp.ClientTimeout(total=None)
        self.session: Optional[aiohttp.ClientSession] = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(timeout=self._timeout)
            logger.debug("Opened HTTP client session")
            if self._register_teardown is not None:
                self._register_teardown(self.close)
        return self.session

    async def fetch(self, url: str, options: Mapping[str, Any]) -> FetchResponse:
        """
        Perform one HTTP request.

        Args:
            url: http(s) URL
            options: method, headers, body

        Returns:
            HTTPResponse (body not yet read)
        """
        session = self._get_session()
        method = request_method(options)
        response = await session.request(
            method,
            url,
            headers=options.get("headers"),
            data=encode_body(options.get("body")),
            allow_redirects=options.get("redirect", "follow") == "follow",
        )
        logger.debug(f"{method} {url} -> {response.status}")
        return HTTPResponse(response)

    async def close(self) -> None:
        if self.session is not None and not self.session.closed:
            await self.session.close()
            logger.debug("Closed HTTP client session")
        self.session = None
