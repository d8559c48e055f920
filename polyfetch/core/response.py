"""
Fetch-shaped responses.

Every protocol handler answers with an object satisfying FetchResponse:

    ok, status, url, headers
    await text() / await json() / await read()
    async for chunk in response.body: ...

BufferedResponse covers handlers that already hold the whole payload in
memory (file, IPFS); the HTTP backend wraps aiohttp's streaming response.
"""

import json
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Mapping, Optional, Union

DEFAULT_CHUNK_SIZE = 64 * 1024

STATUS_TEXT = {
    200: "OK",
    201: "Created",
    204: "No Content",
    400: "Bad Request",
    404: "Not Found",
    405: "Method Not Allowed",
    500: "Internal Server Error",
    502: "Bad Gateway",
}


class FetchResponse:
    """Base class describing the response contract every handler satisfies."""

    status: int = 200
    url: str = ""
    headers: Mapping[str, str] = {}

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def status_text(self) -> str:
        return STATUS_TEXT.get(self.status, "")

    @property
    def body(self) -> AsyncIterator[bytes]:
        raise NotImplementedError

    async def read(self) -> bytes:
        chunks = []
        async for chunk in self.body:
            chunks.append(chunk)
        return b"".join(chunks)

    async def text(self, encoding: str = "utf-8") -> str:
        return (await self.read()).decode(encoding, errors="replace")

    async def json(self) -> Any:
        return json.loads(await self.text())

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.status} {self.url}>"


@dataclass(repr=False)
class BufferedResponse(FetchResponse):
    """Response whose payload is already fully in memory."""

    content: bytes = b""
    status: int = 200
    url: str = ""
    headers: Dict[str, str] = field(default_factory=dict)
    chunk_size: int = DEFAULT_CHUNK_SIZE

    @property
    def body(self) -> AsyncIterator[bytes]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[bytes]:
        for start in range(0, len(self.content), self.chunk_size):
            yield self.content[start:start + self.chunk_size]

    async def read(self) -> bytes:
        return self.content

    @classmethod
    def from_text(
        cls,
        text: str,
        status: int = 200,
        url: str = "",
        content_type: str = "text/plain; charset=utf-8",
        headers: Optional[Dict[str, str]] = None,
    ) -> "BufferedResponse":
        merged = {"Content-Type": content_type}
        merged.update(headers or {})
        return cls(content=text.encode("utf-8"), status=status, url=url, headers=merged)

    @classmethod
    def from_json(cls, value: Any, status: int = 200, url: str = "") -> "BufferedResponse":
        return cls.from_text(json.dumps(value), status=status, url=url, content_type="application/json")

    @classmethod
    def error(cls, status: int, message: str, url: str = "") -> "BufferedResponse":
        return cls.from_text(message, status=status, url=url)


def encode_body(body: Union[str, bytes, bytearray, None]) -> Optional[bytes]:
    """Normalize a request body to bytes."""
    if body is None:
        return None
    if isinstance(body, str):
        return body.encode("utf-8")
    return bytes(body)


def request_method(options: Optional[Mapping[str, Any]]) -> str:
    return str((options or {}).get("method") or "GET").upper()
