"""
Local filesystem protocol backend.

Answers file:// URLs. Blocking disk I/O runs in a worker thread.

Methods:
- GET/HEAD: file contents, or a newline separated listing for directories
- PUT: write the request body
- DELETE: remove a file
"""

import asyncio
import logging
import mimetypes
from pathlib import Path
from typing import Any, Mapping
from urllib.parse import unquote, urlsplit

from polyfetch.core.response import BufferedResponse, FetchResponse, encode_body, request_method

logger = logging.getLogger(__name__)


def file_url_to_path(url: str) -> Path:
    """Convert a file: URL to a local path."""
    parts = urlsplit(url)
    path = unquote(parts.path)
    if parts.netloc and parts.netloc != "localhost":
        path = f"//{parts.netloc}{path}"
    return Path(path)


class FileBackend:
    """Handler for the file: scheme."""

    async def fetch(self, url: str, options: Mapping[str, Any]) -> FetchResponse:
        method = request_method(options)
        path = file_url_to_path(url)

        if method in ("GET", "HEAD"):
            return await asyncio.to_thread(self._read, url, path, method == "HEAD")
        if method == "PUT":
            body = encode_body(options.get("body")) or b""
            return await asyncio.to_thread(self._write, url, path, body)
        if method == "DELETE":
            return await asyncio.to_thread(self._delete, url, path)

        return BufferedResponse.error(405, f"Method {method} not supported for file:", url=url)

    def _read(self, url: str, path: Path, head: bool) -> FetchResponse:
        if path.is_dir():
            listing = "\n".join(
                entry.name + ("/" if entry.is_dir() else "")
                for entry in sorted(path.iterdir())
            )
            response = BufferedResponse.from_text(listing, url=url)
        elif path.is_file():
            content_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
            if path.suffix == ".py":
                content_type = "text/x-python"
            data = path.read_bytes()
            response = BufferedResponse(
                content=data,
                url=url,
                headers={"Content-Type": content_type, "Content-Length": str(len(data))},
            )
        else:
            logger.debug(f"File not found: {path}")
            return BufferedResponse.error(404, f"File not found: {path}", url=url)

        if head:
            response.content = b""
        return response

    def _write(self, url: str, path: Path, body: bytes) -> FetchResponse:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "wb") as f:
            f.write(body)
        logger.debug(f"Wrote {len(body)} bytes to {path}")
        return BufferedResponse(status=201, url=url, headers={"Location": url})

    def _delete(self, url: str, path: Path) -> FetchResponse:
        if not path.exists():
            return BufferedResponse.error(404, f"File not found: {path}", url=url)
        if path.is_dir():
            return BufferedResponse.error(400, f"Refusing to delete directory: {path}", url=url)
        path.unlink()
        logger.debug(f"Deleted {path}")
        return BufferedResponse(status=200, url=url)
