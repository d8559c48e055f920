"""
Incremental decoder for streamed completion responses.

OpenAI-compatible servers stream server-sent events:

    data: {"choices":[{"delta":{"content":"Hel"}}]}
    data: {"choices":[{"delta":{"content":"lo"}}]}
    data: [DONE]

Chunk boundaries from the transport are arbitrary: a chunk may end in the
middle of a line, a JSON document or a multi-byte UTF-8 character. The
decoder keeps the unfinished tail and emits each frame as soon as its line
is complete. Bare JSON lines (newline-delimited JSON, as used by Ollama's
native endpoints) are accepted too, and so are several `data:` events
sharing one line when a server omits the newline between them.
"""

import codecs
import json
import logging
from typing import Any, AsyncIterator, Iterable, List

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"

_JSON = json.JSONDecoder()


class FrameDecoder:
    """
    accumulate -> split -> keep remainder -> emit

    Example:
        >>> decoder = FrameDecoder()
        >>> decoder.feed(b'data: {"a": 1}\\ndata: {"a"')
        [{'a': 1}]
        >>> decoder.feed(b': 2}\\n')
        [{'a': 2}]
    """

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")()
        self._buffer = ""
        self.done = False
        self.frames_emitted = 0

    @property
    def remainder(self) -> str:
        """Undecoded text waiting for the rest of its line."""
        return self._buffer

    def feed(self, chunk: bytes) -> List[Any]:
        """Add bytes and return every frame completed by them, in order."""
        if self.done:
            return []
        self._buffer += self._decoder.decode(chunk)
        *lines, self._buffer = self._buffer.split("\n")
        return self._parse(lines)

    def flush(self) -> List[Any]:
        """Decode whatever is left once the stream has ended."""
        self._buffer += self._decoder.decode(b"", final=True)
        rest, self._buffer = self._buffer, ""
        if self.done:
            return []
        return self._parse([rest])

    def _parse(self, lines: Iterable[str]) -> List[Any]:
        frames = []
        for line in lines:
            line = line.strip()
            if not line or line.startswith(":"):
                continue

            if line.startswith(DATA_PREFIX):
                payload = line[len(DATA_PREFIX):].strip()
            elif line.startswith(("{", "[")):
                payload = line
            else:
                # other SSE fields (event:, id:, retry:)
                continue

            while payload:
                if payload.startswith(DATA_PREFIX):
                    payload = payload[len(DATA_PREFIX):].lstrip()
                    continue
                if payload.startswith(DONE_SENTINEL):
                    self.done = True
                    break
                frame, end = _JSON.raw_decode(payload)
                frames.append(frame)
                payload = payload[end:].lstrip()

            if self.done:
                break
        self.frames_emitted += len(frames)
        return frames


async def iter_frames(chunks: AsyncIterator[bytes]) -> AsyncIterator[Any]:
    """Decode frames from an async byte stream as they arrive."""
    decoder = FrameDecoder()
    async for chunk in chunks:
        for frame in decoder.feed(chunk):
            yield frame
        if decoder.done:
            break
    for frame in decoder.flush():
        yield frame
    logger.debug(f"Stream finished after {decoder.frames_emitted} frames")
