"""
Polyfetch - Pluggable-protocol execution host

Fetch and import code across web and peer-to-peer URL schemes, with
single-flight module loading and a streaming LLM client.

Quick Start:
    >>> from polyfetch import Runtime
    >>>
    >>> async with Runtime() as runtime:
    ...     # Fetch over any registered scheme
    ...     response = await runtime.fetch("ipfs://bafy.../index.html")
    ...
    ...     # Import a Python module from a URL
    ...     exports = await runtime.import_url("hyper://blog.example/hello.py")
    ...
    ...     # Stream tokens from the local model
    ...     async for delta in runtime.llm.chat_stream(messages=[{"role": "user", "content": "hi"}]):
    ...         print(delta.get("content", ""), end="")

Features:
    - Protocol registry with lazy, single-flight backend startup
    - http(s), file, IPFS (ipfs/ipns/ipld) and hypercore backends
    - Module cache keyed by normalized URL, safe for cyclic imports
    - OpenAI-compatible LLM client with incremental stream decoding
"""

from polyfetch.config import PolyfetchConfig, load_config
from polyfetch.core.errors import PolyfetchError
from polyfetch.core.runtime import Runtime

__version__ = "0.1.0"

__all__ = [
    "PolyfetchConfig",
    "PolyfetchError",
    "Runtime",
    "load_config",
]
