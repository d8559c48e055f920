"""
Runtime Context

Owns everything one session needs: the protocol registry, the module
cache, the globals exposed to evaluated code and the teardown actions of
lazily started backends.

Quick Start:
    >>> async with Runtime() as runtime:
    ...     response = await runtime.fetch("https://example.com/")
    ...     exports = await runtime.import_url("hyper://blog.example/mod.py")
    ...     value = await runtime.eval("400 + 20")
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

from polyfetch.backends.file_backend import FileBackend
from polyfetch.backends.http_backend import HTTPBackend
from polyfetch.backends.hyper_backend import HyperBackend
from polyfetch.backends.ipfs_backend import IPFS_ALIASES, IPFSBackend
from polyfetch.config import PolyfetchConfig, deep_merge
from polyfetch.core.errors import AlreadyClosedError, NotInitializedError
from polyfetch.core.evaluator import Evaluator, PythonEvaluator
from polyfetch.core.globals_registry import GlobalRegistry
from polyfetch.core.module_cache import ModuleCache, ModuleRecord
from polyfetch.core.protocol_registry import ProtocolRegistry
from polyfetch.core.response import FetchResponse
from polyfetch.core.teardown import TeardownAction, TeardownRegistry
from polyfetch.core.urls import path_to_file_url, resolve_url
from polyfetch.llm.client import LLMClient

logger = logging.getLogger(__name__)

RequestInput = Union[str, Mapping[str, Any], Any]


class Runtime:
    """
    Pluggable-protocol execution host.

    Args:
        config: Runtime configuration (defaults to PolyfetchConfig())
        evaluator: Execution environment (defaults to PythonEvaluator)
        **overrides: Config overrides merged over config and validated,
            e.g. Runtime(https=False, ipfs={"enabled": False})
    """

    def __init__(
        self,
        config: Optional[PolyfetchConfig] = None,
        evaluator: Optional[Evaluator] = None,
        **overrides: Any,
    ):
        if config is None:
            config = PolyfetchConfig.model_validate(overrides)
        elif overrides:
            config = PolyfetchConfig.model_validate(deep_merge(config.model_dump(), overrides))
        self.config = config

        self.root = config.root or path_to_file_url(Path.cwd())
        self.context: Optional[Dict[str, Any]] = None
        self.closed = False

        self.protocols = ProtocolRegistry()
        self.globals = GlobalRegistry()
        self.teardown = TeardownRegistry()

        self.evaluator = evaluator or PythonEvaluator(self.globals)
        self.modules = ModuleCache(self.fetch, self.evaluator, base_url=self.root)

        self._register_protocols()

        self.llm = LLMClient(config.llm, self.fetch)

        self.globals.register("fetch", self.fetch)
        self.globals.register("llm", self.llm)

        logger.info(f"Runtime created (root: {self.root}, protocols: {', '.join(self.protocols.schemes())})")

    # ===== SETUP =====

    def _register_protocols(self) -> None:
        config = self.config

        # the session is only opened by the first request
        self.http = HTTPBackend(self.add_teardown)
        if config.http:
            self.protocols.register("http:", self.http.fetch)
        if config.https:
            self.protocols.register("https:", self.http.fetch)

        if config.file:
            self.protocols.register("file:", FileBackend().fetch)

        if config.hyper.enabled:
            hyper = HyperBackend(config.hyper, self.add_teardown, http=self.http)
            self.protocols.register_lazy("hyper:", hyper.start)

        if config.ipfs.enabled:
            ipfs = IPFSBackend(config.ipfs, self.add_teardown)
            self.protocols.register_lazy("ipfs:", ipfs.start)
            for alias in IPFS_ALIASES:
                self.protocols.alias("ipfs:", alias)

    def add_teardown(self, action: TeardownAction) -> None:
        """Register a cleanup action to run (LIFO) on close(); after close() it runs right away."""
        self.teardown.register(action)

    def _check_open(self) -> None:
        if self.closed:
            raise AlreadyClosedError()

    def _check_init(self) -> None:
        self._check_open()
        if self.context is None:
            raise NotInitializedError()

    async def init(self) -> "Runtime":
        """Build the shared evaluation context."""
        self._check_open()
        if self.context is None:
            self.context = self.globals.create_context()
            self.context["import_module"] = self._import_from_context
            self.context["__name__"] = "__polyfetch__"
        return self

    async def __aenter__(self) -> "Runtime":
        return await self.init()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # ===== FETCH =====

    def resolve_url(self, url: str) -> str:
        """Resolve a URL against the configured root."""
        return resolve_url(url, self.root)

    async def fetch(self, url_or_request: RequestInput, init: Optional[Mapping[str, Any]] = None) -> FetchResponse:
        """
        Fetch a URL through the protocol registry.

        Args:
            url_or_request: URL string, a mapping with a "url" key, or an
                object with a `url` attribute (and optional method,
                headers, body attributes)
            init: Request options; wins over fields of the request

        Returns:
            The handler's FetchResponse
        """
        self._check_open()
        if not url_or_request:
            raise ValueError("Must specify URL or request to fetch")

        if isinstance(url_or_request, str):
            url = url_or_request
            options = dict(init or {})
        else:
            if isinstance(url_or_request, Mapping):
                fields = dict(url_or_request)
            else:
                fields = {
                    key: getattr(url_or_request, key)
                    for key in ("url", "method", "headers", "body")
                    if getattr(url_or_request, key, None) is not None
                }
            url = fields.pop("url", None)
            if not url:
                raise ValueError("Request is missing a url")
            options = {**fields, **(init or {})}

        resolved = self.resolve_url(url)
        request = self.protocols.dispatch(resolved, options)

        timeout = self.config.fetch_timeout
        if timeout is None:
            return await request
        return await asyncio.wait_for(request, timeout)

    # ===== EVALUATION =====

    async def eval(self, code: str) -> Any:
        """Evaluate a snippet in the shared context (top-level await allowed)."""
        self._check_init()
        return await self.evaluator.run(code, self.context)

    async def import_module(self, url: str) -> ModuleRecord:
        """Load a module record by URL (relative to root)."""
        self._check_init()
        return await self.modules.load(url, self.root)

    async def import_url(self, url: str) -> Dict[str, Any]:
        """Load a module and return its exported names."""
        self._check_init()
        return await self.modules.import_top_level(url, self.root)

    async def _import_from_context(self, specifier: str):
        record = await self.import_module(specifier)
        return record.module

    # ===== TEARDOWN =====

    async def close(self) -> None:
        """
        Close the runtime.

        Later operations raise AlreadyClosedError; teardown actions run once
        in reverse registration order. Calling close() again is a no-op.
        """
        if self.closed:
            return
        self.closed = True
        logger.info(f"Closing runtime ({len(self.teardown)} teardown actions)")
        try:
            await self.teardown.run()
        finally:
            self.modules.clear()
            self.context = None
