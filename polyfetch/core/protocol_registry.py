"""
Protocol Registry

Maps URL schemes to fetch handlers. Every outbound request made by the
runtime, by evaluated code or by the LLM client goes through dispatch(),
so callers never special-case a transport.

Handlers come in three flavours:
- direct: registered ready to use
- lazy: built by an async initializer on first use (single-flight), for
  backends that spin up daemons or peer nodes
- alias: forwards to whatever another scheme resolves to at call time
"""

import logging
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from polyfetch.core.errors import DuplicateSchemeError, InvalidURLError, UnknownSchemeError
from polyfetch.core.response import FetchResponse
from polyfetch.core.single_flight import SingleFlight
from polyfetch.core.urls import get_scheme, normalize_scheme

logger = logging.getLogger(__name__)

FetchHandler = Callable[[str, Mapping[str, Any]], Awaitable[FetchResponse]]
HandlerInitializer = Callable[[], Awaitable[FetchHandler]]


class LazyHandler:
    """
    Handler slot whose real handler is produced on first use.

    Concurrent first callers all wait on the same initialization; once
    resolved, the handler is reused for every later request.
    """

    def __init__(self, scheme: str, initializer: HandlerInitializer):
        self.scheme = scheme
        self._init = SingleFlight(initializer, name=f"{scheme} handler init")

    @property
    def resolved(self) -> bool:
        return self._init.resolved

    async def resolve(self) -> FetchHandler:
        return await self._init()

    async def __call__(self, url: str, options: Mapping[str, Any]) -> FetchResponse:
        if not self._init.resolved:
            logger.info(f"Initializing lazy protocol handler for {self.scheme}")
        handler = await self._init()
        return await handler(url, options)


class ProtocolRegistry:
    """
    Registry of URL scheme handlers.

    One registry per runtime; nothing here is process-global.
    """

    def __init__(self):
        self._handlers: Dict[str, FetchHandler] = {}
        self._aliases: Dict[str, str] = {}

    def register(self, scheme: str, handler: FetchHandler) -> None:
        """
        Register a handler for a scheme.

        Args:
            scheme: Scheme with or without trailing colon ("http" or "http:")
            handler: Async callable (url, options) -> FetchResponse

        Raises:
            DuplicateSchemeError: If the scheme already has a handler
        """
        scheme = normalize_scheme(scheme)
        if scheme in self._handlers:
            raise DuplicateSchemeError(scheme)
        self._handlers[scheme] = handler
        logger.debug(f"Registered protocol handler: {scheme}")

    def register_lazy(self, scheme: str, initializer: HandlerInitializer) -> LazyHandler:
        """
        Register a handler that is built on first dispatch.

        The initializer is not invoked here.
        """
        scheme = normalize_scheme(scheme)
        lazy = LazyHandler(scheme, initializer)
        self.register(scheme, lazy)
        return lazy

    def alias(self, existing_scheme: str, new_scheme: str) -> None:
        """
        Make new_scheme forward to whatever existing_scheme resolves to.

        The lookup happens per request, so aliases follow a lazy handler
        once it resolves, and an alias registered before its target works
        as soon as the target exists.
        """
        existing_scheme = normalize_scheme(existing_scheme)
        new_scheme = normalize_scheme(new_scheme)

        async def aliased(url: str, options: Mapping[str, Any]) -> FetchResponse:
            return await self.get(existing_scheme)(url, options)

        self.register(new_scheme, aliased)
        self._aliases[new_scheme] = existing_scheme

    def unregister(self, scheme: str) -> None:
        scheme = normalize_scheme(scheme)
        self._handlers.pop(scheme, None)
        self._aliases.pop(scheme, None)

    def has(self, scheme: str) -> bool:
        return normalize_scheme(scheme) in self._handlers

    def get(self, scheme: str) -> FetchHandler:
        """Return the handler for a scheme, raising UnknownSchemeError if missing."""
        scheme = normalize_scheme(scheme)
        handler = self._handlers.get(scheme)
        if handler is None:
            raise UnknownSchemeError(scheme)
        return handler

    def schemes(self) -> List[str]:
        return sorted(self._handlers)

    def aliases(self) -> Dict[str, str]:
        return dict(self._aliases)

    async def dispatch(
        self,
        url: str,
        options: Optional[Mapping[str, Any]] = None,
    ) -> FetchResponse:
        """
        Route a request to the handler for its scheme.

        Args:
            url: Absolute URL string
            options: Request options (method, headers, body)

        Returns:
            The handler's FetchResponse

        Raises:
            InvalidURLError: If url is not a string or has no scheme
            UnknownSchemeError: If no handler is registered for the scheme
        """
        if not isinstance(url, str):
            raise InvalidURLError(
                f"Must normalize first parameter to fetch to be a URL string, got {type(url).__name__}"
            )

        scheme = get_scheme(url)
        if scheme is None:
            raise InvalidURLError(f"Invalid URL (no scheme): {url}")

        handler = self.get(scheme)
        logger.debug(f"Dispatching {(options or {}).get('method', 'GET')} {url}")
        return await handler(url, dict(options or {}))
