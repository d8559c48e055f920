"""
Module Cache / Loader

Loads modules by URL: fetch the source through the runtime, hand it to the
evaluator, resolve nested imports back through this cache, and keep the
finished record keyed by normalized URL.

Design principles:
- One fetch and one evaluation per normalized URL, however many callers
- The in-flight entry is registered before the first suspension point
- Failures are propagated to every waiter and never cached
- Cycles are answered with the pending record's live module object
"""

import asyncio
import logging
import types
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Set

from polyfetch.core.errors import SourceFetchFailedError
from polyfetch.core.evaluator import Evaluator
from polyfetch.core.response import FetchResponse
from polyfetch.core.urls import normalize_url

logger = logging.getLogger(__name__)

SourceFetcher = Callable[[str], Awaitable[FetchResponse]]


class ModuleStatus(Enum):
    """Lifecycle of a module record."""

    FETCHING = "fetching"
    EVALUATING = "evaluating"
    EVALUATED = "evaluated"


@dataclass
class ModuleRecord:
    """A loaded (or loading) module identified by its normalized URL."""

    url: str
    module: types.ModuleType
    source: Optional[str] = None
    status: ModuleStatus = ModuleStatus.FETCHING
    dependencies: List[str] = field(default_factory=list)

    @property
    def namespace(self) -> Dict[str, Any]:
        return vars(self.module)


@dataclass
class _PendingLoad:
    record: ModuleRecord
    task: asyncio.Task


class ModuleCache:
    """
    Cache of module records with single-flight loading.

    Args:
        fetch: Async callable returning a FetchResponse for a URL
        evaluator: Execution environment used to link and evaluate source
        base_url: Base for resolving relative URLs passed to load()
    """

    def __init__(
        self,
        fetch: SourceFetcher,
        evaluator: Evaluator,
        base_url: Optional[str] = None,
    ):
        self._fetch = fetch
        self.evaluator = evaluator
        self.base_url = base_url

        self._modules: Dict[str, ModuleRecord] = {}
        self._loading: Dict[str, _PendingLoad] = {}
        # loader URL -> URLs whose pending loads it is awaiting
        self._waits: Dict[str, Set[str]] = {}

        self._stats = {"hits": 0, "misses": 0, "fetches": 0, "evaluations": 0}

    def resolve(self, url: str, base: Optional[str] = None) -> str:
        """
        Normalize a URL into a cache key.

        Args:
            url: Absolute or relative URL
            base: URL to resolve against (defaults to the cache's base_url)

        Returns:
            Absolute URL with any fragment removed
        """
        return normalize_url(url, base or self.base_url)

    async def load(self, url: str, base: Optional[str] = None, *, importer: Optional[str] = None) -> ModuleRecord:
        """
        Load a module, sharing work with any concurrent load of the same URL.

        Args:
            url: Module URL (relative URLs resolve against base)
            base: Base URL for resolution
            importer: Normalized URL of the module requesting this one

        Returns:
            The ModuleRecord; for a cyclic request the record may still be
            evaluating.
        """
        key = self.resolve(url, base)

        record = self._modules.get(key)
        if record is not None:
            self._stats["hits"] += 1
            return record

        pending = self._loading.get(key)
        if pending is None:
            self._stats["misses"] += 1
            pending = self._start(key)
        else:
            self._stats["hits"] += 1

        if importer is None:
            return await asyncio.shield(pending.task)

        if self._reaches(key, importer):
            logger.debug(f"Import cycle: {importer} -> {key}, using pending record")
            return pending.record

        waits = self._waits.setdefault(importer, set())
        waits.add(key)
        try:
            return await asyncio.shield(pending.task)
        finally:
            waits.discard(key)

    def _start(self, key: str) -> _PendingLoad:
        record = ModuleRecord(url=key, module=types.ModuleType(key))
        task = asyncio.ensure_future(self._load_module(record))
        pending = _PendingLoad(record=record, task=task)
        self._loading[key] = pending
        return pending

    def _reaches(self, start: str, target: str) -> bool:
        """True if the load of `start` is (transitively) waiting on `target`."""
        seen = set()
        stack = [start]
        while stack:
            current = stack.pop()
            if current == target:
                return True
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self._waits.get(current, ()))
        return False

    async def _load_module(self, record: ModuleRecord) -> ModuleRecord:
        url = record.url
        try:
            self._stats["fetches"] += 1
            response = await self._fetch(url)
            if not response.ok:
                reason = await response.text()
                raise SourceFetchFailedError(url, response.status, reason)
            record.source = await response.text()

            async def resolve(specifier: str) -> types.ModuleType:
                dependency = await self.load(specifier, url, importer=url)
                if dependency.url not in record.dependencies:
                    record.dependencies.append(dependency.url)
                return dependency.module

            record.status = ModuleStatus.EVALUATING
            self._stats["evaluations"] += 1
            await self.evaluator.evaluate(record.module, record.source, resolve)

            record.status = ModuleStatus.EVALUATED
            self._modules[url] = record
            logger.info(f"Loaded module {url}")
            return record
        except Exception as e:
            logger.warning(f"Failed to load module {url}: {e}")
            raise
        finally:
            self._loading.pop(url, None)
            self._waits.pop(url, None)

    async def import_top_level(self, url: str, base: Optional[str] = None) -> Dict[str, Any]:
        """Load a module and return a snapshot of its exported names."""
        record = await self.load(url, base)
        return self.evaluator.exports(record.module)

    def get(self, url: str, base: Optional[str] = None) -> Optional[ModuleRecord]:
        """Return a completed record without loading."""
        return self._modules.get(self.resolve(url, base))

    def has(self, url: str, base: Optional[str] = None) -> bool:
        return self.resolve(url, base) in self._modules

    def in_flight(self) -> Mapping[str, ModuleRecord]:
        return {url: pending.record for url, pending in self._loading.items()}

    def clear(self) -> None:
        """Drop every completed record (in-flight loads are left alone)."""
        self._modules.clear()
        self._stats = {"hits": 0, "misses": 0, "fetches": 0, "evaluations": 0}

    def stats(self) -> Dict[str, int]:
        """
        Get cache statistics.

        Returns:
            Dict with 'hits', 'misses', 'fetches', 'evaluations',
            'in_flight' and 'size'
        """
        return {
            **self._stats,
            "in_flight": len(self._loading),
            "size": len(self._modules),
        }
