"""
Globals Registry

Named values injected into the namespace of every evaluated module and
script (fetch, llm, ...).
"""

import logging
from typing import Any, Dict, Iterator

from polyfetch.core.errors import DuplicateGlobalError

logger = logging.getLogger(__name__)


class GlobalRegistry:
    """Registry of names exposed to evaluated code."""

    def __init__(self):
        self._globals: Dict[str, Any] = {}

    def register(self, name: str, value: Any) -> None:
        if name in self._globals:
            raise DuplicateGlobalError(name)
        self._globals[name] = value
        logger.debug(f"Registered global: {name}")

    def get(self, name: str) -> Any:
        return self._globals[name]

    def __contains__(self, name: str) -> bool:
        return name in self._globals

    def __iter__(self) -> Iterator[str]:
        return iter(self._globals)

    def create_context(self) -> Dict[str, Any]:
        """Fresh namespace dict holding every registered global."""
        return dict(self._globals)
