"""
Single-flight execution of an async initializer.

The first caller starts the initializer as a task, every caller (the first
one included) awaits that same task, and the result is memoized once it
succeeds. A failure is delivered to everyone who was waiting and then
forgotten, so the next call starts a fresh attempt.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SingleFlight(Generic[T]):
    """
    Memoizing single-flight wrapper around a zero-argument coroutine function.

    Example:
        >>> start_daemon = SingleFlight(spawn_daemon)
        >>> handler = await start_daemon()  # concurrent callers share one spawn
    """

    def __init__(self, func: Callable[[], Awaitable[T]], name: Optional[str] = None):
        self._func = func
        self.name = name or getattr(func, "__name__", "single-flight")
        self._task: Optional[asyncio.Task] = None
        self._value: Optional[T] = None
        self._resolved = False
        self.runs = 0

    @property
    def resolved(self) -> bool:
        """True once the initializer has completed successfully."""
        return self._resolved

    @property
    def in_flight(self) -> bool:
        return self._task is not None and not self._task.done()

    async def __call__(self) -> T:
        if self._resolved:
            return self._value

        if self._task is None:
            self._task = asyncio.ensure_future(self._run())

        # shield: a cancelled caller must not cancel the shared initialization
        return await asyncio.shield(self._task)

    async def _run(self) -> T:
        self.runs += 1
        logger.debug(f"Running {self.name} (attempt {self.runs})")
        try:
            value = await self._func()
        except BaseException:
            self._task = None
            raise

        self._value = value
        self._resolved = True
        self._task = None
        return value

    def reset(self) -> None:
        """Forget a memoized result so the next call runs the initializer again."""
        self._value = None
        self._resolved = False
