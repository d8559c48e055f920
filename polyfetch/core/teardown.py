"""
Teardown Registry

Ordered cleanup actions registered by backends when they allocate state
(sessions, daemons, client connections). Actions run once, newest first.
An action registered after teardown already ran is started right away, so
state allocated by an operation that outlives close() is still released.
"""

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Set

logger = logging.getLogger(__name__)

TeardownAction = Callable[[], Awaitable[None]]


class TeardownRegistry:
    """LIFO list of async cleanup actions guarded against re-running."""

    def __init__(self):
        self._actions: List[TeardownAction] = []
        self._late: Set[asyncio.Task] = set()
        self._ran = False

    def __len__(self) -> int:
        return len(self._actions)

    @property
    def ran(self) -> bool:
        return self._ran

    @property
    def pending(self) -> Set[asyncio.Task]:
        """Late actions that were started after teardown and have not finished."""
        return set(self._late)

    def register(self, action: TeardownAction) -> None:
        """
        Append a cleanup action.

        Once teardown has run, the action is scheduled immediately on the
        running event loop instead of being queued.
        """
        if self._ran:
            logger.info(f"Teardown already ran, running late action {action!r} now")
            task = asyncio.ensure_future(self._run_late(action))
            self._late.add(task)
            task.add_done_callback(self._late.discard)
            return
        self._actions.append(action)

    async def _run_late(self, action: TeardownAction) -> None:
        try:
            await action()
        except Exception as e:
            logger.error(f"Late teardown action {action!r} failed: {e}")

    async def run(self) -> None:
        """
        Run every action in reverse registration order, exactly once.

        A failing action does not stop the others; the first failure is
        raised after all actions ran.
        """
        if self._ran:
            return
        self._ran = True

        first_error: Optional[BaseException] = None
        while self._actions:
            action = self._actions.pop()
            try:
                await action()
            except Exception as e:
                logger.error(f"Teardown action {action!r} failed: {e}")
                if first_error is None:
                    first_error = e

        if first_error is not None:
            raise first_error
