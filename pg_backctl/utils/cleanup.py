"""Run-once cleanup registry for pipeline staging resources."""

import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from pg_backctl.utils.error_handling import log_and_continue

logger = logging.getLogger(__name__)


@dataclass
class _CleanupAction:
    description: str
    callback: Callable[[], Awaitable[None] | None]
    done: bool = False


@dataclass
class CleanupRegistry:
    """Collects cleanup actions and runs each exactly once.

    Actions run in reverse registration order. A failing action is logged
    and the remaining actions still run. Calling ``run_all`` again, or
    ``run`` on an action already run, is a no-op.
    """

    _actions: list[_CleanupAction] = field(default_factory=list)

    def register(self, description: str, callback: Callable[[], Awaitable[None] | None]) -> _CleanupAction:
        """Register a cleanup action and return its handle."""
        action = _CleanupAction(description=description, callback=callback)
        self._actions.append(action)
        return action

    async def run(self, action: _CleanupAction) -> None:
        """Run a single action now if it has not run yet."""
        if action.done:
            return
        action.done = True
        logger.info("Cleanup: %s", action.description)
        try:
            result = action.callback()
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            log_and_continue(logger, e, f"Cleanup failed ({action.description})")

    async def run_all(self) -> None:
        """Run every pending action, most recently registered first."""
        for action in reversed(self._actions):
            await self.run(action)

    @property
    def pending(self) -> int:
        return sum(1 for action in self._actions if not action.done)
