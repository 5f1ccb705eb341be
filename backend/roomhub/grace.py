from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

from .config import DEFAULT_GRACE_PERIOD_SECONDS

logger = logging.getLogger("roomhub.grace")

GraceCallback = Callable[[str], Union[Awaitable[Any], Any]]
# Signature of loop.call_later; the returned handle only needs .cancel()
CallLater = Callable[..., Any]


class GracePeriodScheduler:
    """Keyed registry of delayed callbacks, at most one pending per key.

    Starting a grace period for a key that already has one cancels the old
    timer first. A timer removes its own entry before the callback runs, so
    ``has(key)`` is False while the callback executes. Callback failures are
    logged and swallowed here so they never reach the event loop.

    All methods must be called from the event loop thread; that is what
    serializes access to the timer table.
    """

    def __init__(self, duration: float = DEFAULT_GRACE_PERIOD_SECONDS,
                 call_later: Optional[CallLater] = None):
        self._duration = float(duration)
        self._call_later = call_later
        self._timers: Dict[str, Any] = {}
        self._inflight: Set[asyncio.Task] = set()

    @property
    def duration(self) -> float:
        return self._duration

    def set_duration(self, seconds: float) -> None:
        """Change the delay for timers started from now on."""
        if seconds < 0:
            raise ValueError("grace period duration must be >= 0")
        self._duration = float(seconds)
        logger.debug(f"Grace period duration set to {seconds}s")

    def start(self, key: str, callback: GraceCallback) -> None:
        self.cancel(key)
        logger.debug(f"Starting grace period for room {key} ({self._duration}s)")
        call_later = self._call_later or asyncio.get_running_loop().call_later
        self._timers[key] = call_later(self._duration, self._fire, key, callback)

    def cancel(self, key: str) -> bool:
        handle = self._timers.pop(key, None)
        if handle is None:
            return False
        handle.cancel()
        logger.debug(f"Cancelled grace period for room {key}")
        return True

    def has(self, key: str) -> bool:
        return key in self._timers

    def pending(self) -> List[str]:
        return list(self._timers)

    def cancel_all(self) -> int:
        keys = list(self._timers)
        for key in keys:
            self.cancel(key)
        return len(keys)

    async def drain(self) -> None:
        """Wait for callbacks that already fired to finish."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    def __len__(self) -> int:
        return len(self._timers)

    def _fire(self, key: str, callback: GraceCallback) -> None:
        self._timers.pop(key, None)
        logger.info(f"Grace period expired for room {key}, executing callback")
        task = asyncio.ensure_future(self._run(key, callback))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _run(self, key: str, callback: GraceCallback) -> None:
        try:
            result = callback(key)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception(f"Error executing grace period callback for room {key}")
