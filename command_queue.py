"""
Purpose: Run engine work strictly one unit at a time, in submission order.
Usage: usi_bridge enqueues every stdin/stdout interaction here; stop_search is the only bypass.
"""
from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Awaitable, Callable, Deque, Optional, Tuple, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
CommandTask = Callable[[], Awaitable[T]]


class CommandQueue:
    def __init__(self) -> None:
        self._waiting: Deque[Tuple[CommandTask, asyncio.Future]] = deque()
        self._running: Optional[asyncio.Task] = None

    def enqueue(self, task: CommandTask) -> asyncio.Future:
        """
        Queue `task` and return a future for its result.

        The task gets exclusive engine access until it settles. A caller that
        stops awaiting the future does not unqueue the task; it still runs.
        """
        fut = asyncio.get_running_loop().create_future()
        self._waiting.append((task, fut))
        self._next()
        return fut

    @property
    def size(self) -> int:
        """Tasks waiting for their turn (the running one is not counted)."""
        return len(self._waiting)

    @property
    def busy(self) -> bool:
        return self._running is not None

    def _next(self) -> None:
        if self._running is not None or not self._waiting:
            return
        task, fut = self._waiting.popleft()
        self._running = asyncio.ensure_future(self._run(task, fut))

    async def _run(self, task: CommandTask, fut: asyncio.Future) -> None:
        try:
            result = await task()
        except asyncio.CancelledError:
            if not fut.done():
                fut.cancel()
            raise
        except Exception as e:
            if not fut.done():
                fut.set_exception(e)
            else:
                logger.debug("queued task failed after its caller left: %s", e)
        else:
            if not fut.done():
                fut.set_result(result)
        finally:
            self._running = None
            self._next()
