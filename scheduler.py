# scheduler.py

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional


LOG = logging.getLogger(__name__)

CoroFactory = Callable[[], Awaitable[object]]


def current_task_or_none() -> Optional[asyncio.Task]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


class TaskSlots:
    """
    Named, cancellable delayed tasks with one owner per slot.

    - schedule(slot, ...) cancels whatever was pending in that slot first.
    - Nothing runs once close() has been called (alive is False).
    - Exceptions from a scheduled callback are logged, not raised.
    """

    def __init__(self, name: str = "slots") -> None:
        self._name = name
        self._tasks: Dict[str, asyncio.Task] = {}
        self._alive = True

    @property
    def alive(self) -> bool:
        return self._alive

    def schedule(self, slot: str, delay: float, factory: CoroFactory) -> Optional[asyncio.Task]:
        if not self._alive:
            LOG.debug("%s: not scheduling %s after close", self._name, slot)
            return None

        self.cancel(slot)
        task = asyncio.get_running_loop().create_task(self._run(slot, max(0.0, float(delay)), factory))
        self._tasks[slot] = task
        return task

    async def _run(self, slot: str, delay: float, factory: CoroFactory) -> None:
        try:
            if delay > 0:
                await asyncio.sleep(delay)
            if not self._alive:
                return
            await factory()
        except asyncio.CancelledError:
            raise
        except Exception:
            LOG.warning("%s: task %s failed", self._name, slot, exc_info=True)
        finally:
            current = self._tasks.get(slot)
            if current is asyncio.current_task():
                del self._tasks[slot]

    def cancel(self, slot: str) -> bool:
        task = self._tasks.pop(slot, None)
        if task is None or task.done():
            return False
        # A slot callback rescheduling its own slot must not cancel itself.
        if task is current_task_or_none():
            return False
        task.cancel()
        return True

    def cancel_all(self) -> int:
        cancelled = 0
        for slot in list(self._tasks.keys()):
            if self.cancel(slot):
                cancelled += 1
        return cancelled

    def pending(self, slot: str) -> bool:
        task = self._tasks.get(slot)
        return task is not None and not task.done()

    def close(self) -> None:
        self._alive = False
        self.cancel_all()
