from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)

Operation = Callable[[], Awaitable[None]]


@dataclass
class _Step:
    name: str
    op: Operation
    done: asyncio.Future[bool]


def _noop() -> None:
    return None


class MutationQueue:
    """FIFO of named operations; at most one runs at a time.

    The shared store has no locks or transactions, so every read-diff-write
    pass goes through here. A step is retried after `step_delay_ms` while
    another step holds the lock or tabs are still settling, and dropped when
    syncing is not allowed.
    """

    def __init__(
        self,
        *,
        step_delay_ms: int,
        settled: Callable[[], bool] = lambda: True,
        on_unsettled: Callable[[], None] = _noop,
        allowed: Callable[[], bool] = lambda: True,
        on_busy: Callable[[bool], None] | None = None,
    ) -> None:
        self.step_delay_ms = step_delay_ms
        self._settled = settled
        self._on_unsettled = on_unsettled
        self._allowed = allowed
        self._on_busy = on_busy
        self._queue: deque[_Step] = deque()
        self._running: str | None = None
        self._scheduled: asyncio.TimerHandle | None = None
        self._task: asyncio.Task[None] | None = None
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def pending(self) -> int:
        return len(self._queue)

    @property
    def running(self) -> str | None:
        return self._running

    def submit(self, name: str, op: Operation) -> asyncio.Future[bool]:
        loop = asyncio.get_running_loop()
        step = _Step(name=name, op=op, done=loop.create_future())
        self._queue.append(step)
        self._idle.clear()
        self._schedule_next()
        return step.done

    async def join(self) -> None:
        await self._idle.wait()

    def close(self) -> None:
        if self._scheduled is not None:
            self._scheduled.cancel()
            self._scheduled = None
        while self._queue:
            step = self._queue.popleft()
            if not step.done.done():
                step.done.set_result(False)
        if self._task is not None and not self._task.done():
            self._task.cancel()
        if self._running is None:
            self._idle.set()

    def _schedule_next(self) -> None:
        if self._scheduled is not None or not self._queue:
            return
        loop = asyncio.get_running_loop()
        self._scheduled = loop.call_later(self.step_delay_ms / 1000.0, self._step)

    def _step(self) -> None:
        self._scheduled = None
        if not self._queue:
            logger.debug("[queue] exhausted")
            self._mark_idle()
            return
        if self._running is not None:
            logger.debug("[queue] locked by %s; skip this step", self._running)
            self._schedule_next()
            return
        if not self._settled():
            logger.debug("[queue] tabs are still loading; skip this step")
            self._on_unsettled()
            self._schedule_next()
            return
        step = self._queue.popleft()
        if not self._allowed():
            logger.debug("[queue] syncing not allowed; dropping %s", step.name)
            if not step.done.done():
                step.done.set_result(False)
            self._schedule_next()
            self._mark_idle()
            return
        self._running = step.name
        self._set_busy(True)
        logger.debug("[queue] locking for %s", step.name)
        self._task = asyncio.get_running_loop().create_task(self._run(step))

    async def _run(self, step: _Step) -> None:
        ok = False
        try:
            await step.op()
            ok = True
        except Exception:
            logger.exception("sync step %s failed", step.name)
        finally:
            self._running = None
            self._task = None
            self._set_busy(False)
            logger.debug("[queue] step done for %s, remaining %s", step.name, len(self._queue))
            if not step.done.done():
                step.done.set_result(ok)
            self._schedule_next()
            self._mark_idle()

    def _mark_idle(self) -> None:
        if not self._queue and self._running is None:
            self._idle.set()

    def _set_busy(self, busy: bool) -> None:
        if self._on_busy is None:
            return
        try:
            self._on_busy(busy)
        except Exception:
            logger.exception("queue busy hook failed")
