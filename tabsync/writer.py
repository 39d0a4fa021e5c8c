from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Coalescer(Generic[T]):
    """Run `runnable` once per burst with the latest payload.

    The first request of a burst fixes when the run happens; later requests
    only replace the payload. The buffer is emptied before the run starts, so
    requests arriving during the run open a new burst.
    """

    def __init__(
        self,
        delay_ms: int,
        runnable: Callable[[T], Awaitable[None]],
        *,
        name: str = "coalescer",
    ) -> None:
        self.delay_ms = delay_ms
        self.name = name
        self._runnable = runnable
        self._payload: T | None = None
        self._has_payload = False
        self._waiters: list[asyncio.Future[bool]] = []
        self._task: asyncio.Task[None] | None = None
        self._inflight = 0

    @property
    def pending(self) -> bool:
        return self._has_payload or self._inflight > 0

    def schedule(self, payload: T) -> asyncio.Future[bool]:
        loop = asyncio.get_running_loop()
        waiter: asyncio.Future[bool] = loop.create_future()
        self._waiters.append(waiter)
        if not self._has_payload:
            logger.debug("[%s] scheduled in %sms", self.name, self.delay_ms)
            self._task = loop.create_task(self._fire_later())
        self._payload = payload
        self._has_payload = True
        return waiter

    async def flush(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
        await self._fire()

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
        self._payload = None
        self._has_payload = False
        waiters, self._waiters = self._waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(False)

    async def _fire_later(self) -> None:
        await asyncio.sleep(self.delay_ms / 1000.0)
        self._task = None
        await self._fire()

    async def _fire(self) -> None:
        if not self._has_payload:
            return
        payload = self._payload
        waiters, self._waiters = self._waiters, []
        self._payload = None
        self._has_payload = False
        self._inflight += 1
        ok = False
        try:
            await self._runnable(payload)  # type: ignore[arg-type]
            ok = True
        except Exception:
            logger.exception("%s run failed", self.name)
        finally:
            self._inflight -= 1
            for waiter in waiters:
                if not waiter.done():
                    waiter.set_result(ok)
