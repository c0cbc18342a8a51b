# repeat-with-interval tasks for the near-real-time views (chat, notifications)
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional

from utils.logger import get_logger

_logger = get_logger(__name__)

CHAT_POLL_INTERVAL = 5.0
NOTIFICATION_POLL_INTERVAL = 15.0


class RepeatingTask:
    """
    Runs ``callback`` immediately and then every ``interval`` seconds until
    cancelled. There is no push channel behind this: every tick is a plain
    re-read by the caller.

    A failing tick is logged and the next one still runs.
    """

    def __init__(
        self,
        interval: float,
        callback: Callable[[], Awaitable[None]],
        name: str = "poll",
    ) -> None:
        if interval <= 0:
            raise ValueError("Polling interval must be positive.")
        self.interval = interval
        self.callback = callback
        self.name = name
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> "RepeatingTask":
        if not self.running:
            self._task = asyncio.create_task(self._run(), name=self.name)
        return self

    async def cancel(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        while True:
            try:
                await self.callback()
            except asyncio.CancelledError:
                raise
            except Exception:
                _logger.exception(f"Polling task '{self.name}' tick failed")
            await asyncio.sleep(self.interval)

    async def __aenter__(self) -> "RepeatingTask":
        return self.start()

    async def __aexit__(self, *exc) -> None:
        await self.cancel()


def poll_chat(
    service,
    job_id: str,
    viewer_id: str,
    on_update: Callable[[list], Awaitable[None]],
    interval: float = CHAT_POLL_INTERVAL,
) -> RepeatingTask:
    """Re-reads a job's chat on a fixed interval and hands the messages to ``on_update``."""

    async def tick() -> None:
        await on_update(await service.get_chat_for_job(job_id, viewer_id))

    return RepeatingTask(interval, tick, name=f"chat:{job_id}")


def poll_notifications(
    service,
    user_id: str,
    on_update: Callable[[list], Awaitable[None]],
    interval: float = NOTIFICATION_POLL_INTERVAL,
) -> RepeatingTask:
    async def tick() -> None:
        await on_update(await service.get_notifications(user_id))

    return RepeatingTask(interval, tick, name=f"notifications:{user_id}")
