"""
Scheduled Tasks
Cancellable periodic asyncio tasks for session heartbeats, credential refresh and queue replay.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

# Returning False from a callback ends the schedule
TaskCallback = Callable[[], Awaitable[Optional[bool]]]


class ScheduledTask:
    """Runs callback every interval_seconds until cancelled or the callback returns False."""

    def __init__(self, name: str, interval_seconds: float, callback: TaskCallback):
        self.name = name
        self.interval_seconds = interval_seconds
        self._callback = callback
        self._task: Optional[asyncio.Task] = None
        self._stopped = False

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done() and not self._stopped

    def start(self) -> None:
        if self.is_running:
            return
        self._stopped = False
        self._task = asyncio.create_task(self._run(), name=f"scheduled:{self.name}")

    async def _run(self) -> None:
        while not self._stopped:
            await asyncio.sleep(self.interval_seconds)
            if self._stopped:
                break
            try:
                keep_going = await self._callback()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Scheduled task {self.name} failed: {e}", exc_info=True)
                continue
            if keep_going is False:
                self._stopped = True
        logger.debug(f"Scheduled task {self.name} finished")

    async def cancel(self) -> None:
        self._stopped = True
        task = self._task
        if task is None or task.done():
            return
        if task is asyncio.current_task():
            # Stopping from inside the callback: the loop exits on its own
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


class TaskScheduler:
    """Keeps at most one task per name; scheduling a name again replaces the old task."""

    def __init__(self):
        self._tasks: dict[str, ScheduledTask] = {}

    def is_scheduled(self, name: str) -> bool:
        task = self._tasks.get(name)
        return task is not None and task.is_running

    async def schedule(
        self, name: str, interval_seconds: float, callback: TaskCallback
    ) -> ScheduledTask:
        await self.cancel(name)
        task = ScheduledTask(name, interval_seconds, callback)
        self._tasks[name] = task
        task.start()
        return task

    async def cancel(self, name: str) -> None:
        task = self._tasks.pop(name, None)
        if task is not None:
            await task.cancel()

    async def cancel_all(self) -> None:
        for name in list(self._tasks):
            await self.cancel(name)

    def __len__(self) -> int:
        return sum(1 for task in self._tasks.values() if task.is_running)
