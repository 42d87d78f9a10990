"""
Offline Request Queue
Backend calls that failed for connectivity reasons, replayed on a poll and dropped after a maximum age.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from menu_session.application.services.heartbeat import TaskScheduler
from menu_session.core.exceptions import TransientBackendError

logger = logging.getLogger(__name__)

QueuedOperation = Callable[[], Awaitable[object]]


@dataclass
class QueuedRequest:
    name: str
    operation: QueuedOperation
    queued_at: float
    attempts: int = field(default=0)


class OfflineRequestQueue:
    """
    FIFO of deferred backend calls.

    A replay that fails transiently stays queued; any other failure drops
    the request. Requests older than max_age_seconds are purged unplayed.
    """

    task_name = "offline-queue"

    def __init__(
        self,
        scheduler: TaskScheduler,
        poll_seconds: float = 30,
        max_age_seconds: float = 300,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.scheduler = scheduler
        self.poll_seconds = poll_seconds
        self.max_age_seconds = max_age_seconds
        self._clock = clock
        self._items: list[QueuedRequest] = []

    def __len__(self) -> int:
        return len(self._items)

    def enqueue(self, name: str, operation: QueuedOperation) -> None:
        self._items.append(QueuedRequest(name=name, operation=operation, queued_at=self._clock()))
        logger.info(f"Queued offline request {name} ({len(self._items)} pending)")

    def purge_expired(self) -> int:
        cutoff = self._clock() - self.max_age_seconds
        kept = [item for item in self._items if item.queued_at > cutoff]
        removed = len(self._items) - len(kept)
        self._items = kept
        if removed:
            logger.warning(f"Dropped {removed} offline requests older than {self.max_age_seconds}s")
        return removed

    async def flush(self) -> int:
        """
        Replay every pending request once.

        Returns:
            Number of requests that completed
        """
        self.purge_expired()
        if not self._items:
            return 0

        pending, self._items = self._items, []
        completed = 0
        for item in pending:
            item.attempts += 1
            try:
                await item.operation()
                completed += 1
            except TransientBackendError:
                self._items.append(item)
            except Exception as e:
                logger.error(f"Offline request {item.name} dropped: {e}")

        if completed:
            logger.info(f"Replayed {completed} offline requests")
        return completed

    async def _poll(self) -> Optional[bool]:
        await self.flush()
        return None

    async def start(self) -> None:
        await self.scheduler.schedule(self.task_name, self.poll_seconds, self._poll)

    async def stop(self) -> None:
        await self.scheduler.cancel(self.task_name)
