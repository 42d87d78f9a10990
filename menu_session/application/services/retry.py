"""
Retry Policy
Transient backend failures retry with linearly increasing delay; business-rule failures never retry.
"""
import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from menu_session.core.exceptions import TransientBackendError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryPolicy:
    """Up to max_attempts tries, sleeping base_delay * attempt between them."""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self._sleep = sleep

    async def run(self, operation: Callable[[], Awaitable[T]], name: str = "operation") -> T:
        """
        Execute operation, retrying only TransientBackendError.

        Raises:
            TransientBackendError: If every attempt failed transiently
            Exception: Any other error, raised on first occurrence
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                result = await operation()
                if attempt > 1:
                    logger.info(f"[{name}] Success after {attempt - 1} retries")
                return result
            except TransientBackendError as e:
                if attempt >= self.max_attempts:
                    logger.error(f"[{name}] All {self.max_attempts} attempts failed")
                    raise
                delay = self.base_delay * attempt
                logger.warning(
                    f"[{name}] Attempt {attempt} failed: {e.detail}. Retrying in {delay}s..."
                )
                await self._sleep(delay)
        raise RuntimeError("unreachable")  # pragma: no cover
