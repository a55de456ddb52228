"""
Shared retry policy with exponential backoff for remote calls
(notification delivery, registry requests).
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

from organmatch.core.exceptions import TransientDeliveryError

logger = logging.getLogger(__name__)


class RetryExhaustedError(TransientDeliveryError):
    """Raised when every attempt failed with a retryable error."""

    def __init__(self, message: str, attempts: int, last_error: Optional[BaseException] = None):
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


class RetryPolicy:
    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 0.5,
        max_delay: float = 5.0,
        retry_on: Tuple[Type[BaseException], ...] = (TransientDeliveryError,),
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.retry_on = retry_on
        self._sleep = sleep

    def delay_for(self, attempt: int) -> float:
        """Backoff before the retry that follows `attempt` (0-based)."""
        return min(self.max_delay, self.base_delay * (2 ** attempt))

    async def run(
        self,
        func: Callable[..., Awaitable[Any]],
        *args,
        context: str = "",
        on_attempt: Optional[Callable[[int], None]] = None,
        **kwargs,
    ) -> Any:
        """
        Await `func(*args, **kwargs)`, retrying retryable errors.

        Args:
            func: Coroutine function to call
            context: Context string for logging (e.g., "notify donor")
            on_attempt: Called with the 1-based attempt number before each try

        Returns:
            Result of the first successful call

        Raises:
            RetryExhaustedError: If every attempt raised a retryable error
            Exception: Non-retryable errors propagate unchanged
        """
        last_exception: Optional[BaseException] = None

        for attempt in range(self.max_attempts):
            if on_attempt is not None:
                on_attempt(attempt + 1)
            try:
                return await func(*args, **kwargs)
            except self.retry_on as e:
                last_exception = e
                if attempt < self.max_attempts - 1:
                    delay = self.delay_for(attempt)
                    logger.warning(
                        f"Transient error: {e}. Context: {context}. "
                        f"Retrying in {delay:.1f}s (attempt {attempt + 1}/{self.max_attempts})"
                    )
                    await self._sleep(delay)
                else:
                    logger.error(
                        f"Giving up after {self.max_attempts} attempts. Context: {context}. Error: {e}"
                    )

        raise RetryExhaustedError(
            f"Failed after {self.max_attempts} attempts. Context: {context}. Error: {last_exception}",
            attempts=self.max_attempts,
            last_error=last_exception,
        ) from last_exception
