"""Error-code driven retry for remote writes."""

import logging
from typing import Any, Awaitable, Callable, Iterable, Optional, TypeVar

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_fixed,
)

from ..clients.base import RemoteApiError
from ..models.template import RetryConfig, DEFAULT_RETRYABLE_ERRORS

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryPolicy:
    """
    Retry a call when it fails with one of a set of remote error codes.

    Other errors propagate immediately. When retries are exhausted the last
    error propagates and the caller records it as a normal failure.
    """

    def __init__(
        self,
        max_retries: int = 3,
        wait_seconds: float = 1.0,
        retryable_errors: Optional[Iterable[str]] = None
    ):
        self.max_retries = max(max_retries, 0)
        self.wait_seconds = max(wait_seconds, 0.0)
        self.retryable_errors = set(
            retryable_errors if retryable_errors is not None else DEFAULT_RETRYABLE_ERRORS
        )

    @classmethod
    def from_config(cls, config: Optional[RetryConfig]) -> "RetryPolicy":
        if config is None:
            return cls()
        return cls(
            max_retries=config.max_retries,
            wait_seconds=config.retry_wait_seconds,
            retryable_errors=config.retryable_errors,
        )

    @classmethod
    def disabled(cls) -> "RetryPolicy":
        return cls(max_retries=0, wait_seconds=0, retryable_errors=[])

    def is_retryable_code(self, code: Optional[str]) -> bool:
        return code is not None and code in self.retryable_errors

    def is_retryable(self, exc: BaseException) -> bool:
        return isinstance(exc, RemoteApiError) and self.is_retryable_code(exc.error_code)

    async def call(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """
        Await func(*args, **kwargs), retrying on retryable remote errors.

        Args:
            func: Coroutine function to call
            *args: Positional arguments for func
            **kwargs: Keyword arguments for func

        Returns:
            The result of the first successful attempt
        """
        result = None
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_fixed(self.wait_seconds),
            retry=retry_if_exception(self.is_retryable),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                result = await func(*args, **kwargs)
        return result
