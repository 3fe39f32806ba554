"""
Failure isolation for calls to remote collaborators.

Provides a circuit breaker and a helper that runs a blocking SDK call in a
worker thread under a hard timeout. Both turn failures into
``RemoteServiceUnavailable`` so callers deal with one typed error.
"""
import asyncio
import time
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

import structlog

from entitlements.core.exceptions import RemoteServiceUnavailable
from entitlements.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

_STATE_CODES = {"closed": 0, "open": 1, "half_open": 2}


async def run_blocking(
    service: str,
    func: Callable[..., Any],
    *args: Any,
    timeout: float,
    **kwargs: Any,
) -> Any:
    """
    Run a synchronous SDK call in a thread, bounded by ``timeout`` seconds.

    Raises:
        RemoteServiceUnavailable: If the call does not finish in time
    """
    try:
        return await asyncio.wait_for(asyncio.to_thread(func, *args, **kwargs), timeout=timeout)
    except asyncio.TimeoutError as e:
        logger.error("remote_call_timed_out", service=service, timeout_seconds=timeout)
        raise RemoteServiceUnavailable(service, f"call timed out after {timeout}s", e)


class CircuitBreaker:
    """
    Circuit breaker for a remote collaborator.

    Prevents cascading failures by temporarily stopping requests
    when consecutive failures exceed a threshold.
    """

    def __init__(
        self,
        service: str,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
        ignored_exceptions: Tuple[Type[BaseException], ...] = (),
    ):
        """
        Initialize circuit breaker.

        Args:
            service: Name used in logs, metrics and errors
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
            ignored_exceptions: Errors that say nothing about the remote's
                health (e.g. a rejected request) and do not count as failures
        """
        self.service = service
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.ignored_exceptions = ignored_exceptions
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.update_circuit_breaker_state(self.service, _STATE_CODES[state])

    async def call(self, func: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        """
        Await ``func`` with circuit breaker protection.

        Raises:
            RemoteServiceUnavailable: If the circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.time() - self.last_failure_time > self.timeout
            ):
                self._set_state("half_open")
                self.success_count = 0
                logger.info("circuit_breaker_half_open", service=self.service)
            else:
                raise RemoteServiceUnavailable(self.service, "circuit breaker is open")

        try:
            result = await func(*args, **kwargs)
        except self.ignored_exceptions:
            self.on_success()
            raise
        except Exception:
            self.on_failure()
            raise
        self.on_success()
        return result

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed", service=self.service)

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.state == "half_open" or self.failure_count >= self.failure_threshold:
            self._set_state("open")
            logger.warning(
                "circuit_breaker_opened",
                service=self.service,
                failure_count=self.failure_count,
            )
