"""
Circuit breaker for gateway API calls.

Prevents cascading failures by temporarily refusing calls to a provider
whose transport keeps failing. Declines are not failures: only the
exception types passed as ``failure_exceptions`` trip the breaker.
"""
import time
from typing import Any, Callable, Optional, Tuple, Type

import structlog

from payment_orchestrator.exceptions import GatewayError

logger = structlog.get_logger(__name__)


class CircuitOpenError(GatewayError):
    """Raised when the circuit is open and the call was not attempted."""

    pass


class CircuitBreaker:
    """Closed / open / half_open breaker around synchronous provider calls."""

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
        failure_exceptions: Tuple[Type[BaseException], ...] = (Exception,),
    ):
        """
        Initialize circuit breaker.

        Args:
            name: Provider name used in logs
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
            failure_exceptions: Exception types that count as failures
        """
        self.name = name
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_exceptions = failure_exceptions
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    def call(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """
        Execute function with circuit breaker protection.

        Raises:
            CircuitOpenError: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.time() - self.last_failure_time > self.timeout
            ):
                self.state = "half_open"
                self.success_count = 0
                logger.info("circuit_breaker_half_open", gateway=self.name)
            else:
                raise CircuitOpenError(f"{self.name} is temporarily unavailable")

        try:
            result = func(*args, **kwargs)
        except self.failure_exceptions:
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
                self.state = "closed"
                logger.info("circuit_breaker_closed", gateway=self.name)

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.failure_count >= self.failure_threshold:
            self.state = "open"
            logger.warning(
                "circuit_breaker_opened",
                gateway=self.name,
                failure_count=self.failure_count,
            )
