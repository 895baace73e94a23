"""Failure handling shared by storage, delivery and the health endpoints.

``with_retry`` wraps short storage operations that can hit transient
database errors; ``CircuitBreaker`` keeps a failing delivery gateway from
being hammered; ``HealthChecker`` runs the component checks behind
``/health/detailed``.
"""

import asyncio
import random
import threading
import time
from datetime import datetime
from enum import Enum
from functools import wraps
from typing import Any, Callable, Dict, List, Optional, Type

from .exceptions import ResourceExhaustionError, StorageError, TransientError, WorkflowEngineError
from .logging import ErrorRecoveryLogger, get_logger

logger = get_logger(__name__)


class RetryConfig:
    """How often and how patiently to retry an operation."""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: Optional[List[Type[Exception]]] = None
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = tuple(
            retryable_exceptions or (TransientError, StorageError, ResourceExhaustionError)
        )

    def should_retry(self, exception: Exception, attempt: int) -> bool:
        if attempt >= self.max_attempts:
            return False
        # Engine errors carry their own verdict.
        if isinstance(exception, WorkflowEngineError):
            return exception.recoverable
        return isinstance(exception, self.retryable_exceptions)

    def get_delay(self, attempt: int) -> float:
        """Backoff before retry number ``attempt`` (1-based), capped at ``max_delay``."""
        if self.base_delay <= 0:
            return 0.0
        delay = min(self.base_delay * self.exponential_base ** (attempt - 1), self.max_delay)
        if self.jitter:
            delay = random.uniform(delay / 2, delay)
        return delay


def execute_with_retry(func: Callable, config: RetryConfig, *args, **kwargs) -> Any:
    """Call ``func`` until it succeeds or ``config`` says to stop; the last error is re-raised."""
    reporter = ErrorRecoveryLogger(func.__name__)
    attempt = 1
    while True:
        try:
            result = func(*args, **kwargs)
        except Exception as e:
            if not config.should_retry(e, attempt):
                reporter.log_recovery_failure(func.__name__, e, attempt)
                raise
            delay = config.get_delay(attempt)
            reporter.log_recovery_attempt(func.__name__, e, attempt, config.max_attempts, delay)
            time.sleep(delay)
            attempt += 1
            continue

        if attempt > 1:
            reporter.log_recovery_success(func.__name__, attempt)
        return result


def with_retry(config: Optional[RetryConfig] = None):
    """Decorator form of ``execute_with_retry``."""
    policy = config or RetryConfig()

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            return execute_with_retry(func, policy, *args, **kwargs)
        return wrapper

    return decorator


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


class CircuitBreaker:
    """Short-circuits calls to a dependency after repeated failures.

    After ``failure_threshold`` consecutive failures the circuit opens and
    calls fail fast with ``TransientError``. Once ``recovery_timeout``
    seconds have passed one trial call is let through; success closes the
    circuit, failure opens it again.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        expected_exception: Type[Exception] = Exception,
        name: str = "circuit_breaker",
        clock: Callable[[], float] = time.monotonic
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.expected_exception = expected_exception
        self.name = name
        self._clock = clock
        self._lock = threading.RLock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at: Optional[float] = None
        self._reporter = ErrorRecoveryLogger(name)

    @property
    def state(self) -> str:
        return self._state.value

    @property
    def failure_count(self) -> int:
        return self._failures

    def __call__(self, func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            return self.call(func, *args, **kwargs)
        return wrapper

    def call(self, func: Callable, *args, **kwargs) -> Any:
        self._before_call()
        try:
            result = func(*args, **kwargs)
        except self.expected_exception as e:
            self._record_failure(e)
            raise
        self._record_success()
        return result

    def _before_call(self) -> None:
        with self._lock:
            if self._state != CircuitState.OPEN:
                return
            remaining = self.recovery_timeout - (self._clock() - self._opened_at)
            if remaining > 0:
                raise TransientError(f"Circuit '{self.name}' is open; retry in {remaining:.1f}s")
            self._state = CircuitState.HALF_OPEN
            logger.info(f"Circuit '{self.name}' half-open, allowing a trial call")

    def _record_success(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                logger.info(f"Circuit '{self.name}' closed again")
            self._state = CircuitState.CLOSED
            self._failures = 0
            self._opened_at = None

    def _record_failure(self, error: Exception) -> None:
        with self._lock:
            self._failures += 1
            if self._state == CircuitState.HALF_OPEN or self._failures >= self.failure_threshold:
                self._state = CircuitState.OPEN
                self._opened_at = self._clock()
                self._reporter.log_recovery_failure(f"circuit '{self.name}'", error, self._failures)


class HealthChecker:
    """Registry of named component checks.

    A check may be a plain function (run in a worker thread) or a
    coroutine function. It passes by returning, optionally with a message
    string or a dict of extra fields, and fails by raising.
    """

    def __init__(self):
        self.checks: Dict[str, Dict[str, Any]] = {}
        self.last_results: Dict[str, Dict[str, Any]] = {}

    def register_check(self, name: str, check_func: Callable, timeout: float = 5.0):
        self.checks[name] = {"func": check_func, "timeout": timeout}
        logger.debug(f"Registered health check '{name}'")

    @staticmethod
    def _result(status: str, message: str, started: Optional[float] = None, **extra) -> Dict[str, Any]:
        result = {"status": status, "message": message}
        if started is not None:
            result["duration_ms"] = round((time.perf_counter() - started) * 1000, 2)
        result["timestamp"] = datetime.utcnow().isoformat()
        result.update(extra)
        return result

    async def run_check(self, name: str) -> Dict[str, Any]:
        check = self.checks.get(name)
        if check is None:
            return self._result("error", f"Health check '{name}' not found")

        func, timeout = check["func"], check["timeout"]
        started = time.perf_counter()
        try:
            if asyncio.iscoroutinefunction(func):
                outcome = await asyncio.wait_for(func(), timeout=timeout)
            else:
                outcome = await asyncio.wait_for(asyncio.to_thread(func), timeout=timeout)
        except asyncio.TimeoutError:
            result = self._result("timeout", f"No answer within {timeout}s", started)
        except Exception as e:
            result = self._result("unhealthy", str(e), started, error_type=type(e).__name__)
        else:
            if isinstance(outcome, dict):
                result = self._result("healthy", "Check passed", started)
                result.update(outcome)
            else:
                result = self._result("healthy", outcome if isinstance(outcome, str) else "Check passed", started)

        self.last_results[name] = result
        return result

    async def run_all_checks(self) -> Dict[str, Any]:
        results = {name: await self.run_check(name) for name in list(self.checks)}
        healthy = all(result["status"] == "healthy" for result in results.values())
        return {
            "overall_status": "healthy" if healthy else "unhealthy",
            "checks": results,
            "timestamp": datetime.utcnow().isoformat(),
        }


health_checker = HealthChecker()
