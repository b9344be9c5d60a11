from __future__ import annotations

import logging
import random
import socket
import time
from dataclasses import dataclass
from enum import Enum
from threading import Lock
from typing import Any, Callable, Mapping, Optional, TypeVar
from urllib.error import HTTPError, URLError

from backend.app.errors import (
    CircuitOpenError,
    ConfigurationError,
    DispatchQueueError,
    RetryExhaustedError,
    TransientNetworkError,
    UnknownStatusError,
    ValidationError,
)
from backend.app.models import HealthReport, HealthVerdict, ServiceHealth, now_ms

logger = logging.getLogger("order_notifier.resilience")

T = TypeVar("T")

RETRYABLE_HTTP_STATUSES = frozenset({408, 429, 500, 502, 503, 504})
HIGH_ERROR_RATE = 0.5
MIN_CALLS_FOR_ERROR_RATE = 10

_NON_RETRYABLE = (
    CircuitOpenError,
    ConfigurationError,
    DispatchQueueError,
    UnknownStatusError,
    ValidationError,
)
_RETRYABLE_OS_ERRORS = (ConnectionError, TimeoutError, socket.timeout, socket.gaierror)
_RETRYABLE_MESSAGES = ("timeout", "timed out", "rate limit")
_VERDICT_RANK = {HealthVerdict.healthy: 0, HealthVerdict.degraded: 1, HealthVerdict.critical: 2}


def is_retryable_error(exc: BaseException) -> bool:
    if isinstance(exc, _NON_RETRYABLE):
        return False
    if isinstance(exc, TransientNetworkError):
        return True
    if isinstance(exc, HTTPError):
        return exc.code in RETRYABLE_HTTP_STATUSES
    if isinstance(exc, (URLError,) + _RETRYABLE_OS_ERRORS):
        return True
    message = str(exc).lower()
    return any(token in message for token in _RETRYABLE_MESSAGES)


def worst_verdict(*verdicts: HealthVerdict) -> HealthVerdict:
    return max(verdicts, key=_VERDICT_RANK.__getitem__, default=HealthVerdict.healthy)


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay_ms: int = 500
    max_delay_ms: int = 30000
    jitter_ratio: float = 0.0

    def delay_ms(self, retry_index: int) -> float:
        delay = min(self.base_delay_ms * (2**retry_index), self.max_delay_ms)
        if self.jitter_ratio > 0:
            delay += random.uniform(0, delay * self.jitter_ratio)
        return float(delay)


class CircuitState(str, Enum):
    closed = "closed"
    open = "open"
    half_open = "half-open"


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        *,
        failure_threshold: int = 5,
        cooldown_ms: int = 60000,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.name = name
        self.failure_threshold = max(1, failure_threshold)
        self.cooldown_ms = cooldown_ms
        self._clock = clock
        self._lock = Lock()
        self._state = CircuitState.closed
        self._consecutive_failures = 0
        self._opened_at_ms: Optional[int] = None
        self._trial_in_flight = False

    def _refresh(self) -> None:
        if (
            self._state == CircuitState.open
            and self._opened_at_ms is not None
            and self._clock() - self._opened_at_ms >= self.cooldown_ms
        ):
            self._state = CircuitState.half_open
            self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._refresh()
            return self._state

    @property
    def consecutive_failures(self) -> int:
        with self._lock:
            return self._consecutive_failures

    def allow_request(self) -> bool:
        with self._lock:
            self._refresh()
            if self._state == CircuitState.closed:
                return True
            if self._state == CircuitState.open:
                return False
            if self._trial_in_flight:
                return False
            self._trial_in_flight = True
            return True

    def record_success(self) -> None:
        with self._lock:
            if self._state != CircuitState.closed:
                logger.info("circuit_closed dependency=%s", self.name)
            self._state = CircuitState.closed
            self._consecutive_failures = 0
            self._opened_at_ms = None
            self._trial_in_flight = False

    def record_failure(self) -> None:
        with self._lock:
            self._consecutive_failures += 1
            self._trial_in_flight = False
            if self._state == CircuitState.half_open or (
                self._state == CircuitState.closed
                and self._consecutive_failures >= self.failure_threshold
            ):
                self._state = CircuitState.open
                self._opened_at_ms = self._clock()
                logger.warning(
                    "circuit_opened dependency=%s consecutive_failures=%s cooldown_ms=%s",
                    self.name,
                    self._consecutive_failures,
                    self.cooldown_ms,
                )

    def release_trial(self) -> None:
        with self._lock:
            self._trial_in_flight = False

    def reset(self) -> None:
        with self._lock:
            self._state = CircuitState.closed
            self._consecutive_failures = 0
            self._opened_at_ms = None
            self._trial_in_flight = False

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            self._refresh()
            return {
                "state": self._state.value,
                "consecutive_failures": self._consecutive_failures,
                "opened_at_ms": self._opened_at_ms,
                "cooldown_ms": self.cooldown_ms,
            }


class ResilienceWrapper:
    """Runs remote calls under a retry policy and a per-dependency circuit breaker."""

    def __init__(
        self,
        *,
        default_policy: Optional[RetryPolicy] = None,
        failure_threshold: int = 5,
        cooldown_ms: int = 60000,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.default_policy = default_policy or RetryPolicy()
        self.failure_threshold = failure_threshold
        self.cooldown_ms = cooldown_ms
        self._sleep = sleep
        self._clock = clock
        self._lock = Lock()
        self._breakers: dict[str, CircuitBreaker] = {}
        self._reset_counters()

    def _reset_counters(self) -> None:
        self._total_calls = 0
        self._failed_calls = 0
        self._total_retries = 0
        self._successful_retries = 0
        self._failed_retries = 0
        self._circuit_open_rejections = 0
        self._errors_by_type: dict[str, int] = {}
        self._last_error: Optional[str] = None
        self._last_error_at_ms: Optional[int] = None

    def breaker(self, dependency: str) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(dependency)
            if breaker is None:
                breaker = CircuitBreaker(
                    dependency,
                    failure_threshold=self.failure_threshold,
                    cooldown_ms=self.cooldown_ms,
                    clock=self._clock,
                )
                self._breakers[dependency] = breaker
            return breaker

    def _record_error(self, exc: BaseException) -> None:
        with self._lock:
            self._failed_calls += 1
            name = type(exc).__name__
            self._errors_by_type[name] = self._errors_by_type.get(name, 0) + 1
            self._last_error = f"{name}: {exc}"
            self._last_error_at_ms = self._clock()

    def execute_with_retry(
        self,
        operation: Callable[[], T],
        label: str,
        policy: Optional[RetryPolicy] = None,
        *,
        dependency: str = "default",
    ) -> T:
        active_policy = policy or self.default_policy
        breaker = self.breaker(dependency)
        attempts = 0
        while True:
            if not breaker.allow_request():
                with self._lock:
                    self._circuit_open_rejections += 1
                logger.warning(
                    "circuit_rejected label=%s dependency=%s attempts=%s",
                    label,
                    dependency,
                    attempts,
                )
                raise CircuitOpenError(label=label, dependency=dependency)

            attempts += 1
            with self._lock:
                self._total_calls += 1
            try:
                result = operation()
            except Exception as exc:
                self._record_error(exc)
                if not is_retryable_error(exc):
                    # a failed half-open trial reopens the circuit whatever the error
                    if breaker.state == CircuitState.half_open:
                        breaker.record_failure()
                    else:
                        breaker.release_trial()
                    logger.warning(
                        "operation_failed label=%s dependency=%s attempts=%s retryable=false error=%s",
                        label,
                        dependency,
                        attempts,
                        exc,
                    )
                    raise
                breaker.record_failure()
                if attempts > active_policy.max_retries:
                    with self._lock:
                        self._failed_retries += 1
                    logger.error(
                        "operation_exhausted label=%s dependency=%s attempts=%s error=%s",
                        label,
                        dependency,
                        attempts,
                        exc,
                    )
                    raise RetryExhaustedError(
                        label=label, attempts=attempts, last_error=exc
                    ) from exc
                delay_ms = active_policy.delay_ms(attempts - 1)
                with self._lock:
                    self._total_retries += 1
                logger.warning(
                    "operation_retry label=%s dependency=%s attempt=%s delay_ms=%.0f error=%s",
                    label,
                    dependency,
                    attempts,
                    delay_ms,
                    exc,
                )
                self._sleep(delay_ms / 1000.0)
                continue

            breaker.record_success()
            if attempts > 1:
                with self._lock:
                    self._successful_retries += 1
            return result

    def error_rate(self) -> float:
        with self._lock:
            return self._failed_calls / self._total_calls if self._total_calls else 0.0

    def circuit_breaker_state(self) -> CircuitState:
        with self._lock:
            breakers = list(self._breakers.values())
        states = {breaker.state for breaker in breakers}
        if CircuitState.open in states:
            return CircuitState.open
        if CircuitState.half_open in states:
            return CircuitState.half_open
        return CircuitState.closed

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            breakers = dict(self._breakers)
            stats = {
                "total_calls": self._total_calls,
                "failed_calls": self._failed_calls,
                "total_retries": self._total_retries,
                "successful_retries": self._successful_retries,
                "failed_retries": self._failed_retries,
                "circuit_open_rejections": self._circuit_open_rejections,
                "errors_by_type": dict(self._errors_by_type),
                "last_error": self._last_error,
                "last_error_at_ms": self._last_error_at_ms,
            }
        snapshots = {name: breaker.snapshot() for name, breaker in sorted(breakers.items())}
        stats["error_rate"] = round(self.error_rate(), 4)
        stats["circuit_breakers"] = snapshots
        stats["circuit_breaker_state"] = self.circuit_breaker_state().value
        stats["consecutive_failures"] = max(
            (item["consecutive_failures"] for item in snapshots.values()), default=0
        )
        return stats

    def reset_stats(self) -> None:
        with self._lock:
            self._reset_counters()
            breakers = list(self._breakers.values())
        for breaker in breakers:
            breaker.reset()
        logger.info("resilience_stats_reset breakers=%s", len(breakers))

    def perform_health_check(
        self, probes: Optional[Mapping[str, Callable[[], Optional[str]]]] = None
    ) -> HealthReport:
        """Probe each dependency and fold breaker state into one verdict.

        A probe returns None when healthy or a warning string when degraded.
        ConfigurationError marks the dependency critical; any other exception
        from the probe is reported as degraded.
        """
        services: dict[str, ServiceHealth] = {}
        recommendations: list[str] = []
        with self._lock:
            breakers = dict(self._breakers)

        for name in sorted(set(probes or {}) | set(breakers)):
            verdict = HealthVerdict.healthy
            detail: Optional[str] = None
            probe = (probes or {}).get(name)
            if probe is not None:
                try:
                    warning = probe()
                except ConfigurationError as exc:
                    verdict = HealthVerdict.critical
                    detail = str(exc)
                    recommendations.append(f"fix {name} configuration: {exc}")
                except Exception as exc:
                    verdict = HealthVerdict.degraded
                    detail = f"health probe failed: {exc}"
                    recommendations.append(f"check {name} connectivity")
                    logger.warning("health_probe_failed dependency=%s error=%s", name, exc)
                else:
                    if warning:
                        verdict = HealthVerdict.degraded
                        detail = warning
                        recommendations.append(f"{name}: {warning}")

            circuit_state: Optional[str] = None
            breaker = breakers.get(name)
            if breaker is not None:
                state = breaker.state
                circuit_state = state.value
                if state == CircuitState.open:
                    verdict = HealthVerdict.critical
                    recommendations.append(
                        f"{name} circuit is open; check the remote service before the cooldown ends"
                    )
                elif state == CircuitState.half_open:
                    verdict = worst_verdict(verdict, HealthVerdict.degraded)
            services[name] = ServiceHealth(status=verdict, circuit_state=circuit_state, detail=detail)

        with self._lock:
            total_calls = self._total_calls
        error_rate = self.error_rate()
        network = HealthVerdict.healthy
        network_detail: Optional[str] = None
        if self.circuit_breaker_state() == CircuitState.open:
            network = HealthVerdict.critical
            network_detail = "at least one circuit breaker is open"
        elif total_calls >= MIN_CALLS_FOR_ERROR_RATE and error_rate > HIGH_ERROR_RATE:
            network = HealthVerdict.degraded
            network_detail = f"error rate {error_rate:.0%}"
            recommendations.append("more than half of remote calls fail; review network and quotas")
        services["network"] = ServiceHealth(status=network, detail=network_detail)

        overall = worst_verdict(*(item.status for item in services.values()))
        return HealthReport(
            overall=overall,
            services=services,
            recommendations=recommendations,
            checked_at_ms=self._clock(),
        )
