"""Circuit breaker guarding calls to flaky collaborators (storage, payment providers)."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional, TypeVar

from delguur.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(Exception):
    """Raised when a call is short-circuited because the breaker is open."""

    def __init__(self, name: str) -> None:
        super().__init__(f"circuit '{name}' is open")
        self.name = name


@dataclass(frozen=True, slots=True)
class BreakerConfig:
    failure_threshold: int = 3
    success_threshold: int = 2
    reset_timeout_seconds: float = 30.0


@dataclass
class CircuitBreaker:
    """Closed -> open after consecutive failures, half-open after the reset timeout.

    A half-open breaker lets trial calls through; `success_threshold` consecutive
    successes close it again and any failure re-opens it.
    """

    name: str
    config: BreakerConfig = field(default_factory=BreakerConfig)
    clock: Callable[[], float] = time.monotonic
    state: CircuitState = CircuitState.CLOSED
    failures: int = 0
    successes: int = 0
    opened_at: Optional[float] = None

    def _transition(self, state: CircuitState) -> None:
        if state is self.state:
            return
        previous = self.state
        self.state = state
        obs_metrics.inc_breaker_transition(self.name, state.value)
        log = logger.warning if state is CircuitState.OPEN else logger.info
        log(
            "circuit breaker state change",
            extra={"breaker": self.name, "from_state": previous.value, "to_state": state.value},
        )

    def allow_request(self) -> bool:
        if self.state is CircuitState.OPEN:
            assert self.opened_at is not None
            if self.clock() - self.opened_at >= self.config.reset_timeout_seconds:
                self.successes = 0
                self._transition(CircuitState.HALF_OPEN)
                return True
            return False
        return True

    def record_success(self) -> None:
        self.failures = 0
        if self.state is CircuitState.HALF_OPEN:
            self.successes += 1
            if self.successes >= self.config.success_threshold:
                self.successes = 0
                self.opened_at = None
                self._transition(CircuitState.CLOSED)

    def record_failure(self) -> None:
        self.successes = 0
        self.failures += 1
        if self.state is CircuitState.HALF_OPEN or self.failures >= self.config.failure_threshold:
            self.opened_at = self.clock()
            self._transition(CircuitState.OPEN)

    async def call(
        self,
        func: Callable[[], Awaitable[T]],
        *,
        failure_types: tuple[type[BaseException], ...] = (Exception,),
    ) -> T:
        """Run `func` through the breaker; raises CircuitOpenError while open."""
        if not self.allow_request():
            raise CircuitOpenError(self.name)
        try:
            result = await func()
        except failure_types:
            self.record_failure()
            raise
        self.record_success()
        return result

    def reset(self) -> None:
        self.failures = 0
        self.successes = 0
        self.opened_at = None
        self._transition(CircuitState.CLOSED)


@dataclass
class CircuitBreakerRegistry:
    """Owns named breakers so each service instance gets isolated state."""

    config: BreakerConfig = field(default_factory=BreakerConfig)
    clock: Callable[[], float] = time.monotonic
    _breakers: dict[str, CircuitBreaker] = field(default_factory=dict)

    def get(self, name: str) -> CircuitBreaker:
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(name=name, config=self.config, clock=self.clock)
            self._breakers[name] = breaker
        return breaker

    def is_available(self, name: str) -> bool:
        return self.get(name).allow_request()

    def snapshot(self) -> dict[str, str]:
        return {name: breaker.state.value for name, breaker in sorted(self._breakers.items())}
