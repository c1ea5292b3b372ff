"""Async circuit breaker guarding calls to external providers.

Implements the standard three-state circuit breaker:

    CLOSED    →  (error_threshold consecutive failures)  →  OPEN
    OPEN      →  (reset_timeout_ms elapsed, one caller)  →  HALF_OPEN
    HALF_OPEN →  (trial succeeds)                        →  CLOSED
    HALF_OPEN →  (trial fails)                           →  OPEN

Each provider (``anthropic``, ``twilio``, ...) gets its own
``CircuitBreaker`` via ``CircuitBreakerRegistry``.  The registry is built
once at application start and injected wherever a breaker is needed.

Deadlines are enforced by abandonment: the operation runs as its own task,
and when ``timeout_ms`` expires the breaker records the failure, cancels
the task as a best effort and stops waiting.  Whatever the task produces
afterwards is drained and logged, never counted.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import asdict, dataclass, fields, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any, TypeVar

from src.core.errors import BreakerOpenError, OperationTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# (name, old_state, new_state)
StateListener = Callable[[str, "CircuitState", "CircuitState"], Any]


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


@dataclass(frozen=True)
class BreakerConfig:
    """Immutable per-breaker configuration.

    Attributes:
        timeout_ms:       Deadline for a single guarded call.
        error_threshold:  Consecutive failures that open the circuit.
        reset_timeout_ms: Time the circuit stays OPEN before a trial call.
    """

    timeout_ms: int = 10000
    error_threshold: int = 5
    reset_timeout_ms: int = 30000

    def __post_init__(self) -> None:
        if self.timeout_ms <= 0:
            raise ValueError(f"timeout_ms must be positive, got {self.timeout_ms}")
        if self.error_threshold < 1:
            raise ValueError(f"error_threshold must be at least 1, got {self.error_threshold}")
        if self.reset_timeout_ms < 0:
            raise ValueError(f"reset_timeout_ms must not be negative, got {self.reset_timeout_ms}")

    def merged(self, overrides: Mapping[str, Any] | None) -> BreakerConfig:
        """Return a copy with *overrides* applied; unknown keys raise ``ValueError``."""
        if not overrides:
            return self
        known = {f.name for f in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise ValueError(f"Unknown circuit breaker option(s): {', '.join(sorted(unknown))}")
        return replace(self, **dict(overrides))


class CircuitBreaker:
    """Async-safe circuit breaker for a single named service.

    Args:
        name:   Service name (for logging, lookup and errors).
        config: Thresholds and deadlines; defaults to ``BreakerConfig()``.
        clock:  Monotonic clock in seconds, injectable for tests.
    """

    def __init__(
        self,
        name: str,
        config: BreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._name = name
        self._config = config or BreakerConfig()
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: float | None = None
        self._last_failure_at: datetime | None = None
        self._trial_in_flight = False
        self._generation = 0  # bumped by reset(); stale trials compare against it
        self._lock = asyncio.Lock()
        self._listeners: list[StateListener] = []

        # Metrics
        self.total_calls = 0
        self.total_successes = 0
        self.total_failures = 0
        self.total_timeouts = 0
        self.total_rejections = 0

    # ── Public properties ────────────────────────────────────────────

    @property
    def name(self) -> str:
        return self._name

    @property
    def config(self) -> BreakerConfig:
        return self._config

    @property
    def state(self) -> CircuitState:
        """Current state as last recorded; OPEN → HALF_OPEN happens on the next call."""
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def last_failure_time(self) -> float | None:
        """Monotonic timestamp of the latest failure, ``None`` since the last reset."""
        return self._last_failure_time

    @property
    def last_failure_at(self) -> datetime | None:
        return self._last_failure_at

    def add_listener(self, listener: StateListener) -> None:
        """Register a callback invoked on every state transition."""
        self._listeners.append(listener)

    # ── Core call wrapper ────────────────────────────────────────────

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run *operation* under the breaker.

        Raises:
            BreakerOpenError: The circuit is open (operation not invoked).
            OperationTimeoutError: The operation exceeded ``timeout_ms``.
            Exception: Whatever the operation itself raised.
        """
        trial = await self._admit()

        async def _invoke() -> T:
            return await operation()

        task = asyncio.ensure_future(_invoke())
        try:
            done, _ = await asyncio.wait({task}, timeout=self._config.timeout_ms / 1000)
        except asyncio.CancelledError:
            task.cancel()
            await self._release(trial)
            raise

        if not done:
            self._abandon(task)
            await self._on_failure(trial, timed_out=True, error=None)
            raise OperationTimeoutError(self._name, self._config.timeout_ms)

        if task.cancelled():
            await self._on_failure(trial, timed_out=False, error=None)
            raise asyncio.CancelledError()

        error = task.exception()
        if error is not None:
            await self._on_failure(trial, timed_out=False, error=error)
            raise error

        await self._on_success(trial)
        return task.result()

    async def reset(self) -> None:
        """Force the breaker back to CLOSED with a zeroed failure count."""
        async with self._lock:
            old = self._state
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._last_failure_time = None
            self._last_failure_at = None
            self._trial_in_flight = False
            self._generation += 1
            if old is not CircuitState.CLOSED:
                self._transition_logged(old, CircuitState.CLOSED)

    def snapshot(self) -> dict:
        """Return a JSON-serializable snapshot for health/metrics."""
        return {
            "name": self._name,
            "state": self._state.value,
            "failure_count": self._failure_count,
            "last_failure_at": self._last_failure_at.isoformat() if self._last_failure_at else None,
            "config": asdict(self._config),
            "total_calls": self.total_calls,
            "total_successes": self.total_successes,
            "total_failures": self.total_failures,
            "total_timeouts": self.total_timeouts,
            "total_rejections": self.total_rejections,
        }

    # ── Bookkeeping (always under the lock) ──────────────────────────

    async def _admit(self) -> int | None:
        """Decide whether a call may proceed.

        Returns the current reset generation when the caller holds the single
        half-open trial slot, otherwise ``None``.
        """
        async with self._lock:
            if self._state is CircuitState.OPEN:
                elapsed_ms = (self._clock() - (self._last_failure_time or 0.0)) * 1000
                if elapsed_ms < self._config.reset_timeout_ms:
                    self.total_rejections += 1
                    retry_after = (self._config.reset_timeout_ms - elapsed_ms) / 1000
                    logger.warning("Circuit breaker %s is open, rejecting call", self._name)
                    raise BreakerOpenError(self._name, retry_after)
                self._transition(CircuitState.HALF_OPEN)

            if self._state is CircuitState.HALF_OPEN:
                if self._trial_in_flight:
                    self.total_rejections += 1
                    logger.warning("Circuit breaker %s trial in flight, rejecting call", self._name)
                    raise BreakerOpenError(self._name, 0.0)
                self._trial_in_flight = True
                self.total_calls += 1
                return self._generation

            self.total_calls += 1
            return None

    def _holds_trial(self, trial: int | None) -> bool:
        """True while *trial* is still the live half-open trial (not superseded by reset)."""
        return trial == self._generation and self._state is CircuitState.HALF_OPEN and self._trial_in_flight

    async def _release(self, trial: int | None) -> None:
        """Give back the trial slot of a caller that was cancelled."""
        if trial is None:
            return
        async with self._lock:
            if self._holds_trial(trial):
                self._trial_in_flight = False

    async def _on_success(self, trial: int | None) -> None:
        async with self._lock:
            self.total_successes += 1
            if self._holds_trial(trial):
                self._trial_in_flight = False
                self._failure_count = 0
                self._last_failure_time = None
                self._last_failure_at = None
                self._transition(CircuitState.CLOSED)
            elif self._state is CircuitState.CLOSED:
                self._failure_count = 0
                self._last_failure_time = None
                self._last_failure_at = None
            else:
                # Admitted before the circuit opened; must not close it.
                logger.debug("Circuit breaker %s ignoring late success while %s", self._name, self._state.value)

    async def _on_failure(self, trial: int | None, *, timed_out: bool, error: BaseException | None) -> None:
        async with self._lock:
            self.total_failures += 1
            if timed_out:
                self.total_timeouts += 1
            self._failure_count += 1
            self._last_failure_time = self._clock()
            self._last_failure_at = datetime.now(UTC)

            reason = "timeout" if timed_out else repr(error)
            logger.error(
                "Circuit breaker %s failure %d/%d: %s",
                self._name,
                self._failure_count,
                self._config.error_threshold,
                reason,
            )

            if self._holds_trial(trial):
                self._trial_in_flight = False
                self._transition(CircuitState.OPEN)
            elif self._state is CircuitState.CLOSED and self._failure_count >= self._config.error_threshold:
                self._transition(CircuitState.OPEN)

    def _transition(self, new_state: CircuitState) -> None:
        old = self._state
        if old is new_state:
            return
        self._state = new_state
        self._transition_logged(old, new_state)

    def _transition_logged(self, old: CircuitState, new: CircuitState) -> None:
        if new is CircuitState.OPEN:
            logger.error("Circuit breaker %s opened (%s -> %s)", self._name, old.value, new.value)
        else:
            logger.info("Circuit breaker %s %s -> %s", self._name, old.value, new.value)
        for listener in self._listeners:
            try:
                listener(self._name, old, new)
            except Exception:
                logger.exception("Circuit breaker %s state listener failed", self._name)

    def _abandon(self, task: asyncio.Future) -> None:
        """Cancel a timed-out task and drain its eventual outcome."""
        task.cancel()

        def _drain(fut: asyncio.Future) -> None:
            if fut.cancelled():
                return
            exc = fut.exception()
            if exc is not None:
                logger.debug("Circuit breaker %s abandoned call failed late: %r", self._name, exc)
            else:
                logger.debug("Circuit breaker %s discarded late result", self._name)

        task.add_done_callback(_drain)


class CircuitBreakerRegistry:
    """Process-wide owner of per-service ``CircuitBreaker`` instances.

    Configuration precedence for a new breaker is
    ``defaults`` < caller-supplied config < per-name ``overrides``.
    The first caller to materialize a breaker fixes its configuration;
    later callers asking for something different get a warning.

    Usage::

        registry = CircuitBreakerRegistry.from_settings(settings)
        cb = registry.get_or_create("anthropic", {"timeout_ms": 30000})
        reply = await cb.execute(lambda: client.post(...))
    """

    def __init__(
        self,
        defaults: BreakerConfig | None = None,
        overrides: Mapping[str, Mapping[str, Any]] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._defaults = defaults or BreakerConfig()
        self._overrides = {name: dict(opts) for name, opts in (overrides or {}).items()}
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}
        self._listeners: list[StateListener] = []
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings) -> CircuitBreakerRegistry:
        """Build a registry from ``Settings`` breaker defaults and overrides."""
        defaults = BreakerConfig(
            timeout_ms=settings.CIRCUIT_BREAKER_TIMEOUT_MS,
            error_threshold=settings.CIRCUIT_BREAKER_THRESHOLD,
            reset_timeout_ms=settings.CIRCUIT_BREAKER_RESET_TIMEOUT_MS,
        )
        return cls(defaults=defaults, overrides=settings.CIRCUIT_BREAKER_OVERRIDES)

    def _resolve(self, name: str, config: BreakerConfig | Mapping[str, Any] | None) -> BreakerConfig:
        if isinstance(config, BreakerConfig):
            base = config
        else:
            base = self._defaults.merged(config)
        return base.merged(self._overrides.get(name))

    def get_or_create(
        self,
        name: str,
        config: BreakerConfig | Mapping[str, Any] | None = None,
    ) -> CircuitBreaker:
        """Return (or create) the circuit breaker for *name*."""
        requested = self._resolve(name, config)
        with self._lock:
            breaker = self._breakers.get(name)
            if breaker is None:
                breaker = CircuitBreaker(name, requested, clock=self._clock)
                for listener in self._listeners:
                    breaker.add_listener(listener)
                self._breakers[name] = breaker
                logger.info("Circuit breaker %s created with %s", name, requested)
                return breaker

        if config is not None and breaker.config != requested:
            logger.warning(
                "Circuit breaker %s already configured with %s; ignoring requested %s",
                name,
                breaker.config,
                requested,
            )
        return breaker

    def get(self, name: str) -> CircuitBreaker | None:
        """Return the breaker for *name* if one exists; never creates."""
        with self._lock:
            return self._breakers.get(name)

    def add_listener(self, listener: StateListener) -> None:
        """Register a state-change listener on current and future breakers."""
        with self._lock:
            self._listeners.append(listener)
            breakers = list(self._breakers.values())
        for breaker in breakers:
            breaker.add_listener(listener)

    @property
    def names(self) -> list[str]:
        with self._lock:
            return list(self._breakers)

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._breakers

    def __len__(self) -> int:
        with self._lock:
            return len(self._breakers)

    def all_snapshots(self) -> list[dict]:
        """Return snapshots for every registered breaker."""
        with self._lock:
            breakers = list(self._breakers.values())
        return [cb.snapshot() for cb in breakers]

    async def reset_all(self) -> None:
        """Reset every circuit breaker to CLOSED."""
        with self._lock:
            breakers = list(self._breakers.values())
        for cb in breakers:
            await cb.reset()
