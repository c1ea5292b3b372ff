"""Resilience patterns: circuit breakers for external provider calls.

Provides per-service circuit breakers with call deadlines and half-open
recovery, plus the registry that owns them for the process lifetime.
"""

from src.resilience.circuit_breaker import (
    BreakerConfig,
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitState,
)

__all__ = [
    "BreakerConfig",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitState",
]
