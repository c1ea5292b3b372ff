"""Aggregate health reporting for the /api/health endpoint.

Combines a storage liveness probe with the state of the monitored
provider circuit breakers.  Everything here is read-only: breakers are
looked up without being created, and no probe failure ever escapes
``check_health()``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Protocol

from src.models.schemas import DatabaseCheck, HealthResponse, ServiceCheck
from src.resilience.circuit_breaker import CircuitBreakerRegistry, CircuitState

logger = logging.getLogger(__name__)


class StorageProbe(Protocol):
    async def ping(self) -> float: ...


class HealthReporter:
    """Point-in-time health snapshot builder.

    Args:
        registry:           Breaker registry shared with the provider clients.
        database:           Storage probe, or ``None`` when no database is configured.
        monitored_services: Breaker names reported under ``checks``.
        version:            Service version echoed in the payload.
        probe_timeout:      Seconds the storage probe may take before it counts as failed.
    """

    def __init__(
        self,
        registry: CircuitBreakerRegistry,
        database: StorageProbe | None,
        monitored_services: Sequence[str] = ("anthropic",),
        version: str = "1.0.0",
        probe_timeout: float = 5.0,
    ) -> None:
        self._registry = registry
        self._database = database
        self._monitored = list(monitored_services)
        self._version = version
        self._probe_timeout = probe_timeout

    async def check_health(self) -> HealthResponse:
        """Probe storage and breakers; overall status is the worst of the checks."""
        database = await self._check_database()
        checks: dict[str, DatabaseCheck | ServiceCheck] = {"database": database}
        for name in self._monitored:
            checks[name] = self._check_service(name)

        if database.status == "unhealthy":
            status = "unhealthy"
        elif any(isinstance(c, ServiceCheck) and c.status == "degraded" for c in checks.values()):
            status = "degraded"
        else:
            status = "healthy"

        return HealthResponse(
            status=status,
            timestamp=datetime.now(UTC).isoformat(),
            version=self._version,
            checks=checks,
        )

    async def _check_database(self) -> DatabaseCheck:
        if self._database is None:
            return DatabaseCheck(status="unhealthy", error="Database not configured")
        try:
            latency = await asyncio.wait_for(self._database.ping(), timeout=self._probe_timeout)
        except asyncio.TimeoutError:
            logger.warning("Database health probe timed out after %.1fs", self._probe_timeout)
            return DatabaseCheck(status="unhealthy", error=f"Probe timed out after {self._probe_timeout}s")
        except Exception as exc:
            logger.warning("Database health probe failed: %s", exc)
            return DatabaseCheck(status="unhealthy", error=str(exc) or type(exc).__name__)
        return DatabaseCheck(status="healthy", latency_ms=latency)

    def _check_service(self, name: str) -> ServiceCheck:
        try:
            breaker = self._registry.get(name)
        except Exception:
            logger.exception("Could not read circuit breaker %s", name)
            breaker = None
        if breaker is None:
            return ServiceCheck(status="healthy", circuit_state="not_initialized")
        state = breaker.state
        return ServiceCheck(
            status="healthy" if state is CircuitState.CLOSED else "degraded",
            circuit_state=state.value,
        )
