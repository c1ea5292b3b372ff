"""Pydantic models for the health payload and provider client results.

Health models serialize with the camelCase keys the web front end reads
(``latencyMs``, ``circuitState``); build them with field names and dump
with ``by_alias=True``.
"""

from __future__ import annotations

import unicodedata
from typing import Literal

from pydantic import BaseModel, Field, field_validator

# ── Health ──────────────────────────────────────────────────────────────


class DatabaseCheck(BaseModel):
    """Result of the storage liveness probe."""

    status: Literal["healthy", "unhealthy"]
    latency_ms: float | None = Field(default=None, serialization_alias="latencyMs")
    error: str | None = None


class ServiceCheck(BaseModel):
    """Breaker-derived status of one monitored provider."""

    status: Literal["healthy", "degraded"]
    circuit_state: Literal["closed", "open", "half-open", "not_initialized"] = Field(
        serialization_alias="circuitState",
    )


class HealthResponse(BaseModel):
    """Response model for GET /api/health."""

    status: Literal["healthy", "degraded", "unhealthy"]
    timestamp: str
    version: str
    checks: dict[str, DatabaseCheck | ServiceCheck]

    def to_payload(self) -> dict:
        """JSON body with camelCase keys and unset optionals omitted."""
        return self.model_dump(by_alias=True, exclude_none=True)


# ── LLM client ──────────────────────────────────────────────────────────


class ChatMessage(BaseModel):
    """One turn of a persona conversation."""

    role: Literal["user", "assistant"]
    content: str = Field(..., min_length=1, max_length=20000)

    @field_validator("content", mode="before")
    @classmethod
    def sanitize_content(cls, v: str) -> str:
        # Null bytes stripped, NFC normalized
        if isinstance(v, str):
            return unicodedata.normalize("NFC", v.replace("\x00", ""))
        return v


class PersonaReply(BaseModel):
    """Answer from the persona, with optional visible reasoning."""

    message: str
    thinking: str | None = None
    tokens_used: int = 0


# ── SMS client ──────────────────────────────────────────────────────────


class SmsResult(BaseModel):
    """Outcome of an SMS send."""

    success: bool
    message_id: str | None = None
    error: str | None = None
