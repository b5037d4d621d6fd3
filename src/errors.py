"""Error types raised across the interpret/act pipeline."""
from __future__ import annotations

from typing import Optional


class AssistantError(Exception):
    """Base class; ``status_code`` is the HTTP status the API maps it to."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class TenantIsolationViolation(AssistantError):
    """Missing tenant scope or cross-tenant data. Fatal, never retried."""

    status_code = 403


class NoMatchFound(AssistantError):
    status_code = 404

    def __init__(self, message: str, suggestion: Optional[str] = None) -> None:
        super().__init__(message)
        self.suggestion = suggestion or "Try rephrasing with the exact title of the item."


class InterpretNotFound(AssistantError):
    status_code = 404


class RateLimitExceeded(AssistantError):
    status_code = 429

    def __init__(self, resource: str, retry_after_seconds: float) -> None:
        super().__init__(f"Rate limit exceeded for '{resource}'")
        self.resource = resource
        self.retry_after_seconds = retry_after_seconds


class ValidationError(AssistantError):
    status_code = 422


class DownstreamServiceError(AssistantError):
    """A port call failed. Recorded per step, never raised to the client."""

    status_code = 502

    def __init__(self, service: str, message: str) -> None:
        super().__init__(f"{service}: {message}")
        self.service = service


class TransientDownstreamError(DownstreamServiceError):
    """Timeouts, connection failures and 5xx. Only idempotent steps retry these."""


class IdempotencyConflict(AssistantError):
    """An act entry with this idempotency key was already recorded for the tenant."""

    status_code = 409
