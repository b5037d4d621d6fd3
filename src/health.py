"""Health check utilities for monitoring system status."""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, Optional

import openai
from qdrant_client.http.exceptions import ResponseHandlingException, UnexpectedResponse
from sqlalchemy.exc import SQLAlchemyError

from logging_utils import logger
from storage import ping

if TYPE_CHECKING:
    from service import AssistantService


@dataclass
class HealthCheck:
    """Individual health check result."""

    name: str
    healthy: bool
    message: str
    latency_ms: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class HealthStatus:
    """Overall health status of the system."""

    healthy: bool
    checks: Dict[str, HealthCheck]
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "healthy": self.healthy,
            "timestamp": self.timestamp,
            "checks": {
                name: {
                    "healthy": check.healthy,
                    "message": check.message,
                    "latency_ms": check.latency_ms,
                    "metadata": check.metadata,
                }
                for name, check in self.checks.items()
            },
        }


def _elapsed_ms(start: float) -> int:
    return int((time.time() - start) * 1000)


def check_database(service: AssistantService) -> HealthCheck:
    """Check that the history/rate-limit database answers a trivial query."""
    start = time.time()
    if service.engine is None:
        return HealthCheck(
            name="database",
            healthy=True,
            message="In-memory stores, no database configured",
            latency_ms=_elapsed_ms(start),
        )
    try:
        ping(service.engine)
    except SQLAlchemyError as e:
        return HealthCheck(
            name="database",
            healthy=False,
            message=f"Database error: {str(e)[:100]}",
            latency_ms=_elapsed_ms(start),
        )
    return HealthCheck(
        name="database",
        healthy=True,
        message="Database is reachable",
        latency_ms=_elapsed_ms(start),
        metadata={"dialect": service.engine.dialect.name},
    )


def check_retrieval(service: AssistantService) -> HealthCheck:
    start = time.time()
    try:
        stats = service.retrieval.health_check()
    except (ResponseHandlingException, UnexpectedResponse) as e:
        return HealthCheck(
            name="retrieval",
            healthy=False,
            message=f"Vector store error: {str(e)[:100]}",
            latency_ms=_elapsed_ms(start),
        )
    return HealthCheck(
        name="retrieval",
        healthy=True,
        message="Indexes loaded",
        latency_ms=_elapsed_ms(start),
        metadata=stats,
    )


def check_llm_connection(service: AssistantService) -> HealthCheck:
    """Check if LLM API is reachable with a minimal test call."""
    start = time.time()
    config = service.config.llm
    if not config.enabled:
        return HealthCheck(name="llm_connection", healthy=True, message="LLM disabled, heuristic parser only")

    client = service.llm_client or openai
    try:
        # Minimal test call
        response = client.chat.completions.create(
            model=config.model,
            messages=[{"role": "user", "content": "ping"}],
            max_tokens=1,
            temperature=0,
            timeout=config.timeout,
        )
    except openai.OpenAIError as e:
        return HealthCheck(
            name="llm_connection",
            healthy=False,
            message=f"LLM API error: {str(e)[:100]}",
            latency_ms=_elapsed_ms(start),
        )

    if not response or not response.choices:
        return HealthCheck(
            name="llm_connection",
            healthy=False,
            message="LLM API returned invalid response",
            latency_ms=_elapsed_ms(start),
        )

    return HealthCheck(
        name="llm_connection",
        healthy=True,
        message="LLM API is reachable",
        latency_ms=_elapsed_ms(start),
        metadata={"model": config.model},
    )


def check_port(name: str, port: Any) -> HealthCheck:
    """Probe a downstream service's /health. Ports without a probe count as healthy."""
    start = time.time()
    probe = getattr(port, "health_check", None)
    if probe is None:
        return HealthCheck(name=f"port_{name}", healthy=True, message="No health probe for this port")
    healthy = probe()
    return HealthCheck(
        name=f"port_{name}",
        healthy=healthy,
        message=f"{name} service is reachable" if healthy else f"{name} service is unreachable",
        latency_ms=_elapsed_ms(start),
    )


def get_health_status(service: AssistantService, include_llm_check: bool = False) -> HealthStatus:
    """
    Get overall system health status.

    Args:
        service: The assembled assistant service
        include_llm_check: Whether to include LLM connectivity check (slower)

    Returns:
        HealthStatus with all check results
    """
    checks: Dict[str, HealthCheck] = {}

    checks["database"] = check_database(service)
    checks["retrieval"] = check_retrieval(service)
    ports = service.ports
    for name in ("story", "task", "sprint", "notification"):
        check = check_port(name, getattr(ports, name))
        checks[check.name] = check

    # Optionally check LLM (slower and may cost money)
    if include_llm_check:
        checks["llm_connection"] = check_llm_connection(service)

    # Overall health is True only if all checks pass
    overall_healthy = all(check.healthy for check in checks.values())
    if not overall_healthy:
        failing = [name for name, check in checks.items() if not check.healthy]
        logger.warning("Health check failing", extra={"extra": {"checks": failing}})

    return HealthStatus(healthy=overall_healthy, checks=checks)
