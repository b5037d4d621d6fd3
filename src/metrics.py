"""Per-request metrics collection for the sprint assistant."""
from __future__ import annotations

import time
import uuid
from typing import Any, Dict


class RequestMetrics:
    def __init__(self, operation: str = "interpret") -> None:
        self.correlation_id = str(uuid.uuid4())
        self.operation = operation
        self.start_time = time.time()

        # LLM metrics
        self.llm_calls: int = 0
        self.tokens_prompt: int = 0
        self.tokens_completion: int = 0

        # Parser metrics
        self.parser_latency_ms: int = 0
        self.fallback_used: bool = False
        self.fallback_reason: str | None = None
        self.suspicious_input: bool = False

        # Retrieval metrics
        self.retrieval_latency_ms: int = 0
        self.vector_hits: int = 0
        self.lexical_hits: int = 0
        self.candidates_returned: int = 0
        self.embedding_cache_hit: bool = False

        # Decision metrics
        self.resolution_state: str | None = None
        self.risk_level: str | None = None

        # Execution metrics
        self.steps_total: int = 0
        self.steps_failed: int = 0
        self.compensations_attempted: int = 0
        self.execution_latency_ms: int = 0

        # End-to-end metrics
        self.total_latency_ms: int = 0

    @property
    def tokens_total(self) -> int:
        """Calculate total tokens as sum of prompt and completion tokens."""
        return self.tokens_prompt + self.tokens_completion

    def elapsed(self) -> float:
        return time.time() - self.start_time

    def finalize(self) -> Dict[str, Any]:
        """Finalize metrics and return as dictionary with computed fields."""
        self.total_latency_ms = int(self.elapsed() * 1000)
        result = self.__dict__.copy()
        result["tokens_total"] = self.tokens_total
        return result
