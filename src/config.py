"""Centralized configuration management for the sprint assistant."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional


def _env_float(name: str, default: str) -> float:
    return float(os.getenv(name, default))


@dataclass
class LLMConfig:
    """Configuration for the completion and embedding provider."""

    model: str = "gpt-4o-mini"
    embedding_model: str = "text-embedding-3-small"
    temperature: float = 0.0
    timeout: float = 6.0
    max_tokens: Optional[int] = 400
    enabled: bool = True

    @classmethod
    def from_env(cls) -> LLMConfig:
        """Load LLM configuration from environment variables."""
        return cls(
            model=os.getenv("LLM_MODEL", "gpt-4o-mini"),
            embedding_model=os.getenv("LLM_EMBEDDING_MODEL", "text-embedding-3-small"),
            temperature=_env_float("LLM_TEMPERATURE", "0.0"),
            timeout=_env_float("LLM_TIMEOUT", "6.0"),
            max_tokens=int(os.getenv("LLM_MAX_TOKENS")) if os.getenv("LLM_MAX_TOKENS") else 400,
            enabled=os.getenv("LLM_ENABLED", "true").lower() == "true",
        )


@dataclass
class RetrievalConfig:
    """Hybrid retrieval tuning."""

    embedder: str = "openai"
    embedding_dimensions: int = 256
    vector_top_k: int = 20
    lexical_top_k: int = 20
    max_candidates: int = 10
    both_hit_bonus: float = 0.05
    recency_weight: float = 0.1
    recency_half_life_days: float = 14.0
    exact_match_boost: float = 0.2
    retrieval_timeout: float = 2.0
    vector_store_location: str = ":memory:"
    vector_collection: str = "sprint_entities"
    embedding_cache_size: int = 10_000

    @classmethod
    def from_env(cls) -> RetrievalConfig:
        return cls(
            embedder=os.getenv("EMBEDDER", "openai"),
            embedding_dimensions=int(os.getenv("EMBEDDING_DIMENSIONS", "256")),
            vector_top_k=int(os.getenv("VECTOR_TOP_K", "20")),
            lexical_top_k=int(os.getenv("LEXICAL_TOP_K", "20")),
            max_candidates=int(os.getenv("MAX_CANDIDATES", "10")),
            both_hit_bonus=_env_float("BOTH_HIT_BONUS", "0.05"),
            recency_weight=_env_float("RECENCY_WEIGHT", "0.1"),
            recency_half_life_days=_env_float("RECENCY_HALF_LIFE_DAYS", "14"),
            exact_match_boost=_env_float("EXACT_MATCH_BOOST", "0.2"),
            retrieval_timeout=_env_float("RETRIEVAL_TIMEOUT", "2.0"),
            vector_store_location=os.getenv("QDRANT_URL", ":memory:"),
            vector_collection=os.getenv("QDRANT_COLLECTION", "sprint_entities"),
            embedding_cache_size=int(os.getenv("EMBEDDING_CACHE_SIZE", "10000")),
        )


@dataclass
class DisambiguationConfig:
    """Thresholds for the disambiguation policy. Tunable, not assumptions."""

    auto_accept_threshold: float = 0.85
    margin_threshold: float = 0.25
    min_threshold: float = 0.35
    shortlist_size: int = 3

    @classmethod
    def from_env(cls) -> DisambiguationConfig:
        return cls(
            auto_accept_threshold=_env_float("AUTO_ACCEPT_THRESHOLD", "0.85"),
            margin_threshold=_env_float("MARGIN_THRESHOLD", "0.25"),
            min_threshold=_env_float("MIN_THRESHOLD", "0.35"),
            shortlist_size=int(os.getenv("SHORTLIST_SIZE", "3")),
        )


@dataclass
class RateLimitConfig:
    interpret_capacity: float = 30.0
    interpret_refill_per_second: float = 0.5
    act_capacity: float = 10.0
    act_refill_per_second: float = 0.1

    @classmethod
    def from_env(cls) -> RateLimitConfig:
        return cls(
            interpret_capacity=_env_float("RATE_INTERPRET_CAPACITY", "30"),
            interpret_refill_per_second=_env_float("RATE_INTERPRET_REFILL", "0.5"),
            act_capacity=_env_float("RATE_ACT_CAPACITY", "10"),
            act_refill_per_second=_env_float("RATE_ACT_REFILL", "0.1"),
        )


@dataclass
class OrchestratorConfig:
    request_timeout: float = 9.0
    step_timeout: float = 5.0
    max_workers: int = 8

    @classmethod
    def from_env(cls) -> OrchestratorConfig:
        return cls(
            request_timeout=_env_float("REQUEST_TIMEOUT", "9.0"),
            step_timeout=_env_float("STEP_TIMEOUT", "5.0"),
            max_workers=int(os.getenv("ORCHESTRATOR_MAX_WORKERS", "8")),
        )


@dataclass
class ServicesConfig:
    """Base URLs of the downstream services reached through ports."""

    story_url: str = "http://localhost:8081"
    task_url: str = "http://localhost:8081"
    sprint_url: str = "http://localhost:8082"
    notification_url: str = "http://localhost:8083"

    @classmethod
    def from_env(cls) -> ServicesConfig:
        return cls(
            story_url=os.getenv("STORY_SERVICE_URL", "http://localhost:8081"),
            task_url=os.getenv("TASK_SERVICE_URL", "http://localhost:8081"),
            sprint_url=os.getenv("SPRINT_SERVICE_URL", "http://localhost:8082"),
            notification_url=os.getenv("NOTIFICATION_SERVICE_URL", "http://localhost:8083"),
        )


@dataclass
class StorageConfig:
    database_url: str = "sqlite:///assistant.db"
    echo: bool = False

    @classmethod
    def from_env(cls) -> StorageConfig:
        return cls(
            database_url=os.getenv("DATABASE_URL", "sqlite:///assistant.db"),
            echo=os.getenv("DATABASE_ECHO", "false").lower() == "true",
        )


@dataclass
class LoggingConfig:
    """Configuration for logging."""

    log_level: str = "INFO"
    log_path: Path = field(default_factory=lambda: Path("logs/assistant.log"))
    json_format: bool = True
    console_output: bool = True

    @classmethod
    def from_env(cls) -> LoggingConfig:
        """Load logging configuration from environment variables."""
        base_dir = Path(__file__).resolve().parent.parent
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_path=Path(os.getenv("LOG_PATH", base_dir / "logs" / "assistant.log")),
            json_format=os.getenv("LOG_JSON_FORMAT", "true").lower() == "true",
            console_output=os.getenv("LOG_CONSOLE", "true").lower() == "true",
        )


@dataclass
class AppConfig:
    """Main application configuration."""

    llm: LLMConfig = field(default_factory=LLMConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    disambiguation: DisambiguationConfig = field(default_factory=DisambiguationConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    services: ServicesConfig = field(default_factory=ServicesConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    policy_path: Optional[Path] = None
    environment: str = "production"

    @classmethod
    def from_env(cls) -> AppConfig:
        """Load complete configuration from environment variables."""
        policy_path = os.getenv("POLICY_PATH")
        return cls(
            llm=LLMConfig.from_env(),
            retrieval=RetrievalConfig.from_env(),
            disambiguation=DisambiguationConfig.from_env(),
            rate_limit=RateLimitConfig.from_env(),
            orchestrator=OrchestratorConfig.from_env(),
            services=ServicesConfig.from_env(),
            storage=StorageConfig.from_env(),
            logging=LoggingConfig.from_env(),
            policy_path=Path(policy_path) if policy_path else None,
            environment=os.getenv("ENVIRONMENT", "production"),
        )

    def validate(self) -> None:
        """Validate configuration values."""
        if self.policy_path is not None and not self.policy_path.exists():
            raise FileNotFoundError(f"Policy file not found: {self.policy_path}")

        if not 0 <= self.llm.temperature <= 2:
            raise ValueError(f"Invalid LLM temperature: {self.llm.temperature}")

        d = self.disambiguation
        for name in ("auto_accept_threshold", "margin_threshold", "min_threshold"):
            value = getattr(d, name)
            if not 0 <= value <= 1:
                raise ValueError(f"Invalid {name}: {value}")
        if d.min_threshold > d.auto_accept_threshold:
            raise ValueError("min_threshold must not exceed auto_accept_threshold")

        if self.retrieval.embedder not in ("openai", "hashing"):
            raise ValueError(f"Unknown embedder: {self.retrieval.embedder}")
        if self.retrieval.embedding_cache_size < 1:
            raise ValueError("EMBEDDING_CACHE_SIZE must be at least 1")

        rl = self.rate_limit
        if min(rl.interpret_capacity, rl.act_capacity) <= 0:
            raise ValueError("Rate limit capacity must be positive")
        if min(rl.interpret_refill_per_second, rl.act_refill_per_second) < 0:
            raise ValueError("Rate limit refill rate must not be negative")

        if self.orchestrator.step_timeout <= 0 or self.orchestrator.request_timeout <= 0:
            raise ValueError("Timeouts must be positive")
