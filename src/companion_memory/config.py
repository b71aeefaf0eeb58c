"""Companion memory configuration models and YAML loader."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from loguru import logger
from pydantic import BaseModel, Field, field_validator, model_validator

_ENV_PATTERN = re.compile(r"\$\{(\w+)\}")


def _default_api_key() -> str | None:
    return os.getenv("OPENAI_API_KEY")


class StorageConfig(BaseModel):
    """Storage paths configuration."""

    sqlite_db_path: str = "./memory/companion_memory.db"

    @model_validator(mode="after")
    def _validate_paths(self) -> "StorageConfig":
        normalized = os.path.normpath(self.sqlite_db_path)
        parts = normalized.replace("\\", "/").split("/")
        if ".." in parts:
            raise ValueError(
                f"sqlite_db_path must not contain '..' components: "
                f"{self.sqlite_db_path!r}"
            )
        self.sqlite_db_path = normalized
        return self


class EmbeddingConfig(BaseModel):
    """Embedding provider configuration."""

    provider: str = "local"  # "local" or "api"
    model: str = "nomic-ai/nomic-embed-text-v2-moe"
    api_model: str = "text-embedding-ada-002"
    dimension: int = 768
    trust_remote_code: bool = False
    cache_ttl_days: int = 30
    api_key: str | None = Field(default_factory=_default_api_key)
    base_url: str | None = None

    @field_validator("provider")
    @classmethod
    def _check_provider(cls, value: str) -> str:
        if value not in ("local", "api"):
            raise ValueError(f"embedding provider must be 'local' or 'api': {value!r}")
        return value

    @property
    def active_model(self) -> str:
        """Model name recorded alongside stored vectors."""
        return self.api_model if self.provider == "api" else self.model


class LLMConfig(BaseModel):
    """Completion provider configuration (summarization and extraction)."""

    model: str = "gpt-4o"
    extraction_model: str = "gpt-3.5-turbo"
    api_key: str | None = Field(default_factory=_default_api_key)
    base_url: str | None = None
    temperature: float = 0.3
    extraction_temperature: float = 0.1
    max_tokens: int = 2000
    extraction_max_tokens: int = 200
    timeout: float = 60.0


class CapacityConfig(BaseModel):
    """Per-(user, character) memory capacity."""

    default_max_memories: int = Field(default=30, ge=1)


class RetrievalConfig(BaseModel):
    """RAG retrieval configuration."""

    limit: int = Field(default=5, ge=1)
    min_similarity: float = 0.65
    candidate_multiplier: int = Field(default=2, ge=1)
    similarity_weight: float = 0.6
    importance_weight: float = 0.4
    fallback_score: float = 0.5
    include_recent: bool = True
    max_context_tokens: int = 2000

    @model_validator(mode="after")
    def _check_weights(self) -> "RetrievalConfig":
        total = self.similarity_weight + self.importance_weight
        if abs(total - 1.0) > 1e-6:
            raise ValueError(
                f"similarity_weight + importance_weight must equal 1.0, got {total}"
            )
        return self


def _default_context_limits() -> dict[str, int]:
    return {
        "gpt-4": 8192,
        "gpt-4-turbo": 128000,
        "gpt-4o": 128000,
        "gpt-3.5-turbo": 16385,
    }


class SummarizationConfig(BaseModel):
    """Context-pressure summarization configuration."""

    context_threshold: float = 0.70
    summarize_ratio: float = 0.5
    min_messages: int = Field(default=4, ge=1)
    default_model: str = "gpt-4o"
    model_context_limits: dict[str, int] = Field(
        default_factory=_default_context_limits
    )
    context_check_interval: int = Field(default=10, ge=1)
    stale_job_minutes: int = 30
    job_retention_days: int = 30

    @model_validator(mode="after")
    def _check_ratios(self) -> "SummarizationConfig":
        for name in ("context_threshold", "summarize_ratio"):
            value = getattr(self, name)
            if not 0 < value <= 1:
                raise ValueError(f"{name} must be in (0, 1], got {value}")
        if self.default_model not in self.model_context_limits:
            raise ValueError(
                f"default_model {self.default_model!r} has no context limit"
            )
        return self

    def context_limit(self, model: str | None) -> int:
        """Context window for a model, falling back to the default model."""
        if model and model in self.model_context_limits:
            return self.model_context_limits[model]
        return self.model_context_limits[self.default_model]


class ExpiryTier(BaseModel):
    """Episodic memories below ``max_importance`` expire after ``inactive_days``."""

    max_importance: float
    inactive_days: int


def _default_expiry_tiers() -> list[ExpiryTier]:
    return [
        ExpiryTier(max_importance=0.3, inactive_days=30),
        ExpiryTier(max_importance=0.6, inactive_days=60),
        ExpiryTier(max_importance=0.8, inactive_days=120),
    ]


class EvictionConfig(BaseModel):
    """Archival, restore windows and expiry configuration."""

    capacity_restore_days: int = 30
    user_delete_restore_days: int = 30
    inactive_after_days: int = 90
    expiry_tiers: list[ExpiryTier] = Field(default_factory=_default_expiry_tiers)
    expired_grace_days: int = 0

    @model_validator(mode="after")
    def _check_tiers(self) -> "EvictionConfig":
        bounds = [tier.max_importance for tier in self.expiry_tiers]
        if bounds != sorted(bounds) or len(set(bounds)) != len(bounds):
            raise ValueError("expiry_tiers must be strictly ascending by importance")
        return self


class TaskQueueConfig(BaseModel):
    """Background task queue configuration."""

    worker_count: int = Field(default=2, ge=1)
    max_size: int = Field(default=100, ge=1)
    max_attempts: int = Field(default=3, ge=1)
    retry_delay_seconds: float = 1.0


class MaintenanceConfig(BaseModel):
    """Periodic maintenance sweep configuration."""

    enabled: bool = True
    interval_hours: float = 24.0
    run_on_start: bool = False


class MemoryConfig(BaseModel):
    """Top-level companion memory configuration."""

    storage: StorageConfig = Field(default_factory=StorageConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    capacity: CapacityConfig = Field(default_factory=CapacityConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    summarization: SummarizationConfig = Field(default_factory=SummarizationConfig)
    eviction: EvictionConfig = Field(default_factory=EvictionConfig)
    task_queue: TaskQueueConfig = Field(default_factory=TaskQueueConfig)
    maintenance: MaintenanceConfig = Field(default_factory=MaintenanceConfig)


def read_yaml(config_path: str | Path) -> dict[str, Any]:
    """Read a YAML file, substituting ``${ENV_VAR}`` references.

    Unset variables are left as written.

    Raises:
        FileNotFoundError: If the configuration file is not found.
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    content = path.read_text(encoding="utf-8")

    def replacer(match: re.Match) -> str:
        return os.getenv(match.group(1), match.group(0))

    content = _ENV_PATTERN.sub(replacer, content)

    try:
        return yaml.safe_load(content) or {}
    except yaml.YAMLError as e:
        logger.critical(f"Error parsing YAML file: {e}")
        raise


def load_config(config_path: str | Path | None = None) -> MemoryConfig:
    """Build a ``MemoryConfig`` from ``.env`` plus an optional YAML file.

    The YAML may hold the sections at top level or under a ``memory`` key.
    """
    load_dotenv()
    if config_path is None:
        return MemoryConfig()

    data = read_yaml(config_path)
    if "memory" in data and isinstance(data["memory"], dict):
        data = data["memory"]
    config = MemoryConfig.model_validate(data)
    logger.info(f"Memory configuration loaded from {config_path}")
    return config
