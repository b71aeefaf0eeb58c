"""Tests for companion memory configuration models and YAML loading."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from companion_memory.config import (
    EmbeddingConfig,
    EvictionConfig,
    MemoryConfig,
    RetrievalConfig,
    StorageConfig,
    SummarizationConfig,
    load_config,
    read_yaml,
)


def test_defaults():
    config = MemoryConfig()

    assert config.capacity.default_max_memories == 30
    assert config.summarization.context_threshold == 0.70
    assert config.summarization.summarize_ratio == 0.5
    assert config.summarization.min_messages == 4
    assert config.summarization.context_check_interval == 10
    assert config.retrieval.limit == 5
    assert config.retrieval.min_similarity == 0.65
    assert config.eviction.inactive_after_days == 90
    assert [t.inactive_days for t in config.eviction.expiry_tiers] == [30, 60, 120]
    assert config.llm.extraction_model == "gpt-3.5-turbo"


def test_context_limit_falls_back_to_default_model():
    config = SummarizationConfig()

    assert config.context_limit("gpt-4") == 8192
    assert config.context_limit("unknown") == 128000
    assert config.context_limit(None) == 128000


@pytest.mark.parametrize(
    "factory",
    [
        lambda: RetrievalConfig(similarity_weight=0.7, importance_weight=0.7),
        lambda: SummarizationConfig(context_threshold=1.5),
        lambda: SummarizationConfig(summarize_ratio=0),
        lambda: SummarizationConfig(default_model="missing"),
        lambda: EvictionConfig(
            expiry_tiers=[
                {"max_importance": 0.6, "inactive_days": 60},
                {"max_importance": 0.3, "inactive_days": 30},
            ]
        ),
        lambda: EmbeddingConfig(provider="cloud"),
        lambda: StorageConfig(sqlite_db_path="../outside/memory.db"),
    ],
)
def test_invalid_values_rejected(factory):
    with pytest.raises(ValidationError):
        factory()


def test_active_embedding_model():
    assert EmbeddingConfig().active_model == "nomic-ai/nomic-embed-text-v2-moe"
    assert EmbeddingConfig(provider="api").active_model == "text-embedding-ada-002"


def test_read_yaml_substitutes_env(tmp_path, monkeypatch):
    monkeypatch.setenv("COMPANION_TEST_KEY", "sk-test")
    path = tmp_path / "conf.yaml"
    path.write_text("llm:\n  api_key: ${COMPANION_TEST_KEY}\n  base_url: ${UNSET_VAR_XYZ}\n")

    data = read_yaml(path)

    assert data["llm"]["api_key"] == "sk-test"
    assert data["llm"]["base_url"] == "${UNSET_VAR_XYZ}"


def test_read_yaml_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        read_yaml(tmp_path / "nope.yaml")


def test_load_config_under_memory_key(tmp_path):
    path = tmp_path / "conf.yaml"
    path.write_text(
        "memory:\n"
        "  capacity:\n"
        "    default_max_memories: 50\n"
        "  retrieval:\n"
        "    limit: 8\n"
    )

    config = load_config(path)

    assert config.capacity.default_max_memories == 50
    assert config.retrieval.limit == 8
    assert config.summarization.min_messages == 4


def test_load_config_without_file():
    assert isinstance(load_config(), MemoryConfig)
