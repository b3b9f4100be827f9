"""
Tests for execution/legal_assistant/config.py

Covers: AssistantConfig.from_env() defaults, provider presets, key routing,
        numeric parsing and language fallback.
"""

import pytest


class TestFromEnv:
    def test_defaults_with_empty_env(self):
        from execution.legal_assistant.config import AssistantConfig
        config = AssistantConfig.from_env({})

        assert config.language == "en"
        assert config.embedding.provider == "openai"
        assert config.embedding.dimensions == 1536
        assert config.generation.model == "gpt-4o-mini"
        assert config.store.connection_string is None
        assert config.store.embedding_dimensions == 1536
        assert config.retrieval.top_k == 5
        assert config.retrieval.min_documents == 1
        assert config.retrieval.min_similarity_score is None
        assert config.cors_origins == ["*"]
        assert config.rate_limit_rpm == 30

    def test_provider_keys_routed(self):
        from execution.legal_assistant.config import AssistantConfig
        config = AssistantConfig.from_env({
            "EMBEDDING_PROVIDER": "voyage",
            "VOYAGE_API_KEY": "pa-123",
            "OPENAI_API_KEY": "sk-123",
            "LLM_PROVIDER": "anthropic",
            "ANTHROPIC_API_KEY": "sk-ant-123",
        })

        assert config.embedding.api_key == "pa-123"
        assert config.embedding.model == "voyage-law-2"
        assert config.store.embedding_dimensions == 1024
        assert config.generation.api_key == "sk-ant-123"
        assert config.generation.base_url == "https://api.anthropic.com/v1/messages"

    def test_overrides_parsed(self):
        from execution.legal_assistant.config import AssistantConfig
        config = AssistantConfig.from_env({
            "EMBEDDING_DIMENSIONS": "512",
            "RAG_TOP_K": "8",
            "RAG_MIN_SIMILARITY": "0.35",
            "LLM_TIMEOUT_SECONDS": "12.5",
            "POSTGRES_URL": "postgresql://localhost/legal",
            "CORS_ORIGINS": "http://a.test, http://b.test",
        })

        assert config.embedding.dimensions == 512
        assert config.store.embedding_dimensions == 512
        assert config.retrieval.top_k == 8
        assert config.retrieval.min_similarity_score == pytest.approx(0.35)
        assert config.generation.timeout_seconds == pytest.approx(12.5)
        assert config.store.connection_string == "postgresql://localhost/legal"
        assert config.cors_origins == ["http://a.test", "http://b.test"]

    def test_database_url_fallback(self):
        from execution.legal_assistant.config import AssistantConfig
        config = AssistantConfig.from_env({"DATABASE_URL": "postgresql://db/legal"})
        assert config.store.connection_string == "postgresql://db/legal"

    def test_unsupported_language_falls_back(self):
        from execution.legal_assistant.config import AssistantConfig
        assert AssistantConfig.from_env({"ASSISTANT_LANGUAGE": "fr"}).language == "en"
        assert AssistantConfig.from_env({"ASSISTANT_LANGUAGE": "ES"}).language == "es"

    def test_invalid_number_raises(self):
        from execution.legal_assistant.config import AssistantConfig
        with pytest.raises(ValueError):
            AssistantConfig.from_env({"RAG_TOP_K": "many"})

    def test_explicit_zero_kept(self):
        from execution.legal_assistant.config import AssistantConfig
        config = AssistantConfig.from_env({
            "RAG_MIN_DOCUMENTS": "0",
            "RATE_LIMIT_RPM": "0",
            "PG_QUERY_TIMEOUT_SECONDS": "0",
        })
        assert config.retrieval.min_documents == 0
        assert config.rate_limit_rpm == 0
        assert config.store.query_timeout_seconds == 0

    def test_store_timeouts(self):
        from execution.legal_assistant.config import AssistantConfig
        assert AssistantConfig.from_env({}).store.connect_timeout_seconds == 10
        assert AssistantConfig.from_env({}).store.query_timeout_seconds == pytest.approx(10.0)

        config = AssistantConfig.from_env({
            "PG_CONNECT_TIMEOUT_SECONDS": "3",
            "PG_QUERY_TIMEOUT_SECONDS": "2.5",
        })
        assert config.store.connect_timeout_seconds == 3
        assert config.store.query_timeout_seconds == pytest.approx(2.5)
