"""
Configuration for the Legal Study Assistant

All settings are gathered once at process start by ``AssistantConfig.from_env()``
and passed into component constructors. Business logic never reads the
environment directly.
"""

import os
from dataclasses import dataclass, field
from typing import Mapping, Optional


# Supported answer languages and their token ratios
SUPPORTED_LANGUAGES = {
    "en": {"name": "English", "chars_per_token": 4.0},
    "es": {"name": "Spanish", "chars_per_token": 4.0},
}

# Per-backend embedding defaults: model, dimensions, provider token limit per input
EMBEDDING_DEFAULTS = {
    "openai": {"model": "text-embedding-3-small", "dimensions": 1536, "max_tokens": 8191},
    "voyage": {"model": "voyage-law-2", "dimensions": 1024, "max_tokens": 16000},
    "cohere": {"model": "embed-multilingual-v3.0", "dimensions": 1024, "max_tokens": 512},
    "local": {"model": "BAAI/bge-m3", "dimensions": 1024, "max_tokens": 8192},
}

GENERATION_DEFAULTS = {
    "openai": {"model": "gpt-4o-mini", "base_url": None},
    "anthropic": {"model": "claude-3-5-sonnet-20240620", "base_url": "https://api.anthropic.com/v1/messages"},
    "nvidia": {"model": "qwen/qwen3-235b-a22b", "base_url": "https://integrate.api.nvidia.com/v1"},
}


@dataclass
class EmbeddingConfig:
    """Configuration for the embedding backend."""
    provider: str = "openai"
    model: str = "text-embedding-3-small"
    dimensions: int = 1536
    max_tokens: int = 8191  # Per-input provider limit
    batch_size: int = 100
    max_tokens_per_batch: int = 100000
    chars_per_token: float = 4.0
    timeout_seconds: float = 30.0
    cache_dir: Optional[str] = None
    use_cache: bool = True
    api_key: Optional[str] = None

    @classmethod
    def for_provider(cls, provider: str, **overrides) -> "EmbeddingConfig":
        """Build a config pre-filled with the defaults of a known backend."""
        defaults = EMBEDDING_DEFAULTS.get(provider, {})
        values = {"provider": provider, **defaults}
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


@dataclass
class GenerationConfig:
    """Configuration for the generation backend."""
    provider: str = "openai"
    model: str = "gpt-4o-mini"
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    temperature: float = 0.1
    max_tokens: int = 2000
    top_p: float = 1.0
    timeout_seconds: float = 30.0

    @classmethod
    def for_provider(cls, provider: str, **overrides) -> "GenerationConfig":
        defaults = GENERATION_DEFAULTS.get(provider, {})
        values = {"provider": provider, **defaults}
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


@dataclass
class VectorStoreConfig:
    """Configuration for the corpus store."""
    connection_string: Optional[str] = None
    documents_table: str = "legal_documents"
    embeddings_table: str = "document_embeddings"
    embedding_dimensions: int = 1536
    index_lists: int = 100  # IVFFlat index parameter
    pool_min_connections: int = 1
    pool_max_connections: int = 10
    use_pooling: bool = True
    connect_timeout_seconds: int = 10
    query_timeout_seconds: float = 10.0  # Server-side statement_timeout; 0 disables


@dataclass
class RetrievalConfig:
    """Retrieval defaults applied by the RAG pipeline."""
    top_k: int = 5
    min_documents: int = 1
    min_similarity_score: Optional[float] = None


@dataclass
class AssistantConfig:
    """Top-level configuration, built once and passed by reference."""
    language: str = "en"
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    generation: GenerationConfig = field(default_factory=GenerationConfig)
    store: VectorStoreConfig = field(default_factory=VectorStoreConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    cors_origins: list[str] = field(default_factory=lambda: ["*"])
    rate_limit_rpm: int = 30

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "AssistantConfig":
        """
        Build configuration from environment variables.

        Args:
            env: Mapping to read from. Defaults to ``os.environ``.

        Returns:
            Fully populated AssistantConfig
        """
        env = os.environ if env is None else env

        language = env.get("ASSISTANT_LANGUAGE", "en").lower()
        if language not in SUPPORTED_LANGUAGES:
            language = "en"

        embedding_provider = env.get("EMBEDDING_PROVIDER", "openai").lower()
        embedding_keys = {
            "openai": env.get("OPENAI_API_KEY"),
            "voyage": env.get("VOYAGE_API_KEY"),
            "cohere": env.get("COHERE_API_KEY"),
        }
        embedding = EmbeddingConfig.for_provider(
            embedding_provider,
            model=env.get("EMBEDDING_MODEL"),
            dimensions=_int(env.get("EMBEDDING_DIMENSIONS")),
            api_key=embedding_keys.get(embedding_provider),
            cache_dir=env.get("EMBEDDING_CACHE_DIR"),
            chars_per_token=SUPPORTED_LANGUAGES[language]["chars_per_token"],
        )

        llm_provider = env.get("LLM_PROVIDER", "openai").lower()
        llm_keys = {
            "openai": env.get("OPENAI_API_KEY"),
            "anthropic": env.get("ANTHROPIC_API_KEY"),
            "nvidia": env.get("NVIDIA_API_KEY"),
        }
        generation = GenerationConfig.for_provider(
            llm_provider,
            model=env.get("LLM_MODEL"),
            api_key=llm_keys.get(llm_provider),
            base_url=env.get("LLM_BASE_URL"),
            timeout_seconds=_float(env.get("LLM_TIMEOUT_SECONDS")),
        )

        store = VectorStoreConfig(
            connection_string=env.get("POSTGRES_URL") or env.get("DATABASE_URL"),
            embedding_dimensions=embedding.dimensions,
            connect_timeout_seconds=_int(env.get("PG_CONNECT_TIMEOUT_SECONDS"), 10),
            query_timeout_seconds=_float(env.get("PG_QUERY_TIMEOUT_SECONDS"), 10.0),
        )

        retrieval = RetrievalConfig(
            top_k=_int(env.get("RAG_TOP_K"), 5),
            min_documents=_int(env.get("RAG_MIN_DOCUMENTS"), 1),
            min_similarity_score=_float(env.get("RAG_MIN_SIMILARITY")),
        )

        origins = env.get("CORS_ORIGINS", "*")
        return cls(
            language=language,
            embedding=embedding,
            generation=generation,
            store=store,
            retrieval=retrieval,
            cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
            rate_limit_rpm=_int(env.get("RATE_LIMIT_RPM"), 30),
        )


def _int(value: Optional[str], default: Optional[int] = None) -> Optional[int]:
    if value is None or value == "":
        return default
    return int(value)


def _float(value: Optional[str], default: Optional[float] = None) -> Optional[float]:
    if value is None or value == "":
        return default
    return float(value)
