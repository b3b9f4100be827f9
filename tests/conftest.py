"""
Shared fixtures and test utilities for the Legal Study Assistant tests.

Provides mock providers, sample legal documents and an in-memory corpus so
that all tests run without API keys, databases, or external network access.
"""

import os
import sys
import hashlib
from pathlib import Path

import pytest
from dotenv import load_dotenv

# ---------------------------------------------------------------------------
# Path setup - ensure the execution package is importable
# ---------------------------------------------------------------------------
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

load_dotenv(PROJECT_ROOT / ".env")

TEST_DIMENSIONS = 8


# ---------------------------------------------------------------------------
# Mock embedding service
# ---------------------------------------------------------------------------

class MockEmbeddingService:
    """Deterministic mock embedding service -- never calls external APIs."""

    provider_name = "mock"
    model_name = "mock-embedding"

    def __init__(self, dimensions=TEST_DIMENSIONS, available=True):
        self._dimensions = dimensions
        self._available = available
        self.calls = []

    def embed(self, text):
        self.calls.append(text)
        return self._deterministic_embedding(text)

    def embed_batch(self, texts):
        self.calls.extend(texts)
        return [self._deterministic_embedding(t) for t in texts]

    def is_available(self):
        return self._available

    def _deterministic_embedding(self, text):
        h = hashlib.sha256(text.encode()).hexdigest()
        seed = int(h[:8], 16)
        return [((seed + i) % 1000) / 1000.0 + 0.001 for i in range(self._dimensions)]

    @property
    def dimensions(self):
        return self._dimensions


# ---------------------------------------------------------------------------
# Mock generation service
# ---------------------------------------------------------------------------

class MockGenerationService:
    """Returns a canned answer and records every prompt it receives."""

    provider_name = "mock"
    model_name = "mock-llm"

    def __init__(self, response="According to Article 103 of the Constitution, amparo protects rights.",
                 available=True):
        self.response = response
        self._available = available
        self.prompts = []

    def generate(self, prompt, options=None):
        from execution.legal_assistant.generation import GenerationResult
        self.prompts.append(prompt)
        return GenerationResult(
            text=self.response,
            input_tokens=len(prompt) // 4,
            output_tokens=len(self.response) // 4,
            model=self.model_name,
            provider=self.provider_name,
        )

    def is_available(self):
        return self._available

    def estimate_cost(self, token_count):
        return token_count / 1000.0 * 0.002


@pytest.fixture
def mock_embedding_service():
    return MockEmbeddingService()


@pytest.fixture
def mock_generation_service():
    return MockGenerationService()


@pytest.fixture
def assistant_config():
    """AssistantConfig sized for the mock providers."""
    from execution.legal_assistant.config import (
        AssistantConfig, EmbeddingConfig, VectorStoreConfig,
    )
    return AssistantConfig(
        language="en",
        embedding=EmbeddingConfig(provider="openai", dimensions=TEST_DIMENSIONS),
        store=VectorStoreConfig(embedding_dimensions=TEST_DIMENSIONS),
    )


@pytest.fixture
def provider_selector(mock_embedding_service, mock_generation_service):
    from execution.legal_assistant.providers import ProviderSelector
    return ProviderSelector(mock_embedding_service, mock_generation_service)


# ---------------------------------------------------------------------------
# Sample legal documents
# ---------------------------------------------------------------------------

def make_document(external_id, question, answer, **kwargs):
    from execution.legal_assistant.models import ReferenceDocument
    kwargs.setdefault("source", "Barcenas-Juridico-Mexicano-Dataset")
    return ReferenceDocument(external_id=external_id, question=question, answer=answer, **kwargs)


@pytest.fixture
def sample_documents():
    """Three reference documents across different subject areas."""
    return [
        make_document(
            "barcenas-0-amparo",
            "¿Qué es el juicio de amparo?",
            "The amparo trial is the constitutional remedy that protects individuals against "
            "acts of authority that violate their human rights, as established in Article 103 "
            "of the Constitution.",
            law_reference="Artículo 103 de la Constitución Política",
            materia="Constitucional",
        ),
        make_document(
            "barcenas-1-robo",
            "¿Qué es el delito de robo?",
            "Robbery is committed by whoever takes a movable thing belonging to another "
            "without right and without consent, according to Article 367 of the Federal Penal Code.",
            law_reference="Artículo 367 del Código Penal Federal",
            materia="Penal",
            semester_level=4,
        ),
        make_document(
            "barcenas-2-contrato",
            "¿Cuándo se perfecciona un contrato?",
            "Contracts are perfected by mere consent, except those that must take a form "
            "established by law (Article 1796 of the Federal Civil Code).",
            law_reference="Artículo 1796 del Código Civil Federal",
            materia="Civil",
            semester_level=2,
        ),
    ]


@pytest.fixture
def memory_store():
    from execution.legal_assistant.config import VectorStoreConfig
    from execution.legal_assistant.vector_store import InMemoryVectorStore
    return InMemoryVectorStore(VectorStoreConfig(embedding_dimensions=TEST_DIMENSIONS))


@pytest.fixture
def populated_store(memory_store, sample_documents, mock_embedding_service):
    """In-memory store holding the sample documents."""
    vectors = mock_embedding_service.embed_batch(
        [f"{d.question} {d.answer}" for d in sample_documents]
    )
    memory_store.upsert_batch(
        list(zip(sample_documents, vectors)),
        model_name="mock-embedding",
        provider="mock",
    )
    mock_embedding_service.calls.clear()
    return memory_store


@pytest.fixture
def rag_service(assistant_config, provider_selector, populated_store):
    from execution.legal_assistant.rag_service import RAGService
    return RAGService(assistant_config, provider_selector, populated_store)


# ---------------------------------------------------------------------------
# Singleton resets between tests
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def reset_metrics_singleton():
    """Reset the MetricsCollector singleton between tests."""
    import execution.legal_assistant.metrics as metrics_mod
    metrics_mod.MetricsCollector._instance = None
    metrics_mod._collector = None
    yield
    metrics_mod.MetricsCollector._instance = None
    metrics_mod._collector = None


# ---------------------------------------------------------------------------
# Live credentials (integration tests only)
# ---------------------------------------------------------------------------

def _credentials_available() -> bool:
    return all(os.getenv(k) for k in ("POSTGRES_URL", "OPENAI_API_KEY"))


skip_no_creds = pytest.mark.skipif(
    not _credentials_available(),
    reason="Missing POSTGRES_URL or OPENAI_API_KEY in .env",
)
