"""
Tests for execution/legal_assistant/rag_service.py

Covers: the grounded-answer path, the insufficient-evidence path,
        hallucination warnings in metadata, request validation before any
        provider call, filters, error propagation, metrics, and health.

All external API calls are mocked.
"""

from unittest.mock import MagicMock

import pytest

from tests.conftest import MockEmbeddingService, MockGenerationService


def _service(config, store, generation=None, embedding=None):
    from execution.legal_assistant.providers import ProviderSelector
    from execution.legal_assistant.rag_service import RAGService
    selector = ProviderSelector(embedding or MockEmbeddingService(), generation or MockGenerationService())
    return RAGService(config, selector, store)


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------

class TestGroundedAnswer:
    """Questions with matching reference material."""

    def test_answer_with_sources(self, rag_service, mock_generation_service):
        from execution.legal_assistant.prompts import DISCLAIMERS
        package = rag_service.ask("What is the amparo trial?")

        assert len(package.sources) == 3
        assert package.metadata.documents_retrieved == 3
        assert package.metadata.insufficient_evidence is False
        assert package.metadata.validation_passed is True
        assert package.metadata.validation_warnings == []
        assert package.answer.count(DISCLAIMERS["en"]) == 1
        assert "CONTEXT 1:" in mock_generation_service.prompts[0]

    def test_sources_ranked_by_score(self, rag_service):
        package = rag_service.ask("What is the amparo trial?")
        scores = [s.similarity_score for s in package.sources]
        assert scores == sorted(scores, reverse=True)

    def test_metadata_provider_and_cost(self, rag_service):
        package = rag_service.ask("What is the amparo trial?")
        assert package.metadata.provider == "mock"
        assert package.metadata.model == "mock-llm"
        assert package.metadata.estimated_cost_usd > 0
        assert package.metadata.processing_time_ms >= 0

    def test_top_k_limits_sources(self, rag_service):
        assert len(rag_service.ask("What is the amparo trial?", top_k=1).sources) == 1

    def test_question_embedded_once(self, rag_service, mock_embedding_service):
        rag_service.ask("  What is the amparo trial?  ")
        assert mock_embedding_service.calls == ["What is the amparo trial?"]


class TestFilters:
    def test_materia_restricts_sources(self, rag_service):
        package = rag_service.ask("What is robbery?", materia="Penal")
        assert [s.law_reference for s in package.sources] == ["Artículo 367 del Código Penal Federal"]
        assert package.metadata.materia == "Penal"

    def test_blank_materia_ignored(self, rag_service):
        package = rag_service.ask("What is robbery?", materia="   ")
        assert package.metadata.materia is None
        assert len(package.sources) == 3

    def test_semester_level_excludes_advanced(self, rag_service):
        package = rag_service.ask("Explain the basics", semester_level=2)
        refs = {s.law_reference for s in package.sources}
        assert "Artículo 367 del Código Penal Federal" not in refs
        assert len(refs) == 2


# ---------------------------------------------------------------------------
# Insufficient evidence
# ---------------------------------------------------------------------------

class TestInsufficientEvidence:
    def test_empty_corpus(self, assistant_config, memory_store):
        from execution.legal_assistant.prompts import DISCLAIMERS
        generation = MockGenerationService(response="The reference material does not cover this question.")
        service = _service(assistant_config, memory_store, generation=generation)

        package = service.ask("What is the statute of limitations on Mars?")

        assert package.sources == []
        assert package.metadata.insufficient_evidence is True
        assert package.metadata.validation_passed is True
        assert package.answer.endswith(DISCLAIMERS["en"])
        assert "No relevant context was found" in generation.prompts[0]
        assert "CONTEXT 1:" not in generation.prompts[0]

    def test_filter_matching_nothing(self, rag_service, mock_generation_service):
        package = rag_service.ask("What is a tax credit?", materia="Fiscal")
        assert package.metadata.insufficient_evidence is True
        assert len(mock_generation_service.prompts) == 1

    def test_below_min_documents(self, assistant_config, populated_store):
        assistant_config.retrieval.min_documents = 2
        service = _service(assistant_config, populated_store)
        package = service.ask("What is robbery?", materia="Penal")
        assert package.sources == []
        assert package.metadata.insufficient_evidence is True

    def test_zero_min_documents_still_needs_evidence(self, assistant_config, memory_store):
        assistant_config.retrieval.min_documents = 0
        package = _service(assistant_config, memory_store).ask("Anything?")
        assert package.metadata.insufficient_evidence is True

    def test_require_evidence_raises(self, assistant_config, memory_store):
        from execution.legal_assistant.exceptions import InsufficientContextError
        generation = MockGenerationService()
        service = _service(assistant_config, memory_store, generation=generation)

        with pytest.raises(InsufficientContextError) as exc_info:
            service.ask("Anything?", require_evidence=True)
        assert exc_info.value.category == "insufficient-context"
        assert generation.prompts == []

    def test_no_validation_on_fallback(self, assistant_config, memory_store):
        generation = MockGenerationService(response="See Article 999 of nothing.")
        package = _service(assistant_config, memory_store, generation=generation).ask("Unknown?")
        assert package.metadata.validation_warnings == []


# ---------------------------------------------------------------------------
# Hallucination warnings
# ---------------------------------------------------------------------------

class TestHallucinationWarnings:
    def test_fabricated_article_flagged_not_blocked(self, assistant_config, populated_store):
        generation = MockGenerationService(response="According to Article 999 of the Constitution, amparo applies.")
        package = _service(assistant_config, populated_store, generation=generation).ask("What is amparo?")

        assert package.metadata.validation_passed is False
        assert len(package.metadata.validation_warnings) == 1
        assert "Article 999" in package.metadata.validation_warnings[0]
        assert "Article 999" in package.answer


# ---------------------------------------------------------------------------
# Validation and errors
# ---------------------------------------------------------------------------

class TestRequestValidation:
    @pytest.mark.parametrize("kwargs", [
        {"question": ""},
        {"question": "   "},
        {"question": "x" * 2001},
        {"question": "Valid?", "semester_level": 0},
        {"question": "Valid?", "semester_level": 11},
        {"question": "Valid?", "top_k": 0},
        {"question": "Valid?", "top_k": 21},
    ])
    def test_rejected_before_any_provider_call(self, rag_service, mock_embedding_service,
                                               mock_generation_service, kwargs):
        from execution.legal_assistant.exceptions import InvalidRequestError
        with pytest.raises(InvalidRequestError):
            rag_service.ask(**kwargs)
        assert mock_embedding_service.calls == []
        assert mock_generation_service.prompts == []


class TestErrorPropagation:
    def test_generation_failure_not_retried(self, assistant_config, populated_store):
        from execution.legal_assistant.exceptions import ProviderCallError
        generation = MagicMock()
        generation.is_available.return_value = True
        generation.generate.side_effect = ProviderCallError("OpenAI", "upstream 500", upstream_status=500)

        with pytest.raises(ProviderCallError):
            _service(assistant_config, populated_store, generation=generation).ask("What is amparo?")
        assert generation.generate.call_count == 1

    def test_unavailable_generation(self, assistant_config, populated_store):
        from execution.legal_assistant.exceptions import ProviderUnavailableError
        service = _service(assistant_config, populated_store,
                           generation=MockGenerationService(available=False))
        with pytest.raises(ProviderUnavailableError):
            service.ask("What is amparo?")

    def test_unavailable_embedding_skips_retrieval(self, assistant_config):
        from execution.legal_assistant.exceptions import ProviderUnavailableError
        store = MagicMock()
        service = _service(assistant_config, store, embedding=MockEmbeddingService(available=False))
        with pytest.raises(ProviderUnavailableError):
            service.ask("What is amparo?")
        store.find_similar.assert_not_called()

    def test_unexpected_error_wrapped(self, assistant_config):
        from execution.legal_assistant.exceptions import PipelineError
        store = MagicMock()
        store.find_similar.side_effect = RuntimeError("disk on fire")

        with pytest.raises(PipelineError) as exc_info:
            _service(assistant_config, store).ask("What is amparo?")
        assert exc_info.value.state == "retrieving"
        assert exc_info.value.category == "internal"


# ---------------------------------------------------------------------------
# Metrics and health
# ---------------------------------------------------------------------------

class TestMetricsRecording:
    def test_success_recorded(self, rag_service):
        rag_service.ask("What is amparo?", materia="Constitucional")
        m = rag_service.metrics.get_metrics()
        assert m.total_queries == 1
        assert m.successful_queries == 1
        assert m.queries_by_materia["Constitucional"] == 1

    def test_failure_recorded_by_category(self, assistant_config, populated_store):
        service = _service(assistant_config, populated_store,
                           generation=MockGenerationService(available=False))
        with pytest.raises(Exception):
            service.ask("What is amparo?")
        m = service.metrics.get_metrics()
        assert m.failed_queries == 1
        assert m.errors_by_category["provider-unavailable"] == 1

    def test_insufficient_counted(self, assistant_config, memory_store):
        service = _service(assistant_config, memory_store)
        service.ask("Anything?")
        assert service.metrics.get_metrics().insufficient_evidence == 1


class TestHealthStatus:
    def test_healthy(self, rag_service):
        status = rag_service.health_status()
        assert status == {"healthy": True, "generation": True, "embedding": True, "documents": 3}
        assert rag_service.is_healthy() is True

    def test_empty_corpus_unhealthy(self, assistant_config, memory_store):
        assert _service(assistant_config, memory_store).health_status()["healthy"] is False

    def test_store_error_reports_zero(self, assistant_config):
        store = MagicMock()
        store.count.side_effect = RuntimeError("connection refused")
        status = _service(assistant_config, store).health_status()
        assert status["documents"] == 0
        assert status["healthy"] is False

    def test_generation_unavailable(self, assistant_config, populated_store):
        service = _service(assistant_config, populated_store,
                           generation=MockGenerationService(available=False))
        status = service.health_status()
        assert status["generation"] is False
        assert status["healthy"] is False
