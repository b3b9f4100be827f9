"""
RAG Orchestrator

Answers one legal question per call:

    EMBEDDING -> RETRIEVING -> (INSUFFICIENT_EVIDENCE | CONTEXT_READY)
              -> GENERATING -> VALIDATING -> FORMATTING -> DONE

Provider failures are not retried here; they propagate to the caller.
Citation warnings never block an answer, they are attached to its metadata.
"""

import time
import logging
from enum import Enum
from typing import Optional

from .citation import AnswerPackage, ResponseFormatter
from .config import AssistantConfig
from .exceptions import (
    InsufficientContextError,
    InvalidRequestError,
    LegalAssistantError,
    PipelineError,
)
from .generation import GenerationOptions
from .hallucination import HallucinationValidator, ValidationResult
from .metrics import MetricsCollector, get_metrics_collector
from .models import MAX_SEMESTER_LEVEL, MIN_SEMESTER_LEVEL, SearchFilters
from .prompts import PromptBuilder
from .providers import ProviderSelector

logger = logging.getLogger(__name__)

MAX_TOP_K = 20
MAX_QUESTION_LENGTH = 2000


class PipelineState(str, Enum):
    EMBEDDING = "embedding"
    RETRIEVING = "retrieving"
    INSUFFICIENT_EVIDENCE = "insufficient_evidence"
    CONTEXT_READY = "context_ready"
    GENERATING = "generating"
    VALIDATING = "validating"
    FORMATTING = "formatting"
    DONE = "done"


class RAGService:
    """
    Retrieval-augmented answering over the reference corpus.

    Usage:
        service = RAGService(config, selector, store)
        package = service.ask("What is constitutional amparo?", materia="Constitucional")
    """

    def __init__(
        self,
        config: AssistantConfig,
        providers: ProviderSelector,
        store,
        validator: Optional[HallucinationValidator] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.config = config
        self.providers = providers
        self.store = store
        self.prompts = PromptBuilder(config.language)
        self.formatter = ResponseFormatter(config.language)
        self.validator = validator or HallucinationValidator()
        self.metrics = metrics or get_metrics_collector()

    def ask(
        self,
        question: str,
        materia: Optional[str] = None,
        semester_level: Optional[int] = None,
        top_k: Optional[int] = None,
        require_evidence: bool = False,
    ) -> AnswerPackage:
        """
        Answer a question from the reference corpus.

        Args:
            question: The student's question
            materia: Optional subject-matter filter
            semester_level: Optional student level (1-10); documents above it are excluded
            top_k: Number of documents to retrieve (1-20). Uses the configured default if omitted.
            require_evidence: Raise InsufficientContextError instead of answering
                without evidence

        Returns:
            AnswerPackage with citations, metadata and the disclaimer

        Raises:
            InvalidRequestError: invalid input, raised before any provider call
            InsufficientContextError: no evidence found and ``require_evidence`` is set
            ProviderUnavailableError / ProviderCallError: embedding or generation failed
            PipelineError: any other unexpected failure
        """
        question = self._validate_request(question, semester_level, top_k)
        top_k = top_k or self.config.retrieval.top_k
        materia = materia.strip() if materia and materia.strip() else None

        with self.metrics.track_query(question, materia) as tracker:
            package = self._run(question, materia, semester_level, top_k, require_evidence)
            tracker.set_results(
                package.metadata.documents_retrieved,
                insufficient_evidence=package.metadata.insufficient_evidence,
                validation_warnings=len(package.metadata.validation_warnings),
            )
        return package

    def _run(
        self,
        question: str,
        materia: Optional[str],
        semester_level: Optional[int],
        top_k: int,
        require_evidence: bool = False,
    ) -> AnswerPackage:
        started = time.monotonic()
        state = PipelineState.EMBEDDING
        logger.info(f"Processing question (materia={materia}, level={semester_level}, top_k={top_k})")

        try:
            embedder = self.providers.embedding()
            query_vector = embedder.embed(question)

            state = self._advance(state, PipelineState.RETRIEVING)
            filters = self._build_filters(materia, semester_level)
            documents = self.store.find_similar(query_vector, top_k, filters)
            logger.info(f"Retrieved {len(documents)} documents")

            if not documents or len(documents) < self.config.retrieval.min_documents:
                state = self._advance(state, PipelineState.INSUFFICIENT_EVIDENCE)
                logger.warning(
                    f"Insufficient evidence: {len(documents)} documents "
                    f"(minimum {self.config.retrieval.min_documents})"
                )
                if require_evidence:
                    raise InsufficientContextError(
                        f"Only {len(documents)} relevant documents found"
                    )
                documents = []
                prompt = self.prompts.build_insufficient(question)
            else:
                state = self._advance(state, PipelineState.CONTEXT_READY)
                prompt = self.prompts.build(question, documents)

            state = self._advance(state, PipelineState.GENERATING)
            generator = self.providers.generation()
            options = GenerationOptions.from_config(self.config.generation)
            result = generator.generate(prompt, options)

            if documents:
                state = self._advance(state, PipelineState.VALIDATING)
                validation = self.validator.validate(
                    result.text, [scored.document for scored in documents]
                )
            else:
                validation = ValidationResult(is_valid=True)

            state = self._advance(state, PipelineState.FORMATTING)
            elapsed_ms = int((time.monotonic() - started) * 1000)
            package = self.formatter.format(
                result.text,
                documents,
                materia=materia,
                processing_time_ms=elapsed_ms,
                insufficient_evidence=not documents,
            )
            package.metadata.validation_passed = validation.is_valid
            package.metadata.validation_warnings = list(validation.warnings)
            package.metadata.provider = result.provider or generator.provider_name
            package.metadata.model = result.model or generator.model_name
            package.metadata.estimated_cost_usd = round(
                generator.estimate_cost(result.total_tokens), 6
            )

            self._advance(state, PipelineState.DONE)
            logger.info(
                f"Answered in {elapsed_ms}ms with {len(package.sources)} sources "
                f"(valid={validation.is_valid})"
            )
            return package

        except LegalAssistantError as e:
            logger.error(f"Pipeline failed during {state.value}: {e}")
            raise
        except Exception as e:
            logger.exception(f"Unexpected error during {state.value}")
            raise PipelineError(f"Unexpected error during {state.value}: {e}", state=state.value) from e

    @staticmethod
    def _advance(current: PipelineState, nxt: PipelineState) -> PipelineState:
        logger.debug(f"State {current.value} -> {nxt.value}")
        return nxt

    def _build_filters(self, materia: Optional[str], semester_level: Optional[int]) -> SearchFilters:
        return SearchFilters(
            materia=materia,
            max_semester_level=semester_level,
            min_similarity_score=self.config.retrieval.min_similarity_score,
        )

    @staticmethod
    def _validate_request(
        question: Optional[str],
        semester_level: Optional[int],
        top_k: Optional[int],
    ) -> str:
        if question is None or not question.strip():
            raise InvalidRequestError("The question is required")
        question = question.strip()
        if len(question) > MAX_QUESTION_LENGTH:
            raise InvalidRequestError(
                f"The question must not exceed {MAX_QUESTION_LENGTH} characters"
            )
        if semester_level is not None and not (
            MIN_SEMESTER_LEVEL <= semester_level <= MAX_SEMESTER_LEVEL
        ):
            raise InvalidRequestError(
                f"semester_level must be between {MIN_SEMESTER_LEVEL} and {MAX_SEMESTER_LEVEL}"
            )
        if top_k is not None and not (1 <= top_k <= MAX_TOP_K):
            raise InvalidRequestError(f"top_k must be between 1 and {MAX_TOP_K}")
        return question

    # =========================================================================
    # Health
    # =========================================================================

    def health_status(self) -> dict:
        """Availability of both providers and the corpus size."""
        try:
            documents = self.store.count()
        except Exception as e:
            logger.warning(f"Health check: corpus store unreachable: {e}")
            documents = 0

        generation = self.providers.has_available_generation()
        embedding = self.providers.has_available_embedding()
        return {
            "healthy": generation and embedding and documents > 0,
            "generation": generation,
            "embedding": embedding,
            "documents": documents,
        }

    def is_healthy(self) -> bool:
        return self.health_status()["healthy"]
