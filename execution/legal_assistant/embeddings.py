"""
Embedding Service for the Legal Study Assistant

Provides query and document embeddings from interchangeable backends.
Supports batching, caching, and different input types (documents vs queries).

Architecture:
    BaseEmbeddingService  -- shared validation, caching, batching, embed, embed_batch
        OpenAIEmbeddingService  -- OpenAI text-embedding-3-small (default)
        VoyageEmbeddingService  -- Voyage AI voyage-law-2
        CohereEmbeddingService  -- Cohere embed-multilingual-v3.0
        LocalEmbeddingService   -- local sentence-transformers, no credential
"""

import json
import hashlib
import logging
import threading
from typing import Optional
from pathlib import Path

from .config import EmbeddingConfig
from .exceptions import (
    InvalidRequestError,
    LegalAssistantError,
    ProviderCallError,
    ProviderUnavailableError,
    UnknownProviderError,
)

logger = logging.getLogger(__name__)


class BaseEmbeddingService:
    """
    Base class for embedding backends.

    Provides shared functionality:
    - Input validation (blank and oversized texts rejected before any call)
    - Batched embedding with progress logging
    - Memory and file-based caching
    - Error translation into ProviderCallError

    Subclasses implement:
    - _init_client(): build the provider client, leave it None without credentials
    - _call_provider(texts, input_type): return one vector per text
    """

    _provider_name: str = "Base"
    _key_hint: str = ""
    _requires_key: bool = True
    _doc_input_type: str = "document"
    _query_input_type: str = "query"

    def __init__(self, config: Optional[EmbeddingConfig] = None):
        """
        Initialize embedding service.

        Args:
            config: Optional configuration. Uses defaults if not provided.
        """
        self.config = config or EmbeddingConfig()
        self._client = None
        self._cache = {}
        self._cache_lock = threading.Lock()

        if self.config.cache_dir:
            self._cache_path = Path(self.config.cache_dir)
            self._cache_path.mkdir(parents=True, exist_ok=True)
        else:
            self._cache_path = None

        if self._requires_key and not self.config.api_key:
            logger.warning(
                f"{self._key_hint} not set. {self._provider_name} embeddings are unavailable."
            )
        else:
            self._init_client()

    def _init_client(self):
        raise NotImplementedError("Subclasses must implement _init_client()")

    def _call_provider(self, texts: list[str], input_type: str) -> list[list[float]]:
        raise NotImplementedError("Subclasses must implement _call_provider()")

    @property
    def provider_name(self) -> str:
        return self.config.provider

    @property
    def model_name(self) -> str:
        return self.config.model

    @property
    def dimensions(self) -> int:
        """Return embedding dimensions."""
        return self.config.dimensions

    @property
    def max_tokens(self) -> int:
        return self.config.max_tokens

    def is_available(self) -> bool:
        """True when the backend is configured and its client is ready."""
        return self._client is not None

    def embed(self, text: str) -> list[float]:
        """
        Generate the embedding for a search query.

        Args:
            text: Query text

        Returns:
            Embedding vector of length ``dimensions``
        """
        self._check_input(text)
        self._require_client()
        result = self._embed_batch([text], input_type=self._query_input_type)
        return result[0]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """
        Generate embeddings for documents, preserving input order.

        Args:
            texts: Texts to embed

        Returns:
            One vector per input text, in the same order
        """
        if not texts:
            return []

        for text in texts:
            self._check_input(text)
        self._require_client()

        batches = self._create_batches(texts)
        logger.info(
            f"Embedding {len(texts)} documents in {len(batches)} batches"
            f" with {self._provider_name}"
        )

        embeddings = []
        for batch_idx, batch in enumerate(batches):
            embeddings.extend(self._embed_batch(batch, input_type=self._doc_input_type))
            if (batch_idx + 1) % 10 == 0:
                logger.info(f"Processed batch {batch_idx + 1}/{len(batches)}")

        return embeddings

    def _check_input(self, text: str) -> None:
        if text is None or not text.strip():
            raise InvalidRequestError("Text to embed must not be empty")
        est_tokens = len(text) / self.config.chars_per_token
        if est_tokens > self.config.max_tokens:
            raise InvalidRequestError(
                f"Text of ~{int(est_tokens)} tokens exceeds the {self.config.max_tokens} "
                f"token limit of {self.config.model}"
            )

    def _require_client(self) -> None:
        if self._client is None:
            raise ProviderUnavailableError(
                f"{self._provider_name} embedding provider not available. "
                f"Check {self._key_hint or 'provider configuration'}.",
                provider=self.provider_name,
            )

    def _create_batches(self, texts: list[str]) -> list[list[str]]:
        """Split texts into batches respecting both item count and token limits."""
        batches = []
        current_batch = []
        current_tokens = 0
        cpt = self.config.chars_per_token

        for text in texts:
            est_tokens = len(text) / cpt
            if current_batch and (
                len(current_batch) >= self.config.batch_size
                or current_tokens + est_tokens > self.config.max_tokens_per_batch
            ):
                batches.append(current_batch)
                current_batch = []
                current_tokens = 0
            current_batch.append(text)
            current_tokens += est_tokens

        if current_batch:
            batches.append(current_batch)

        return batches

    def _embed_batch(self, texts: list[str], input_type: str) -> list[list[float]]:
        """Embed one batch, serving what it can from the cache."""
        results = []
        uncached_texts = []
        uncached_indices = []

        for i, text in enumerate(texts):
            cached = self._get_cached(self._get_cache_key(text, input_type))
            if cached is not None:
                results.append((i, cached))
            else:
                uncached_texts.append(text)
                uncached_indices.append(i)

        if uncached_texts:
            try:
                vectors = self._call_provider(uncached_texts, input_type)
            except LegalAssistantError:
                raise
            except Exception as e:
                logger.error(f"{self._provider_name} embedding failed: {e}")
                raise ProviderCallError(
                    self._provider_name,
                    str(e),
                    upstream_status=getattr(e, "status_code", None),
                ) from e

            if len(vectors) != len(uncached_texts):
                raise ProviderCallError(
                    self._provider_name,
                    f"expected {len(uncached_texts)} embeddings, received {len(vectors)}",
                )

            for idx, vector in zip(uncached_indices, vectors):
                vector = [float(v) for v in vector]
                if len(vector) != self.dimensions:
                    raise ProviderCallError(
                        self._provider_name,
                        f"returned {len(vector)}-dimensional vector, "
                        f"configured for {self.dimensions}",
                    )
                self._set_cached(self._get_cache_key(texts[idx], input_type), vector)
                results.append((idx, vector))

        results.sort(key=lambda x: x[0])
        return [emb for _, emb in results]

    def _get_cache_key(self, text: str, input_type: str) -> str:
        """Generate cache key for text."""
        content = f"{self.config.model}:{input_type}:{text}"
        return hashlib.sha256(content.encode()).hexdigest()[:32]

    def _get_cached(self, key: str) -> Optional[list[float]]:
        if not self.config.use_cache:
            return None

        if key in self._cache:
            return self._cache[key]

        if self._cache_path:
            cache_file = self._cache_path / f"{key}.json"
            if cache_file.exists():
                try:
                    with open(cache_file) as f:
                        embedding = json.load(f)
                    with self._cache_lock:
                        self._cache[key] = embedding
                    return embedding
                except (OSError, ValueError) as e:
                    logger.debug(f"Failed to read embedding cache file {cache_file}: {e}")

        return None

    def _set_cached(self, key: str, embedding: list[float]) -> None:
        if not self.config.use_cache:
            return

        with self._cache_lock:
            self._cache[key] = embedding

        if self._cache_path:
            cache_file = self._cache_path / f"{key}.json"
            try:
                with open(cache_file, "w") as f:
                    json.dump(embedding, f)
            except OSError as e:
                logger.warning(f"Failed to cache embedding: {e}")


class OpenAIEmbeddingService(BaseEmbeddingService):
    """
    Embeddings from OpenAI's text-embedding-3 family.

    text-embedding-3-small: 1536 dimensions, 8191 token input limit.
    OpenAI does not distinguish query from document inputs.
    """

    _provider_name = "OpenAI"
    _key_hint = "OPENAI_API_KEY"

    def _init_client(self):
        try:
            from openai import OpenAI
        except ImportError:
            logger.error("openai package not installed. Run: pip install openai")
            raise
        self._client = OpenAI(
            api_key=self.config.api_key,
            timeout=self.config.timeout_seconds,
            max_retries=0,
        )
        logger.info(f"OpenAI embedding client initialized with model {self.config.model}")

    def _call_provider(self, texts, input_type):
        response = self._client.embeddings.create(model=self.config.model, input=texts)
        data = sorted(response.data, key=lambda d: d.index)
        return [d.embedding for d in data]


class VoyageEmbeddingService(BaseEmbeddingService):
    """
    Embedding service using Voyage AI's voyage-law-2 model.

    voyage-law-2 provides 1024-dimensional embeddings tuned for legal text,
    with different input types for documents vs queries.
    """

    _provider_name = "Voyage AI"
    _key_hint = "VOYAGE_API_KEY"
    _doc_input_type = "document"
    _query_input_type = "query"

    def _init_client(self):
        try:
            import voyageai
        except ImportError:
            logger.error("voyageai package not installed. Run: pip install voyageai")
            raise
        self._client = voyageai.Client(
            api_key=self.config.api_key,
            timeout=self.config.timeout_seconds,
            max_retries=0,
        )
        logger.info(f"Voyage AI client initialized with model {self.config.model}")

    def _call_provider(self, texts, input_type):
        response = self._client.embed(texts, model=self.config.model, input_type=input_type)
        return response.embeddings


class CohereEmbeddingService(BaseEmbeddingService):
    """Generates embeddings using Cohere's embed-v3 models (1024 dimensions)."""

    _provider_name = "Cohere"
    _key_hint = "COHERE_API_KEY"
    _doc_input_type = "search_document"
    _query_input_type = "search_query"

    def _init_client(self):
        try:
            import cohere
        except ImportError:
            logger.error("Cohere package not installed. Run: pip install cohere")
            raise
        self._client = cohere.Client(self.config.api_key, timeout=self.config.timeout_seconds)
        logger.info(f"Cohere client initialized with model {self.config.model}")

    def _call_provider(self, texts, input_type):
        response = self._client.embed(
            texts=texts,
            model=self.config.model,
            input_type=input_type,
        )
        return response.embeddings


class LocalEmbeddingService(BaseEmbeddingService):
    """
    Embeddings from a local sentence-transformers model.

    Cost-free and credential-free. Good for development and offline ingestion.
    The configured dimensions are replaced by the model's own.
    """

    _provider_name = "Local"
    _requires_key = False

    def _init_client(self):
        try:
            from sentence_transformers import SentenceTransformer
        except ImportError:
            logger.error(
                "sentence-transformers not installed. "
                "Run: pip install sentence-transformers"
            )
            raise
        self._client = SentenceTransformer(self.config.model)
        self.config.dimensions = self._client.get_sentence_embedding_dimension()
        logger.info(f"Local embedding model loaded: {self.config.model}")

    def _call_provider(self, texts, input_type):
        embeddings = self._client.encode(texts, show_progress_bar=len(texts) > 32)
        return embeddings.tolist()


EMBEDDING_BACKENDS = {
    "openai": OpenAIEmbeddingService,
    "voyage": VoyageEmbeddingService,
    "cohere": CohereEmbeddingService,
    "local": LocalEmbeddingService,
}


def get_embedding_service(config: EmbeddingConfig) -> BaseEmbeddingService:
    """
    Factory returning the embedding backend named by ``config.provider``.

    Raises:
        UnknownProviderError: if the name matches no registered backend
    """
    service_cls = EMBEDDING_BACKENDS.get(config.provider)
    if service_cls is None:
        raise UnknownProviderError("embedding", config.provider, list(EMBEDDING_BACKENDS))
    return service_cls(config)


if __name__ == "__main__":
    import sys
    from dotenv import load_dotenv

    from .config import AssistantConfig

    load_dotenv()
    logging.basicConfig(level=logging.INFO)

    config = AssistantConfig.from_env()
    service = get_embedding_service(config.embedding)
    print(f"Using embedding provider: {config.embedding.provider}")

    query = " ".join(sys.argv[1:]) or "¿Qué es el juicio de amparo?"
    embedding = service.embed(query)
    print(f"Embedding dimensions: {len(embedding)}")
    print(f"First 10 values: {embedding[:10]}")
