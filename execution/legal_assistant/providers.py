"""
Provider selection.

Resolves the configured embedding and generation backends once, at startup.
An unknown backend name fails immediately; a known backend without
credentials is kept and reported as unavailable when it is requested.
"""

import logging

from .config import AssistantConfig
from .embeddings import BaseEmbeddingService, get_embedding_service
from .exceptions import ProviderUnavailableError
from .generation import BaseGenerationService, get_generation_service

logger = logging.getLogger(__name__)


class ProviderSelector:
    """
    Holds the resolved backends for the lifetime of the process.

    Usage:
        selector = ProviderSelector.from_config(config)
        vector = selector.embedding().embed("¿Qué es el amparo?")
    """

    def __init__(
        self,
        embedding_service: BaseEmbeddingService,
        generation_service: BaseGenerationService,
    ):
        self._embedding = embedding_service
        self._generation = generation_service

    @classmethod
    def from_config(cls, config: AssistantConfig) -> "ProviderSelector":
        """
        Build both backends from configuration.

        The store dimensionality in ``config`` is aligned with the resolved
        embedding model.

        Raises:
            UnknownProviderError: a configured name matches no backend
        """
        embedding = get_embedding_service(config.embedding)
        if embedding.dimensions != config.store.embedding_dimensions:
            # Local models report their size only once loaded
            logger.warning(
                f"Embedding model {embedding.model_name} produces {embedding.dimensions}-dimensional "
                f"vectors; sizing the store to match (was {config.store.embedding_dimensions})"
            )
            config.store.embedding_dimensions = embedding.dimensions
        generation = get_generation_service(config.generation)
        selector = cls(embedding, generation)
        logger.info(
            f"Providers resolved: embedding={config.embedding.provider} "
            f"({'available' if selector.has_available_embedding() else 'unavailable'}), "
            f"generation={config.generation.provider} "
            f"({'available' if selector.has_available_generation() else 'unavailable'})"
        )
        return selector

    def embedding(self) -> BaseEmbeddingService:
        if not self._embedding.is_available():
            raise ProviderUnavailableError(
                f"Embedding provider '{self._embedding.provider_name}' not available. "
                "Check API key configuration.",
                provider=self._embedding.provider_name,
            )
        return self._embedding

    def generation(self) -> BaseGenerationService:
        if not self._generation.is_available():
            raise ProviderUnavailableError(
                f"Generation provider '{self._generation.provider_name}' not available. "
                "Check API key configuration.",
                provider=self._generation.provider_name,
            )
        return self._generation

    def has_available_embedding(self) -> bool:
        return self._embedding.is_available()

    def has_available_generation(self) -> bool:
        return self._generation.is_available()

    def describe(self) -> dict:
        return {
            "embedding": {
                "provider": self._embedding.provider_name,
                "model": self._embedding.model_name,
                "dimensions": self._embedding.dimensions,
                "available": self._embedding.is_available(),
            },
            "generation": {
                "provider": self._generation.provider_name,
                "model": self._generation.model_name,
                "available": self._generation.is_available(),
            },
        }
