"""
Legal Study Assistant - grounded answers for law students

This module provides:
- Question embedding with interchangeable providers (OpenAI, Voyage, Cohere, local)
- Filtered cosine-similarity retrieval over a pgvector corpus (or in memory)
- Grounded prompt assembly and generation (OpenAI, Anthropic, NVIDIA NIM)
- Post-hoc citation checking against the retrieved evidence
- Citation-bearing answers with an academic disclaimer
- Ingestion of the Barcenas Mexican legal Q&A dataset
"""

from .config import AssistantConfig
from .providers import ProviderSelector
from .vector_store import PgVectorStore, InMemoryVectorStore, get_vector_store
from .rag_service import RAGService
from .hallucination import HallucinationValidator
from .citation import ResponseFormatter, AnswerPackage
from .ingestion import IngestionService

__all__ = [
    "AssistantConfig",
    "ProviderSelector",
    "PgVectorStore",
    "InMemoryVectorStore",
    "get_vector_store",
    "RAGService",
    "HallucinationValidator",
    "ResponseFormatter",
    "AnswerPackage",
    "IngestionService",
]

__version__ = "0.1.0"
