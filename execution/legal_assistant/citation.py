"""
Citation Formatting for Legal Answers

Turns the generated text and the retrieved documents into the answer
package returned to students: per-source citations with short excerpts,
processing metadata, and the academic disclaimer.
"""

import logging
from typing import Optional, Sequence
from dataclasses import dataclass, field
from datetime import datetime

from .models import ScoredDocument, utcnow
from .prompts import DISCLAIMERS

logger = logging.getLogger(__name__)

MAX_EXCERPT_LENGTH = 200
ELLIPSIS = "..."


@dataclass
class SourceReference:
    """One cited reference document."""
    document_id: Optional[int]
    excerpt: str
    law_reference: Optional[str]
    source: str
    similarity_score: Optional[float] = None

    def short_format(self) -> str:
        """Short inline citation format."""
        parts = [self.source]
        if self.law_reference:
            parts.append(self.law_reference)
        return f"[{', '.join(parts)}]"

    def to_dict(self) -> dict:
        return {
            "document_id": self.document_id,
            "excerpt": self.excerpt,
            "law_reference": self.law_reference,
            "source": self.source,
            "similarity_score": self.similarity_score,
        }


@dataclass
class ResponseMetadata:
    """Retrieval and processing details attached to an answer."""
    documents_retrieved: int
    materia: Optional[str]
    timestamp: datetime
    processing_time_ms: int
    validation_passed: bool = True
    validation_warnings: list[str] = field(default_factory=list)
    insufficient_evidence: bool = False
    provider: Optional[str] = None
    model: Optional[str] = None
    estimated_cost_usd: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "documents_retrieved": self.documents_retrieved,
            "materia": self.materia,
            "timestamp": self.timestamp.isoformat(),
            "processing_time_ms": self.processing_time_ms,
            "validation_passed": self.validation_passed,
            "validation_warnings": list(self.validation_warnings),
            "insufficient_evidence": self.insufficient_evidence,
            "provider": self.provider,
            "model": self.model,
            "estimated_cost_usd": self.estimated_cost_usd,
        }


@dataclass
class AnswerPackage:
    """Final answer: text, citations, metadata and disclaimer."""
    answer: str
    sources: list[SourceReference]
    metadata: ResponseMetadata
    disclaimer: str

    def to_dict(self) -> dict:
        return {
            "answer": self.answer,
            "sources": [s.to_dict() for s in self.sources],
            "metadata": self.metadata.to_dict(),
            "disclaimer": self.disclaimer,
        }


def truncate_excerpt(text: str, max_length: int = MAX_EXCERPT_LENGTH) -> str:
    """Cut ``text`` to ``max_length`` characters, ending in an ellipsis when cut."""
    text = text or ""
    if len(text) <= max_length:
        return text
    return text[:max_length - len(ELLIPSIS)] + ELLIPSIS


def ensure_disclaimer(answer: str, disclaimer: str) -> str:
    """Append the disclaimer unless the answer already contains it verbatim.

    A disclaimer repeated by the model is collapsed to a single trailing copy.
    """
    answer = (answer or "").rstrip()
    occurrences = answer.count(disclaimer)
    if occurrences == 1:
        return answer
    if occurrences > 1:
        answer = answer.replace(disclaimer, "").rstrip()
    return f"{answer}\n\n{disclaimer}" if answer else disclaimer


class ResponseFormatter:
    """Builds AnswerPackage objects for one language."""

    def __init__(self, language: str = "en"):
        self.disclaimer = DISCLAIMERS.get(language, DISCLAIMERS["en"])

    def format(
        self,
        answer: str,
        documents: Sequence[ScoredDocument],
        materia: Optional[str],
        processing_time_ms: int,
        insufficient_evidence: bool = False,
    ) -> AnswerPackage:
        """
        Assemble the answer package.

        Args:
            answer: Generated answer text
            documents: Retrieved documents (empty for the insufficient branch)
            materia: Subject filter used for retrieval, if any
            processing_time_ms: Elapsed pipeline time
            insufficient_evidence: True when no usable evidence was found

        Returns:
            AnswerPackage with the disclaimer present exactly once
        """
        sources = [self._to_source(scored) for scored in documents]
        metadata = ResponseMetadata(
            documents_retrieved=len(documents),
            materia=materia,
            timestamp=utcnow(),
            processing_time_ms=processing_time_ms,
            insufficient_evidence=insufficient_evidence,
        )
        logger.debug(f"Formatted answer with {len(sources)} sources")
        return AnswerPackage(
            answer=ensure_disclaimer(answer, self.disclaimer),
            sources=sources,
            metadata=metadata,
            disclaimer=self.disclaimer,
        )

    @staticmethod
    def _to_source(scored: ScoredDocument) -> SourceReference:
        doc = scored.document
        return SourceReference(
            document_id=doc.id,
            excerpt=truncate_excerpt(doc.answer),
            law_reference=doc.law_reference,
            source=doc.source,
            similarity_score=round(scored.score, 4),
        )
