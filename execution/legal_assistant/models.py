"""
Domain records for the legal study assistant.

ReferenceDocument and EmbeddingRecord mirror the two stored tables. The
embedding points at its document by id only; there is no back-reference.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from .exceptions import DimensionMismatchError

MIN_SEMESTER_LEVEL = 1
MAX_SEMESTER_LEVEL = 10
EMBEDDING_SCHEMA_VERSION = 1


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ReferenceDocument:
    """One question/answer pair with its legal metadata."""
    external_id: str
    question: str
    answer: str
    source: str
    law_reference: Optional[str] = None
    materia: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    semester_level: Optional[int] = None
    source_url: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    id: Optional[int] = None  # Assigned by the store

    def __post_init__(self):
        for name in ("external_id", "question", "answer", "source"):
            value = getattr(self, name)
            if value is None or not str(value).strip():
                raise ValueError(f"ReferenceDocument.{name} is required")
        if self.semester_level is not None and not (
            MIN_SEMESTER_LEVEL <= self.semester_level <= MAX_SEMESTER_LEVEL
        ):
            raise ValueError(
                f"semester_level must be between {MIN_SEMESTER_LEVEL} and "
                f"{MAX_SEMESTER_LEVEL}, got {self.semester_level}"
            )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "external_id": self.external_id,
            "question": self.question,
            "answer": self.answer,
            "law_reference": self.law_reference,
            "materia": self.materia,
            "tags": list(self.tags),
            "semester_level": self.semester_level,
            "source": self.source,
            "source_url": self.source_url,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass
class EmbeddingRecord:
    """The single embedding owned by a stored document."""
    vector: list[float]
    dimensions: int
    model_name: str
    provider: str
    document_id: Optional[int] = None
    embedding_version: int = EMBEDDING_SCHEMA_VERSION
    created_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        if len(self.vector) != self.dimensions:
            raise DimensionMismatchError(self.dimensions, len(self.vector))


@dataclass
class SearchFilters:
    """Optional query-time constraints. Empty filters mean unrestricted search."""
    materia: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    max_semester_level: Optional[int] = None
    min_semester_level: Optional[int] = None
    source_name: Optional[str] = None
    min_similarity_score: Optional[float] = None

    def has_filters(self) -> bool:
        return bool(
            self.materia
            or self.tags
            or self.max_semester_level is not None
            or self.min_semester_level is not None
            or self.source_name
            or self.min_similarity_score is not None
        )

    def matches(self, document: ReferenceDocument) -> bool:
        """Check the metadata predicates (everything except the score)."""
        if self.materia and (document.materia or "").lower() != self.materia.lower():
            return False
        if self.tags and not set(self.tags) & set(document.tags):
            return False
        if self.source_name and document.source != self.source_name:
            return False
        # Documents without a level are open to every student
        level = document.semester_level
        if self.max_semester_level is not None and level is not None:
            if level > self.max_semester_level:
                return False
        if self.min_semester_level is not None and level is not None:
            if level < self.min_semester_level:
                return False
        return True


@dataclass
class ScoredDocument:
    """A retrieved document with its cosine similarity to the query."""
    document: ReferenceDocument
    score: float

    def to_dict(self) -> dict:
        return {"document": self.document.to_dict(), "score": self.score}
