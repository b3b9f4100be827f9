"""
Pydantic models for the Legal Study Assistant FastAPI backend.
"""

from typing import Optional
from pydantic import BaseModel, Field, field_validator


class AskRequest(BaseModel):
    """Request body for the ask endpoint."""
    question: str = Field(..., min_length=1, max_length=2000)
    materia: Optional[str] = Field(default=None, max_length=100)
    semester_level: Optional[int] = Field(default=None, ge=1, le=10)
    top_k: Optional[int] = Field(default=None, ge=1, le=20)  # None uses RAG_TOP_K

    @field_validator("question")
    @classmethod
    def question_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("question must not be blank")
        return value.strip()


class SourceInfo(BaseModel):
    """Citation source in an answer."""
    document_id: Optional[int] = None
    excerpt: str
    law_reference: Optional[str] = None
    source: str
    similarity_score: Optional[float] = None


class ResponseMetadata(BaseModel):
    documents_retrieved: int
    materia: Optional[str] = None
    timestamp: str
    processing_time_ms: int
    validation_passed: bool = True
    validation_warnings: list[str] = []
    insufficient_evidence: bool = False
    provider: Optional[str] = None
    model: Optional[str] = None
    estimated_cost_usd: Optional[float] = None


class AskResponse(BaseModel):
    """Response body for the ask endpoint."""
    answer: str
    sources: list[SourceInfo]
    metadata: ResponseMetadata
    disclaimer: str


class ErrorResponse(BaseModel):
    """Structured error. ``error`` is the stable category tag."""
    error: str
    message: str
    status: int
    timestamp: str


class HealthResponse(BaseModel):
    """Health check response."""
    status: str  # UP or DOWN
    version: str
    generation: bool
    embedding: bool
    documents: int


# =============================================================================
# Ingestion
# =============================================================================

class IngestRequest(BaseModel):
    """Options for an ingestion run."""
    batch_size: int = Field(default=50, ge=1, le=500)
    max_chunk_size: int = Field(default=1000, ge=100, le=8000)
    chunk_overlap: int = Field(default=100, ge=0, le=1000)
    skip_existing: bool = True
    overwrite: bool = False
    limit: Optional[int] = Field(default=None, ge=1)


class IngestResponse(BaseModel):
    success: bool
    total: int
    processed: int
    skipped: int
    failed: int
    truncated: int
    started_at: str
    finished_at: Optional[str] = None
    duration_seconds: float
    error: Optional[str] = None


class IngestEstimateResponse(BaseModel):
    documents: int
    estimated_minutes: int
    estimated_cost_usd: float
    breakdown: str
