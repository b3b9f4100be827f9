"""
FastAPI Backend for the Legal Study Assistant

Exposes question answering, health, metrics and dataset ingestion.

Run with: uvicorn execution.legal_assistant.api:app --host 0.0.0.0 --port 8000
"""

import time
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Depends, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from dotenv import load_dotenv

from . import __version__
from .api_models import (
    AskRequest, AskResponse, ErrorResponse, HealthResponse,
    IngestEstimateResponse, IngestRequest, IngestResponse,
)
from .config import AssistantConfig
from .exceptions import LegalAssistantError, PUBLIC_MESSAGES
from .ingestion import IngestionConfig, IngestionService
from .metrics import get_metrics_collector
from .models import utcnow
from .providers import ProviderSelector
from .rag_service import RAGService
from .vector_store import get_vector_store

# Load environment variables
load_dotenv()
logger = logging.getLogger(__name__)

_config = AssistantConfig.from_env()


# =============================================================================
# Service Container - builds each service once per process
# =============================================================================

class ServiceContainer:
    """Lazily built, process-wide services."""

    def __init__(self, config: AssistantConfig):
        self.config = config
        self._store = None
        self._providers: Optional[ProviderSelector] = None
        self._rag: Optional[RAGService] = None
        self._ingestion: Optional[IngestionService] = None

    def get_store(self):
        if self._store is None:
            # Providers first, so the store is sized to the resolved embedding model
            self.get_providers()
            store = get_vector_store(self.config.store)
            store.initialize_schema()
            self._store = store
        return self._store

    def get_providers(self) -> ProviderSelector:
        if self._providers is None:
            self._providers = ProviderSelector.from_config(self.config)
        return self._providers

    def get_rag_service(self) -> RAGService:
        if self._rag is None:
            self._rag = RAGService(self.config, self.get_providers(), self.get_store())
        return self._rag

    def get_ingestion_service(self) -> IngestionService:
        if self._ingestion is None:
            self._ingestion = IngestionService(
                self.get_providers().embedding(),
                self.get_store(),
            )
        return self._ingestion

    def close(self):
        if self._store is not None:
            self._store.close()


_container = ServiceContainer(_config)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Unknown provider names fail here, before the first request
    _container.get_providers()
    yield
    _container.close()


app = FastAPI(
    title="Legal Study Assistant API",
    description="Grounded answers to law students' questions with cited sources",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_config.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# Rate Limiting
# =============================================================================

class RateLimiter:
    """Simple in-memory rate limiter using sliding window. A limit of 0 disables it."""

    def __init__(self, max_requests: int = 30, window_seconds: int = 60):
        self._max_requests = max_requests
        self._window = window_seconds
        self._requests: dict[str, list[float]] = defaultdict(list)

    def is_allowed(self, key: str) -> bool:
        """Check if request is allowed for the given key."""
        if self._max_requests <= 0:
            return True
        now = time.time()
        window_start = now - self._window

        self._requests[key] = [t for t in self._requests[key] if t > window_start]

        if len(self._requests[key]) >= self._max_requests:
            return False

        self._requests[key].append(now)
        return True


_rate_limiter = RateLimiter(max_requests=_config.rate_limit_rpm, window_seconds=60)


async def check_rate_limit(request: Request):
    """FastAPI dependency that enforces rate limiting per client address."""
    key = request.client.host if request.client else "anonymous"
    if not _rate_limiter.is_allowed(key):
        raise HTTPException(status_code=429, detail="Rate limit exceeded. Try again later.")


# =============================================================================
# Error handling
# =============================================================================

def _error_response(category: str, message: str, status: int) -> JSONResponse:
    body = ErrorResponse(
        error=category,
        message=message,
        status=status,
        timestamp=utcnow().isoformat(),
    )
    return JSONResponse(status_code=status, content=body.model_dump())


@app.exception_handler(LegalAssistantError)
async def handle_assistant_error(request: Request, exc: LegalAssistantError):
    if exc.status_code >= 500:
        logger.error(f"{request.url.path} failed ({exc.category}): {exc}")
    return _error_response(exc.category, exc.public_message, exc.status_code)


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError):
    problems = []
    for err in exc.errors():
        field = ".".join(str(p) for p in err.get("loc", []) if p != "body")
        problems.append(f"{field}: {err.get('msg')}" if field else err.get("msg", ""))
    return _error_response("validation", "; ".join(problems) or PUBLIC_MESSAGES["validation"], 400)


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.url.path}")
    return _error_response("internal", PUBLIC_MESSAGES["internal"], 500)


# =============================================================================
# Endpoints
# =============================================================================

@app.get("/api/v1/health", response_model=HealthResponse)
def health_check():
    """Health check. Returns 503 unless both providers are available and the corpus is non-empty."""
    try:
        status = _container.get_rag_service().health_status()
    except Exception as e:
        logger.error(f"Health check could not open the corpus store: {e}")
        providers = _container.get_providers()
        status = {
            "healthy": False,
            "generation": providers.has_available_generation(),
            "embedding": providers.has_available_embedding(),
            "documents": 0,
        }
    body = HealthResponse(
        status="UP" if status["healthy"] else "DOWN",
        version=__version__,
        generation=status["generation"],
        embedding=status["embedding"],
        documents=status["documents"],
    )
    return JSONResponse(status_code=200 if status["healthy"] else 503, content=body.model_dump())


@app.post("/api/v1/ask", response_model=AskResponse, dependencies=[Depends(check_rate_limit)])
def ask(req: AskRequest):
    """Answer a legal question from the reference corpus."""
    package = _container.get_rag_service().ask(
        req.question,
        materia=req.materia,
        semester_level=req.semester_level,
        top_k=req.top_k,
    )
    return package.to_dict()


@app.get("/api/v1/metrics")
def metrics():
    """Aggregated query, validation and ingestion metrics."""
    collector = get_metrics_collector()
    data = collector.get_metrics_dict()
    data["uptime_seconds"] = int(collector.get_uptime().total_seconds())
    return data


@app.post("/api/v1/ingest", response_model=IngestResponse)
def ingest(req: Optional[IngestRequest] = None):
    """Load the Barcenas dataset into the corpus."""
    req = req or IngestRequest()
    result = _container.get_ingestion_service().ingest(IngestionConfig(**req.model_dump()))
    return result.to_dict()


@app.get("/api/v1/ingest/estimate", response_model=IngestEstimateResponse)
def ingest_estimate(limit: Optional[int] = None):
    """Estimated duration and embedding cost of a full ingestion."""
    estimate = _container.get_ingestion_service().estimate(limit=limit)
    return IngestEstimateResponse(
        documents=estimate.documents,
        estimated_minutes=estimate.estimated_minutes,
        estimated_cost_usd=estimate.estimated_cost_usd,
        breakdown=estimate.breakdown,
    )
