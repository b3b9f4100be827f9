"""
Ingestion of the Barcenas Mexican legal Q&A dataset.

Pipeline per run:
    DatasetLoader     -- pages rows from the Hugging Face datasets-server API
    TextNormalizer    -- strips HTML, NFC-normalizes, collapses whitespace,
                         extracts the first legal reference
    ChunkingService   -- sentence-boundary chunks with overlap
    IngestionService  -- builds ReferenceDocuments, embeds them in batches and
                         upserts (document, embedding) pairs into the store

Texts longer than ``max_chunk_size`` are embedded from their first chunk only;
the rest of the text is not embedded (the stored answer stays complete).
"""

import re
import time
import hashlib
import logging
import unicodedata
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

import requests

from .exceptions import ProviderUnavailableError
from .metrics import MetricsCollector, get_metrics_collector
from .models import ReferenceDocument, utcnow

logger = logging.getLogger(__name__)

HF_DATASETS_API = "https://datasets-server.huggingface.co"
BARCENAS_DATASET = "Danielbrdz/Barcenas-Juridico-Mexicano-Dataset"
BARCENAS_SOURCE = "Barcenas-Juridico-Mexicano-Dataset"
BARCENAS_URL = f"https://huggingface.co/datasets/{BARCENAS_DATASET}"

# Cost model for estimates: text-embedding-3-small
TOKENS_PER_DOCUMENT = 200
EMBEDDING_COST_PER_1K_TOKENS = 0.00002
DOCUMENTS_PER_MINUTE = 50

# Keyword rules for inferring the subject area, checked in order
MATERIA_KEYWORDS = [
    ("Constitucional", ("constitucional", "constitución")),
    ("Penal", ("penal", "delito")),
    ("Civil", ("civil", "contrato")),
    ("Laboral", ("laboral", "trabajo")),
    ("Mercantil", ("mercantil", "comercio")),
    ("Administrativo", ("administrativo", "administración pública")),
]
DEFAULT_MATERIA = "General"


# =============================================================================
# Dataset loading
# =============================================================================

@dataclass
class DatasetEntry:
    """One row of the source dataset."""
    question: str
    answer: str
    context: Optional[str] = None


class DatasetLoader:
    """
    Loads rows from the Hugging Face datasets-server ``/rows`` endpoint.

    Rows without a question or an answer are skipped. A failing page ends
    the download; rows loaded so far are kept.
    """

    def __init__(
        self,
        dataset: str = BARCENAS_DATASET,
        page_size: int = 100,
        page_delay: float = 0.1,
        timeout: float = 60.0,
        session: Optional[requests.Session] = None,
    ):
        self.dataset = dataset
        self.page_size = page_size
        self.page_delay = page_delay
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": "legal-assistant/0.1.0"})

    def load(self, limit: Optional[int] = None) -> list[DatasetEntry]:
        """
        Download dataset rows.

        Args:
            limit: Stop after this many valid entries

        Returns:
            List of DatasetEntry in dataset order
        """
        entries = []
        offset = 0
        logger.info(f"Loading dataset {self.dataset}")

        while limit is None or len(entries) < limit:
            try:
                response = self.session.get(
                    f"{HF_DATASETS_API}/rows",
                    params={
                        "dataset": self.dataset,
                        "config": "default",
                        "split": "train",
                        "offset": offset,
                        "length": self.page_size,
                    },
                    timeout=self.timeout,
                )
                response.raise_for_status()
                rows = response.json().get("rows", [])
            except (requests.RequestException, ValueError) as e:
                logger.error(f"Failed to load rows at offset {offset}: {e}")
                break

            if not rows:
                break

            for row in rows:
                entry = self._parse_row(row.get("row", {}))
                if entry is not None:
                    entries.append(entry)

            if len(rows) < self.page_size:
                break
            offset += self.page_size
            if self.page_delay:
                time.sleep(self.page_delay)

        if limit is not None:
            entries = entries[:limit]
        logger.info(f"Loaded {len(entries)} entries from {self.dataset}")
        return entries

    @staticmethod
    def _parse_row(data: dict) -> Optional[DatasetEntry]:
        question = data.get("question")
        answer = data.get("answer")
        if not question or not str(question).strip() or not answer or not str(answer).strip():
            return None
        return DatasetEntry(question=str(question), answer=str(answer), context=data.get("context"))


# =============================================================================
# Text processing
# =============================================================================

HTML_TAG = re.compile(r"<[^>]+>")
SPACES = re.compile(r"[ \t\r\f\v]+")
EXTRA_NEWLINES = re.compile(r"\n{3,}")

LEGAL_REFERENCE_PATTERNS = [
    re.compile(r"art[íi]culo\s+\d+[a-z]?(?:\s+bis)?(?:\s+ter)?", re.IGNORECASE),
    re.compile(r"\bart\.?\s+\d+[a-z]?", re.IGNORECASE),
    re.compile(r"\b(?:constitución|código|ley)\s+[a-záéíóúñ\s]+", re.IGNORECASE),
]


class TextNormalizer:
    """Cleans dataset text before it is stored and embedded."""

    def normalize(self, text: Optional[str]) -> str:
        """Strip HTML, apply NFC, collapse spaces and keep at most one blank line."""
        if not text or not text.strip():
            return ""
        cleaned = HTML_TAG.sub("", text)
        cleaned = unicodedata.normalize("NFC", cleaned)
        cleaned = SPACES.sub(" ", cleaned)
        cleaned = "\n".join(line.strip() for line in cleaned.split("\n"))
        cleaned = EXTRA_NEWLINES.sub("\n\n", cleaned)
        return cleaned.strip()

    def extract_legal_reference(self, text: Optional[str]) -> Optional[str]:
        """First article or instrument reference in ``text``, if any."""
        if not text:
            return None
        for pattern in LEGAL_REFERENCE_PATTERNS:
            match = pattern.search(text)
            if match:
                return match.group(0).strip()[:500]
        return None


SENTENCE_BOUNDARY = re.compile(r"[.!?;]\s+")


class ChunkingService:
    """Splits long text on sentence boundaries with a character overlap."""

    def __init__(self, max_chunk_size: int = 1000, overlap: int = 100):
        self.max_chunk_size = max_chunk_size
        self.overlap = overlap

    def needs_chunking(self, text: str, max_chunk_size: Optional[int] = None) -> bool:
        return len(text) > (max_chunk_size or self.max_chunk_size)

    def chunk_text(
        self,
        text: str,
        max_chunk_size: Optional[int] = None,
        overlap: Optional[int] = None,
    ) -> list[str]:
        """
        Split ``text`` into chunks of at most ``max_chunk_size`` characters.

        A single sentence longer than the limit becomes its own chunk.
        Each chunk after the first starts with the tail of the previous one.
        """
        max_size = max_chunk_size or self.max_chunk_size
        overlap = self.overlap if overlap is None else overlap
        if not text or not text.strip():
            return []
        if len(text) <= max_size:
            return [text]

        chunks = []
        current = ""
        for sentence in self.split_sentences(text):
            candidate = f"{current} {sentence}".strip() if current else sentence
            if len(candidate) > max_size and current:
                chunks.append(current.strip())
                tail = self._overlap_text(current, overlap)
                current = f"{tail} {sentence}".strip() if tail else sentence
            else:
                current = candidate

        if current.strip():
            chunks.append(current.strip())
        return chunks

    @staticmethod
    def split_sentences(text: str) -> list[str]:
        sentences = []
        last_end = 0
        for match in SENTENCE_BOUNDARY.finditer(text):
            sentence = text[last_end:match.end()].strip()
            if sentence:
                sentences.append(sentence)
            last_end = match.end()
        rest = text[last_end:].strip()
        if rest:
            sentences.append(rest)
        return sentences

    @staticmethod
    def _overlap_text(text: str, size: int) -> str:
        if size <= 0 or len(text) <= size:
            return text if size > 0 else ""
        tail = text[-size:]
        # Avoid starting mid-word
        first_space = tail.find(" ")
        if 0 <= first_space < len(tail) - 1:
            tail = tail[first_space + 1:]
        return tail.strip()


def infer_materia(question: str, answer: str) -> str:
    """Subject area from keyword rules; ``General`` when nothing matches."""
    text = f"{question} {answer}".lower()
    for materia, keywords in MATERIA_KEYWORDS:
        if any(keyword in text for keyword in keywords):
            return materia
    return DEFAULT_MATERIA


def generate_external_id(question: str, answer: str, index: int) -> str:
    """Deterministic id from the row position and a content hash."""
    digest = hashlib.sha256(f"{question}|{answer}".encode("utf-8")).hexdigest()[:8]
    return f"barcenas-{index}-{digest}"


# =============================================================================
# Ingestion service
# =============================================================================

@dataclass
class IngestionConfig:
    """Options for one ingestion run."""
    batch_size: int = 50
    max_chunk_size: int = 1000
    chunk_overlap: int = 100
    skip_existing: bool = True
    overwrite: bool = False
    limit: Optional[int] = None


@dataclass
class IngestionResult:
    """Outcome of an ingestion run."""
    success: bool
    total: int = 0
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    truncated: int = 0
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def duration_seconds(self) -> float:
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "total": self.total,
            "processed": self.processed,
            "skipped": self.skipped,
            "failed": self.failed,
            "truncated": self.truncated,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_seconds": round(self.duration_seconds, 2),
            "error": self.error,
        }


@dataclass
class IngestionEstimate:
    documents: int
    estimated_minutes: int
    estimated_cost_usd: float
    breakdown: str


@dataclass
class DatasetValidation:
    valid: bool
    total_entries: int = 0
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


class IngestionService:
    """
    Loads, normalizes, embeds and stores the dataset.

    Usage:
        service = IngestionService(embedder, store)
        result = service.ingest(IngestionConfig(limit=500))
    """

    def __init__(
        self,
        embedder,
        store,
        loader: Optional[DatasetLoader] = None,
        normalizer: Optional[TextNormalizer] = None,
        chunker: Optional[ChunkingService] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.embedder = embedder
        self.store = store
        self.loader = loader or DatasetLoader()
        self.normalizer = normalizer or TextNormalizer()
        self.chunker = chunker or ChunkingService()
        self.metrics = metrics or get_metrics_collector()

    def ingest(self, config: Optional[IngestionConfig] = None) -> IngestionResult:
        """
        Run a full ingestion.

        Per-entry problems are counted as failures and the run continues.
        Fatal problems (dataset unavailable, provider not configured, store
        unreachable) end the run with ``success=False``.
        """
        config = config or IngestionConfig()
        result = IngestionResult(success=False)
        logger.info(
            f"Starting ingestion (batch_size={config.batch_size}, "
            f"max_chunk_size={config.max_chunk_size}, overlap={config.chunk_overlap})"
        )

        try:
            entries = self.loader.load(limit=config.limit)
            result.total = len(entries)
            if not entries:
                result.error = "No entries found in dataset"
                result.finished_at = utcnow()
                return result

            if config.overwrite:
                deleted = self.store.delete_by_source(BARCENAS_SOURCE)
                logger.info(f"Overwrite requested: removed {deleted} existing documents")

            check_existing = config.skip_existing and not config.overwrite
            pending: list[tuple[ReferenceDocument, str]] = []

            for index, entry in enumerate(entries):
                try:
                    document, text = self._prepare(entry, index, config, result)
                except ValueError as e:
                    result.failed += 1
                    logger.error(f"Error processing entry {index}: {e}")
                    continue

                if check_existing and self.store.exists_by_external_id(document.external_id):
                    result.skipped += 1
                    continue

                pending.append((document, text))
                if len(pending) >= config.batch_size:
                    self._flush(pending, config, result)
                    pending = []

            if pending:
                self._flush(pending, config, result)

            result.success = True
        except Exception as e:
            logger.exception("Fatal error during ingestion")
            result.error = str(e)

        result.finished_at = utcnow()
        if result.truncated:
            logger.warning(
                f"{result.truncated} documents exceeded {config.max_chunk_size} characters; "
                f"only their first chunk was embedded"
            )
        logger.info(
            f"Ingestion finished: {result.processed} processed, {result.skipped} skipped, "
            f"{result.failed} failed of {result.total}"
        )
        self.metrics.record_ingestion(result.processed, result.skipped, result.failed)
        return result

    def _prepare(
        self,
        entry: DatasetEntry,
        index: int,
        config: IngestionConfig,
        result: IngestionResult,
    ) -> tuple[ReferenceDocument, str]:
        question = self.normalizer.normalize(entry.question)
        answer = self.normalizer.normalize(entry.answer)
        document = ReferenceDocument(
            external_id=generate_external_id(entry.question, entry.answer, index),
            question=question,
            answer=answer,
            law_reference=self.normalizer.extract_legal_reference(answer),
            materia=infer_materia(entry.question, entry.answer),
            source=BARCENAS_SOURCE,
            source_url=BARCENAS_URL,
        )

        text = f"{question} {answer}"
        if self.chunker.needs_chunking(text, config.max_chunk_size):
            chunks = self.chunker.chunk_text(text, config.max_chunk_size, config.chunk_overlap)
            # TODO: store one embedding per chunk once the schema allows several per document
            text = chunks[0]
            result.truncated += 1
            logger.debug(f"{document.external_id}: kept first of {len(chunks)} chunks")
        return document, text

    def _flush(
        self,
        pending: list[tuple[ReferenceDocument, str]],
        config: IngestionConfig,
        result: IngestionResult,
    ) -> None:
        try:
            vectors = self.embedder.embed_batch([text for _, text in pending])
        except ProviderUnavailableError:
            raise
        except Exception as e:
            result.failed += len(pending)
            logger.error(f"Embedding batch of {len(pending)} failed: {e}")
            return

        items = [(document, vector) for (document, _), vector in zip(pending, vectors)]
        skip_existing = config.skip_existing and not config.overwrite
        stored = self.store.upsert_batch(
            items,
            model_name=self.embedder.model_name,
            provider=self.embedder.provider_name,
            skip_existing=skip_existing,
        )
        result.processed += stored
        if stored == len(items):
            return

        # Unstored items already present were inserted concurrently: skipped, not failed
        for document, _ in items:
            if document.id is not None:
                continue
            if skip_existing and self.store.exists_by_external_id(document.external_id):
                result.skipped += 1
            else:
                result.failed += 1

    def estimate(self, limit: Optional[int] = None) -> IngestionEstimate:
        """Rough cost and duration for embedding the dataset."""
        documents = len(self.loader.load(limit=limit))
        total_tokens = documents * TOKENS_PER_DOCUMENT
        cost = (total_tokens / 1000.0) * EMBEDDING_COST_PER_1K_TOKENS
        minutes = max(1, documents // DOCUMENTS_PER_MINUTE)
        breakdown = (
            f"Documents: {documents}\n"
            f"Estimated tokens: {total_tokens}\n"
            f"Processing rate: ~{DOCUMENTS_PER_MINUTE} docs/min\n"
            f"Embedding cost: ${EMBEDDING_COST_PER_1K_TOKENS:.5f} per 1K tokens"
        )
        return IngestionEstimate(documents, minutes, round(cost, 6), breakdown)

    def validate_dataset(self, sample_size: int = 100) -> DatasetValidation:
        """Check that the dataset is reachable and its entries are well formed."""
        entries = self.loader.load()
        if not entries:
            return DatasetValidation(valid=False, errors=["Dataset is empty or unreachable"])

        warnings = []
        sample = entries[:sample_size]
        long_entries = sum(
            1 for e in sample
            if self.chunker.needs_chunking(f"{e.question} {e.answer}")
        )
        if long_entries:
            warnings.append(
                f"{long_entries} of {len(sample)} sampled entries exceed "
                f"{self.chunker.max_chunk_size} characters and will be truncated"
            )
        missing_refs = sum(
            1 for e in sample if self.normalizer.extract_legal_reference(e.answer) is None
        )
        if missing_refs:
            warnings.append(f"{missing_refs} of {len(sample)} sampled entries cite no legal reference")
        return DatasetValidation(valid=True, total_entries=len(entries), warnings=warnings)
