"""
Metrics Collection for the Legal Study Assistant

Tracks question volume, latency, evidence coverage, citation warnings and
ingestion throughput for the /metrics endpoint.
"""

import time
import logging
import threading
from dataclasses import dataclass, field
from collections import defaultdict
from typing import Optional
from datetime import datetime, timedelta

logger = logging.getLogger(__name__)


@dataclass
class QueryMetrics:
    """Metrics for a single question."""
    question: str
    materia: Optional[str]
    start_time: float
    end_time: float = 0
    latency_ms: float = 0
    documents_retrieved: int = 0
    insufficient_evidence: bool = False
    validation_warnings: int = 0
    error_category: Optional[str] = None


@dataclass
class SystemMetrics:
    """Aggregated system metrics."""
    total_queries: int = 0
    successful_queries: int = 0
    failed_queries: int = 0
    insufficient_evidence: int = 0
    answers_with_warnings: int = 0
    hallucination_warnings: int = 0

    # Latency tracking (in ms)
    total_latency_ms: float = 0
    min_latency_ms: float = float('inf')
    max_latency_ms: float = 0
    latencies: list = field(default_factory=list)

    # Ingestion
    documents_ingested: int = 0
    documents_skipped: int = 0
    documents_failed: int = 0
    ingestion_runs: int = 0

    errors_by_category: dict = field(default_factory=lambda: defaultdict(int))
    queries_by_materia: dict = field(default_factory=lambda: defaultdict(int))

    @property
    def avg_latency_ms(self) -> float:
        if self.total_queries == 0:
            return 0
        return self.total_latency_ms / self.total_queries

    def percentile(self, fraction: float) -> float:
        if not self.latencies:
            return 0
        sorted_latencies = sorted(self.latencies)
        index = int(len(sorted_latencies) * fraction)
        return sorted_latencies[min(index, len(sorted_latencies) - 1)]

    @property
    def p95_latency_ms(self) -> float:
        return self.percentile(0.95)

    @property
    def p99_latency_ms(self) -> float:
        return self.percentile(0.99)

    @property
    def error_rate(self) -> float:
        if self.total_queries == 0:
            return 0
        return self.failed_queries / self.total_queries

    def to_dict(self) -> dict:
        """Convert to dictionary for display."""
        return {
            "queries": {
                "total": self.total_queries,
                "successful": self.successful_queries,
                "failed": self.failed_queries,
                "insufficient_evidence": self.insufficient_evidence,
                "error_rate": f"{self.error_rate:.2%}",
            },
            "latency_ms": {
                "avg": round(self.avg_latency_ms, 2),
                "min": round(self.min_latency_ms, 2) if self.min_latency_ms != float('inf') else 0,
                "max": round(self.max_latency_ms, 2),
                "p95": round(self.p95_latency_ms, 2),
                "p99": round(self.p99_latency_ms, 2),
            },
            "validation": {
                "answers_with_warnings": self.answers_with_warnings,
                "hallucination_warnings": self.hallucination_warnings,
            },
            "ingestion": {
                "runs": self.ingestion_runs,
                "documents": self.documents_ingested,
                "skipped": self.documents_skipped,
                "failed": self.documents_failed,
            },
            "errors": dict(self.errors_by_category),
            "materias": dict(self.queries_by_materia),
        }


class MetricsCollector:
    """
    Collects and aggregates system metrics.

    Usage:
        collector = MetricsCollector()

        with collector.track_query(question, materia) as tracker:
            package = service.ask(question)
            tracker.set_results(package.metadata.documents_retrieved)

        metrics = collector.get_metrics()
    """

    _instance = None

    def __new__(cls):
        """Singleton pattern for global metrics collection."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._initialized = False
        return cls._instance

    def __init__(self):
        if self._initialized:
            return

        self.metrics = SystemMetrics()
        self._lock = threading.Lock()
        self._query_history: list[QueryMetrics] = []
        self._max_history = 1000
        self._start_time = datetime.now()
        self._initialized = True

    def reset(self):
        """Reset all metrics (for testing)."""
        with self._lock:
            self.metrics = SystemMetrics()
            self._query_history = []
            self._start_time = datetime.now()

    class QueryTracker:
        """Context manager for tracking one question."""

        def __init__(self, collector: 'MetricsCollector', question: str, materia: Optional[str]):
            self.collector = collector
            self.query = QueryMetrics(
                question=question[:200],
                materia=materia,
                start_time=time.time(),
            )

        def __enter__(self):
            return self

        def __exit__(self, exc_type, exc_val, exc_tb):
            self.query.end_time = time.time()
            self.query.latency_ms = (self.query.end_time - self.query.start_time) * 1000

            if exc_type:
                self.query.error_category = getattr(exc_val, "category", "internal")

            self.collector._record_query(self.query)
            return False  # Don't suppress exceptions

        def set_results(
            self,
            documents_retrieved: int,
            insufficient_evidence: bool = False,
            validation_warnings: int = 0,
        ):
            self.query.documents_retrieved = documents_retrieved
            self.query.insufficient_evidence = insufficient_evidence
            self.query.validation_warnings = validation_warnings

    def track_query(self, question: str, materia: Optional[str] = None) -> QueryTracker:
        return self.QueryTracker(self, question, materia)

    def _record_query(self, query: QueryMetrics):
        with self._lock:
            m = self.metrics
            m.total_queries += 1

            if query.error_category:
                m.failed_queries += 1
                m.errors_by_category[query.error_category] += 1
            else:
                m.successful_queries += 1
                if query.insufficient_evidence:
                    m.insufficient_evidence += 1
                if query.validation_warnings:
                    m.answers_with_warnings += 1
                    m.hallucination_warnings += query.validation_warnings

            m.total_latency_ms += query.latency_ms
            m.min_latency_ms = min(m.min_latency_ms, query.latency_ms)
            m.max_latency_ms = max(m.max_latency_ms, query.latency_ms)
            m.latencies.append(query.latency_ms)
            if len(m.latencies) > self._max_history:
                m.latencies = m.latencies[-self._max_history:]

            m.queries_by_materia[query.materia or "any"] += 1

            self._query_history.append(query)
            if len(self._query_history) > self._max_history:
                self._query_history = self._query_history[-self._max_history:]

    def record_ingestion(self, processed: int, skipped: int, failed: int):
        """Record the outcome of one ingestion run."""
        with self._lock:
            self.metrics.ingestion_runs += 1
            self.metrics.documents_ingested += processed
            self.metrics.documents_skipped += skipped
            self.metrics.documents_failed += failed

    def get_metrics(self) -> SystemMetrics:
        return self.metrics

    def get_metrics_dict(self) -> dict:
        with self._lock:
            return self.metrics.to_dict()

    def get_recent_queries(self, limit: int = 10) -> list[QueryMetrics]:
        return self._query_history[-limit:]

    def get_uptime(self) -> timedelta:
        return datetime.now() - self._start_time


_collector = None


def get_metrics_collector() -> MetricsCollector:
    """Get the global metrics collector instance."""
    global _collector
    if _collector is None:
        _collector = MetricsCollector()
    return _collector
