"""
Vector Store for the Legal Study Assistant

Stores reference documents with exactly one embedding each and ranks them
by cosine similarity to a query vector.

Two implementations share the same method surface:
    PgVectorStore       -- PostgreSQL + pgvector, ranking by the ``<=>`` operator
    InMemoryVectorStore -- brute-force numpy scan, O(n) per query

Both apply metadata filters before ranking and break score ties by
insertion order, so identical inputs always yield identical results.
"""

import logging
import threading
from typing import Optional, Sequence

import numpy as np
import psycopg2
import psycopg2.errors
import psycopg2.extras
import psycopg2.pool

from .config import VectorStoreConfig
from .exceptions import DimensionMismatchError, ProviderCallError
from .models import EmbeddingRecord, ReferenceDocument, ScoredDocument, SearchFilters, utcnow

logger = logging.getLogger(__name__)

DEFAULT_CONNECTION_STRING = "postgresql://localhost:5432/legal_assistant"

DocumentVector = tuple[ReferenceDocument, Sequence[float]]


def _to_pgvector(vector: Sequence[float]) -> str:
    return "[" + ",".join(repr(float(v)) for v in vector) + "]"


class PgVectorStore:
    """
    PostgreSQL vector store with pgvector.

    Features:
    - Cosine similarity search delegated to the database
    - Metadata filtering in the WHERE clause (before ranking)
    - Document and embedding written together per item (savepoints)
    - One reconnect-and-retry on stale connections
    """

    def __init__(self, config: Optional[VectorStoreConfig] = None):
        """
        Initialize vector store.

        Args:
            config: Optional configuration. Uses defaults if not provided.
        """
        self.config = config or VectorStoreConfig()
        self._conn = None
        self._pool = None
        self._connection_string = self.config.connection_string or DEFAULT_CONNECTION_STRING

    @property
    def dimensions(self) -> int:
        return self.config.embedding_dimensions

    def _connect_kwargs(self) -> dict:
        """Keyword arguments for every new connection, bounding connect and statement time."""
        from psycopg2.extras import RealDictCursor

        kwargs = {
            "cursor_factory": RealDictCursor,
            "connect_timeout": self.config.connect_timeout_seconds,
        }
        if self.config.query_timeout_seconds:
            timeout_ms = int(self.config.query_timeout_seconds * 1000)
            kwargs["options"] = f"-c statement_timeout={timeout_ms}"
        return kwargs

    def connect(self) -> None:
        """Establish database connection (with optional pooling)."""
        try:
            if self.config.use_pooling:
                self._pool = psycopg2.pool.ThreadedConnectionPool(
                    minconn=self.config.pool_min_connections,
                    maxconn=self.config.pool_max_connections,
                    dsn=self._connection_string,
                    **self._connect_kwargs(),
                )
                conn = self._pool.getconn()
                try:
                    with conn.cursor() as cur:
                        cur.execute("CREATE EXTENSION IF NOT EXISTS vector")
                    conn.commit()
                finally:
                    self._pool.putconn(conn)
                logger.info(
                    f"Connection pool initialized (min={self.config.pool_min_connections}, "
                    f"max={self.config.pool_max_connections})"
                )
            else:
                self._conn = psycopg2.connect(
                    self._connection_string,
                    **self._connect_kwargs(),
                )
                self._conn.autocommit = False
                with self._conn.cursor() as cur:
                    cur.execute("CREATE EXTENSION IF NOT EXISTS vector")
                self._conn.commit()
                logger.info("Connected to PostgreSQL with pgvector (single connection)")
        except Exception as e:
            logger.error(f"Database connection failed: {e}")
            raise

    def _get_connection(self):
        """Get a connection from the pool, or the single connection."""
        if self._pool:
            return self._pool.getconn()

        if self._conn is not None and self._conn.closed:
            logger.warning("Connection closed, reconnecting...")
            self.connect()

        return self._conn

    def _release_connection(self, conn):
        """Release a connection back to the pool (if pooling is enabled)."""
        if self._pool and conn:
            self._pool.putconn(conn)

    def _ensure_connection(self):
        if not self._conn and not self._pool:
            self.connect()

        try:
            return self._get_connection()
        except (psycopg2.OperationalError, psycopg2.InterfaceError):
            logger.warning("Database error in _ensure_connection, retrying after reconnect...")
            self.connect()
            return self._get_connection()

    def _safe_rollback(self, conn) -> None:
        """Rollback a connection, ignoring errors if the connection is dead."""
        try:
            conn.rollback()
        except (psycopg2.InterfaceError, psycopg2.OperationalError):
            pass

    def _execute_with_retry(self, operation, label="db_operation"):
        """Execute a DB operation with one retry on stale connection.

        Args:
            operation: Callable(conn) that performs the DB work and returns a result.
            label: Human-readable name for logging.

        Returns:
            Whatever ``operation`` returns.
        """
        for attempt in range(2):
            conn = self._ensure_connection()
            try:
                result = operation(conn)
                self._release_connection(conn)
                return result
            except psycopg2.errors.QueryCanceled:
                # statement_timeout fired; the connection is healthy, do not retry
                self._safe_rollback(conn)
                self._release_connection(conn)
                raise
            except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
                self._safe_rollback(conn)
                self._release_connection(conn)
                if attempt == 0:
                    logger.warning(f"{label}: stale conn, reconnecting: {e}")
                    self.close()
                    self.connect()
                    continue
                raise
            except Exception:
                self._safe_rollback(conn)
                self._release_connection(conn)
                raise

    def close(self) -> None:
        """Close database connection(s)."""
        if self._pool:
            self._pool.closeall()
            self._pool = None
            logger.info("Connection pool closed")
        if self._conn:
            self._conn.close()
            self._conn = None

    # =========================================================================
    # Schema
    # =========================================================================

    def initialize_schema(self) -> None:
        """Create tables and indexes if they don't exist."""
        docs = self.config.documents_table
        embs = self.config.embeddings_table

        schema_sql = f"""
        CREATE TABLE IF NOT EXISTS {docs} (
            id BIGSERIAL PRIMARY KEY,
            external_id VARCHAR(255) NOT NULL UNIQUE,
            question TEXT NOT NULL,
            answer TEXT NOT NULL,
            law_reference VARCHAR(500),
            materia VARCHAR(100),
            tags TEXT[] DEFAULT ARRAY[]::TEXT[],
            semester_level INT CHECK (semester_level BETWEEN 1 AND 10),
            source VARCHAR(255) NOT NULL,
            source_url VARCHAR(1000),
            created_at TIMESTAMPTZ DEFAULT NOW(),
            updated_at TIMESTAMPTZ
        );

        -- One embedding per document, removed together with it
        CREATE TABLE IF NOT EXISTS {embs} (
            id BIGSERIAL PRIMARY KEY,
            document_id BIGINT NOT NULL UNIQUE REFERENCES {docs}(id) ON DELETE CASCADE,
            embedding VECTOR({self.config.embedding_dimensions}) NOT NULL,
            dimensions INT NOT NULL,
            model_name VARCHAR(100) NOT NULL,
            model_provider VARCHAR(50) NOT NULL,
            embedding_version INT NOT NULL DEFAULT 1,
            created_at TIMESTAMPTZ DEFAULT NOW()
        );

        CREATE INDEX IF NOT EXISTS idx_{docs}_materia ON {docs}(materia);
        CREATE INDEX IF NOT EXISTS idx_{docs}_source ON {docs}(source);
        CREATE INDEX IF NOT EXISTS idx_{docs}_semester ON {docs}(semester_level);
        CREATE INDEX IF NOT EXISTS idx_{docs}_tags ON {docs} USING GIN (tags);
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(schema_sql)
            conn.commit()
            logger.info("Schema initialized successfully")

        self._execute_with_retry(_op, "initialize_schema")

    def create_vector_index(self, index_type: str = "ivfflat") -> None:
        """
        Create vector index (call after inserting data).

        Args:
            index_type: "ivfflat" (default) or "hnsw"
        """
        embs = self.config.embeddings_table
        if index_type == "hnsw":
            index_sql = f"""
            SET LOCAL statement_timeout = 0;
            DROP INDEX IF EXISTS idx_{embs}_vector;
            CREATE INDEX idx_{embs}_vector
                ON {embs} USING hnsw (embedding vector_cosine_ops)
                WITH (m = 16, ef_construction = 64);
            """
        else:
            index_sql = f"""
            SET LOCAL statement_timeout = 0;
            CREATE INDEX IF NOT EXISTS idx_{embs}_vector
                ON {embs} USING ivfflat (embedding vector_cosine_ops)
                WITH (lists = {self.config.index_lists});
            """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(index_sql)
            conn.commit()
            logger.info(f"Vector index created (type: {index_type})")

        self._execute_with_retry(_op, "create_vector_index")

    # =========================================================================
    # Writes
    # =========================================================================

    def upsert_batch(
        self,
        items: Sequence[DocumentVector],
        model_name: str,
        provider: str,
        skip_existing: bool = False,
    ) -> int:
        """
        Store documents together with their embeddings.

        Each (document, vector) pair is one atomic unit guarded by a savepoint:
        a failing item is rolled back on its own and the batch continues.

        Args:
            items: (document, vector) pairs
            model_name: Embedding model that produced the vectors
            provider: Embedding provider name
            skip_existing: Leave documents whose external id is already stored untouched

        Returns:
            Number of items stored
        """
        if not items:
            return 0

        docs = self.config.documents_table
        embs = self.config.embeddings_table
        conflict = (
            "DO NOTHING"
            if skip_existing
            else """DO UPDATE SET
                question = EXCLUDED.question,
                answer = EXCLUDED.answer,
                law_reference = EXCLUDED.law_reference,
                materia = EXCLUDED.materia,
                tags = EXCLUDED.tags,
                semester_level = EXCLUDED.semester_level,
                source = EXCLUDED.source,
                source_url = EXCLUDED.source_url,
                updated_at = NOW()"""
        )
        doc_sql = f"""
        INSERT INTO {docs} (
            external_id, question, answer, law_reference, materia, tags,
            semester_level, source, source_url, created_at
        ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        ON CONFLICT (external_id) {conflict}
        RETURNING id
        """
        emb_sql = f"""
        INSERT INTO {embs} (
            document_id, embedding, dimensions, model_name, model_provider,
            embedding_version, created_at
        ) VALUES (%s, %s::vector, %s, %s, %s, %s, %s)
        ON CONFLICT (document_id) DO UPDATE SET
            embedding = EXCLUDED.embedding,
            dimensions = EXCLUDED.dimensions,
            model_name = EXCLUDED.model_name,
            model_provider = EXCLUDED.model_provider,
            embedding_version = EXCLUDED.embedding_version,
            created_at = EXCLUDED.created_at
        """

        def _op(conn):
            stored = skipped = failed = 0
            with conn.cursor() as cur:
                for document, vector in items:
                    try:
                        record = EmbeddingRecord(
                            vector=list(vector),
                            dimensions=self.dimensions,
                            model_name=model_name,
                            provider=provider,
                        )
                    except DimensionMismatchError as e:
                        logger.debug(f"Skipping {document.external_id}: {e}")
                        failed += 1
                        continue

                    cur.execute("SAVEPOINT upsert_item")
                    try:
                        cur.execute(doc_sql, (
                            document.external_id,
                            document.question,
                            document.answer,
                            document.law_reference,
                            document.materia,
                            list(document.tags),
                            document.semester_level,
                            document.source,
                            document.source_url,
                            document.created_at,
                        ))
                        row = cur.fetchone()
                        if row is None:
                            skipped += 1
                            cur.execute("RELEASE SAVEPOINT upsert_item")
                            continue
                        cur.execute(emb_sql, (
                            row["id"],
                            _to_pgvector(record.vector),
                            record.dimensions,
                            record.model_name,
                            record.provider,
                            record.embedding_version,
                            record.created_at,
                        ))
                        cur.execute("RELEASE SAVEPOINT upsert_item")
                        document.id = row["id"]
                        stored += 1
                    except psycopg2.DatabaseError as e:
                        if isinstance(e, (psycopg2.OperationalError, psycopg2.InterfaceError)):
                            raise
                        cur.execute("ROLLBACK TO SAVEPOINT upsert_item")
                        logger.debug(f"Failed to store {document.external_id}: {e}")
                        failed += 1
            conn.commit()
            _log_batch(len(items), stored, skipped, failed)
            return stored

        return self._execute_with_retry(_op, "upsert_batch")

    def delete_document(self, document_id: int) -> bool:
        """Delete a document; its embedding is removed by cascade."""
        sql = f"DELETE FROM {self.config.documents_table} WHERE id = %s"

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (document_id,))
                deleted = cur.rowcount > 0
            conn.commit()
            if deleted:
                logger.info(f"Deleted document {document_id}")
            else:
                logger.warning(f"Document {document_id} not found")
            return deleted

        return self._execute_with_retry(_op, "delete_document")

    def delete_by_source(self, source_name: str) -> int:
        """Delete every document from a source. Returns the number removed."""
        sql = f"DELETE FROM {self.config.documents_table} WHERE source = %s"

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (source_name,))
                deleted = cur.rowcount
            conn.commit()
            logger.info(f"Deleted {deleted} documents from source '{source_name}'")
            return deleted

        return self._execute_with_retry(_op, "delete_by_source")

    # =========================================================================
    # Reads
    # =========================================================================

    def find_similar(
        self,
        query_vector: Sequence[float],
        top_k: int,
        filters: Optional[SearchFilters] = None,
    ) -> list[ScoredDocument]:
        """
        Rank stored documents by cosine similarity to ``query_vector``.

        Args:
            query_vector: Query embedding
            top_k: Maximum number of results; 0 or less returns []
            filters: Optional metadata and score constraints

        Returns:
            Results by descending similarity, ties by insertion order

        Raises:
            DimensionMismatchError: query length differs from the store's dimensions
        """
        if len(query_vector) != self.dimensions:
            raise DimensionMismatchError(self.dimensions, len(query_vector))
        if top_k <= 0:
            return []

        docs = self.config.documents_table
        embs = self.config.embeddings_table
        vector_literal = _to_pgvector(query_vector)
        where, params = _filter_clause(filters, vector_literal)

        sql = f"""
        SELECT
            d.id, d.external_id, d.question, d.answer, d.law_reference,
            d.materia, d.tags, d.semester_level, d.source, d.source_url,
            d.created_at, d.updated_at,
            1 - (e.embedding <=> %s::vector) AS score
        FROM {docs} d
        JOIN {embs} e ON e.document_id = d.id
        {where}
        ORDER BY e.embedding <=> %s::vector, d.id
        LIMIT %s
        """
        final_params = [vector_literal] + params + [vector_literal, top_k]

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, final_params)
                rows = cur.fetchall()
            return [
                ScoredDocument(document=_row_to_document(row), score=float(row["score"]))
                for row in rows
            ]

        try:
            results = self._execute_with_retry(_op, "find_similar")
        except psycopg2.errors.QueryCanceled as e:
            raise ProviderCallError(
                "PostgreSQL",
                f"vector search exceeded {self.config.query_timeout_seconds}s: {e}",
            ) from e
        logger.debug(f"find_similar returned {len(results)} documents (top_k={top_k})")
        return results

    def count(self) -> int:
        return self._scalar(f"SELECT COUNT(*) AS n FROM {self.config.documents_table}", ())

    def count_by_source(self, source_name: str) -> int:
        return self._scalar(
            f"SELECT COUNT(*) AS n FROM {self.config.documents_table} WHERE source = %s",
            (source_name,),
        )

    def exists_by_external_id(self, external_id: str) -> bool:
        return self._scalar(
            f"SELECT COUNT(*) AS n FROM {self.config.documents_table} WHERE external_id = %s",
            (external_id,),
        ) > 0

    def _scalar(self, sql: str, params: tuple) -> int:
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, params)
                row = cur.fetchone()
            conn.commit()
            return int(row["n"]) if row else 0

        return self._execute_with_retry(_op, "count")


def _filter_clause(filters: Optional[SearchFilters], vector_literal: str) -> tuple[str, list]:
    """Build the WHERE clause and its parameters for ``find_similar``."""
    if filters is None or not filters.has_filters():
        return "", []

    clauses = []
    params = []
    if filters.materia:
        clauses.append("LOWER(d.materia) = LOWER(%s)")
        params.append(filters.materia)
    if filters.tags:
        clauses.append("d.tags && %s::text[]")
        params.append(list(filters.tags))
    if filters.max_semester_level is not None:
        clauses.append("(d.semester_level IS NULL OR d.semester_level <= %s)")
        params.append(filters.max_semester_level)
    if filters.min_semester_level is not None:
        clauses.append("(d.semester_level IS NULL OR d.semester_level >= %s)")
        params.append(filters.min_semester_level)
    if filters.source_name:
        clauses.append("d.source = %s")
        params.append(filters.source_name)
    if filters.min_similarity_score is not None:
        clauses.append("1 - (e.embedding <=> %s::vector) >= %s")
        params.extend([vector_literal, filters.min_similarity_score])

    return "WHERE " + " AND ".join(clauses), params


def _row_to_document(row) -> ReferenceDocument:
    return ReferenceDocument(
        id=row["id"],
        external_id=row["external_id"],
        question=row["question"],
        answer=row["answer"],
        law_reference=row["law_reference"],
        materia=row["materia"],
        tags=list(row["tags"] or []),
        semester_level=row["semester_level"],
        source=row["source"],
        source_url=row["source_url"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _log_batch(total: int, stored: int, skipped: int, failed: int) -> None:
    if failed:
        logger.warning(
            f"Batch upsert: {stored}/{total} stored, {skipped} skipped, {failed} failed"
        )
    else:
        logger.info(f"Batch upsert: {stored}/{total} stored, {skipped} skipped")


class InMemoryVectorStore:
    """
    Brute-force cosine similarity over vectors held in memory.

    Every query scans all candidates that pass the filters, so cost is O(n)
    per query. Suitable for development, tests and small corpora.
    """

    def __init__(self, config: Optional[VectorStoreConfig] = None):
        self.config = config or VectorStoreConfig()
        self._documents: dict[int, ReferenceDocument] = {}
        self._embeddings: dict[int, EmbeddingRecord] = {}
        self._ids_by_external: dict[str, int] = {}
        self._next_id = 1
        self._lock = threading.Lock()

    @property
    def dimensions(self) -> int:
        return self.config.embedding_dimensions

    def initialize_schema(self) -> None:
        logger.debug("In-memory store needs no schema")

    def create_vector_index(self, index_type: str = "ivfflat") -> None:
        logger.debug("In-memory store scans every vector; no index to build")

    def close(self) -> None:
        pass

    def upsert_batch(
        self,
        items: Sequence[DocumentVector],
        model_name: str,
        provider: str,
        skip_existing: bool = False,
    ) -> int:
        """Same contract as ``PgVectorStore.upsert_batch``."""
        stored = skipped = failed = 0
        with self._lock:
            for document, vector in items:
                existing_id = self._ids_by_external.get(document.external_id)
                if existing_id is not None and skip_existing:
                    skipped += 1
                    continue
                try:
                    record = EmbeddingRecord(
                        vector=[float(v) for v in vector],
                        dimensions=self.dimensions,
                        model_name=model_name,
                        provider=provider,
                    )
                except DimensionMismatchError as e:
                    logger.debug(f"Skipping {document.external_id}: {e}")
                    failed += 1
                    continue

                if existing_id is None:
                    doc_id = self._next_id
                    self._next_id += 1
                else:
                    doc_id = existing_id
                    document.updated_at = utcnow()

                document.id = doc_id
                record.document_id = doc_id
                self._documents[doc_id] = document
                self._embeddings[doc_id] = record
                self._ids_by_external[document.external_id] = doc_id
                stored += 1

        _log_batch(len(items), stored, skipped, failed)
        return stored

    def delete_document(self, document_id: int) -> bool:
        with self._lock:
            document = self._documents.pop(document_id, None)
            if document is None:
                return False
            self._embeddings.pop(document_id, None)
            self._ids_by_external.pop(document.external_id, None)
        return True

    def delete_by_source(self, source_name: str) -> int:
        with self._lock:
            doomed = [i for i, d in self._documents.items() if d.source == source_name]
            for doc_id in doomed:
                document = self._documents.pop(doc_id)
                self._embeddings.pop(doc_id, None)
                self._ids_by_external.pop(document.external_id, None)
        logger.info(f"Deleted {len(doomed)} documents from source '{source_name}'")
        return len(doomed)

    def find_similar(
        self,
        query_vector: Sequence[float],
        top_k: int,
        filters: Optional[SearchFilters] = None,
    ) -> list[ScoredDocument]:
        """Same contract as ``PgVectorStore.find_similar``."""
        if len(query_vector) != self.dimensions:
            raise DimensionMismatchError(self.dimensions, len(query_vector))
        if top_k <= 0:
            return []

        with self._lock:
            candidates = [
                self._documents[doc_id]
                for doc_id in sorted(self._documents)
                if filters is None or filters.matches(self._documents[doc_id])
            ]
            if not candidates:
                return []
            matrix = np.array([self._embeddings[d.id].vector for d in candidates])

        query = np.array(query_vector, dtype=float)
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        dots = matrix @ query
        scores = np.divide(dots, norms, out=np.zeros_like(dots), where=norms != 0)

        # Stable sort keeps insertion order among equal scores
        order = np.argsort(-scores, kind="stable")

        min_score = filters.min_similarity_score if filters else None
        results = []
        for idx in order:
            score = float(scores[idx])
            if min_score is not None and score < min_score:
                break
            results.append(ScoredDocument(document=candidates[idx], score=score))
            if len(results) >= top_k:
                break
        return results

    def count(self) -> int:
        return len(self._documents)

    def count_by_source(self, source_name: str) -> int:
        return sum(1 for d in self._documents.values() if d.source == source_name)

    def exists_by_external_id(self, external_id: str) -> bool:
        return external_id in self._ids_by_external


def get_vector_store(config: VectorStoreConfig):
    """Return a pgvector store when a database is configured, else the in-memory one."""
    if config.connection_string:
        return PgVectorStore(config)
    logger.warning(
        "No POSTGRES_URL or DATABASE_URL configured. Using the in-memory vector store; "
        "documents are lost on restart."
    )
    return InMemoryVectorStore(config)
