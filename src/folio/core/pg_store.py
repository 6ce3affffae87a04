"""PostgreSQL + pgvector implementation of the corpus store."""

import json
import logging
from contextlib import contextmanager
from typing import Iterator, List, Optional, Sequence, Type

import psycopg

from .errors import CommitError, DocumentNotFoundError, FolioError, InvalidTransitionError
from .models import (
    DOCUMENT_TRANSITIONS,
    JOB_TRANSITIONS,
    Chunk,
    Document,
    DocumentStatus,
    IngestionJob,
    JobStatus,
    SearchResult,
    sources_for,
)
from .schema import DROP_STATEMENTS, schema_statements
from .store import CorpusStore

logger = logging.getLogger(__name__)

DOCUMENT_COLUMNS = "id::text, title, topic, initiator, status, error_detail, created_at"
JOB_COLUMNS = (
    "id::text, document_id::text, total_workers, completed_workers, status, "
    "error_detail, created_at, updated_at"
)
CHUNK_COLUMNS = (
    "id::text, document_id::text, topic, text, embedding::text, page_number, "
    "chunk_index, title, created_at"
)


def to_vector_literal(vector: Sequence[float]) -> str:
    """Format a vector as a pgvector text literal, e.g. '[0.1,0.2]'."""
    return "[" + ",".join(repr(float(x)) for x in vector) + "]"


def parse_vector(value: str) -> List[float]:
    return [float(x) for x in json.loads(value)]


def _document_from_row(row) -> Document:
    return Document(
        id=row[0], title=row[1], topic=row[2], initiator=row[3],
        status=DocumentStatus(row[4]), error_detail=row[5], created_at=row[6],
    )


def _job_from_row(row) -> IngestionJob:
    return IngestionJob(
        id=row[0], document_id=row[1], total_workers=row[2], completed_workers=row[3],
        status=JobStatus(row[4]), error_detail=row[5], created_at=row[6], updated_at=row[7],
    )


def _chunk_from_row(row) -> Chunk:
    return Chunk(
        id=row[0], document_id=row[1], topic=row[2], text=row[3],
        embedding=parse_vector(row[4]), page_number=row[5], chunk_index=row[6],
        title=row[7], created_at=row[8],
    )


class PostgresStore(CorpusStore):
    """Corpus store backed by PostgreSQL with the pgvector extension.

    Each operation opens its own connection, so the store can be shared by
    every worker thread of every job.
    """

    def __init__(self, db_url: str, dimensions: int = 1536):
        self.db_url = db_url
        self.dimensions = dimensions

    @contextmanager
    def _connection(self, action: str, error: Type[FolioError] = FolioError) -> Iterator[psycopg.Connection]:
        """Open a connection for one operation; driver errors surface as ``error``."""
        try:
            with psycopg.connect(self.db_url) as conn:
                yield conn
        except psycopg.Error as e:
            raise error(f"{action} failed: {e}") from e

    def create_schema(self) -> None:
        """Create the extension, tables and indexes if they do not exist."""
        with self._connection("Schema creation") as conn:
            with conn.cursor() as cur:
                for statement in schema_statements(self.dimensions):
                    cur.execute(statement)
            conn.commit()
        logger.info(f"Schema ready (vector dimensions: {self.dimensions})")

    def drop_schema(self) -> None:
        with self._connection("Schema removal") as conn:
            with conn.cursor() as cur:
                for statement in DROP_STATEMENTS:
                    cur.execute(statement)
            conn.commit()

    def create_document_with_job(self, document: Document, job: IngestionJob) -> None:
        with self._connection("Document creation") as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    INSERT INTO documents (id, title, topic, initiator, status, error_detail, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                """, (
                    document.id, document.title, document.topic, document.initiator,
                    document.status.value, document.error_detail, document.created_at,
                ))
                cur.execute("""
                    INSERT INTO ingestion_jobs
                        (id, document_id, total_workers, completed_workers, status, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                """, (
                    job.id, job.document_id, job.total_workers, job.completed_workers,
                    job.status.value, job.created_at, job.updated_at,
                ))
            conn.commit()

    def get_document(self, document_id: str) -> Optional[Document]:
        with self._connection("Document lookup") as conn:
            with conn.cursor() as cur:
                cur.execute(f"SELECT {DOCUMENT_COLUMNS} FROM documents WHERE id = %s", (document_id,))
                row = cur.fetchone()
        return _document_from_row(row) if row else None

    def list_documents(self) -> List[Document]:
        with self._connection("Document listing") as conn:
            with conn.cursor() as cur:
                cur.execute(f"SELECT {DOCUMENT_COLUMNS} FROM documents ORDER BY created_at DESC")
                rows = cur.fetchall()
        return [_document_from_row(row) for row in rows]

    def delete_document(self, document_id: str) -> bool:
        with self._connection("Document deletion") as conn:
            with conn.cursor() as cur:
                cur.execute("DELETE FROM documents WHERE id = %s", (document_id,))
                deleted = cur.rowcount > 0
            conn.commit()
        return deleted

    def get_job(self, job_id: str) -> Optional[IngestionJob]:
        with self._connection("Job lookup") as conn:
            with conn.cursor() as cur:
                cur.execute(f"SELECT {JOB_COLUMNS} FROM ingestion_jobs WHERE id = %s", (job_id,))
                row = cur.fetchone()
        return _job_from_row(row) if row else None

    def get_job_for_document(self, document_id: str) -> Optional[IngestionJob]:
        with self._connection("Job lookup") as conn:
            with conn.cursor() as cur:
                cur.execute(f"""
                    SELECT {JOB_COLUMNS} FROM ingestion_jobs
                    WHERE document_id = %s
                    ORDER BY created_at DESC
                    LIMIT 1
                """, (document_id,))
                row = cur.fetchone()
        return _job_from_row(row) if row else None

    def insert_staged_batch(self, chunks: Sequence[Chunk]) -> int:
        if not chunks:
            return 0
        with self._connection("Staging insert") as conn:
            try:
                with conn.cursor() as cur:
                    cur.executemany("""
                        INSERT INTO document_chunks_staging
                            (id, job_id, document_id, topic, text, embedding, page_number, chunk_index, title)
                        VALUES (%s, %s, %s, %s, %s, %s::vector, %s, %s, %s)
                    """, [
                        (
                            c.id, c.job_id, c.document_id, c.topic, c.text,
                            to_vector_literal(c.embedding), c.page_number, c.chunk_index, c.title,
                        )
                        for c in chunks
                    ])
            except psycopg.errors.ForeignKeyViolation as e:
                # The job row is gone: its document was deleted mid-flight
                raise DocumentNotFoundError(chunks[0].document_id) from e
            conn.commit()
        return len(chunks)

    def increment_completed_workers(self, job_id: str) -> int:
        with self._connection("Worker completion update") as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    UPDATE ingestion_jobs
                    SET completed_workers = completed_workers + 1, updated_at = now()
                    WHERE id = %s
                    RETURNING completed_workers
                """, (job_id,))
                row = cur.fetchone()
            conn.commit()
        if row is None:
            raise DocumentNotFoundError(job_id)
        return row[0]

    def mark_committing(self, job_id: str, document_id: str) -> None:
        with self._connection("Job state update") as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT status FROM ingestion_jobs WHERE id = %s FOR UPDATE", (job_id,))
                row = cur.fetchone()
                if row is None:
                    raise DocumentNotFoundError(document_id)
                JobStatus(row[0]).transition(JobStatus.COMMITTING)
                cur.execute("""
                    UPDATE ingestion_jobs SET status = %s, updated_at = now() WHERE id = %s
                """, (JobStatus.COMMITTING.value, job_id))
            conn.commit()

    def commit_job(self, job_id: str, document_id: str) -> int:
        with self._connection("Commit transaction", CommitError) as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    SELECT total_workers, completed_workers, status
                    FROM ingestion_jobs WHERE id = %s FOR UPDATE
                """, (job_id,))
                job = cur.fetchone()
                if job is None:
                    raise DocumentNotFoundError(document_id)
                total_workers, completed_workers, status = job
                if status != JobStatus.COMMITTING.value:
                    raise InvalidTransitionError("job", status, JobStatus.COMPLETE.value)
                if completed_workers != total_workers:
                    raise CommitError(f"Only {completed_workers}/{total_workers} workers completed")

                cur.execute("SELECT status FROM documents WHERE id = %s FOR UPDATE", (document_id,))
                document = cur.fetchone()
                if document is None:
                    raise DocumentNotFoundError(document_id)
                DocumentStatus(document[0]).transition(DocumentStatus.COMPLETE)

                cur.execute("""
                    INSERT INTO document_chunks
                        (id, document_id, topic, text, embedding, page_number, chunk_index, title, created_at)
                    SELECT id, document_id, topic, text, embedding, page_number, chunk_index, title, created_at
                    FROM document_chunks_staging
                    WHERE job_id = %s
                """, (job_id,))
                committed = cur.rowcount

                cur.execute("DELETE FROM document_chunks_staging WHERE job_id = %s", (job_id,))
                cur.execute("""
                    UPDATE documents SET status = %s, error_detail = NULL WHERE id = %s
                """, (DocumentStatus.COMPLETE.value, document_id))
                cur.execute("""
                    UPDATE ingestion_jobs SET status = %s, updated_at = now() WHERE id = %s
                """, (JobStatus.COMPLETE.value, job_id))
            conn.commit()
        return committed

    def fail_job(self, job_id: str, document_id: str, error: str) -> int:
        with self._connection("Failure cleanup") as conn:
            with conn.cursor() as cur:
                cur.execute("DELETE FROM document_chunks_staging WHERE job_id = %s", (job_id,))
                removed = cur.rowcount
                cur.execute("""
                    UPDATE ingestion_jobs
                    SET status = %s, error_detail = %s, updated_at = now()
                    WHERE id = %s AND status = ANY(%s)
                """, (
                    JobStatus.FAILED.value, error, job_id,
                    sources_for(JobStatus.FAILED, JOB_TRANSITIONS),
                ))
                cur.execute("""
                    UPDATE documents
                    SET status = %s, error_detail = %s
                    WHERE id = %s AND status = ANY(%s)
                """, (
                    DocumentStatus.FAILED.value, error, document_id,
                    sources_for(DocumentStatus.FAILED, DOCUMENT_TRANSITIONS),
                ))
            conn.commit()
        return removed

    def count_staged(self, job_id: str) -> int:
        with self._connection("Staging count") as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT COUNT(*) FROM document_chunks_staging WHERE job_id = %s", (job_id,))
                return cur.fetchone()[0]

    def count_chunks(self, document_id: Optional[str] = None) -> int:
        with self._connection("Chunk count") as conn:
            with conn.cursor() as cur:
                if document_id is None:
                    cur.execute("SELECT COUNT(*) FROM document_chunks")
                else:
                    cur.execute("SELECT COUNT(*) FROM document_chunks WHERE document_id = %s", (document_id,))
                return cur.fetchone()[0]

    def list_chunks(self, document_id: str) -> List[Chunk]:
        with self._connection("Chunk listing") as conn:
            with conn.cursor() as cur:
                cur.execute(f"""
                    SELECT {CHUNK_COLUMNS} FROM document_chunks
                    WHERE document_id = %s
                    ORDER BY page_number, chunk_index
                """, (document_id,))
                rows = cur.fetchall()
        return [_chunk_from_row(row) for row in rows]

    def has_any_chunks(self) -> bool:
        with self._connection("Corpus lookup") as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT EXISTS (SELECT 1 FROM document_chunks)")
                return bool(cur.fetchone()[0])

    def search(self, query_vector: Sequence[float], topic: Optional[str] = None, k: int = 5) -> List[SearchResult]:
        if k < 1:
            return []
        vector = to_vector_literal(query_vector)
        with self._connection("Vector search") as conn:
            with conn.cursor() as cur:
                if topic is None:
                    cur.execute(f"""
                        SELECT {CHUNK_COLUMNS}, embedding <=> %s::vector AS distance
                        FROM document_chunks
                        ORDER BY distance
                        LIMIT %s
                    """, (vector, k))
                else:
                    cur.execute(f"""
                        SELECT {CHUNK_COLUMNS}, embedding <=> %s::vector AS distance
                        FROM document_chunks
                        WHERE topic = %s
                        ORDER BY distance
                        LIMIT %s
                    """, (vector, topic, k))
                rows = cur.fetchall()

        return [SearchResult(chunk=_chunk_from_row(row), distance=float(row[9])) for row in rows]
