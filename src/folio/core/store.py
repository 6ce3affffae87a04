"""Corpus persistence: documents, jobs, staged chunks and the committed vector store."""

import threading
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Sequence

import numpy as np

from .errors import CommitError, DocumentNotFoundError, FolioError, InvalidTransitionError
from .models import (
    Chunk,
    Document,
    DocumentStatus,
    IngestionJob,
    JobStatus,
    SearchResult,
    utcnow,
)


class CorpusStore(ABC):
    """Transactional storage used by the orchestrator and the retriever.

    Staged chunks are invisible to ``search``/``has_any_chunks`` until
    ``commit_job`` moves them, all at once, into the committed store.
    """

    @abstractmethod
    def create_document_with_job(self, document: Document, job: IngestionJob) -> None:
        """Persist a document and its ingestion job in one atomic step."""

    @abstractmethod
    def get_document(self, document_id: str) -> Optional[Document]:
        ...

    @abstractmethod
    def list_documents(self) -> List[Document]:
        """All documents, newest first."""

    @abstractmethod
    def delete_document(self, document_id: str) -> bool:
        """Delete a document, cascading to its chunks, jobs and staged rows."""

    @abstractmethod
    def get_job(self, job_id: str) -> Optional[IngestionJob]:
        ...

    @abstractmethod
    def get_job_for_document(self, document_id: str) -> Optional[IngestionJob]:
        """Most recent ingestion job of a document."""

    @abstractmethod
    def insert_staged_batch(self, chunks: Sequence[Chunk]) -> int:
        """Insert one batch of staged chunks in its own transaction."""

    @abstractmethod
    def increment_completed_workers(self, job_id: str) -> int:
        """Atomically bump the job's completed worker counter; returns the new value."""

    @abstractmethod
    def mark_committing(self, job_id: str, document_id: str) -> None:
        """Move the job from processing to committing."""

    @abstractmethod
    def commit_job(self, job_id: str, document_id: str) -> int:
        """
        Move all staged chunks of a job into the committed store.

        One transaction: copy staged rows, delete them, mark document and job
        complete. On any error nothing is applied.

        Returns:
            Number of chunks committed
        """

    @abstractmethod
    def fail_job(self, job_id: str, document_id: str, error: str) -> int:
        """
        Mark job and document failed and delete the job's staged rows.

        Missing rows (e.g. a document deleted mid-flight) are tolerated.

        Returns:
            Number of staged rows removed
        """

    @abstractmethod
    def count_staged(self, job_id: str) -> int:
        ...

    @abstractmethod
    def count_chunks(self, document_id: Optional[str] = None) -> int:
        ...

    @abstractmethod
    def list_chunks(self, document_id: str) -> List[Chunk]:
        """Committed chunks of a document in reading order (page, chunk index)."""

    @abstractmethod
    def has_any_chunks(self) -> bool:
        ...

    @abstractmethod
    def search(self, query_vector: Sequence[float], topic: Optional[str] = None, k: int = 5) -> List[SearchResult]:
        """Top-k committed chunks by ascending cosine distance."""


def cosine_distances(query_vector: Sequence[float], matrix: np.ndarray) -> np.ndarray:
    """Cosine distance (1 - cosine similarity) of each row to the query; zero vectors get 1.0."""
    query = np.asarray(query_vector, dtype=np.float64)
    query_norm = np.linalg.norm(query)
    row_norms = np.linalg.norm(matrix, axis=1)
    denominator = row_norms * query_norm
    similarities = np.divide(
        matrix @ query,
        denominator,
        out=np.zeros(len(matrix), dtype=np.float64),
        where=denominator > 0,
    )
    return 1.0 - similarities


class MemoryStore(CorpusStore):
    """In-process store with the same transactional guarantees as PostgreSQL.

    Every public method runs under one lock, and ``commit_job`` builds the new
    state completely before applying it, so a failure mid-copy leaves both the
    committed store and staging untouched.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._documents: Dict[str, Document] = {}
        self._jobs: Dict[str, IngestionJob] = {}
        self._chunks: Dict[str, Chunk] = {}
        self._staging: Dict[str, Chunk] = {}

    def create_document_with_job(self, document: Document, job: IngestionJob) -> None:
        with self._lock:
            if document.id in self._documents or job.id in self._jobs:
                raise ValueError("Duplicate document or job id")
            self._documents[document.id] = document.model_copy(deep=True)
            self._jobs[job.id] = job.model_copy(deep=True)

    def get_document(self, document_id: str) -> Optional[Document]:
        with self._lock:
            document = self._documents.get(document_id)
            return document.model_copy(deep=True) if document else None

    def list_documents(self) -> List[Document]:
        with self._lock:
            documents = [d.model_copy(deep=True) for d in self._documents.values()]
        return sorted(documents, key=lambda d: d.created_at, reverse=True)

    def delete_document(self, document_id: str) -> bool:
        with self._lock:
            if self._documents.pop(document_id, None) is None:
                return False
            job_ids = {j.id for j in self._jobs.values() if j.document_id == document_id}
            for job_id in job_ids:
                del self._jobs[job_id]
            self._staging = {k: c for k, c in self._staging.items() if c.job_id not in job_ids}
            self._chunks = {k: c for k, c in self._chunks.items() if c.document_id != document_id}
            return True

    def get_job(self, job_id: str) -> Optional[IngestionJob]:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job else None

    def get_job_for_document(self, document_id: str) -> Optional[IngestionJob]:
        with self._lock:
            jobs = [j for j in self._jobs.values() if j.document_id == document_id]
            if not jobs:
                return None
            return max(jobs, key=lambda j: j.created_at).model_copy(deep=True)

    def insert_staged_batch(self, chunks: Sequence[Chunk]) -> int:
        with self._lock:
            for chunk in chunks:
                if chunk.job_id not in self._jobs:
                    raise DocumentNotFoundError(chunk.document_id)
            for chunk in chunks:
                self._staging[chunk.id] = chunk.model_copy(deep=True)
            return len(chunks)

    def increment_completed_workers(self, job_id: str) -> int:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise DocumentNotFoundError(job_id)
            job.completed_workers += 1
            job.updated_at = utcnow()
            return job.completed_workers

    def mark_committing(self, job_id: str, document_id: str) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise DocumentNotFoundError(document_id)
            job.status = job.status.transition(JobStatus.COMMITTING)
            job.updated_at = utcnow()

    def _copy_staged(self, staged: List[Chunk]) -> List[Chunk]:
        """Committed-form copies of staged rows."""
        return [chunk.model_copy(update={"job_id": None}, deep=True) for chunk in staged]

    def commit_job(self, job_id: str, document_id: str) -> int:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise DocumentNotFoundError(document_id)
            if job.status != JobStatus.COMMITTING:
                raise InvalidTransitionError("job", job.status.value, JobStatus.COMPLETE.value)
            if job.completed_workers != job.total_workers:
                raise CommitError(
                    f"Only {job.completed_workers}/{job.total_workers} workers completed"
                )
            document = self._documents.get(document_id)
            if document is None:
                raise DocumentNotFoundError(document_id)
            new_document_status = document.status.transition(DocumentStatus.COMPLETE)

            staged = [c for c in self._staging.values() if c.job_id == job_id]
            committed = self._copy_staged(staged)

            # Nothing below can fail; apply the whole transaction.
            for chunk in committed:
                self._chunks[chunk.id] = chunk
            for chunk in staged:
                del self._staging[chunk.id]
            document.status = new_document_status
            document.error_detail = None
            job.status = JobStatus.COMPLETE
            job.updated_at = utcnow()
            return len(committed)

    def fail_job(self, job_id: str, document_id: str, error: str) -> int:
        with self._lock:
            staged_ids = [k for k, c in self._staging.items() if c.job_id == job_id]
            for key in staged_ids:
                del self._staging[key]

            job = self._jobs.get(job_id)
            if job is not None and job.status.can_transition_to(JobStatus.FAILED):
                job.status = JobStatus.FAILED
                job.error_detail = error
                job.updated_at = utcnow()

            document = self._documents.get(document_id)
            if document is not None and document.status.can_transition_to(DocumentStatus.FAILED):
                document.status = DocumentStatus.FAILED
                document.error_detail = error
            return len(staged_ids)

    def count_staged(self, job_id: str) -> int:
        with self._lock:
            return sum(1 for c in self._staging.values() if c.job_id == job_id)

    def count_chunks(self, document_id: Optional[str] = None) -> int:
        with self._lock:
            if document_id is None:
                return len(self._chunks)
            return sum(1 for c in self._chunks.values() if c.document_id == document_id)

    def list_chunks(self, document_id: str) -> List[Chunk]:
        with self._lock:
            chunks = [c.model_copy(deep=True) for c in self._chunks.values() if c.document_id == document_id]
        return sorted(chunks, key=lambda c: (c.page_number, c.chunk_index))

    def has_any_chunks(self) -> bool:
        with self._lock:
            return bool(self._chunks)

    def search(self, query_vector: Sequence[float], topic: Optional[str] = None, k: int = 5) -> List[SearchResult]:
        with self._lock:
            candidates = [
                c.model_copy(deep=True) for c in self._chunks.values()
                if topic is None or c.topic == topic
            ]
        if not candidates or k < 1:
            return []

        try:
            matrix = np.array([c.embedding for c in candidates], dtype=np.float64)
            distances = cosine_distances(query_vector, matrix)
        except ValueError as e:
            # Ragged or mismatched vector dimensions
            raise FolioError(f"Vector search failed: {e}") from e
        order = np.argsort(distances, kind="stable")[:k]
        return [SearchResult(chunk=candidates[i], distance=float(distances[i])) for i in order]
