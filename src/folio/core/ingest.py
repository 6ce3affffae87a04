"""Ingestion orchestrator: parallel page workers, staging and all-or-nothing commit."""

import logging
import threading
import time
import uuid
from concurrent.futures import ALL_COMPLETED, Future, ThreadPoolExecutor, wait
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .chunking import ChunkingConfig, chunk_page
from .config import Settings
from .embed import EmbeddingGateway, batched
from .errors import CallerError, ConfigurationError, FolioError, InvalidIdentifierError
from .extract import PageExtractor, TextSource, get_text_source
from .logging_config import (
    get_audit_logger,
    log_commit_event,
    log_failure_event,
    log_ingestion_event,
)
from .models import Chunk, Document, DocumentStatus, IngestionJob, JobStatus
from .partition import PageRange, partition_pages
from .store import CorpusStore

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 500
PROGRESS_LOG_INTERVAL = 50


def validate_uuid(value: str, name: str) -> str:
    """Return ``value`` if it is a well-formed UUID, else raise InvalidIdentifierError."""
    try:
        uuid.UUID(str(value))
    except (ValueError, TypeError, AttributeError) as e:
        raise InvalidIdentifierError(f"Invalid {name}: {value!r}") from e
    return value


def _validate_identifiers(document_id: str, job_id: str, topic: str) -> None:
    validate_uuid(document_id, "document id")
    validate_uuid(job_id, "job id")
    if not topic or not topic.strip():
        raise InvalidIdentifierError("Topic identifier is empty")


class IngestionOrchestrator:
    """
    Turns an uploaded PDF into committed, searchable chunks.

    ``start_ingestion`` persists the document and its job, hands the file to a
    background coordinator thread and returns at once. The coordinator splits
    the pages across a per-job pool of workers; each worker extracts, chunks,
    embeds and stages its pages. Staged rows become visible only when every
    worker has finished and the commit transaction succeeds. Any failure marks
    the job and document failed and removes the staged rows.
    """

    def __init__(
        self,
        store: CorpusStore,
        embedder: Optional[EmbeddingGateway],
        text_source: Optional[TextSource],
        settings: Optional[Settings] = None
    ):
        self.store = store
        self.embedder = embedder
        self.text_source = text_source
        self.settings = settings or Settings()
        self.worker_count = self.settings.worker_count
        self.processing_dir = Path(self.settings.processing_dir)
        self.chunking = ChunkingConfig(
            chunk_size=self.settings.chunk_size,
            chunk_overlap=self.settings.chunk_overlap,
            lookahead_chars=self.settings.lookahead_chars,
            min_chunk_chars=self.settings.min_chunk_chars,
            sentence_boundaries=self.settings.sentence_boundaries,
        )
        self.audit = get_audit_logger("ingestion")
        self._lock = threading.Lock()
        self._futures: Dict[str, Future] = {}

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: CorpusStore,
        embedder: Optional[EmbeddingGateway] = None,
        text_source: Optional[TextSource] = None
    ) -> "IngestionOrchestrator":
        return cls(
            store=store,
            embedder=embedder or EmbeddingGateway.from_settings(settings),
            text_source=text_source or get_text_source(settings.extract_backend),
            settings=settings,
        )

    # Public API

    def start_ingestion(
        self,
        file_bytes: bytes,
        title: str,
        topic: str,
        initiator: Optional[str] = None
    ) -> Tuple[str, str]:
        """
        Accept an upload and start processing it in the background.

        Args:
            file_bytes: Raw PDF content
            title: Display title copied onto every chunk
            topic: Category tag used to filter retrieval
            initiator: Who started the ingestion (optional)

        Returns:
            (document_id, job_id)

        Raises:
            CallerError: if the upload is empty or title/topic are missing
        """
        if self.embedder is None or self.text_source is None:
            raise ConfigurationError("Ingestion requires an embedding gateway and a text source")
        if not file_bytes:
            raise CallerError("Uploaded file is empty")
        if not title or not title.strip():
            raise CallerError("Title is required")
        if len(title.strip()) > MAX_TITLE_LENGTH:
            raise CallerError(f"Title is too long (max {MAX_TITLE_LENGTH} characters)")
        if not topic or not topic.strip():
            raise CallerError("Topic is required")

        title = title.strip()
        topic = topic.strip()
        document = Document(
            id=str(uuid.uuid4()),
            title=title,
            topic=topic,
            initiator=initiator,
            status=DocumentStatus.PENDING.transition(DocumentStatus.PROCESSING),
        )
        job = IngestionJob(
            id=str(uuid.uuid4()),
            document_id=document.id,
            total_workers=self.worker_count,
        )
        self.store.create_document_with_job(document, job)

        future: Future = Future()
        with self._lock:
            self._futures[job.id] = future

        log_ingestion_event(
            self.audit, "ingestion_started", document.id, job.id,
            title=title, topic=topic, initiator=initiator,
            total_workers=self.worker_count, file_size=len(file_bytes),
        )
        coordinator = threading.Thread(
            target=self._run_job,
            args=(document.id, job.id, file_bytes, title, topic, future),
            name=f"folio-job-{job.id[:8]}",
            # Not a daemon: interpreter exit waits for the job to terminate
            daemon=False,
        )
        coordinator.start()
        return document.id, job.id

    def wait(self, job_id: str, timeout: Optional[float] = None) -> Optional[JobStatus]:
        """
        Block until a job started by this orchestrator terminates.

        Returns:
            Final job status, or the stored status for jobs not run here
            (or already waited on)
        """
        with self._lock:
            future = self._futures.get(job_id)
        if future is None:
            job = self.store.get_job(job_id)
            return job.status if job else None
        status = future.result(timeout=timeout)
        self._forget(job_id)
        return status

    def shutdown(self, timeout: Optional[float] = None) -> None:
        """Wait for every in-flight job to terminate."""
        with self._lock:
            futures = dict(self._futures)
        wait(futures.values(), timeout=timeout, return_when=ALL_COMPLETED)
        for job_id, future in futures.items():
            if future.done():
                self._forget(job_id)

    def _forget(self, job_id: str) -> None:
        with self._lock:
            self._futures.pop(job_id, None)

    def get_document(self, document_id: str) -> Optional[Document]:
        validate_uuid(document_id, "document id")
        return self.store.get_document(document_id)

    def get_job(self, document_id: str) -> Optional[IngestionJob]:
        validate_uuid(document_id, "document id")
        return self.store.get_job_for_document(document_id)

    def list_documents(self) -> List[Document]:
        return self.store.list_documents()

    def delete_document(self, document_id: str) -> bool:
        """
        Delete a document with its chunks, jobs and staged rows.

        Deleting a document whose job is still running is allowed; that job
        then fails when it next touches its rows.
        """
        validate_uuid(document_id, "document id")
        job = self.store.get_job_for_document(document_id)
        if job is not None and not job.status.is_terminal:
            logger.warning(
                f"Deleting document {document_id} while job {job.id} is {job.status.value}"
            )

        deleted = self.store.delete_document(document_id)
        if deleted:
            self.audit.info(
                "document_deleted",
                document_id=document_id,
                job_status=job.status.value if job else None,
                event_type="document_deletion",
            )
        return deleted

    # Background processing

    def _write_processing_file(self, document_id: str, file_bytes: bytes) -> Path:
        self.processing_dir.mkdir(parents=True, exist_ok=True)
        pdf_path = self.processing_dir / f"{document_id}.pdf"
        pdf_path.write_bytes(file_bytes)
        return pdf_path

    def _remove_processing_file(self, pdf_path: Path) -> None:
        try:
            pdf_path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Could not remove processing file {pdf_path}: {e}")

    def _run_job(
        self,
        document_id: str,
        job_id: str,
        file_bytes: bytes,
        title: str,
        topic: str,
        future: Future
    ) -> None:
        started = time.time()
        pdf_path: Optional[Path] = None
        extractor: Optional[PageExtractor] = None
        status = JobStatus.FAILED
        try:
            # Identifiers end up in the temp file name, so check them first
            _validate_identifiers(document_id, job_id, topic)
            try:
                pdf_path = self._write_processing_file(document_id, file_bytes)
            except OSError as e:
                raise FolioError(f"Could not store uploaded file: {e}") from e
            extractor = PageExtractor(self.text_source, pdf_path, document_id)
            total_pages = extractor.page_count()
            ranges = partition_pages(total_pages, self.worker_count)
            logger.info(
                f"Job {job_id}: {total_pages} pages across {self.worker_count} workers "
                f"({', '.join(str(r) for r in ranges)})"
            )

            self._run_workers(ranges, extractor, total_pages, document_id, job_id, title, topic)

            self.store.mark_committing(job_id, document_id)
            committed = self.store.commit_job(job_id, document_id)
            log_commit_event(
                self.audit, document_id, job_id,
                chunks_committed=committed,
                processing_time_ms=(time.time() - started) * 1000,
            )
            logger.info(f"Document {document_id} committed with {committed} chunks")
            status = JobStatus.COMPLETE
        except Exception as e:
            # Every failure ends in a recorded terminal status
            logger.error(f"Ingestion job {job_id} failed: {e}")
            self._fail(document_id, job_id, e)
        finally:
            if extractor is not None:
                extractor.close()
            if pdf_path is not None:
                self._remove_processing_file(pdf_path)
            future.set_result(status)

    def _run_workers(
        self,
        ranges: List[PageRange],
        extractor: PageExtractor,
        total_pages: int,
        document_id: str,
        job_id: str,
        title: str,
        topic: str
    ) -> None:
        """Run one worker per range and wait for all of them; re-raise the first failure."""
        abort = threading.Event()
        with ThreadPoolExecutor(
            max_workers=len(ranges), thread_name_prefix=f"folio-{job_id[:8]}"
        ) as pool:
            futures = [
                pool.submit(
                    self._process_range, worker_number, page_range, extractor,
                    total_pages, document_id, job_id, title, topic, abort,
                )
                for worker_number, page_range in enumerate(ranges, start=1)
            ]
            wait(futures, return_when=ALL_COMPLETED)

        for future in futures:
            error = future.exception()
            if error is not None:
                raise error

    def _process_range(
        self,
        worker_number: int,
        page_range: PageRange,
        extractor: PageExtractor,
        total_pages: int,
        document_id: str,
        job_id: str,
        title: str,
        topic: str,
        abort: threading.Event
    ) -> bool:
        """
        Extract, chunk, embed and stage every page of one range.

        Returns:
            True if the range was fully processed, False if the worker stopped
            because a sibling worker failed
        """
        staged_count = 0
        pages_done = 0
        try:
            for page_number in page_range:
                if abort.is_set():
                    logger.info(f"Worker {worker_number} of job {job_id} stopping: sibling failed")
                    return False

                page_text = extractor.extract_page(page_number)
                text_chunks = chunk_page(
                    page_text, page_number, total_pages, extractor.extract_page, self.chunking
                )
                for batch in batched(text_chunks, self.embedder.batch_size):
                    vectors = self.embedder.embed([c.text for c in batch])
                    staged = [
                        Chunk(
                            id=str(uuid.uuid4()),
                            document_id=document_id,
                            topic=topic,
                            text=text_chunk.text,
                            embedding=vector,
                            page_number=text_chunk.page_number,
                            chunk_index=text_chunk.chunk_index,
                            title=title,
                            job_id=job_id,
                        )
                        for text_chunk, vector in zip(batch, vectors)
                    ]
                    staged_count += self.store.insert_staged_batch(staged)

                pages_done += 1
                if pages_done % PROGRESS_LOG_INTERVAL == 0:
                    logger.info(
                        f"Worker {worker_number} of job {job_id}: "
                        f"{pages_done}/{len(page_range)} pages, {staged_count} chunks staged"
                    )

            completed = self.store.increment_completed_workers(job_id)
        except Exception:
            abort.set()
            raise

        log_ingestion_event(
            self.audit, "worker_completed", document_id, job_id,
            worker=worker_number,
            pages=str(page_range),
            chunks_staged=staged_count,
            completed_workers=completed,
        )
        return True

    def _fail(self, document_id: str, job_id: str, error: Exception) -> None:
        message = str(error) or error.__class__.__name__
        try:
            removed = self.store.fail_job(job_id, document_id, message)
        except Exception as cleanup_error:
            logger.exception(f"Could not record failure of job {job_id}: {cleanup_error}")
            return
        log_failure_event(self.audit, document_id, job_id, message, removed)
