"""Documents, ingestion jobs, chunks and their lifecycle states."""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from pydantic import BaseModel, Field, field_validator

from .errors import InvalidTransitionError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DocumentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return not DOCUMENT_TRANSITIONS[self]

    def can_transition_to(self, target: "DocumentStatus") -> bool:
        return target in DOCUMENT_TRANSITIONS[self]

    def transition(self, target: "DocumentStatus") -> "DocumentStatus":
        if not self.can_transition_to(target):
            raise InvalidTransitionError("document", self.value, target.value)
        return target


class JobStatus(str, Enum):
    PROCESSING = "processing"
    COMMITTING = "committing"
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return not JOB_TRANSITIONS[self]

    def can_transition_to(self, target: "JobStatus") -> bool:
        return target in JOB_TRANSITIONS[self]

    def transition(self, target: "JobStatus") -> "JobStatus":
        if not self.can_transition_to(target):
            raise InvalidTransitionError("job", self.value, target.value)
        return target


DOCUMENT_TRANSITIONS: Dict[DocumentStatus, FrozenSet[DocumentStatus]] = {
    DocumentStatus.PENDING: frozenset({DocumentStatus.PROCESSING, DocumentStatus.FAILED}),
    DocumentStatus.PROCESSING: frozenset({DocumentStatus.COMPLETE, DocumentStatus.FAILED}),
    DocumentStatus.COMPLETE: frozenset(),
    DocumentStatus.FAILED: frozenset(),
}

JOB_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.PROCESSING: frozenset({JobStatus.COMMITTING, JobStatus.FAILED}),
    JobStatus.COMMITTING: frozenset({JobStatus.COMPLETE, JobStatus.FAILED}),
    JobStatus.COMPLETE: frozenset(),
    JobStatus.FAILED: frozenset(),
}


def sources_for(target, transitions) -> List[str]:
    """Status values from which ``target`` may be reached (used in SQL guards)."""
    return [status.value for status, allowed in transitions.items() if target in allowed]


class Document(BaseModel):
    """One ingested source file."""
    id: str
    title: str
    topic: str
    initiator: Optional[str] = None
    status: DocumentStatus = DocumentStatus.PENDING
    error_detail: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class IngestionJob(BaseModel):
    """One ingestion attempt for a document."""
    id: str
    document_id: str
    total_workers: int
    completed_workers: int = 0
    status: JobStatus = JobStatus.PROCESSING
    error_detail: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def progress(self) -> float:
        if self.total_workers == 0:
            return 1.0
        return self.completed_workers / self.total_workers


class TextChunk(BaseModel):
    """A chunk of page text before it is embedded."""
    text: str
    page_number: int
    chunk_index: int


class Chunk(BaseModel):
    """An embedded chunk; staged rows additionally carry ``job_id``."""
    id: str
    document_id: str
    topic: str
    text: str
    embedding: List[float]
    page_number: int
    chunk_index: int
    title: str
    job_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("page_number")
    @classmethod
    def _page_is_natural(cls, value: int) -> int:
        if value < 1:
            raise ValueError("page_number must be >= 1")
        return value

    @field_validator("text", "title")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("must not be empty")
        return value


class SearchResult(BaseModel):
    """A committed chunk and its cosine distance to the query (lower is closer)."""
    chunk: Chunk
    distance: float


class Citation(BaseModel):
    title: str
    page_number: int


class Answer(BaseModel):
    answer: str
    citations: List[Citation] = Field(default_factory=list)
    has_relevant_docs: bool = False
