"""Exception hierarchy for Folio ingestion and retrieval.

    FolioError
    +-- ConfigurationError       (bad settings)
    +-- CallerError              (rejected synchronously, nothing persisted)
    |   +-- QueryValidationError (empty / over-length question)
    +-- ExtractionError          (text tool cannot read the file or page)
    +-- EmbeddingError           (embedding service failure, after retries)
    +-- InvalidIdentifierError   (malformed document/job/topic identifier)
    +-- CommitError              (staging -> committed transaction failed)
    +-- DocumentNotFoundError    (document row missing)
    +-- InvalidTransitionError   (illegal status change)

Everything except CallerError and its subclasses is fatal for the ingestion
job that raised it.
"""

from typing import Optional


class FolioError(Exception):
    """Base exception for all Folio errors."""

    def __init__(self, message: str = "An unexpected error occurred"):
        self.message = message
        super().__init__(message)


class ConfigurationError(FolioError):
    """Raised when settings are missing or inconsistent."""


class CallerError(FolioError):
    """Raised for invalid caller input; no state is mutated."""


class QueryValidationError(CallerError):
    """Raised when a question is empty or too long."""


class ExtractionError(FolioError):
    """Raised when the text-extraction tool cannot read the document."""

    def __init__(self, message: str = "Text extraction failed", page: Optional[int] = None):
        self.page = page
        if page is not None:
            message = f"{message} (page {page})"
        super().__init__(message)


class EmbeddingError(FolioError):
    """Raised when the embedding service fails or retries are exhausted."""


class InvalidIdentifierError(FolioError):
    """Raised when an identifier is malformed, before any file I/O happens."""


class CommitError(FolioError):
    """Raised when staged chunks cannot be committed."""


class DocumentNotFoundError(FolioError):
    """Raised when a document row does not exist (or no longer exists)."""

    def __init__(self, document_id: str):
        self.document_id = document_id
        super().__init__(f"Document {document_id} not found")


class InvalidTransitionError(FolioError):
    """Raised when a status change is not allowed by the state machine."""

    def __init__(self, entity: str, current: str, target: str):
        self.entity = entity
        self.current = current
        self.target = target
        super().__init__(f"Illegal {entity} transition: {current} -> {target}")
