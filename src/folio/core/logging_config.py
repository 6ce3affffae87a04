"""Structured logging configuration for Folio."""

import logging
from typing import Any, Dict, List, Optional

import structlog
from structlog.stdlib import LoggerFactory


def configure_logging(log_level: str = "INFO", json_logs: bool = True) -> None:
    """Configure stdlib logging and structlog with audit-friendly processors."""

    numeric_level = getattr(logging, log_level.upper(), logging.INFO)
    logging.basicConfig(level=numeric_level)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
    ]

    if json_logs:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        logger_factory=LoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        cache_logger_on_first_use=True,
    )


def get_audit_logger(component: str) -> structlog.BoundLogger:
    """Get a logger with audit context for a specific component."""
    logger = structlog.get_logger(component)
    return logger.bind(component=component, audit=True)


def log_ingestion_event(
    logger: structlog.BoundLogger,
    event: str,
    document_id: str,
    job_id: str,
    **details: Any
) -> None:
    """Log an ingestion lifecycle step (started, worker_completed, ...)."""
    logger.info(
        event,
        document_id=document_id,
        job_id=job_id,
        event_type="document_ingestion",
        **details
    )


def log_commit_event(
    logger: structlog.BoundLogger,
    document_id: str,
    job_id: str,
    chunks_committed: int,
    processing_time_ms: float
) -> None:
    """Log a successful staging -> corpus commit."""
    logger.info(
        "job_committed",
        document_id=document_id,
        job_id=job_id,
        chunks_committed=chunks_committed,
        processing_time_ms=processing_time_ms,
        event_type="document_commit"
    )


def log_failure_event(
    logger: structlog.BoundLogger,
    document_id: str,
    job_id: str,
    error: str,
    staged_rows_removed: int
) -> None:
    """Log a failed ingestion job and its cleanup."""
    logger.error(
        "job_failed",
        document_id=document_id,
        job_id=job_id,
        error=error,
        staged_rows_removed=staged_rows_removed,
        event_type="document_failure"
    )


def log_query_event(
    logger: structlog.BoundLogger,
    question: str,
    topic: Optional[str],
    refused: bool,
    reason: str,
    best_distance: Optional[float] = None,
    citations: Optional[List[Dict[str, Any]]] = None,
    execution_time_ms: float = 0.0
) -> None:
    """Log an answered or refused question."""
    logger.info(
        "query_refused" if refused else "query_answered",
        question=question,
        topic=topic,
        reason=reason,
        best_distance=best_distance,
        citations=citations or [],
        execution_time_ms=execution_time_ms,
        event_type="query"
    )
