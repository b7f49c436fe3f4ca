"""Structured logging configuration and audit events for the deck pipeline."""

import logging
from typing import Any, Dict, Optional

import structlog
from structlog.stdlib import LoggerFactory


def configure_logging(log_level: str = "INFO", json_logs: bool = True) -> None:
    """Configure stdlib logging and structlog; JSON for services, console for the CLI."""
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
    source_id: str,
    document_id: Optional[str],
    content_type: str,
    chunks_created: int,
    embeddings_created: int,
    status: str,
    processing_time_ms: float,
    error: Optional[str] = None
) -> None:
    """Log one pipeline run for a source."""
    logger.info(
        "source_processed",
        source_id=source_id,
        document_id=document_id,
        content_type=content_type,
        chunks_created=chunks_created,
        embeddings_created=embeddings_created,
        status=status,
        processing_time_ms=processing_time_ms,
        error=error,
        event_type="source_ingestion"
    )


def log_card_generation(
    logger: structlog.BoundLogger,
    deck_id: str,
    strategy: str,
    chunks_used: int,
    cards_created: int,
    used_fallback: bool,
    deck_status: str,
    generation_time_ms: float
) -> None:
    """Log card generation for a deck."""
    logger.info(
        "cards_generated",
        deck_id=deck_id,
        strategy=strategy,
        chunks_used=chunks_used,
        cards_created=cards_created,
        used_fallback=used_fallback,
        deck_status=deck_status,
        generation_time_ms=generation_time_ms,
        event_type="card_generation"
    )


def log_categorization(
    logger: structlog.BoundLogger,
    document_id: str,
    source_id: Optional[str],
    category: str,
    raw_response: Optional[str],
    extra: Dict[str, Any] = None
) -> None:
    """Log the category chosen for a document."""
    logger.info(
        "document_categorized",
        document_id=document_id,
        source_id=source_id,
        category=category,
        raw_response=raw_response,
        **(extra or {}),
        event_type="categorization"
    )
