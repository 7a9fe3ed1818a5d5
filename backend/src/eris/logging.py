"""Structured logging configuration for ERIS.

Provides JSON-formatted logs for production and human-readable
logs for development.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from .config import Settings, get_settings

# Attributes present on every LogRecord; anything else arrived via ``extra``.
_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None)).keys()
) | {"message", "asctime", "taskName"}


class JSONFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format a log record as JSON."""
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and not key.startswith("_"):
                log_data[key] = value

        if record.funcName:
            log_data["function"] = record.funcName
        if record.lineno:
            log_data["line"] = record.lineno

        return json.dumps(log_data, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable log formatter for development."""

    def __init__(self):
        super().__init__(
            fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )


def setup_logging(settings: Settings | None = None) -> None:
    """Configure logging based on settings."""
    settings = settings or get_settings()

    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    if settings.log_format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(TextFormatter())

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers = [handler]

    # Suppress noisy loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)

    logger = get_logger(__name__)
    logger.info(
        "Logging initialized",
        extra={
            "environment": settings.environment,
            "log_level": settings.log_level,
            "log_format": settings.log_format,
        },
    )


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the given name.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured logger instance
    """
    return logging.getLogger(name)


class LoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that adds context to all log messages."""

    def process(
        self, msg: str, kwargs: dict[str, Any]
    ) -> tuple[str, dict[str, Any]]:
        """Process the logging message and add extra context."""
        extra = dict(self.extra)
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return msg, kwargs


def get_context_logger(name: str, **context: Any) -> LoggerAdapter:
    """Get a logger with additional context.

    Args:
        name: Logger name
        **context: Context fields to add to all log messages

    Returns:
        Logger adapter with context

    Usage:
        logger = get_context_logger(__name__, source="hse", session_id="abc123")
        logger.info("Fetching page")  # Includes source and session_id
    """
    return LoggerAdapter(get_logger(name), context)


# =========================
# Convenience functions
# =========================


def log_session_start(source: str, session_id: str, strategy: str) -> None:
    """Log the start of an ingestion session."""
    logger = get_logger("eris.ingestion")
    logger.info(
        f"Starting ingestion session for {source}",
        extra={
            "source": source,
            "session_id": session_id,
            "strategy": strategy,
            "event": "session_start",
        },
    )


def log_session_complete(
    source: str,
    session_id: str,
    status: str,
    counters: dict[str, int],
    duration_seconds: float,
) -> None:
    """Log the end of an ingestion session (any terminal status)."""
    logger = get_logger("eris.ingestion")
    logger.info(
        f"Ingestion session for {source} finished as {status}",
        extra={
            "source": source,
            "session_id": session_id,
            "status": status,
            "duration_seconds": duration_seconds,
            **counters,
            "event": "session_complete",
        },
    )


def log_session_error(source: str, session_id: str, error: str) -> None:
    """Log a fatal session error."""
    logger = get_logger("eris.ingestion")
    logger.error(
        f"Ingestion error for {source}: {error}",
        extra={
            "source": source,
            "session_id": session_id,
            "error": error,
            "event": "session_error",
        },
    )


def log_page_complete(
    source: str,
    session_id: str,
    page: int,
    counts: dict[str, int],
) -> None:
    """Log completion of a page or batch within a session.

    Args:
        source: Source identifier
        session_id: Session identifier
        page: Page or batch number
        counts: found/created/updated/existing/errors for the page
    """
    logger = get_logger("eris.ingestion")
    logger.info(
        f"Completed page {page} for {source}",
        extra={
            "source": source,
            "session_id": session_id,
            "page": page,
            **{f"page_{key}": value for key, value in counts.items()},
            "event": "page_complete",
        },
    )


def log_record_outcome(
    source: str,
    session_id: str,
    regulator_id: str,
    outcome: str,
    entity_ref: str | None = None,
) -> None:
    """Log the reconciliation outcome of an individual record.

    Args:
        source: Source identifier
        session_id: Session identifier
        regulator_id: Regulator-assigned record id
        outcome: created, updated, existing or error
        entity_ref: Linked offender id, if any
    """
    logger = get_logger("eris.ingestion")
    logger.debug(
        f"Reconciled record {regulator_id}: {outcome}",
        extra={
            "source": source,
            "session_id": session_id,
            "regulator_id": regulator_id,
            "outcome": outcome,
            "entity_ref": entity_ref,
            "event": "record_reconciled",
        },
    )


def log_resolution_event(
    tier: str,
    offender_name: str,
    matched_entity: str | None,
    score: float | None,
    candidate_count: int,
) -> None:
    """Log an identity resolution decision.

    Args:
        tier: Confidence tier assigned
        offender_name: Name being resolved
        matched_entity: Best candidate reference (if any)
        score: Best candidate score
        candidate_count: Number of candidates kept
    """
    logger = get_logger("eris.resolution")
    logger.debug(
        f"Resolution {tier}: {offender_name} -> {matched_entity or 'no match'}",
        extra={
            "tier": tier,
            "offender_name": offender_name,
            "matched_entity": matched_entity,
            "score": score,
            "candidate_count": candidate_count,
            "event": "identity_resolution",
        },
    )
