"""Error taxonomy for ERIS ingestion.

Fatal errors halt a session and are stored as its ``last_error``; the
rest are absorbed by the pipeline and counted.
"""

from uuid import UUID


class ErisError(Exception):
    """Base class for ERIS errors."""


class ConfigurationError(ErisError):
    """Adapter configuration is missing or invalid.

    Raised before the first fetch; the session never enters ``running``.
    """


class SourceConnectionError(ErisError):
    """The source could not be reached while validating the connection."""


class SourceError(ErisError):
    """Base class for errors raised while fetching from a source."""


class TransientSourceError(SourceError):
    """Timeout, transport failure or a 429/5xx response. Retried."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class PageFetchFailed(SourceError):
    """A page (or batch) could not be fetched.

    Non-fatal: the failure is counted against the session and the stream
    moves on where it can.
    """

    fatal = False

    def __init__(self, page: int, cause: str | BaseException):
        self.page = page
        self.cause = cause
        super().__init__(f"page {page}: {cause}")


class UnrecoverableSourceError(PageFetchFailed):
    """Malformed response or a non-retryable HTTP status. Fatal."""

    fatal = True


class PersistenceConflict(ErisError):
    """A unique-key insert lost a race with a concurrent writer."""

    def __init__(self, table: str, key: tuple):
        self.table = table
        self.key = key
        super().__init__(f"conflict on {table} {key}")


class SessionNotFound(ErisError):
    """No ingestion session with the given id."""

    def __init__(self, session_id: UUID):
        self.session_id = session_id
        super().__init__(f"Session {session_id} not found")


class InvalidSessionTransition(ErisError):
    """A status change not allowed by the session state machine."""

    def __init__(self, session_id: UUID, current: str, target: str):
        self.session_id = session_id
        self.current = current
        self.target = target
        super().__init__(
            f"Session {session_id} cannot move from {current} to {target}"
        )


class ReviewCaseNotFound(ErisError):
    """No review case with the given id."""

    def __init__(self, case_id: UUID):
        self.case_id = case_id
        super().__init__(f"Review case {case_id} not found")


class ReviewResolutionError(ErisError):
    """A review case cannot be resolved as requested."""
