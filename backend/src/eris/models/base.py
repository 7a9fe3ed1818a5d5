"""Status domains and shared enums for ERIS.

Every status column in the schema is one of these closed enums; the
allowed transitions for sessions live next to the enum so that callers
match on them exhaustively.
"""

from enum import Enum


class SessionStatus(str, Enum):
    """Lifecycle of an ingestion session."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"

    @property
    def is_terminal(self) -> bool:
        return not SESSION_TRANSITIONS[self]

    @property
    def is_active(self) -> bool:
        return self in (SessionStatus.PENDING, SessionStatus.RUNNING)


SESSION_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.PENDING: frozenset(
        {SessionStatus.RUNNING, SessionStatus.FAILED, SessionStatus.STOPPED}
    ),
    SessionStatus.RUNNING: frozenset(
        {SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.STOPPED}
    ),
    SessionStatus.COMPLETED: frozenset(),
    SessionStatus.FAILED: frozenset(),
    SessionStatus.STOPPED: frozenset(),
}

assert set(SESSION_TRANSITIONS) == set(SessionStatus)


def allowed_sources(target: SessionStatus) -> frozenset[SessionStatus]:
    """Statuses from which ``target`` may be entered."""
    return frozenset(
        status for status, targets in SESSION_TRANSITIONS.items() if target in targets
    )


class ProcessingStatus(str, Enum):
    """Fetch progress of a staging record."""

    FETCHING = "fetching"
    FETCHED = "fetched"
    RECONCILED = "reconciled"
    ERROR = "error"


class PersistenceStatus(str, Enum):
    """Reconciliation outcome of a staging record."""

    PENDING = "pending"
    CREATED = "created"
    UPDATED = "updated"
    EXISTING = "existing"
    ERROR = "error"


class ResolutionStatus(str, Enum):
    """State of a review case."""

    PENDING = "pending"
    RESOLVED = "resolved"


class ConfidenceTier(str, Enum):
    """Identity match confidence."""

    EXACT = "exact"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class LinkStatus(str, Enum):
    """How firmly an enforcement record is linked to its offender."""

    NONE = "none"
    PROVISIONAL = "provisional"
    FINAL = "final"


class RecordType(str, Enum):
    """Kinds of enforcement record."""

    CASE = "case"
    NOTICE = "notice"


class SourceRegistry(str, Enum):
    """Where an identity candidate came from."""

    CANONICAL = "canonical"
    COMPANIES_HOUSE = "companies_house"


class FetchStrategy(str, Enum):
    """Source adapter fetch strategies."""

    CURSOR = "cursor"
    RANGE_DETAIL = "range_detail"


class CursorMode(str, Enum):
    """How a cursor-paginated source advances."""

    TOKEN = "token"
    PAGE = "page"


class BusinessType(str, Enum):
    """Legal form inferred from an offender name."""

    LIMITED_COMPANY = "limited_company"
    PLC = "plc"
    PARTNERSHIP = "partnership"
    INDIVIDUAL = "individual"
    OTHER = "other"
