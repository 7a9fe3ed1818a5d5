"""Data models for ERIS."""

from .base import (
    SESSION_TRANSITIONS,
    BusinessType,
    ConfidenceTier,
    CursorMode,
    FetchStrategy,
    LinkStatus,
    PersistenceStatus,
    ProcessingStatus,
    RecordType,
    ResolutionStatus,
    SessionStatus,
    SourceRegistry,
)
from .records import (
    IdentityCandidate,
    ItemError,
    NormalizedRecord,
    ReconcileResult,
    Resolution,
    SessionSnapshot,
    SourcePage,
)

__all__ = [
    "SESSION_TRANSITIONS",
    "BusinessType",
    "ConfidenceTier",
    "CursorMode",
    "FetchStrategy",
    "IdentityCandidate",
    "ItemError",
    "LinkStatus",
    "NormalizedRecord",
    "PersistenceStatus",
    "ProcessingStatus",
    "RecordType",
    "ReconcileResult",
    "Resolution",
    "ResolutionStatus",
    "SessionSnapshot",
    "SessionStatus",
    "SourcePage",
    "SourceRegistry",
]
