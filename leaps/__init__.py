"""
Points Accounting & Submission Review Engine for the LEAPS programme

This package provides:
- Submission lifecycle: PENDING → APPROVED / REJECTED, terminal once reviewed
- Append-only points ledger with idempotent crediting
- Single-completion and rolling 7-day quota admission checks
- Review and bulk review with bounded point overrides
- Kajabi course-completion ingestion with reprocess
"""

from .errors import (
    DuplicateSubmissionError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    PointAdjustmentOutOfBoundsError,
    PointsEngineError,
    QuotaExceededError,
    ValidationError,
)
from .ingest import EventIngestor
from .models import (
    ActivityCode,
    EventStatus,
    LedgerEntry,
    Submission,
    SubmissionStatus,
    Visibility,
)
from .service import PointsService

__all__ = [
    "ActivityCode",
    "EventStatus",
    "LedgerEntry",
    "Submission",
    "SubmissionStatus",
    "Visibility",
    "PointsService",
    "EventIngestor",
    "PointsEngineError",
    "ValidationError",
    "NotFoundError",
    "ForbiddenError",
    "DuplicateSubmissionError",
    "QuotaExceededError",
    "InvalidStateError",
    "PointAdjustmentOutOfBoundsError",
]
