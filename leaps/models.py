from datetime import datetime
from enum import Enum
from typing import Any, Optional
from pydantic import BaseModel, Field, ConfigDict


class ActivityCode(str, Enum):
    LEARN = "LEARN"
    EXPLORE = "EXPLORE"
    AMPLIFY = "AMPLIFY"
    PRESENT = "PRESENT"
    SHINE = "SHINE"


class SubmissionStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


TERMINAL_STATUSES = frozenset({SubmissionStatus.APPROVED, SubmissionStatus.REJECTED})

# Allowed transitions; terminal states have none.
SUBMISSION_TRANSITIONS: dict[SubmissionStatus, frozenset[SubmissionStatus]] = {
    SubmissionStatus.PENDING: frozenset({SubmissionStatus.APPROVED, SubmissionStatus.REJECTED}),
    SubmissionStatus.APPROVED: frozenset(),
    SubmissionStatus.REJECTED: frozenset(),
}


class Visibility(str, Enum):
    PUBLIC = "PUBLIC"
    PRIVATE = "PRIVATE"


class LedgerSource(str, Enum):
    MANUAL = "MANUAL"
    WEBHOOK = "WEBHOOK"
    FORM = "FORM"


class UserRole(str, Enum):
    PARTICIPANT = "PARTICIPANT"
    REVIEWER = "REVIEWER"
    ADMIN = "ADMIN"
    SUPERADMIN = "SUPERADMIN"


class ReviewDecision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


class EventStatus(str, Enum):
    RECEIVED = "received"
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    QUEUED_UNMATCHED = "queued_unmatched"
    REJECTED_INELIGIBLE = "rejected-ineligible"
    IGNORED = "ignored"


REPROCESSABLE_EVENT_STATUSES = frozenset({
    EventStatus.RECEIVED,
    EventStatus.QUEUED_UNMATCHED,
    EventStatus.REJECTED_INELIGIBLE,
})


class CreateSubmissionRequest(BaseModel):
    user_id: str
    activity_code: str
    payload: dict[str, Any] = Field(default_factory=dict)
    visibility: Visibility = Visibility.PRIVATE
    attachments: list[str] = Field(default_factory=list)

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "user_id": "user_2abc",
            "activity_code": "AMPLIFY",
            "payload": {"peers_trained": 10, "students_trained": 20, "session_date": "2025-09-01"},
            "visibility": "PUBLIC",
        }
    })


class ReviewRequest(BaseModel):
    reviewer_id: str
    decision: ReviewDecision
    note: Optional[str] = None
    point_override: Optional[int] = None


class BulkReviewRequest(BaseModel):
    submission_ids: list[str] = Field(..., min_length=1)
    reviewer_id: str
    decision: ReviewDecision
    note: Optional[str] = None


class CorrectionRequest(BaseModel):
    user_id: str
    activity_code: ActivityCode
    delta: int
    actor_id: str
    reason: str = Field(..., min_length=1, description="Reason for the correction")


class EnsureUserRequest(BaseModel):
    user_id: str
    email: Optional[str] = None
    name: Optional[str] = None


class UpdateUserRequest(BaseModel):
    actor_id: str
    role: Optional[UserRole] = None
    is_ineligible: Optional[bool] = None


class User(BaseModel):
    id: str
    email: Optional[str] = None
    name: Optional[str] = None
    role: UserRole
    is_ineligible: bool
    external_contact_id: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Submission(BaseModel):
    id: str
    user_id: str
    activity_code: ActivityCode
    status: SubmissionStatus
    visibility: Visibility
    payload: dict[str, Any] = Field(default_factory=dict)
    attachments: list[str] = Field(default_factory=list)
    reviewer_id: Optional[str] = None
    review_note: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def can_review(self) -> bool:
        return self.status == SubmissionStatus.PENDING


class LedgerEntry(BaseModel):
    id: str
    user_id: str
    activity_code: ActivityCode
    source: LedgerSource
    delta_points: int
    external_source: Optional[str] = None
    external_event_id: Optional[str] = None
    event_time: datetime
    meta: dict = Field(default_factory=dict)
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AuditEntry(BaseModel):
    id: str
    actor_id: Optional[str] = None
    action: str
    target_id: Optional[str] = None
    meta: dict = Field(default_factory=dict)
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ExternalEvent(BaseModel):
    id: str
    provider: str
    event_id: str
    tag_name_raw: str
    tag_name_norm: str
    contact_id: Optional[str] = None
    email: Optional[str] = None
    status: EventStatus
    user_id: Optional[str] = None
    occurred_at: datetime
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ReviewResult(BaseModel):
    submission: Submission
    ledger_entry: Optional[LedgerEntry] = None
    base_points: Optional[int] = None
    points_awarded: int = 0
    message: str
    warnings: list[str] = Field(default_factory=list)


class BulkReviewResult(BaseModel):
    processed_count: int
    skipped_ids: list[str] = Field(default_factory=list)


class IngestResult(BaseModel):
    status: EventStatus
    event_record_id: Optional[str] = None
    user_id: Optional[str] = None
    points_awarded: int = 0


class UserPoints(BaseModel):
    user_id: str
    total_points: int
    by_activity: dict[ActivityCode, int] = Field(default_factory=dict)
    total_entries: int
    last_entry_at: Optional[datetime] = None


class LedgerHistoryResponse(BaseModel):
    user_id: str
    entries: list[LedgerEntry]
    total_count: int
    total_points: int


class SubmissionListResponse(BaseModel):
    submissions: list[Submission]
    total_count: int
    limit: int
    offset: int


class LeaderboardRow(BaseModel):
    user_id: str
    total_points: int
