from __future__ import annotations

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    event,
    text,
)

from .activities import single_active_codes
from .database import Base
from .errors import AppendOnlyViolation
from .models import (
    EventStatus,
    LedgerSource,
    SubmissionStatus,
    UserRole,
    Visibility,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid4())


class User(Base):
    __tablename__ = "users"

    id = Column(String(64), primary_key=True)
    email = Column(String(255), nullable=True, unique=True)
    name = Column(String(255), nullable=True)
    role = Column(
        SAEnum(UserRole, name="user_role", native_enum=False),
        nullable=False,
        default=UserRole.PARTICIPANT,
    )
    is_ineligible = Column(Boolean, nullable=False, default=False)
    external_contact_id = Column(String(64), nullable=True, unique=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    def __repr__(self) -> str:
        return f"<User id={self.id} role={self.role}>"


class Activity(Base):
    __tablename__ = "activities"

    code = Column(String(16), primary_key=True)
    name = Column(String(64), nullable=False)
    default_points = Column(Integer, nullable=False)


class Submission(Base):
    __tablename__ = "submissions"
    __table_args__ = (
        Index("ix_submissions_user_activity_created", "user_id", "activity_code", "created_at"),
        Index("ix_submissions_status", "status"),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(64), ForeignKey("users.id"), nullable=False, index=True)
    activity_code = Column(String(16), ForeignKey("activities.code"), nullable=False)
    status = Column(
        SAEnum(SubmissionStatus, name="submission_status", native_enum=False),
        nullable=False,
        default=SubmissionStatus.PENDING,
    )
    visibility = Column(
        SAEnum(Visibility, name="visibility", native_enum=False),
        nullable=False,
        default=Visibility.PRIVATE,
    )
    payload = Column(JSON, nullable=False, default=dict)
    attachments = Column(JSON, nullable=False, default=list)
    reviewer_id = Column(String(64), ForeignKey("users.id"), nullable=True)
    review_note = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    def __repr__(self) -> str:
        return f"<Submission id={self.id} {self.activity_code} {self.status}>"


def _single_active_clause():
    codes = ", ".join(f"'{code}'" for code in single_active_codes())
    statuses = ", ".join(f"'{s.value}'" for s in (SubmissionStatus.PENDING, SubmissionStatus.APPROVED))
    return text(f"activity_code IN ({codes}) AND status IN ({statuses})")


# At most one PENDING/APPROVED submission per user for single-completion activities.
Index(
    "uq_submissions_single_active",
    Submission.user_id,
    Submission.activity_code,
    unique=True,
    postgresql_where=_single_active_clause(),
    sqlite_where=_single_active_clause(),
)


class PointsLedgerEntry(Base):
    __tablename__ = "points_ledger"
    __table_args__ = (
        UniqueConstraint(
            "external_source",
            "external_event_id",
            name="uq_points_ledger_external_event",
        ),
        Index("ix_points_ledger_user_activity", "user_id", "activity_code"),
        Index("ix_points_ledger_event_time", "event_time"),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(64), ForeignKey("users.id"), nullable=False, index=True)
    activity_code = Column(String(16), ForeignKey("activities.code"), nullable=False)
    source = Column(
        SAEnum(LedgerSource, name="ledger_source", native_enum=False),
        nullable=False,
    )
    delta_points = Column(Integer, nullable=False)
    external_source = Column(String(64), nullable=True)
    external_event_id = Column(String(255), nullable=True)
    event_time = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    meta = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    def __repr__(self) -> str:
        return f"<PointsLedgerEntry user={self.user_id} {self.activity_code} {self.delta_points:+d}>"


class AuditLog(Base):
    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("ix_audit_logs_target", "target_id"),
        Index("ix_audit_logs_action_created", "action", "created_at"),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    actor_id = Column(String(64), nullable=True)
    action = Column(String(64), nullable=False)
    target_id = Column(String(64), nullable=True)
    meta = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class ExternalEventRecord(Base):
    __tablename__ = "external_events"
    __table_args__ = (
        UniqueConstraint("event_id", "tag_name_norm", name="uq_external_events_event_tag"),
        Index("ix_external_events_status", "status"),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    provider = Column(String(32), nullable=False, default="kajabi")
    event_id = Column(String(255), nullable=False)
    tag_name_raw = Column(String(255), nullable=False)
    tag_name_norm = Column(String(255), nullable=False)
    contact_id = Column(String(64), nullable=True)
    email = Column(String(255), nullable=True)
    status = Column(
        SAEnum(
            EventStatus,
            name="external_event_status",
            native_enum=False,
            values_callable=lambda enum_cls: [m.value for m in enum_cls],
        ),
        nullable=False,
        default=EventStatus.RECEIVED,
    )
    user_id = Column(String(64), ForeignKey("users.id"), nullable=True)
    occurred_at = Column(DateTime(timezone=True), nullable=False)
    raw = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)


class TagGrant(Base):
    __tablename__ = "tag_grants"
    __table_args__ = (
        UniqueConstraint("user_id", "tag_name", name="uq_tag_grants_user_tag"),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(64), ForeignKey("users.id"), nullable=False, index=True)
    tag_name = Column(String(255), nullable=False)
    granted_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class EarnedBadge(Base):
    __tablename__ = "earned_badges"
    __table_args__ = (
        UniqueConstraint("user_id", "badge_code", name="uq_earned_badges_user_badge"),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(64), ForeignKey("users.id"), nullable=False, index=True)
    badge_code = Column(String(64), nullable=False)
    earned_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


def _reject_mutation(mapper, connection, target):
    raise AppendOnlyViolation(f"{target.__tablename__} rows are append-only")


for _append_only in (PointsLedgerEntry, AuditLog):
    event.listen(_append_only, "before_update", _reject_mutation)
    event.listen(_append_only, "before_delete", _reject_mutation)
