"""
Quota/Duplicate Guard.

Stateless admission checks run before a new submission is inserted. Both
policies read currently stored submissions; there is no maintained counter.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import select, text
from sqlalchemy.orm import Session

from . import tables
from .activities import ActivityDefinition, AdmissionPolicy, amplify_counts
from .errors import DuplicateSubmissionError, QuotaExceededError
from .models import SubmissionStatus

QUOTA_WINDOW = timedelta(days=7)
ACTIVE_STATUSES = (SubmissionStatus.PENDING, SubmissionStatus.APPROVED)

MISSING_SESSION_START_TIME = "MISSING_SESSION_START_TIME"
MISSING_CITY = "MISSING_CITY"
DUPLICATE_SESSION_SUSPECT = "DUPLICATE_SESSION_SUSPECT"
DUPLICATE_SESSION_WINDOW = timedelta(minutes=45)


class QuotaGuard:
    def __init__(self, peers_ceiling: int = 50, students_ceiling: int = 200, strict: bool = True):
        self.peers_ceiling = peers_ceiling
        self.students_ceiling = students_ceiling
        self.strict = strict

    def check(self, db: Session, user_id: str, activity: ActivityDefinition, payload: dict, now: datetime) -> None:
        if activity.admission == AdmissionPolicy.SINGLE_ACTIVE:
            self.check_single_active(db, user_id, activity)
        elif activity.admission == AdmissionPolicy.ROLLING_QUOTA:
            self.check_rolling_quota(db, user_id, activity, payload, now)

    def check_single_active(self, db: Session, user_id: str, activity: ActivityDefinition) -> None:
        existing = db.execute(
            select(tables.Submission)
            .where(
                tables.Submission.user_id == user_id,
                tables.Submission.activity_code == activity.code.value,
                tables.Submission.status.in_(ACTIVE_STATUSES),
            )
            .limit(1)
        ).scalar_one_or_none()
        if existing is not None:
            raise DuplicateSubmissionError(
                f"You already have a {existing.status.value.lower()} {activity.code.value} submission"
            )

    def check_rolling_quota(
        self, db: Session, user_id: str, activity: ActivityDefinition, payload: dict, now: datetime
    ) -> None:
        self._lock_user(db, user_id, activity)
        used_peers, used_students = self.window_usage(db, user_id, activity, now)
        new_peers, new_students = amplify_counts(payload)

        if used_peers + new_peers > self.peers_ceiling:
            raise QuotaExceededError("peers", used_peers + new_peers, self.peers_ceiling)
        if used_students + new_students > self.students_ceiling:
            raise QuotaExceededError("students", used_students + new_students, self.students_ceiling)

    def window_usage(self, db: Session, user_id: str, activity: ActivityDefinition, now: datetime) -> tuple[int, int]:
        # Window is (now - 7d, now]: the 7-day boundary itself is excluded.
        window_start = now - QUOTA_WINDOW
        payloads = db.execute(
            select(tables.Submission.payload).where(
                tables.Submission.user_id == user_id,
                tables.Submission.activity_code == activity.code.value,
                tables.Submission.created_at > window_start,
                tables.Submission.created_at <= now,
            )
        ).scalars()
        peers = students = 0
        for stored in payloads:
            p, s = amplify_counts(stored)
            peers += p
            students += s
        return peers, students

    def _lock_user(self, db: Session, user_id: str, activity: ActivityDefinition) -> None:
        # Serializes quota-check-plus-insert per user for the rest of the transaction.
        if not self.strict or db.get_bind().dialect.name != "postgresql":
            return
        db.execute(
            text("SELECT pg_advisory_xact_lock(hashtext(:key))"),
            {"key": f"{activity.code.value}:{user_id}"},
        )


def _session_start(payload: dict) -> Optional[datetime]:
    start = payload.get("session_start_time")
    if not start or not payload.get("session_date"):
        return None
    try:
        parsed = datetime.fromisoformat(f"{payload['session_date']}T{start}")
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _session_city(payload: dict) -> Optional[str]:
    location = payload.get("location") or {}
    city = (location.get("city") or "").strip()
    return city.lower() or None


def review_warnings(db: Session, activity: ActivityDefinition, submission: tables.Submission) -> list[str]:
    """Advisory flags for a rolling-quota session being approved.

    At most one warning is returned, checked in order: missing start time,
    missing city, then another approved session by the same user in the same
    city starting within DUPLICATE_SESSION_WINDOW. Warnings never block.
    """
    if activity.admission != AdmissionPolicy.ROLLING_QUOTA:
        return []

    payload = submission.payload or {}
    start = _session_start(payload)
    if start is None:
        return [MISSING_SESSION_START_TIME]
    city = _session_city(payload)
    if city is None:
        return [MISSING_CITY]

    approved = db.execute(
        select(tables.Submission.payload).where(
            tables.Submission.user_id == submission.user_id,
            tables.Submission.activity_code == activity.code.value,
            tables.Submission.status == SubmissionStatus.APPROVED,
            tables.Submission.id != submission.id,
        )
    ).scalars()
    for other in approved:
        other = other or {}
        other_start = _session_start(other)
        if other_start is None or _session_city(other) != city:
            continue
        if abs(other_start - start) <= DUPLICATE_SESSION_WINDOW:
            return [DUPLICATE_SESSION_SUSPECT]
    return []
