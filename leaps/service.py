import logging
import math
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from . import audit, tables
from .activities import ActivityDefinition, compute_points, get_activity
from .audit import AuditAction
from .badges import BadgeEvaluator, grant_badges_for_user
from .config import Settings
from .errors import (
    DuplicateCreditError,
    DuplicateSubmissionError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    PointAdjustmentOutOfBoundsError,
    ValidationError,
)
from .guards import QuotaGuard, review_warnings
from .ledger import CreditIdentity, LedgerStore, NewLedgerEntry
from .models import (
    SUBMISSION_TRANSITIONS,
    ActivityCode,
    AuditEntry,
    BulkReviewResult,
    LeaderboardRow,
    LedgerEntry,
    LedgerHistoryResponse,
    LedgerSource,
    ReviewDecision,
    ReviewResult,
    Submission,
    SubmissionListResponse,
    SubmissionStatus,
    User,
    UserPoints,
    UserRole,
    Visibility,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def max_point_adjustment(base_points: int) -> int:
    """Reviewers may move the computed score by at most ceil(20%) either way."""
    return math.ceil(base_points / 5)


class PointsService:
    def __init__(
        self,
        session_factory: sessionmaker,
        settings: Optional[Settings] = None,
        ledger: Optional[LedgerStore] = None,
        scorer: Callable[[ActivityCode, Any], int] = compute_points,
        badge_evaluator: BadgeEvaluator = grant_badges_for_user,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.session_factory = session_factory
        self.settings = settings or Settings()
        self.ledger = ledger or LedgerStore()
        self.guard = QuotaGuard(
            peers_ceiling=self.settings.amplify_peers_cap,
            students_ceiling=self.settings.amplify_students_cap,
            strict=self.settings.strict_amplify_quota,
        )
        self.scorer = scorer
        self.badge_evaluator = badge_evaluator
        self.clock = clock

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def ensure_user(self, user_id: str, email: Optional[str] = None, name: Optional[str] = None) -> User:
        email = (email or "").strip().lower() or None
        with self.session_factory() as db, db.begin():
            user = db.get(tables.User, user_id)
            if user is None:
                user = tables.User(id=user_id, email=email, name=name, role=UserRole.PARTICIPANT)
                try:
                    with db.begin_nested():
                        db.add(user)
                        db.flush()
                except IntegrityError:
                    user = db.get(tables.User, user_id)
                    if user is None:
                        raise ValidationError(f"Email {email} is already linked to another user")
                else:
                    audit.record(db, actor_id=user_id, action=AuditAction.CREATE_USER, target_id=user_id)
            return User.model_validate(user)

    def get_user(self, user_id: str) -> User:
        with self.session_factory() as db:
            return User.model_validate(self._load_user(db, user_id))

    def set_user_role(self, user_id: str, role: UserRole, actor_id: str) -> User:
        role = UserRole(role)
        with self.session_factory() as db, db.begin():
            user = self._load_user(db, user_id)
            previous = user.role
            user.role = role
            db.flush()
            audit.record(
                db,
                actor_id=actor_id,
                action=AuditAction.UPDATE_USER_ROLE,
                target_id=user_id,
                meta={"from": previous.value if previous else None, "to": role.value},
            )
            return User.model_validate(user)

    def set_user_ineligible(self, user_id: str, ineligible: bool, actor_id: str) -> User:
        with self.session_factory() as db, db.begin():
            user = self._load_user(db, user_id)
            user.is_ineligible = bool(ineligible)
            db.flush()
            audit.record(
                db,
                actor_id=actor_id,
                action=AuditAction.UPDATE_USER_ELIGIBILITY,
                target_id=user_id,
                meta={"is_ineligible": bool(ineligible)},
            )
            return User.model_validate(user)

    # ------------------------------------------------------------------
    # Submissions
    # ------------------------------------------------------------------

    def create_submission(
        self,
        user_id: str,
        activity_code: Any,
        payload: Any,
        visibility: Visibility = Visibility.PRIVATE,
        attachments: Optional[Iterable[str]] = None,
    ) -> Submission:
        activity = get_activity(activity_code)
        with self.session_factory() as db, db.begin():
            user = self._load_user(db, user_id)
            if user.is_ineligible:
                raise ForbiddenError("Student accounts are not eligible to submit")
            if db.get(tables.Activity, activity.code.value) is None:
                raise ValidationError(f"Invalid activity code: {activity.code.value}")

            clean_payload = activity.validate_payload(payload)
            now = self.clock()
            self.guard.check(db, user_id, activity, clean_payload, now)

            submission = tables.Submission(
                user_id=user_id,
                activity_code=activity.code.value,
                status=SubmissionStatus.PENDING,
                visibility=Visibility(visibility),
                payload=clean_payload,
                attachments=[p for p in (attachments or []) if isinstance(p, str) and p],
                created_at=now,
                updated_at=now,
            )
            try:
                with db.begin_nested():
                    db.add(submission)
                    db.flush()
            except IntegrityError:
                # Lost a race against a concurrent single-completion submission.
                raise DuplicateSubmissionError(
                    f"You already have an active {activity.code.value} submission"
                )

            audit.record(
                db,
                actor_id=user_id,
                action=AuditAction.CREATE_SUBMISSION,
                target_id=submission.id,
                meta={"activity_code": activity.code.value},
            )
            result = Submission.model_validate(submission)

        logger.info("Submission %s created for user %s (%s)", result.id, user_id, activity.code.value)
        return result

    def get_submission(self, submission_id: str) -> Submission:
        with self.session_factory() as db:
            return Submission.model_validate(self._load_submission(db, submission_id))

    def list_submissions(
        self,
        status: Optional[SubmissionStatus] = None,
        activity_code: Any = None,
        user_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> SubmissionListResponse:
        """Review queue listing, newest first, with the unpaged total."""
        if limit < 1 or offset < 0:
            raise ValidationError("limit must be positive and offset non-negative")
        filters = []
        if status is not None:
            filters.append(tables.Submission.status == SubmissionStatus(status))
        if activity_code is not None:
            filters.append(tables.Submission.activity_code == get_activity(activity_code).code.value)
        if user_id is not None:
            filters.append(tables.Submission.user_id == user_id)

        with self.session_factory() as db:
            total = db.execute(select(func.count(tables.Submission.id)).where(*filters)).scalar_one()
            rows = db.execute(
                select(tables.Submission)
                .where(*filters)
                .order_by(tables.Submission.created_at.desc(), tables.Submission.id)
                .limit(limit)
                .offset(offset)
            ).scalars()
            return SubmissionListResponse(
                submissions=[Submission.model_validate(s) for s in rows],
                total_count=int(total),
                limit=limit,
                offset=offset,
            )

    def get_audit_trail(self, target_id: str, action: Optional[AuditAction] = None) -> list[AuditEntry]:
        with self.session_factory() as db:
            return [AuditEntry.model_validate(e) for e in audit.entries_for_target(db, target_id, action)]

    def review(
        self,
        submission_id: str,
        reviewer_id: str,
        decision: Any,
        note: Optional[str] = None,
        point_override: Optional[int] = None,
    ) -> ReviewResult:
        decision = self._parse_decision(decision)
        with self.session_factory() as db, db.begin():
            self._load_user(db, reviewer_id)
            submission = self._load_submission(db, submission_id)
            result = self._review_one(db, submission, reviewer_id, decision, note, point_override)

        logger.info(
            "Submission %s %s by %s (%d points)",
            submission_id, result.submission.status.value, reviewer_id, result.points_awarded,
        )
        return result

    def bulk_review(
        self,
        submission_ids: Iterable[str],
        reviewer_id: str,
        decision: Any,
        note: Optional[str] = None,
    ) -> BulkReviewResult:
        decision = self._parse_decision(decision)
        ids = list(dict.fromkeys(submission_ids))
        if not ids:
            raise ValidationError("At least one submission id is required")
        if len(ids) > self.settings.bulk_review_limit:
            raise ValidationError(
                f"Bulk review is limited to {self.settings.bulk_review_limit} submissions per call"
            )

        processed = 0
        skipped: list[str] = []
        with self.session_factory() as db, db.begin():
            self._load_user(db, reviewer_id)
            pending = list(
                db.execute(
                    select(tables.Submission).where(
                        tables.Submission.id.in_(ids),
                        tables.Submission.status == SubmissionStatus.PENDING,
                    )
                ).scalars()
            )
            pending_ids = {s.id for s in pending}
            skipped.extend(i for i in ids if i not in pending_ids)

            for submission in pending:
                try:
                    self._review_one(db, submission, reviewer_id, decision, note, None)
                except InvalidStateError:
                    skipped.append(submission.id)
                    continue
                processed += 1

        logger.info(
            "Bulk %s by %s: processed=%d skipped=%d", decision.value, reviewer_id, processed, len(skipped)
        )
        return BulkReviewResult(processed_count=processed, skipped_ids=skipped)

    def _review_one(
        self,
        db: Session,
        submission: tables.Submission,
        reviewer_id: str,
        decision: ReviewDecision,
        note: Optional[str],
        point_override: Optional[int],
    ) -> ReviewResult:
        activity = get_activity(submission.activity_code)
        approve = decision == ReviewDecision.APPROVE
        new_status = SubmissionStatus.APPROVED if approve else SubmissionStatus.REJECTED
        if new_status not in SUBMISSION_TRANSITIONS[submission.status]:
            raise InvalidStateError(submission.status.value, "Submission already reviewed")
        credits = approve and activity.credits_via_manual_review

        base_points = None
        final_points = 0
        if credits:
            base_points = self.scorer(activity.code, submission.payload)
            final_points = self._resolve_points(base_points, point_override)
        elif approve and point_override is not None:
            raise ValidationError(
                f"{activity.code.value} points are credited by course completion, not by review"
            )

        self._transition(db, submission, new_status, reviewer_id, note)

        if not approve:
            audit.record(
                db,
                actor_id=reviewer_id,
                action=AuditAction.REJECT_SUBMISSION,
                target_id=submission.id,
                meta={"activity_code": activity.code.value, "note": note},
            )
            return ReviewResult(
                submission=Submission.model_validate(submission),
                message="Submission rejected",
            )

        if not credits:
            audit.record(
                db,
                actor_id=reviewer_id,
                action=AuditAction.APPROVE_SUBMISSION,
                target_id=submission.id,
                meta={"activity_code": activity.code.value, "points_awarded": 0, "credited_via": "webhook"},
            )
            return ReviewResult(
                submission=Submission.model_validate(submission),
                message="Submission approved; points are credited by course completion",
            )

        ledger_row = self._credit_submission(db, submission, activity, base_points, final_points, reviewer_id)
        warnings = review_warnings(db, activity, submission)
        if warnings:
            logger.warning("Submission %s approved with warnings: %s", submission.id, ", ".join(warnings))
        audit.record(
            db,
            actor_id=reviewer_id,
            action=AuditAction.APPROVE_SUBMISSION,
            target_id=submission.id,
            meta={
                "activity_code": activity.code.value,
                "base_points": base_points,
                "points_awarded": final_points,
                "warnings": warnings,
            },
        )
        if point_override is not None and point_override != base_points:
            audit.record(
                db,
                actor_id=reviewer_id,
                action=AuditAction.ADJUST_SUBMISSION_POINTS,
                target_id=submission.id,
                meta={
                    "base_points": base_points,
                    "point_override": point_override,
                    "adjustment": point_override - base_points,
                    "reason": note,
                },
            )
        self.badge_evaluator(db, submission.user_id)

        return ReviewResult(
            submission=Submission.model_validate(submission),
            ledger_entry=LedgerEntry.model_validate(ledger_row) if ledger_row is not None else None,
            base_points=base_points,
            points_awarded=final_points,
            message="Submission approved",
            warnings=warnings,
        )

    def _credit_submission(
        self,
        db: Session,
        submission: tables.Submission,
        activity: ActivityDefinition,
        base_points: int,
        final_points: int,
        reviewer_id: str,
    ) -> Optional[tables.PointsLedgerEntry]:
        identity = CreditIdentity.for_submission(submission.id)
        try:
            return self.ledger.append(db, NewLedgerEntry(
                user_id=submission.user_id,
                activity_code=activity.code,
                delta_points=final_points,
                source=LedgerSource.MANUAL,
                event_time=self.clock(),
                identity=identity,
                meta={
                    "submission_id": submission.id,
                    "base_points": base_points,
                    "reviewer_id": reviewer_id,
                },
            ))
        except DuplicateCreditError:
            logger.info("Submission %s already credited, keeping existing entry", submission.id)
            return self.ledger.find_by_identity(db, identity)

    def _transition(
        self,
        db: Session,
        submission: tables.Submission,
        new_status: SubmissionStatus,
        reviewer_id: str,
        note: Optional[str],
    ) -> None:
        # Compare-and-set: only one reviewer can move a submission out of PENDING.
        result = db.execute(
            update(tables.Submission)
            .where(
                tables.Submission.id == submission.id,
                tables.Submission.status == SubmissionStatus.PENDING,
            )
            .values(
                status=new_status,
                reviewer_id=reviewer_id,
                review_note=note,
                updated_at=self.clock(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.refresh(submission)
            raise InvalidStateError(submission.status.value, "Submission already reviewed")
        db.refresh(submission)

    def _resolve_points(self, base_points: int, point_override: Optional[int]) -> int:
        if point_override is None:
            return base_points
        max_adjustment = max_point_adjustment(base_points)
        if abs(point_override - base_points) > max_adjustment:
            raise PointAdjustmentOutOfBoundsError(base_points, point_override, max_adjustment)
        return point_override

    # ------------------------------------------------------------------
    # Points
    # ------------------------------------------------------------------

    def record_correction(
        self,
        user_id: str,
        activity_code: Any,
        delta: int,
        actor_id: str,
        reason: str,
    ) -> LedgerEntry:
        activity = get_activity(activity_code)
        if not delta:
            raise ValidationError("Correction delta must be non-zero")
        if not (reason or "").strip():
            raise ValidationError("Correction reason is required")

        with self.session_factory() as db, db.begin():
            self._load_user(db, user_id)
            row = self.ledger.append(db, NewLedgerEntry(
                user_id=user_id,
                activity_code=activity.code,
                delta_points=delta,
                source=LedgerSource.MANUAL,
                event_time=self.clock(),
                meta={"reason": reason, "performed_by": actor_id},
            ))
            audit.record(
                db,
                actor_id=actor_id,
                action=AuditAction.ADJUST_POINTS,
                target_id=user_id,
                meta={"entry_id": row.id, "activity_code": activity.code.value, "delta": delta, "reason": reason},
            )
            return LedgerEntry.model_validate(row)

    def get_points(self, user_id: str) -> UserPoints:
        with self.session_factory() as db:
            return UserPoints(
                user_id=user_id,
                total_points=self.ledger.total_for_user(db, user_id),
                by_activity=self.ledger.totals_by_activity(db, user_id),
                total_entries=self.ledger.count_for_user(db, user_id),
                last_entry_at=self.ledger.last_entry_at(db, user_id),
            )

    def get_ledger_history(self, user_id: str, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
        with self.session_factory() as db:
            entries = self.ledger.entries_for_user(db, user_id, limit=limit, offset=offset)
            return LedgerHistoryResponse(
                user_id=user_id,
                entries=[LedgerEntry.model_validate(e) for e in entries],
                total_count=self.ledger.count_for_user(db, user_id),
                total_points=self.ledger.total_for_user(db, user_id),
            )

    def leaderboard(self, limit: int = 20) -> list[LeaderboardRow]:
        with self.session_factory() as db:
            return [
                LeaderboardRow(user_id=user_id, total_points=points)
                for user_id, points in self.ledger.leaderboard(db, limit=limit)
            ]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _load_user(self, db: Session, user_id: str) -> tables.User:
        user = db.get(tables.User, user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        return user

    def _load_submission(self, db: Session, submission_id: str) -> tables.Submission:
        submission = db.get(tables.Submission, submission_id)
        if submission is None:
            raise NotFoundError(f"Submission {submission_id} not found")
        return submission

    def _parse_decision(self, decision: Any) -> ReviewDecision:
        try:
            return ReviewDecision(decision)
        except ValueError:
            raise ValidationError(f"Unknown review decision: {decision}")
