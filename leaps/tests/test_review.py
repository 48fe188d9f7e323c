"""
Tests for the Review Orchestrator and the points ledger

Tests cover:
1. Approval credits the ledger exactly once
2. Point override bounds
3. Atomicity of review plus credit
4. Terminal-state immutability
5. Bulk review with partial skip
6. Learn approvals credit nothing
7. Corrections, totals and the append-only guard
8. Advisory session warnings
9. Reading the audit trail
"""

import pytest
from sqlalchemy import select, update

from leaps import audit, tables
from leaps import service as service_module
from leaps.audit import AuditAction
from leaps.errors import (
    AppendOnlyViolation,
    InvalidStateError,
    NotFoundError,
    PointAdjustmentOutOfBoundsError,
    ValidationError,
)
from leaps.activities import compute_points
from leaps.guards import DUPLICATE_SESSION_SUSPECT, MISSING_CITY, MISSING_SESSION_START_TIME
from leaps.ledger import LedgerStore
from leaps.models import SUBMISSION_TRANSITIONS, ActivityCode, LedgerSource, ReviewDecision, SubmissionStatus
from leaps.service import PointsService, max_point_adjustment

from conftest import AMPLIFY_PAYLOAD, EXPLORE_PAYLOAD, LEARN_PAYLOAD

# 2 * 25 + 50
HUNDRED_POINT_AMPLIFY = {"peers_trained": 25, "students_trained": 50, "session_date": "2025-09-14"}


class FailingLedger(LedgerStore):
    def append(self, db, entry):
        raise RuntimeError("ledger unavailable")


class RacingService(PointsService):
    """Lets another reviewer approve one submission just before our update lands."""

    def __init__(self, *args, race_id: str, **kwargs):
        super().__init__(*args, **kwargs)
        self.race_id = race_id

    def _transition(self, db, submission, new_status, reviewer_id, note):
        if submission.id == self.race_id:
            db.execute(
                update(tables.Submission)
                .where(tables.Submission.id == submission.id)
                .values(status=SubmissionStatus.APPROVED)
                .execution_options(synchronize_session=False)
            )
        super()._transition(db, submission, new_status, reviewer_id, note)


def ledger_rows(session_factory, user_id):
    with session_factory() as db:
        return list(
            db.execute(
                select(tables.PointsLedgerEntry).where(tables.PointsLedgerEntry.user_id == user_id)
            ).scalars()
        )


class TestApproveFlow:
    """Tests for single-submission approval."""

    def test_amplify_end_to_end(self, service, participant, reviewer, session_factory):
        """Approving Amplify credits computed points with one approval audit entry."""
        submission = service.create_submission(participant.id, ActivityCode.AMPLIFY, AMPLIFY_PAYLOAD)

        result = service.review(submission.id, reviewer.id, ReviewDecision.APPROVE)

        expected = compute_points(ActivityCode.AMPLIFY, AMPLIFY_PAYLOAD)
        assert expected == 40
        assert result.submission.status == SubmissionStatus.APPROVED
        assert result.submission.reviewer_id == reviewer.id
        assert result.points_awarded == expected
        assert result.base_points == expected

        rows = ledger_rows(session_factory, participant.id)
        assert len(rows) == 1
        assert rows[0].delta_points == expected
        assert rows[0].source == LedgerSource.MANUAL
        assert rows[0].external_source == "admin_approval"
        assert rows[0].external_event_id == f"submission_{submission.id}"

        with session_factory() as db:
            approvals = audit.entries_for_target(db, submission.id, AuditAction.APPROVE_SUBMISSION)
        assert len(approvals) == 1
        assert approvals[0].actor_id == reviewer.id

    def test_reject_credits_nothing(self, service, participant, reviewer, session_factory):
        """Rejection is terminal and leaves the ledger untouched."""
        submission = service.create_submission(participant.id, ActivityCode.AMPLIFY, AMPLIFY_PAYLOAD)

        result = service.review(submission.id, reviewer.id, ReviewDecision.REJECT, note="No evidence")

        assert result.submission.status == SubmissionStatus.REJECTED
        assert result.submission.review_note == "No evidence"
        assert result.ledger_entry is None
        assert ledger_rows(session_factory, participant.id) == []

    def test_explore_approval_grants_badge(self, service, participant, reviewer, session_factory):
        """First approved Explore earns IN_CLASS_INNOVATOR."""
        submission = service.create_submission(participant.id, ActivityCode.EXPLORE, EXPLORE_PAYLOAD)

        service.review(submission.id, reviewer.id, ReviewDecision.APPROVE)

        with session_factory() as db:
            badges = set(
                db.execute(
                    select(tables.EarnedBadge.badge_code).where(tables.EarnedBadge.user_id == participant.id)
                ).scalars()
            )
        assert badges == {"IN_CLASS_INNOVATOR"}

    def test_unknown_submission(self, service, reviewer):
        """Reviewing a missing submission fails."""
        with pytest.raises(NotFoundError):
            service.review("missing", reviewer.id, ReviewDecision.APPROVE)

    def test_unknown_decision(self, service, participant, reviewer):
        """Only approve and reject are accepted."""
        submission = service.create_submission(participant.id, ActivityCode.AMPLIFY, AMPLIFY_PAYLOAD)

        with pytest.raises(ValidationError):
            service.review(submission.id, reviewer.id, "maybe")


class TestPointOverride:
    """Tests for the bounded reviewer override."""

    def test_max_adjustment_rounds_up(self):
        """The bound is ceil(20%) of the computed score."""
        assert max_point_adjustment(100) == 20
        assert max_point_adjustment(40) == 8
        assert max_point_adjustment(42) == 9
        assert max_point_adjustment(0) == 0

    @pytest.mark.parametrize("override", [120, 80])
    def test_override_at_bound_succeeds(self, service, participant, reviewer, session_factory, override):
        """Overrides exactly 20 away from 100 are accepted and recorded."""
        submission = service.create_submission(participant.id, ActivityCode.AMPLIFY, HUNDRED_POINT_AMPLIFY)

        result = service.review(submission.id, reviewer.id, ReviewDecision.APPROVE, point_override=override)

        assert result.base_points == 100
        assert result.points_awarded == override
        assert result.ledger_entry.delta_points == override
        with session_factory() as db:
            adjustments = audit.entries_for_target(db, submission.id, AuditAction.ADJUST_SUBMISSION_POINTS)
        assert len(adjustments) == 1
        assert adjustments[0].meta["adjustment"] == override - 100

    @pytest.mark.parametrize("override", [121, 79])
    def test_override_past_bound_fails(self, service, participant, reviewer, session_factory, override):
        """Overrides 21 away from 100 are rejected and nothing changes."""
        submission = service.create_submission(participant.id, ActivityCode.AMPLIFY, HUNDRED_POINT_AMPLIFY)

        with pytest.raises(PointAdjustmentOutOfBoundsError) as exc_info:
            service.review(submission.id, reviewer.id, ReviewDecision.APPROVE, point_override=override)

        assert exc_info.value.base_points == 100
        assert exc_info.value.max_adjustment == 20
        assert service.get_submission(submission.id).status == SubmissionStatus.PENDING
        assert ledger_rows(session_factory, participant.id) == []

    def test_override_equal_to_base_is_not_an_adjustment(self, service, participant, reviewer, session_factory):
        """An override matching the computed score writes no adjustment entry."""
        submission = service.create_submission(participant.id, ActivityCode.AMPLIFY, HUNDRED_POINT_AMPLIFY)

        service.review(submission.id, reviewer.id, ReviewDecision.APPROVE, point_override=100)

        with session_factory() as db:
            assert audit.entries_for_target(db, submission.id, AuditAction.ADJUST_SUBMISSION_POINTS) == []

    def test_override_on_learn_rejected(self, service, participant, reviewer):
        """Learn points come from course completion, so overrides make no sense."""
        submission = service.create_submission(participant.id, ActivityCode.LEARN, LEARN_PAYLOAD)

        with pytest.raises(ValidationError):
            service.review(submission.id, reviewer.id, ReviewDecision.APPROVE, point_override=20)


class TestAtomicity:
    """Tests that review and credit commit together or not at all."""

    def test_ledger_failure_rolls_back_review(self, session_factory, settings, clock, participant, reviewer):
        """A failing ledger leaves the submission PENDING with no audit trail."""
        service = PointsService(session_factory, settings=settings, ledger=FailingLedger(), clock=clock)
        submission = service.create_submission(participant.id, ActivityCode.AMPLIFY, AMPLIFY_PAYLOAD)

        with pytest.raises(RuntimeError):
            service.review(submission.id, reviewer.id, ReviewDecision.APPROVE)

        assert service.get_submission(submission.id).status == SubmissionStatus.PENDING
        with session_factory() as db:
            assert audit.entries_for_target(db, submission.id, AuditAction.APPROVE_SUBMISSION) == []


class TestTerminalStates:
    """Tests that reviewed submissions cannot be reviewed again."""

    def test_second_review_fails(self, service, participant, reviewer, session_factory):
        """Approving twice fails and the ledger keeps one entry."""
        submission = service.create_submission(participant.id, ActivityCode.AMPLIFY, AMPLIFY_PAYLOAD)
        service.review(submission.id, reviewer.id, ReviewDecision.APPROVE)

        with pytest.raises(InvalidStateError) as exc_info:
            service.review(submission.id, reviewer.id, ReviewDecision.APPROVE)

        assert exc_info.value.current_status == SubmissionStatus.APPROVED.value
        assert len(ledger_rows(session_factory, participant.id)) == 1

    def test_reject_after_approve_fails(self, service, participant, reviewer):
        """APPROVED cannot become REJECTED."""
        submission = service.create_submission(participant.id, ActivityCode.AMPLIFY, AMPLIFY_PAYLOAD)
        service.review(submission.id, reviewer.id, ReviewDecision.APPROVE)

        with pytest.raises(InvalidStateError):
            service.review(submission.id, reviewer.id, ReviewDecision.REJECT)

        assert service.get_submission(submission.id).status == SubmissionStatus.APPROVED

    def test_lost_race_raises_invalid_state(self, session_factory, settings, clock, participant, reviewer):
        """When another reviewer wins the update, the single review fails."""
        submission_id = PointsService(session_factory, settings=settings, clock=clock).create_submission(
            participant.id, ActivityCode.AMPLIFY, AMPLIFY_PAYLOAD
        ).id
        racing = RacingService(session_factory, settings=settings, clock=clock, race_id=submission_id)

        with pytest.raises(InvalidStateError):
            racing.review(submission_id, reviewer.id, ReviewDecision.APPROVE)

        assert ledger_rows(session_factory, participant.id) == []

    def test_transition_table_has_no_exits_from_terminal_states(self):
        """Only PENDING has outgoing transitions."""
        assert SUBMISSION_TRANSITIONS[SubmissionStatus.PENDING] == {
            SubmissionStatus.APPROVED, SubmissionStatus.REJECTED,
        }
        assert SUBMISSION_TRANSITIONS[SubmissionStatus.APPROVED] == frozenset()
        assert SUBMISSION_TRANSITIONS[SubmissionStatus.REJECTED] == frozenset()

    def test_review_consults_transition_table(self, service, participant, reviewer, monkeypatch):
        """A decision whose target status is not allowed from the current one fails."""
        monkeypatch.setattr(service_module, "SUBMISSION_TRANSITIONS", {
            SubmissionStatus.PENDING: frozenset({SubmissionStatus.APPROVED}),
            SubmissionStatus.APPROVED: frozenset(),
            SubmissionStatus.REJECTED: frozenset(),
        })
        submission = service.create_submission(participant.id, ActivityCode.AMPLIFY, AMPLIFY_PAYLOAD)

        with pytest.raises(InvalidStateError) as exc_info:
            service.review(submission.id, reviewer.id, ReviewDecision.REJECT)

        assert exc_info.value.current_status == SubmissionStatus.PENDING.value
        assert service.get_submission(submission.id).status == SubmissionStatus.PENDING


class TestBulkReview:
    """Tests for bulk review."""

    def test_bulk_approve(self, service, participant, reviewer, session_factory):
        """All pending submissions in the batch are approved and credited."""
        ids = [
            service.create_submission(participant.id, ActivityCode.EXPLORE, EXPLORE_PAYLOAD).id
            for _ in range(3)
        ]

        result = service.bulk_review(ids, reviewer.id, ReviewDecision.APPROVE)

        assert result.processed_count == 3
        assert result.skipped_ids == []
        assert service.get_points(participant.id).total_points == 150

    def test_bulk_skips_already_reviewed(self, service, participant, reviewer):
        """A submission reviewed beforehand is skipped, the rest are processed."""
        ids = [
            service.create_submission(participant.id, ActivityCode.EXPLORE, EXPLORE_PAYLOAD).id
            for _ in range(3)
        ]
        service.review(ids[1], reviewer.id, ReviewDecision.APPROVE)

        result = service.bulk_review(ids, reviewer.id, ReviewDecision.APPROVE)

        assert result.processed_count == 2
        assert result.skipped_ids == [ids[1]]
        assert service.get_points(participant.id).total_points == 150

    def test_bulk_skips_concurrent_approval(self, session_factory, settings, clock, participant, reviewer):
        """A submission approved concurrently by another actor is skipped silently."""
        plain = PointsService(session_factory, settings=settings, clock=clock)
        ids = [
            plain.create_submission(participant.id, ActivityCode.EXPLORE, EXPLORE_PAYLOAD).id
            for _ in range(3)
        ]
        racing = RacingService(session_factory, settings=settings, clock=clock, race_id=ids[0])

        result = racing.bulk_review(ids, reviewer.id, ReviewDecision.APPROVE)

        assert result.processed_count == 2
        assert result.skipped_ids == [ids[0]]
        assert len(ledger_rows(session_factory, participant.id)) == 2

    def test_bulk_reject(self, service, participant, reviewer, session_factory):
        """Bulk reject moves every pending submission to REJECTED."""
        ids = [
            service.create_submission(participant.id, ActivityCode.EXPLORE, EXPLORE_PAYLOAD).id
            for _ in range(2)
        ]

        result = service.bulk_review(ids, reviewer.id, ReviewDecision.REJECT, note="Duplicate evidence")

        assert result.processed_count == 2
        assert all(service.get_submission(i).status == SubmissionStatus.REJECTED for i in ids)
        assert ledger_rows(session_factory, participant.id) == []

    def test_bulk_unknown_ids_are_skipped(self, service, participant, reviewer):
        """Ids that do not exist are reported as skipped."""
        real = service.create_submission(participant.id, ActivityCode.EXPLORE, EXPLORE_PAYLOAD).id

        result = service.bulk_review([real, "missing"], reviewer.id, ReviewDecision.APPROVE)

        assert result.processed_count == 1
        assert result.skipped_ids == ["missing"]

    def test_bulk_limit(self, service, reviewer):
        """More than 50 ids in one call is a validation error."""
        with pytest.raises(ValidationError):
            service.bulk_review([f"s{i}" for i in range(51)], reviewer.id, ReviewDecision.APPROVE)

    def test_bulk_empty(self, service, reviewer):
        """An empty batch is a validation error."""
        with pytest.raises(ValidationError):
            service.bulk_review([], reviewer.id, ReviewDecision.APPROVE)


class TestLearnApproval:
    """Tests for the Learn special case."""

    def test_learn_approval_credits_nothing(self, service, participant, reviewer, session_factory):
        """Approving Learn changes status but writes no ledger entry."""
        submission = service.create_submission(participant.id, ActivityCode.LEARN, LEARN_PAYLOAD)

        result = service.review(submission.id, reviewer.id, ReviewDecision.APPROVE)

        assert result.submission.status == SubmissionStatus.APPROVED
        assert result.points_awarded == 0
        assert result.ledger_entry is None
        assert ledger_rows(session_factory, participant.id) == []
        with session_factory() as db:
            approvals = audit.entries_for_target(db, submission.id, AuditAction.APPROVE_SUBMISSION)
        assert len(approvals) == 1
        assert approvals[0].meta["points_awarded"] == 0


class TestPointsLedger:
    """Tests for corrections, totals and immutability."""

    def test_totals_are_sums(self, service, participant, reviewer):
        """Totals and per-activity totals derive from the ledger."""
        amplify = service.create_submission(participant.id, ActivityCode.AMPLIFY, AMPLIFY_PAYLOAD)
        explore = service.create_submission(participant.id, ActivityCode.EXPLORE, EXPLORE_PAYLOAD)
        service.review(amplify.id, reviewer.id, ReviewDecision.APPROVE)
        service.review(explore.id, reviewer.id, ReviewDecision.APPROVE)

        points = service.get_points(participant.id)

        assert points.total_points == 90
        assert points.by_activity == {ActivityCode.AMPLIFY: 40, ActivityCode.EXPLORE: 50}
        assert points.total_entries == 2
        assert points.last_entry_at is not None

    def test_correction_offsets_total(self, service, participant, reviewer, session_factory):
        """A correction appends a new entry instead of editing the old one."""
        submission = service.create_submission(participant.id, ActivityCode.AMPLIFY, AMPLIFY_PAYLOAD)
        service.review(submission.id, reviewer.id, ReviewDecision.APPROVE)

        entry = service.record_correction(
            participant.id, ActivityCode.AMPLIFY, -10, actor_id="user_admin", reason="Double counted peers"
        )

        assert entry.delta_points == -10
        assert entry.external_event_id is None
        assert service.get_points(participant.id).total_points == 30
        history = service.get_ledger_history(participant.id)
        assert history.total_count == 2
        assert history.total_points == 30
        with session_factory() as db:
            adjustments = audit.entries_for_target(db, participant.id, AuditAction.ADJUST_POINTS)
        assert len(adjustments) == 1
        assert adjustments[0].meta["delta"] == -10

    def test_correction_requires_delta_and_reason(self, service, participant):
        """Zero deltas and blank reasons are rejected."""
        with pytest.raises(ValidationError):
            service.record_correction(participant.id, ActivityCode.SHINE, 0, actor_id="user_admin", reason="x")
        with pytest.raises(ValidationError):
            service.record_correction(participant.id, ActivityCode.SHINE, 5, actor_id="user_admin", reason=" ")

    def test_leaderboard_orders_by_total(self, service, participant, reviewer):
        """The leaderboard ranks users by summed points."""
        service.record_correction(reviewer.id, ActivityCode.SHINE, 5, actor_id="user_admin", reason="Pilot")
        service.record_correction(participant.id, ActivityCode.SHINE, 15, actor_id="user_admin", reason="Pilot")

        rows = service.leaderboard()

        assert [(r.user_id, r.total_points) for r in rows] == [(participant.id, 15), (reviewer.id, 5)]

    def test_ledger_rows_cannot_be_updated(self, service, participant, session_factory):
        """Ledger entries reject in-place edits."""
        service.record_correction(participant.id, ActivityCode.SHINE, 5, actor_id="user_admin", reason="Pilot")

        with session_factory() as db:
            row = db.execute(select(tables.PointsLedgerEntry)).scalar_one()
            row.delta_points = 500
            with pytest.raises(AppendOnlyViolation):
                db.flush()
            db.rollback()

    def test_ledger_rows_cannot_be_deleted(self, service, participant, session_factory):
        """Ledger entries reject deletes."""
        service.record_correction(participant.id, ActivityCode.SHINE, 5, actor_id="user_admin", reason="Pilot")

        with session_factory() as db:
            row = db.execute(select(tables.PointsLedgerEntry)).scalar_one()
            db.delete(row)
            with pytest.raises(AppendOnlyViolation):
                db.flush()
            db.rollback()

        assert service.get_points(participant.id).total_points == 5


def amplify_session(start=None, city=None, session_date="2025-09-14", peers=5):
    payload = {"peers_trained": peers, "students_trained": 0, "session_date": session_date}
    if start is not None:
        payload["session_start_time"] = start
    if city is not None:
        payload["location"] = {"venue": "Library", "city": city}
    return payload


class TestReviewWarnings:
    """Tests for advisory warnings on Amplify approval."""

    def test_missing_start_time(self, service, participant, reviewer):
        """Sessions without a start time are flagged."""
        submission = service.create_submission(participant.id, ActivityCode.AMPLIFY, amplify_session(city="Lagos"))

        result = service.review(submission.id, reviewer.id, ReviewDecision.APPROVE)

        assert result.warnings == [MISSING_SESSION_START_TIME]
        assert result.submission.status == SubmissionStatus.APPROVED

    def test_missing_city(self, service, participant, reviewer):
        """Sessions with a start time but no city are flagged."""
        submission = service.create_submission(participant.id, ActivityCode.AMPLIFY, amplify_session(start="10:00"))

        result = service.review(submission.id, reviewer.id, ReviewDecision.APPROVE)

        assert result.warnings == [MISSING_CITY]

    def test_nearby_session_in_same_city_is_suspect(self, service, participant, reviewer, session_factory):
        """An approved session in the same city 30 minutes apart flags a duplicate."""
        first = service.create_submission(participant.id, ActivityCode.AMPLIFY, amplify_session("10:00", "Lagos"))
        second = service.create_submission(participant.id, ActivityCode.AMPLIFY, amplify_session("10:30", "lagos "))
        assert service.review(first.id, reviewer.id, ReviewDecision.APPROVE).warnings == []

        result = service.review(second.id, reviewer.id, ReviewDecision.APPROVE)

        assert result.warnings == [DUPLICATE_SESSION_SUSPECT]
        assert result.points_awarded == 10
        with session_factory() as db:
            approvals = audit.entries_for_target(db, second.id, AuditAction.APPROVE_SUBMISSION)
        assert approvals[0].meta["warnings"] == [DUPLICATE_SESSION_SUSPECT]

    def test_distant_or_other_city_sessions_are_clean(self, service, participant, reviewer):
        """Sessions an hour apart or in another city are not flagged."""
        base = service.create_submission(participant.id, ActivityCode.AMPLIFY, amplify_session("10:00", "Lagos"))
        later = service.create_submission(participant.id, ActivityCode.AMPLIFY, amplify_session("11:00", "Lagos"))
        elsewhere = service.create_submission(participant.id, ActivityCode.AMPLIFY, amplify_session("10:15", "Abuja"))
        service.review(base.id, reviewer.id, ReviewDecision.APPROVE)

        assert service.review(later.id, reviewer.id, ReviewDecision.APPROVE).warnings == []
        assert service.review(elsewhere.id, reviewer.id, ReviewDecision.APPROVE).warnings == []

    def test_pending_sessions_are_not_compared(self, service, participant, reviewer):
        """Only already approved sessions count as potential duplicates."""
        service.create_submission(participant.id, ActivityCode.AMPLIFY, amplify_session("10:00", "Lagos"))
        second = service.create_submission(participant.id, ActivityCode.AMPLIFY, amplify_session("10:10", "Lagos"))

        assert service.review(second.id, reviewer.id, ReviewDecision.APPROVE).warnings == []

    def test_other_activities_have_no_warnings(self, service, participant, reviewer):
        """Explore approvals carry no session warnings."""
        submission = service.create_submission(participant.id, ActivityCode.EXPLORE, EXPLORE_PAYLOAD)

        assert service.review(submission.id, reviewer.id, ReviewDecision.APPROVE).warnings == []


class TestAuditTrail:
    """Tests for reading the audit log back."""

    def test_trail_follows_submission_lifecycle(self, service, participant, reviewer):
        """Create, approve and adjust show up in order for the submission."""
        submission = service.create_submission(participant.id, ActivityCode.AMPLIFY, HUNDRED_POINT_AMPLIFY)
        service.review(submission.id, reviewer.id, ReviewDecision.APPROVE, point_override=110, note="Great turnout")

        trail = service.get_audit_trail(submission.id)

        assert [e.action for e in trail] == [
            AuditAction.CREATE_SUBMISSION.value,
            AuditAction.APPROVE_SUBMISSION.value,
            AuditAction.ADJUST_SUBMISSION_POINTS.value,
        ]
        assert trail[1].actor_id == reviewer.id
        assert trail[2].meta["adjustment"] == 10

    def test_trail_filters_by_action(self, service, participant, reviewer):
        """An action filter narrows the trail."""
        submission = service.create_submission(participant.id, ActivityCode.AMPLIFY, AMPLIFY_PAYLOAD)
        service.review(submission.id, reviewer.id, ReviewDecision.REJECT, note="No evidence")

        trail = service.get_audit_trail(submission.id, AuditAction.REJECT_SUBMISSION)

        assert len(trail) == 1
        assert trail[0].meta["note"] == "No evidence"

    def test_unknown_target_is_empty(self, service):
        """No entries for an unknown target."""
        assert service.get_audit_trail("missing") == []
