"""
Default badge evaluator.

Badges are sticky: once earned they are never revoked. Evaluation is
idempotent and safe to call after every point credit; the
(user_id, badge_code) unique constraint backs the already-earned check.
"""

import logging
from typing import Protocol

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import tables
from .models import ActivityCode, SubmissionStatus

logger = logging.getLogger(__name__)

STARTER_TAGS = ("elevate-ai-1-completed", "elevate-ai-2-completed")


class BadgeEvaluator(Protocol):
    def __call__(self, db: Session, user_id: str) -> None: ...


def _count_approved(db: Session, user_id: str, activity_code: ActivityCode) -> int:
    return int(
        db.execute(
            select(func.count(tables.Submission.id)).where(
                tables.Submission.user_id == user_id,
                tables.Submission.activity_code == activity_code.value,
                tables.Submission.status == SubmissionStatus.APPROVED,
            )
        ).scalar_one()
    )


def earned_badges(db: Session, user_id: str) -> set[str]:
    return set(
        db.execute(
            select(tables.EarnedBadge.badge_code).where(tables.EarnedBadge.user_id == user_id)
        ).scalars()
    )


def grant_badges_for_user(db: Session, user_id: str) -> None:
    have = earned_badges(db, user_id)
    to_insert: list[str] = []

    if "STARTER" not in have:
        tags = set(
            db.execute(
                select(tables.TagGrant.tag_name).where(
                    tables.TagGrant.user_id == user_id,
                    tables.TagGrant.tag_name.in_(STARTER_TAGS),
                )
            ).scalars()
        )
        if tags.issuperset(STARTER_TAGS):
            to_insert.append("STARTER")

    if "IN_CLASS_INNOVATOR" not in have and _count_approved(db, user_id, ActivityCode.EXPLORE) > 0:
        to_insert.append("IN_CLASS_INNOVATOR")

    if "COMMUNITY_VOICE" not in have and _count_approved(db, user_id, ActivityCode.PRESENT) > 0:
        to_insert.append("COMMUNITY_VOICE")

    for code in to_insert:
        try:
            with db.begin_nested():
                db.add(tables.EarnedBadge(user_id=user_id, badge_code=code))
                db.flush()
        except IntegrityError:
            # Another transaction granted it first.
            continue
        logger.info("Badge %s granted to user %s", code, user_id)
