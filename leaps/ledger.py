"""
Ledger Store.

Append-only point deltas. A user's total is always a SUM over this table;
nothing here caches a running balance. Idempotent credits carry a
CreditIdentity and rely on the (external_source, external_event_id) unique
constraint to reject the second of two racing inserts.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import tables
from .errors import DuplicateCreditError
from .models import ActivityCode, LedgerSource

ADMIN_APPROVAL_SOURCE = "admin_approval"


@dataclass(frozen=True)
class CreditIdentity:
    """Identity of the crediting event, distinct from the ledger row's own id."""

    external_source: str
    external_event_id: str

    @classmethod
    def for_submission(cls, submission_id: str) -> "CreditIdentity":
        return cls(ADMIN_APPROVAL_SOURCE, f"submission_{submission_id}")

    @classmethod
    def for_tag_event(cls, provider: str, event_id: str, tag_name: str) -> "CreditIdentity":
        return cls(provider, f"{provider}:{event_id}|tag:{tag_name}")


@dataclass
class NewLedgerEntry:
    user_id: str
    activity_code: ActivityCode
    delta_points: int
    source: LedgerSource
    event_time: datetime
    identity: Optional[CreditIdentity] = None
    meta: dict = field(default_factory=dict)


class LedgerStore:
    def append(self, db: Session, entry: NewLedgerEntry) -> tables.PointsLedgerEntry:
        row = tables.PointsLedgerEntry(
            user_id=entry.user_id,
            activity_code=ActivityCode(entry.activity_code).value,
            source=entry.source,
            delta_points=entry.delta_points,
            external_source=entry.identity.external_source if entry.identity else None,
            external_event_id=entry.identity.external_event_id if entry.identity else None,
            event_time=entry.event_time,
            meta=dict(entry.meta),
        )
        if entry.identity is None:
            db.add(row)
            db.flush()
            return row

        # Flush outstanding work first so only this insert sits in the savepoint.
        db.flush()
        try:
            with db.begin_nested():
                db.add(row)
                db.flush()
        except IntegrityError:
            raise DuplicateCreditError(entry.identity.external_source, entry.identity.external_event_id)
        return row

    def find_by_identity(self, db: Session, identity: CreditIdentity) -> Optional[tables.PointsLedgerEntry]:
        return db.execute(
            select(tables.PointsLedgerEntry).where(
                tables.PointsLedgerEntry.external_source == identity.external_source,
                tables.PointsLedgerEntry.external_event_id == identity.external_event_id,
            )
        ).scalar_one_or_none()

    def total_for_user(self, db: Session, user_id: str, activity_code: Optional[ActivityCode] = None) -> int:
        query = select(func.coalesce(func.sum(tables.PointsLedgerEntry.delta_points), 0)).where(
            tables.PointsLedgerEntry.user_id == user_id
        )
        if activity_code is not None:
            query = query.where(tables.PointsLedgerEntry.activity_code == ActivityCode(activity_code).value)
        return int(db.execute(query).scalar_one())

    def totals_by_activity(self, db: Session, user_id: str) -> dict[ActivityCode, int]:
        rows = db.execute(
            select(
                tables.PointsLedgerEntry.activity_code,
                func.sum(tables.PointsLedgerEntry.delta_points),
            )
            .where(tables.PointsLedgerEntry.user_id == user_id)
            .group_by(tables.PointsLedgerEntry.activity_code)
        ).all()
        return {ActivityCode(code): int(total or 0) for code, total in rows}

    def entries_for_user(self, db: Session, user_id: str, limit: int = 50, offset: int = 0) -> list[tables.PointsLedgerEntry]:
        return list(
            db.execute(
                select(tables.PointsLedgerEntry)
                .where(tables.PointsLedgerEntry.user_id == user_id)
                .order_by(tables.PointsLedgerEntry.created_at.desc(), tables.PointsLedgerEntry.id)
                .limit(limit)
                .offset(offset)
            ).scalars()
        )

    def count_for_user(self, db: Session, user_id: str) -> int:
        return int(
            db.execute(
                select(func.count(tables.PointsLedgerEntry.id)).where(
                    tables.PointsLedgerEntry.user_id == user_id
                )
            ).scalar_one()
        )

    def last_entry_at(self, db: Session, user_id: str) -> Optional[datetime]:
        return db.execute(
            select(func.max(tables.PointsLedgerEntry.created_at)).where(
                tables.PointsLedgerEntry.user_id == user_id
            )
        ).scalar_one()

    def leaderboard(self, db: Session, limit: int = 20) -> list[tuple[str, int]]:
        total = func.sum(tables.PointsLedgerEntry.delta_points).label("total")
        rows = db.execute(
            select(tables.PointsLedgerEntry.user_id, total)
            .group_by(tables.PointsLedgerEntry.user_id)
            .order_by(total.desc(), tables.PointsLedgerEntry.user_id)
            .limit(limit)
        ).all()
        return [(user_id, int(points or 0)) for user_id, points in rows]
