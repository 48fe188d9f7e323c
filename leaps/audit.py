from enum import Enum
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from . import tables


class AuditAction(str, Enum):
    CREATE_SUBMISSION = "CREATE_SUBMISSION"
    APPROVE_SUBMISSION = "APPROVE_SUBMISSION"
    REJECT_SUBMISSION = "REJECT_SUBMISSION"
    ADJUST_SUBMISSION_POINTS = "ADJUST_SUBMISSION_POINTS"
    ADJUST_POINTS = "ADJUST_POINTS"
    KAJABI_POINTS_AWARDED = "KAJABI_POINTS_AWARDED"
    KAJABI_EVENT_REPROCESSED = "KAJABI_EVENT_REPROCESSED"
    CREATE_USER = "CREATE_USER"
    UPDATE_USER_ROLE = "UPDATE_USER_ROLE"
    UPDATE_USER_ELIGIBILITY = "UPDATE_USER_ELIGIBILITY"


def record(
    db: Session,
    *,
    actor_id: Optional[str],
    action: AuditAction,
    target_id: Optional[str],
    meta: Optional[dict] = None,
) -> tables.AuditLog:
    entry = tables.AuditLog(
        actor_id=actor_id,
        action=AuditAction(action).value,
        target_id=target_id,
        meta=meta or {},
    )
    db.add(entry)
    db.flush()
    return entry


def entries_for_target(db: Session, target_id: str, action: Optional[AuditAction] = None) -> list[tables.AuditLog]:
    query = select(tables.AuditLog).where(tables.AuditLog.target_id == target_id)
    if action is not None:
        query = query.where(tables.AuditLog.action == AuditAction(action).value)
    return list(db.execute(query.order_by(tables.AuditLog.created_at)).scalars())
