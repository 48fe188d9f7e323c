"""
External Event Ingestor.

Turns Kajabi "contact tagged" deliveries into Learn credit. Deduplication
happens at three levels, all enforced by unique constraints:

1. external_events(event_id, tag_name_norm)   redelivery of the same event
2. tag_grants(user_id, tag_name)              same course credited under a new event id
3. points_ledger(external_source, external_event_id)   same crediting identity

Grant, ledger insert, badge evaluation and the status update share one
transaction per event.
"""

import hashlib
import hmac
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Union

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from . import audit, tables
from .activities import ACTIVITIES
from .audit import AuditAction
from .badges import BadgeEvaluator, grant_badges_for_user
from .config import Settings
from .errors import (
    DuplicateCreditError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from .ledger import CreditIdentity, LedgerStore, NewLedgerEntry
from .models import (
    ActivityCode,
    EventStatus,
    ExternalEvent,
    IngestResult,
    LedgerSource,
    REPROCESSABLE_EVENT_STATUSES,
)

logger = logging.getLogger(__name__)

PROVIDER = "kajabi"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# -------------------------------------------------------------------
# Payload parsing
# -------------------------------------------------------------------

class KajabiContact(BaseModel):
    id: Union[int, str]
    email: Optional[str] = None


class KajabiTag(BaseModel):
    name: str


class KajabiTagEvent(BaseModel):
    event_id: Optional[Union[int, str]] = None
    event_type: str = "contact.tagged"
    contact: KajabiContact
    tag: KajabiTag
    created_at: Optional[Any] = None


@dataclass(frozen=True)
class NormalizedEvent:
    event_id: str
    tag_raw: str
    tag_norm: str
    contact_id: Optional[str]
    email: Optional[str]
    occurred_at: datetime
    raw: dict


def _from_json_api(raw: dict) -> KajabiTagEvent:
    """Fallback for v1 JSON:API deliveries (data/attributes + included nodes)."""
    data = raw.get("data") if isinstance(raw.get("data"), dict) else {}
    attributes = data.get("attributes") if isinstance(data.get("attributes"), dict) else {}
    included = raw.get("included") if isinstance(raw.get("included"), list) else []

    def _node(*types: str) -> dict:
        for node in included:
            if isinstance(node, dict) and node.get("type") in types:
                return node
        return {}

    contact = _node("contacts", "contact")
    tag = _node("tags", "tag")
    contact_attrs = contact.get("attributes") or {}
    tag_attrs = tag.get("attributes") or {}
    email = contact_attrs.get("email") or contact_attrs.get("email_address")
    tag_name = tag_attrs.get("name") or tag_attrs.get("title")
    if not email or not tag_name:
        raise ValidationError("Missing email or tag name in JSON:API payload")

    try:
        return KajabiTagEvent(
            event_id=raw.get("event_id") or data.get("id"),
            event_type=str(attributes.get("event") or raw.get("event") or "tag.added"),
            contact=KajabiContact(id=contact.get("id") or "", email=str(email)),
            tag=KajabiTag(name=str(tag_name)),
            created_at=attributes.get("created_at") or raw.get("created_at"),
        )
    except PydanticValidationError as e:
        raise ValidationError("Malformed JSON:API payload", details=[
            {"loc": list(err["loc"]), "msg": err["msg"], "type": err["type"]} for err in e.errors()
        ])


def parse_payload(raw: Any) -> KajabiTagEvent:
    if not isinstance(raw, dict):
        raise ValidationError("Webhook body must be a JSON object")
    try:
        return KajabiTagEvent.model_validate(raw)
    except PydanticValidationError:
        return _from_json_api(raw)


def parse_event_time(value: Any, default: datetime) -> datetime:
    # Only string timestamps are read; anything else means "now".
    if not isinstance(value, str) or not value.strip():
        return default
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError(f"created_at is not an ISO-8601 timestamp: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def compute_event_id(contact_id: Optional[str], tag_norm: str, occurred_at: datetime) -> str:
    """Derived id for deliveries that arrive without one.

    Stable across redeliveries only when the delivery carries created_at.
    Without it occurred_at is the receive time, so each redelivery gets a new
    id and only the tag grant keeps the credit single.
    """
    source = f"{contact_id or ''}:{tag_norm}:{occurred_at.isoformat()}"
    return f"{PROVIDER}_{hashlib.sha256(source.encode('utf-8')).hexdigest()[:16]}"


def normalize_event(raw: Any, now: datetime) -> NormalizedEvent:
    event = parse_payload(raw)
    tag_raw = event.tag.name
    tag_norm = tag_raw.strip().lower()
    if not tag_norm:
        raise ValidationError("Tag name is required")
    contact_id = str(event.contact.id).strip() or None
    email = (event.contact.email or "").strip().lower() or None
    occurred_at = parse_event_time(event.created_at, now)
    event_id = str(event.event_id).strip() if event.event_id is not None else ""
    return NormalizedEvent(
        event_id=event_id or compute_event_id(contact_id, tag_norm, occurred_at),
        tag_raw=tag_raw,
        tag_norm=tag_norm,
        contact_id=contact_id,
        email=email,
        occurred_at=occurred_at,
        raw=raw,
    )


# -------------------------------------------------------------------
# Transport checks
# -------------------------------------------------------------------

def sign_payload(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    if not secret or not signature:
        return False
    if "=" in signature:
        _, signature = signature.split("=", 1)
    return hmac.compare_digest(signature.strip(), sign_payload(body, secret))


def ensure_recent(occurred_at: datetime, now: datetime, max_skew_seconds: int) -> None:
    if abs(now - occurred_at) > timedelta(seconds=max_skew_seconds):
        raise ValidationError("Event timestamp outside allowed window")


# -------------------------------------------------------------------
# Ingestor
# -------------------------------------------------------------------

class EventIngestor:
    def __init__(
        self,
        session_factory: sessionmaker,
        settings: Optional[Settings] = None,
        ledger: Optional[LedgerStore] = None,
        badge_evaluator: BadgeEvaluator = grant_badges_for_user,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.session_factory = session_factory
        self.settings = settings or Settings()
        self.ledger = ledger or LedgerStore()
        self.badge_evaluator = badge_evaluator
        self.clock = clock

    def ingest(self, raw_payload: Any, max_skew_seconds: Optional[int] = None) -> IngestResult:
        """Webhook path. Ineligible users end in a silent terminal state."""
        now = self.clock()
        event = normalize_event(raw_payload, now)
        if max_skew_seconds is not None:
            ensure_recent(event.occurred_at, now, max_skew_seconds)

        with self.session_factory() as db, db.begin():
            record = tables.ExternalEventRecord(
                provider=PROVIDER,
                event_id=event.event_id,
                tag_name_raw=event.tag_raw,
                tag_name_norm=event.tag_norm,
                contact_id=event.contact_id,
                email=event.email,
                occurred_at=event.occurred_at,
                status=EventStatus.RECEIVED,
                raw=event.raw,
            )
            try:
                with db.begin_nested():
                    db.add(record)
                    db.flush()
            except IntegrityError:
                existing = self._find_record(db, event.event_id, event.tag_norm)
                result = IngestResult(
                    status=EventStatus.DUPLICATE,
                    event_record_id=existing.id if existing else None,
                    user_id=existing.user_id if existing else None,
                )
            else:
                result = self._process(db, record)

        logger.info(
            "Kajabi event %s tag=%s -> %s", event.event_id, event.tag_norm, result.status.value
        )
        return result

    def reprocess(self, record_id: str, actor_id: Optional[str] = None) -> IngestResult:
        """Interactive path: re-enter the pipeline for a stored event.

        Raises ForbiddenError for ineligible users after persisting the status.
        """
        with self.session_factory() as db, db.begin():
            record = db.get(tables.ExternalEventRecord, record_id)
            if record is None:
                raise NotFoundError(f"Event {record_id} not found")
            if record.status not in REPROCESSABLE_EVENT_STATUSES:
                raise InvalidStateError(record.status.value, f"Event already {record.status.value}")

            result = self._process(db, record)
            audit.record(
                db,
                actor_id=actor_id,
                action=AuditAction.KAJABI_EVENT_REPROCESSED,
                target_id=record.id,
                meta={"event_id": record.event_id, "tag_name": record.tag_name_norm, "status": result.status.value},
            )

        logger.info("Kajabi event %s reprocessed -> %s", record_id, result.status.value)
        if result.status == EventStatus.REJECTED_INELIGIBLE:
            raise ForbiddenError("Student accounts are not eligible")
        return result

    def get_event(self, record_id: str) -> ExternalEvent:
        with self.session_factory() as db:
            record = db.get(tables.ExternalEventRecord, record_id)
            if record is None:
                raise NotFoundError(f"Event {record_id} not found")
            return ExternalEvent.model_validate(record)

    def list_events(self, status: Optional[EventStatus] = None, limit: int = 50) -> list[ExternalEvent]:
        with self.session_factory() as db:
            query = select(tables.ExternalEventRecord)
            if status is not None:
                query = query.where(tables.ExternalEventRecord.status == EventStatus(status))
            query = query.order_by(tables.ExternalEventRecord.created_at.desc()).limit(limit)
            return [ExternalEvent.model_validate(r) for r in db.execute(query).scalars()]

    def _process(self, db: Session, record: tables.ExternalEventRecord) -> IngestResult:
        if record.tag_name_norm not in self.settings.learn_tags:
            return self._finish(db, record, EventStatus.IGNORED)

        user = self._resolve_user(db, record)
        if user is None:
            return self._finish(db, record, EventStatus.QUEUED_UNMATCHED)
        record.user_id = user.id

        if user.is_ineligible:
            return self._finish(db, record, EventStatus.REJECTED_INELIGIBLE)

        try:
            with db.begin_nested():
                db.add(tables.TagGrant(
                    user_id=user.id,
                    tag_name=record.tag_name_norm,
                    granted_at=record.occurred_at,
                ))
                db.flush()
        except IntegrityError:
            logger.info("Kajabi grant deduplicated for user %s tag=%s", user.id, record.tag_name_norm)
            return self._finish(db, record, EventStatus.DUPLICATE)

        learn = ACTIVITIES[ActivityCode.LEARN]
        points = learn.compute_points({})
        identity = CreditIdentity.for_tag_event(PROVIDER, record.event_id, record.tag_name_norm)
        try:
            self.ledger.append(db, NewLedgerEntry(
                user_id=user.id,
                activity_code=learn.code,
                delta_points=points,
                source=LedgerSource.WEBHOOK,
                event_time=record.occurred_at,
                identity=identity,
                meta={"tag_name": record.tag_name_norm, "event_record_id": record.id},
            ))
        except DuplicateCreditError:
            logger.info("Kajabi points deduplicated for %s", identity.external_event_id)
            return self._finish(db, record, EventStatus.DUPLICATE)

        self.badge_evaluator(db, user.id)
        audit.record(
            db,
            actor_id=None,
            action=AuditAction.KAJABI_POINTS_AWARDED,
            target_id=user.id,
            meta={
                "event_record_id": record.id,
                "event_id": record.event_id,
                "tag_name": record.tag_name_norm,
                "points_awarded": points,
            },
        )
        return self._finish(db, record, EventStatus.PROCESSED, points)

    def _finish(
        self, db: Session, record: tables.ExternalEventRecord, status: EventStatus, points: int = 0
    ) -> IngestResult:
        record.status = status
        db.flush()
        return IngestResult(
            status=status,
            event_record_id=record.id,
            user_id=record.user_id,
            points_awarded=points,
        )

    def _resolve_user(self, db: Session, record: tables.ExternalEventRecord) -> Optional[tables.User]:
        user = None
        if record.contact_id:
            user = self._user_by_contact(db, record.contact_id)
        if user is None and record.email:
            user = db.execute(
                select(tables.User).where(tables.User.email == record.email)
            ).scalar_one_or_none()
            if user is not None and not user.external_contact_id and record.contact_id:
                # Cache-fill for the fast path; a concurrent link wins.
                try:
                    with db.begin_nested():
                        user.external_contact_id = record.contact_id
                        db.flush()
                except IntegrityError:
                    owner = self._user_by_contact(db, record.contact_id)
                    if owner is not None:
                        user = owner
        return user

    def _user_by_contact(self, db: Session, contact_id: str) -> Optional[tables.User]:
        return db.execute(
            select(tables.User).where(tables.User.external_contact_id == contact_id)
        ).scalar_one_or_none()

    def _find_record(self, db: Session, event_id: str, tag_norm: str) -> Optional[tables.ExternalEventRecord]:
        return db.execute(
            select(tables.ExternalEventRecord).where(
                tables.ExternalEventRecord.event_id == event_id,
                tables.ExternalEventRecord.tag_name_norm == tag_norm,
            )
        ).scalar_one_or_none()
