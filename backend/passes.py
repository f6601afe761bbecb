"""Pass kinds, statuses and the single place that decides admission.

Tickets, subscriptions and media passes share the QR token columns but differ
in which status admits entry, which column bounds their validity and whether
a scan uses them up. Everything that needs to know those differences asks
this module.
"""

from datetime import datetime, time, timedelta, timezone
from enum import Enum
from typing import Optional, Tuple

from sqlalchemy.orm import Session

import config
import models
from errors import AlreadyRedeemed, Expired, NotFound, Unpaid


class PassKind(str, Enum):
    TICKET = "ticket"
    SUBSCRIPTION = "subscription"
    MEDIA_PASS = "media_pass"

    @property
    def label(self) -> str:
        return LABELS[self]


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    TEST = "test"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class SubscriptionStatus(str, Enum):
    INCOMPLETE = "incomplete"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


LABELS = {
    PassKind.TICKET: "Ticket",
    PassKind.SUBSCRIPTION: "Subscription",
    PassKind.MEDIA_PASS: "Media pass",
}

MODELS = {
    PassKind.TICKET: models.Ticket,
    PassKind.SUBSCRIPTION: models.Subscription,
    PassKind.MEDIA_PASS: models.MediaPass,
}

STATUS_ENUMS = {
    PassKind.TICKET: PaymentStatus,
    PassKind.SUBSCRIPTION: SubscriptionStatus,
    PassKind.MEDIA_PASS: PaymentStatus,
}

ADMITTING_STATUS = {
    PassKind.TICKET: PaymentStatus.PAID,
    PassKind.SUBSCRIPTION: SubscriptionStatus.ACTIVE,
    PassKind.MEDIA_PASS: PaymentStatus.PAID,
}

# Lookup order when resolving a scanned token.
LOOKUP_ORDER = (PassKind.TICKET, PassKind.SUBSCRIPTION, PassKind.MEDIA_PASS)

NOT_FOUND_REASON = "QR code not found or invalid"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def isoformat(value: Optional[datetime]) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None


def parse_status(kind: PassKind, raw: Optional[str]):
    """Return the status enum member for ``raw``, or None for unknown values."""
    try:
        return STATUS_ENUMS[kind](raw)
    except ValueError:
        return None


def validity_boundary(kind: PassKind, record) -> Optional[datetime]:
    if kind is PassKind.SUBSCRIPTION:
        return as_utc(record.current_period_end)
    return as_utc(record.valid_until)


def is_single_use(kind: PassKind) -> bool:
    return kind is PassKind.TICKET


def find_by_token(db: Session, token: str) -> Tuple[PassKind, object]:
    if token:
        for kind in LOOKUP_ORDER:
            model = MODELS[kind]
            record = db.query(model).filter(model.qr_code_token == token).first()
            if record is not None:
                return kind, record
    raise NotFound(NOT_FOUND_REASON)


def ensure_admissible(kind: PassKind, record, now: Optional[datetime] = None) -> None:
    """Raise the first reason ``record`` cannot be let in at ``now``.

    Order: redemption latch (tickets), status, validity boundary.
    """
    now = now or utcnow()
    label = kind.label

    if is_single_use(kind) and record.used_at is not None:
        raise AlreadyRedeemed(f"{label} already used", used_at=as_utc(record.used_at), used_by=record.used_by)

    if parse_status(kind, record.status) is not ADMITTING_STATUS[kind]:
        if kind is PassKind.SUBSCRIPTION:
            raise Unpaid(f"{label} not active", status=record.status)
        raise Unpaid(f"{label} not paid", status=record.status)

    boundary = validity_boundary(kind, record)
    if boundary is not None and now > boundary:
        if kind is PassKind.SUBSCRIPTION:
            raise Expired(f"{label} expired", current_period_end=boundary)
        raise Expired(f"{label} expired", valid_until=boundary)


def owner_name(db: Session, user_id: Optional[str]) -> str:
    user = db.query(models.User).filter(models.User.id == user_id).first() if user_id else None
    return user.display_name if user else "Unknown"


def describe(db: Session, kind: PassKind, record, include_redemption: bool = False) -> dict:
    """Public facts about a record, as shown to door staff and ticket holders."""
    info = {
        "id": record.id,
        "user_name": owner_name(db, record.user_id),
        "created_at": isoformat(record.created_at),
    }
    if kind is PassKind.TICKET:
        info.update(
            amount=record.amount,
            event_id=record.event_id,
            valid_until=isoformat(record.valid_until),
        )
        if include_redemption:
            info.update(used_at=isoformat(record.used_at), used_by=record.used_by)
    elif kind is PassKind.SUBSCRIPTION:
        info.update(
            status=record.status,
            current_period_end=isoformat(record.current_period_end),
        )
    elif kind is PassKind.MEDIA_PASS:
        info.update(
            pass_type=record.pass_type,
            photographer_name=record.photographer_name,
            instagram_handle=record.instagram_handle,
            amount=record.amount,
            valid_until=isoformat(record.valid_until),
            status=record.status,
        )
    else:
        raise ValueError(f"Unknown pass kind: {kind}")
    return info


def end_of_day(value: datetime) -> datetime:
    return datetime.combine(as_utc(value).date(), time.max, tzinfo=timezone.utc)


def ticket_valid_until(db: Session, event_id: Optional[str] = None, now: Optional[datetime] = None) -> datetime:
    """Tickets and media passes stay good until the end of the day two days after their event."""
    now = now or utcnow()
    event = None
    if event_id:
        event = db.query(models.Event).filter(models.Event.id == event_id).first()
    if event is None:
        event = (
            db.query(models.Event)
            .filter(models.Event.starts_at >= as_utc(now))
            .order_by(models.Event.starts_at.asc())
            .first()
        )
    if event is None:
        return end_of_day(now + timedelta(days=config.TICKET_VALIDITY_DAYS))
    return end_of_day(as_utc(event.starts_at) + timedelta(days=2))
