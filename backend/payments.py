"""Payment-completion webhook.

The payment provider is external. It tells us about a purchase by posting a
signed event keyed by its own payment reference; the first event for a
reference creates the record, later ones move its status.
"""

import hashlib
import hmac
import logging
from typing import Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import config
import models
import schemas
from errors import InvalidTransition, NotFound, WriteFailed
from passes import MODELS, PassKind, PaymentStatus, SubscriptionStatus, as_utc, parse_status, ticket_valid_until

logger = logging.getLogger(__name__)

PAYMENT_TRANSITIONS = {
    PaymentStatus.PENDING: {PaymentStatus.PAID, PaymentStatus.FAILED, PaymentStatus.CANCELLED},
    PaymentStatus.PAID: {PaymentStatus.REFUNDED},
    PaymentStatus.TEST: set(),
    PaymentStatus.FAILED: set(),
    PaymentStatus.CANCELLED: set(),
    PaymentStatus.REFUNDED: set(),
}

SUBSCRIPTION_TRANSITIONS = {
    SubscriptionStatus.INCOMPLETE: {SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELED},
    SubscriptionStatus.ACTIVE: {SubscriptionStatus.PAST_DUE, SubscriptionStatus.CANCELED},
    SubscriptionStatus.PAST_DUE: {SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELED},
    SubscriptionStatus.CANCELED: set(),
}


def sign_payload(payload: bytes, secret: Optional[str] = None) -> str:
    key = (secret or config.PAYMENT_WEBHOOK_SECRET).encode("utf-8")
    return hmac.new(key, payload, hashlib.sha256).hexdigest()


def verify_signature(payload: bytes, signature: Optional[str]) -> bool:
    if not signature:
        return False
    return hmac.compare_digest(sign_payload(payload), signature)


def allowed_transitions(kind: PassKind, current):
    if kind is PassKind.SUBSCRIPTION:
        return SUBSCRIPTION_TRANSITIONS.get(current, set())
    return PAYMENT_TRANSITIONS.get(current, set())


def transition(kind: PassKind, record, new_status: str) -> None:
    target = parse_status(kind, new_status)
    if target is None:
        raise InvalidTransition(f"Unknown {kind.label.lower()} status: {new_status}")
    current = parse_status(kind, record.status)
    if current is target:
        return
    if target not in allowed_transitions(kind, current):
        raise InvalidTransition(f"Cannot transition from {record.status} to {new_status}")
    record.status = target.value


def build_record(db: Session, kind: PassKind, event: schemas.PaymentEvent):
    if not event.user_id or db.query(models.User).filter(models.User.id == event.user_id).first() is None:
        raise NotFound("Could not find user for this payment")

    if kind is PassKind.TICKET:
        return models.Ticket(
            user_id=event.user_id,
            event_id=event.event_id,
            amount=event.amount or 0,
            currency=event.currency or "usd",
            status=PaymentStatus.PENDING.value,
            payment_ref=event.payment_ref,
            valid_until=as_utc(event.valid_until) or ticket_valid_until(db, event.event_id),
        )
    if kind is PassKind.SUBSCRIPTION:
        return models.Subscription(
            user_id=event.user_id,
            status=SubscriptionStatus.INCOMPLETE.value,
            payment_ref=event.payment_ref,
            current_period_start=as_utc(event.current_period_start),
            current_period_end=as_utc(event.current_period_end),
        )
    if kind is PassKind.MEDIA_PASS:
        return models.MediaPass(
            user_id=event.user_id,
            pass_type=event.pass_type or "single",
            photographer_name=event.photographer_name,
            instagram_handle=event.instagram_handle,
            amount=event.amount or 0,
            status=PaymentStatus.PENDING.value,
            payment_ref=event.payment_ref,
            valid_until=as_utc(event.valid_until) or ticket_valid_until(db, event.event_id),
        )
    raise ValueError(f"Unknown pass kind: {kind}")


def apply_event(db: Session, event: schemas.PaymentEvent) -> Tuple[PassKind, object, bool]:
    """Create or update the record behind ``event.payment_ref``.

    Returns the kind, the record and whether it was created.
    """
    kind = PassKind(event.type)
    model = MODELS[kind]
    record = db.query(model).filter(model.payment_ref == event.payment_ref).first()
    created = record is None
    if created:
        record = build_record(db, kind, event)
        db.add(record)
    elif kind is PassKind.SUBSCRIPTION and event.current_period_end is not None:
        record.current_period_start = as_utc(event.current_period_start) or record.current_period_start
        record.current_period_end = as_utc(event.current_period_end)

    try:
        transition(kind, record, event.status)
    except InvalidTransition:
        db.rollback()
        raise

    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Failed to apply payment event %s", event.payment_ref)
        raise WriteFailed() from exc
    db.refresh(record)
    logger.info(
        "Payment event %s applied to %s %s (status=%s, created=%s)",
        event.payment_ref, kind.value, record.id, record.status, created,
    )
    return kind, record, created
