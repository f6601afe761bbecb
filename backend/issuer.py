import json
import logging
import secrets
from dataclasses import dataclass, field
from typing import List

from sqlalchemy import or_, update
from sqlalchemy.exc import InvalidRequestError, SQLAlchemyError
from sqlalchemy.orm import Session

import config
import models
from errors import NotFound, Unauthorized, WriteFailed
from passes import LOOKUP_ORDER, MODELS, PassKind, PaymentStatus, isoformat

logger = logging.getLogger(__name__)

MAX_TOKEN_ATTEMPTS = 5


@dataclass
class IssuedQR:
    token: str
    data: str
    kind: PassKind


@dataclass
class FixReport:
    fixed_count: int = 0
    errors: List[str] = field(default_factory=list)


def token_in_use(db: Session, token: str) -> bool:
    for kind in LOOKUP_ORDER:
        model = MODELS[kind]
        if db.query(model.id).filter(model.qr_code_token == token).first() is not None:
            return True
    return False


def generate_token(db: Session) -> str:
    for _ in range(MAX_TOKEN_ATTEMPTS):
        token = secrets.token_urlsafe(config.QR_TOKEN_BYTES)
        if not token_in_use(db, token):
            return token
    raise WriteFailed("Could not generate a unique QR token")


def build_payload(kind: PassKind, record, token: str) -> str:
    payload = {
        "type": kind.value,
        "id": record.id,
        "user_id": record.user_id,
        "token": token,
    }
    if kind is PassKind.TICKET:
        payload.update(event_id=record.event_id, amount=record.amount, valid_until=isoformat(record.valid_until))
    elif kind is PassKind.SUBSCRIPTION:
        payload.update(status=record.status, current_period_end=isoformat(record.current_period_end))
    elif kind is PassKind.MEDIA_PASS:
        payload.update(pass_type=record.pass_type, valid_until=isoformat(record.valid_until))
    else:
        raise ValueError(f"Unknown pass kind: {kind}")
    return json.dumps(payload)


def attach_token(db: Session, kind: PassKind, record) -> IssuedQR:
    """Mint a token and store it on ``record`` unless one is already there.

    The write is conditional on the owner and on the token column still being
    empty, so two concurrent issuers cannot overwrite each other.
    """
    model = MODELS[kind]
    record_id = record.id
    token = generate_token(db)
    data = build_payload(kind, record, token)
    stmt = (
        update(model)
        .where(
            model.id == record_id,
            model.user_id == record.user_id,
            or_(model.qr_code_token.is_(None), model.qr_code_token == ""),
        )
        .values(qr_code_token=token, qr_code_data=data)
        .execution_options(synchronize_session=False)
    )
    try:
        updated = db.execute(stmt).rowcount
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Failed to attach QR token to %s %s", kind.value, record_id)
        raise WriteFailed(f"Failed to update {kind.label.lower()} with QR code") from exc

    try:
        db.refresh(record)
    except InvalidRequestError as exc:
        logger.warning("%s %s disappeared while attaching its QR token", kind.label, record_id)
        raise NotFound(f"{kind.label} not found") from exc
    if updated != 1:
        if record.qr_code_token:
            logger.info("QR token for %s %s was attached concurrently", kind.value, record_id)
            return IssuedQR(token=record.qr_code_token, data=record.qr_code_data, kind=kind)
        raise WriteFailed(f"Failed to update {kind.label.lower()} with QR code")

    logger.info("Issued QR token for %s %s", kind.value, record_id)
    return IssuedQR(token=token, data=data, kind=kind)


def issue(db: Session, owner_id: str, kind: PassKind, record_id: str) -> IssuedQR:
    model = MODELS[kind]
    record = db.query(model).filter(model.id == record_id).first()
    if record is None:
        raise NotFound(f"{kind.label} not found")
    if record.user_id != owner_id:
        logger.warning("User %s asked for a QR code on %s %s they do not own", owner_id, kind.value, record_id)
        raise Unauthorized(f"{kind.label} not found")
    if record.qr_code_token:
        return IssuedQR(token=record.qr_code_token, data=record.qr_code_data, kind=kind)
    return attach_token(db, kind, record)


def fix_missing_ticket_tokens(db: Session) -> FixReport:
    tickets = (
        db.query(models.Ticket)
        .filter(models.Ticket.status == PaymentStatus.PAID.value)
        .filter((models.Ticket.qr_code_token.is_(None)) | (models.Ticket.qr_code_token == ""))
        .order_by(models.Ticket.created_at.asc())
        .all()
    )
    report = FixReport()
    for ticket in tickets:
        try:
            attach_token(db, PassKind.TICKET, ticket)
        except WriteFailed as exc:
            report.errors.append(f"Ticket {ticket.id}: {exc.message}")
            continue
        report.fixed_count += 1
    logger.info("QR token repair finished: fixed=%s errors=%s", report.fixed_count, len(report.errors))
    return report
