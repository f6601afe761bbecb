"""Door validation: a pure check, a transactional redeem, and the admin reset.

Redemption is a conditional ``UPDATE ... WHERE used_at IS NULL``. The row
count tells us whether this request set the latch or lost to another scan of
the same ticket; the database does the serialisation, not this process.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import config
import models
from errors import NotFound, Rejected, WriteFailed
from passes import PassKind, PaymentStatus, describe, ensure_admissible, find_by_token, isoformat, utcnow

logger = logging.getLogger(__name__)


@dataclass
class Verdict:
    valid: bool
    kind: Optional[PassKind] = None
    reason: Optional[str] = None
    info: Optional[dict] = None
    extra: dict = field(default_factory=dict)
    record_id: Optional[str] = None

    def to_response(self) -> dict:
        body = {"valid": self.valid}
        if self.reason:
            body["reason"] = self.reason
        if self.kind is not None:
            body["type"] = self.kind.value
            if self.info is not None:
                body[f"{self.kind.value}_info"] = self.info
        for key, value in self.extra.items():
            if value is None:
                continue
            body[key] = isoformat(value) if isinstance(value, datetime) else value
        return body


def rejection_verdict(kind: PassKind, record, exc: Rejected, info: Optional[dict]) -> Verdict:
    return Verdict(valid=False, kind=kind, reason=exc.message, info=info, extra=dict(exc.details), record_id=record.id)


def evaluate(db: Session, token: str, now: Optional[datetime] = None, public: bool = False) -> Verdict:
    try:
        kind, record = find_by_token(db, token)
    except NotFound as exc:
        return Verdict(valid=False, reason=exc.message)

    info = describe(db, kind, record, include_redemption=public)
    try:
        ensure_admissible(kind, record, now)
    except Rejected as exc:
        return rejection_verdict(kind, record, exc, info)
    return Verdict(valid=True, kind=kind, info=info, record_id=record.id)


def scan_row(token: str, verdict: Verdict, action: str, validator_name: Optional[str]) -> models.Scan:
    return models.Scan(
        qr_code_token=token,
        record_type=verdict.kind.value if verdict.kind else None,
        record_id=verdict.record_id,
        action=action,
        valid=verdict.valid,
        reason=verdict.reason,
        validator_name=validator_name,
    )


def commit_scan(db: Session, scan: models.Scan) -> None:
    db.add(scan)
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Failed to record %s scan", scan.action)
        raise WriteFailed() from exc


def public_view(db: Session, token: str, now: Optional[datetime] = None) -> Verdict:
    """Read-only answer for ticket holders; writes nothing."""
    return evaluate(db, token, now, public=True)


def check(db: Session, token: str, validator_name: Optional[str] = None, now: Optional[datetime] = None) -> Verdict:
    verdict = evaluate(db, token, now)
    commit_scan(db, scan_row(token, verdict, "check", validator_name))
    return verdict


def redeem(db: Session, token: str, validator_name: Optional[str] = None, now: Optional[datetime] = None) -> Verdict:
    now = now or utcnow()
    validator_name = validator_name or config.DEFAULT_VALIDATOR_NAME
    verdict = evaluate(db, token, now)

    if not verdict.valid or verdict.kind is not PassKind.TICKET:
        if not verdict.valid:
            logger.warning("Entry refused for token %s: %s", token, verdict.reason)
        commit_scan(db, scan_row(token, verdict, "redeem", validator_name))
        return verdict

    stmt = (
        update(models.Ticket)
        .where(
            models.Ticket.id == verdict.record_id,
            models.Ticket.used_at.is_(None),
            models.Ticket.status == PaymentStatus.PAID.value,
        )
        .values(used_at=now, used_by=validator_name)
        .execution_options(synchronize_session=False)
    )
    try:
        updated = db.execute(stmt).rowcount
        if updated == 1:
            db.add(scan_row(token, verdict, "redeem", validator_name))
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Failed to mark ticket %s as used", verdict.record_id)
        raise WriteFailed("Failed to mark ticket as used") from exc

    if updated == 1:
        logger.info("Ticket %s redeemed by %s", verdict.record_id, validator_name)
        return verdict

    # Another scan set the latch between our read and our write.
    logger.warning("Lost redemption race for ticket %s", verdict.record_id)
    db.expire_all()
    lost = evaluate(db, token, now)
    commit_scan(db, scan_row(token, lost, "redeem", validator_name))
    return lost


def validate(
    db: Session,
    token: str,
    validator_name: Optional[str] = None,
    mark_as_used: bool = True,
    now: Optional[datetime] = None,
) -> Verdict:
    if mark_as_used:
        return redeem(db, token, validator_name, now)
    return check(db, token, validator_name, now)


def reset_redemption(db: Session, ticket_id: str, admin_name: str) -> models.Ticket:
    """Clear a ticket's redemption latch. Admin recovery path only."""
    ticket = db.query(models.Ticket).filter(models.Ticket.id == ticket_id).first()
    if ticket is None:
        raise NotFound("Ticket not found")
    if ticket.used_at is None:
        return ticket

    previous_use = f"previously used by {ticket.used_by} at {isoformat(ticket.used_at)}"
    ticket.used_at = None
    ticket.used_by = None
    db.add(
        models.Scan(
            qr_code_token=ticket.qr_code_token,
            record_type=PassKind.TICKET.value,
            record_id=ticket.id,
            action="reset",
            valid=True,
            reason=f"Reset by {admin_name}; {previous_use}",
            validator_name=admin_name,
        )
    )
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Failed to reset ticket %s", ticket_id)
        raise WriteFailed("Could not reset ticket") from exc
    db.refresh(ticket)
    logger.warning("Ticket %s redemption reset by %s", ticket_id, admin_name)
    return ticket
