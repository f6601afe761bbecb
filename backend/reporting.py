import csv
import io
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

import models
import schemas
from passes import PaymentStatus, as_utc, isoformat

EXPORT_COLUMNS = [
    "id",
    "user_id",
    "user_email",
    "event_id",
    "amount",
    "currency",
    "status",
    "valid_until",
    "used_at",
    "used_by",
    "qr_code_token",
    "created_at",
]


def ticket_query(db: Session, event_id: Optional[str] = None):
    query = db.query(models.Ticket)
    if event_id:
        query = query.filter(models.Ticket.event_id == event_id)
    return query


def ticket_analytics(db: Session, event_id: Optional[str] = None) -> schemas.TicketAnalyticsResponse:
    by_status = {
        status or "unknown": count
        for status, count in (
            ticket_query(db, event_id)
            .with_entities(models.Ticket.status, func.count(models.Ticket.id))
            .group_by(models.Ticket.status)
            .all()
        )
    }
    paid = ticket_query(db, event_id).filter(models.Ticket.status == PaymentStatus.PAID.value)
    paid_count = paid.count()
    redeemed = paid.filter(models.Ticket.used_at.isnot(None)).count()
    revenue = paid.with_entities(func.coalesce(func.sum(models.Ticket.amount), 0)).scalar() or 0
    missing_qr = paid.filter((models.Ticket.qr_code_token.is_(None)) | (models.Ticket.qr_code_token == "")).count()

    return schemas.TicketAnalyticsResponse(
        event_id=event_id,
        total=sum(by_status.values()),
        by_status=by_status,
        paid=paid_count,
        redeemed=redeemed,
        redemption_rate=round(redeemed / paid_count, 4) if paid_count else 0.0,
        revenue=revenue,
        missing_qr=missing_qr,
    )


def export_tickets_csv(db: Session, event_id: Optional[str] = None) -> str:
    rows = (
        ticket_query(db, event_id)
        .outerjoin(models.User, models.User.id == models.Ticket.user_id)
        .with_entities(models.Ticket, models.User.email)
        .order_by(models.Ticket.created_at.desc())
        .all()
    )
    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(EXPORT_COLUMNS)
    for ticket, email in rows:
        writer.writerow([
            ticket.id,
            ticket.user_id,
            email or "",
            ticket.event_id or "",
            ticket.amount,
            ticket.currency or "",
            ticket.status,
            isoformat(ticket.valid_until) or "",
            isoformat(ticket.used_at) or "",
            ticket.used_by or "",
            ticket.qr_code_token or "",
            isoformat(ticket.created_at) or "",
        ])
    return output.getvalue()


def is_suspicious(minutes: float, used_by: Optional[str]) -> bool:
    used_by = used_by or ""
    if minutes < 10:
        return True
    if "Test" in used_by or "System" in used_by:
        return True
    return minutes < 60 and "Door" not in used_by


def suspicious_redemptions(db: Session) -> List[schemas.RedemptionReview]:
    """Redeemed paid tickets, most suspicious first."""
    rows = (
        db.query(models.Ticket, models.User)
        .outerjoin(models.User, models.User.id == models.Ticket.user_id)
        .filter(models.Ticket.used_at.isnot(None), models.Ticket.status == PaymentStatus.PAID.value)
        .order_by(models.Ticket.created_at.desc())
        .all()
    )
    reviews = []
    for ticket, user in rows:
        created_at = as_utc(ticket.created_at)
        used_at = as_utc(ticket.used_at)
        minutes = (used_at - created_at).total_seconds() / 60 if created_at else 0.0
        reviews.append(
            schemas.RedemptionReview(
                ticket_id=ticket.id,
                user_id=ticket.user_id,
                user_email=user.email if user else None,
                user_name=user.full_name if user else None,
                amount=ticket.amount,
                created_at=created_at,
                used_at=used_at,
                used_by=ticket.used_by,
                minutes_to_redemption=round(minutes, 2),
                suspicious=is_suspicious(minutes, ticket.used_by),
            )
        )
    reviews.sort(key=lambda review: (not review.suspicious, review.minutes_to_redemption))
    return reviews
