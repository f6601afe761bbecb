from datetime import datetime, timedelta, timezone

import pytest

import config
import models
from errors import AlreadyRedeemed, Expired, NotFound, Unpaid
from passes import (
    PassKind,
    PaymentStatus,
    SubscriptionStatus,
    as_utc,
    ensure_admissible,
    find_by_token,
    parse_status,
    ticket_valid_until,
)

NOW = datetime(2026, 3, 10, 20, 0, tzinfo=timezone.utc)


def ticket(**overrides):
    values = {"status": "paid", "valid_until": NOW + timedelta(days=1), "used_at": None, "used_by": None}
    values.update(overrides)
    return models.Ticket(**values)


def test_as_utc_treats_naive_values_as_utc():
    naive = datetime(2026, 1, 1, 12, 0)
    assert as_utc(naive) == datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
    assert as_utc(None) is None


def test_parse_status_rejects_unknown_strings():
    assert parse_status(PassKind.TICKET, "paid") is PaymentStatus.PAID
    assert parse_status(PassKind.SUBSCRIPTION, "active") is SubscriptionStatus.ACTIVE
    assert parse_status(PassKind.TICKET, "active") is None
    assert parse_status(PassKind.TICKET, None) is None


def test_paid_ticket_within_boundary_is_admitted():
    ensure_admissible(PassKind.TICKET, ticket(), NOW)


def test_ticket_without_boundary_is_admitted():
    ensure_admissible(PassKind.TICKET, ticket(valid_until=None), NOW)


def test_redeemed_ticket_reports_prior_use():
    used_at = NOW - timedelta(hours=1)
    with pytest.raises(AlreadyRedeemed) as exc_info:
        ensure_admissible(PassKind.TICKET, ticket(used_at=used_at, used_by="North Gate"), NOW)
    assert exc_info.value.message == "Ticket already used"
    assert exc_info.value.used_at == used_at
    assert exc_info.value.used_by == "North Gate"


@pytest.mark.parametrize("status", ["pending", "test", "refunded", "failed", "cancelled", "bogus", None])
def test_ticket_outside_paid_status_is_refused(status):
    with pytest.raises(Unpaid, match="Ticket not paid"):
        ensure_admissible(PassKind.TICKET, ticket(status=status), NOW)


def test_unpaid_is_reported_before_expiry():
    with pytest.raises(Unpaid):
        ensure_admissible(PassKind.TICKET, ticket(status="pending", valid_until=NOW - timedelta(days=1)), NOW)


def test_past_boundary_expires_unredeemed_ticket():
    with pytest.raises(Expired, match="Ticket expired"):
        ensure_admissible(PassKind.TICKET, ticket(valid_until=NOW - timedelta(seconds=1)), NOW)


def test_subscription_needs_active_status_and_open_period():
    active = models.Subscription(status="active", current_period_end=NOW + timedelta(days=30))
    ensure_admissible(PassKind.SUBSCRIPTION, active, NOW)

    with pytest.raises(Unpaid, match="Subscription not active"):
        ensure_admissible(PassKind.SUBSCRIPTION, models.Subscription(status="past_due"), NOW)

    lapsed = models.Subscription(status="active", current_period_end=NOW - timedelta(days=1))
    with pytest.raises(Expired, match="Subscription expired") as exc_info:
        ensure_admissible(PassKind.SUBSCRIPTION, lapsed, NOW)
    assert exc_info.value.details == {"current_period_end": NOW - timedelta(days=1)}


def test_media_pass_is_not_single_use():
    media_pass = models.MediaPass(status="paid", valid_until=NOW + timedelta(days=1))
    ensure_admissible(PassKind.MEDIA_PASS, media_pass, NOW)
    ensure_admissible(PassKind.MEDIA_PASS, media_pass, NOW)


def test_find_by_token_searches_every_collection(db, member, make_ticket, make_subscription, make_media_pass):
    make_ticket(member, qr_code_token="tok-ticket")
    make_subscription(member, qr_code_token="tok-sub")
    make_media_pass(member, qr_code_token="tok-media")

    assert find_by_token(db, "tok-ticket")[0] is PassKind.TICKET
    assert find_by_token(db, "tok-sub")[0] is PassKind.SUBSCRIPTION
    assert find_by_token(db, "tok-media")[0] is PassKind.MEDIA_PASS
    with pytest.raises(NotFound, match="QR code not found or invalid"):
        find_by_token(db, "missing")
    with pytest.raises(NotFound):
        find_by_token(db, "")


def test_ticket_valid_until_is_end_of_day_two_days_after_event(db):
    event = models.Event(name="Tuesday Social", starts_at=datetime(2026, 3, 17, 19, 0, tzinfo=timezone.utc))
    db.add(event)
    db.commit()

    boundary = ticket_valid_until(db, event.id, now=NOW)
    assert boundary.date() == datetime(2026, 3, 19).date()
    assert (boundary.hour, boundary.minute, boundary.second) == (23, 59, 59)


def test_ticket_valid_until_uses_next_upcoming_event(db):
    db.add_all([
        models.Event(name="Past", starts_at=NOW - timedelta(days=7)),
        models.Event(name="Later", starts_at=NOW + timedelta(days=14)),
        models.Event(name="Next", starts_at=NOW + timedelta(days=7)),
    ])
    db.commit()

    boundary = ticket_valid_until(db, None, now=NOW)
    assert boundary.date() == (NOW + timedelta(days=9)).date()


def test_ticket_valid_until_falls_back_without_events(db):
    boundary = ticket_valid_until(db, None, now=NOW)
    assert boundary.date() == (NOW + timedelta(days=config.TICKET_VALIDITY_DAYS)).date()
