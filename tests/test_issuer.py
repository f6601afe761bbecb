import json

import pytest
from sqlalchemy import Update, delete
from sqlalchemy.exc import OperationalError

import issuer
import models
from errors import NotFound, Unauthorized, WriteFailed
from passes import PassKind


def test_issue_returns_same_token_twice(client, member, make_ticket, headers_for):
    ticket = make_ticket(member)

    first = client.post("/qr/issue", json={"ticket_id": ticket.id}, headers=headers_for(member))
    second = client.post("/qr/issue", json={"ticket_id": ticket.id}, headers=headers_for(member))

    assert first.status_code == 200
    assert second.status_code == 200
    assert first.json()["qr_code_token"] == second.json()["qr_code_token"]
    assert first.json()["qr_code_data"] == second.json()["qr_code_data"]
    assert first.json()["type"] == "ticket"


def test_issue_builds_payload_and_urls(client, member, make_ticket, headers_for):
    ticket = make_ticket(member, amount=2500)

    body = client.post("/qr/issue", json={"ticket_id": ticket.id}, headers=headers_for(member)).json()
    payload = json.loads(body["qr_code_data"])

    assert payload["type"] == "ticket"
    assert payload["id"] == ticket.id
    assert payload["user_id"] == member.id
    assert payload["token"] == body["qr_code_token"]
    assert payload["amount"] == 2500
    assert body["verify_url"].endswith(f"/verify?token={body['qr_code_token']}")
    assert body["ticket_url"].endswith(f"/ticket?token={body['qr_code_token']}")


def test_issue_persists_token_on_record(client, db, member, make_ticket, headers_for):
    ticket = make_ticket(member)

    body = client.post("/qr/issue", json={"ticket_id": ticket.id}, headers=headers_for(member)).json()

    db.refresh(ticket)
    assert ticket.qr_code_token == body["qr_code_token"]
    assert ticket.qr_code_data == body["qr_code_data"]


def test_issue_keeps_existing_token(client, member, make_ticket, headers_for):
    ticket = make_ticket(member, qr_code_token="already-issued", qr_code_data="{}")

    body = client.post("/qr/issue", json={"ticket_id": ticket.id}, headers=headers_for(member)).json()

    assert body["qr_code_token"] == "already-issued"


def test_issue_for_someone_elses_ticket_is_not_found(client, db, member, make_user, make_ticket, headers_for):
    other = make_user(email="other@example.com")
    ticket = make_ticket(other)

    response = client.post("/qr/issue", json={"ticket_id": ticket.id}, headers=headers_for(member))

    assert response.status_code == 404
    assert response.json()["detail"] == "Ticket not found"
    db.refresh(ticket)
    assert ticket.qr_code_token is None


def test_issue_requires_exactly_one_target(client, member, headers_for):
    none = client.post("/qr/issue", json={}, headers=headers_for(member))
    both = client.post("/qr/issue", json={"ticket_id": "a", "subscription_id": "b"}, headers=headers_for(member))

    assert none.status_code == 422
    assert both.status_code == 422


def test_issue_requires_authentication(client, member, make_ticket):
    ticket = make_ticket(member)

    response = client.post("/qr/issue", json={"ticket_id": ticket.id})

    assert response.status_code == 401


def test_issue_for_subscription_and_media_pass(client, member, make_subscription, make_media_pass, headers_for):
    subscription = make_subscription(member)
    media_pass = make_media_pass(member)

    sub_body = client.post("/qr/issue", json={"subscription_id": subscription.id}, headers=headers_for(member)).json()
    media_body = client.post("/qr/issue", json={"media_pass_id": media_pass.id}, headers=headers_for(member)).json()

    assert sub_body["type"] == "subscription"
    assert json.loads(sub_body["qr_code_data"])["status"] == "active"
    assert media_body["type"] == "media_pass"
    assert json.loads(media_body["qr_code_data"])["pass_type"] == "season"
    assert sub_body["qr_code_token"] != media_body["qr_code_token"]


def test_service_issue_checks_owner(db, member, make_user, make_ticket):
    other = make_user(email="other@example.com")
    ticket = make_ticket(other)

    with pytest.raises(Unauthorized):
        issuer.issue(db, member.id, PassKind.TICKET, ticket.id)
    with pytest.raises(NotFound):
        issuer.issue(db, member.id, PassKind.TICKET, "missing")


def test_generate_token_skips_tokens_in_use(db, member, make_subscription, monkeypatch):
    make_subscription(member, qr_code_token="taken")
    candidates = iter(["taken", "fresh"])
    monkeypatch.setattr(issuer.secrets, "token_urlsafe", lambda _: next(candidates))

    assert issuer.generate_token(db) == "fresh"


def test_generate_token_gives_up_after_repeated_collisions(db, member, make_ticket, monkeypatch):
    make_ticket(member, qr_code_token="taken")
    monkeypatch.setattr(issuer.secrets, "token_urlsafe", lambda _: "taken")

    with pytest.raises(WriteFailed):
        issuer.generate_token(db)


def test_write_failure_leaves_record_without_token(db, member, make_ticket, monkeypatch):
    ticket = make_ticket(member)
    real_execute = db.execute

    def failing_execute(statement, *args, **kwargs):
        if isinstance(statement, Update):
            raise OperationalError("UPDATE tickets", {}, Exception("database is locked"))
        return real_execute(statement, *args, **kwargs)

    monkeypatch.setattr(db, "execute", failing_execute)
    with pytest.raises(WriteFailed):
        issuer.issue(db, member.id, PassKind.TICKET, ticket.id)
    monkeypatch.undo()

    db.refresh(ticket)
    assert ticket.qr_code_token is None
    assert issuer.issue(db, member.id, PassKind.TICKET, ticket.id).token


def test_fix_missing_attaches_tokens_to_paid_tickets_only(db, member, make_ticket):
    missing = make_ticket(member)
    pending = make_ticket(member, status="pending")
    issued = make_ticket(member, qr_code_token="kept")

    report = issuer.fix_missing_ticket_tokens(db)

    assert report.fixed_count == 1
    assert report.errors == []
    db.refresh(missing)
    db.refresh(pending)
    db.refresh(issued)
    assert missing.qr_code_token
    assert pending.qr_code_token is None
    assert issued.qr_code_token == "kept"


def test_fix_missing_endpoint_reports_nothing_to_do(client, admin, headers_for):
    response = client.post("/admin/qr/fix-missing", headers=headers_for(admin))

    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "message": "No tickets need QR code fixes",
        "fixed_count": 0,
        "errors": [],
    }


def test_fix_missing_records_are_findable(db, member, make_ticket):
    ticket = make_ticket(member)
    issuer.fix_missing_ticket_tokens(db)
    db.refresh(ticket)

    stored = db.query(models.Ticket).filter(models.Ticket.qr_code_token == ticket.qr_code_token).one()
    assert stored.id == ticket.id


def test_record_deleted_while_attaching_token(db, member, make_ticket, monkeypatch):
    ticket = make_ticket(member)
    ticket_id = ticket.id
    real_execute = db.execute

    def delete_then_execute(statement, *args, **kwargs):
        if isinstance(statement, Update):
            real_execute(
                delete(models.Ticket)
                .where(models.Ticket.id == ticket_id)
                .execution_options(synchronize_session=False)
            )
        return real_execute(statement, *args, **kwargs)

    monkeypatch.setattr(db, "execute", delete_then_execute)

    with pytest.raises(NotFound, match="Ticket not found"):
        issuer.issue(db, member.id, PassKind.TICKET, ticket_id)
