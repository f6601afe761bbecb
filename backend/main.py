from contextlib import asynccontextmanager
from datetime import datetime, timezone
import logging
from typing import List

import pyotp
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

import config
import issuer
import models
import payments
import qr_render
import reporting
import schemas
import validator
from database import engine, get_db
from errors import NotFound, PassError, WriteFailed
from passes import PassKind, as_utc, find_by_token
from security import Caller, get_caller, hash_password, require_admin, require_staff, token_for, validate_totp, verify_password

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    models.Base.metadata.create_all(bind=engine)
    yield


app = FastAPI(title="EventPass API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(PassError)
def pass_error_handler(request: Request, exc: PassError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.get("/")
def read_root():
    return {"message": "Welcome to EventPass API"}


@app.get("/health")
def health(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.exception("Health check failed")
        return JSONResponse(
            status_code=503,
            content={"service": "eventpass-api", "status": "unhealthy", "error": str(exc)},
        )
    return {
        "service": "eventpass-api",
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


# --- Accounts ---------------------------------------------------------

@app.post("/auth/register", response_model=schemas.UserResponse, status_code=201)
def register(req: schemas.RegisterRequest, db: Session = Depends(get_db)):
    email = req.email.strip().lower()
    if "@" not in email:
        raise HTTPException(status_code=400, detail="Invalid email format")
    if len(req.password) < 8:
        raise HTTPException(status_code=400, detail="Password must be at least 8 characters")
    if db.query(models.User).filter(models.User.email == email).first():
        raise HTTPException(status_code=409, detail="Email already exists")

    user = models.User(
        email=email,
        full_name=req.full_name,
        password_hash=hash_password(req.password),
        role="member",
    )
    db.add(user)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise HTTPException(status_code=409, detail="Email already exists") from exc
    db.refresh(user)
    return user


@app.post("/auth/login", response_model=schemas.LoginResponse)
def login(req: schemas.LoginRequest, db: Session = Depends(get_db)):
    user = db.query(models.User).filter(models.User.email == req.email.strip().lower()).first()
    if not user or not user.is_active or not verify_password(req.password, user.password_hash):
        raise HTTPException(status_code=401, detail="Invalid email or password")
    if user.twofa_enabled and (not user.twofa_secret or not validate_totp(user.twofa_secret, req.otp)):
        raise HTTPException(status_code=401, detail="Invalid OTP")
    return schemas.LoginResponse(access_token=token_for(user))


@app.post("/auth/2fa/setup", response_model=schemas.TwoFASetupResponse)
def twofa_setup(db: Session = Depends(get_db), caller: Caller = Depends(get_caller)):
    user = db.query(models.User).filter(models.User.id == caller.user_id).first()
    if not user.twofa_secret:
        user.twofa_secret = pyotp.random_base32()
        db.commit()
        db.refresh(user)

    otpauth_url = pyotp.totp.TOTP(user.twofa_secret).provisioning_uri(name=user.email, issuer_name=config.TOTP_ISSUER)
    return schemas.TwoFASetupResponse(secret=user.twofa_secret, otpauth_url=otpauth_url)


@app.post("/auth/2fa/enable")
def twofa_enable(req: schemas.TwoFAEnableRequest, db: Session = Depends(get_db), caller: Caller = Depends(get_caller)):
    user = db.query(models.User).filter(models.User.id == caller.user_id).first()
    if not user.twofa_secret:
        raise HTTPException(status_code=400, detail="Run setup first")
    if not validate_totp(user.twofa_secret, req.otp):
        raise HTTPException(status_code=401, detail="Invalid OTP")
    user.twofa_enabled = True
    db.commit()
    return {"status": "ok", "message": "Two-factor authentication enabled"}


@app.get("/me", response_model=schemas.UserResponse)
def read_me(db: Session = Depends(get_db), caller: Caller = Depends(get_caller)):
    return db.query(models.User).filter(models.User.id == caller.user_id).first()


@app.get("/me/tickets", response_model=List[schemas.Ticket])
def my_tickets(db: Session = Depends(get_db), caller: Caller = Depends(get_caller)):
    return (
        db.query(models.Ticket)
        .filter(models.Ticket.user_id == caller.user_id)
        .order_by(models.Ticket.created_at.desc())
        .all()
    )


@app.get("/me/subscriptions", response_model=List[schemas.Subscription])
def my_subscriptions(db: Session = Depends(get_db), caller: Caller = Depends(get_caller)):
    return (
        db.query(models.Subscription)
        .filter(models.Subscription.user_id == caller.user_id)
        .order_by(models.Subscription.created_at.desc())
        .all()
    )


@app.get("/me/media-passes", response_model=List[schemas.MediaPass])
def my_media_passes(db: Session = Depends(get_db), caller: Caller = Depends(get_caller)):
    return (
        db.query(models.MediaPass)
        .filter(models.MediaPass.user_id == caller.user_id)
        .order_by(models.MediaPass.created_at.desc())
        .all()
    )


# --- QR issuance and display ------------------------------------------

@app.post("/qr/issue", response_model=schemas.IssueResponse)
def issue_qr(req: schemas.IssueRequest, db: Session = Depends(get_db), caller: Caller = Depends(get_caller)):
    if req.ticket_id:
        kind, record_id = PassKind.TICKET, req.ticket_id
    elif req.subscription_id:
        kind, record_id = PassKind.SUBSCRIPTION, req.subscription_id
    else:
        kind, record_id = PassKind.MEDIA_PASS, req.media_pass_id

    issued = issuer.issue(db, caller.user_id, kind, record_id)
    return schemas.IssueResponse(
        qr_code_token=issued.token,
        qr_code_data=issued.data,
        type=issued.kind.value,
        **qr_render.verification_urls(issued.token),
    )


@app.get("/qr/image")
def qr_image(token: str, download: bool = False, db: Session = Depends(get_db)):
    find_by_token(db, token)
    png = qr_render.render_png(qr_render.verification_urls(token)["verify_url"])
    headers = {"Cache-Control": "no-store"}
    if download:
        headers["Content-Disposition"] = "attachment; filename=ticket-qr.png"
    return Response(content=png, media_type="image/png", headers=headers)


# --- Door validation --------------------------------------------------

def validator_name_for(requested: str | None, caller: Caller) -> str:
    return requested or caller.display_name or config.DEFAULT_VALIDATOR_NAME


@app.post("/validate", response_model=schemas.ValidationResponse, response_model_exclude_none=True)
def validate_qr(req: schemas.ValidateRequest, db: Session = Depends(get_db), caller: Caller = Depends(require_staff)):
    verdict = validator.validate(
        db,
        req.qr_code_token,
        validator_name=validator_name_for(req.validator_name, caller),
        mark_as_used=req.mark_as_used,
    )
    return verdict.to_response()


@app.post("/validate/check", response_model=schemas.ValidationResponse, response_model_exclude_none=True)
def check_qr(req: schemas.ScanRequest, db: Session = Depends(get_db), caller: Caller = Depends(require_staff)):
    verdict = validator.check(db, req.qr_code_token, validator_name_for(req.validator_name, caller))
    return verdict.to_response()


@app.post("/validate/redeem", response_model=schemas.ValidationResponse, response_model_exclude_none=True)
def redeem_qr(req: schemas.ScanRequest, db: Session = Depends(get_db), caller: Caller = Depends(require_staff)):
    verdict = validator.redeem(db, req.qr_code_token, validator_name_for(req.validator_name, caller))
    return verdict.to_response()


@app.post("/public/verify", response_model=schemas.ValidationResponse, response_model_exclude_none=True)
def public_verify(req: schemas.PublicVerifyRequest, db: Session = Depends(get_db)):
    try:
        verdict = validator.public_view(db, req.qr_code_token)
    except Exception:
        logger.exception("Public verification failed")
        return {"valid": False, "reason": "Unable to verify ticket at this time"}
    return verdict.to_response()


# --- Payment completion -----------------------------------------------

@app.post("/payments/webhook", response_model=schemas.PaymentEventResponse)
async def payment_webhook(request: Request, db: Session = Depends(get_db)):
    payload = await request.body()
    if not payments.verify_signature(payload, request.headers.get("x-webhook-signature")):
        logger.warning("Rejected payment webhook with bad signature")
        raise HTTPException(status_code=400, detail="Invalid signature")
    try:
        event = schemas.PaymentEvent.model_validate_json(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid payload") from exc

    kind, record, created = payments.apply_event(db, event)
    return schemas.PaymentEventResponse(type=kind.value, id=record.id, status=record.status, created=created)


# --- Events -----------------------------------------------------------

@app.post("/admin/events", response_model=schemas.Event, status_code=201)
def create_event(event: schemas.EventCreate, db: Session = Depends(get_db), _: Caller = Depends(require_admin)):
    values = event.model_dump()
    values["starts_at"] = as_utc(values["starts_at"])
    values["ends_at"] = as_utc(values["ends_at"])
    db_event = models.Event(**values)
    db.add(db_event)
    db.commit()
    db.refresh(db_event)
    return db_event


@app.get("/events", response_model=List[schemas.Event])
def list_events(db: Session = Depends(get_db)):
    return db.query(models.Event).order_by(models.Event.starts_at.desc()).all()


# --- Administration ---------------------------------------------------

@app.post("/admin/tickets", response_model=schemas.Ticket, status_code=201)
def create_ticket(req: schemas.TicketCreate, db: Session = Depends(get_db), _: Caller = Depends(require_admin)):
    if db.query(models.User).filter(models.User.id == req.user_id).first() is None:
        raise NotFound("User not found")
    if req.event_id and db.query(models.Event).filter(models.Event.id == req.event_id).first() is None:
        raise NotFound("Event not found")

    ticket = models.Ticket(
        user_id=req.user_id,
        event_id=req.event_id,
        amount=req.amount,
        currency=req.currency,
        status=req.status,
        valid_until=as_utc(req.valid_until),
    )
    db.add(ticket)
    db.commit()
    db.refresh(ticket)
    return ticket


@app.get("/admin/tickets", response_model=List[schemas.Ticket])
def list_tickets(
    event_id: str | None = None,
    status: str | None = None,
    used: bool | None = None,
    db: Session = Depends(get_db),
    _: Caller = Depends(require_admin),
):
    query = reporting.ticket_query(db, event_id)
    if status:
        query = query.filter(models.Ticket.status == status)
    if used is True:
        query = query.filter(models.Ticket.used_at.isnot(None))
    elif used is False:
        query = query.filter(models.Ticket.used_at.is_(None))
    return query.order_by(models.Ticket.created_at.desc()).limit(500).all()


@app.get("/admin/tickets/export")
def export_tickets(event_id: str | None = None, db: Session = Depends(get_db), _: Caller = Depends(require_admin)):
    csv_body = reporting.export_tickets_csv(db, event_id)
    return StreamingResponse(
        iter([csv_body]),
        media_type="text/csv",
        headers={"Content-Disposition": "attachment; filename=tickets.csv"},
    )


@app.delete("/admin/tickets/{ticket_id}")
def delete_ticket(ticket_id: str, db: Session = Depends(get_db), caller: Caller = Depends(require_admin)):
    ticket = db.query(models.Ticket).filter(models.Ticket.id == ticket_id).first()
    if not ticket:
        raise NotFound("Ticket not found")
    db.delete(ticket)
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise WriteFailed("Failed to delete ticket") from exc
    logger.warning("Ticket %s deleted by %s", ticket_id, caller.email)
    return {"success": True, "message": "Ticket deleted successfully", "ticket_id": ticket_id}


@app.post("/admin/tickets/{ticket_id}/reset", response_model=schemas.Ticket)
def reset_ticket(ticket_id: str, db: Session = Depends(get_db), caller: Caller = Depends(require_admin)):
    return validator.reset_redemption(db, ticket_id, caller.display_name)


@app.post("/admin/qr/fix-missing", response_model=schemas.FixMissingResponse)
def fix_missing_qr_codes(db: Session = Depends(get_db), _: Caller = Depends(require_admin)):
    report = issuer.fix_missing_ticket_tokens(db)
    if report.fixed_count == 0 and not report.errors:
        message = "No tickets need QR code fixes"
    else:
        message = f"Fixed {report.fixed_count} tickets"
    return schemas.FixMissingResponse(message=message, fixed_count=report.fixed_count, errors=report.errors)


@app.get("/admin/analytics", response_model=schemas.TicketAnalyticsResponse)
def ticket_analytics(event_id: str | None = None, db: Session = Depends(get_db), _: Caller = Depends(require_admin)):
    return reporting.ticket_analytics(db, event_id)


@app.get("/admin/scans", response_model=List[schemas.ScanLog])
def list_scans(
    token: str | None = None,
    action: str | None = None,
    db: Session = Depends(get_db),
    _: Caller = Depends(require_admin),
):
    query = db.query(models.Scan)
    if token:
        query = query.filter(models.Scan.qr_code_token == token)
    if action:
        query = query.filter(models.Scan.action == action)
    return query.order_by(models.Scan.scanned_at.desc()).limit(500).all()


@app.get("/admin/redemptions/suspicious", response_model=List[schemas.RedemptionReview])
def suspicious_redemptions(db: Session = Depends(get_db), _: Caller = Depends(require_admin)):
    return reporting.suspicious_redemptions(db)
