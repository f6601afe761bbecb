import uuid
from sqlalchemy import Boolean, Column, String, Integer, DateTime, ForeignKey, Text
from sqlalchemy.sql import func
from database import Base


class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String, unique=True, index=True, nullable=False)
    full_name = Column(String, nullable=True)
    password_hash = Column(String, nullable=False)
    role = Column(String, default="member")  # member, staff, admin
    twofa_secret = Column(String, nullable=True)
    twofa_enabled = Column(Boolean, default=False)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    @property
    def display_name(self) -> str:
        return self.full_name or self.email or "Unknown"


class Event(Base):
    __tablename__ = "events"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String, index=True)
    venue = Column(String, nullable=True)
    starts_at = Column(DateTime(timezone=True), nullable=False)
    ends_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class Ticket(Base):
    __tablename__ = "tickets"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), index=True, nullable=False)
    event_id = Column(String, ForeignKey("events.id"), index=True, nullable=True)
    amount = Column(Integer, default=0)  # minor units
    currency = Column(String, default="usd")
    status = Column(String, default="pending")  # pending, paid, test, failed, cancelled, refunded
    payment_ref = Column(String, unique=True, nullable=True)
    valid_until = Column(DateTime(timezone=True), nullable=True)
    used_at = Column(DateTime(timezone=True), nullable=True)
    used_by = Column(String, nullable=True)
    qr_code_token = Column(String, unique=True, index=True, nullable=True)
    qr_code_data = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), index=True, nullable=False)
    status = Column(String, default="incomplete")  # incomplete, active, past_due, canceled
    payment_ref = Column(String, unique=True, nullable=True)
    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    qr_code_token = Column(String, unique=True, index=True, nullable=True)
    qr_code_data = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class MediaPass(Base):
    __tablename__ = "media_passes"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), index=True, nullable=False)
    pass_type = Column(String, default="single")
    photographer_name = Column(String, nullable=True)
    instagram_handle = Column(String, nullable=True)
    amount = Column(Integer, default=0)
    status = Column(String, default="pending")
    payment_ref = Column(String, unique=True, nullable=True)
    valid_until = Column(DateTime(timezone=True), nullable=True)
    qr_code_token = Column(String, unique=True, index=True, nullable=True)
    qr_code_data = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class Scan(Base):
    __tablename__ = "scans"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    qr_code_token = Column(String, index=True)
    record_type = Column(String, nullable=True)  # ticket, subscription, media_pass
    record_id = Column(String, nullable=True)
    action = Column(String)  # check, redeem, reset
    valid = Column(Boolean, default=False)
    reason = Column(String, nullable=True)
    validator_name = Column(String, nullable=True)
    scanned_at = Column(DateTime(timezone=True), server_default=func.now())
