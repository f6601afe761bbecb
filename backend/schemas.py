from pydantic import BaseModel, ConfigDict, model_validator
from typing import Dict, Literal, Optional, List
from datetime import datetime


class RegisterRequest(BaseModel):
    email: str
    password: str
    full_name: Optional[str] = None


class LoginRequest(BaseModel):
    email: str
    password: str
    otp: Optional[str] = None


class LoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"


class UserResponse(BaseModel):
    id: str
    email: str
    full_name: Optional[str] = None
    role: str
    twofa_enabled: bool
    is_active: bool

    model_config = ConfigDict(from_attributes=True)


class TwoFASetupResponse(BaseModel):
    secret: str
    otpauth_url: str


class TwoFAEnableRequest(BaseModel):
    otp: str


class EventCreate(BaseModel):
    name: str
    venue: Optional[str] = None
    starts_at: datetime
    ends_at: Optional[datetime] = None


class Event(EventCreate):
    id: str
    model_config = ConfigDict(from_attributes=True)


class TicketCreate(BaseModel):
    user_id: str
    event_id: Optional[str] = None
    amount: int = 0
    currency: str = "usd"
    status: Literal["pending", "paid", "test"] = "test"
    valid_until: Optional[datetime] = None


class Ticket(BaseModel):
    id: str
    user_id: str
    event_id: Optional[str] = None
    amount: int
    currency: Optional[str] = None
    status: str
    valid_until: Optional[datetime] = None
    used_at: Optional[datetime] = None
    used_by: Optional[str] = None
    qr_code_token: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class Subscription(BaseModel):
    id: str
    user_id: str
    status: str
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    qr_code_token: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class MediaPass(BaseModel):
    id: str
    user_id: str
    pass_type: str
    photographer_name: Optional[str] = None
    instagram_handle: Optional[str] = None
    amount: int
    status: str
    valid_until: Optional[datetime] = None
    qr_code_token: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class IssueRequest(BaseModel):
    ticket_id: Optional[str] = None
    subscription_id: Optional[str] = None
    media_pass_id: Optional[str] = None

    @model_validator(mode="after")
    def exactly_one_target(self):
        targets = [self.ticket_id, self.subscription_id, self.media_pass_id]
        if sum(1 for target in targets if target) != 1:
            raise ValueError("Exactly one of ticket_id, subscription_id or media_pass_id is required")
        return self


class IssueResponse(BaseModel):
    qr_code_token: str
    qr_code_data: Optional[str] = None
    type: str
    verify_url: str
    ticket_url: str


class ValidateRequest(BaseModel):
    qr_code_token: str
    validator_name: Optional[str] = None
    mark_as_used: bool = True


class ScanRequest(BaseModel):
    qr_code_token: str
    validator_name: Optional[str] = None


class PublicVerifyRequest(BaseModel):
    qr_code_token: str


class ValidationResponse(BaseModel):
    valid: bool
    reason: Optional[str] = None
    type: Optional[str] = None
    ticket_info: Optional[dict] = None
    subscription_info: Optional[dict] = None
    media_pass_info: Optional[dict] = None
    used_at: Optional[str] = None
    used_by: Optional[str] = None
    status: Optional[str] = None
    valid_until: Optional[str] = None
    current_period_end: Optional[str] = None


class PaymentEvent(BaseModel):
    type: Literal["ticket", "subscription", "media_pass"]
    payment_ref: str
    status: str
    user_id: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    event_id: Optional[str] = None
    valid_until: Optional[datetime] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    pass_type: Optional[str] = None
    photographer_name: Optional[str] = None
    instagram_handle: Optional[str] = None


class PaymentEventResponse(BaseModel):
    type: str
    id: str
    status: str
    created: bool


class FixMissingResponse(BaseModel):
    success: bool = True
    message: str
    fixed_count: int
    errors: List[str] = []


class ScanLog(BaseModel):
    id: str
    qr_code_token: Optional[str] = None
    record_type: Optional[str] = None
    record_id: Optional[str] = None
    action: str
    valid: bool
    reason: Optional[str] = None
    validator_name: Optional[str] = None
    scanned_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class TicketAnalyticsResponse(BaseModel):
    event_id: Optional[str] = None
    total: int
    by_status: Dict[str, int]
    paid: int
    redeemed: int
    redemption_rate: float
    revenue: int
    missing_qr: int


class RedemptionReview(BaseModel):
    ticket_id: str
    user_id: str
    user_email: Optional[str] = None
    user_name: Optional[str] = None
    amount: int
    created_at: Optional[datetime] = None
    used_at: datetime
    used_by: Optional[str] = None
    minutes_to_redemption: float
    suspicious: bool
