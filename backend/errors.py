"""Failures raised by the pass lifecycle.

Every error carries the HTTP status the API answers with and a message that
is safe to show to a member or to door staff. ``Rejected`` errors are the
reasons a scanned token is refused entry; the validator turns them into
``valid: false`` verdicts instead of letting them escape.
"""

from datetime import datetime
from typing import Optional


class PassError(Exception):
    status_code = 400
    default_message = "Request failed"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class NotFound(PassError):
    status_code = 404
    default_message = "Not found"


class Unauthorized(NotFound):
    """The record exists but belongs to someone else. Answered like a missing one."""


class WriteFailed(PassError):
    status_code = 503
    default_message = "Could not save changes, please retry"


class InvalidTransition(PassError):
    status_code = 409
    default_message = "Status change not allowed"


class Rejected(PassError):
    status_code = 409
    default_message = "Not valid for entry"

    def __init__(self, message: Optional[str] = None, **details):
        super().__init__(message)
        self.details = details


class AlreadyRedeemed(Rejected):
    default_message = "Ticket already used"

    def __init__(self, message: Optional[str] = None, used_at: Optional[datetime] = None, used_by: Optional[str] = None):
        super().__init__(message, used_at=used_at, used_by=used_by)
        self.used_at = used_at
        self.used_by = used_by


class Expired(Rejected):
    default_message = "Expired"


class Unpaid(Rejected):
    default_message = "Payment not confirmed"
