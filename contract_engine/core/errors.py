from __future__ import annotations

from typing import Optional


class ContractEngineError(Exception):
    """
    Base of every domain error raised by the services.

    status_code / code are read by the HTTP exception handler in main.py;
    services never build HTTP responses themselves.
    """

    status_code: int = 400
    code: str = "ERROR"

    def __init__(self, message: str = "", *, code: Optional[str] = None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        if code:
            self.code = code


# ─────────────────────────────────────────────
# 4xx: user-correctable input
# ─────────────────────────────────────────────

class ValidationError(ContractEngineError):
    status_code = 400
    code = "VALIDATION_ERROR"


class InvalidTermsError(ValidationError):
    code = "INVALID_TERMS"


class InvalidPaymentTermsError(ValidationError):
    code = "INVALID_PAYMENT_TERMS"


class InvalidSelectionError(ValidationError):
    code = "INVALID_SELECTION"


class InvalidOTPError(ValidationError):
    code = "INVALID_OTP"


# ─────────────────────────────────────────────
# 409: operation invalid for current state
# ─────────────────────────────────────────────

class StateConflictError(ContractEngineError):
    status_code = 409
    code = "STATE_CONFLICT"


class AlreadySignedError(StateConflictError):
    code = "ALREADY_SIGNED"


class ContractLockedError(StateConflictError):
    code = "CONTRACT_LOCKED"


class ContractExpiredError(StateConflictError):
    code = "CONTRACT_EXPIRED"


class PaymentStateError(StateConflictError):
    code = "PAYMENT_STATE"


# ─────────────────────────────────────────────
# 429
# ─────────────────────────────────────────────

class RateLimitError(ContractEngineError):
    status_code = 429
    code = "RATE_LIMITED"

    def __init__(self, message: str = "", *, retry_after: int = 60):
        super().__init__(message)
        self.retry_after = int(retry_after)


# ─────────────────────────────────────────────
# Security / reconciliation
# ─────────────────────────────────────────────

class IntegrityError(ContractEngineError):
    """Signature or hash mismatch on untrusted input. Never silently accepted."""

    status_code = 400
    code = "INTEGRITY_ERROR"


class InvalidSignatureError(IntegrityError):
    code = "INVALID_SIGNATURE"


class AmountMismatchError(ContractEngineError):
    status_code = 400
    code = "AMOUNT_MISMATCH"


# ─────────────────────────────────────────────
# 404 / 403 / 502
# ─────────────────────────────────────────────

class NotFoundError(ContractEngineError):
    status_code = 404
    code = "NOT_FOUND"


class ContractNotFoundError(NotFoundError):
    code = "CONTRACT_NOT_FOUND"


class PaymentNotFoundError(NotFoundError):
    code = "PAYMENT_NOT_FOUND"


class ScheduleNotFoundError(NotFoundError):
    code = "SCHEDULE_NOT_FOUND"


class PermissionDeniedError(ContractEngineError):
    status_code = 403
    code = "FORBIDDEN"


class EmailDeliveryError(ContractEngineError):
    status_code = 502
    code = "EMAIL_DELIVERY_FAILED"
