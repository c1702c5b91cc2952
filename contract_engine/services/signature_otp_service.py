#contract_engine/services/signature_otp_service.py
from __future__ import annotations

import logging
import math
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from contract_engine.core.clock import as_utc, utcnow
from contract_engine.core.config import Settings, get_settings
from contract_engine.core.errors import InvalidOTPError, RateLimitError, ValidationError
from contract_engine.core.hashing import sha256_hex
from contract_engine.core.security import hash_otp_code, verify_otp_code
from contract_engine.models.enums import OTPPurpose, SignerRole
from contract_engine.models.otp import OTPRecord
from contract_engine.services.contract_lifecycle import ensure_signable
from contract_engine.services.contract_store import ContractStore
from contract_engine.services.email_service import EmailSender, LoggingEmailSender

logger = logging.getLogger(__name__)

OTP_DIGITS = 6
INVALID_OTP_MESSAGE = "Invalid or expired verification code."


@dataclass(frozen=True)
class IssuedOTP:
    contract_id: uuid.UUID
    email: str
    role: str
    expires_at: datetime


@dataclass(frozen=True)
class VerifiedSignature:
    """Proof that `email` controlled the inbox for this (contract, role). token = sha256(code)."""

    contract_id: uuid.UUID
    email: str
    role: str
    token: str


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def signer_role(role: str) -> str:
    try:
        return SignerRole(role).value
    except ValueError:
        raise ValidationError(f"Unknown signer role {role!r}.")


def generate_code() -> str:
    return f"{secrets.randbelow(10 ** OTP_DIGITS):0{OTP_DIGITS}d}"


class SignatureOTPService:
    """
    One-time codes bound to (email, contract_id, signer_role, purpose).

    - at most N issuances per (email, contract) in a sliding window
    - issuing a new code retires every unused code of the same binding
    - a code is consumed at most once (conditional UPDATE on is_used)
    """

    def __init__(
        self,
        *,
        email_sender: Optional[EmailSender] = None,
        store: Optional[ContractStore] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.email_sender = email_sender or LoggingEmailSender()
        self.store = store or ContractStore()
        self.settings = settings or get_settings()
        self.clock = clock

    # ─────────────────────────────────────────────
    # INTERNAL HELPERS
    # ─────────────────────────────────────────────

    def _check_rate_limit(self, db: Session, *, email: str, contract_id: uuid.UUID, now: datetime) -> None:
        window = timedelta(minutes=self.settings.otp_rate_limit_window_minutes)
        since = now - window

        count, oldest = db.execute(
            select(func.count(OTPRecord.id), func.min(OTPRecord.created_at)).where(
                OTPRecord.email == email,
                OTPRecord.contract_id == contract_id,
                OTPRecord.created_at > since,
            )
        ).one()

        if count >= self.settings.otp_rate_limit_max_requests:
            retry_after = 1
            if oldest is not None:
                retry_after = max(1, math.ceil((as_utc(oldest) + window - now).total_seconds()))
            logger.warning(
                "otp_rate_limited",
                extra={"email": email, "contract_id": str(contract_id), "retry_after": retry_after},
            )
            raise RateLimitError(
                f"Too many verification codes requested. Try again in {retry_after} seconds.",
                retry_after=retry_after,
            )

    # ─────────────────────────────────────────────
    # PUBLIC API
    # ─────────────────────────────────────────────

    def issue(
        self,
        db: Session,
        *,
        contract_id: uuid.UUID,
        email: str,
        role: str,
        recipient_name: str,
        purpose: str = OTPPurpose.CONTRACT_SIGNING.value,
    ) -> IssuedOTP:
        email = normalize_email(email)
        role = signer_role(role)
        now = self.clock()

        contract = self.store.require(db, contract_id)
        ensure_signable(contract, role, now)

        self._check_rate_limit(db, email=email, contract_id=contract_id, now=now)

        # retire earlier codes of the same binding
        db.execute(
            update(OTPRecord)
            .where(
                OTPRecord.email == email,
                OTPRecord.contract_id == contract_id,
                OTPRecord.signer_role == role,
                OTPRecord.purpose == purpose,
                OTPRecord.is_used.is_(False),
            )
            .values(is_used=True)
        )

        code = generate_code()
        expires_at = now + timedelta(minutes=self.settings.otp_ttl_minutes)
        db.add(
            OTPRecord(
                email=email,
                contract_id=contract_id,
                signer_role=role,
                purpose=purpose,
                code_hash=hash_otp_code(code),
                is_used=False,
                created_at=now,
                expires_at=expires_at,
            )
        )
        db.flush()

        try:
            self.email_sender.send_otp_email(
                to_address=email,
                code=code,
                recipient_name=recipient_name,
                contract_code=contract.contract_code,
                role=role,
            )
        except Exception:
            db.rollback()
            raise

        db.commit()
        logger.info("otp_issued", extra={"contract_id": str(contract_id), "role": role})
        return IssuedOTP(contract_id=contract_id, email=email, role=role, expires_at=expires_at)

    def verify(
        self,
        db: Session,
        *,
        contract_id: uuid.UUID,
        email: str,
        role: str,
        code: str,
        purpose: str = OTPPurpose.CONTRACT_SIGNING.value,
        commit: bool = True,
    ) -> VerifiedSignature:
        """
        Wrong code, unknown binding, expired or already used all raise the same
        InvalidOTPError so callers learn nothing about which check failed.

        With commit=False the code is marked used inside the caller's
        transaction, so a rollback there leaves it usable.
        """
        email = normalize_email(email)
        role = signer_role(role)
        code = (code or "").strip()
        now = self.clock()

        record = db.execute(
            select(OTPRecord)
            .where(
                OTPRecord.email == email,
                OTPRecord.contract_id == contract_id,
                OTPRecord.signer_role == role,
                OTPRecord.purpose == purpose,
                OTPRecord.is_used.is_(False),
                OTPRecord.expires_at > now,
            )
            .order_by(OTPRecord.created_at.desc())
            .limit(1)
        ).scalar_one_or_none()

        if record is None or not verify_otp_code(code, record.code_hash):
            logger.info("otp_rejected", extra={"contract_id": str(contract_id), "role": role})
            raise InvalidOTPError(INVALID_OTP_MESSAGE)

        consumed = db.execute(
            update(OTPRecord)
            .where(OTPRecord.id == record.id, OTPRecord.is_used.is_(False))
            .values(is_used=True)
        ).rowcount
        if consumed != 1:
            db.rollback()
            raise InvalidOTPError(INVALID_OTP_MESSAGE)
        if commit:
            db.commit()

        return VerifiedSignature(contract_id=contract_id, email=email, role=role, token=sha256_hex(code))
