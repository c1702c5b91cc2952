#contract_engine/services/contract_store.py
from __future__ import annotations

import math
import re
import secrets
import string
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from contract_engine.core.clock import utcnow
from contract_engine.core.config import Settings, get_settings
from contract_engine.core.errors import ContractLockedError, ContractNotFoundError, InvalidTermsError
from contract_engine.models.contract import Contract
from contract_engine.models.enums import (
    InstallmentStatus,
    LearningMode,
    PaymentMethod,
    ScheduleStatus,
    TERMINAL_CONTRACT_STATUSES,
)
from contract_engine.models.payment_schedule import Installment, PaymentSchedule
from contract_engine.services.installment_scheduler import PlannedInstallment, validate_payment_terms

_HHMM = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")

ONLINE_PLATFORMS = ("ZOOM", "GOOGLE_MEET", "MICROSOFT_TEAMS", "OTHER")

TITLE_MAX = 200
DESCRIPTION_MAX = 1000

# Columns that make up the commercial terms. Never written once is_locked is set.
TERM_COLUMNS = (
    "title",
    "description",
    "subject",
    "total_sessions",
    "price_per_session",
    "total_amount",
    "session_duration",
    "learning_mode",
    "schedule_json",
    "start_date",
    "expected_end_date",
    "location_json",
    "online_info_json",
    "payment_method",
    "installments",
    "down_payment",
    "terms_json",
)


@dataclass(frozen=True)
class ContractTerms:
    """Validated commercial terms. total_amount is derived, never supplied."""

    title: str
    total_sessions: int
    price_per_session: int
    session_duration: int
    learning_mode: str
    schedule: Dict[str, Any]
    start_date: date
    payment_method: str = PaymentMethod.FULL.value
    installments: Optional[int] = None
    down_payment: Optional[int] = None
    description: Optional[str] = None
    subject: Optional[str] = None
    location: Optional[Dict[str, Any]] = None
    online_info: Optional[Dict[str, Any]] = None
    terms: Dict[str, Any] = field(default_factory=dict)

    @property
    def total_amount(self) -> int:
        return self.total_sessions * self.price_per_session

    @property
    def expected_end_date(self) -> date:
        per_week = max(1, len(self.schedule.get("days_of_week") or []))
        weeks = math.ceil(self.total_sessions / per_week)
        return self.start_date + timedelta(weeks=weeks)


# ─────────────────────────────────────────────
# TERM CONSTRUCTION
# ─────────────────────────────────────────────

def _as_int(data: Mapping[str, Any], key: str, *, required: bool = True) -> Optional[int]:
    raw = data.get(key)
    if raw is None:
        if required:
            raise InvalidTermsError(f"{key} is required.")
        return None
    if isinstance(raw, bool):
        raise InvalidTermsError(f"{key} must be an integer.")
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise InvalidTermsError(f"{key} must be an integer.")
    if value != raw and not isinstance(raw, str):
        raise InvalidTermsError(f"{key} must be an integer.")
    return value


def _as_date(raw: Any) -> date:
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    if isinstance(raw, str):
        try:
            return date.fromisoformat(raw[:10])
        except ValueError:
            pass
    raise InvalidTermsError("start_date must be an ISO date (YYYY-MM-DD).")


def _validate_schedule(raw: Any, settings: Settings) -> Dict[str, Any]:
    if not isinstance(raw, Mapping):
        raise InvalidTermsError("schedule is required.")

    days = raw.get("days_of_week") or []
    if not isinstance(days, (list, tuple)) or not days:
        raise InvalidTermsError("schedule.days_of_week must list at least one day.")
    clean_days: List[int] = []
    for d in days:
        if isinstance(d, bool) or not isinstance(d, int) or not (0 <= d <= 6):
            raise InvalidTermsError("schedule.days_of_week values must be integers 0-6.")
        if d not in clean_days:
            clean_days.append(d)

    start_time = raw.get("start_time")
    end_time = raw.get("end_time")
    for name, value in (("start_time", start_time), ("end_time", end_time)):
        if not isinstance(value, str) or not _HHMM.match(value):
            raise InvalidTermsError(f"schedule.{name} must be HH:MM.")
    # zero-padded HH:MM compares correctly as text
    if end_time <= start_time:
        raise InvalidTermsError("schedule.end_time must be after start_time.")

    return {
        "days_of_week": sorted(clean_days),
        "start_time": start_time,
        "end_time": end_time,
        "timezone": raw.get("timezone") or settings.default_timezone,
    }


def build_terms(data: Mapping[str, Any], settings: Optional[Settings] = None) -> ContractTerms:
    """
    Validate raw terms (API payload or amendment merge) into ContractTerms.
    Raises InvalidTermsError / InvalidPaymentTermsError.
    """
    settings = settings or get_settings()

    title = (data.get("title") or "").strip()
    if not title:
        raise InvalidTermsError("title is required.")
    if len(title) > TITLE_MAX:
        raise InvalidTermsError(f"title must be at most {TITLE_MAX} characters.")

    description = data.get("description")
    if description is not None and len(description) > DESCRIPTION_MAX:
        raise InvalidTermsError(f"description must be at most {DESCRIPTION_MAX} characters.")

    total_sessions = _as_int(data, "total_sessions")
    if not (settings.total_sessions_min <= total_sessions <= settings.total_sessions_max):
        raise InvalidTermsError(
            f"total_sessions must be between {settings.total_sessions_min} and {settings.total_sessions_max}."
        )

    price = _as_int(data, "price_per_session")
    if not (settings.price_per_session_min <= price <= settings.price_per_session_max):
        raise InvalidTermsError(
            f"price_per_session must be between {settings.price_per_session_min} and {settings.price_per_session_max}."
        )

    duration = _as_int(data, "session_duration")
    if duration not in settings.allowed_session_durations:
        raise InvalidTermsError(
            f"session_duration must be one of {list(settings.allowed_session_durations)}."
        )

    mode = data.get("learning_mode")
    if mode not in (LearningMode.ONLINE.value, LearningMode.OFFLINE.value):
        raise InvalidTermsError("learning_mode must be ONLINE or OFFLINE.")

    location = data.get("location")
    online_info = data.get("online_info")
    if mode == LearningMode.OFFLINE.value:
        if not isinstance(location, Mapping) or not (location.get("address") or "").strip():
            raise InvalidTermsError("location.address is required for OFFLINE contracts.")
        location = dict(location)
    if mode == LearningMode.ONLINE.value and online_info is not None:
        if not isinstance(online_info, Mapping):
            raise InvalidTermsError("online_info must be an object.")
        platform = online_info.get("platform")
        if platform is not None and platform not in ONLINE_PLATFORMS:
            raise InvalidTermsError(f"online_info.platform must be one of {list(ONLINE_PLATFORMS)}.")
        online_info = dict(online_info)

    payment_method = data.get("payment_method") or PaymentMethod.FULL.value
    installments = _as_int(data, "installments", required=False)
    down_payment = _as_int(data, "down_payment", required=False)
    if payment_method == PaymentMethod.FULL.value:
        installments = None
        down_payment = None

    validate_payment_terms(
        payment_method=payment_method,
        total_amount=total_sessions * price,
        total_sessions=total_sessions,
        installments=installments,
        down_payment=down_payment,
    )

    return ContractTerms(
        title=title,
        description=description,
        subject=data.get("subject"),
        total_sessions=total_sessions,
        price_per_session=price,
        session_duration=duration,
        learning_mode=mode,
        schedule=_validate_schedule(data.get("schedule"), settings),
        start_date=_as_date(data.get("start_date")),
        location=location if mode == LearningMode.OFFLINE.value else None,
        online_info=online_info if mode == LearningMode.ONLINE.value else None,
        payment_method=payment_method,
        installments=installments,
        down_payment=down_payment,
        terms=dict(data.get("terms") or {}),
    )


def terms_of(contract: Contract) -> Dict[str, Any]:
    """Current terms of a stored contract in build_terms input shape (used for amendments)."""
    return {
        "title": contract.title,
        "description": contract.description,
        "subject": contract.subject,
        "total_sessions": contract.total_sessions,
        "price_per_session": contract.price_per_session,
        "session_duration": contract.session_duration,
        "learning_mode": contract.learning_mode,
        "schedule": dict(contract.schedule_json or {}),
        "start_date": contract.start_date,
        "location": contract.location_json,
        "online_info": contract.online_info_json,
        "payment_method": contract.payment_method,
        "installments": contract.installments,
        "down_payment": contract.down_payment,
        "terms": dict(contract.terms_json or {}),
    }


def generate_contract_code(now: Optional[datetime] = None) -> str:
    now = now or utcnow()
    alphabet = string.ascii_uppercase + string.digits
    suffix = "".join(secrets.choice(alphabet) for _ in range(4))
    return f"CT-{now.strftime('%Y%m%d')}-{suffix}"


# ─────────────────────────────────────────────
# PERSISTENCE
# ─────────────────────────────────────────────

class ContractStore:
    """
    Persistence for contracts and their payment schedules.
    Nothing here commits; the lifecycle manager owns transaction boundaries.
    """

    def get(self, db: Session, contract_id: uuid.UUID, *, for_update: bool = False) -> Optional[Contract]:
        stmt = select(Contract).where(Contract.id == contract_id)
        if for_update:
            stmt = stmt.with_for_update()
        return db.execute(stmt).scalar_one_or_none()

    def require(self, db: Session, contract_id: uuid.UUID, *, for_update: bool = False) -> Contract:
        row = self.get(db, contract_id, for_update=for_update)
        if not row:
            raise ContractNotFoundError("Contract not found.")
        return row

    def find_live_for_contact_request(self, db: Session, contact_request_id: str) -> Optional[Contract]:
        return db.execute(
            select(Contract)
            .where(
                Contract.contact_request_id == contact_request_id,
                Contract.status.notin_(TERMINAL_CONTRACT_STATUSES),
            )
            .limit(1)
        ).scalar_one_or_none()

    def insert(
        self,
        db: Session,
        *,
        contact_request_id: str,
        student_id: str,
        tutor_id: str,
        terms: ContractTerms,
        status: str,
        expires_at: datetime,
    ) -> Contract:
        row = Contract(
            contact_request_id=contact_request_id,
            student_id=student_id,
            tutor_id=tutor_id,
            contract_code=generate_contract_code(),
            status=status,
            expires_at=expires_at,
            contract_version=1,
        )
        self.apply_terms(row, terms)
        db.add(row)
        db.flush()
        return row

    def apply_terms(self, contract: Contract, terms: ContractTerms) -> None:
        if contract.is_locked:
            raise ContractLockedError("Contract is locked; terms can no longer change.")

        contract.title = terms.title
        contract.description = terms.description
        contract.subject = terms.subject
        contract.total_sessions = terms.total_sessions
        contract.price_per_session = terms.price_per_session
        contract.total_amount = terms.total_amount
        contract.session_duration = terms.session_duration
        contract.learning_mode = terms.learning_mode
        contract.schedule_json = dict(terms.schedule)
        contract.start_date = terms.start_date
        contract.expected_end_date = terms.expected_end_date
        contract.location_json = terms.location
        contract.online_info_json = terms.online_info
        contract.payment_method = terms.payment_method
        contract.installments = terms.installments
        contract.down_payment = terms.down_payment
        contract.terms_json = dict(terms.terms)
        contract.updated_at = utcnow()

    def list_for_party(
        self,
        db: Session,
        *,
        user_id: str,
        status: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[Contract], int]:
        cond = [or_(Contract.student_id == user_id, Contract.tutor_id == user_id)]
        if status:
            cond.append(Contract.status == status)

        total = db.execute(select(func.count()).select_from(Contract).where(*cond)).scalar_one()
        rows = (
            db.execute(
                select(Contract)
                .where(*cond)
                .order_by(Contract.created_at.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
            .scalars()
            .all()
        )
        return list(rows), int(total)

    # ─────────────────────────────────────────────
    # SCHEDULES
    # ─────────────────────────────────────────────

    def get_schedule(self, db: Session, contract_id: uuid.UUID) -> Optional[PaymentSchedule]:
        return db.execute(
            select(PaymentSchedule).where(PaymentSchedule.contract_id == contract_id)
        ).scalar_one_or_none()

    def save_schedule(
        self,
        db: Session,
        contract: Contract,
        planned: Sequence[PlannedInstallment],
    ) -> PaymentSchedule:
        total = sum(p.amount for p in planned)
        if total != contract.total_amount:
            raise InvalidTermsError("Installments do not add up to the contract total.")

        schedule = PaymentSchedule(
            contract_id=contract.id,
            student_id=contract.student_id,
            tutor_id=contract.tutor_id,
            payment_method=contract.payment_method,
            total_amount=contract.total_amount,
            paid_amount=0,
            remaining_amount=contract.total_amount,
            status=ScheduleStatus.ACTIVE.value,
            first_due_date=min(p.due_date for p in planned),
            last_due_date=max(p.due_date for p in planned),
        )
        for p in planned:
            schedule.installments.append(
                Installment(
                    contract_id=contract.id,
                    sequence=p.sequence,
                    amount=p.amount,
                    due_date=p.due_date,
                    session_numbers=list(p.session_numbers),
                    status=InstallmentStatus.UNPAID.value,
                )
            )
        db.add(schedule)
        db.flush()
        return schedule
