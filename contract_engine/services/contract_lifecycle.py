#contract_engine/services/contract_lifecycle.py
from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Mapping, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from contract_engine.core.clock import as_utc, utcnow
from contract_engine.core.config import Settings, get_settings
from contract_engine.core.errors import (
    AlreadySignedError,
    ContractExpiredError,
    ContractLockedError,
    InvalidTermsError,
    PermissionDeniedError,
    ScheduleNotFoundError,
    StateConflictError,
)
from contract_engine.core.hashing import canonical_dumps, sha256_hex
from contract_engine.models.contract import Contract
from contract_engine.models.contract_signature import ContractSignature
from contract_engine.models.enums import (
    ContractStatus,
    InstallmentStatus,
    PRE_ACTIVE_STATUSES,
    ScheduleStatus,
    SignerRole,
    StudentResponseAction,
    TERMINAL_CONTRACT_STATUSES,
)
from contract_engine.models.payment_schedule import Installment, PaymentSchedule
from contract_engine.services import ledger_service as ledger_events
from contract_engine.services.class_service import ClassActivationHook
from contract_engine.services.contract_store import ContractStore, build_terms, terms_of
from contract_engine.services.installment_scheduler import InstallmentScheduler
from contract_engine.services.ledger_service import LedgerService
from contract_engine.services.notifier import Notifier, safe_notify

logger = logging.getLogger(__name__)

DEFAULT_CONSENT_TEXT = (
    "I have read and agree to all terms of this tutoring contract and confirm "
    "that this electronic signature is legally binding."
)


# ─────────────────────────────────────────────
# PURE GUARDS
# ─────────────────────────────────────────────

def party_role(contract: Contract, user_id: str) -> Optional[SignerRole]:
    if user_id == contract.student_id:
        return SignerRole.STUDENT
    if user_id == contract.tutor_id:
        return SignerRole.TUTOR
    return None


def ensure_party(contract: Contract, user_id: str) -> SignerRole:
    role = party_role(contract, user_id)
    if role is None:
        raise PermissionDeniedError("You are not a party to this contract.")
    return role


def is_past_expiry(contract: Contract, now: datetime) -> bool:
    return contract.status in PRE_ACTIVE_STATUSES and as_utc(contract.expires_at) < now


def ensure_signable(contract: Contract, role: str, now: datetime) -> None:
    """
    Raise unless `role` may sign `contract` right now.
    Shared by OTP issuance and signature application.
    """
    if contract.is_locked:
        raise ContractLockedError("Contract is already signed and locked.")
    if contract.status in TERMINAL_CONTRACT_STATUSES or is_past_expiry(contract, now):
        raise ContractExpiredError(f"Contract can no longer be signed (status {contract.status}).")
    if contract.status == ContractStatus.DRAFT.value:
        raise StateConflictError("Contract has not been sent to the student yet.")
    if contract.status not in PRE_ACTIVE_STATUSES:
        raise StateConflictError(f"Contract cannot be signed in status {contract.status}.")
    if contract.signed_at_for(role) is not None:
        raise AlreadySignedError(f"Contract already signed by the {role}.")


def _iso(dt) -> Optional[str]:
    if dt is None:
        return None
    if isinstance(dt, datetime):
        return as_utc(dt).isoformat()
    return dt.isoformat()


def build_snapshot(contract: Contract) -> Dict[str, Any]:
    """Everything the two signatures cover. Stored once, as canonical JSON."""
    terms = terms_of(contract)
    terms["start_date"] = _iso(contract.start_date)
    return {
        "contract_id": str(contract.id),
        "contract_code": contract.contract_code,
        "contact_request_id": contract.contact_request_id,
        "student_id": contract.student_id,
        "tutor_id": contract.tutor_id,
        "contract_version": contract.contract_version,
        "terms": terms,
        "total_amount": contract.total_amount,
        "expected_end_date": _iso(contract.expected_end_date),
        "signatures": {
            "student": {"signed_at": _iso(contract.student_signed_at), "ip": contract.student_sign_ip},
            "tutor": {"signed_at": _iso(contract.tutor_signed_at), "ip": contract.tutor_sign_ip},
        },
    }


class ContractLifecycleManager:
    """
    The only writer of Contract.status.

    States:
      DRAFT -> PENDING_STUDENT_APPROVAL <-> PENDING_TUTOR_APPROVAL -> ACTIVE -> COMPLETED
      REJECTED / CANCELLED / EXPIRED are absorbing and reachable only before ACTIVE.

    Every transition is a single commit together with its ledger entry.
    """

    def __init__(
        self,
        *,
        store: Optional[ContractStore] = None,
        scheduler: Optional[InstallmentScheduler] = None,
        ledger: Optional[LedgerService] = None,
        notifier: Optional[Notifier] = None,
        activation_hook: Optional[ClassActivationHook] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store or ContractStore()
        self.scheduler = scheduler or InstallmentScheduler()
        self.ledger = ledger or LedgerService()
        self.notifier = notifier or Notifier()
        self.activation_hook = activation_hook
        self.settings = settings or get_settings()
        self.clock = clock

    # ─────────────────────────────────────────────
    # INTERNAL HELPERS
    # ─────────────────────────────────────────────

    def _expiry_from(self, now: datetime) -> datetime:
        return now + timedelta(days=self.settings.contract_expiry_days)

    def _load(self, db: Session, contract_id: uuid.UUID, *, for_update: bool = False) -> Contract:
        contract = self.store.require(db, contract_id, for_update=for_update)
        self.expire_if_due(db, contract)
        return contract

    def _require_tutor(self, contract: Contract, user_id: str) -> None:
        if contract.tutor_id != user_id:
            raise PermissionDeniedError("Only the tutor of this contract may do this.")

    def _require_student(self, contract: Contract, user_id: str) -> None:
        if contract.student_id != user_id:
            raise PermissionDeniedError("Only the student of this contract may do this.")

    def _other_party(self, contract: Contract, user_id: str) -> str:
        return contract.tutor_id if user_id == contract.student_id else contract.student_id

    # ─────────────────────────────────────────────
    # EXPIRY
    # ─────────────────────────────────────────────

    def expire_if_due(self, db: Session, contract: Contract, now: Optional[datetime] = None) -> bool:
        """Lazy expiry: a pre-ACTIVE contract past expires_at becomes EXPIRED when touched."""
        now = now or self.clock()
        if contract.is_locked or not is_past_expiry(contract, now):
            return False

        previous = contract.status
        contract.status = ContractStatus.EXPIRED.value
        contract.updated_at = now
        self.ledger.append_entry(
            db,
            contract_id=contract.id,
            entry_type=ledger_events.CONTRACT_EXPIRED,
            payload={"from_status": previous, "expires_at": _iso(contract.expires_at)},
        )
        db.commit()
        logger.info("contract_expired", extra={"contract_id": str(contract.id), "from_status": previous})
        return True

    # ─────────────────────────────────────────────
    # CREATION / NEGOTIATION
    # ─────────────────────────────────────────────

    def create(
        self,
        db: Session,
        *,
        tutor_id: str,
        student_id: str,
        contact_request_id: str,
        terms: Mapping[str, Any],
        draft: bool = False,
    ) -> Contract:
        if tutor_id == student_id:
            raise InvalidTermsError("Tutor and student must be different users.")

        validated = build_terms(terms, self.settings)

        if self.store.find_live_for_contact_request(db, contact_request_id):
            raise StateConflictError("A contract already exists for this contact request.")

        now = self.clock()
        status = ContractStatus.DRAFT if draft else ContractStatus.PENDING_STUDENT_APPROVAL
        contract = self.store.insert(
            db,
            contact_request_id=contact_request_id,
            student_id=student_id,
            tutor_id=tutor_id,
            terms=validated,
            status=status.value,
            expires_at=self._expiry_from(now),
        )
        self.ledger.append_entry(
            db,
            contract_id=contract.id,
            entry_type=ledger_events.CONTRACT_CREATED,
            actor_id=tutor_id,
            payload={
                "contract_code": contract.contract_code,
                "status": contract.status,
                "total_amount": contract.total_amount,
                "payment_method": contract.payment_method,
            },
        )
        db.commit()
        db.refresh(contract)

        logger.info(
            "contract_created",
            extra={"contract_id": str(contract.id), "tutor_id": tutor_id, "status": contract.status},
        )
        if not draft:
            safe_notify(
                self.notifier,
                student_id,
                "CONTRACT_CREATED",
                {"contract_id": str(contract.id), "contract_code": contract.contract_code},
            )
        return contract

    def submit(self, db: Session, *, contract_id: uuid.UUID, tutor_id: str) -> Contract:
        contract = self._load(db, contract_id, for_update=True)
        self._require_tutor(contract, tutor_id)
        if contract.status != ContractStatus.DRAFT.value:
            raise StateConflictError(f"Only DRAFT contracts can be submitted (status {contract.status}).")

        now = self.clock()
        contract.status = ContractStatus.PENDING_STUDENT_APPROVAL.value
        contract.expires_at = self._expiry_from(now)
        contract.updated_at = now
        self.ledger.append_entry(
            db,
            contract_id=contract.id,
            entry_type=ledger_events.CONTRACT_SUBMITTED,
            actor_id=tutor_id,
            payload={"status": contract.status},
        )
        db.commit()
        db.refresh(contract)

        safe_notify(
            self.notifier,
            contract.student_id,
            "CONTRACT_CREATED",
            {"contract_id": str(contract.id), "contract_code": contract.contract_code},
        )
        return contract

    def respond(
        self,
        db: Session,
        *,
        contract_id: uuid.UUID,
        student_id: str,
        action: str,
        message: Optional[str] = None,
        requested_changes: Optional[Dict[str, Any]] = None,
    ) -> Contract:
        contract = self._load(db, contract_id, for_update=True)
        self._require_student(contract, student_id)

        if contract.is_locked:
            raise ContractLockedError("Contract is already signed and locked.")
        if contract.status in TERMINAL_CONTRACT_STATUSES:
            raise ContractExpiredError(f"Contract is {contract.status}.")
        if contract.status != ContractStatus.PENDING_STUDENT_APPROVAL.value:
            raise StateConflictError(f"Contract is not awaiting the student (status {contract.status}).")

        try:
            act = StudentResponseAction(action)
        except ValueError:
            raise InvalidTermsError(f"Unknown response action {action!r}.")

        now = self.clock()
        contract.student_response_json = {
            "action": act.value,
            "message": message,
            "requested_changes": requested_changes,
            "responded_at": now.isoformat(),
        }
        if act == StudentResponseAction.REJECT:
            contract.status = ContractStatus.REJECTED.value
            contract.rejected_at = now
        elif act == StudentResponseAction.REQUEST_CHANGES:
            contract.status = ContractStatus.PENDING_TUTOR_APPROVAL.value
        contract.updated_at = now

        self.ledger.append_entry(
            db,
            contract_id=contract.id,
            entry_type=ledger_events.CONTRACT_RESPONDED,
            actor_id=student_id,
            payload={"action": act.value, "status": contract.status},
        )
        db.commit()
        db.refresh(contract)

        safe_notify(
            self.notifier,
            contract.tutor_id,
            "CONTRACT_RESPONDED",
            {"contract_id": str(contract.id), "action": act.value},
        )
        return contract

    def amend(self, db: Session, *, contract_id: uuid.UUID, tutor_id: str, changes: Mapping[str, Any]) -> Contract:
        contract = self._load(db, contract_id, for_update=True)
        self._require_tutor(contract, tutor_id)

        if contract.is_locked:
            raise ContractLockedError("Contract is signed and locked; terms can no longer change.")
        if contract.status not in PRE_ACTIVE_STATUSES:
            raise StateConflictError(f"Contract cannot be amended in status {contract.status}.")

        merged = terms_of(contract)
        merged.update({k: v for k, v in changes.items() if k in merged})
        validated = build_terms(merged, self.settings)

        now = self.clock()
        self.store.apply_terms(contract, validated)
        contract.contract_version += 1
        contract.student_signed_at = None
        contract.tutor_signed_at = None
        contract.student_sign_ip = None
        contract.tutor_sign_ip = None
        contract.student_response_json = None
        if contract.status != ContractStatus.DRAFT.value:
            contract.status = ContractStatus.PENDING_STUDENT_APPROVAL.value
        contract.expires_at = self._expiry_from(now)

        self.ledger.append_entry(
            db,
            contract_id=contract.id,
            entry_type=ledger_events.CONTRACT_AMENDED,
            actor_id=tutor_id,
            payload={
                "contract_version": contract.contract_version,
                "changed_fields": sorted(k for k in changes if k in merged),
                "total_amount": contract.total_amount,
            },
        )
        db.commit()
        db.refresh(contract)

        safe_notify(
            self.notifier,
            contract.student_id,
            "CONTRACT_UPDATED",
            {"contract_id": str(contract.id), "contract_version": contract.contract_version},
        )
        return contract

    # ─────────────────────────────────────────────
    # SIGNING
    # ─────────────────────────────────────────────

    def apply_signature(
        self,
        db: Session,
        *,
        contract_id: uuid.UUID,
        role: str,
        signer_id: str,
        email: str,
        token: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        consent_text: Optional[str] = None,
    ) -> Contract:
        """
        Record one party's verified signature. The second signature locks the
        contract, captures the snapshot and hash, activates it and generates
        the payment schedule, all in one commit.
        """
        try:
            role = SignerRole(role).value
        except ValueError:
            raise InvalidTermsError(f"Unknown signer role {role!r}.")
        contract = self._load(db, contract_id, for_update=True)

        expected_signer = contract.student_id if role == SignerRole.STUDENT.value else contract.tutor_id
        if signer_id != expected_signer:
            raise PermissionDeniedError(f"Only the {role} of this contract may sign as {role}.")

        now = self.clock()
        ensure_signable(contract, role, now)

        if role == SignerRole.STUDENT.value:
            contract.student_signed_at = now
            contract.student_sign_ip = ip_address
        else:
            contract.tutor_signed_at = now
            contract.tutor_sign_ip = ip_address
        contract.updated_at = now

        db.add(
            ContractSignature(
                contract_id=contract.id,
                contract_version=contract.contract_version,
                signer_id=signer_id,
                signer_role=role,
                email=email,
                otp_hash=token,
                ip_address=ip_address,
                user_agent=user_agent,
                consent_text=consent_text or DEFAULT_CONSENT_TEXT,
                signed_at=now,
            )
        )
        self.ledger.append_entry(
            db,
            contract_id=contract.id,
            entry_type=ledger_events.CONTRACT_SIGNED,
            actor_id=signer_id,
            payload={"role": role, "contract_version": contract.contract_version},
        )

        activated = contract.student_signed_at is not None and contract.tutor_signed_at is not None
        if activated:
            self._lock_and_activate(db, contract, now)
        elif role == SignerRole.STUDENT.value:
            contract.status = ContractStatus.PENDING_TUTOR_APPROVAL.value
        else:
            contract.status = ContractStatus.PENDING_STUDENT_APPROVAL.value

        db.commit()
        db.refresh(contract)

        logger.info(
            "contract_signed",
            extra={"contract_id": str(contract.id), "role": role, "activated": activated},
        )

        if activated:
            for uid in (contract.student_id, contract.tutor_id):
                safe_notify(
                    self.notifier,
                    uid,
                    "CONTRACT_ACTIVATED",
                    {"contract_id": str(contract.id), "contract_code": contract.contract_code},
                )
            self._dispatch_activation(contract.id)
        else:
            safe_notify(
                self.notifier,
                self._other_party(contract, signer_id),
                "CONTRACT_SIGNED",
                {"contract_id": str(contract.id), "signed_by": role},
            )
        return contract

    def _lock_and_activate(self, db: Session, contract: Contract, now: datetime) -> None:
        snapshot = canonical_dumps(build_snapshot(contract))
        contract.snapshot_json = snapshot
        contract.contract_hash = sha256_hex(snapshot)
        contract.is_signed = True
        contract.is_locked = True
        contract.locked_at = now
        contract.status = ContractStatus.ACTIVE.value
        contract.activated_at = now

        schedule = self.store.save_schedule(db, contract, self.scheduler.generate(contract))

        self.ledger.append_entry(
            db,
            contract_id=contract.id,
            entry_type=ledger_events.CONTRACT_ACTIVATED,
            payload={
                "contract_hash": contract.contract_hash,
                "schedule_id": str(schedule.id),
                "installments": [i.amount for i in schedule.installments],
            },
        )

    def _dispatch_activation(self, contract_id: uuid.UUID) -> None:
        if self.activation_hook is None:
            return
        try:
            self.activation_hook.on_contract_activated(contract_id)
        except Exception:
            logger.exception("class_activation_failed", extra={"contract_id": str(contract_id)})

    # ─────────────────────────────────────────────
    # TERMINATION
    # ─────────────────────────────────────────────

    def cancel(
        self,
        db: Session,
        *,
        contract_id: uuid.UUID,
        actor_id: str,
        reason: Optional[str] = None,
        is_admin: bool = False,
    ) -> Contract:
        contract = self._load(db, contract_id, for_update=True)
        if not is_admin:
            ensure_party(contract, actor_id)

        if contract.is_locked:
            raise ContractLockedError("Signed contracts cannot be cancelled.")
        if contract.status in TERMINAL_CONTRACT_STATUSES:
            raise StateConflictError(f"Contract is already {contract.status}.")

        now = self.clock()
        contract.status = ContractStatus.CANCELLED.value
        contract.cancelled_at = now
        contract.cancelled_by = actor_id
        contract.cancel_reason = reason
        contract.updated_at = now

        cancelled_installments = db.execute(
            update(Installment)
            .where(
                Installment.contract_id == contract.id,
                Installment.status.in_(
                    [
                        InstallmentStatus.PENDING.value,
                        InstallmentStatus.UNPAID.value,
                        InstallmentStatus.OVERDUE.value,
                    ]
                ),
            )
            .values(status=InstallmentStatus.CANCELLED.value)
        ).rowcount
        db.execute(
            update(PaymentSchedule)
            .where(
                PaymentSchedule.contract_id == contract.id,
                PaymentSchedule.status != ScheduleStatus.COMPLETED.value,
            )
            .values(status=ScheduleStatus.CANCELLED.value, cancelled_at=now)
        )

        self.ledger.append_entry(
            db,
            contract_id=contract.id,
            entry_type=ledger_events.CONTRACT_CANCELLED,
            actor_id=actor_id,
            payload={"reason": reason, "cancelled_installments": cancelled_installments},
        )
        db.commit()
        db.refresh(contract)

        for uid in (contract.student_id, contract.tutor_id):
            if uid != actor_id:
                safe_notify(self.notifier, uid, "CONTRACT_CANCELLED", {"contract_id": str(contract.id)})
        return contract

    def complete(self, db: Session, *, contract_id: uuid.UUID, actor_id: str, is_admin: bool = False) -> Contract:
        contract = self._load(db, contract_id, for_update=True)
        if not is_admin:
            ensure_party(contract, actor_id)

        if contract.status != ContractStatus.ACTIVE.value:
            raise StateConflictError(f"Only ACTIVE contracts can be completed (status {contract.status}).")

        schedule = self.store.get_schedule(db, contract.id)
        if not schedule:
            raise ScheduleNotFoundError("Payment schedule not found.")
        if schedule.status != ScheduleStatus.COMPLETED.value:
            raise StateConflictError("Contract cannot be completed while payments are outstanding.")

        now = self.clock()
        contract.status = ContractStatus.COMPLETED.value
        contract.completed_at = now
        contract.updated_at = now
        self.ledger.append_entry(
            db,
            contract_id=contract.id,
            entry_type=ledger_events.CONTRACT_COMPLETED,
            actor_id=actor_id,
            payload={"schedule_id": str(schedule.id)},
        )
        db.commit()
        db.refresh(contract)

        for uid in (contract.student_id, contract.tutor_id):
            safe_notify(self.notifier, uid, "CONTRACT_COMPLETED", {"contract_id": str(contract.id)})
        return contract

    # ─────────────────────────────────────────────
    # READ
    # ─────────────────────────────────────────────

    def get(self, db: Session, contract_id: uuid.UUID) -> Contract:
        return self._load(db, contract_id)

    def verify_snapshot(self, db: Session, contract_id: uuid.UUID) -> bool:
        """
        True when the stored snapshot still hashes to contract_hash and the
        stored terms still match the snapshot.
        """
        contract = self.store.require(db, contract_id)
        if not contract.is_locked or not contract.snapshot_json or not contract.contract_hash:
            return False
        if sha256_hex(contract.snapshot_json) != contract.contract_hash:
            return False
        return json.loads(contract.snapshot_json) == json.loads(canonical_dumps(build_snapshot(contract)))
