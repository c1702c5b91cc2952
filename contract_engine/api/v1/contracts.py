# contract_engine/api/v1/contracts.py
from __future__ import annotations

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy import select
from sqlalchemy.orm import Session

from contract_engine.core.auth_deps import get_current_principal
from contract_engine.core.clock import as_utc
from contract_engine.core.deps import get_lifecycle, get_otp_service
from contract_engine.core.errors import ScheduleNotFoundError, ValidationError
from contract_engine.db.session import get_db
from contract_engine.models.contract import Contract
from contract_engine.models.contract_signature import ContractSignature
from contract_engine.models.enums import ContractStatus
from contract_engine.models.labels import CONTRACT_STATUS_LABELS, INSTALLMENT_STATUS_LABELS, label
from contract_engine.models.payment_schedule import Installment, PaymentSchedule
from contract_engine.policies.rbac import (
    ACTION_AMEND_CONTRACT,
    ACTION_CANCEL_CONTRACT,
    ACTION_COMPLETE_CONTRACT,
    ACTION_CREATE_CONTRACT,
    ACTION_RESPOND_CONTRACT,
    ACTION_SIGN_CONTRACT,
    ACTION_VIEW_ANY,
    Principal,
    allowed_actions,
    require_action,
)
from contract_engine.schemas.contracts import (
    AuditTrailResponse,
    ContractAmendPayload,
    ContractCancelPayload,
    ContractCreatePayload,
    ContractListResponse,
    ContractRespondPayload,
    ContractResponse,
    PaymentScheduleResponse,
)
from contract_engine.schemas.signatures import OTPIssuedResponse, SigningResultResponse, SigningVerifyPayload
from contract_engine.services.contract_lifecycle import ContractLifecycleManager, ensure_party
from contract_engine.services.ledger_service import LedgerService
from contract_engine.services.signature_otp_service import SignatureOTPService

router = APIRouter(prefix="/contracts")


# ---------------------------------------------------------------------
# helpers
# ---------------------------------------------------------------------


def _iso(dt):
    return as_utc(dt).isoformat() if dt else None


def _parse_id(raw: str) -> uuid.UUID:
    try:
        return uuid.UUID(raw)
    except ValueError:
        raise HTTPException(status_code=400, detail="contractId must be UUID.")


def client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def ensure_can_view(contract: Contract, principal: Principal) -> None:
    if ACTION_VIEW_ANY in allowed_actions(principal.role):
        return
    ensure_party(contract, principal.user_id)


def _to_resp(c: Contract) -> dict:
    return {
        "contractId": str(c.id),
        "contractCode": c.contract_code,
        "contactRequestId": c.contact_request_id,
        "studentId": c.student_id,
        "tutorId": c.tutor_id,
        "status": c.status,
        "statusLabel": label(CONTRACT_STATUS_LABELS, c.status),
        "title": c.title,
        "description": c.description,
        "subject": c.subject,
        "totalSessions": c.total_sessions,
        "pricePerSession": c.price_per_session,
        "totalAmount": c.total_amount,
        "sessionDuration": c.session_duration,
        "learningMode": c.learning_mode,
        "schedule": c.schedule_json or {},
        "startDate": c.start_date.isoformat(),
        "expectedEndDate": c.expected_end_date.isoformat(),
        "location": c.location_json,
        "onlineInfo": c.online_info_json,
        "paymentMethod": c.payment_method,
        "installments": c.installments,
        "downPayment": c.down_payment,
        "terms": c.terms_json or {},
        "contractVersion": c.contract_version,
        "studentSignature": {"signed": c.student_signed_at is not None, "signedAtIso": _iso(c.student_signed_at)},
        "tutorSignature": {"signed": c.tutor_signed_at is not None, "signedAtIso": _iso(c.tutor_signed_at)},
        "isSigned": bool(c.is_signed),
        "isLocked": bool(c.is_locked),
        "lockedAtIso": _iso(c.locked_at),
        "contractHash": c.contract_hash,
        "studentResponse": c.student_response_json,
        "createdAtIso": _iso(c.created_at),
        "expiresAtIso": _iso(c.expires_at),
        "activatedAtIso": _iso(c.activated_at),
        "completedAtIso": _iso(c.completed_at),
        "cancelledAtIso": _iso(c.cancelled_at),
        "cancelReason": c.cancel_reason,
    }


def installment_to_resp(i: Installment) -> dict:
    return {
        "sequence": i.sequence,
        "amount": i.amount,
        "dueDate": i.due_date.isoformat(),
        "sessionNumbers": list(i.session_numbers or []),
        "status": i.status,
        "statusLabel": label(INSTALLMENT_STATUS_LABELS, i.status),
        "paidAtIso": _iso(i.paid_at),
        "transactionId": i.transaction_id,
    }


def _schedule_to_resp(s: PaymentSchedule) -> dict:
    return {
        "contractId": str(s.contract_id),
        "paymentMethod": s.payment_method,
        "status": s.status,
        "totalAmount": s.total_amount,
        "paidAmount": s.paid_amount,
        "remainingAmount": s.remaining_amount,
        "firstDueDate": s.first_due_date.isoformat(),
        "lastDueDate": s.last_due_date.isoformat(),
        "installments": [installment_to_resp(i) for i in s.installments],
    }


# ---------------------------------------------------------------------
# CREATE / LIST / READ
# ---------------------------------------------------------------------


@router.post("", response_model=ContractResponse, status_code=201)
async def create_contract(
    payload: ContractCreatePayload,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    lifecycle: ContractLifecycleManager = Depends(get_lifecycle),
):
    require_action(principal, ACTION_CREATE_CONTRACT)
    terms = payload.model_dump(exclude={"contact_request_id", "student_id", "draft"}, exclude_none=True)
    row = lifecycle.create(
        db,
        tutor_id=principal.user_id,
        student_id=payload.student_id,
        contact_request_id=payload.contact_request_id,
        terms=terms,
        draft=payload.draft,
    )
    return _to_resp(row)


@router.get("/mine", response_model=ContractListResponse)
async def list_my_contracts(
    status: Optional[ContractStatus] = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    lifecycle: ContractLifecycleManager = Depends(get_lifecycle),
):
    rows, total = lifecycle.store.list_for_party(
        db,
        user_id=principal.user_id,
        status=status.value if status else None,
        page=page,
        limit=limit,
    )
    # lazy expiry for anything stale in this page
    for c in rows:
        lifecycle.expire_if_due(db, c)
    return {"contracts": [_to_resp(c) for c in rows], "total": total, "page": page, "limit": limit}


@router.get("/{contractId}", response_model=ContractResponse)
async def get_contract(
    contractId: str,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    lifecycle: ContractLifecycleManager = Depends(get_lifecycle),
):
    row = lifecycle.get(db, _parse_id(contractId))
    ensure_can_view(row, principal)
    return _to_resp(row)


# ---------------------------------------------------------------------
# NEGOTIATION
# ---------------------------------------------------------------------


@router.post("/{contractId}/submit", response_model=ContractResponse)
async def submit_contract(
    contractId: str,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    lifecycle: ContractLifecycleManager = Depends(get_lifecycle),
):
    require_action(principal, ACTION_CREATE_CONTRACT)
    row = lifecycle.submit(db, contract_id=_parse_id(contractId), tutor_id=principal.user_id)
    return _to_resp(row)


@router.post("/{contractId}/respond", response_model=ContractResponse)
async def respond_to_contract(
    contractId: str,
    payload: ContractRespondPayload,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    lifecycle: ContractLifecycleManager = Depends(get_lifecycle),
):
    require_action(principal, ACTION_RESPOND_CONTRACT)
    row = lifecycle.respond(
        db,
        contract_id=_parse_id(contractId),
        student_id=principal.user_id,
        action=payload.action,
        message=payload.message,
        requested_changes=payload.requested_changes,
    )
    return _to_resp(row)


@router.post("/{contractId}/amend", response_model=ContractResponse)
async def amend_contract(
    contractId: str,
    payload: ContractAmendPayload,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    lifecycle: ContractLifecycleManager = Depends(get_lifecycle),
):
    require_action(principal, ACTION_AMEND_CONTRACT)
    changes = payload.model_dump(exclude_unset=True)
    if not changes:
        raise ValidationError("No changes supplied.")
    row = lifecycle.amend(db, contract_id=_parse_id(contractId), tutor_id=principal.user_id, changes=changes)
    return _to_resp(row)


# ---------------------------------------------------------------------
# SIGNING
# ---------------------------------------------------------------------


@router.post("/{contractId}/signing/otp", response_model=OTPIssuedResponse)
async def request_signing_code(
    contractId: str,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    lifecycle: ContractLifecycleManager = Depends(get_lifecycle),
    otp: SignatureOTPService = Depends(get_otp_service),
):
    require_action(principal, ACTION_SIGN_CONTRACT)
    if not principal.email:
        raise ValidationError("An email address is required to sign.")

    contract = lifecycle.get(db, _parse_id(contractId))
    role = ensure_party(contract, principal.user_id)
    issued = otp.issue(
        db,
        contract_id=contract.id,
        email=principal.email,
        role=role.value,
        recipient_name=principal.display_name,
    )
    return {
        "contractId": str(issued.contract_id),
        "role": issued.role,
        "sentTo": issued.email,
        "expiresAtIso": _iso(issued.expires_at),
    }


@router.post("/{contractId}/signing/verify", response_model=SigningResultResponse)
async def verify_and_sign(
    contractId: str,
    payload: SigningVerifyPayload,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    lifecycle: ContractLifecycleManager = Depends(get_lifecycle),
    otp: SignatureOTPService = Depends(get_otp_service),
):
    require_action(principal, ACTION_SIGN_CONTRACT)
    contract = lifecycle.get(db, _parse_id(contractId))
    role = ensure_party(contract, principal.user_id)

    # the code is consumed in the same transaction as the signature
    verified = otp.verify(
        db,
        contract_id=contract.id,
        email=principal.email,
        role=role.value,
        code=payload.code,
        commit=False,
    )
    try:
        row = lifecycle.apply_signature(
            db,
            contract_id=contract.id,
            role=verified.role,
            signer_id=principal.user_id,
            email=verified.email,
            token=verified.token,
            ip_address=client_ip(request),
            user_agent=request.headers.get("user-agent"),
            consent_text=payload.consent_text,
        )
    except Exception:
        db.rollback()
        raise
    return {
        "contractId": str(row.id),
        "role": verified.role,
        "status": row.status,
        "isLocked": bool(row.is_locked),
        "contractHash": row.contract_hash,
    }


# ---------------------------------------------------------------------
# TERMINATION
# ---------------------------------------------------------------------


@router.post("/{contractId}/cancel", response_model=ContractResponse)
async def cancel_contract(
    contractId: str,
    payload: ContractCancelPayload,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    lifecycle: ContractLifecycleManager = Depends(get_lifecycle),
):
    require_action(principal, ACTION_CANCEL_CONTRACT)
    row = lifecycle.cancel(
        db,
        contract_id=_parse_id(contractId),
        actor_id=principal.user_id,
        reason=payload.reason,
        is_admin=principal.is_admin,
    )
    return _to_resp(row)


@router.post("/{contractId}/complete", response_model=ContractResponse)
async def complete_contract(
    contractId: str,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    lifecycle: ContractLifecycleManager = Depends(get_lifecycle),
):
    require_action(principal, ACTION_COMPLETE_CONTRACT)
    row = lifecycle.complete(
        db,
        contract_id=_parse_id(contractId),
        actor_id=principal.user_id,
        is_admin=principal.is_admin,
    )
    return _to_resp(row)


# ---------------------------------------------------------------------
# AUDIT / SCHEDULE
# ---------------------------------------------------------------------


@router.get("/{contractId}/audit-trail", response_model=AuditTrailResponse)
async def get_audit_trail(
    contractId: str,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    lifecycle: ContractLifecycleManager = Depends(get_lifecycle),
):
    cid = _parse_id(contractId)
    contract = lifecycle.get(db, cid)
    ensure_can_view(contract, principal)

    ledger = LedgerService()
    entries = ledger.list_entries(db, contract_id=cid)
    signatures = (
        db.execute(
            select(ContractSignature)
            .where(ContractSignature.contract_id == cid)
            .order_by(ContractSignature.signed_at.asc())
        )
        .scalars()
        .all()
    )
    return {
        "contractId": str(cid),
        "chainValid": ledger.verify_chain(db, contract_id=cid),
        "snapshotValid": lifecycle.verify_snapshot(db, cid) if contract.is_locked else None,
        "contractHash": contract.contract_hash,
        "signatures": [
            {
                "role": s.signer_role,
                "signerId": s.signer_id,
                "email": s.email,
                "contractVersion": s.contract_version,
                "signedAtIso": _iso(s.signed_at),
                "ipAddress": s.ip_address,
                "userAgent": s.user_agent,
                "otpHash": s.otp_hash,
            }
            for s in signatures
        ],
        "entries": [
            {
                "seq": e.seq,
                "entryType": e.entry_type,
                "actorId": e.actor_id,
                "createdAtIso": _iso(e.created_at),
                "prevHash": e.prev_hash,
                "entryHash": e.entry_hash,
                "payload": e.payload_json or {},
            }
            for e in entries
        ],
    }


@router.get("/{contractId}/payment-schedule", response_model=PaymentScheduleResponse)
async def get_payment_schedule(
    contractId: str,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    lifecycle: ContractLifecycleManager = Depends(get_lifecycle),
):
    contract = lifecycle.get(db, _parse_id(contractId))
    ensure_can_view(contract, principal)
    schedule = lifecycle.store.get_schedule(db, contract.id)
    if schedule is None:
        raise ScheduleNotFoundError("Payment schedule not found; the contract is not active yet.")
    return _schedule_to_resp(schedule)
