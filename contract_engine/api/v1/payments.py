# contract_engine/api/v1/payments.py
from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from contract_engine.api.v1.contracts import client_ip, installment_to_resp
from contract_engine.core.auth_deps import get_current_principal
from contract_engine.core.clock import as_utc
from contract_engine.core.deps import get_lifecycle, get_reconciliation
from contract_engine.core.deps_idempotency import idempotency_guard
from contract_engine.core.errors import InvalidSignatureError, PaymentNotFoundError, PermissionDeniedError
from contract_engine.db.session import get_db, get_session_factory
from contract_engine.models.enums import PaymentStatus
from contract_engine.models.labels import PAYMENT_STATUS_LABELS, label
from contract_engine.models.payment import Payment
from contract_engine.policies.rbac import (
    ACTION_PAY,
    ACTION_REPROCESS_PAYMENT,
    ACTION_RUN_SWEEP,
    ACTION_VIEW_ANY,
    Principal,
    allowed_actions,
    require_action,
)
from contract_engine.schemas.payments import (
    AdminPaymentListResponse,
    InitiatePaymentPayload,
    PayableInstallmentsResponse,
    PaymentHistoryResponse,
    PaymentIntentResponse,
    PaymentResponse,
    PaymentStatsResponse,
    SettlementResponse,
    SweepResponse,
)
from contract_engine.services.contract_lifecycle import ContractLifecycleManager
from contract_engine.services.expiry_sweeper import ExpirySweeper
from contract_engine.services.idempotency_service import IdempotencyService
from contract_engine.services.reconciliation_service import AMOUNT_MISMATCH, ReconciliationEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments")

# VNPay IPN acknowledgement codes
IPN_OK = {"RspCode": "00", "Message": "Confirm Success"}
IPN_ALREADY_CONFIRMED = {"RspCode": "02", "Message": "Order already confirmed"}
IPN_NOT_FOUND = {"RspCode": "01", "Message": "Order not found"}
IPN_INVALID_AMOUNT = {"RspCode": "04", "Message": "Invalid amount"}
IPN_INVALID_SIGNATURE = {"RspCode": "97", "Message": "Invalid signature"}
IPN_UNKNOWN_ERROR = {"RspCode": "99", "Message": "Unknown error"}


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


def _to_resp(p: Payment) -> dict:
    return {
        "orderRef": p.order_ref,
        "contractId": str(p.contract_id),
        "amount": p.amount,
        "installmentSequences": list(p.installment_sequences or []),
        "status": p.status,
        "statusLabel": label(PAYMENT_STATUS_LABELS, p.status),
        "createdAtIso": _iso(p.created_at),
        "expiresAtIso": _iso(p.expires_at),
        "paidAtIso": _iso(p.paid_at),
        "transactionId": p.gateway_transaction_id,
        "bankCode": p.gateway_bank_code,
    }


def _to_admin_resp(p: Payment) -> dict:
    return {
        **_to_resp(p),
        "studentId": p.student_id,
        "tutorId": p.tutor_id,
        "failureReason": p.failure_reason,
    }


def _outcome_to_resp(outcome) -> dict:
    return {
        "success": outcome.success,
        "orderRef": outcome.order_ref,
        "status": outcome.status,
        "message": outcome.message,
    }


# ---------------------------------------------------------------------
# STUDENT: what can I pay
# ---------------------------------------------------------------------


@router.get("/contracts/{contractId}/payable", response_model=PayableInstallmentsResponse)
async def list_payable_installments(
    contractId: str,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    engine: ReconciliationEngine = Depends(get_reconciliation),
):
    require_action(principal, ACTION_PAY)
    payable = engine.payable_installments(db, contract_id=_parse_id(contractId), student_id=principal.user_id)
    return {
        "contractId": str(payable.contract_id),
        "installments": [installment_to_resp(i) for i in payable.installments],
        "totalAmount": payable.total_amount,
    }


@router.get("/contracts/{contractId}/pending", response_model=Optional[PaymentResponse])
async def get_pending_payment(
    contractId: str,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    engine: ReconciliationEngine = Depends(get_reconciliation),
):
    require_action(principal, ACTION_PAY)
    row = engine.pending_payment(db, contract_id=_parse_id(contractId), student_id=principal.user_id)
    return _to_resp(row) if row else None


# ---------------------------------------------------------------------
# STUDENT: initiate (idempotent)
# ---------------------------------------------------------------------


@router.post("/initiate", response_model=PaymentIntentResponse, status_code=201)
async def initiate_payment(
    request: Request,
    payload: InitiatePaymentPayload,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    engine: ReconciliationEngine = Depends(get_reconciliation),
    idem_key: str = Depends(idempotency_guard),
):
    require_action(principal, ACTION_PAY)

    if request.state.idempotency_replay_json is not None:
        return JSONResponse(
            status_code=request.state.idempotency_replay_status,
            content=request.state.idempotency_replay_json,
        )

    intent = engine.initiate(
        db,
        contract_id=_parse_id(payload.contract_id),
        student_id=principal.user_id,
        sequences=payload.installment_sequences,
        ip_address=client_ip(request),
        return_url=payload.return_url,
        locale=payload.locale,
    )
    response = {
        "orderRef": intent.payment.order_ref,
        "paymentUrl": intent.redirect_url,
        "amount": intent.payment.amount,
        "installmentSequences": list(intent.payment.installment_sequences),
        "expiresAtIso": _iso(intent.payment.expires_at),
    }

    IdempotencyService().store_response(
        db,
        principal_id=principal.user_id,
        endpoint_key=request.state.idempotency_endpoint_key,
        idem_key=idem_key,
        request_hash=request.state.idempotency_request_hash,
        response_json=response,
        response_status=201,
    )
    return response


# ---------------------------------------------------------------------
# GATEWAY CALLBACKS (unauthenticated, signature-checked)
# ---------------------------------------------------------------------


@router.get("/gateway/return", response_model=SettlementResponse)
async def gateway_return(
    request: Request,
    db: Session = Depends(get_db),
    engine: ReconciliationEngine = Depends(get_reconciliation),
):
    """Browser redirect back from the gateway. Settles the same way the IPN does."""
    outcome = engine.settle(db, dict(request.query_params))
    return _outcome_to_resp(outcome)


@router.get("/gateway/ipn")
async def gateway_ipn(
    request: Request,
    db: Session = Depends(get_db),
    engine: ReconciliationEngine = Depends(get_reconciliation),
):
    """Server-to-server notification. Always answers 200 with a VNPay RspCode."""
    params = dict(request.query_params)
    try:
        outcome = engine.settle(db, params)
    except InvalidSignatureError:
        return IPN_INVALID_SIGNATURE
    except PaymentNotFoundError:
        return IPN_NOT_FOUND
    except Exception:
        logger.exception("ipn_failed", extra={"order_ref": params.get("vnp_TxnRef")})
        db.rollback()
        return IPN_UNKNOWN_ERROR

    if outcome.reason == AMOUNT_MISMATCH and not outcome.idempotent:
        return IPN_INVALID_AMOUNT
    if outcome.idempotent:
        return IPN_ALREADY_CONFIRMED
    return IPN_OK


# ---------------------------------------------------------------------
# READ
# ---------------------------------------------------------------------


@router.get("/history", response_model=PaymentHistoryResponse)
async def payment_history(
    status: Optional[PaymentStatus] = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    engine: ReconciliationEngine = Depends(get_reconciliation),
):
    require_action(principal, ACTION_PAY)
    rows, total = engine.payment_history(
        db,
        student_id=principal.user_id,
        status=status.value if status else None,
        page=page,
        limit=limit,
    )
    return {"payments": [_to_resp(p) for p in rows], "total": total, "page": page, "limit": limit}


# ---------------------------------------------------------------------
# ADMIN
# ---------------------------------------------------------------------


@router.get("", response_model=AdminPaymentListResponse)
async def list_payments(
    status: Optional[PaymentStatus] = Query(default=None),
    contractId: Optional[str] = Query(default=None),
    studentId: Optional[str] = Query(default=None),
    createdFrom: Optional[datetime] = Query(default=None),
    createdTo: Optional[datetime] = Query(default=None),
    search: Optional[str] = Query(default=None, max_length=100),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    engine: ReconciliationEngine = Depends(get_reconciliation),
):
    require_action(principal, ACTION_VIEW_ANY)
    rows, total = engine.list_payments(
        db,
        status=status.value if status else None,
        contract_id=_parse_id(contractId) if contractId else None,
        student_id=studentId,
        created_from=createdFrom,
        created_to=createdTo,
        search=search,
        page=page,
        limit=limit,
    )
    return {"payments": [_to_admin_resp(p) for p in rows], "total": total, "page": page, "limit": limit}


@router.get("/stats", response_model=PaymentStatsResponse)
async def payment_stats(
    createdFrom: Optional[datetime] = Query(default=None),
    createdTo: Optional[datetime] = Query(default=None),
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    engine: ReconciliationEngine = Depends(get_reconciliation),
):
    require_action(principal, ACTION_VIEW_ANY)
    stats = engine.payment_stats(db, created_from=createdFrom, created_to=createdTo)
    return {
        "byStatus": [
            {
                "status": s,
                "statusLabel": label(PAYMENT_STATUS_LABELS, s),
                "count": stats.count_by_status[s],
                "amount": stats.amount_by_status[s],
            }
            for s in sorted(stats.count_by_status)
        ],
        "totalCount": stats.total_count,
        "revenue": stats.revenue,
    }


@router.post("/sweep", response_model=SweepResponse)
async def run_sweep(
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    engine: ReconciliationEngine = Depends(get_reconciliation),
    lifecycle: ContractLifecycleManager = Depends(get_lifecycle),
    session_factory=Depends(get_session_factory),
):
    require_action(principal, ACTION_RUN_SWEEP)
    report = ExpirySweeper(session_factory=session_factory, engine=engine, lifecycle=lifecycle).run_once(db)
    return {
        "paymentsCancelled": report.payments_cancelled,
        "contractsExpired": report.contracts_expired,
        "installmentsOverdue": report.installments_overdue,
    }


@router.get("/{orderRef}", response_model=PaymentResponse)
async def get_payment(
    orderRef: str,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    engine: ReconciliationEngine = Depends(get_reconciliation),
):
    row = engine.get_payment(db, orderRef)
    if ACTION_VIEW_ANY not in allowed_actions(principal.role) and principal.user_id not in (
        row.student_id,
        row.tutor_id,
    ):
        raise PermissionDeniedError("You are not a party to this payment.")
    return _to_resp(row)


@router.post("/{orderRef}/reprocess", response_model=SettlementResponse)
async def reprocess_payment(
    orderRef: str,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    engine: ReconciliationEngine = Depends(get_reconciliation),
):
    require_action(principal, ACTION_REPROCESS_PAYMENT)
    outcome = engine.reprocess(db, orderRef)
    logger.info("payment_reprocessed", extra={"order_ref": orderRef, "by": principal.user_id})
    return _outcome_to_resp(outcome)
