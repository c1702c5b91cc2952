#contract_engine/services/reconciliation_service.py
from __future__ import annotations

import logging
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from contract_engine.core.clock import as_utc, utcnow
from contract_engine.core.config import Settings, get_settings
from contract_engine.core.errors import (
    AmountMismatchError,
    ContractNotFoundError,
    InvalidSelectionError,
    PaymentNotFoundError,
    PaymentStateError,
    PermissionDeniedError,
    ScheduleNotFoundError,
    StateConflictError,
)
from contract_engine.models.contract import Contract
from contract_engine.models.enums import (
    ContractStatus,
    InstallmentStatus,
    PAYABLE_INSTALLMENT_STATUSES,
    PaymentStatus,
    ScheduleStatus,
)
from contract_engine.models.payment import Payment
from contract_engine.models.payment_schedule import Installment, PaymentSchedule
from contract_engine.services import ledger_service as ledger_events
from contract_engine.services.class_service import ClassService
from contract_engine.services.ledger_service import LedgerService
from contract_engine.services.notifier import Notifier, safe_notify
from contract_engine.services.payment_gateway import GatewayResult, PaymentGatewayAdapter, VNPayGateway

logger = logging.getLogger(__name__)

AMOUNT_MISMATCH = AmountMismatchError.code
LATE_SUCCESS = "LATE_SUCCESS"
EXPIRED = "EXPIRED"


def new_order_ref() -> str:
    return "ORD" + secrets.token_hex(10).upper()


@dataclass(frozen=True)
class PaymentIntent:
    payment: Payment
    redirect_url: str


@dataclass(frozen=True)
class SettlementOutcome:
    """What a callback did. Carries no gateway internals beyond the order reference."""

    success: bool
    order_ref: str
    status: str
    message: str
    idempotent: bool = False
    reason: Optional[str] = None


@dataclass(frozen=True)
class PayableInstallments:
    contract_id: uuid.UUID
    installments: List[Installment] = field(default_factory=list)

    @property
    def total_amount(self) -> int:
        return sum(i.amount for i in self.installments)


@dataclass(frozen=True)
class PaymentStats:
    count_by_status: Dict[str, int] = field(default_factory=dict)
    amount_by_status: Dict[str, int] = field(default_factory=dict)

    @property
    def total_count(self) -> int:
        return sum(self.count_by_status.values())

    @property
    def revenue(self) -> int:
        return self.amount_by_status.get(PaymentStatus.COMPLETED.value, 0)


class ReconciliationEngine:
    """
    Payment intents and gateway callback reconciliation.

    Installment: UNPAID/OVERDUE -> PENDING -> PAID, or PENDING -> UNPAID (rollback)
    Payment:     PENDING -> COMPLETED | FAILED | CANCELLED (one-way)

    Every status change is a conditional UPDATE on the expected prior status;
    the rowcount decides which of two concurrent writers wins.
    """

    def __init__(
        self,
        *,
        gateway: Optional[PaymentGatewayAdapter] = None,
        ledger: Optional[LedgerService] = None,
        class_service: Optional[ClassService] = None,
        notifier: Optional[Notifier] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings or get_settings()
        self.gateway = gateway or VNPayGateway(self.settings)
        self.ledger = ledger or LedgerService()
        self.class_service = class_service or ClassService()
        self.notifier = notifier or Notifier()
        self.clock = clock

    # ─────────────────────────────────────────────
    # LOOKUPS
    # ─────────────────────────────────────────────

    def _contract_for_student(self, db: Session, contract_id: uuid.UUID, student_id: str) -> Contract:
        contract = db.get(Contract, contract_id)
        if contract is None:
            raise ContractNotFoundError("Contract not found.")
        if contract.student_id != student_id:
            raise PermissionDeniedError("Only the student of this contract can pay for it.")
        return contract

    def _schedule(self, db: Session, contract_id: uuid.UUID) -> PaymentSchedule:
        schedule = db.execute(
            select(PaymentSchedule).where(PaymentSchedule.contract_id == contract_id)
        ).scalar_one_or_none()
        if schedule is None:
            raise ScheduleNotFoundError("Payment schedule not found.")
        return schedule

    def _payment_by_ref(self, db: Session, order_ref: str) -> Optional[Payment]:
        return db.execute(select(Payment).where(Payment.order_ref == order_ref)).scalar_one_or_none()

    def get_payment(self, db: Session, order_ref: str) -> Payment:
        payment = self._payment_by_ref(db, order_ref)
        if payment is None:
            raise PaymentNotFoundError("Payment not found.")
        return payment

    # ─────────────────────────────────────────────
    # INSTALLMENT TRANSITIONS
    # ─────────────────────────────────────────────

    def _rollback_installments(self, db: Session, payment: Payment) -> int:
        """PENDING -> UNPAID for the installments this payment claimed. PAID is never touched."""
        return db.execute(
            update(Installment)
            .where(
                Installment.schedule_id == payment.schedule_id,
                Installment.sequence.in_(list(payment.installment_sequences)),
                Installment.status == InstallmentStatus.PENDING.value,
                Installment.payment_id == payment.id,
            )
            .values(status=InstallmentStatus.UNPAID.value, payment_id=None)
            .execution_options(synchronize_session=False)
        ).rowcount

    def _apply_success_to_schedule(self, db: Session, payment: Payment, transaction_id: Optional[str]) -> PaymentSchedule:
        """
        Mark the payment's installments PAID and recompute schedule totals.
        Safe to repeat: already-PAID installments are skipped and totals are derived.
        """
        paid_at = as_utc(payment.paid_at) or self.clock()
        db.execute(
            update(Installment)
            .where(
                Installment.schedule_id == payment.schedule_id,
                Installment.sequence.in_(list(payment.installment_sequences)),
                Installment.status.notin_([InstallmentStatus.PAID.value, InstallmentStatus.CANCELLED.value]),
            )
            .values(
                status=InstallmentStatus.PAID.value,
                payment_id=payment.id,
                paid_at=paid_at,
                transaction_id=transaction_id,
            )
            .execution_options(synchronize_session=False)
        )

        schedule = db.get(PaymentSchedule, payment.schedule_id)
        db.refresh(schedule)

        paid_amount = db.execute(
            select(func.coalesce(func.sum(Installment.amount), 0)).where(
                Installment.schedule_id == schedule.id,
                Installment.status == InstallmentStatus.PAID.value,
            )
        ).scalar_one()
        open_count = db.execute(
            select(func.count(Installment.id)).where(
                Installment.schedule_id == schedule.id,
                Installment.status.notin_([InstallmentStatus.PAID.value, InstallmentStatus.CANCELLED.value]),
            )
        ).scalar_one()

        # paid_amount only grows
        schedule.paid_amount = max(int(schedule.paid_amount or 0), int(paid_amount))
        schedule.remaining_amount = schedule.total_amount - schedule.paid_amount
        if open_count == 0 and schedule.status != ScheduleStatus.COMPLETED.value:
            schedule.status = ScheduleStatus.COMPLETED.value
            schedule.completed_at = self.clock()
        db.commit()
        return schedule

    def _sync_class(self, db: Session, contract_id: uuid.UUID) -> None:
        try:
            self.class_service.sync_payment_status(db, contract_id=contract_id)
        except Exception:
            db.rollback()
            logger.exception("class_payment_sync_failed", extra={"contract_id": str(contract_id)})

    def _close_payment(
        self,
        db: Session,
        payment: Payment,
        *,
        to_status: str,
        result: Optional[GatewayResult] = None,
        failure_reason: Optional[str] = None,
        from_statuses: Sequence[str] = (PaymentStatus.PENDING.value,),
    ) -> bool:
        now = self.clock()
        values: dict = {"status": to_status, "closed_at": now}
        if failure_reason:
            values["failure_reason"] = failure_reason
        if to_status == PaymentStatus.COMPLETED.value:
            values["paid_at"] = (result.paid_at if result and result.paid_at else now)
        if result is not None:
            values.update(
                gateway_transaction_id=result.transaction_id,
                gateway_response_code=result.response_code,
                gateway_transaction_status=result.transaction_status,
                gateway_bank_code=result.bank_code,
                gateway_card_type=result.card_type,
                gateway_raw_response=result.raw,
            )
        won = db.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status.in_(list(from_statuses)))
            .values(**values)
            .execution_options(synchronize_session=False)
        ).rowcount
        return won == 1

    # ─────────────────────────────────────────────
    # INITIATE
    # ─────────────────────────────────────────────

    def initiate(
        self,
        db: Session,
        *,
        contract_id: uuid.UUID,
        student_id: str,
        sequences: Sequence[int],
        ip_address: Optional[str] = None,
        return_url: Optional[str] = None,
        locale: Optional[str] = None,
    ) -> PaymentIntent:
        contract = self._contract_for_student(db, contract_id, student_id)
        if contract.status != ContractStatus.ACTIVE.value:
            raise StateConflictError(f"Payments are only accepted for ACTIVE contracts (status {contract.status}).")

        wanted = [int(s) for s in sequences]
        if not wanted:
            raise InvalidSelectionError("Select at least one installment to pay.")
        if len(set(wanted)) != len(wanted):
            raise InvalidSelectionError("Each installment can only be selected once.")

        # free installments held by abandoned checkouts first
        self.expire_pending_payments(db, contract_id=contract_id)

        schedule = self._schedule(db, contract_id)
        rows = (
            db.execute(
                select(Installment)
                .where(Installment.schedule_id == schedule.id, Installment.sequence.in_(wanted))
                .order_by(Installment.sequence)
            )
            .scalars()
            .all()
        )
        if len(rows) != len(wanted):
            raise InvalidSelectionError("Unknown installment selected.")
        blocked = [r.sequence for r in rows if r.status not in PAYABLE_INSTALLMENT_STATUSES]
        if blocked:
            raise InvalidSelectionError(f"Installments {blocked} are not payable right now.")

        amount = sum(r.amount for r in rows)
        if amount <= 0:
            raise InvalidSelectionError("Selected installments have nothing to pay.")

        now = self.clock()
        payment = Payment(
            id=uuid.uuid4(),
            order_ref=new_order_ref(),
            contract_id=contract.id,
            schedule_id=schedule.id,
            student_id=contract.student_id,
            tutor_id=contract.tutor_id,
            amount=amount,
            installment_sequences=sorted(wanted),
            status=PaymentStatus.PENDING.value,
            gateway=self.gateway.name,
            description=f"Payment for contract {contract.contract_code}",
            ip_address=ip_address,
            created_at=now,
            expires_at=now + timedelta(minutes=self.settings.payment_expiry_minutes),
        )
        db.add(payment)
        db.flush()

        for r in rows:
            claimed = db.execute(
                update(Installment)
                .where(Installment.id == r.id, Installment.status == r.status)
                .values(status=InstallmentStatus.PENDING.value, payment_id=payment.id)
                .execution_options(synchronize_session=False)
            ).rowcount
            if claimed != 1:
                db.rollback()
                raise InvalidSelectionError(f"Installment {r.sequence} was just selected by another payment.")

        self.ledger.append_entry(
            db,
            contract_id=contract.id,
            entry_type=ledger_events.PAYMENT_INITIATED,
            actor_id=student_id,
            payload={"order_ref": payment.order_ref, "amount": amount, "sequences": sorted(wanted)},
        )
        db.commit()
        db.refresh(payment)

        logger.info(
            "payment_initiated",
            extra={"order_ref": payment.order_ref, "contract_id": str(contract.id), "amount": amount},
        )

        redirect_url = self.gateway.build_redirect_url(
            order_ref=payment.order_ref,
            amount=amount,
            order_info=f"Payment {payment.order_ref} for contract {contract.contract_code}",
            ip_address=ip_address or "127.0.0.1",
            created_at=now,
            expires_at=as_utc(payment.expires_at),
            return_url=return_url,
            locale=locale,
        )
        return PaymentIntent(payment=payment, redirect_url=redirect_url)

    # ─────────────────────────────────────────────
    # SETTLE
    # ─────────────────────────────────────────────

    def _closed_outcome(self, db: Session, payment: Payment, result: GatewayResult) -> SettlementOutcome:
        """Outcome for a callback that arrives after the payment already reached a terminal state."""
        if payment.status == PaymentStatus.COMPLETED.value:
            # converge schedule and class if an earlier run stopped half-way
            self._apply_success_to_schedule(db, payment, payment.gateway_transaction_id)
            self._sync_class(db, payment.contract_id)
            return SettlementOutcome(
                success=True,
                order_ref=payment.order_ref,
                status=payment.status,
                message="Payment already confirmed.",
                idempotent=True,
            )

        if result.success:
            # money captured after we gave up on the payment; never auto-applied
            logger.error(
                "late_success_on_closed_payment",
                extra={"order_ref": payment.order_ref, "status": payment.status},
            )
            return SettlementOutcome(
                success=False,
                order_ref=payment.order_ref,
                status=payment.status,
                message="Payment was already closed; it has been flagged for review.",
                idempotent=True,
                reason=LATE_SUCCESS,
            )

        return SettlementOutcome(
            success=False,
            order_ref=payment.order_ref,
            status=payment.status,
            message="Payment already marked as failed.",
            idempotent=True,
            reason=payment.failure_reason,
        )

    def settle(self, db: Session, payload: Mapping[str, Any], *, skip_signature: bool = False) -> SettlementOutcome:
        """
        Apply one gateway callback exactly once. Safe under duplicated and
        concurrent delivery of the same callback.

        Raises InvalidSignatureError (nothing written) or PaymentNotFoundError.
        """
        result = self.gateway.verify(payload, skip_signature=skip_signature)

        payment = self._payment_by_ref(db, result.order_ref)
        if payment is None:
            logger.warning("settle_unknown_order", extra={"order_ref": result.order_ref})
            raise PaymentNotFoundError("Payment not found.")

        if payment.status != PaymentStatus.PENDING.value:
            return self._closed_outcome(db, payment, result)

        # amount must match exactly
        if result.amount != payment.amount:
            won = self._close_payment(
                db,
                payment,
                to_status=PaymentStatus.FAILED.value,
                result=result,
                failure_reason=AMOUNT_MISMATCH,
            )
            if not won:
                db.rollback()
                db.refresh(payment)
                return self._closed_outcome(db, payment, result)
            self._rollback_installments(db, payment)
            self.ledger.append_entry(
                db,
                contract_id=payment.contract_id,
                entry_type=ledger_events.PAYMENT_FAILED,
                payload={
                    "order_ref": payment.order_ref,
                    "reason": AMOUNT_MISMATCH,
                    "expected": payment.amount,
                    "received": result.amount,
                },
            )
            db.commit()
            logger.error(
                "settle_amount_mismatch",
                extra={"order_ref": payment.order_ref, "expected": payment.amount, "received": result.amount},
            )
            return SettlementOutcome(
                success=False,
                order_ref=payment.order_ref,
                status=PaymentStatus.FAILED.value,
                message="Payment amount did not match; no installment was charged.",
                reason=AMOUNT_MISMATCH,
            )

        if result.success:
            return self._settle_success(db, payment, result)
        return self._settle_failure(db, payment, result)

    def _settle_success(self, db: Session, payment: Payment, result: GatewayResult) -> SettlementOutcome:
        won = self._close_payment(db, payment, to_status=PaymentStatus.COMPLETED.value, result=result)
        if not won:
            db.rollback()
            db.refresh(payment)
            return self._closed_outcome(db, payment, result)

        self.ledger.append_entry(
            db,
            contract_id=payment.contract_id,
            entry_type=ledger_events.PAYMENT_COMPLETED,
            payload={
                "order_ref": payment.order_ref,
                "amount": payment.amount,
                "sequences": list(payment.installment_sequences),
                "transaction_id": result.transaction_id,
            },
        )
        db.commit()
        db.refresh(payment)

        schedule = self._apply_success_to_schedule(db, payment, result.transaction_id)
        self._sync_class(db, payment.contract_id)

        logger.info(
            "payment_completed",
            extra={
                "order_ref": payment.order_ref,
                "amount": payment.amount,
                "schedule_status": schedule.status,
            },
        )
        for uid in (payment.student_id, payment.tutor_id):
            safe_notify(
                self.notifier,
                uid,
                "PAYMENT_SUCCESS",
                {"order_ref": payment.order_ref, "amount": payment.amount, "contract_id": str(payment.contract_id)},
            )
        return SettlementOutcome(
            success=True,
            order_ref=payment.order_ref,
            status=PaymentStatus.COMPLETED.value,
            message=result.message or "Payment successful.",
        )

    def _settle_failure(self, db: Session, payment: Payment, result: GatewayResult) -> SettlementOutcome:
        reason = f"GATEWAY_{result.transaction_status or 'UNKNOWN'}"
        won = self._close_payment(
            db, payment, to_status=PaymentStatus.FAILED.value, result=result, failure_reason=reason
        )
        if not won:
            db.rollback()
            db.refresh(payment)
            return self._closed_outcome(db, payment, result)

        released = self._rollback_installments(db, payment)
        self.ledger.append_entry(
            db,
            contract_id=payment.contract_id,
            entry_type=ledger_events.PAYMENT_FAILED,
            payload={"order_ref": payment.order_ref, "reason": reason, "released": released},
        )
        db.commit()

        logger.info("payment_failed", extra={"order_ref": payment.order_ref, "reason": reason})
        safe_notify(
            self.notifier,
            payment.student_id,
            "PAYMENT_FAILED",
            {"order_ref": payment.order_ref, "contract_id": str(payment.contract_id)},
        )
        return SettlementOutcome(
            success=False,
            order_ref=payment.order_ref,
            status=PaymentStatus.FAILED.value,
            message=result.message or "Payment failed.",
            reason=reason,
        )

    def reprocess(self, db: Session, order_ref: str) -> SettlementOutcome:
        """Re-run settle on the stored gateway response, without the signature check."""
        payment = self.get_payment(db, order_ref)
        if not payment.gateway_raw_response:
            raise PaymentStateError("No stored gateway response for this payment.")
        logger.info("payment_reprocess", extra={"order_ref": order_ref, "status": payment.status})
        return self.settle(db, dict(payment.gateway_raw_response), skip_signature=True)

    # ─────────────────────────────────────────────
    # EXPIRY / OVERDUE
    # ─────────────────────────────────────────────

    def expire_pending_payments(
        self,
        db: Session,
        *,
        now: Optional[datetime] = None,
        contract_id: Optional[uuid.UUID] = None,
    ) -> int:
        """PENDING payments past expires_at -> CANCELLED, releasing their installments."""
        now = now or self.clock()
        cond = [Payment.status == PaymentStatus.PENDING.value, Payment.expires_at < now]
        if contract_id is not None:
            cond.append(Payment.contract_id == contract_id)

        expired = db.execute(select(Payment).where(*cond)).scalars().all()
        cancelled = 0
        for payment in expired:
            if not self._close_payment(
                db, payment, to_status=PaymentStatus.CANCELLED.value, failure_reason=EXPIRED
            ):
                db.rollback()
                continue
            self._rollback_installments(db, payment)
            self.ledger.append_entry(
                db,
                contract_id=payment.contract_id,
                entry_type=ledger_events.PAYMENT_CANCELLED,
                payload={"order_ref": payment.order_ref, "reason": EXPIRED},
            )
            db.commit()
            cancelled += 1
            logger.info("payment_expired", extra={"order_ref": payment.order_ref})
        return cancelled

    def mark_overdue(self, db: Session, *, now: Optional[datetime] = None) -> int:
        """UNPAID installments past due date + grace period -> OVERDUE."""
        now = now or self.clock()
        cutoff = now.date() - timedelta(days=self.settings.overdue_grace_days)
        active_schedules = select(PaymentSchedule.id).where(PaymentSchedule.status == ScheduleStatus.ACTIVE.value)
        count = db.execute(
            update(Installment)
            .where(
                Installment.status == InstallmentStatus.UNPAID.value,
                Installment.due_date < cutoff,
                Installment.schedule_id.in_(active_schedules),
            )
            .values(status=InstallmentStatus.OVERDUE.value)
            .execution_options(synchronize_session=False)
        ).rowcount
        db.commit()
        if count:
            logger.info("installments_overdue", extra={"count": count})
        return count

    # ─────────────────────────────────────────────
    # QUERIES
    # ─────────────────────────────────────────────

    def payable_installments(self, db: Session, *, contract_id: uuid.UUID, student_id: str) -> PayableInstallments:
        self._contract_for_student(db, contract_id, student_id)
        self.expire_pending_payments(db, contract_id=contract_id)
        schedule = self._schedule(db, contract_id)
        rows = (
            db.execute(
                select(Installment)
                .where(
                    Installment.schedule_id == schedule.id,
                    Installment.status.in_(list(PAYABLE_INSTALLMENT_STATUSES)),
                )
                .order_by(Installment.sequence)
            )
            .scalars()
            .all()
        )
        return PayableInstallments(contract_id=contract_id, installments=list(rows))

    def pending_payment(self, db: Session, *, contract_id: uuid.UUID, student_id: str) -> Optional[Payment]:
        self._contract_for_student(db, contract_id, student_id)
        return db.execute(
            select(Payment)
            .where(
                Payment.contract_id == contract_id,
                Payment.status == PaymentStatus.PENDING.value,
                Payment.expires_at > self.clock(),
            )
            .order_by(Payment.created_at.desc())
            .limit(1)
        ).scalar_one_or_none()

    def payment_history(
        self,
        db: Session,
        *,
        student_id: str,
        status: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[Payment], int]:
        return self.list_payments(db, student_id=student_id, status=status, page=page, limit=limit)

    @staticmethod
    def _payment_filters(
        *,
        status: Optional[str] = None,
        contract_id: Optional[uuid.UUID] = None,
        student_id: Optional[str] = None,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
        search: Optional[str] = None,
    ) -> list:
        cond = []
        if status:
            cond.append(Payment.status == status)
        if contract_id is not None:
            cond.append(Payment.contract_id == contract_id)
        if student_id:
            cond.append(Payment.student_id == student_id)
        if created_from is not None:
            cond.append(Payment.created_at >= as_utc(created_from))
        if created_to is not None:
            cond.append(Payment.created_at <= as_utc(created_to))
        if search and search.strip():
            pattern = f"%{search.strip()}%"
            cond.append(or_(Payment.order_ref.ilike(pattern), Payment.gateway_transaction_id.ilike(pattern)))
        return cond

    def list_payments(
        self,
        db: Session,
        *,
        status: Optional[str] = None,
        contract_id: Optional[uuid.UUID] = None,
        student_id: Optional[str] = None,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[Payment], int]:
        """Newest first. search matches the order reference or the gateway transaction id."""
        cond = self._payment_filters(
            status=status,
            contract_id=contract_id,
            student_id=student_id,
            created_from=created_from,
            created_to=created_to,
            search=search,
        )
        total = db.execute(select(func.count()).select_from(Payment).where(*cond)).scalar_one()
        rows = (
            db.execute(
                select(Payment)
                .where(*cond)
                .order_by(Payment.created_at.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
            .scalars()
            .all()
        )
        return list(rows), int(total)

    def payment_stats(
        self,
        db: Session,
        *,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
    ) -> PaymentStats:
        cond = self._payment_filters(created_from=created_from, created_to=created_to)
        rows = db.execute(
            select(Payment.status, func.count(Payment.id), func.coalesce(func.sum(Payment.amount), 0))
            .where(*cond)
            .group_by(Payment.status)
        ).all()
        return PaymentStats(
            count_by_status={status: int(count) for status, count, _ in rows},
            amount_by_status={status: int(amount) for status, _, amount in rows},
        )
