#contract_engine/services/class_service.py
from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError as SAIntegrityError
from sqlalchemy.orm import Session

from contract_engine.core.clock import utcnow
from contract_engine.core.errors import ContractNotFoundError
from contract_engine.models.contract import Contract
from contract_engine.models.enums import (
    ClassPaymentStatus,
    InstallmentStatus,
    SessionPaymentStatus,
)
from contract_engine.models.learning_class import ClassSession, LearningClass
from contract_engine.models.payment_schedule import PaymentSchedule

logger = logging.getLogger(__name__)


class ClassActivationHook:
    """Receiver notified once a contract becomes ACTIVE."""

    def on_contract_activated(self, contract_id: uuid.UUID) -> None:
        raise NotImplementedError


class ClassService:
    """
    Minimal receiver side of contract activation: one LearningClass per
    contract with one ClassSession per contracted session, plus the payment
    status of each session.
    """

    def get_for_contract(self, db: Session, contract_id: uuid.UUID) -> Optional[LearningClass]:
        return db.execute(
            select(LearningClass).where(LearningClass.contract_id == contract_id)
        ).scalar_one_or_none()

    def ensure_for_contract(self, db: Session, *, contract_id: uuid.UUID) -> LearningClass:
        """Idempotent: a second call for the same contract returns the existing class."""
        existing = self.get_for_contract(db, contract_id)
        if existing:
            return existing

        contract = db.get(Contract, contract_id)
        if contract is None:
            raise ContractNotFoundError("Contract not found.")

        row = LearningClass(
            contract_id=contract.id,
            student_id=contract.student_id,
            tutor_id=contract.tutor_id,
            title=contract.title,
            total_sessions=contract.total_sessions,
            price_per_session=contract.price_per_session,
            total_amount=contract.total_amount,
            paid_amount=0,
            payment_status=ClassPaymentStatus.UNPAID.value,
        )
        for n in range(1, contract.total_sessions + 1):
            row.sessions.append(ClassSession(session_number=n))

        db.add(row)
        try:
            db.commit()
        except SAIntegrityError:
            # lost a race with a concurrent activation; unique contract_id kept one row
            db.rollback()
            return self.get_for_contract(db, contract_id)

        logger.info("class_created", extra={"contract_id": str(contract_id), "class_id": str(row.id)})
        self.sync_payment_status(db, contract_id=contract_id)
        return row

    def sync_payment_status(self, db: Session, *, contract_id: uuid.UUID, now: Optional[datetime] = None) -> Optional[LearningClass]:
        """
        Recompute session and class payment status from the schedule.
        Derived state only, so repeating it converges after a partial failure.
        """
        klass = self.get_for_contract(db, contract_id)
        if klass is None:
            return None
        schedule = db.execute(
            select(PaymentSchedule).where(PaymentSchedule.contract_id == contract_id)
        ).scalar_one_or_none()
        if schedule is None:
            return klass

        now = now or utcnow()
        paid_sessions = {}
        for inst in schedule.installments:
            if inst.status == InstallmentStatus.PAID.value:
                for n in inst.session_numbers or []:
                    paid_sessions[n] = inst.payment_id

        for s in klass.sessions:
            if s.session_number in paid_sessions and s.payment_status != SessionPaymentStatus.PAID.value:
                s.payment_status = SessionPaymentStatus.PAID.value
                s.payment_id = paid_sessions[s.session_number]
                s.paid_at = now

        klass.paid_amount = schedule.paid_amount
        if schedule.paid_amount <= 0:
            klass.payment_status = ClassPaymentStatus.UNPAID.value
        elif schedule.paid_amount >= schedule.total_amount:
            klass.payment_status = ClassPaymentStatus.COMPLETED.value
        else:
            klass.payment_status = ClassPaymentStatus.PARTIAL.value

        db.commit()
        return klass


class SessionClassActivationHook(ClassActivationHook):
    """Creates the class in its own session (runs after the signing transaction)."""

    def __init__(self, session_factory: Callable[[], Session], service: Optional[ClassService] = None):
        self.session_factory = session_factory
        self.service = service or ClassService()

    def on_contract_activated(self, contract_id: uuid.UUID) -> None:
        db = self.session_factory()
        try:
            self.service.ensure_for_contract(db, contract_id=contract_id)
        finally:
            db.close()


class BackgroundClassActivationHook(ClassActivationHook):
    """Defers class creation to FastAPI BackgroundTasks, after the response is sent."""

    def __init__(self, background_tasks, inner: ClassActivationHook):
        self.background_tasks = background_tasks
        self.inner = inner

    def on_contract_activated(self, contract_id: uuid.UUID) -> None:
        self.background_tasks.add_task(self._run, contract_id)

    def _run(self, contract_id: uuid.UUID) -> None:
        try:
            self.inner.on_contract_activated(contract_id)
        except Exception:
            logger.exception("class_activation_failed", extra={"contract_id": str(contract_id)})
