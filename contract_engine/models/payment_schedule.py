#contract_engine/models/payment_schedule.py
from __future__ import annotations

import uuid
from datetime import date, datetime
from typing import List, Optional

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from contract_engine.core.clock import utcnow
from contract_engine.db.base import Base, JSONType
from contract_engine.models.enums import InstallmentStatus, ScheduleStatus


class PaymentSchedule(Base):
    """
    One schedule per contract, generated once at full signature.
    paid_amount only grows; remaining_amount = total_amount - paid_amount.
    """

    __tablename__ = "payment_schedules"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    contract_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("contracts.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    student_id: Mapped[str] = mapped_column(String(64), nullable=False)
    tutor_id: Mapped[str] = mapped_column(String(64), nullable=False)

    payment_method: Mapped[str] = mapped_column(String(16), nullable=False)
    total_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    paid_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    remaining_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default=ScheduleStatus.ACTIVE.value)

    first_due_date: Mapped[date] = mapped_column(Date, nullable=False)
    last_due_date: Mapped[date] = mapped_column(Date, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    installments: Mapped[List["Installment"]] = relationship(
        back_populates="schedule",
        cascade="all, delete-orphan",
        order_by="Installment.sequence",
    )

    __table_args__ = (
        Index("ix_payment_schedules_student", "student_id"),
        CheckConstraint("paid_amount >= 0", name="ck_payment_schedules_paid_nonneg"),
    )


class Installment(Base):
    """
    One payable slice of a contract total.
    sequence 0 is the down payment; session_numbers lists the class sessions
    the installment pays for (empty for the down payment).
    """

    __tablename__ = "installments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    schedule_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("payment_schedules.id", ondelete="CASCADE"), nullable=False
    )
    contract_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)

    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    session_numbers: Mapped[List[int]] = mapped_column(JSONType, nullable=False, default=list)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default=InstallmentStatus.UNPAID.value)

    payment_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    transaction_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    schedule: Mapped[PaymentSchedule] = relationship(back_populates="installments")

    __table_args__ = (
        UniqueConstraint("schedule_id", "sequence", name="uq_installments_schedule_sequence"),
        Index("ix_installments_contract_status", "contract_id", "status"),
        CheckConstraint("sequence >= 0", name="ck_installments_sequence_nonneg"),
        CheckConstraint("amount >= 0", name="ck_installments_amount_nonneg"),
    )
