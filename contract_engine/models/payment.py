#contract_engine/models/payment.py
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    String,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from contract_engine.core.clock import utcnow
from contract_engine.db.base import Base, JSONType
from contract_engine.models.enums import PaymentStatus


class Payment(Base):
    """
    One attempt to settle one or more installments through the gateway.

    amount is fixed at creation (sum of the selected installments) and is
    never recomputed. Status moves PENDING -> {COMPLETED | FAILED | CANCELLED}
    and each move is a conditional UPDATE on the expected prior status.
    """

    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    order_ref: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)

    contract_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("contracts.id", ondelete="CASCADE"), nullable=False
    )
    schedule_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("payment_schedules.id", ondelete="CASCADE"), nullable=False
    )
    student_id: Mapped[str] = mapped_column(String(64), nullable=False)
    tutor_id: Mapped[str] = mapped_column(String(64), nullable=False)

    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    installment_sequences: Mapped[List[int]] = mapped_column(JSONType, nullable=False)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default=PaymentStatus.PENDING.value)

    # Gateway response metadata
    gateway: Mapped[str] = mapped_column(String(16), nullable=False, default="VNPAY")
    gateway_transaction_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    gateway_response_code: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)
    gateway_transaction_status: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)
    gateway_bank_code: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    gateway_card_type: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    gateway_raw_response: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    description: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_payments_contract_status", "contract_id", "status"),
        Index("ix_payments_student_status", "student_id", "status"),
        Index("ix_payments_status_expires", "status", "expires_at"),
        CheckConstraint("amount > 0", name="ck_payments_amount_positive"),
    )
