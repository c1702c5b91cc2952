#contract_engine/models/contract.py
from __future__ import annotations

import uuid
from datetime import date, datetime
from typing import Any, Dict, Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    false,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from contract_engine.core.clock import utcnow
from contract_engine.db.base import Base, JSONType
from contract_engine.models.enums import ContractStatus, PaymentMethod


class Contract(Base):
    """
    Binding agreement between one tutor and one student.

    Immutability rule:
      - While is_locked is false the tutor may amend commercial terms
        (contract_version + 1, signatures cleared).
      - Once is_locked is true no commercial-term column is ever written again.
      - snapshot_json / contract_hash are written exactly once, at lock time.
    """

    __tablename__ = "contracts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # Parties / origin
    contact_request_id: Mapped[str] = mapped_column(String(64), nullable=False)
    student_id: Mapped[str] = mapped_column(String(64), nullable=False)
    tutor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    subject: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    contract_code: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Commercial terms
    total_sessions: Mapped[int] = mapped_column(Integer, nullable=False)
    price_per_session: Mapped[int] = mapped_column(BigInteger, nullable=False)
    total_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)  # derived, never set directly
    session_duration: Mapped[int] = mapped_column(Integer, nullable=False)  # minutes
    learning_mode: Mapped[str] = mapped_column(String(16), nullable=False)

    schedule_json: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    expected_end_date: Mapped[date] = mapped_column(Date, nullable=False)

    location_json: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    online_info_json: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)

    # Payment terms
    payment_method: Mapped[str] = mapped_column(
        String(16), nullable=False, default=PaymentMethod.FULL.value
    )
    installments: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    down_payment: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    terms_json: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)

    # Status
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=ContractStatus.PENDING_STUDENT_APPROVAL.value
    )
    student_response_json: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)

    # Signatures
    student_signed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    tutor_signed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    student_sign_ip: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    tutor_sign_ip: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    contract_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default=text("1"))

    # Integrity
    is_signed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    is_locked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    locked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    contract_hash: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    snapshot_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Lifecycle timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    activated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    rejected_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    cancel_reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    __table_args__ = (
        Index("ix_contracts_student_status", "student_id", "status"),
        Index("ix_contracts_tutor_status", "tutor_id", "status"),
        Index("ix_contracts_contact_request", "contact_request_id"),
        Index("ix_contracts_status_expires", "status", "expires_at"),
        CheckConstraint("total_sessions >= 1 AND total_sessions <= 100", name="ck_contracts_total_sessions"),
        CheckConstraint("total_amount = total_sessions * price_per_session", name="ck_contracts_total_amount"),
    )

    def signed_at_for(self, role: str) -> Optional[datetime]:
        return self.student_signed_at if role == "student" else self.tutor_signed_at
