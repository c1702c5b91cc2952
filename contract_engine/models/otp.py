from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Index, String, Uuid, false, func
from sqlalchemy.orm import Mapped, mapped_column

from contract_engine.core.clock import utcnow
from contract_engine.db.base import Base


class OTPRecord(Base):
    """
    Short-lived signing code bound to (email, contract_id, signer_role, purpose).

    Only a passlib hash of the code is stored. is_used flips false -> true
    exactly once, through a conditional UPDATE.
    """

    __tablename__ = "otp_records"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    email: Mapped[str] = mapped_column(String(255), nullable=False)
    contract_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    signer_role: Mapped[str] = mapped_column(String(16), nullable=False)
    purpose: Mapped[str] = mapped_column(String(32), nullable=False)

    code_hash: Mapped[str] = mapped_column(String(255), nullable=False)

    is_used: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_otp_binding", "email", "contract_id", "signer_role", "purpose"),
        Index("ix_otp_rate_window", "email", "contract_id", "created_at"),
    )
