from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Index, String, Text, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from contract_engine.core.clock import utcnow
from contract_engine.db.base import Base


class ContractSignature(Base):
    """
    Legal-proof record of one verified e-signature.
    Append-only: one row per (contract, role, contract_version).
    """

    __tablename__ = "contract_signatures"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    contract_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("contracts.id", ondelete="CASCADE"), nullable=False
    )
    contract_version: Mapped[int] = mapped_column(nullable=False)

    signer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    signer_role: Mapped[str] = mapped_column(String(16), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False)

    # sha256 of the verified code; the verified-signature token
    otp_hash: Mapped[str] = mapped_column(String(128), nullable=False)

    ip_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    consent_text: Mapped[str] = mapped_column(Text, nullable=False)

    signed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )

    __table_args__ = (
        Index("ix_contract_signatures_contract_role", "contract_id", "signer_role"),
        Index("ix_contract_signatures_signer", "signer_id", "signed_at"),
    )
