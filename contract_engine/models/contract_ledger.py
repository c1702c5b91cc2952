# contract_engine/models/contract_ledger.py
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import (
    String,
    DateTime,
    Integer,
    Index,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from contract_engine.core.clock import utcnow
from contract_engine.db.base import Base, JSONType


class ContractLedgerEntry(Base):
    """
    Append-only hash-chained audit entries, one chain per contract.

    entry_hash = SHA256(prev_hash + canonical(payload_json))
    """

    __tablename__ = "contract_ledger_entries"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # no FK: the chain outlives hard deletes of the contract row
    contract_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)

    seq: Mapped[int] = mapped_column(Integer, nullable=False)  # monotonic per contract
    entry_type: Mapped[str] = mapped_column(String(64), nullable=False)
    actor_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    prev_hash: Mapped[str] = mapped_column(String(128), nullable=False)
    entry_hash: Mapped[str] = mapped_column(String(128), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )
    payload_json: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)

    __table_args__ = (
        UniqueConstraint("contract_id", "seq", name="uq_contract_ledger_seq"),
        Index("ix_contract_ledger_type", "entry_type"),
    )
