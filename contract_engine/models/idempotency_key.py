from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict

from sqlalchemy import String, DateTime, UniqueConstraint, Uuid, func, text
from sqlalchemy.orm import Mapped, mapped_column

from contract_engine.core.clock import utcnow
from contract_engine.db.base import Base, JSONType


class IdempotencyKeyRecord(Base):
    """
    Stores the response of a POST made with an Idempotency-Key header so a
    retried request returns the same result (same order_ref for payments).

    Scope: (principal_id, endpoint_key, idem_key) must be unique.
    """
    __tablename__ = "idempotency_key_records"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    principal_id: Mapped[str] = mapped_column(String(128), nullable=False)

    endpoint_key: Mapped[str] = mapped_column(String(64), nullable=False)  # e.g. "POST:/v1/payments/initiate"
    idem_key: Mapped[str] = mapped_column(String(128), nullable=False)

    request_hash: Mapped[str] = mapped_column(String(128), nullable=False)

    response_status: Mapped[str] = mapped_column(String(16), nullable=False, server_default=text("'200'"))
    response_json: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("principal_id", "endpoint_key", "idem_key", name="uq_idem_scope"),
    )
