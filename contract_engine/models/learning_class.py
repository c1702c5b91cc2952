# contract_engine/models/learning_class.py
from __future__ import annotations

import uuid
from datetime import datetime
from typing import List, Optional

from sqlalchemy import BigInteger, DateTime, ForeignKey, Integer, String, UniqueConstraint, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from contract_engine.core.clock import utcnow
from contract_engine.db.base import Base
from contract_engine.models.enums import ClassPaymentStatus, SessionPaymentStatus


class LearningClass(Base):
    """Class created when a contract becomes ACTIVE. One per contract."""

    __tablename__ = "learning_classes"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    contract_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("contracts.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    student_id: Mapped[str] = mapped_column(String(64), nullable=False)
    tutor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)

    total_sessions: Mapped[int] = mapped_column(Integer, nullable=False)
    price_per_session: Mapped[int] = mapped_column(BigInteger, nullable=False)
    total_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    paid_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    payment_status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=ClassPaymentStatus.UNPAID.value
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )

    sessions: Mapped[List["ClassSession"]] = relationship(
        back_populates="learning_class",
        cascade="all, delete-orphan",
        order_by="ClassSession.session_number",
    )


class ClassSession(Base):
    __tablename__ = "class_sessions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    class_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("learning_classes.id", ondelete="CASCADE"), nullable=False
    )
    session_number: Mapped[int] = mapped_column(Integer, nullable=False)
    payment_status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=SessionPaymentStatus.UNPAID.value
    )
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    payment_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)

    learning_class: Mapped[LearningClass] = relationship(back_populates="sessions")

    __table_args__ = (
        UniqueConstraint("class_id", "session_number", name="uq_class_sessions_number"),
    )
