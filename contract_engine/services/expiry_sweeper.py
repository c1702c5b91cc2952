#contract_engine/services/expiry_sweeper.py
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import select
from sqlalchemy.orm import Session

from contract_engine.core.clock import utcnow
from contract_engine.core.config import Settings, get_settings
from contract_engine.models.contract import Contract
from contract_engine.models.enums import PRE_ACTIVE_STATUSES
from contract_engine.services.contract_lifecycle import ContractLifecycleManager
from contract_engine.services.reconciliation_service import ReconciliationEngine

logger = logging.getLogger(__name__)

JOB_ID = "contract_engine_expiry_sweep"


@dataclass(frozen=True)
class SweepReport:
    payments_cancelled: int
    contracts_expired: int
    installments_overdue: int


class ExpirySweeper:
    """
    Periodic cleanup:
      - PENDING payments past expires_at -> CANCELLED (+ installment rollback)
      - unsigned contracts past expires_at -> EXPIRED
      - UNPAID installments past due (+ grace) -> OVERDUE

    Every transition goes through the engine / lifecycle manager, so a
    sweep racing a live request resolves through the same conditional updates.
    """

    def __init__(
        self,
        *,
        session_factory: Callable[[], Session],
        engine: Optional[ReconciliationEngine] = None,
        lifecycle: Optional[ContractLifecycleManager] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.clock = clock
        self.engine = engine or ReconciliationEngine(settings=self.settings, clock=clock)
        self.lifecycle = lifecycle or ContractLifecycleManager(settings=self.settings, clock=clock)
        self.scheduler: Optional[AsyncIOScheduler] = None

    # ─────────────────────────────────────────────
    # SWEEPS
    # ─────────────────────────────────────────────

    def sweep_payments(self, db: Session, *, now: Optional[datetime] = None, contract_id: Optional[uuid.UUID] = None) -> int:
        return self.engine.expire_pending_payments(db, now=now or self.clock(), contract_id=contract_id)

    def sweep_contracts(self, db: Session, *, now: Optional[datetime] = None) -> int:
        now = now or self.clock()
        stale = (
            db.execute(
                select(Contract).where(
                    Contract.status.in_(list(PRE_ACTIVE_STATUSES)),
                    Contract.is_locked.is_(False),
                    Contract.expires_at < now,
                )
            )
            .scalars()
            .all()
        )
        expired = 0
        for contract in stale:
            if self.lifecycle.expire_if_due(db, contract, now):
                expired += 1
        return expired

    def run_once(self, db: Optional[Session] = None) -> SweepReport:
        own_session = db is None
        db = db or self.session_factory()
        try:
            now = self.clock()
            report = SweepReport(
                payments_cancelled=self.sweep_payments(db, now=now),
                contracts_expired=self.sweep_contracts(db, now=now),
                installments_overdue=self.engine.mark_overdue(db, now=now),
            )
        finally:
            if own_session:
                db.close()

        if report.payments_cancelled or report.contracts_expired or report.installments_overdue:
            logger.info(
                "sweep_completed",
                extra={
                    "payments_cancelled": report.payments_cancelled,
                    "contracts_expired": report.contracts_expired,
                    "installments_overdue": report.installments_overdue,
                },
            )
        return report

    def _job(self) -> None:
        # a failed sweep must not kill the scheduler; the next tick retries
        try:
            self.run_once()
        except Exception:
            logger.exception("sweep_failed")

    # ─────────────────────────────────────────────
    # SCHEDULER
    # ─────────────────────────────────────────────

    def start(self) -> None:
        if self.scheduler is not None:
            return
        self.scheduler = AsyncIOScheduler(
            jobstores={"default": MemoryJobStore()},
            executors={"default": AsyncIOExecutor()},
            job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": 60},
            timezone="UTC",
        )
        self.scheduler.add_job(
            self._job,
            trigger=IntervalTrigger(seconds=self.settings.sweeper_interval_seconds),
            id=JOB_ID,
            name="Expire payments and contracts",
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info("sweeper_started", extra={"interval_seconds": self.settings.sweeper_interval_seconds})

    def shutdown(self) -> None:
        if self.scheduler is None:
            return
        self.scheduler.shutdown(wait=False)
        self.scheduler = None
        logger.info("sweeper_stopped")
