#contract_engine/services/ledger_service.py
from __future__ import annotations

import uuid
from typing import Dict, Any, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from contract_engine.core.clock import utcnow
from contract_engine.core.hashing import hash_chain
from contract_engine.models.contract_ledger import ContractLedgerEntry


# Entry types
CONTRACT_CREATED = "CONTRACT_CREATED"
CONTRACT_SUBMITTED = "CONTRACT_SUBMITTED"
CONTRACT_AMENDED = "CONTRACT_AMENDED"
CONTRACT_RESPONDED = "CONTRACT_RESPONDED"
CONTRACT_SIGNED = "CONTRACT_SIGNED"
CONTRACT_ACTIVATED = "CONTRACT_ACTIVATED"
CONTRACT_CANCELLED = "CONTRACT_CANCELLED"
CONTRACT_EXPIRED = "CONTRACT_EXPIRED"
CONTRACT_COMPLETED = "CONTRACT_COMPLETED"
PAYMENT_INITIATED = "PAYMENT_INITIATED"
PAYMENT_COMPLETED = "PAYMENT_COMPLETED"
PAYMENT_FAILED = "PAYMENT_FAILED"
PAYMENT_CANCELLED = "PAYMENT_CANCELLED"


class LedgerService:
    """
    Append-only contract audit trail.
    One hash chain per contract; entries are never updated or deleted.

    append_entry does NOT commit: the entry joins the caller's transaction so
    a state change and its audit record land together.
    """

    GENESIS_HASH = "0" * 64

    # ─────────────────────────────────────────────
    # INTERNAL HELPERS
    # ─────────────────────────────────────────────

    def _get_last_entry(self, db: Session, *, contract_id: uuid.UUID) -> Optional[ContractLedgerEntry]:
        return db.execute(
            select(ContractLedgerEntry)
            .where(ContractLedgerEntry.contract_id == contract_id)
            .order_by(ContractLedgerEntry.seq.desc())
            .limit(1)
        ).scalar_one_or_none()

    # ─────────────────────────────────────────────
    # PUBLIC API
    # ─────────────────────────────────────────────

    def append_entry(
        self,
        db: Session,
        *,
        contract_id: uuid.UUID,
        entry_type: str,
        payload: Dict[str, Any],
        actor_id: Optional[str] = None,
    ) -> ContractLedgerEntry:
        # pending rows of this transaction must be visible to _get_last_entry
        db.flush()
        last = self._get_last_entry(db, contract_id=contract_id)

        prev_hash = last.entry_hash if last else self.GENESIS_HASH
        seq = 1 if not last else last.seq + 1

        entry_payload = {
            "contract_id": str(contract_id),
            "seq": seq,
            "entry_type": entry_type,
            "actor_id": actor_id,
            "payload": payload,
            "created_at": utcnow().isoformat(),
        }

        row = ContractLedgerEntry(
            contract_id=contract_id,
            seq=seq,
            entry_type=entry_type,
            actor_id=actor_id,
            prev_hash=prev_hash,
            entry_hash=hash_chain(prev_hash, entry_payload),
            payload_json=entry_payload,
        )
        db.add(row)
        db.flush()
        return row

    # ─────────────────────────────────────────────
    # READ-ONLY HELPERS (AUDIT)
    # ─────────────────────────────────────────────

    def list_entries(self, db: Session, *, contract_id: uuid.UUID) -> list[ContractLedgerEntry]:
        return (
            db.execute(
                select(ContractLedgerEntry)
                .where(ContractLedgerEntry.contract_id == contract_id)
                .order_by(ContractLedgerEntry.seq.asc())
            )
            .scalars()
            .all()
        )

    def verify_chain(self, db: Session, *, contract_id: uuid.UUID) -> bool:
        """Recompute every link of the contract's chain."""
        prev_hash = self.GENESIS_HASH
        for e in self.list_entries(db, contract_id=contract_id):
            if e.prev_hash != prev_hash:
                return False
            if e.entry_hash != hash_chain(prev_hash, e.payload_json):
                return False
            prev_hash = e.entry_hash
        return True
