from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError as SAIntegrityError
from sqlalchemy.orm import Session

from contract_engine.core.errors import StateConflictError
from contract_engine.core.hashing import content_hash
from contract_engine.models.idempotency_key import IdempotencyKeyRecord

logger = logging.getLogger(__name__)


class IdempotencyService:
    """
    Replays stored responses for POSTs retried with the same Idempotency-Key.
    A key is scoped to (principal, endpoint) and bound to the request body hash.
    """

    def get_existing(
        self,
        db: Session,
        *,
        principal_id: str,
        endpoint_key: str,
        idem_key: str,
    ) -> Optional[IdempotencyKeyRecord]:
        return db.execute(
            select(IdempotencyKeyRecord).where(
                IdempotencyKeyRecord.principal_id == principal_id,
                IdempotencyKeyRecord.endpoint_key == endpoint_key,
                IdempotencyKeyRecord.idem_key == idem_key,
            )
        ).scalar_one_or_none()

    def reserve_or_replay(
        self,
        db: Session,
        *,
        principal_id: str,
        endpoint_key: str,
        idem_key: str,
        request_payload: Dict[str, Any],
    ) -> Tuple[Optional[Dict[str, Any]], Optional[int], str]:
        """
        Returns (replay_json, replay_status_code, request_hash).

        Same key + same body replays the stored response; same key with a
        different body raises StateConflictError.
        """
        req_hash = content_hash(request_payload)
        existing = self.get_existing(db, principal_id=principal_id, endpoint_key=endpoint_key, idem_key=idem_key)
        if existing is None:
            return None, None, req_hash

        if existing.request_hash != req_hash:
            raise StateConflictError(
                "Idempotency-Key reuse with different payload is not allowed.",
                code="IDEMPOTENCY_KEY_REUSED",
            )
        logger.info("idempotent_replay", extra={"endpoint": endpoint_key, "principal_id": principal_id})
        return existing.response_json, int(existing.response_status), req_hash

    def store_response(
        self,
        db: Session,
        *,
        principal_id: str,
        endpoint_key: str,
        idem_key: str,
        request_hash: str,
        response_json: Dict[str, Any],
        response_status: int,
    ) -> bool:
        """Persist the first response for this key. Returns False if another request stored one first."""
        if self.get_existing(db, principal_id=principal_id, endpoint_key=endpoint_key, idem_key=idem_key):
            return False

        db.add(
            IdempotencyKeyRecord(
                principal_id=principal_id,
                endpoint_key=endpoint_key,
                idem_key=idem_key,
                request_hash=request_hash,
                response_status=str(response_status),
                response_json=response_json,
            )
        )
        try:
            db.commit()
        except SAIntegrityError:
            # concurrent retry with the same key; uq_idem_scope kept the first
            db.rollback()
            logger.warning("idempotency_store_lost_race", extra={"endpoint": endpoint_key})
            return False
        return True
