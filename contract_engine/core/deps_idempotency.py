from __future__ import annotations

import json

from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session

from contract_engine.core.auth_deps import get_current_principal
from contract_engine.db.session import get_db
from contract_engine.policies.rbac import Principal
from contract_engine.services.idempotency_service import IdempotencyService


async def require_idempotency_key(request: Request) -> str:
    key = request.headers.get("Idempotency-Key")
    if not key:
        raise HTTPException(status_code=400, detail="Missing Idempotency-Key header.")
    if len(key) > 128:
        raise HTTPException(status_code=400, detail="Idempotency-Key too long.")
    return key


async def idempotency_guard(
    request: Request,
    idem_key: str = Depends(require_idempotency_key),
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    """
    Use on POST endpoints that create something (payment intents).

    Stores in request.state:
      - idempotency_endpoint_key / idempotency_key / idempotency_request_hash
      - idempotency_replay_json / idempotency_replay_status (set on replay)
    """
    endpoint_key = f"{request.method}:{request.url.path}"

    # Read JSON body once; starlette caches it for the route
    try:
        payload = await request.json()
    except json.JSONDecodeError:
        payload = {}

    replay_json, replay_status, req_hash = IdempotencyService().reserve_or_replay(
        db,
        principal_id=principal.user_id,
        endpoint_key=endpoint_key,
        idem_key=idem_key,
        request_payload=payload if isinstance(payload, dict) else {"_": payload},
    )

    request.state.idempotency_endpoint_key = endpoint_key
    request.state.idempotency_key = idem_key
    request.state.idempotency_request_hash = req_hash
    request.state.idempotency_replay_json = replay_json
    request.state.idempotency_replay_status = replay_status

    return idem_key
