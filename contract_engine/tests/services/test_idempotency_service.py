import pytest

from contract_engine.core.errors import StateConflictError
from contract_engine.services.idempotency_service import IdempotencyService

ENDPOINT = "POST:/api/v1/payments/initiate"


def test_first_request_reserves_then_replays(db):
    svc = IdempotencyService()
    body = {"contractId": "c-1", "installmentSequences": [1]}

    replay, status, req_hash = svc.reserve_or_replay(
        db, principal_id="student-1", endpoint_key=ENDPOINT, idem_key="k1", request_payload=body
    )
    assert (replay, status) == (None, None)

    assert svc.store_response(
        db,
        principal_id="student-1",
        endpoint_key=ENDPOINT,
        idem_key="k1",
        request_hash=req_hash,
        response_json={"orderRef": "ORDA"},
        response_status=201,
    )

    replay, status, _ = svc.reserve_or_replay(
        db, principal_id="student-1", endpoint_key=ENDPOINT, idem_key="k1", request_payload=dict(body)
    )
    assert (replay, status) == ({"orderRef": "ORDA"}, 201)

    # second store keeps the first response
    assert not svc.store_response(
        db,
        principal_id="student-1",
        endpoint_key=ENDPOINT,
        idem_key="k1",
        request_hash=req_hash,
        response_json={"orderRef": "ORDB"},
        response_status=201,
    )


def test_key_reuse_with_another_body_conflicts(db):
    svc = IdempotencyService()
    _, _, req_hash = svc.reserve_or_replay(
        db, principal_id="student-1", endpoint_key=ENDPOINT, idem_key="k1", request_payload={"a": 1}
    )
    svc.store_response(
        db,
        principal_id="student-1",
        endpoint_key=ENDPOINT,
        idem_key="k1",
        request_hash=req_hash,
        response_json={},
        response_status=201,
    )

    with pytest.raises(StateConflictError):
        svc.reserve_or_replay(
            db, principal_id="student-1", endpoint_key=ENDPOINT, idem_key="k1", request_payload={"a": 2}
        )

    # keys are scoped per principal
    replay, _, _ = svc.reserve_or_replay(
        db, principal_id="student-2", endpoint_key=ENDPOINT, idem_key="k1", request_payload={"a": 2}
    )
    assert replay is None
