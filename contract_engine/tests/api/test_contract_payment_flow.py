from datetime import date, timedelta

import pytest
from fastapi.testclient import TestClient

from contract_engine.core.deps import get_email_sender
from contract_engine.core.errors import StateConflictError
from contract_engine.core.security import create_access_token
from contract_engine.main import create_app
from contract_engine.services.contract_lifecycle import ContractLifecycleManager

API = "/api/v1"
TUTOR = ("tutor-1", "TUTOR", "tutor@example.com", "Minh Tran")
STUDENT = ("student-1", "STUDENT", "student@example.com", "An Nguyen")
OUTSIDER = ("student-9", "STUDENT", "outsider@example.com", "Someone Else")
ADMIN = ("admin-1", "ADMIN", "admin@example.com", "Ops")


def auth(user, **extra):
    user_id, role, email, name = user
    token = create_access_token(user_id, {"role": role, "email": email, "display_name": name})
    return {"Authorization": f"Bearer {token}", **extra}


def contract_body(contact_request_id="cr-api-1", **overrides):
    body = {
        "contactRequestId": contact_request_id,
        "studentId": "student-1",
        "title": "IELTS speaking",
        "subject": "ENGLISH",
        "totalSessions": 20,
        "pricePerSession": 200_000,
        "sessionDuration": 90,
        "learningMode": "ONLINE",
        "schedule": {"daysOfWeek": [2, 4], "startTime": "18:00", "endTime": "19:30"},
        "startDate": (date.today() + timedelta(days=14)).isoformat(),
        "onlineInfo": {"platform": "GOOGLE_MEET", "meetingLink": "https://meet.example/abc"},
        "paymentMethod": "FULL",
    }
    body.update(overrides)
    return body


@pytest.fixture
def client(db, email_sender):
    app = create_app()
    app.dependency_overrides[get_email_sender] = lambda: email_sender
    with TestClient(app) as c:
        yield c


def create_contract(client, **overrides):
    r = client.post(f"{API}/contracts", json=contract_body(**overrides), headers=auth(TUTOR))
    assert r.status_code == 201, r.text
    return r.json()


def sign_as(client, email_sender, contract_id, user):
    r = client.post(f"{API}/contracts/{contract_id}/signing/otp", headers=auth(user))
    assert r.status_code == 200, r.text
    assert r.json()["sentTo"] == user[2]

    r = client.post(
        f"{API}/contracts/{contract_id}/signing/verify",
        json={"code": email_sender.last_code, "consentText": "I agree to the terms above."},
        headers=auth(user, **{"User-Agent": "pytest-browser"}),
    )
    assert r.status_code == 200, r.text
    return r.json()


def test_full_contract_and_payment_flow(client, email_sender, callback):
    created = create_contract(client)
    cid = created["contractId"]
    assert created["status"] == "PENDING_STUDENT_APPROVAL"
    assert created["contractCode"].startswith("CT-")

    first = sign_as(client, email_sender, cid, STUDENT)
    assert first["isLocked"] is False
    second = sign_as(client, email_sender, cid, TUTOR)
    assert second["status"] == "ACTIVE"
    assert second["isLocked"] is True
    assert len(second["contractHash"]) == 64

    r = client.get(f"{API}/contracts/{cid}/payment-schedule", headers=auth(STUDENT))
    assert r.status_code == 200
    schedule = r.json()
    assert schedule["totalAmount"] == 4_000_000
    assert [(i["sequence"], i["amount"]) for i in schedule["installments"]] == [(1, 4_000_000)]

    # payment intents are idempotent per key
    body = {"contractId": cid, "installmentSequences": [1]}
    r1 = client.post(f"{API}/payments/initiate", json=body, headers=auth(STUDENT, **{"Idempotency-Key": "pay-1"}))
    assert r1.status_code == 201, r1.text
    r2 = client.post(f"{API}/payments/initiate", json=body, headers=auth(STUDENT, **{"Idempotency-Key": "pay-1"}))
    assert r2.status_code == 201
    order_ref = r1.json()["orderRef"]
    assert r2.json()["orderRef"] == order_ref
    assert "vnp_SecureHash=" in r1.json()["paymentUrl"]

    ipn = f"{API}/payments/gateway/ipn"
    assert client.get(ipn, params=callback(order_ref, 4_000_000, secret="forged")).json()["RspCode"] == "97"
    assert client.get(ipn, params=callback("ORD00000000000000000000", 1)).json()["RspCode"] == "01"
    assert client.get(ipn, params=callback(order_ref, 4_000_000)).json()["RspCode"] == "00"
    assert client.get(ipn, params=callback(order_ref, 4_000_000)).json()["RspCode"] == "02"

    r = client.get(f"{API}/payments/{order_ref}", headers=auth(STUDENT))
    assert r.status_code == 200
    assert r.json()["status"] == "COMPLETED"
    assert r.json()["transactionId"] == "14220001"

    r = client.get(f"{API}/payments/history", headers=auth(STUDENT))
    assert r.json()["total"] == 1

    r = client.get(f"{API}/contracts/{cid}/audit-trail", headers=auth(TUTOR))
    trail = r.json()
    assert trail["chainValid"] is True
    assert trail["snapshotValid"] is True
    assert {s["role"] for s in trail["signatures"]} == {"student", "tutor"}

    r = client.post(f"{API}/contracts/{cid}/complete", headers=auth(TUTOR))
    assert r.status_code == 200, r.text
    assert r.json()["status"] == "COMPLETED"


def test_amount_mismatch_is_acknowledged_with_04(client, email_sender, callback):
    cid = create_contract(client)["contractId"]
    sign_as(client, email_sender, cid, STUDENT)
    sign_as(client, email_sender, cid, TUTOR)

    r = client.post(
        f"{API}/payments/initiate",
        json={"contractId": cid, "installmentSequences": [1]},
        headers=auth(STUDENT, **{"Idempotency-Key": "pay-2"}),
    )
    order_ref = r.json()["orderRef"]

    r = client.get(f"{API}/payments/gateway/ipn", params=callback(order_ref, 100))
    assert r.status_code == 200
    assert r.json()["RspCode"] == "04"

    r = client.get(f"{API}/payments/{order_ref}", headers=auth(STUDENT))
    assert r.json()["status"] == "FAILED"


def test_outsiders_get_403_with_error_code(client):
    cid = create_contract(client)["contractId"]

    r = client.get(f"{API}/contracts/{cid}", headers=auth(OUTSIDER))
    assert r.status_code == 403
    assert r.json()["code"] == "FORBIDDEN"
    assert "detail" in r.json()

    # admins can read any contract
    assert client.get(f"{API}/contracts/{cid}", headers=auth(ADMIN)).status_code == 200


def test_students_cannot_create_contracts(client):
    r = client.post(f"{API}/contracts", json=contract_body(), headers=auth(STUDENT))
    assert r.status_code == 403


def test_otp_rate_limit_returns_429_with_retry_after(client):
    cid = create_contract(client)["contractId"]
    for _ in range(3):
        assert client.post(f"{API}/contracts/{cid}/signing/otp", headers=auth(STUDENT)).status_code == 200

    r = client.post(f"{API}/contracts/{cid}/signing/otp", headers=auth(STUDENT))
    assert r.status_code == 429
    assert r.json()["code"] == "RATE_LIMITED"
    assert int(r.headers["Retry-After"]) > 0


def test_wrong_code_does_not_sign(client, email_sender):
    cid = create_contract(client)["contractId"]
    client.post(f"{API}/contracts/{cid}/signing/otp", headers=auth(STUDENT))
    wrong = "000000" if email_sender.last_code != "000000" else "111111"

    r = client.post(f"{API}/contracts/{cid}/signing/verify", json={"code": wrong}, headers=auth(STUDENT))
    assert r.status_code == 400
    assert r.json()["code"] == "INVALID_OTP"

    r = client.get(f"{API}/contracts/{cid}", headers=auth(STUDENT))
    assert r.json()["status"] == "PENDING_STUDENT_APPROVAL"


def test_invalid_terms_are_rejected(client):
    r = client.post(
        f"{API}/contracts",
        json=contract_body(totalSessions=0),
        headers=auth(TUTOR),
    )
    assert r.status_code == 400
    assert r.json()["code"] == "INVALID_TERMS"


def test_health_reports_request_id(client):
    r = client.get(f"{API}/health", headers={"X-Request-Id": "req-123"})
    assert r.status_code == 200
    assert r.json()["request_id"] == "req-123"
    assert r.headers["X-Request-Id"] == "req-123"


def test_failed_signature_write_keeps_the_code_usable(client, email_sender, monkeypatch):
    cid = create_contract(client)["contractId"]
    client.post(f"{API}/contracts/{cid}/signing/otp", headers=auth(STUDENT))
    code = email_sender.last_code

    real_apply = ContractLifecycleManager.apply_signature
    failures = []

    def flaky_apply(self, db, **kwargs):
        if not failures:
            failures.append(kwargs["contract_id"])
            raise StateConflictError("Contract row is busy, retry.")
        return real_apply(self, db, **kwargs)

    monkeypatch.setattr(ContractLifecycleManager, "apply_signature", flaky_apply)
    verify_url = f"{API}/contracts/{cid}/signing/verify"

    r = client.post(verify_url, json={"code": code}, headers=auth(STUDENT))
    assert r.status_code == 409
    assert client.get(f"{API}/contracts/{cid}", headers=auth(STUDENT)).json()["status"] == "PENDING_STUDENT_APPROVAL"

    # same code, no new issuance
    r = client.post(verify_url, json={"code": code}, headers=auth(STUDENT))
    assert r.status_code == 200, r.text
    assert r.json()["status"] == "PENDING_TUTOR_APPROVAL"
    assert len(email_sender.sent) == 1

    r = client.post(verify_url, json={"code": code}, headers=auth(STUDENT))
    assert r.status_code == 400


def test_admin_lists_and_summarises_payments(client, email_sender, callback):
    cid = create_contract(client)["contractId"]
    sign_as(client, email_sender, cid, STUDENT)
    sign_as(client, email_sender, cid, TUTOR)

    def initiate(key):
        r = client.post(
            f"{API}/payments/initiate",
            json={"contractId": cid, "installmentSequences": [1]},
            headers=auth(STUDENT, **{"Idempotency-Key": key}),
        )
        assert r.status_code == 201, r.text
        return r.json()["orderRef"]

    failed = initiate("pay-admin-1")
    client.get(f"{API}/payments/gateway/ipn", params=callback(failed, 4_000_000, status="02"))
    paid = initiate("pay-admin-2")
    client.get(f"{API}/payments/gateway/ipn", params=callback(paid, 4_000_000))

    r = client.get(f"{API}/payments", params={"contractId": cid}, headers=auth(ADMIN))
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["total"] == 2
    assert {p["orderRef"] for p in body["payments"]} == {failed, paid}
    assert all(p["studentId"] == "student-1" for p in body["payments"])

    r = client.get(f"{API}/payments", params={"status": "FAILED"}, headers=auth(ADMIN))
    assert [p["orderRef"] for p in r.json()["payments"]] == [failed]
    assert r.json()["payments"][0]["failureReason"] == "GATEWAY_02"

    r = client.get(f"{API}/payments", params={"search": paid[-8:].lower()}, headers=auth(ADMIN))
    assert [p["orderRef"] for p in r.json()["payments"]] == [paid]

    r = client.get(f"{API}/payments/stats", headers=auth(ADMIN))
    assert r.status_code == 200
    stats = r.json()
    assert stats["totalCount"] == 2
    assert stats["revenue"] == 4_000_000
    assert {s["status"]: s["count"] for s in stats["byStatus"]} == {"COMPLETED": 1, "FAILED": 1}

    # the admin surface is admin only
    assert client.get(f"{API}/payments", headers=auth(STUDENT)).status_code == 403
    assert client.get(f"{API}/payments/stats", headers=auth(TUTOR)).status_code == 403
