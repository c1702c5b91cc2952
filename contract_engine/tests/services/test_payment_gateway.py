from datetime import datetime, timezone
from urllib.parse import parse_qs, urlsplit

import pytest

from contract_engine.core.config import get_settings
from contract_engine.core.errors import InvalidSignatureError
from contract_engine.services.payment_gateway import (
    VNPayGateway,
    vnp_format_date,
    vnp_hmac,
    vnp_parse_date,
    vnp_sign_data,
)


@pytest.fixture
def gateway():
    return VNPayGateway(get_settings())


def test_redirect_url_is_signed_and_uses_wire_amount(gateway):
    created = datetime(2026, 10, 18, 9, 0, tzinfo=timezone.utc)
    url = gateway.build_redirect_url(
        order_ref="ORD0123456789ABCDEF0123",
        amount=875_000,
        order_info="Payment for contract CT-20261018-AB12",
        ip_address="10.0.0.1",
        created_at=created,
        expires_at=created.replace(minute=5),
    )
    parts = urlsplit(url)
    params = {k: v[0] for k, v in parse_qs(parts.query).items()}

    assert params["vnp_Amount"] == "87500000"
    assert params["vnp_TxnRef"] == "ORD0123456789ABCDEF0123"
    assert params["vnp_CurrCode"] == "VND"
    # GMT+7 wall clock
    assert params["vnp_CreateDate"] == "20261018160000"
    assert params["vnp_ExpireDate"] == "20261018160500"

    received = params.pop("vnp_SecureHash")
    assert received == vnp_hmac(get_settings().vnpay_hash_secret, vnp_sign_data(params))


def test_sign_data_is_sorted_and_skips_hash_fields():
    data = vnp_sign_data(
        {
            "vnp_TxnRef": "A",
            "vnp_Amount": "100",
            "vnp_SecureHash": "x",
            "vnp_SecureHashType": "SHA512",
            "vnp_Empty": "",
            "other": "ignored",
            "vnp_OrderInfo": "pay now",
        }
    )
    assert data == "vnp_Amount=100&vnp_OrderInfo=pay+now&vnp_TxnRef=A"


def test_date_round_trip():
    dt = datetime(2026, 10, 18, 23, 30, 5, tzinfo=timezone.utc)
    assert vnp_parse_date(vnp_format_date(dt)) == dt
    assert vnp_parse_date("garbage") is None


def test_verify_accepts_authentic_callback(gateway, callback):
    result = gateway.verify(callback("ORDX", 875_000))

    assert result.success is True
    assert result.amount == 875_000
    assert result.transaction_id == "14220001"
    assert result.bank_code == "NCB"
    assert result.paid_at == datetime(2026, 10, 18, 9, 1, tzinfo=timezone.utc)


def test_transaction_status_alone_decides_success(gateway, callback):
    payload = callback("ORDX", 875_000, status="02", vnp_ResponseCode="00")
    assert gateway.verify(payload).success is False

    payload = callback("ORDX", 875_000, status="00", vnp_ResponseCode="24")
    assert gateway.verify(payload).success is True


def test_tampered_callback_is_rejected(gateway, callback):
    payload = callback("ORDX", 875_000)
    payload["vnp_Amount"] = "100"
    with pytest.raises(InvalidSignatureError):
        gateway.verify(payload)


def test_wrong_secret_and_missing_hash_are_rejected(gateway, callback):
    with pytest.raises(InvalidSignatureError):
        gateway.verify(callback("ORDX", 875_000, secret="not-the-secret"))

    payload = callback("ORDX", 875_000)
    del payload["vnp_SecureHash"]
    with pytest.raises(InvalidSignatureError):
        gateway.verify(payload)


def test_skip_signature_for_stored_responses(gateway, callback):
    payload = callback("ORDX", 875_000)
    payload["vnp_SecureHash"] = "stale"
    assert gateway.verify(payload, skip_signature=True).success is True


def test_fractional_wire_amount_never_matches(gateway, callback):
    payload = callback("ORDX", 1)
    payload["vnp_Amount"] = "87500050"
    payload["vnp_SecureHash"] = vnp_hmac(get_settings().vnpay_hash_secret, vnp_sign_data(payload))
    assert gateway.verify(payload).amount is None


def test_unconfigured_secret_rejects_every_callback(callback):
    unconfigured = VNPayGateway(get_settings().model_copy(update={"vnpay_hash_secret": ""}))
    payload = callback("ORDX", 875_000)
    # a forger who knows the key is empty signs with the empty key
    payload["vnp_SecureHash"] = vnp_hmac("", vnp_sign_data(payload))

    with pytest.raises(InvalidSignatureError):
        unconfigured.verify(payload)
