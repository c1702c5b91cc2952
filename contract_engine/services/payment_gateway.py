#contract_engine/services/payment_gateway.py
from __future__ import annotations

import hashlib
import hmac
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional
from urllib.parse import quote_plus

from contract_engine.core.config import Settings, get_settings
from contract_engine.core.errors import InvalidSignatureError
from contract_engine.models.labels import GATEWAY_TRANSACTION_STATUS_LABELS, label

logger = logging.getLogger(__name__)

# VNPay timestamps are wall-clock GMT+7
VN_TZ = timezone(timedelta(hours=7))
VNP_DATE_FORMAT = "%Y%m%d%H%M%S"
SUCCESS_STATUS = "00"


@dataclass(frozen=True)
class GatewayResult:
    """
    Normalized, integrity-checked gateway callback.

    success is derived from the transaction status only; response_code is kept
    for the record and never decides the outcome.
    """

    order_ref: str
    success: bool
    amount: Optional[int]
    transaction_status: Optional[str]
    response_code: Optional[str] = None
    transaction_id: Optional[str] = None
    bank_code: Optional[str] = None
    card_type: Optional[str] = None
    paid_at: Optional[datetime] = None
    message: str = ""
    raw: Dict[str, Any] = field(default_factory=dict)


class PaymentGatewayAdapter:
    """Port for one external payment gateway."""

    name = "GATEWAY"

    def build_redirect_url(
        self,
        *,
        order_ref: str,
        amount: int,
        order_info: str,
        ip_address: str,
        created_at: datetime,
        expires_at: datetime,
        return_url: Optional[str] = None,
        locale: Optional[str] = None,
    ) -> str:
        raise NotImplementedError

    def verify(self, payload: Mapping[str, Any], *, skip_signature: bool = False) -> GatewayResult:
        """Raise InvalidSignatureError unless the payload is authentic (or skip_signature)."""
        raise NotImplementedError


def vnp_format_date(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(VN_TZ).strftime(VNP_DATE_FORMAT)


def vnp_parse_date(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    try:
        return datetime.strptime(raw, VNP_DATE_FORMAT).replace(tzinfo=VN_TZ).astimezone(timezone.utc)
    except ValueError:
        return None


def vnp_sign_data(params: Mapping[str, Any]) -> str:
    """Sorted, URL-encoded `k=v&k=v` string over every vnp_ field except the hash fields."""
    items = sorted(
        (k, v)
        for k, v in params.items()
        if k.startswith("vnp_") and k not in ("vnp_SecureHash", "vnp_SecureHashType") and v not in (None, "")
    )
    return "&".join(f"{k}={quote_plus(str(v))}" for k, v in items)


def vnp_hmac(secret: str, data: str) -> str:
    return hmac.new(secret.encode("utf-8"), data.encode("utf-8"), hashlib.sha512).hexdigest()


class VNPayGateway(PaymentGatewayAdapter):
    """
    VNPay redirect + callback adapter.

    Wire amounts are the base-unit amount x 100; vnp_SecureHash is
    HMAC-SHA512(hash_secret, sorted url-encoded params).
    """

    name = "VNPAY"

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def build_redirect_url(
        self,
        *,
        order_ref: str,
        amount: int,
        order_info: str,
        ip_address: str,
        created_at: datetime,
        expires_at: datetime,
        return_url: Optional[str] = None,
        locale: Optional[str] = None,
    ) -> str:
        params = {
            "vnp_Version": self.settings.vnpay_version,
            "vnp_Command": "pay",
            "vnp_TmnCode": self.settings.vnpay_tmn_code,
            "vnp_Amount": str(int(amount) * 100),
            "vnp_CurrCode": "VND",
            "vnp_TxnRef": order_ref,
            "vnp_OrderInfo": order_info,
            "vnp_OrderType": "other",
            "vnp_Locale": locale or self.settings.vnpay_locale,
            "vnp_ReturnUrl": return_url or self.settings.vnpay_return_url,
            "vnp_IpAddr": ip_address or "127.0.0.1",
            "vnp_CreateDate": vnp_format_date(created_at),
            "vnp_ExpireDate": vnp_format_date(expires_at),
        }
        query = vnp_sign_data(params)
        secure_hash = vnp_hmac(self.settings.vnpay_hash_secret, query)
        return f"{self.settings.vnpay_url}?{query}&vnp_SecureHash={secure_hash}"

    def _signature_ok(self, payload: Mapping[str, Any]) -> bool:
        received = str(payload.get("vnp_SecureHash") or "")
        if not received:
            return False
        if not self.settings.vnpay_hash_secret:
            # nothing signed with an empty key is trusted
            logger.error("gateway_secret_missing", extra={"gateway": self.name})
            return False
        expected = vnp_hmac(self.settings.vnpay_hash_secret, vnp_sign_data(payload))
        return hmac.compare_digest(expected.lower(), received.lower())

    def verify(self, payload: Mapping[str, Any], *, skip_signature: bool = False) -> GatewayResult:
        raw = {k: str(v) for k, v in payload.items()}
        order_ref = raw.get("vnp_TxnRef") or ""

        if not skip_signature and not self._signature_ok(raw):
            logger.warning("gateway_signature_invalid", extra={"gateway": self.name, "order_ref": order_ref})
            raise InvalidSignatureError("Invalid payment gateway signature.")
        if not order_ref:
            raise InvalidSignatureError("Malformed payment gateway callback.")

        amount: Optional[int] = None
        try:
            wire = int(raw.get("vnp_Amount", ""))
            if wire % 100 == 0:
                amount = wire // 100
        except ValueError:
            amount = None

        status = raw.get("vnp_TransactionStatus")
        return GatewayResult(
            order_ref=order_ref,
            success=status == SUCCESS_STATUS,
            amount=amount,
            transaction_status=status,
            response_code=raw.get("vnp_ResponseCode"),
            transaction_id=raw.get("vnp_TransactionNo"),
            bank_code=raw.get("vnp_BankCode"),
            card_type=raw.get("vnp_CardType"),
            paid_at=vnp_parse_date(raw.get("vnp_PayDate")),
            message=label(GATEWAY_TRANSACTION_STATUS_LABELS, status or ""),
            raw=raw,
        )
