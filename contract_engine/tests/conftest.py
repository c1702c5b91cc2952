import os

# settings and the engine are built at import time; configure them first
os.environ["DATABASE_URL"] = os.environ.get("TEST_DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret")
os.environ["SWEEPER_ENABLED"] = "false"
os.environ["BREVO_API_KEY"] = ""
os.environ.setdefault("VNPAY_TMN_CODE", "TESTTMN1")
os.environ.setdefault("VNPAY_HASH_SECRET", "test-vnpay-secret")

from datetime import date, datetime, timedelta, timezone  # noqa: E402

import pytest  # noqa: E402

# FORCE model registration
import contract_engine.models  # noqa: E402,F401

from contract_engine.core.config import get_settings  # noqa: E402
from contract_engine.db.base import Base  # noqa: E402
from contract_engine.db.session import SessionLocal, engine  # noqa: E402
from contract_engine.services.class_service import SessionClassActivationHook  # noqa: E402
from contract_engine.services.contract_lifecycle import ContractLifecycleManager  # noqa: E402
from contract_engine.services.email_service import EmailSender  # noqa: E402
from contract_engine.services.notifier import Notifier  # noqa: E402
from contract_engine.services.payment_gateway import VNPayGateway, vnp_format_date, vnp_hmac, vnp_sign_data  # noqa: E402
from contract_engine.services.reconciliation_service import ReconciliationEngine  # noqa: E402
from contract_engine.services.signature_otp_service import SignatureOTPService  # noqa: E402

settings = get_settings()

TUTOR_ID = "tutor-1"
STUDENT_ID = "student-1"
TUTOR_EMAIL = "tutor@example.com"
STUDENT_EMAIL = "student@example.com"


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class CapturingEmailSender(EmailSender):
    def __init__(self):
        self.sent = []
        self.fail_with = None

    def send_otp_email(self, *, to_address, code, recipient_name, contract_code, role) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append({"to": to_address, "code": code, "role": role, "contract_code": contract_code})

    @property
    def last_code(self) -> str:
        return self.sent[-1]["code"]


class RecordingNotifier(Notifier):
    def __init__(self):
        self.events = []

    def notify(self, user_id, event, payload=None) -> None:
        self.events.append((user_id, event, payload or {}))

    def events_for(self, user_id):
        return [e for (uid, e, _) in self.events if uid == user_id]


def make_terms(**overrides):
    terms = {
        "title": "Grade 10 mathematics",
        "description": "Algebra and geometry revision",
        "subject": "MATH",
        "total_sessions": 20,
        "price_per_session": 200_000,
        "session_duration": 90,
        "learning_mode": "ONLINE",
        "schedule": {"days_of_week": [1, 3], "start_time": "18:00", "end_time": "19:30"},
        "start_date": date(2026, 11, 2),
        "online_info": {"platform": "ZOOM", "meeting_link": "https://zoom.example/j/1"},
        "payment_method": "FULL",
    }
    terms.update(overrides)
    return terms


def signed_callback(order_ref: str, amount: int, *, status: str = "00", secret=None, **extra) -> dict:
    """A gateway callback the way VNPay sends it: wire amount x100, HMAC-SHA512 signed."""
    params = {
        "vnp_TmnCode": settings.vnpay_tmn_code,
        "vnp_TxnRef": order_ref,
        "vnp_Amount": str(amount * 100),
        "vnp_TransactionStatus": status,
        "vnp_ResponseCode": status,
        "vnp_TransactionNo": "14220001",
        "vnp_BankCode": "NCB",
        "vnp_CardType": "ATM",
        "vnp_PayDate": vnp_format_date(datetime(2026, 10, 18, 9, 1, tzinfo=timezone.utc)),
        "vnp_OrderInfo": f"Payment {order_ref}",
    }
    params.update({k: str(v) for k, v in extra.items()})
    params["vnp_SecureHash"] = vnp_hmac(secret or settings.vnpay_hash_secret, vnp_sign_data(params))
    return params


# ─────────────────────────────────────────────
# fixtures
# ─────────────────────────────────────────────


@pytest.fixture(scope="function")
def db():
    # services commit, so every test gets a fresh schema instead of a wrapping transaction
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)

    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 10, 18, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def email_sender():
    return CapturingEmailSender()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def lifecycle(notifier, clock):
    return ContractLifecycleManager(
        notifier=notifier,
        activation_hook=SessionClassActivationHook(SessionLocal),
        clock=clock,
    )


@pytest.fixture
def otp_service(email_sender, clock):
    return SignatureOTPService(email_sender=email_sender, clock=clock)


@pytest.fixture
def engine_service(notifier, clock):
    return ReconciliationEngine(gateway=VNPayGateway(settings), notifier=notifier, clock=clock)


@pytest.fixture
def make_contract(db, lifecycle):
    def _make(draft=False, contact_request_id="cr-1", **term_overrides):
        return lifecycle.create(
            db,
            tutor_id=TUTOR_ID,
            student_id=STUDENT_ID,
            contact_request_id=contact_request_id,
            terms=make_terms(**term_overrides),
            draft=draft,
        )

    return _make


@pytest.fixture
def sign(db, lifecycle):
    """Apply an already-verified signature (OTP is covered by its own tests)."""

    def _sign(contract_id, role):
        signer_id = STUDENT_ID if role == "student" else TUTOR_ID
        email = STUDENT_EMAIL if role == "student" else TUTOR_EMAIL
        return lifecycle.apply_signature(
            db,
            contract_id=contract_id,
            role=role,
            signer_id=signer_id,
            email=email,
            token="0" * 64,
            ip_address="10.0.0.1",
            user_agent="pytest",
        )

    return _sign


@pytest.fixture
def active_contract(make_contract, sign):
    def _make(**term_overrides):
        contract = make_contract(**term_overrides)
        sign(contract.id, "student")
        return sign(contract.id, "tutor")

    return _make


@pytest.fixture
def terms():
    return make_terms


@pytest.fixture
def callback():
    return signed_callback
