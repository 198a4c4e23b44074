import os


def _set_test_env() -> None:
    defaults = {
        "APP_NAME": "COLLOSPOT Test",
        "ENVIRONMENT": "test",
        "SECRET_KEY": "test-secret",
        "ACCESS_TOKEN_EXPIRE_MINUTES": "30",
        "AUTO_CREATE_TABLES": "false",
        "DATABASE_URL": "sqlite+pysqlite:///:memory:",
        "MPESA_ENVIRONMENT": "sandbox",
        "MPESA_CONSUMER_KEY": "consumer_key",
        "MPESA_CONSUMER_SECRET": "consumer_secret",
        "MPESA_SHORTCODE": "174379",
        "MPESA_PASSKEY": "passkey",
        "MPESA_CALLBACK_URL": "https://example.test/api/v1/public/payment/callback",
        "MPESA_RETRY_COUNT": "1",
        "MPESA_SIMULATE": "false",
        "MIKROTIK_TEST_MODE": "true",
        "SMS_PROVIDER": "console",
        "SWEEPER_ENABLED": "false",
        "RATE_LIMIT_ENABLED": "false",
        "CORS_ORIGINS": "http://localhost:5173,http://localhost:3000",
    }
    for key, value in defaults.items():
        os.environ.setdefault(key, value)


_set_test_env()

from decimal import Decimal  # noqa: E402

import pytest  # noqa: E402

from collospot.core.database import Base, SessionLocal, engine  # noqa: E402
from collospot.core.exceptions import RouterUnavailable  # noqa: E402
from collospot.models import Plan  # noqa: E402
from collospot.services.mpesa import PushResult, parse_callback  # noqa: E402
from collospot.services.reconciler import PaymentReconciler  # noqa: E402
from collospot.services.sessions import SessionLedger  # noqa: E402


class FakeGateway:
    def __init__(self):
        self.pushes = []
        self.query_results = {}
        self.push_error = None

    def initiate_push(self, phone, amount, reference, description):
        if self.push_error is not None:
            raise self.push_error
        n = len(self.pushes) + 1
        self.pushes.append({"phone": phone, "amount": amount, "reference": reference, "description": description})
        return PushResult(
            correlation_id=f"ws_CO_TEST_{n:04d}",
            merchant_id=f"MR_TEST_{n:04d}",
            customer_message="Success. Request accepted for processing",
        )

    def query_push(self, correlation_id):
        result = self.query_results.get(correlation_id)
        if isinstance(result, Exception):
            raise result
        return result

    def parse_callback(self, raw_payload):
        return parse_callback(raw_payload)


class FakeRouter:
    def __init__(self):
        self.granted = []
        self.revoked = []
        self.connections = []
        self.fail = False

    def grant_access(self, username, profile, password=None):
        if self.fail:
            raise RouterUnavailable("router down", command="grant_access")
        self.granted.append((username, profile))
        return f"*{len(self.granted)}"

    def revoke_access(self, username):
        if self.fail:
            raise RouterUnavailable("router down", command="revoke_access")
        self.revoked.append(username)

    def list_active_connections(self):
        if self.fail:
            raise RouterUnavailable("router down", command="list_active_connections")
        return list(self.connections)


class FakeNotifier:
    def __init__(self):
        self.sent = []

    def send(self, to, message):
        self.sent.append((to, message))


@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def router():
    return FakeRouter()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def ledger(router):
    return SessionLedger(router)


@pytest.fixture
def reconciler(gateway, ledger, notifier):
    return PaymentReconciler(gateway, ledger, notifier, session_factory=SessionLocal)


@pytest.fixture
def plan(db):
    plan = Plan(
        name="Standard 24 Hours",
        price=Decimal("100"),
        duration_hours=24,
        data_limit="2GB",
        speed_limit="10Mbps",
        is_active=True,
    )
    db.add(plan)
    db.commit()
    db.refresh(plan)
    return plan


@pytest.fixture
def stk_callback():
    def _build(correlation_id, result_code=0, amount=100, receipt="QGH12345XY", phone=254712345678):
        callback = {
            "MerchantRequestID": "MR_TEST",
            "CheckoutRequestID": correlation_id,
            "ResultCode": result_code,
            "ResultDesc": "The service request is processed successfully." if result_code == 0 else "Request cancelled by user",
        }
        if result_code == 0:
            callback["CallbackMetadata"] = {
                "Item": [
                    {"Name": "Amount", "Value": amount},
                    {"Name": "MpesaReceiptNumber", "Value": receipt},
                    {"Name": "TransactionDate", "Value": 20261019101500},
                    {"Name": "PhoneNumber", "Value": phone},
                ]
            }
        return {"Body": {"stkCallback": callback}}

    return _build
