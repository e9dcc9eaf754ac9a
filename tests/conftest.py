from __future__ import annotations

import hashlib
import hmac
import json
from decimal import Decimal

import pytest

from avr import create_app
from avr.config import TestingConfig
from avr.errors import ReceiptNotificationError
from avr.extensions import db
from avr.services.helcim import (
    APPROVED,
    ChargeResult,
    SubscriptionResult,
    SubscriptionSnapshot,
    VerifySession,
)

WEBHOOK_SECRET = TestingConfig.HELCIM_WEBHOOK_VERIFIER_TOKEN


class FakeGateway:
    """Records every call; set ``fail[name]`` to make a method raise."""

    def __init__(self):
        self.calls = []
        self.fail = {}
        self.subscription_status = "active"
        self._seq = 0

    def _call(self, name, *args, **kwargs):
        self.calls.append((name, args, kwargs))
        exc = self.fail.get(name)
        if exc is not None:
            raise exc
        self._seq += 1
        return self._seq

    def count(self, name):
        return sum(1 for c in self.calls if c[0] == name)

    def last(self, name):
        return [c for c in self.calls if c[0] == name][-1]

    def initialize_verification(self, donor, billing_address):
        n = self._call("initialize_verification", donor, billing_address)
        return VerifySession(checkout_token=f"chk_{n}", secret_token=f"sec_{n}")

    def charge_one_time(self, amount, currency, customer_code, card_token, billing_address=None, **kwargs):
        n = self._call("charge_one_time", amount, currency, customer_code, card_token, billing_address, **kwargs)
        return ChargeResult(transaction_id=f"txn_{n}", status=APPROVED)

    def create_payment_plan(self, standardized_amount, plan_name, currency=None):
        n = self._call("create_payment_plan", standardized_amount, plan_name, currency)
        return f"plan_{n}"

    def create_subscription(self, customer_code, plan_id, amount, payment_method="card"):
        n = self._call("create_subscription", customer_code, plan_id, amount, payment_method)
        return SubscriptionResult(subscription_id=f"sub_{n}", next_billing_date="2026-11-19")

    def cancel_subscription(self, subscription_id):
        self._call("cancel_subscription", subscription_id)

    def get_subscription(self, subscription_id):
        self._call("get_subscription", subscription_id)
        return SubscriptionSnapshot(
            subscription_id=subscription_id,
            status=self.subscription_status,
            next_billing_date="2026-12-19",
            recurring_amount=Decimal("50.00"),
        )


class RecordingNotifier:
    def __init__(self):
        self.sent = []
        self.fail = False

    def send_receipt(self, donor_email, receipt):
        if self.fail:
            raise ReceiptNotificationError("smtp down")
        self.sent.append((donor_email, receipt))


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def app(gateway, notifier):
    app = create_app(TestingConfig, gateway=gateway, notifier=notifier)
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def service(app):
    return app.extensions["donations"]["service"]


@pytest.fixture
def donor_payload():
    return {
        "first_name": "Jordan",
        "last_name": "Rivera",
        "donor_email": "jordan.rivera@example.org",
        "donor_phone": "555-0100",
        "address_line1": "12 Liberty Ave",
        "city": "Austin",
        "state": "TX",
        "zip_code": "78701",
        "donation_type": "one-time",
        "amount": "25",
    }


def sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def webhook_body(event_type: str = "cardTransaction", event_id: str = "evt_1", **data) -> bytes:
    return json.dumps({"id": event_id, "type": event_type, "data": data}).encode()


@pytest.fixture(name="sign")
def _sign_fixture():
    return sign


@pytest.fixture(name="webhook_body")
def _webhook_body_fixture():
    return webhook_body
