# avr/services/helcim.py
"""
Helcim payment gateway client.

All calls are synchronous ``requests`` calls bounded by a timeout. Writes are
never retried here (a retried charge can double-charge a donor); only the
idempotent ``get_subscription`` read retries on transient failures.

``build_gateway_client`` picks the real client or ``SimulatedGatewayClient``
from the app config: development and testing use the simulated client unless
``HELCIM_LIVE_TESTING`` is set.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

import requests

from avr.errors import GatewayError, GatewayTimeoutError, PaymentDeclinedError

log = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.helcim.com/v2"
APPROVED = "APPROVED"


def mask_token(value: Optional[str]) -> str:
    s = str(value or "")
    if not s:
        return "-"
    return s[:6] + "..." if len(s) > 6 else s


# ----------------------------
# Request / response shapes
# ----------------------------
@dataclass(frozen=True)
class BillingAddress:
    name: str
    street1: str
    city: str
    province: str
    postal_code: str
    street2: str = ""
    country: str = "USA"

    def to_payload(self) -> Dict[str, str]:
        payload = {
            "name": self.name,
            "street1": self.street1,
            "city": self.city,
            "province": self.province,
            "country": self.country,
            "postalCode": self.postal_code,
        }
        if self.street2:
            payload["street2"] = self.street2
        return payload


@dataclass(frozen=True)
class DonorContact:
    name: str
    email: str
    phone: str = ""


@dataclass(frozen=True)
class VerifySession:
    checkout_token: str
    secret_token: str


@dataclass(frozen=True)
class ChargeResult:
    transaction_id: str
    status: str


@dataclass(frozen=True)
class SubscriptionResult:
    subscription_id: str
    next_billing_date: Optional[str]


@dataclass(frozen=True)
class SubscriptionSnapshot:
    subscription_id: str
    status: str
    next_billing_date: Optional[str] = None
    recurring_amount: Optional[Decimal] = None
    payment_plan_id: Optional[str] = None
    payment_method: Optional[str] = None
    activation_date: Optional[str] = None

    @property
    def is_cancelled(self) -> bool:
        return self.status.lower() in {"cancelled", "canceled", "inactive"}


def _money(amount: Decimal) -> float:
    return float(Decimal(str(amount)).quantize(Decimal("0.01")))


def _str_or_none(v: Any) -> Optional[str]:
    if v is None:
        return None
    s = str(v).strip()
    return s or None


def _first_item(payload: Any) -> Dict[str, Any]:
    """Unwrap ``{"status": "ok", "data": [item]}`` (or a bare list/object)."""
    if isinstance(payload, dict) and isinstance(payload.get("data"), list):
        items = payload["data"]
    elif isinstance(payload, list):
        items = payload
    elif isinstance(payload, dict):
        return payload
    else:
        items = []
    if not items or not isinstance(items[0], dict):
        raise GatewayError("Helcim response contained no data")
    return items[0]


# ----------------------------
# Real client
# ----------------------------
class HelcimClient:
    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = DEFAULT_BASE_URL,
        currency: str = "USD",
        timeout: float = 30,
        read_retries: int = 2,
        session: Optional[requests.Session] = None,
    ) -> None:
        if not (api_key or "").strip():
            raise RuntimeError("HELCIM_PRIVATE_API_KEY is not set; refusing to start the gateway client.")
        self.base_url = (base_url or DEFAULT_BASE_URL).rstrip("/")
        self.currency = (currency or "USD").upper()
        self.timeout = timeout
        self.read_retries = max(0, int(read_retries))
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "api-token": api_key.strip(),
                "accept": "application/json",
                "content-type": "application/json",
            }
        )
        log.info("helcim: client ready base=%s key=%s", self.base_url, mask_token(api_key))

    # ---- transport ----
    def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Any:
        url = f"{self.base_url}{path}"
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        try:
            resp = self.session.request(method, url, json=json, headers=headers, timeout=self.timeout)
        except requests.Timeout as exc:
            raise GatewayTimeoutError(f"Helcim {method} {path} timed out after {self.timeout}s") from exc
        except requests.RequestException as exc:
            raise GatewayError(f"Helcim {method} {path} failed: {exc}") from exc

        if not 200 <= resp.status_code < 300:
            body = (resp.text or "")[:2000]
            log.error("helcim: %s %s -> HTTP %s body=%s", method, path, resp.status_code, body[:300])
            raise GatewayError(f"Helcim {method} {path} was rejected", status_code=resp.status_code, body=body)

        if resp.status_code == 204 or not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as exc:
            raise GatewayError(
                f"Helcim {method} {path} returned invalid JSON",
                status_code=resp.status_code,
                body=(resp.text or "")[:2000],
            ) from exc

    # ---- verify session ----
    def initialize_verification(self, donor: DonorContact, billing_address: BillingAddress) -> VerifySession:
        payload = {
            "paymentType": "verify",
            "amount": 0,
            "currency": self.currency,
            "customerRequest": {
                "contactName": donor.name,
                "email": donor.email,
                "billingAddress": billing_address.to_payload(),
            },
        }
        data = self._request("POST", "/helcim-pay/initialize", json=payload)
        checkout = _str_or_none((data or {}).get("checkoutToken"))
        secret = _str_or_none((data or {}).get("secretToken"))
        if not checkout or not secret:
            raise GatewayError("Helcim verify session returned no tokens", body=str(data)[:2000])
        return VerifySession(checkout_token=checkout, secret_token=secret)

    # ---- one-time charge ----
    def charge_one_time(
        self,
        amount: Decimal,
        currency: str,
        customer_code: str,
        card_token: str,
        billing_address: Optional[BillingAddress] = None,
        *,
        idempotency_key: Optional[str] = None,
        ip_address: str = "",
    ) -> ChargeResult:
        payload: Dict[str, Any] = {
            "paymentType": "purchase",
            "amount": _money(amount),
            "currency": (currency or self.currency).upper(),
            "customerCode": customer_code,
            "cardData": {"cardToken": card_token},
            "ipAddress": ip_address or "0.0.0.0",
        }
        if billing_address is not None:
            payload["billingAddress"] = billing_address.to_payload()

        data = self._request("POST", "/payment/purchase", json=payload, idempotency_key=idempotency_key)
        status = str((data or {}).get("status") or "").upper()
        txn = _str_or_none((data or {}).get("transactionId"))
        if status != APPROVED:
            raise PaymentDeclinedError(f"Charge not approved (status={status or 'unknown'})", body=str(data)[:2000])
        if not txn:
            raise GatewayError("Helcim charge approved without a transaction id", body=str(data)[:2000])
        return ChargeResult(transaction_id=txn, status=status)

    # ---- plans / subscriptions ----
    def create_payment_plan(self, standardized_amount: Decimal, plan_name: str, currency: Optional[str] = None) -> str:
        amount = _money(standardized_amount)
        payload = {
            "paymentPlans": [
                {
                    "name": plan_name,
                    "description": f"Monthly donation plan for ${amount:.2f}",
                    "type": "subscription",
                    "currency": (currency or self.currency).upper(),
                    "recurringAmount": amount,
                    "billingPeriod": "monthly",
                    "billingPeriodIncrements": 1,
                    "dateBilling": "Sign-up",
                    "termType": "forever",
                    "paymentMethod": "card",
                    "taxType": "no_tax",
                    "status": "active",
                }
            ]
        }
        data = self._request("POST", "/payment-plans", json=payload, idempotency_key=str(uuid.uuid4()))
        plan_id = _str_or_none(_first_item(data).get("id"))
        if not plan_id:
            raise GatewayError("Helcim payment plan response had no id", body=str(data)[:2000])
        return plan_id

    def create_subscription(
        self,
        customer_code: str,
        plan_id: str,
        amount: Decimal,
        payment_method: str = "card",
    ) -> SubscriptionResult:
        payload = {
            "subscriptions": [
                {
                    "customerCode": customer_code,
                    "paymentPlanId": int(plan_id) if str(plan_id).isdigit() else plan_id,
                    "recurringAmount": _money(amount),
                    "paymentMethod": payment_method,
                    "dateActivated": date.today().isoformat(),
                }
            ]
        }
        data = self._request("POST", "/subscriptions", json=payload, idempotency_key=str(uuid.uuid4()))
        item = _first_item(data)
        sub_id = _str_or_none(item.get("id"))
        if not sub_id:
            raise GatewayError("Helcim subscription response had no id", body=str(data)[:2000])
        return SubscriptionResult(subscription_id=sub_id, next_billing_date=_str_or_none(item.get("nextBillingDate")))

    def cancel_subscription(self, subscription_id: str) -> None:
        self._request("DELETE", f"/subscriptions/{subscription_id}")

    def get_subscription(self, subscription_id: str) -> SubscriptionSnapshot:
        attempt = 0
        while True:
            try:
                data = self._request("GET", f"/subscriptions/{subscription_id}")
                break
            except GatewayError as exc:
                transient = isinstance(exc, GatewayTimeoutError) or (exc.gateway_status or 500) >= 500
                if not transient or attempt >= self.read_retries:
                    raise
                attempt += 1
                log.warning("helcim: get_subscription %s failed (%s); retry %d", subscription_id, exc, attempt)
                time.sleep(0.2 * attempt)

        item = _first_item(data)
        amount = item.get("recurringAmount", item.get("amount"))
        return SubscriptionSnapshot(
            subscription_id=_str_or_none(item.get("id")) or str(subscription_id),
            status=str(item.get("status") or "unknown"),
            next_billing_date=_str_or_none(item.get("nextBillingDate")),
            recurring_amount=Decimal(str(amount)) if amount is not None else None,
            payment_plan_id=_str_or_none(item.get("paymentPlanId")),
            payment_method=_str_or_none(item.get("paymentMethod")),
            activation_date=_str_or_none(item.get("dateActivated") or item.get("activationDate")),
        )


# ----------------------------
# Simulated client (dev/test)
# ----------------------------
class SimulatedGatewayClient:
    """Approves everything locally; never touches the network."""

    def __init__(self, currency: str = "USD") -> None:
        self.currency = (currency or "USD").upper()
        self._subscriptions: Dict[str, SubscriptionSnapshot] = {}

    @staticmethod
    def _id(prefix: str) -> str:
        return f"dev_{prefix}_{uuid.uuid4().hex[:12]}"

    def initialize_verification(self, donor: DonorContact, billing_address: BillingAddress) -> VerifySession:
        log.warning("helcim: simulated verify session for %s", donor.email)
        return VerifySession(checkout_token=self._id("checkout"), secret_token=self._id("secret"))

    def charge_one_time(self, amount, currency, customer_code, card_token, billing_address=None, **_: Any) -> ChargeResult:
        log.warning("helcim: simulated charge amount=%s customer=%s", amount, customer_code)
        return ChargeResult(transaction_id=self._id("txn"), status=APPROVED)

    def create_payment_plan(self, standardized_amount, plan_name, currency=None) -> str:
        return self._id("plan")

    def create_subscription(self, customer_code, plan_id, amount, payment_method="card") -> SubscriptionResult:
        sub_id = self._id("sub")
        next_billing = (date.today() + timedelta(days=30)).isoformat()
        self._subscriptions[sub_id] = SubscriptionSnapshot(
            subscription_id=sub_id,
            status="active",
            next_billing_date=next_billing,
            recurring_amount=Decimal(str(amount)),
            payment_plan_id=str(plan_id),
            payment_method=payment_method,
            activation_date=date.today().isoformat(),
        )
        return SubscriptionResult(subscription_id=sub_id, next_billing_date=next_billing)

    def cancel_subscription(self, subscription_id: str) -> None:
        snap = self._subscriptions.get(subscription_id)
        if snap is not None:
            self._subscriptions[subscription_id] = SubscriptionSnapshot(
                subscription_id=subscription_id,
                status="cancelled",
                next_billing_date=None,
                recurring_amount=snap.recurring_amount,
                payment_plan_id=snap.payment_plan_id,
                payment_method=snap.payment_method,
                activation_date=snap.activation_date,
            )

    def get_subscription(self, subscription_id: str) -> SubscriptionSnapshot:
        snap = self._subscriptions.get(subscription_id)
        if snap is None:
            return SubscriptionSnapshot(subscription_id=subscription_id, status="active")
        return snap


def build_gateway_client(config: Mapping[str, Any]):
    env = str(config.get("ENV") or "").strip().lower()
    currency = str(config.get("HELCIM_CURRENCY") or "USD")
    live = bool(config.get("HELCIM_LIVE_TESTING"))

    if env in {"development", "testing"} and not live:
        log.warning("helcim: %s mode without HELCIM_LIVE_TESTING; using simulated gateway", env)
        return SimulatedGatewayClient(currency=currency)

    return HelcimClient(
        str(config.get("HELCIM_PRIVATE_API_KEY") or ""),
        base_url=str(config.get("HELCIM_API_BASE_URL") or DEFAULT_BASE_URL),
        currency=currency,
        timeout=float(config.get("HELCIM_TIMEOUT") or 30),
        read_retries=int(config.get("HELCIM_READ_RETRIES") or 0),
    )
