"""
AVR Donations API Blueprint (Helcim)

Mount: /api/donations  (register blueprint with url_prefix="/api/donations")

Endpoints:
  POST /api/donations/initialize        -> pending donation + verify-session tokens
  POST /api/donations/process           -> charge (one-time) or subscribe (monthly)
  GET  /api/donations/<id>              -> public status view
  POST /api/donations/<id>/cancel       -> cancel a monthly donation (needs confirmed=true)
  POST /api/donations/<id>/sync         -> refresh subscription status from Helcim
  POST /api/donations/webhook           -> signed Helcim webhook

Contracts:
- API-style JSON: never caches; consistent ok/message/error shape.
- Validation errors are field-keyed: {"errors": {"field": ["message", ...]}}.
- Webhook answers 200 for every verified delivery (ignored / not found included),
  400 for malformed bodies and 401 for bad signatures.
- The account link comes from the session only. Cancel and sync are owner-only:
  the session user must own the donation, or the body must carry the donation's
  secretToken from /initialize. Anything else answers 404.
"""

from __future__ import annotations

from typing import Any, Dict, Optional, cast

from flask import Blueprint, current_app, jsonify, request, session

from avr.errors import (
    ConfirmationRequired,
    DonationError,
    GatewayError,
    GatewayTimeoutError,
    ValidationError,
)
from avr.extensions import csrf
from avr.services.webhooks import SIGNATURE_HEADER

bp = Blueprint("donations", __name__)

# JSON API + gateway webhook: no CSRF tokens
csrf.exempt(bp)

SESSION_AMOUNT_KEY = "donation_amount"
# set by the login flow; the request body never names an account
SESSION_USER_KEY = "user_id"

_TRUTHY = {"1", "true", "yes", "on", "y"}


# ----------------------------
# Small utilities
# ----------------------------
def _truthy(v: Any) -> bool:
    if isinstance(v, bool):
        return v
    if v is None:
        return False
    return str(v).strip().lower() in _TRUTHY


def _request_payload() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if isinstance(data, dict) and data:
        return cast(Dict[str, Any], data)
    if request.form:
        return cast(Dict[str, Any], request.form.to_dict(flat=True))
    return {}


def _first(data: Dict[str, Any], *keys: str) -> Optional[str]:
    for k in keys:
        v = data.get(k)
        if v not in (None, ""):
            return str(v).strip()
    return None


def _json_response(payload: Dict[str, Any], status: int = 200):
    resp = jsonify(payload)
    resp.status_code = int(status)
    resp.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, max-age=0")
    resp.headers.setdefault("Pragma", "no-cache")
    resp.headers.setdefault("Expires", "0")
    return resp


def _json_ok(payload: Dict[str, Any], status: int = 200):
    payload.setdefault("ok", True)
    return _json_response(payload, status)


def _json_error(message: str, status: int, extra: Optional[Dict[str, Any]] = None):
    body: Dict[str, Any] = {"ok": False, "message": message, "error": {"message": message}}
    if extra:
        body["error"].update(extra)
        for k, v in extra.items():
            if k not in body:
                body[k] = v
    return _json_response(body, status)


def _session_user_id() -> Optional[str]:
    uid = session.get(SESSION_USER_KEY)
    return str(uid) if uid not in (None, "") else None


def _service():
    return current_app.extensions["donations"]["service"]


def _receiver():
    return current_app.extensions["donations"]["webhooks"]


# ----------------------------
# Error mapping
# ----------------------------
@bp.errorhandler(ValidationError)
def _validation_error(err: ValidationError):
    return _json_error(err.message, err.status_code, {"errors": err.errors})


@bp.errorhandler(ConfirmationRequired)
def _confirmation_required(err: ConfirmationRequired):
    return _json_error(err.message, err.status_code, {"confirmationRequired": True})


@bp.errorhandler(GatewayError)
def _gateway_error(err: GatewayError):
    if isinstance(err, GatewayTimeoutError):
        message = "The payment processor is not responding. Please try again in a moment."
    else:
        message = "The payment processor could not complete the request."
    current_app.logger.error("donations: gateway error %s", err)
    return _json_error(message, err.status_code, {"retryable": True})


@bp.errorhandler(DonationError)
def _donation_error(err: DonationError):
    return _json_error(err.message or "Request failed", err.status_code)


# ----------------------------
# Routes
# ----------------------------
@bp.post("/initialize")
def initialize():
    data = _request_payload()
    donation, checkout_token = _service().initialize(
        data,
        session_amount=session.get(SESSION_AMOUNT_KEY),
        user_id=_session_user_id(),
    )
    session[SESSION_AMOUNT_KEY] = f"{donation.amount:.2f}"
    return _json_ok(
        {
            "donationId": donation.id,
            "checkoutToken": checkout_token,
            "secretToken": donation.secret_token,
            "amount": f"{donation.amount:.2f}",
            "currency": donation.currency,
            "donationType": donation.as_dict()["donationType"],
        }
    )


@bp.post("/process")
def process_payment():
    data = _request_payload()
    donation_id = _first(data, "donationId", "donation_id")
    if not donation_id:
        return _json_error("donationId is required", 400)

    outcome = _service().process_payment(
        donation_id,
        _first(data, "customerCode", "customer_code"),
        _first(data, "cardToken", "card_token"),
        transaction_id=_first(data, "transactionId", "transaction_id"),
        client_amount=data.get("amount"),
        ip_address=request.remote_addr or "",
    )
    session.pop(SESSION_AMOUNT_KEY, None)
    return _json_ok(outcome.as_dict())


@bp.get("/<donation_id>")
def get_donation(donation_id: str):
    return _json_ok({"donation": _service().get_status(donation_id)})


@bp.post("/<donation_id>/cancel")
def cancel_subscription(donation_id: str):
    data = _request_payload()
    donation = _service().cancel_subscription(
        donation_id,
        confirmed=_truthy(data.get("confirmed")),
        user_id=_session_user_id(),
        secret_token=_first(data, "secretToken", "secret_token"),
    )
    return _json_ok({"donation": donation.as_dict()})


@bp.post("/<donation_id>/sync")
def sync_subscription(donation_id: str):
    data = _request_payload()
    snap = _service().sync_subscription(
        donation_id,
        user_id=_session_user_id(),
        secret_token=_first(data, "secretToken", "secret_token"),
    )
    return _json_ok(
        {
            "subscriptionId": snap.subscription_id,
            "status": snap.status,
            "nextBillingDate": snap.next_billing_date,
            "donation": _service().get_status(donation_id),
        }
    )


@bp.post("/webhook")
def helcim_webhook():
    body = request.get_data(cache=False, as_text=False)
    result = _receiver().handle(body, request.headers.get(SIGNATURE_HEADER))
    return _json_response(result.body, result.status_code)
