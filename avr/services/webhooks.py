# avr/services/webhooks.py
"""
Helcim webhook receiver.

The raw body is buffered once by the caller; the signature is checked
against that buffer and the same buffer is parsed. Once the signature
passes, every outcome (ignored, duplicate, not found, already completed) is
acknowledged with 200 so the gateway stops redelivering. Only a database
failure answers 500, so the gateway retries later.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from avr.errors import SignatureError
from avr.extensions import db, safe_commit
from avr.models.gateway_event import GatewayEvent

log = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Helcim-Signature"
SIGNATURE_PREFIX = "sha256="

CARD_TRANSACTION = "cardTransaction"
TERMINAL_CANCEL = "terminalCancel"


class MalformedEventError(ValueError):
    pass


def compute_signature(body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return SIGNATURE_PREFIX + digest


def verify_signature(body: bytes, header_value: Optional[str], secret: str) -> None:
    """Raise SignatureError unless ``header_value`` signs ``body`` with ``secret``."""
    if not secret:
        raise SignatureError("Webhook verification secret is not configured")
    got = (header_value or "").strip()
    if not got.startswith(SIGNATURE_PREFIX):
        raise SignatureError("Missing or malformed webhook signature")
    got = SIGNATURE_PREFIX + got[len(SIGNATURE_PREFIX):].lower()
    if not hmac.compare_digest(got.encode("ascii", "replace"), compute_signature(body, secret).encode("ascii")):
        raise SignatureError("Webhook signature mismatch")


@dataclass(frozen=True)
class WebhookEvent:
    id: str
    type: str
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def transaction_id(self) -> str:
        """Nested ``data.transactionId`` wins over the envelope id."""
        nested = self.data.get("transactionId")
        if nested not in (None, ""):
            return str(nested).strip()
        return self.id


def parse_event(body: bytes) -> WebhookEvent:
    try:
        envelope = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise MalformedEventError("Webhook body is not valid JSON") from exc

    if not isinstance(envelope, dict):
        raise MalformedEventError("Webhook body must be a JSON object")

    etype = envelope.get("type")
    if not isinstance(etype, str) or not etype.strip():
        raise MalformedEventError("Webhook event has no type")

    data = envelope.get("data")
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise MalformedEventError("Webhook event data must be an object")

    event_id = envelope.get("id")
    return WebhookEvent(
        id=str(event_id).strip() if event_id is not None else "",
        type=etype.strip(),
        data=data,
    )


@dataclass(frozen=True)
class WebhookResult:
    status_code: int
    body: Dict[str, Any]


class WebhookReceiver:
    def __init__(self, service, *, secret: str = "", allow_unsigned: bool = False) -> None:
        self.service = service
        self.secret = secret or ""
        self.allow_unsigned = bool(allow_unsigned)

    def handle(self, body: bytes, signature: Optional[str]) -> WebhookResult:
        if self.secret:
            try:
                verify_signature(body, signature, self.secret)
            except SignatureError as exc:
                log.warning("SECURITY: rejected webhook (%s); %d bytes", exc, len(body))
                return WebhookResult(401, {"error": "invalid signature"})
        elif self.allow_unsigned:
            log.warning("webhook: accepting UNSIGNED delivery (development bypass enabled)")
        else:
            log.warning("SECURITY: rejected webhook; no verification secret configured")
            return WebhookResult(401, {"error": "invalid signature"})

        try:
            event = parse_event(body)
        except MalformedEventError as exc:
            log.warning("webhook: malformed body (%s)", exc)
            return WebhookResult(400, {"error": str(exc)})

        if event.type != CARD_TRANSACTION:
            # terminalCancel and unknown types: no donation lookup
            log.info("webhook: ignoring %s event %s", event.type, event.id or "-")
            return WebhookResult(200, {"status": "ignored", "type": event.type})

        txn = event.transaction_id
        if not txn:
            return WebhookResult(400, {"error": "cardTransaction event has no transaction id"})

        try:
            if event.id and self._already_processed(event.id):
                log.info("webhook: duplicate delivery of event %s", event.id)
                return WebhookResult(200, {"status": "duplicate"})

            outcome = self.service.reconcile_webhook(txn)
        except SQLAlchemyError:
            db.session.rollback()
            log.exception("webhook: reconciliation failed for transaction %s (will retry)", txn)
            return WebhookResult(500, {"error": "temporarily unavailable"})

        if event.id:
            self._record(event, txn, outcome.value)
        return WebhookResult(200, {"status": outcome.value, "transactionId": txn})

    @staticmethod
    def _already_processed(event_id: str) -> bool:
        stmt = select(GatewayEvent.id).where(GatewayEvent.event_id == event_id).limit(1)
        return db.session.execute(stmt).first() is not None

    @staticmethod
    def _record(event: WebhookEvent, txn: str, outcome: str) -> None:
        db.session.add(
            GatewayEvent(
                event_id=event.id[:120],
                type=event.type[:60],
                object_id=txn[:120],
                outcome=outcome[:30],
            )
        )
        # a concurrent delivery may have recorded it first
        if not safe_commit():
            log.info("webhook: event %s already recorded", event.id)
