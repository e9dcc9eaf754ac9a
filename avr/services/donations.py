# avr/services/donations.py
"""
Donation state machine.

DonationService owns the donation lifecycle:

  initialize         -> pending row + zero-amount verify session
  process_payment    -> one-time charge (pending -> completed)
                        or plan + subscription (pending -> active)
  reconcile_webhook  -> pending/active -> completed, idempotent
  cancel_subscription-> active -> cancelled, owner only and only when confirmed
  sync_subscription  -> refresh subscription tracking from the gateway

Collaborators (store, gateway, plan cache, notifier) are injected so the app
factory builds them once and tests can swap in doubles.
"""

from __future__ import annotations

import enum
import hmac
import logging
import time
import uuid
from dataclasses import asdict, dataclass
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional, Tuple

from avr.errors import (
    ConfirmationRequired,
    GatewayError,
    IllegalTransitionError,
    NotFoundError,
    ReceiptNotificationError,
    ValidationError,
)
from avr.forms.donation_form import validate_initialize
from avr.models.donation import Donation, DonationStatus, DonationType
from avr.models.mixins import utcnow
from avr.services.amounts import first_present, parse_amount
from avr.services.donation_store import DonationStore
from avr.services.helcim import BillingAddress, DonorContact, SubscriptionSnapshot, mask_token
from avr.services.plan_cache import PaymentPlanCache
from avr.services.receipts import ReceiptData, ReceiptNotifier

log = logging.getLogger(__name__)

_CHARGE_KEY_NAMESPACE = uuid.UUID("6f1f8d0e-4a57-4f3b-9c51-0d5b8f3a2c11")


def charge_idempotency_key(donation_id: str, card_token: str) -> str:
    """Same donation + same card token always maps to the same gateway key."""
    return str(uuid.uuid5(_CHARGE_KEY_NAMESPACE, f"{donation_id}|{card_token}"))


class ReconcileOutcome(str, enum.Enum):
    COMPLETED = "completed"
    ALREADY_COMPLETED = "already_completed"
    NOT_FOUND = "not_found"
    IGNORED = "ignored"


@dataclass(frozen=True)
class PaymentOutcome:
    donation_id: str
    status: str
    donation_type: str
    transaction_id: Optional[str] = None
    subscription_id: Optional[str] = None
    payment_plan_id: Optional[str] = None
    next_billing_date: Optional[str] = None
    already_processed: bool = False

    @classmethod
    def from_donation(cls, donation: Donation, *, already_processed: bool = False) -> "PaymentOutcome":
        return cls(
            donation_id=donation.id,
            status=DonationStatus(donation.status).value,
            donation_type=DonationType(donation.donation_type).value,
            transaction_id=donation.gateway_transaction_id or donation.transaction_id,
            subscription_id=donation.subscription_id,
            payment_plan_id=donation.payment_plan_id,
            next_billing_date=donation.next_billing_date,
            already_processed=already_processed,
        )

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _billing_address(donation: Donation) -> BillingAddress:
    return BillingAddress(
        name=donation.donor_name,
        street1=donation.address_line1 or "",
        street2=donation.address_line2 or "",
        city=donation.city or "",
        province=donation.state or "",
        postal_code=donation.zip_code or "",
    )


class DonationService:
    def __init__(
        self,
        store: DonationStore,
        gateway: Any,
        plan_cache: PaymentPlanCache,
        notifier: ReceiptNotifier,
        *,
        currency: str = "USD",
        receipt_config: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.plan_cache = plan_cache
        self.notifier = notifier
        self.currency = (currency or "USD").upper()
        self.receipt_config = receipt_config or {}

    # ------------------------------------------------------------------
    # Initialize
    # ------------------------------------------------------------------
    def initialize(
        self,
        payload: Mapping[str, Any],
        *,
        session_amount: Any = None,
        user_id: Optional[str] = None,
    ) -> Tuple[Donation, str]:
        """Validate, persist a pending donation, then open a verify session.

        A gateway failure leaves the pending row in place; the donor can
        simply resubmit.
        """
        try:
            req = validate_initialize(payload, session_amount=session_amount)
        except ValidationError as exc:
            log.info("initialize rejected: fields=%s", sorted(exc.errors))
            raise

        donation = self.store.create(
            user_id=user_id,
            donor_name=req.donor_name,
            donor_email=req.donor_email,
            donor_phone=req.donor_phone or None,
            address_line1=req.address_line1,
            address_line2=req.address_line2 or None,
            city=req.city,
            state=req.state,
            zip_code=req.zip_code,
            comments=req.comments or None,
            amount=req.amount,
            currency=self.currency,
            donation_type=req.donation_type,
        )
        log.info(
            "donation %s created: type=%s amount=%s %s",
            donation.id,
            req.donation_type.value,
            req.amount,
            self.currency,
        )

        try:
            session = self.gateway.initialize_verification(
                DonorContact(name=req.donor_name, email=req.donor_email, phone=req.donor_phone),
                _billing_address(donation),
            )
        except GatewayError as exc:
            log.error("verify session failed: donation=%s amount=%s error=%s", donation.id, req.amount, exc)
            raise

        donation = self.store.set_tokens(
            donation.id,
            checkout_token=session.checkout_token,
            secret_token=session.secret_token,
        )
        log.info("donation %s verify session ready checkout=%s", donation.id, mask_token(session.checkout_token))
        return donation, session.checkout_token

    # ------------------------------------------------------------------
    # Process payment
    # ------------------------------------------------------------------
    def process_payment(
        self,
        donation_id: str,
        customer_code: Optional[str],
        card_token: Optional[str],
        *,
        transaction_id: Optional[str] = None,
        client_amount: Any = None,
        ip_address: str = "",
    ) -> PaymentOutcome:
        donation = self.store.get(donation_id)
        status = DonationStatus(donation.status)

        if status in (DonationStatus.COMPLETED, DonationStatus.ACTIVE):
            log.info("donation %s already %s; not charging again", donation.id, status.value)
            return PaymentOutcome.from_donation(donation, already_processed=True)
        if status is not DonationStatus.PENDING:
            raise IllegalTransitionError(f"Donation is {status.value} and cannot be processed")

        card_token = (card_token or "").strip()
        if not card_token:
            raise ValidationError.single("card_token", "Card token is required")

        customer_code = (customer_code or "").strip()
        if not customer_code:
            customer_code = f"DON_{donation.id}_{int(time.time())}"
            log.info("donation %s: no customer code from client; using %s", donation.id, customer_code)

        amount = Decimal(donation.amount)
        self._check_client_amount(donation, client_amount)

        if DonationType(donation.donation_type) is DonationType.ONE_TIME:
            changed = self._charge_one_time(donation, amount, customer_code, card_token, transaction_id, ip_address)
        else:
            changed = self._start_subscription(donation, amount, customer_code)

        donation = self.store.get(donation.id)
        if changed:
            self._send_receipt(donation)
        return PaymentOutcome.from_donation(donation, already_processed=not changed)

    def _check_client_amount(self, donation: Donation, client_amount: Any) -> None:
        if client_amount is None or client_amount == "":
            return
        try:
            reported = parse_amount(first_present(client_amount))
        except ValidationError:
            log.warning("donation %s: unparsable client amount %r ignored", donation.id, client_amount)
            return
        if reported != Decimal(donation.amount):
            log.warning(
                "donation %s: client amount %s differs from stored %s; charging stored amount",
                donation.id,
                reported,
                donation.amount,
            )

    def _charge_one_time(
        self,
        donation: Donation,
        amount: Decimal,
        customer_code: str,
        card_token: str,
        transaction_id: Optional[str],
        ip_address: str,
    ) -> bool:
        try:
            result = self.gateway.charge_one_time(
                amount,
                donation.currency,
                customer_code,
                card_token,
                _billing_address(donation),
                idempotency_key=charge_idempotency_key(donation.id, card_token),
                ip_address=ip_address,
            )
        except GatewayError as exc:
            log.error("charge failed: donation=%s amount=%s error=%s", donation.id, amount, exc)
            raise

        changed = self.store.transition(
            donation.id,
            DonationStatus.COMPLETED,
            gateway_transaction_id=result.transaction_id,
            transaction_id=(transaction_id or "").strip() or None,
            customer_id=customer_code,
        )
        if not changed:
            log.error(
                "donation %s charged (txn=%s) but status changed concurrently",
                donation.id,
                result.transaction_id,
            )
        return changed

    def _start_subscription(self, donation: Donation, amount: Decimal, customer_code: str) -> bool:
        currency = donation.currency

        def _create_plan(std_amount: Decimal, plan_name: str) -> str:
            return self.gateway.create_payment_plan(std_amount, plan_name, currency)

        try:
            plan_id = self.plan_cache.get_or_create(amount, currency, _create_plan)
            sub = self.gateway.create_subscription(customer_code, plan_id, amount, "card")
        except GatewayError as exc:
            log.error("subscription failed: donation=%s amount=%s error=%s", donation.id, amount, exc)
            raise

        changed = self.store.transition(
            donation.id,
            DonationStatus.ACTIVE,
            subscription_id=sub.subscription_id,
            payment_plan_id=plan_id,
            customer_id=customer_code,
            next_billing_date=sub.next_billing_date,
            subscription_status="active",
        )
        if not changed:
            log.error(
                "donation %s subscribed (sub=%s) but status changed concurrently",
                donation.id,
                sub.subscription_id,
            )
        return changed

    # ------------------------------------------------------------------
    # Webhook reconciliation
    # ------------------------------------------------------------------
    def reconcile_webhook(self, gateway_transaction_id: str) -> ReconcileOutcome:
        donation = self.store.find_by_transaction_id(gateway_transaction_id)
        if donation is None:
            log.warning("webhook: no donation for transaction %s (acknowledging)", gateway_transaction_id)
            return ReconcileOutcome.NOT_FOUND

        status = DonationStatus(donation.status)
        if status is DonationStatus.COMPLETED:
            log.info("webhook: donation %s already completed", donation.id)
            return ReconcileOutcome.ALREADY_COMPLETED
        if status not in (DonationStatus.PENDING, DonationStatus.ACTIVE):
            log.info("webhook: donation %s is %s; nothing to reconcile", donation.id, status.value)
            return ReconcileOutcome.IGNORED

        fields: Dict[str, Any] = {}
        if DonationType(donation.donation_type) is DonationType.ONE_TIME:
            fields["gateway_transaction_id"] = gateway_transaction_id

        if not self.store.transition(donation.id, DonationStatus.COMPLETED, **fields):
            current = DonationStatus(self.store.get(donation.id).status)
            if current is DonationStatus.COMPLETED:
                return ReconcileOutcome.ALREADY_COMPLETED
            return ReconcileOutcome.IGNORED

        self._send_receipt(self.store.get(donation.id))
        return ReconcileOutcome.COMPLETED

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------
    def _get_owned(
        self,
        donation_id: str,
        user_id: Optional[str],
        secret_token: Optional[str],
    ) -> Donation:
        """Load a donation the caller can prove they own; NotFoundError otherwise.

        Proof is either the account the donation was made under or the
        verify-session secret token handed to the donor at initialize.
        """
        donation = self.store.get(donation_id)
        if user_id and donation.user_id and str(user_id) == donation.user_id:
            return donation
        if (
            secret_token
            and donation.secret_token
            and hmac.compare_digest(str(secret_token).encode(), donation.secret_token.encode())
        ):
            return donation
        log.warning("SECURITY: donation %s requested by a non-owner", donation_id)
        raise NotFoundError(f"Donation {donation_id} not found")

    def cancel_subscription(
        self,
        donation_id: str,
        confirmed: bool,
        *,
        user_id: Optional[str] = None,
        secret_token: Optional[str] = None,
    ) -> Donation:
        donation = self._get_owned(donation_id, user_id, secret_token)
        if not confirmed:
            raise ConfirmationRequired("Cancelling a monthly donation must be explicitly confirmed")

        status = DonationStatus(donation.status)
        if status is DonationStatus.CANCELLED:
            return donation
        if status is not DonationStatus.ACTIVE or not donation.subscription_id:
            raise IllegalTransitionError(f"Donation is {status.value}; there is no active subscription to cancel")

        try:
            self.gateway.cancel_subscription(donation.subscription_id)
        except GatewayError as exc:
            log.error("cancel failed: donation=%s subscription=%s error=%s", donation.id, donation.subscription_id, exc)
            raise

        if not self.store.transition(donation.id, DonationStatus.CANCELLED, subscription_status="cancelled"):
            log.warning(
                "donation %s: subscription %s cancelled at gateway; local status changed concurrently",
                donation.id,
                donation.subscription_id,
            )
        return self.store.get(donation.id)

    def sync_subscription(
        self,
        donation_id: str,
        *,
        user_id: Optional[str] = None,
        secret_token: Optional[str] = None,
    ) -> SubscriptionSnapshot:
        donation = self._get_owned(donation_id, user_id, secret_token)
        if not donation.subscription_id:
            raise IllegalTransitionError("Donation has no subscription to sync")

        try:
            snap = self.gateway.get_subscription(donation.subscription_id)
        except GatewayError as exc:
            log.error("sync failed: donation=%s subscription=%s error=%s", donation.id, donation.subscription_id, exc)
            raise

        self.store.update_fields(
            donation.id,
            subscription_status=snap.status,
            next_billing_date=snap.next_billing_date,
            last_status_sync=utcnow(),
        )
        if snap.is_cancelled and DonationStatus(donation.status) is DonationStatus.ACTIVE:
            self.store.transition(donation.id, DonationStatus.CANCELLED)
        return snap

    def get_status(self, donation_id: str) -> Dict[str, Any]:
        return self.store.get(donation_id).as_dict()

    # ------------------------------------------------------------------
    def _send_receipt(self, donation: Donation) -> None:
        try:
            self.notifier.send_receipt(
                donation.donor_email,
                ReceiptData.from_donation(donation, self.receipt_config),
            )
        except ReceiptNotificationError as exc:
            log.error("receipt failed for donation %s: %s", donation.id, exc)
