# avr/services/receipts.py
"""Donation receipt emails (Flask-Mail)."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Mapping, Optional

from flask import render_template_string
from flask_mail import Message

from avr.errors import ReceiptNotificationError
from avr.extensions import mail
from avr.models.donation import Donation, DonationType
from avr.models.mixins import utcnow

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReceiptData:
    donor_name: str
    amount: Decimal
    donation_type: str
    transaction_id: str
    donation_date: datetime
    tax_deductible_amount: Decimal
    organization_name: str
    organization_ein: str = ""
    organization_address: str = ""
    subscription_id: str = ""
    next_billing_date: str = ""
    address_line1: str = ""
    address_line2: str = ""
    city: str = ""
    state: str = ""
    zip_code: str = ""

    @classmethod
    def from_donation(cls, donation: Donation, config: Mapping[str, Any]) -> "ReceiptData":
        amount = Decimal(donation.amount)
        return cls(
            donor_name=donation.donor_name,
            amount=amount,
            donation_type=DonationType(donation.donation_type).label,
            transaction_id=donation.gateway_transaction_id or donation.transaction_id or "",
            donation_date=donation.updated_at or utcnow(),
            tax_deductible_amount=amount,
            organization_name=str(config.get("ORGANIZATION_NAME") or "American Veterans Rebuilding"),
            organization_ein=str(config.get("ORGANIZATION_EIN") or ""),
            organization_address=str(config.get("ORGANIZATION_ADDRESS") or ""),
            subscription_id=donation.subscription_id or "",
            next_billing_date=donation.next_billing_date or "",
            address_line1=donation.address_line1 or "",
            address_line2=donation.address_line2 or "",
            city=donation.city or "",
            state=donation.state or "",
            zip_code=donation.zip_code or "",
        )


_TEXT_TEMPLATE = """{% autoescape false %}\
Dear {{ r.donor_name }},

Thank you for your generous donation to {{ r.organization_name }}!

DONATION RECEIPT
{% if r.transaction_id %}Transaction ID: {{ r.transaction_id }}
{% endif %}{% if r.subscription_id %}Subscription ID: {{ r.subscription_id }}
{% endif %}Date: {{ r.donation_date.strftime('%B %d, %Y') }}
Donation Type: {{ r.donation_type }}
Amount: ${{ '%.2f'|format(r.amount) }}
{% if r.next_billing_date %}Next Billing Date: {{ r.next_billing_date }}
{% endif %}{% if r.tax_deductible_amount != r.amount %}Tax Deductible Amount: ${{ '%.2f'|format(r.tax_deductible_amount) }}
{% endif %}
{% if r.address_line1 %}Donor Address:
{{ r.address_line1 }}
{% if r.address_line2 %}{{ r.address_line2 }}
{% endif %}{{ r.city }}, {{ r.state }} {{ r.zip_code }}
{% endif %}
TAX INFORMATION
{{ r.organization_name }} is a registered 501(c)(3) non-profit organization.
Your donation is tax-deductible to the full extent allowed by law.
No goods or services were provided in exchange for this donation.
{% if r.organization_ein %}Tax ID (EIN): {{ r.organization_ein }}
{% endif %}
Thank you for supporting our mission!

{{ r.organization_name }}
{{ r.organization_address }}

This is an automated receipt. Please save this for your tax records.
{% endautoescape %}
"""


class ReceiptNotifier:
    def __init__(self, *, enabled: bool = True, sender: Optional[str] = None) -> None:
        self.enabled = enabled
        self.sender = sender

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "ReceiptNotifier":
        return cls(
            enabled=bool(config.get("EMAIL_ENABLED")),
            sender=config.get("DEFAULT_MAIL_SENDER") or None,
        )

    def render_text(self, receipt: ReceiptData) -> str:
        return render_template_string(_TEXT_TEMPLATE, r=receipt)

    def send_receipt(self, donor_email: str, receipt: ReceiptData) -> None:
        """Send one receipt; raises ReceiptNotificationError on delivery failure."""
        if not self.enabled:
            log.info("receipts: email disabled; skipping receipt for %s", donor_email)
            return

        msg = Message(
            subject=f"Thank you for your donation to {receipt.organization_name}",
            recipients=[donor_email],
            sender=self.sender,
            body=self.render_text(receipt),
        )
        try:
            mail.send(msg)
        except Exception as exc:
            raise ReceiptNotificationError(f"Receipt delivery to {donor_email} failed: {exc}") from exc
        log.info("receipts: sent %s receipt to %s", receipt.donation_type, donor_email)
