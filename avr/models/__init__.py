from __future__ import annotations

from avr.models.donation import (
    Donation,
    DonationStatus,
    DonationType,
    allowed_sources,
    can_transition,
)
from avr.models.gateway_event import GatewayEvent
from avr.models.mixins import TimestampMixin

__all__ = [
    "Donation",
    "DonationStatus",
    "DonationType",
    "GatewayEvent",
    "TimestampMixin",
    "allowed_sources",
    "can_transition",
]
