from __future__ import annotations

# -----------------------------------------------------------------------------
# Donation Model
# One row per donation attempt. Status moves only along TRANSITIONS; gateway
# correlation ids are write-once and must match the donation type.
# -----------------------------------------------------------------------------
import enum
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, FrozenSet, Optional, Tuple

from sqlalchemy import CheckConstraint, Index, event
from sqlalchemy.orm import Mapped, mapped_column, validates

from avr.extensions import db

from .mixins import TimestampMixin


class DonationStatus(str, enum.Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return not TRANSITIONS[self]


class DonationType(str, enum.Enum):
    ONE_TIME = "one-time"
    MONTHLY = "monthly"

    @property
    def label(self) -> str:
        return "Monthly" if self is DonationType.MONTHLY else "One-time"


# active -> completed is reachable only through webhook reconciliation.
TRANSITIONS: Dict[DonationStatus, FrozenSet[DonationStatus]] = {
    DonationStatus.PENDING: frozenset(
        {
            DonationStatus.ACTIVE,
            DonationStatus.COMPLETED,
            DonationStatus.FAILED,
            DonationStatus.REFUNDED,
            DonationStatus.CANCELLED,
        }
    ),
    DonationStatus.ACTIVE: frozenset({DonationStatus.CANCELLED, DonationStatus.COMPLETED}),
    DonationStatus.COMPLETED: frozenset(),
    DonationStatus.FAILED: frozenset(),
    DonationStatus.REFUNDED: frozenset(),
    DonationStatus.CANCELLED: frozenset(),
}


def can_transition(src: DonationStatus, dst: DonationStatus) -> bool:
    return DonationStatus(dst) in TRANSITIONS[DonationStatus(src)]


def allowed_sources(dst: DonationStatus) -> Tuple[DonationStatus, ...]:
    """Every status from which ``dst`` may legally be reached."""
    dst = DonationStatus(dst)
    return tuple(s for s in DonationStatus if dst in TRANSITIONS[s])


ONE_TIME_ONLY_FIELDS = ("transaction_id", "gateway_transaction_id")
MONTHLY_ONLY_FIELDS = ("subscription_id", "payment_plan_id")
WRITE_ONCE_FIELDS = ("checkout_token", "secret_token", "transaction_id", "gateway_transaction_id")


def correlation_conflicts(donation_type: Any, fields: Dict[str, Any]) -> Tuple[str, ...]:
    """Names in ``fields`` that carry a value the donation type must never hold."""
    dtype = DonationType(donation_type)
    forbidden = MONTHLY_ONLY_FIELDS if dtype is DonationType.ONE_TIME else ONE_TIME_ONLY_FIELDS
    return tuple(f for f in forbidden if fields.get(f))


def _enum_values(e):
    return [m.value for m in e]


class Donation(db.Model, TimestampMixin):
    __tablename__ = "donations"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_donations_amount_positive"),
        Index("ix_donations_status_type", "status", "donation_type"),
    )

    # ---- Identifiers ----
    id: Mapped[str] = mapped_column(
        db.String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    user_id: Mapped[Optional[str]] = mapped_column(
        db.String(64),
        nullable=True,
        index=True,
        doc="Authenticated account id; NULL for anonymous donations",
    )

    # ---- Donor ----
    donor_name: Mapped[str] = mapped_column(db.String(160), nullable=False)
    donor_email: Mapped[str] = mapped_column(db.String(254), nullable=False, index=True)
    donor_phone: Mapped[Optional[str]] = mapped_column(db.String(40), nullable=True)
    address_line1: Mapped[Optional[str]] = mapped_column(db.String(200), nullable=True)
    address_line2: Mapped[Optional[str]] = mapped_column(db.String(200), nullable=True)
    city: Mapped[Optional[str]] = mapped_column(db.String(100), nullable=True)
    state: Mapped[Optional[str]] = mapped_column(db.String(100), nullable=True)
    zip_code: Mapped[Optional[str]] = mapped_column(db.String(20), nullable=True)
    comments: Mapped[Optional[str]] = mapped_column(db.Text, nullable=True)

    # ---- Money ----
    amount: Mapped[Decimal] = mapped_column(db.Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(db.String(3), nullable=False, default="USD")
    donation_type: Mapped[DonationType] = mapped_column(
        db.Enum(DonationType, native_enum=False, length=16, values_callable=_enum_values),
        nullable=False,
        default=DonationType.ONE_TIME,
    )
    status: Mapped[DonationStatus] = mapped_column(
        db.Enum(DonationStatus, native_enum=False, length=16, values_callable=_enum_values),
        nullable=False,
        default=DonationStatus.PENDING,
        index=True,
    )

    # ---- Gateway correlation ----
    checkout_token: Mapped[Optional[str]] = mapped_column(
        db.String(255), nullable=True, doc="Verify-session checkout token (write once)"
    )
    secret_token: Mapped[Optional[str]] = mapped_column(
        db.String(255), nullable=True, doc="Verify-session secret token (write once)"
    )
    transaction_id: Mapped[Optional[str]] = mapped_column(
        db.String(120), nullable=True, index=True, doc="Client-reported transaction id"
    )
    gateway_transaction_id: Mapped[Optional[str]] = mapped_column(
        db.String(120), nullable=True, index=True, doc="Gateway-assigned transaction id"
    )
    customer_id: Mapped[Optional[str]] = mapped_column(db.String(120), nullable=True)
    subscription_id: Mapped[Optional[str]] = mapped_column(db.String(120), nullable=True, index=True)
    payment_plan_id: Mapped[Optional[str]] = mapped_column(db.String(120), nullable=True)

    # ---- Subscription tracking ----
    subscription_status: Mapped[Optional[str]] = mapped_column(db.String(40), nullable=True)
    next_billing_date: Mapped[Optional[str]] = mapped_column(
        db.String(32), nullable=True, doc="Gateway-reported date (YYYY-MM-DD)"
    )
    last_status_sync: Mapped[Optional[datetime]] = mapped_column(db.DateTime, nullable=True)

    def __init__(self, **kwargs: Any) -> None:
        kwargs.setdefault("status", DonationStatus.PENDING)
        kwargs.setdefault("donation_type", DonationType.ONE_TIME)
        super().__init__(**kwargs)
        self.check_invariants()

    # ==========================================================
    # Validators
    # ==========================================================
    @validates(*WRITE_ONCE_FIELDS)
    def _validate_write_once(self, key: str, value: Optional[str]) -> Optional[str]:
        current = getattr(self, key, None)
        if current and value != current:
            raise ValueError(f"{key} is already set and cannot be reassigned")
        return value

    @validates("amount")
    def _validate_amount(self, key: str, value: Any) -> Decimal:
        amt = Decimal(str(value))
        if amt <= 0:
            raise ValueError("amount must be greater than zero")
        return amt

    def check_invariants(self) -> None:
        fields = {name: getattr(self, name, None) for name in ONE_TIME_ONLY_FIELDS + MONTHLY_ONLY_FIELDS}
        bad = correlation_conflicts(self.donation_type, fields)
        if bad:
            raise ValueError(
                f"{DonationType(self.donation_type).value} donation cannot carry {', '.join(bad)}"
            )

    # ==========================================================
    # Serialization
    # ==========================================================
    def as_dict(self) -> Dict[str, Any]:
        """Public view; never includes verify-session tokens."""
        return {
            "id": self.id,
            "donorName": self.donor_name,
            "amount": f"{Decimal(self.amount):.2f}",
            "currency": self.currency,
            "donationType": DonationType(self.donation_type).value,
            "status": DonationStatus(self.status).value,
            "transactionId": self.gateway_transaction_id or self.transaction_id,
            "subscriptionId": self.subscription_id,
            "subscriptionStatus": self.subscription_status,
            "nextBillingDate": self.next_billing_date,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self) -> str:  # pragma: no cover
        return f"<Donation {self.id} {self.donation_type} ${self.amount} {self.status}>"


# ──────────────────────────────────────────────────────────────────────────────
# Event Hooks: correlation invariant on every ORM write
# ──────────────────────────────────────────────────────────────────────────────
@event.listens_for(Donation, "before_insert")
@event.listens_for(Donation, "before_update")
def _donation_before_save(mapper, connection, target: Donation) -> None:
    target.check_invariants()
