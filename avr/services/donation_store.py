# avr/services/donation_store.py
"""
Donation Store: the only code that writes Donation rows.

Status changes are single compare-and-set statements
(``UPDATE ... WHERE id = ? AND status IN (<legal sources>)``) so a webhook
and a client-driven completion racing on the same row cannot both win, and
no path can write an illegal transition.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Optional, TypeVar

from sqlalchemy import func, or_, select, update as sa_update
from sqlalchemy.exc import OperationalError

from avr.errors import IllegalTransitionError, NotFoundError
from avr.extensions import db
from avr.models.donation import (
    WRITE_ONCE_FIELDS,
    Donation,
    DonationStatus,
    allowed_sources,
    can_transition,
    correlation_conflicts,
)
from avr.models.mixins import utcnow

log = logging.getLogger(__name__)

T = TypeVar("T")


def _tx_commit() -> None:
    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise


def _retry_on_db_lock(fn: Callable[[], T], *, attempts: int = 6) -> T:
    """Re-run ``fn`` while SQLite reports the database as locked."""
    for i in range(attempts):
        try:
            return fn()
        except OperationalError as e:
            db.session.rollback()
            msg = str(e).lower()
            if ("locked" in msg or "sqlite_busy" in msg) and i < attempts - 1:
                time.sleep(0.05 * (i + 1))
                continue
            raise
    raise RuntimeError("unreachable")  # pragma: no cover


class DonationStore:
    def create(self, **fields: Any) -> Donation:
        """Persist a new pending donation and return it."""
        fields.setdefault("status", DonationStatus.PENDING)

        def _do() -> Donation:
            donation = Donation(**fields)
            db.session.add(donation)
            _tx_commit()
            return donation

        return _retry_on_db_lock(_do)

    def find(self, donation_id: str) -> Optional[Donation]:
        if not donation_id:
            return None
        return db.session.get(Donation, str(donation_id))

    def get(self, donation_id: str) -> Donation:
        donation = self.find(donation_id)
        if donation is None:
            raise NotFoundError(f"Donation {donation_id} not found")
        return donation

    def find_by_transaction_id(self, transaction_id: str) -> Optional[Donation]:
        """Match either the gateway-assigned or the client-reported id."""
        if not transaction_id:
            return None
        stmt = (
            select(Donation)
            .where(
                or_(
                    Donation.gateway_transaction_id == transaction_id,
                    Donation.transaction_id == transaction_id,
                )
            )
            .order_by(Donation.gateway_transaction_id.is_(None))
            .limit(1)
        )
        return db.session.execute(stmt).scalars().first()

    def set_tokens(self, donation_id: str, *, checkout_token: str, secret_token: str) -> Donation:
        def _do() -> Donation:
            donation = self.get(donation_id)
            donation.checkout_token = checkout_token
            donation.secret_token = secret_token
            _tx_commit()
            return donation

        return _retry_on_db_lock(_do)

    def update_fields(self, donation_id: str, **fields: Any) -> Donation:
        """Non-status updates (subscription tracking, customer id)."""
        if "status" in fields:
            raise ValueError("status changes must go through transition()")

        def _do() -> Donation:
            donation = self.get(donation_id)
            for key, value in fields.items():
                setattr(donation, key, value)
            _tx_commit()
            return donation

        return _retry_on_db_lock(_do)

    def transition(self, donation_id: str, to: DonationStatus, **fields: Any) -> bool:
        """Compare-and-set ``status`` to ``to`` plus any correlation fields.

        Returns False (without raising) when the row was no longer in a legal
        source state, i.e. another request got there first.
        """
        to = DonationStatus(to)
        sources = allowed_sources(to)
        if not sources:
            raise IllegalTransitionError(f"No status may transition to {to.value}")

        donation = self.get(donation_id)
        current = DonationStatus(donation.status)
        if not can_transition(current, to):
            log.info("donation %s: %s -> %s not allowed; skipped", donation_id, current.value, to.value)
            return False

        conflicts = correlation_conflicts(donation.donation_type, fields)
        if conflicts:
            raise ValueError(f"{donation.donation_type} donation cannot carry {', '.join(conflicts)}")

        values: dict = {"status": to, "updated_at": utcnow()}
        for key, value in fields.items():
            if value is None:
                continue
            if key in WRITE_ONCE_FIELDS:
                # first writer wins; an existing id is never replaced
                values[key] = func.coalesce(getattr(Donation, key), value)
            else:
                values[key] = value

        stmt = (
            sa_update(Donation)
            .where(Donation.id == donation_id, Donation.status.in_(sources))
            .values(**values)
            .execution_options(synchronize_session=False)
        )

        def _do() -> bool:
            res = db.session.execute(stmt)
            if getattr(res, "rowcount", 0):
                _tx_commit()
                return True
            db.session.rollback()
            return False

        changed = _retry_on_db_lock(_do)
        if changed:
            log.info("donation %s -> %s", donation_id, to.value)
        else:
            log.info("donation %s: transition to %s skipped (state changed concurrently)", donation_id, to.value)
        return changed
