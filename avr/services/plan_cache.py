# avr/services/plan_cache.py
"""
Process-local cache of recurring payment plans.

Donors choosing similar monthly amounts share one gateway-side plan: the
amount is snapped to a fixed ladder first, and the per-donor subscription
carries the real amount. Entries are never invalidated; a restart just
means one extra plan may be created on the gateway.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, Optional, Tuple

from avr.models.mixins import utcnow
from avr.services.amounts import CENTS

log = logging.getLogger(__name__)

PLAN_LADDER: Tuple[Decimal, ...] = tuple(Decimal(v) for v in (5, 10, 25, 50, 100, 250, 500, 1000))
EXACT_PLAN_THRESHOLD = Decimal("1000")

PlanKey = Tuple[Decimal, str]
CreatePlanFn = Callable[[Decimal, str], str]


def standardize_plan_amount(amount: Decimal) -> Decimal:
    """Snap to the closest ladder rung; ties go to the smaller rung.

    Amounts at or above 1000 keep their exact value.
    """
    amt = Decimal(str(amount))
    if amt >= EXACT_PLAN_THRESHOLD:
        return amt.quantize(CENTS)

    best = PLAN_LADDER[0]
    best_diff = abs(amt - best)
    for rung in PLAN_LADDER[1:]:
        diff = abs(amt - rung)
        if diff < best_diff:
            best, best_diff = rung, diff
    return best


def plan_name_for(amount: Decimal) -> str:
    if amount == amount.to_integral_value():
        return f"Monthly Donation - ${amount:.0f}"
    return f"Monthly Donation - ${amount:.2f}"


@dataclass(frozen=True)
class PlanEntry:
    plan_id: str
    created_at: datetime


class PaymentPlanCache:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: Dict[PlanKey, PlanEntry] = {}
        self._key_locks: Dict[PlanKey, threading.Lock] = {}

    def get(self, amount: Decimal, currency: str) -> Optional[PlanEntry]:
        key = (standardize_plan_amount(amount), currency.upper())
        with self._lock:
            return self._entries.get(key)

    def get_or_create(self, amount: Decimal, currency: str, create_fn: CreatePlanFn) -> str:
        """Return the plan id for ``amount``'s rung, creating it on first use.

        ``create_fn(standardized_amount, plan_name)`` runs at most once per key
        even under concurrent callers; other keys are not blocked meanwhile.
        """
        std = standardize_plan_amount(amount)
        key = (std, currency.upper())

        with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                return entry.plan_id
            key_lock = self._key_locks.setdefault(key, threading.Lock())

        with key_lock:
            with self._lock:
                entry = self._entries.get(key)
            if entry is not None:
                return entry.plan_id

            plan_id = create_fn(std, plan_name_for(std))
            with self._lock:
                self._entries[key] = PlanEntry(plan_id=plan_id, created_at=utcnow())
            log.info("payment plan cached: amount=%s currency=%s plan_id=%s", std, key[1], plan_id)
            return plan_id

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
