import threading
import time
from decimal import Decimal

import pytest

from avr.services.plan_cache import PaymentPlanCache, plan_name_for, standardize_plan_amount


@pytest.mark.parametrize(
    "amount, rung",
    [
        ("1", "5"),
        ("7.5", "5"),  # tie -> smaller rung
        ("7.51", "10"),
        ("30", "25"),
        ("37", "25"),
        ("37.5", "25"),  # tie -> smaller rung
        ("38", "50"),
        ("40", "50"),
        ("75", "50"),
        ("76", "100"),
        ("750", "500"),
        ("999.99", "1000"),
    ],
)
def test_ladder_snapping(amount, rung):
    assert standardize_plan_amount(Decimal(amount)) == Decimal(rung)


def test_large_amounts_keep_exact_value():
    assert standardize_plan_amount(Decimal("1000")) == Decimal("1000.00")
    assert standardize_plan_amount(Decimal("1234.56")) == Decimal("1234.56")


def test_plan_names():
    assert plan_name_for(Decimal("25")) == "Monthly Donation - $25"
    assert plan_name_for(Decimal("1234.56")) == "Monthly Donation - $1234.56"


def test_same_rung_shares_one_plan():
    cache = PaymentPlanCache()
    created = []

    def create(amount, name):
        created.append((amount, name))
        return f"plan_{len(created)}"

    first = cache.get_or_create(Decimal("30"), "USD", create)
    second = cache.get_or_create(Decimal("37"), "usd", create)

    assert first == second == "plan_1"
    assert created == [(Decimal("25"), "Monthly Donation - $25")]


def test_different_rungs_and_currencies_get_separate_plans():
    cache = PaymentPlanCache()
    ids = iter(["p1", "p2", "p3"])

    def create(amount, name):
        return next(ids)

    assert cache.get_or_create(Decimal("37"), "USD", create) == "p1"
    assert cache.get_or_create(Decimal("40"), "USD", create) == "p2"
    assert cache.get_or_create(Decimal("37"), "CAD", create) == "p3"
    assert len(cache) == 3


def test_failed_creation_is_not_cached():
    cache = PaymentPlanCache()

    def boom(amount, name):
        raise RuntimeError("gateway down")

    with pytest.raises(RuntimeError):
        cache.get_or_create(Decimal("50"), "USD", boom)

    assert cache.get(Decimal("50"), "USD") is None
    assert cache.get_or_create(Decimal("50"), "USD", lambda a, n: "plan_ok") == "plan_ok"


def test_concurrent_callers_create_once():
    cache = PaymentPlanCache()
    calls = []
    lock = threading.Lock()

    def slow_create(amount, name):
        with lock:
            calls.append(amount)
        time.sleep(0.05)
        return "plan_shared"

    results = []

    def worker():
        results.append(cache.get_or_create(Decimal("100"), "USD", slow_create))

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results == ["plan_shared"] * 8
    assert calls == [Decimal("100")]
