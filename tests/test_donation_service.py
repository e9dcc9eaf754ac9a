import logging
from decimal import Decimal
from unittest import mock

import pytest
from sqlalchemy import func, select

from avr.errors import ConfirmationRequired, GatewayError, IllegalTransitionError, NotFoundError, ValidationError
from avr.extensions import db
from avr.models import Donation, DonationStatus, DonationType
from avr.services.donations import ReconcileOutcome, charge_idempotency_key


def _count():
    return db.session.scalar(select(func.count()).select_from(Donation))


def _initialize(service, payload, **overrides):
    data = dict(payload)
    data.update(overrides)
    return service.initialize(data)


# ---- initialize ----
def test_initialize_one_time_creates_pending_donation(service, gateway, donor_payload):
    donation, checkout_token = _initialize(service, donor_payload, amount="25")

    assert donation.status is DonationStatus.PENDING
    assert donation.amount == Decimal("25.00")
    assert donation.donation_type is DonationType.ONE_TIME
    assert checkout_token and donation.checkout_token == checkout_token
    assert donation.secret_token
    assert donation.donor_name == "Jordan Rivera"
    assert _count() == 1

    _, billing = gateway.last("initialize_verification")[1]
    assert billing.province == "TX"


@pytest.mark.parametrize("amount", ["0", "-10", "abc", "", "$"])
def test_initialize_rejects_bad_amounts_without_persisting(service, gateway, donor_payload, amount):
    with pytest.raises(ValidationError) as exc:
        _initialize(service, donor_payload, amount=amount)

    assert "amount" in exc.value.errors
    assert _count() == 0
    assert gateway.count("initialize_verification") == 0


def test_initialize_reports_every_bad_field(service, donor_payload):
    payload = dict(donor_payload, first_name="", donor_email="not-an-email", city="  ", amount="0")
    with pytest.raises(ValidationError) as exc:
        service.initialize(payload)

    assert set(exc.value.errors) == {"first_name", "donor_email", "city", "amount"}
    assert exc.value.errors["amount"] == ["Donation amount must be greater than zero"]


def test_initialize_amount_sources_in_priority_order(service, donor_payload):
    donation, _ = _initialize(service, donor_payload, custom_amount="$1,250.00", amount="25")
    assert donation.amount == Decimal("1250.00")

    payload = dict(donor_payload)
    payload.pop("amount")
    donation, _ = service.initialize(payload, session_amount="40")
    assert donation.amount == Decimal("40.00")


def test_initialize_gateway_failure_keeps_pending_row(service, gateway, donor_payload):
    gateway.fail["initialize_verification"] = GatewayError("down", status_code=503)

    with pytest.raises(GatewayError):
        _initialize(service, donor_payload)

    donation = db.session.scalars(select(Donation)).one()
    assert donation.status is DonationStatus.PENDING
    assert donation.checkout_token is None


# ---- process payment ----
def test_one_time_payment_completes(service, gateway, notifier, donor_payload):
    donation, _ = _initialize(service, donor_payload, amount="25")

    outcome = service.process_payment(donation.id, "CST100", "card_tok_1", transaction_id="client_txn_9")

    assert outcome.status == "completed"
    assert outcome.transaction_id
    row = db.session.get(Donation, donation.id)
    assert row.status is DonationStatus.COMPLETED
    assert row.gateway_transaction_id == outcome.transaction_id
    assert row.transaction_id == "client_txn_9"
    assert row.customer_id == "CST100"
    assert row.subscription_id is None

    args, kwargs = gateway.last("charge_one_time")[1:]
    assert args[0] == Decimal("25.00")
    assert kwargs["idempotency_key"] == charge_idempotency_key(donation.id, "card_tok_1")
    assert [email for email, _ in notifier.sent] == ["jordan.rivera@example.org"]


def test_monthly_payment_activates_subscription(service, gateway, notifier, donor_payload):
    donation, _ = _initialize(service, donor_payload, amount="50", donation_type="monthly")

    outcome = service.process_payment(donation.id, "CST200", "card_tok_2")

    assert outcome.status == "active"
    row = db.session.get(Donation, donation.id)
    assert row.status is DonationStatus.ACTIVE
    assert row.subscription_id and row.payment_plan_id
    assert row.customer_id == "CST200"
    assert row.next_billing_date == "2026-11-19"
    assert row.gateway_transaction_id is None and row.transaction_id is None
    assert gateway.count("charge_one_time") == 0
    assert gateway.last("create_subscription")[1][2] == Decimal("50.00")
    assert notifier.sent[0][1].donation_type == "Monthly"


def test_monthly_donors_on_same_rung_share_a_plan(service, gateway, donor_payload):
    first, _ = _initialize(service, donor_payload, amount="30", donation_type="monthly")
    second, _ = _initialize(service, donor_payload, amount="37", donation_type="monthly")

    a = service.process_payment(first.id, "C1", "tok_a")
    b = service.process_payment(second.id, "C2", "tok_b")

    assert a.payment_plan_id == b.payment_plan_id
    assert gateway.count("create_payment_plan") == 1
    # subscriptions keep each donor's real amount
    assert [c[1][2] for c in gateway.calls if c[0] == "create_subscription"] == [Decimal("30.00"), Decimal("37.00")]


def test_processing_twice_does_not_charge_twice(service, gateway, notifier, donor_payload):
    donation, _ = _initialize(service, donor_payload)
    first = service.process_payment(donation.id, "C1", "tok")
    second = service.process_payment(donation.id, "C1", "tok")

    assert gateway.count("charge_one_time") == 1
    assert second.already_processed and second.transaction_id == first.transaction_id
    assert len(notifier.sent) == 1


def test_failed_charge_leaves_donation_pending_and_retryable(service, gateway, donor_payload):
    donation, _ = _initialize(service, donor_payload)
    gateway.fail["charge_one_time"] = GatewayError("declined", status_code=402)

    with pytest.raises(GatewayError):
        service.process_payment(donation.id, "C1", "tok")
    assert db.session.get(Donation, donation.id).status is DonationStatus.PENDING

    del gateway.fail["charge_one_time"]
    assert service.process_payment(donation.id, "C1", "tok").status == "completed"


def test_process_unknown_donation(service):
    with pytest.raises(NotFoundError):
        service.process_payment("missing", "C1", "tok")


def test_process_requires_card_token(service, gateway, donor_payload):
    donation, _ = _initialize(service, donor_payload)
    with pytest.raises(ValidationError) as exc:
        service.process_payment(donation.id, "C1", "")
    assert "card_token" in exc.value.errors
    assert gateway.count("charge_one_time") == 0


def test_missing_customer_code_gets_fallback(service, gateway, donor_payload):
    donation, _ = _initialize(service, donor_payload)
    service.process_payment(donation.id, None, "tok")

    customer_code = gateway.last("charge_one_time")[1][2]
    assert customer_code.startswith(f"DON_{donation.id}_")


def test_client_amount_mismatch_charges_stored_amount(service, gateway, donor_payload, caplog):
    donation, _ = _initialize(service, donor_payload, amount="25")

    with caplog.at_level(logging.WARNING, logger="avr.services.donations"):
        service.process_payment(donation.id, "C1", "tok", client_amount="2.50")

    assert gateway.last("charge_one_time")[1][0] == Decimal("25.00")
    assert "differs from stored" in caplog.text


def test_receipt_failure_does_not_fail_payment(service, notifier, donor_payload, caplog):
    notifier.fail = True
    donation, _ = _initialize(service, donor_payload)

    outcome = service.process_payment(donation.id, "C1", "tok")

    assert outcome.status == "completed"
    assert "receipt failed" in caplog.text


# ---- webhook reconciliation ----
def _pending_with_gateway_txn(service, txn="txn_hook"):
    return service.store.create(
        donor_name="Sam Hill",
        donor_email="sam@example.org",
        amount=Decimal("75.00"),
        gateway_transaction_id=txn,
    )


def test_reconcile_is_idempotent(service, notifier):
    donation = _pending_with_gateway_txn(service)

    assert service.reconcile_webhook("txn_hook") is ReconcileOutcome.COMPLETED
    assert service.reconcile_webhook("txn_hook") is ReconcileOutcome.ALREADY_COMPLETED

    assert db.session.get(Donation, donation.id).status is DonationStatus.COMPLETED
    assert len(notifier.sent) == 1


def test_reconcile_matches_client_reported_id(service, donor_payload):
    donation, _ = _initialize(service, donor_payload)
    service.process_payment(donation.id, "C1", "tok", transaction_id="client_txn_1")

    assert service.reconcile_webhook("client_txn_1") is ReconcileOutcome.ALREADY_COMPLETED


def test_reconcile_unknown_transaction_is_not_an_error(service):
    assert service.reconcile_webhook("txn_out_of_band") is ReconcileOutcome.NOT_FOUND


def test_reconcile_leaves_terminal_states_alone(service):
    donation = _pending_with_gateway_txn(service, "txn_refund")
    service.store.transition(donation.id, DonationStatus.REFUNDED)

    assert service.reconcile_webhook("txn_refund") is ReconcileOutcome.IGNORED
    assert db.session.get(Donation, donation.id).status is DonationStatus.REFUNDED


def test_store_refuses_illegal_transitions(service):
    donation = _pending_with_gateway_txn(service, "txn_x")
    assert service.store.transition(donation.id, DonationStatus.COMPLETED)
    assert not service.store.transition(donation.id, DonationStatus.CANCELLED)
    with pytest.raises(IllegalTransitionError):
        service.store.transition(donation.id, DonationStatus.PENDING)
    assert db.session.get(Donation, donation.id).status is DonationStatus.COMPLETED


def test_write_once_ids_survive_a_second_writer(service):
    donation = _pending_with_gateway_txn(service, "txn_first")
    service.store.transition(donation.id, DonationStatus.COMPLETED, gateway_transaction_id="txn_second")
    assert db.session.get(Donation, donation.id).gateway_transaction_id == "txn_first"


# ---- cancellation / sync ----
def _active_monthly(service, donor_payload):
    donation, _ = _initialize(service, donor_payload, amount="50", donation_type="monthly")
    service.process_payment(donation.id, "C1", "tok")
    return db.session.get(Donation, donation.id)


def test_cancel_requires_confirmation(service, gateway, donor_payload):
    donation = _active_monthly(service, donor_payload)

    with pytest.raises(ConfirmationRequired):
        service.cancel_subscription(donation.id, secret_token=donation.secret_token, confirmed=False)

    assert gateway.count("cancel_subscription") == 0
    assert db.session.get(Donation, donation.id).status is DonationStatus.ACTIVE


def test_confirmed_cancel(service, gateway, donor_payload):
    donation = _active_monthly(service, donor_payload)

    result = service.cancel_subscription(donation.id, secret_token=donation.secret_token, confirmed=True)

    assert result.status is DonationStatus.CANCELLED
    assert result.subscription_status == "cancelled"
    assert gateway.last("cancel_subscription")[1] == (donation.subscription_id,)

    # already cancelled: no second gateway call
    service.cancel_subscription(donation.id, secret_token=donation.secret_token, confirmed=True)
    assert gateway.count("cancel_subscription") == 1


def test_cancel_gateway_failure_keeps_active(service, gateway, donor_payload):
    donation = _active_monthly(service, donor_payload)
    gateway.fail["cancel_subscription"] = GatewayError("down", status_code=500)

    with pytest.raises(GatewayError):
        service.cancel_subscription(donation.id, secret_token=donation.secret_token, confirmed=True)
    assert db.session.get(Donation, donation.id).status is DonationStatus.ACTIVE


def test_cancel_one_time_is_illegal(service, donor_payload):
    donation, _ = _initialize(service, donor_payload)
    service.process_payment(donation.id, "C1", "tok")
    with pytest.raises(IllegalTransitionError):
        service.cancel_subscription(donation.id, secret_token=donation.secret_token, confirmed=True)


def test_sync_subscription_records_gateway_state(service, gateway, donor_payload):
    donation = _active_monthly(service, donor_payload)

    snap = service.sync_subscription(donation.id, secret_token=donation.secret_token)

    row = db.session.get(Donation, donation.id)
    assert snap.status == "active"
    assert row.next_billing_date == "2026-12-19"
    assert row.last_status_sync is not None
    assert row.status is DonationStatus.ACTIVE


def test_sync_picks_up_gateway_side_cancellation(service, gateway, donor_payload):
    donation = _active_monthly(service, donor_payload)
    gateway.subscription_status = "cancelled"

    service.sync_subscription(donation.id, secret_token=donation.secret_token)

    row = db.session.get(Donation, donation.id)
    assert row.status is DonationStatus.CANCELLED
    assert row.subscription_status == "cancelled"


# ---- ownership ----
def test_cancel_without_proof_of_ownership_is_not_found(service, gateway, donor_payload):
    donation = _active_monthly(service, donor_payload)

    for kwargs in ({}, {"secret_token": "sec_guess"}, {"user_id": "someone-else"}):
        with pytest.raises(NotFoundError):
            service.cancel_subscription(donation.id, confirmed=True, **kwargs)

    assert gateway.count("cancel_subscription") == 0
    assert db.session.get(Donation, donation.id).status is DonationStatus.ACTIVE


def test_account_owner_can_cancel_without_token(service, gateway, donor_payload):
    donation, _ = service.initialize(dict(donor_payload, amount="50", donation_type="monthly"), user_id="acct-7")
    service.process_payment(donation.id, "C1", "tok")

    with pytest.raises(NotFoundError):
        service.cancel_subscription(donation.id, confirmed=True, user_id="acct-8")

    result = service.cancel_subscription(donation.id, confirmed=True, user_id="acct-7")
    assert result.status is DonationStatus.CANCELLED


def test_sync_without_proof_of_ownership_is_not_found(service, gateway, donor_payload):
    donation = _active_monthly(service, donor_payload)

    with pytest.raises(NotFoundError):
        service.sync_subscription(donation.id)
    assert gateway.count("get_subscription") == 0


def test_disallowed_transition_issues_no_update(service, monkeypatch):
    donation = _pending_with_gateway_txn(service, "txn_done")
    service.store.transition(donation.id, DonationStatus.COMPLETED)

    execute = mock.Mock(wraps=db.session.execute)
    monkeypatch.setattr(db.session, "execute", execute)

    assert service.store.transition(donation.id, DonationStatus.CANCELLED) is False
    execute.assert_not_called()
