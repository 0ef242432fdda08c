"""Notification reconciliation: dedup, confirmatory fetch, and atomic settlement."""

import logging
from decimal import Decimal

import pytest
from sqlalchemy import update

from clubpay.common.errors import GatewayUnauthorized, GatewayUnreachable
from clubpay.services.billing import charges as charges_module
from clubpay.services.billing.models import Charge, NotificationRecord, OutboxEvent, PaymentAttempt
from clubpay.services.gateway.schemas import PayerInfo


def _notify(reconciler, payment_id: str) -> dict:
    return reconciler.handle_notification({}, {"type": "payment", "data": {"id": payment_id}})


def _failing_enqueue(*args, **kwargs):
    raise RuntimeError("outbox unavailable")


def _state(session_factory, charge_id: int):
    with session_factory() as db:
        charge = db.get(Charge, charge_id)
        attempts = db.query(PaymentAttempt).filter(PaymentAttempt.charge_id == charge_id).all()
        events = db.query(OutboxEvent).all()
        records = db.query(NotificationRecord).all()
        return charge, attempts, events, records


def test_end_to_end_payment_notification(reconciler, gateway, make_charge, session_factory):
    """Charge 42 of unit 7 is settled by payment 987, and a redelivery changes nothing."""

    make_charge(id=42, unit_id=7, amount=Decimal("15000.00"))
    gateway.add_payment("987", status="approved", external_reference="charge_42_unit_7")

    first = _notify(reconciler, "987")

    assert first["outcome"] == "created"
    assert first["status"] == "Paid"
    charge, attempts, events, records = _state(session_factory, 42)
    assert charge.status == "Paid"
    assert "987" in charge.receipt_reference
    assert charge.paid_at is not None
    assert [(a.gateway_payment_id, a.status) for a in attempts] == [("987", "Paid")]
    assert len(events) == 1
    assert events[0].payload["payload"]["receipt_reference"] == "MP-987"
    assert records[0].processing_status == "processed"
    assert records[0].transaction_id == "987"

    second = _notify(reconciler, "987")

    assert second["message"] == "notification already processed"
    assert gateway.fetch_calls == ["987"]
    charge_after, attempts_after, events_after, _ = _state(session_factory, 42)
    assert charge_after.receipt_reference == charge.receipt_reference
    assert charge_after.paid_at == charge.paid_at
    assert len(attempts_after) == 1
    assert len(events_after) == 1


def test_many_deliveries_settle_once(reconciler, gateway, make_charge, session_factory):
    charge = make_charge()
    gateway.add_payment("111", external_reference=f"charge_{charge.id}_unit_7")

    for _ in range(5):
        reconciler.handle_notification({"id": "111", "topic": "payment"}, None)

    _, attempts, events, records = _state(session_factory, charge.id)
    assert len(attempts) == 1
    assert len(events) == 1
    assert len(records) == 1
    assert gateway.fetch_calls == ["111"]


def test_pending_record_is_reprocessed_on_redelivery(reconciler, notifications, gateway, make_charge, session_factory):
    """A record left `pending` by an interrupted delivery is processed on the next one."""

    from clubpay.services.billing.notifications import parse_notification

    charge = make_charge()
    gateway.add_payment("222", external_reference=f"charge_{charge.id}_unit_7")
    notifications.register(parse_notification({"id": "222", "topic": "payment"}, None))

    result = reconciler.handle_notification({"id": "222", "topic": "payment"}, None)

    assert result["outcome"] == "created"
    charge_after, _, _, records = _state(session_factory, charge.id)
    assert charge_after.status == "Paid"
    assert records[0].processing_status == "processed"


def test_recovery_path_creates_attempt_with_gateway_amount(reconciler, gateway, make_charge, session_factory):
    charge = make_charge(amount=Decimal("15000.00"))
    gateway.add_payment("333", external_reference=f"charge_{charge.id}_unit_7", amount="15000.00")

    _notify(reconciler, "333")

    charge_after, attempts, _, _ = _state(session_factory, charge.id)
    assert len(attempts) == 1
    assert attempts[0].amount == Decimal("15000.00")
    assert attempts[0].status == "Paid"
    assert attempts[0].gateway_payment_id == "333"
    assert charge_after.status == "Paid"


def test_pending_payment_creates_pending_attempt(reconciler, gateway, make_charge, session_factory):
    charge = make_charge()
    gateway.add_payment("334", status="in_process", external_reference=f"charge_{charge.id}_unit_7")

    _notify(reconciler, "334")

    charge_after, attempts, events, _ = _state(session_factory, charge.id)
    assert attempts[0].status == "InProcess"
    assert charge_after.status == "Pending"
    assert events == []


def test_garbage_reference_is_acknowledged_and_recorded(reconciler, gateway, session_factory):
    gateway.add_payment("444", external_reference="garbage_data")

    result = _notify(reconciler, "444")

    assert "could not be matched" in result["message"]
    with session_factory() as db:
        record = db.query(NotificationRecord).one()
        assert record.processing_status == "error"
        assert "malformed external reference" in record.processing_error
        assert record.transaction_id == "444"
        assert db.query(PaymentAttempt).count() == 0


def test_unknown_charge_is_recorded_as_error(reconciler, gateway, session_factory):
    gateway.add_payment("445", external_reference="charge_999_unit_7")

    _notify(reconciler, "445")

    with session_factory() as db:
        record = db.query(NotificationRecord).one()
        assert record.processing_status == "error"
        assert "charge 999" in record.processing_error


def test_unit_mismatch_is_recorded_as_error(reconciler, gateway, make_charge, session_factory):
    charge = make_charge(unit_id=7)
    gateway.add_payment("446", external_reference=f"charge_{charge.id}_unit_8")

    _notify(reconciler, "446")

    charge_after, attempts, _, records = _state(session_factory, charge.id)
    assert records[0].processing_status == "error"
    assert attempts == []
    assert charge_after.status == "Pending"


def test_unreachable_gateway_marks_error_and_redelivery_recovers(reconciler, gateway, make_charge, session_factory):
    charge = make_charge()
    gateway.add_payment("555", external_reference=f"charge_{charge.id}_unit_7")
    gateway.fetch_error = GatewayUnreachable("fetch_payment timed out")

    result = _notify(reconciler, "555")

    assert "payment_id" in result
    _, _, _, records = _state(session_factory, charge.id)
    assert records[0].processing_status == "error"
    assert "gateway_unreachable" in records[0].processing_error

    gateway.fetch_error = None
    _notify(reconciler, "555")

    charge_after, _, _, records = _state(session_factory, charge.id)
    assert records[0].processing_status == "processed"
    assert charge_after.status == "Paid"


@pytest.mark.parametrize("error", [GatewayUnauthorized("bad token"), None])
def test_permanent_gateway_errors_are_recorded(reconciler, gateway, session_factory, error):
    # With no error configured the fake answers 404 for unknown payments.
    gateway.fetch_error = error

    _notify(reconciler, "666")

    with session_factory() as db:
        assert db.query(NotificationRecord).one().processing_status == "error"


def test_failing_settlement_rolls_back_attempt_and_charge(reconciler, gateway, make_charge, session_factory, monkeypatch):
    """Neither the attempt nor the charge transition survives a failed transaction."""

    monkeypatch.setattr(charges_module, "enqueue_event", _failing_enqueue)
    charge = make_charge()
    gateway.add_payment("777", external_reference=f"charge_{charge.id}_unit_7")

    result = _notify(reconciler, "777")

    assert "processing error" in result["message"]
    charge_after, attempts, events, records = _state(session_factory, charge.id)
    assert charge_after.status == "Pending"
    assert charge_after.receipt_reference is None
    assert attempts == []
    assert events == []
    assert records[0].processing_status == "error"


def test_failing_settlement_keeps_existing_attempt_unchanged(
    reconciler, payments, gateway, make_charge, session_factory, monkeypatch
):
    charge = make_charge()
    attempt, preference = payments.initiate_payment(charge.id, PayerInfo(email="ana@club.test"))
    gateway.add_payment("778", external_reference=f"charge_{charge.id}_unit_7", preference_id=preference.id)
    monkeypatch.setattr(charges_module, "enqueue_event", _failing_enqueue)

    _notify(reconciler, "778")

    charge_after, attempts, _, _ = _state(session_factory, charge.id)
    assert charge_after.status == "Pending"
    assert [(a.id, a.status, a.gateway_payment_id) for a in attempts] == [(attempt.id, "Pending", None)]


def test_notification_links_initiated_attempt(reconciler, payments, gateway, make_charge, session_factory):
    """The gateway payment is attached to the attempt created at checkout."""

    charge = make_charge()
    attempt, preference = payments.initiate_payment(charge.id, PayerInfo(email="ana@club.test"))
    gateway.add_payment("888", external_reference=f"charge_{charge.id}_unit_7", preference_id=preference.id)

    result = _notify(reconciler, "888")

    assert result["outcome"] == "linked"
    charge_after, attempts, _, _ = _state(session_factory, charge.id)
    assert [(a.id, a.gateway_payment_id, a.status) for a in attempts] == [(attempt.id, "888", "Paid")]
    assert charge_after.receipt_reference == "MP-888"


def test_paid_attempt_is_not_downgraded_by_later_gateway_state(reconciler, gateway, make_charge, session_factory):
    charge = make_charge()
    gateway.add_payment("999", external_reference=f"charge_{charge.id}_unit_7")
    _notify(reconciler, "999")

    later = gateway.add_payment("999", status="pending", external_reference=f"charge_{charge.id}_unit_7")
    assert reconciler.reconcile_payment(later) == "unchanged"

    charge_after, attempts, _, _ = _state(session_factory, charge.id)
    assert attempts[0].status == "Paid"
    assert charge_after.status == "Paid"


def test_rejected_attempt_upgrade_is_flagged(reconciler, gateway, make_charge, session_factory, caplog):
    charge = make_charge()
    rejected = gateway.add_payment("1001", status="rejected", external_reference=f"charge_{charge.id}_unit_7")
    assert reconciler.reconcile_payment(rejected) == "created"

    approved = gateway.add_payment("1001", status="approved", external_reference=f"charge_{charge.id}_unit_7")
    with caplog.at_level(logging.WARNING, logger="clubpay"):
        assert reconciler.reconcile_payment(approved) == "updated"

    charge_after, attempts, _, _ = _state(session_factory, charge.id)
    assert attempts[0].status == "Paid"
    assert charge_after.status == "Paid"
    assert any("rejected attempt reported paid" in r.getMessage() for r in caplog.records)


def test_approved_payment_for_cancelled_charge(reconciler, gateway, make_charge, session_factory):
    charge = make_charge(status="Cancelled")
    gateway.add_payment("1002", external_reference=f"charge_{charge.id}_unit_7")

    _notify(reconciler, "1002")

    charge_after, attempts, events, records = _state(session_factory, charge.id)
    assert charge_after.status == "Cancelled"
    assert attempts[0].status == "Paid"
    assert events == []
    assert records[0].processing_status == "processed"


def test_concurrent_attempt_insert_is_resolved_as_found(
    reconciler, payments, gateway, make_charge, session_factory, monkeypatch
):
    """Losing the insert race on the gateway payment id re-reads and applies."""

    charge = make_charge()
    with session_factory() as db:
        db.add(PaymentAttempt(charge_id=charge.id, amount=Decimal("15000.00"), status="Pending", gateway_payment_id="1003"))
        db.commit()
    payment = gateway.add_payment("1003", external_reference=f"charge_{charge.id}_unit_7")

    real_find = payments.find_by_gateway_id
    calls = []

    def stale_first_lookup(db, gateway_payment_id):
        calls.append(gateway_payment_id)
        return None if len(calls) == 1 else real_find(db, gateway_payment_id)

    monkeypatch.setattr(payments, "find_by_gateway_id", stale_first_lookup)

    assert reconciler.reconcile_payment(payment) == "updated"

    charge_after, attempts, _, _ = _state(session_factory, charge.id)
    assert len(attempts) == 1
    assert attempts[0].status == "Paid"
    assert charge_after.status == "Paid"


def test_unrelated_topics_and_empty_payloads_are_acknowledged(reconciler, gateway, session_factory):
    assert "without actionable data" in reconciler.handle_notification({}, None)["message"]
    assert "merchant_order" in reconciler.handle_notification({"id": "5", "topic": "merchant_order"}, None)["message"]

    assert gateway.fetch_calls == []
    with session_factory() as db:
        assert db.query(NotificationRecord).count() == 0


@pytest.mark.parametrize("stale_status", ["pending", "in_process"])
def test_rejected_attempt_ignores_stale_gateway_state(reconciler, gateway, make_charge, session_factory, stale_status):
    charge = make_charge()
    rejected = gateway.add_payment("1004", status="rejected", external_reference=f"charge_{charge.id}_unit_7")
    reconciler.reconcile_payment(rejected)

    stale = gateway.add_payment("1004", status=stale_status, external_reference=f"charge_{charge.id}_unit_7")
    assert reconciler.reconcile_payment(stale) == "unchanged"

    charge_after, attempts, _, _ = _state(session_factory, charge.id)
    assert attempts[0].status == "Rejected"
    assert charge_after.status == "Pending"


def test_initiated_attempt_linked_elsewhere_gets_a_new_attempt(
    reconciler, payments, gateway, make_charge, session_factory, monkeypatch
):
    """An approved payment still settles when its checkout attempt was claimed by another payment."""

    charge = make_charge()
    attempt, preference = payments.initiate_payment(charge.id, PayerInfo(email="ana@club.test"))
    gateway.add_payment("2", external_reference=f"charge_{charge.id}_unit_7", preference_id=preference.id)
    real_find = payments.find_unlinked_by_preference

    def linked_by_other_delivery(db, charge_id, preference_id):
        found = real_find(db, charge_id, preference_id)
        with session_factory() as other:
            other.execute(
                update(PaymentAttempt)
                .where(PaymentAttempt.id == found.id)
                .values(gateway_payment_id="1", status="Rejected")
            )
            other.commit()
        return found

    monkeypatch.setattr(payments, "find_unlinked_by_preference", linked_by_other_delivery)

    result = _notify(reconciler, "2")

    assert result["outcome"] == "created"
    charge_after, attempts, _, records = _state(session_factory, charge.id)
    assert charge_after.status == "Paid"
    assert charge_after.receipt_reference == "MP-2"
    assert sorted((a.gateway_payment_id, a.status) for a in attempts) == [("1", "Rejected"), ("2", "Paid")]
    assert records[0].processing_status == "processed"


def test_lost_attempt_update_is_retried_with_fresh_state(payments, make_charge, session_factory):
    charge = make_charge()
    with session_factory() as db:
        attempt = PaymentAttempt(charge_id=charge.id, amount=Decimal("15000.00"), status="Pending", gateway_payment_id="1005")
        db.add(attempt)
        db.commit()
        with session_factory() as other:
            other.execute(update(PaymentAttempt).where(PaymentAttempt.id == attempt.id).values(status="InProcess"))
            other.commit()

        assert payments.apply_payment_result(db, attempt, "approved", Decimal("15000.00")) is True

    charge_after, attempts, _, _ = _state(session_factory, charge.id)
    assert attempts[0].status == "Paid"
    assert charge_after.status == "Paid"
    assert charge_after.receipt_reference == "MP-1005"
