import asyncio
import time

import orjson
import pytest

from campustix.errors import BadRequest, PayloadIncorrect, Unauthorized
from campustix.helpers import sign_payload
from campustix.model.db import (
    ORDER_COMPLETED, ORDER_FAILED, ORDER_PAID_FAILED_EMAIL,
    ORDER_PAID_FAILED_TICKETING, ORDER_PENDING,
    TX_FAILED, TX_PENDING, TX_SUCCESSFUL,
)
from campustix import reconcile

ADMIN = "admin@campustix.test"
MOCK_SECRET = "test-secret"


async def place(services, buyer, event, qty=2):
    res = await services.ledger.create_order(buyer.id, event.id, None, qty)
    return res["order"]["id"]


async def test_successful_payment_end_to_end(services, buyer, owner, event,
                                             signed_webhook, transport):
    order_id = await place(services, buyer, event, qty=2)
    payload, headers = signed_webhook(order_id, amount=10000)

    outcome = await services.reconciler.handle_webhook(payload, headers)
    assert outcome == reconcile.COMPLETED

    order = await services.orders.get(order_id)
    assert order.status == ORDER_COMPLETED
    assert order.paid_at is not None
    assert order.payment_method == "mock"
    assert order.payment_reference.startswith("chg_")

    tx = await services.transactions.get_by_reference(order_id)
    assert tx.status == TX_SUCCESSFUL
    assert tx.provider_transaction_id == order.payment_reference
    logs = await services.transactions.logs(tx.id)
    assert [log.status for log in logs] == ["successful"]
    assert logs[0].amount == 10000

    tickets = await services.tickets.for_order(order_id)
    assert sorted(t.qr_code for t in tickets) == [
        f"{order_id}-1", f"{order_id}-2",
    ]
    assert sorted(t.seat_number for t in tickets) == ["S-1", "S-2"]
    assert all(t.price == 5000 and not t.is_used for t in tickets)

    balances = await services.catalog.get_balances(owner.id)
    assert balances == {"available_balance": 9800.0,
                        "total_earnings": 9800.0}

    to_buyer = [m.subject for m in transport.to(buyer.email)]
    assert "Your Ticket for Freshers Night" in to_buyer
    assert "All Tickets for Freshers Night" in to_buyer
    assert f"Order Confirmation - {order_id}" in to_buyer
    bulk = next(m for m in transport.sent
                if m.subject.startswith("All Tickets"))
    assert bulk.attachments[0].content.startswith(b"%PDF")
    assert "[ADMIN] Payment Successfully Processed" in [
        m.subject for m in transport.to(ADMIN)
    ]


async def test_single_ticket_gets_no_bundle(services, buyer, event,
                                            signed_webhook, transport):
    order_id = await place(services, buyer, event, qty=1)
    payload, headers = signed_webhook(order_id, amount=5000)

    await services.reconciler.handle_webhook(payload, headers)

    subjects = transport.subjects()
    assert "Your Ticket for Freshers Night" in subjects
    assert not any(s.startswith("All Tickets") for s in subjects)
    ticket_mail = transport.to(buyer.email)[0]
    names = [a.filename for a in ticket_mail.attachments]
    assert names[0].endswith(".png") and names[1].endswith(".pdf")


async def test_duplicate_webhook_is_a_noop(services, buyer, owner, event,
                                           signed_webhook, transport):
    order_id = await place(services, buyer, event, qty=2)
    payload, headers = signed_webhook(order_id, amount=10000)

    first = await services.reconciler.handle_webhook(payload, headers)
    sent_after_first = len(transport.sent)
    second = await services.reconciler.handle_webhook(payload, headers)

    assert first == reconcile.COMPLETED
    assert second == reconcile.ALREADY_SETTLED
    assert len(await services.tickets.for_order(order_id)) == 2
    assert (await services.catalog.get_balances(owner.id))[
        "available_balance"] == 9800.0
    assert len(transport.sent) == sent_after_first

    # the replay is still recorded
    tx = await services.transactions.get_by_reference(order_id)
    assert len(await services.transactions.logs(tx.id)) == 2


async def test_amount_mismatch_leaves_order_pending(services, buyer, owner,
                                                    event, signed_webhook,
                                                    transport):
    order_id = await place(services, buyer, event, qty=2)
    payload, headers = signed_webhook(order_id, amount=9000)

    outcome = await services.reconciler.handle_webhook(payload, headers)

    assert outcome == reconcile.AMOUNT_MISMATCH
    assert (await services.orders.get(order_id)).status == ORDER_PENDING
    tx = await services.transactions.get_by_reference(order_id)
    assert tx.status == TX_PENDING
    assert await services.tickets.for_order(order_id) == []
    assert (await services.catalog.get_balances(owner.id))[
        "available_balance"] == 0.0
    alert = transport.to(ADMIN)[0]
    assert alert.subject == "[ADMIN] Payment Amount Mismatch"
    assert "9000" in alert.html and "10000" in alert.html


async def test_amount_within_epsilon_matches(services, buyer, event,
                                             signed_webhook):
    order_id = await place(services, buyer, event, qty=2)
    payload, headers = signed_webhook(order_id, amount=10000.005)

    outcome = await services.reconciler.handle_webhook(payload, headers)
    assert outcome == reconcile.COMPLETED


async def test_bad_signature_rejected_before_lookup(services, buyer, event,
                                                    mock_pay, transport):
    order_id = await place(services, buyer, event, qty=1)
    data = mock_pay.settle(order_id, "successful", amount=5000)
    payload, headers = mock_pay.build_webhook(data)
    headers["x-mockpay-signature"] = sign_payload("wrong", payload)

    with pytest.raises(Unauthorized):
        await services.reconciler.handle_webhook(payload, headers)

    with pytest.raises(Unauthorized):
        await services.reconciler.handle_webhook(payload, {})

    assert (await services.orders.get(order_id)).status == ORDER_PENDING
    tx = await services.transactions.get_by_reference(order_id)
    assert await services.transactions.logs(tx.id) == []
    assert transport.sent == []


async def test_forged_unknown_order_sends_no_alert(services, mock_pay,
                                                   transport):
    payload, headers = mock_pay.build_webhook(
        {"status": "successful", "tx_ref": "nope", "amount": 1}
    )
    headers["x-mockpay-signature"] = "bogus"

    with pytest.raises(Unauthorized):
        await services.reconciler.handle_webhook(payload, headers)
    assert transport.sent == []


async def test_signed_garbage_is_payload_error(services):
    payload = b"{not json"
    headers = {"x-mockpay-signature": sign_payload(MOCK_SECRET, payload)}
    with pytest.raises(PayloadIncorrect):
        await services.reconciler.handle_webhook(payload, headers)

    payload = orjson.dumps({"data": "nope"})
    headers = {"x-mockpay-signature": sign_payload(MOCK_SECRET, payload)}
    with pytest.raises(PayloadIncorrect):
        await services.reconciler.handle_webhook(payload, headers)


async def test_unknown_order_alerts_admin(services, signed_webhook,
                                          transport):
    payload, headers = signed_webhook("missing-order", amount=100)

    outcome = await services.reconciler.handle_webhook(payload, headers)

    assert outcome == reconcile.UNKNOWN_ORDER
    assert transport.subjects() == [
        "[ADMIN] Payment Received for Unknown Order"
    ]


async def test_failed_payment(services, buyer, event, signed_webhook,
                              transport):
    order_id = await place(services, buyer, event, qty=1)
    payload, headers = signed_webhook(order_id, status="failed",
                                      reason="Insufficient funds")

    outcome = await services.reconciler.handle_webhook(payload, headers)

    assert outcome == reconcile.FAILED
    order = await services.orders.get(order_id)
    assert order.status == ORDER_FAILED
    assert order.failure_reason == "Insufficient funds"
    assert order.failed_at is not None
    tx = await services.transactions.get_by_reference(order_id)
    assert tx.status == TX_FAILED
    assert tx.failure_reason == "Insufficient funds"

    mail = transport.to(buyer.email)[0]
    assert mail.subject == "Payment Failed - Order Not Processed"
    assert f"https://tix.example/checkout/{order_id}" in mail.html
    assert order_id[:8] in mail.html


async def test_cancelled_payment_counts_as_failure(services, buyer, event,
                                                   signed_webhook):
    order_id = await place(services, buyer, event, qty=1)
    payload, headers = signed_webhook(order_id, status="cancelled")

    assert await services.reconciler.handle_webhook(payload, headers) == \
        reconcile.FAILED
    order = await services.orders.get(order_id)
    assert order.failure_reason == "Payment failed"


async def test_failure_after_success_keeps_order_completed(
        services, buyer, event, signed_webhook):
    order_id = await place(services, buyer, event, qty=1)
    ok = signed_webhook(order_id, amount=5000)
    await services.reconciler.handle_webhook(*ok)

    bad = signed_webhook(order_id, status="failed")
    outcome = await services.reconciler.handle_webhook(*bad)

    assert outcome == reconcile.NOT_PENDING
    assert (await services.orders.get(order_id)).status == ORDER_COMPLETED
    tx = await services.transactions.get_by_reference(order_id)
    assert tx.status == TX_SUCCESSFUL


async def test_failure_for_unknown_order_is_tolerated(services,
                                                      signed_webhook):
    payload, headers = signed_webhook("ghost", status="failed")
    outcome = await services.reconciler.handle_webhook(payload, headers)
    assert outcome == reconcile.UNKNOWN_ORDER


async def test_other_status_is_ignored(services, buyer, event,
                                       signed_webhook):
    order_id = await place(services, buyer, event, qty=1)
    payload, headers = signed_webhook(order_id, status="pending")

    outcome = await services.reconciler.handle_webhook(payload, headers)

    assert outcome == reconcile.IGNORED
    assert (await services.orders.get(order_id)).status == ORDER_PENDING
    tx = await services.transactions.get_by_reference(order_id)
    assert len(await services.transactions.logs(tx.id)) == 1


async def test_ticketing_failure_marks_order(services, buyer, owner, event,
                                             signed_webhook, transport,
                                             monkeypatch):
    async def boom(*args, **kw):
        raise RuntimeError("disk full")
    monkeypatch.setattr(services.issuer, "create_tickets_and_notify", boom)

    order_id = await place(services, buyer, event, qty=2)
    outcome = await services.reconciler.handle_webhook(
        *signed_webhook(order_id, amount=10000)
    )

    assert outcome == reconcile.PAID_FAILED_TICKETING
    order = await services.orders.get(order_id)
    assert order.status == ORDER_PAID_FAILED_TICKETING
    assert "disk full" in order.failure_reason
    assert "[ADMIN] Ticket Issuance Failed" in transport.subjects()

    # a replay must not try again
    again = await services.reconciler.handle_webhook(
        *signed_webhook(order_id, amount=10000)
    )
    assert again == reconcile.ALREADY_SETTLED


async def test_ticket_email_failure_marks_order(services, buyer, owner,
                                                event, signed_webhook,
                                                transport):
    transport.fail_on = "Your Ticket"
    order_id = await place(services, buyer, event, qty=2)

    outcome = await services.reconciler.handle_webhook(
        *signed_webhook(order_id, amount=10000)
    )

    assert outcome == reconcile.PAID_FAILED_EMAIL
    order = await services.orders.get(order_id)
    assert order.status == ORDER_PAID_FAILED_EMAIL
    assert len(await services.tickets.for_order(order_id)) == 2
    assert (await services.catalog.get_balances(owner.id))[
        "total_earnings"] == 9800.0


async def test_concurrent_deliveries_settle_once(services, other_services,
                                                 buyer, owner, event,
                                                 signed_webhook, transport):
    order_id = await place(services, buyer, event, qty=2)
    payload, headers = signed_webhook(order_id, amount=10000)

    outcomes = await asyncio.gather(
        services.reconciler.handle_webhook(payload, headers),
        other_services.reconciler.handle_webhook(payload, headers),
    )

    assert sorted(outcomes) == sorted([reconcile.COMPLETED,
                                       reconcile.ALREADY_SETTLED])
    assert len(await services.tickets.for_order(order_id)) == 2
    assert (await services.catalog.get_balances(owner.id))[
        "available_balance"] == 9800.0
    assert transport.subjects().count(
        "[ADMIN] Payment Successfully Processed") == 1


async def test_claim_lost_after_read_is_already_settled(
        services, other_services, buyer, owner, event, signed_webhook,
        monkeypatch):
    order_id = await place(services, buyer, event, qty=2)
    payload, headers = signed_webhook(order_id, amount=10000)
    read_order = services.orders.get

    async def read_then_lose(oid):
        order = await read_order(oid)
        # the other worker settles between this read and the claim
        assert await other_services.reconciler.handle_webhook(
            payload, headers) == reconcile.COMPLETED
        return order
    monkeypatch.setattr(services.orders, "get", read_then_lose)

    outcome = await services.reconciler.handle_webhook(payload, headers)

    assert outcome == reconcile.ALREADY_SETTLED
    monkeypatch.undo()
    assert (await services.orders.get(order_id)).status == ORDER_COMPLETED
    assert len(await services.tickets.for_order(order_id)) == 2
    assert (await services.catalog.get_balances(owner.id))[
        "available_balance"] == 9800.0
    tx = await services.transactions.get_by_reference(order_id)
    assert len(await services.transactions.logs(tx.id)) == 2


async def test_credit_and_confirmation_failures_keep_order(
        services, buyer, owner, event, signed_webhook, transport,
        monkeypatch):
    async def ledger_down(*args, **kw):
        raise RuntimeError("balance store down")
    monkeypatch.setattr(services.catalog, "credit_balance", ledger_down)
    transport.fail_on = "Order Confirmation"
    order_id = await place(services, buyer, event, qty=2)

    outcome = await services.reconciler.handle_webhook(
        *signed_webhook(order_id, amount=10000)
    )

    assert outcome == reconcile.COMPLETED
    assert (await services.orders.get(order_id)).status == ORDER_COMPLETED
    assert len(await services.tickets.for_order(order_id)) == 2
    assert (await services.catalog.get_balances(owner.id))[
        "available_balance"] == 0.0
    assert not any(s.startswith("Order Confirmation")
                   for s in transport.subjects())
    assert "[ADMIN] Payment Successfully Processed" in transport.subjects()


async def test_transaction_update_failure_still_issues(
        services, buyer, owner, event, signed_webhook, monkeypatch):
    async def log_down(*args, **kw):
        raise RuntimeError("transactions table locked")
    monkeypatch.setattr(services.transactions, "update_by_reference",
                        log_down)
    order_id = await place(services, buyer, event, qty=2)

    outcome = await services.reconciler.handle_webhook(
        *signed_webhook(order_id, amount=10000)
    )

    assert outcome == reconcile.COMPLETED
    assert (await services.orders.get(order_id)).status == ORDER_COMPLETED
    assert len(await services.tickets.for_order(order_id)) == 2
    assert (await services.catalog.get_balances(owner.id))[
        "available_balance"] == 9800.0
    tx = await services.transactions.get_by_reference(order_id)
    assert tx.status == TX_PENDING


async def test_string_customer_field_is_tolerated(services, buyer, event,
                                                  mock_pay):
    order_id = await place(services, buyer, event, qty=1)
    data = mock_pay.settle(order_id, "successful", amount=5000)
    data["customer"] = "buyer@example.com"

    outcome = await services.reconciler.handle_webhook(
        *mock_pay.build_webhook(data)
    )

    assert outcome == reconcile.COMPLETED


async def test_missing_admin_config_does_not_break_settlement(
        services, buyer, event, signed_webhook):
    services.reconciler.mailer.admin_emails = []
    order_id = await place(services, buyer, event, qty=1)

    outcome = await services.reconciler.handle_webhook(
        *signed_webhook(order_id, amount=5000)
    )
    assert outcome == reconcile.COMPLETED


# ----------------------------
# manual verification
# ----------------------------
async def test_manual_verify_settles_order(services, buyer, event, mock_pay):
    order_id = await place(services, buyer, event, qty=1)
    charge = mock_pay.settle(order_id, "successful", amount=5000)

    res = await services.reconciler.verify_payment(
        transaction_id=charge["id"]
    )

    assert res["status"] == "success"
    assert res["outcome"] == reconcile.COMPLETED
    assert res["data"]["tx_ref"] == order_id
    assert (await services.orders.get(order_id)).status == ORDER_COMPLETED


async def test_manual_verify_unknown_charge(services):
    res = await services.reconciler.verify_payment(reference="nothing")
    assert res["status"] == "error"
    assert "outcome" not in res


async def test_manual_verify_needs_an_id(services):
    with pytest.raises(BadRequest):
        await services.reconciler.verify_payment()


# ----------------------------
# sweep
# ----------------------------
async def _age(services, order_id, seconds):
    await services.orders.update_status(
        order_id, ORDER_PENDING, created_at=time.time() - seconds
    )


async def test_sweep_isolates_failures(services, buyer, event, mock_pay,
                                       monkeypatch):
    broken = await place(services, buyer, event, qty=1)
    paid = await place(services, buyer, event, qty=1)
    declined = await place(services, buyer, event, qty=1)
    unpaid = await place(services, buyer, event, qty=1)
    fresh = await place(services, buyer, event, qty=1)
    ancient = await place(services, buyer, event, qty=1)

    # oldest first: the failing order is swept before the others
    for oid in (broken, paid, declined, unpaid):
        await _age(services, oid, 20 * 60)
    await _age(services, ancient, 48 * 3600)

    mock_pay.settle(paid, "successful", amount=5000)
    mock_pay.settle(declined, "failed", reason="Expired account")
    mock_pay.settle(fresh, "successful", amount=5000)
    mock_pay.settle(ancient, "successful", amount=5000)

    real = mock_pay.verify_transaction

    async def flaky(ref):
        if ref == broken:
            raise RuntimeError("provider exploded")
        return await real(ref)
    monkeypatch.setattr(mock_pay, "verify_transaction", flaky)

    summary = await services.reconciler.sweep_pending_orders()

    assert summary == {"checked": 4, "changed": 2, "errors": 1}
    status = {oid: (await services.orders.get(oid)).status
              for oid in (paid, declined, unpaid, broken, fresh, ancient)}
    assert status == {
        paid: ORDER_COMPLETED,
        declined: ORDER_FAILED,
        unpaid: ORDER_PENDING,
        broken: ORDER_PENDING,
        fresh: ORDER_PENDING,
        ancient: ORDER_PENDING,
    }
