from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError

from app.core.exceptions import LedgerStateError
from app.models import PaymentTransaction
from app.services import payment_ledger


async def _open(db, subscription, provider="fake"):
    tx = await payment_ledger.get_or_create_pending(db, subscription, Decimal("1000.00"), "KES", "mpesa", provider)
    await db.commit()
    return tx


@pytest.mark.asyncio
async def test_get_or_create_pending_is_idempotent(db, subscription):
    first = await _open(db, subscription)
    second = await _open(db, subscription)

    assert first.id == second.id
    assert first.status == "pending"
    assert first.user_id == 1
    assert first.subscription_id == 42


@pytest.mark.asyncio
async def test_storage_rejects_second_open_transaction(db, subscription):
    await _open(db, subscription)

    db.add(
        PaymentTransaction(
            subscription_id=42,
            user_id=1,
            amount=Decimal("1000.00"),
            currency="KES",
            payment_method="mpesa",
            payment_provider="fake",
            status="processing",
        )
    )
    with pytest.raises(IntegrityError):
        await db.flush()
    await db.rollback()


@pytest.mark.asyncio
async def test_new_transaction_after_terminal(db, subscription):
    first = await _open(db, subscription)
    await payment_ledger.mark_terminal(db, first.id, "failed", {"state": "FAILED"})
    await db.commit()

    second = await _open(db, subscription)

    assert second.id != first.id
    assert second.status == "pending"


@pytest.mark.asyncio
async def test_record_gateway_accepted(db, subscription):
    tx = await _open(db, subscription)

    accepted = await payment_ledger.record_gateway_accepted(
        db, tx.id, "inv_1", "https://checkout.test/inv_1", {"invoice": {"invoice_id": "inv_1"}}
    )
    await db.commit()

    assert accepted.status == "processing"
    assert accepted.provider_reference == "inv_1"
    assert accepted.checkout_url == "https://checkout.test/inv_1"
    assert accepted.provider_response == {"initiation": {"invoice": {"invoice_id": "inv_1"}}}

    again = await payment_ledger.record_gateway_accepted(db, tx.id, "inv_1", "https://checkout.test/inv_1", {})
    assert again.provider_response == {"initiation": {"invoice": {"invoice_id": "inv_1"}}}

    with pytest.raises(LedgerStateError):
        await payment_ledger.record_gateway_accepted(db, tx.id, "inv_2", "https://checkout.test/inv_2", {})


@pytest.mark.asyncio
async def test_record_gateway_accepted_on_terminal_transaction(db, subscription):
    tx = await _open(db, subscription)
    await payment_ledger.mark_terminal(db, tx.id, "failed", None, error_message="declined")
    await db.commit()

    with pytest.raises(LedgerStateError):
        await payment_ledger.record_gateway_accepted(db, tx.id, "inv_1", "https://checkout.test/inv_1", {})


@pytest.mark.asyncio
async def test_mark_terminal_is_a_no_op_the_second_time(db, subscription):
    tx = await _open(db, subscription)
    await payment_ledger.record_gateway_accepted(db, tx.id, "inv_1", "https://checkout.test/inv_1", {"ok": True})

    completed, changed = await payment_ledger.mark_terminal(db, tx.id, "completed", {"state": "COMPLETE"})
    await db.commit()
    verified_at = completed.verified_at

    assert changed
    assert completed.status == "completed"
    assert verified_at is not None
    assert completed.provider_response == {"initiation": {"ok": True}, "verification": {"state": "COMPLETE"}}

    repeat, changed = await payment_ledger.mark_terminal(db, tx.id, "completed", {"state": "COMPLETE"})
    assert not changed
    assert repeat.verified_at == verified_at

    late_failure, changed = await payment_ledger.mark_terminal(db, tx.id, "failed", {"state": "FAILED"})
    assert not changed
    assert late_failure.status == "completed"


@pytest.mark.asyncio
async def test_mark_terminal_rejects_open_outcome(db, subscription):
    tx = await _open(db, subscription)
    with pytest.raises(ValueError):
        await payment_ledger.mark_terminal(db, tx.id, "processing", {})


@pytest.mark.asyncio
async def test_lookups(db, subscription):
    first = await _open(db, subscription)
    await payment_ledger.record_gateway_accepted(db, first.id, "inv_1", "https://checkout.test/inv_1", {})
    await payment_ledger.mark_terminal(db, first.id, "failed", {})
    await db.commit()
    second = await _open(db, subscription)

    assert (await payment_ledger.get_latest_for_subscription(db, 42)).id == second.id
    assert (await payment_ledger.get_latest_for_subscription(db, 42, "inv_1")).id == first.id
    assert (await payment_ledger.get_latest_for_subscription(db, 42, "unknown")).id == second.id
    assert (await payment_ledger.get_by_reference(db, "inv_1")).id == first.id
    assert await payment_ledger.get_by_reference(db, "missing") is None
    assert await payment_ledger.get_latest_for_subscription(db, 999) is None


@pytest.mark.asyncio
async def test_concurrent_insert_returns_the_winning_row(monkeypatch, db, session_factory, subscription):
    async with session_factory() as other:
        winner = PaymentTransaction(
            subscription_id=42,
            user_id=1,
            amount=Decimal("1000.00"),
            currency="KES",
            payment_method="mpesa",
            payment_provider="fake",
            status="pending",
        )
        other.add(winner)
        await other.commit()
        winner_id = winner.id

    open_lookup = payment_ledger._get_open_transaction
    missed = []

    async def lookup_missing_once(db, subscription_id):
        if not missed:
            missed.append(subscription_id)
            return None
        return await open_lookup(db, subscription_id)

    monkeypatch.setattr(payment_ledger, "_get_open_transaction", lookup_missing_once)

    tx = await payment_ledger.get_or_create_pending(db, subscription, Decimal("1000.00"), "KES", "mpesa", "fake")

    assert missed == [42]
    assert tx.id == winner_id
    assert tx.status == "pending"
