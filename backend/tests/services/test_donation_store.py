"""DonationStore: guarded transitions and atomic retry bookkeeping."""

import asyncio
from decimal import Decimal

import pytest

from donation_engine.services.donation_store import DonationStore

pytestmark = pytest.mark.integration


async def _create(session_factory, **fields) -> str:
    defaults = {
        "id": "don-1",
        "amount": Decimal("25.00"),
        "currency": "USD",
        "donation_type": "one-time",
        "donor_name": "Grace Hopper",
        "donor_email": "grace@example.org",
    }
    defaults.update(fields)
    async with session_factory() as session:
        donation = await DonationStore(session).create(**defaults)
        await session.commit()
    return donation.id


async def _get(session_factory, donation_id):
    async with session_factory() as session:
        return await DonationStore(session).get(donation_id)


async def _transition(session_factory, donation_id, sources, target, **fields) -> bool:
    async with session_factory() as session:
        applied = await DonationStore(session).transition(donation_id, sources, target, **fields)
        await session.commit()
    return applied


class TestTransition:
    async def test_applies_from_expected_status(self, session_factory):
        donation_id = await _create(session_factory)

        applied = await _transition(session_factory, donation_id, ["pending"], "completed", transaction_id="T1")

        assert applied is True
        donation = await _get(session_factory, donation_id)
        assert donation.status == "completed"
        assert donation.transaction_id == "T1"

    async def test_second_writer_is_a_no_op(self, session_factory):
        donation_id = await _create(session_factory)
        await _transition(session_factory, donation_id, ["pending"], "completed", transaction_id="T1")

        applied = await _transition(session_factory, donation_id, ["pending"], "failed")

        assert applied is False
        assert (await _get(session_factory, donation_id)).status == "completed"

    async def test_invalid_transition_raises(self, session_factory):
        donation_id = await _create(session_factory)

        with pytest.raises(ValueError, match="Invalid transition"):
            await _transition(session_factory, donation_id, ["completed"], "pending")

    async def test_concurrent_writers_one_wins(self, session_factory):
        donation_id = await _create(session_factory)

        results = await asyncio.gather(
            _transition(session_factory, donation_id, ["pending"], "completed", transaction_id="T1"),
            _transition(session_factory, donation_id, ["pending"], "failed"),
        )

        assert sorted(results) == [False, True]


class TestRetryBookkeeping:
    async def _active(self, session_factory) -> str:
        donation_id = await _create(session_factory, donation_type="monthly")
        await _transition(session_factory, donation_id, ["pending"], "active", subscription_id="501")
        return donation_id

    async def test_record_failure_increments(self, session_factory):
        donation_id = await self._active(session_factory)

        async with session_factory() as session:
            store = DonationStore(session)
            first = await store.record_payment_failure(donation_id, "expired card")
            second = await store.record_payment_failure(donation_id, "expired card")
            await session.commit()

        assert (first, second) == (1, 2)
        donation = await _get(session_factory, donation_id)
        assert donation.payment_retry_count == 2
        assert donation.last_payment_failure_reason == "expired card"
        assert donation.last_payment_attempt is not None

    async def test_record_failure_requires_active_subscription(self, session_factory):
        donation_id = await _create(session_factory)

        async with session_factory() as session:
            assert await DonationStore(session).record_payment_failure(donation_id, "x") is None

    async def test_reset_retry_count(self, session_factory):
        donation_id = await self._active(session_factory)
        async with session_factory() as session:
            store = DonationStore(session)
            await store.record_payment_failure(donation_id, "expired card")
            applied = await store.reset_retry_count(donation_id, transaction_id="T9", next_billing_date="2026-12-18")
            await session.commit()

        assert applied is True
        donation = await _get(session_factory, donation_id)
        assert donation.payment_retry_count == 0
        assert donation.last_payment_failure_reason is None
        assert donation.transaction_id == "T9"
        assert donation.next_billing_date == "2026-12-18"


class TestLookups:
    async def test_by_subscription_and_transaction(self, session_factory):
        await _create(session_factory, id="don-1", subscription_id="501", donation_type="monthly")
        await _create(session_factory, id="don-2", transaction_id="T2")

        async with session_factory() as session:
            store = DonationStore(session)
            assert (await store.get_by_subscription_id("501")).id == "don-1"
            assert (await store.get_by_transaction_id("T2")).id == "don-2"
            assert await store.get_by_transaction_id("missing") is None
