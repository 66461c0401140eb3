"""PaymentOrchestrator scenarios against GatewayFake and a real database.

Covers:
- initialize: pending donation, verify-mode checkout, settings validation
- one-time: charge, replay, decline, transient retry, unknown outcome
- monthly: plan + subscription, activation, decline
- donor cancellation of an owned subscription
"""

from decimal import Decimal

import pytest
from sqlalchemy import select

from donation_engine.core.exceptions import (
    DonationNotFoundError,
    DonationStateError,
    DonationValidationError,
    GatewayAuthError,
    GatewayDeclined,
    GatewayNetworkError,
    GatewayServerError,
    GatewayValidationError,
)
from donation_engine.db.models.donation import Donation
from donation_engine.integrations.gateway import idempotency_key
from donation_engine.schemas.gateway import CheckoutMode

pytestmark = pytest.mark.integration

CLIENT_IP = "203.0.113.9"
CARD_TOKEN = "card-token-4242"


async def _load(session_factory, donation_id: str) -> Donation:
    async with session_factory() as session:
        return await session.get(Donation, donation_id)


async def _all(session_factory) -> list[Donation]:
    async with session_factory() as session:
        return list((await session.execute(select(Donation))).scalars().all())


# =============================================================================
# Initialization
# =============================================================================


class TestInitialize:
    async def test_creates_pending_donation_with_checkout_tokens(
        self, orchestrator, gateway_fake, session_factory, make_donation_request
    ):
        response = await orchestrator.initialize(make_donation_request())

        donation = await _load(session_factory, response.donation_id)
        assert donation.status == "pending"
        assert donation.amount == Decimal("25.00")
        assert donation.currency == "USD"
        assert donation.checkout_token == response.checkout_token
        assert donation.secret_token is not None
        assert donation.transaction_id is None
        assert donation.city == "Arlington"

        call = gateway_fake.calls_to("initialize_checkout")[0]
        assert call["mode"] == CheckoutMode.VERIFY
        assert call["amount"] == Decimal("25.00")

    async def test_attaches_account_owner(self, orchestrator, session_factory, make_donation_request):
        response = await orchestrator.initialize(make_donation_request(), user_id="user_123")

        assert (await _load(session_factory, response.donation_id)).user_id == "user_123"

    @pytest.mark.parametrize(
        "overrides,field",
        [
            ({"amount": "0.50"}, "amount"),
            ({"amount": "100000.01"}, "amount"),
            ({"purpose": "yacht_fund"}, "purpose"),
        ],
    )
    async def test_rejects_out_of_policy_requests(
        self, orchestrator, gateway_fake, session_factory, make_donation_request, overrides, field
    ):
        with pytest.raises(DonationValidationError) as exc_info:
            await orchestrator.initialize(make_donation_request(**overrides))

        assert field in exc_info.value.errors
        assert gateway_fake.calls == []
        assert await _all(session_factory) == []

    async def test_transient_checkout_failure_retried_once(
        self, orchestrator, gateway_fake, retry_sleep, make_donation_request
    ):
        gateway_fake.scenario = "flaky"

        response = await orchestrator.initialize(make_donation_request())

        assert response.checkout_token
        assert len(gateway_fake.calls_to("initialize_checkout")) == 2
        retry_sleep.assert_awaited_once_with(0.5)

    async def test_checkout_failure_marks_donation_failed(
        self, orchestrator, gateway_fake, session_factory, make_donation_request
    ):
        gateway_fake.scenario = "server_error"

        with pytest.raises(GatewayServerError):
            await orchestrator.initialize(make_donation_request())

        [donation] = await _all(session_factory)
        assert donation.status == "failed"
        assert donation.checkout_token is None
        assert len(gateway_fake.calls_to("initialize_checkout")) == 2


# =============================================================================
# One-time donations
# =============================================================================


class TestOneTime:
    async def test_charge_completes_donation_and_sends_receipt(
        self, orchestrator, gateway_fake, notifier, session_factory, make_donation_request
    ):
        init = await orchestrator.initialize(make_donation_request())

        outcome = await orchestrator.process_payment(init.donation_id, None, CARD_TOKEN, CLIENT_IP)

        assert outcome.success is True
        assert outcome.type == "one-time"
        donation = await _load(session_factory, init.donation_id)
        assert donation.status == "completed"
        assert donation.transaction_id == outcome.transaction_id
        assert donation.customer_id is not None

        charge = gateway_fake.calls_to("charge_customer")[0]
        assert charge["idempotency_key"] == idempotency_key(init.donation_id, "purchase")
        assert charge["invoice_number"] == init.donation_id
        assert charge["amount"] == Decimal("25.00")

        notifier.send_donation_receipt.assert_awaited_once()
        email, receipt = notifier.send_donation_receipt.await_args.args
        assert email == "grace@example.org"
        assert receipt.transaction_id == outcome.transaction_id
        assert receipt.tax_deductible_amount == Decimal("25.00")

    async def test_existing_customer_code_skips_customer_creation(
        self, orchestrator, gateway_fake, session_factory, make_donation_request
    ):
        init = await orchestrator.initialize(make_donation_request())

        await orchestrator.process_payment(init.donation_id, "CST9000", CARD_TOKEN, CLIENT_IP)

        assert gateway_fake.calls_to("create_customer") == []
        assert gateway_fake.calls_to("charge_customer")[0]["customer_id"] == "CST9000"
        assert (await _load(session_factory, init.donation_id)).customer_id == "CST9000"

    async def test_resubmission_replays_outcome_without_second_charge(
        self, orchestrator, gateway_fake, notifier, make_donation_request
    ):
        init = await orchestrator.initialize(make_donation_request())
        first = await orchestrator.process_payment(init.donation_id, None, CARD_TOKEN, CLIENT_IP)

        second = await orchestrator.process_payment(init.donation_id, None, CARD_TOKEN, CLIENT_IP)

        assert second == first
        assert len(gateway_fake.calls_to("charge_customer")) == 1
        notifier.send_donation_receipt.assert_awaited_once()

    async def test_decline_marks_failed_without_transaction_id(
        self, orchestrator, gateway_fake, notifier, session_factory, make_donation_request
    ):
        init = await orchestrator.initialize(make_donation_request())
        gateway_fake.scenario = "declined"

        with pytest.raises(GatewayDeclined):
            await orchestrator.process_payment(init.donation_id, None, CARD_TOKEN, CLIENT_IP)

        donation = await _load(session_factory, init.donation_id)
        assert donation.status == "failed"
        assert donation.transaction_id is None
        assert donation.last_payment_failure_reason == "card_declined"
        notifier.send_donation_receipt.assert_not_awaited()

    async def test_failed_donation_cannot_be_reprocessed(
        self, orchestrator, gateway_fake, make_donation_request
    ):
        init = await orchestrator.initialize(make_donation_request())
        gateway_fake.scenario = "declined"
        with pytest.raises(GatewayDeclined):
            await orchestrator.process_payment(init.donation_id, None, CARD_TOKEN, CLIENT_IP)
        gateway_fake.scenario = "happy_path"

        with pytest.raises(DonationStateError):
            await orchestrator.process_payment(init.donation_id, None, CARD_TOKEN, CLIENT_IP)

    async def test_transient_charge_failure_retried_with_same_key(
        self, orchestrator, gateway_fake, retry_sleep, session_factory, make_donation_request
    ):
        init = await orchestrator.initialize(make_donation_request())
        gateway_fake.scenario = "flaky"

        outcome = await orchestrator.process_payment(init.donation_id, "CST1", CARD_TOKEN, CLIENT_IP)

        assert outcome.success is True
        charges = gateway_fake.calls_to("charge_customer")
        assert len(charges) == 2
        assert charges[0]["idempotency_key"] == charges[1]["idempotency_key"]
        retry_sleep.assert_awaited_once()
        assert (await _load(session_factory, init.donation_id)).status == "completed"

    async def test_persistent_network_failure_leaves_donation_pending(
        self, orchestrator, gateway_fake, retry_sleep, session_factory, notifier, make_donation_request
    ):
        init = await orchestrator.initialize(make_donation_request())
        gateway_fake.scenario = "network_error"

        with pytest.raises(GatewayNetworkError):
            await orchestrator.process_payment(init.donation_id, "CST1", CARD_TOKEN, CLIENT_IP)

        assert len(gateway_fake.calls_to("charge_customer")) == 2
        retry_sleep.assert_awaited_once()
        donation = await _load(session_factory, init.donation_id)
        assert donation.status == "pending"
        assert donation.transaction_id is None
        notifier.send_donation_receipt.assert_not_awaited()

    async def test_resubmission_after_unknown_outcome_succeeds(
        self, orchestrator, gateway_fake, session_factory, make_donation_request
    ):
        init = await orchestrator.initialize(make_donation_request())
        gateway_fake.scenario = "network_error"
        with pytest.raises(GatewayNetworkError):
            await orchestrator.process_payment(init.donation_id, "CST1", CARD_TOKEN, CLIENT_IP)
        gateway_fake.scenario = "happy_path"

        outcome = await orchestrator.process_payment(init.donation_id, "CST1", CARD_TOKEN, CLIENT_IP)

        assert outcome.success is True
        assert (await _load(session_factory, init.donation_id)).status == "completed"

    async def test_auth_error_fails_donation(
        self, orchestrator, gateway_fake, session_factory, make_donation_request
    ):
        init = await orchestrator.initialize(make_donation_request())
        gateway_fake.scenario = "auth_error"

        with pytest.raises(GatewayAuthError):
            await orchestrator.process_payment(init.donation_id, "CST1", CARD_TOKEN, CLIENT_IP)

        donation = await _load(session_factory, init.donation_id)
        assert donation.status == "failed"
        assert donation.last_payment_failure_reason == "GatewayAuthError"

    async def test_unknown_donation(self, orchestrator):
        with pytest.raises(DonationNotFoundError):
            await orchestrator.process_payment("does-not-exist", None, CARD_TOKEN, CLIENT_IP)


# =============================================================================
# Monthly donations
# =============================================================================


class TestMonthly:
    async def test_subscription_activates_donation(
        self, orchestrator, gateway_fake, notifier, session_factory, make_donation_request
    ):
        init = await orchestrator.initialize(make_donation_request(donation_type="monthly"))

        outcome = await orchestrator.process_payment(init.donation_id, None, CARD_TOKEN, CLIENT_IP)

        assert outcome.type == "recurring"
        assert outcome.subscription_id is not None
        assert outcome.next_billing_date is not None
        assert outcome.transaction_id is None

        donation = await _load(session_factory, init.donation_id)
        assert donation.status == "active"
        assert donation.subscription_id == outcome.subscription_id
        assert donation.payment_plan_id is not None
        assert donation.next_billing_date == outcome.next_billing_date
        assert donation.payment_retry_count == 0

        sub_call = gateway_fake.calls_to("create_subscription")[0]
        assert sub_call["idempotency_key"] == idempotency_key(init.donation_id, "subscription")
        assert sub_call["payment_plan_id"] == donation.payment_plan_id
        assert gateway_fake.calls_to("charge_customer") == []
        notifier.send_donation_receipt.assert_awaited_once()

    async def test_same_amount_reuses_plan(self, orchestrator, session_factory, make_donation_request):
        ids = []
        for _ in range(2):
            init = await orchestrator.initialize(make_donation_request(donation_type="monthly"))
            await orchestrator.process_payment(init.donation_id, None, CARD_TOKEN, CLIENT_IP)
            ids.append(init.donation_id)

        plans = {(await _load(session_factory, i)).payment_plan_id for i in ids}
        assert len(plans) == 1

    async def test_resubmission_replays_subscription(
        self, orchestrator, gateway_fake, make_donation_request
    ):
        init = await orchestrator.initialize(make_donation_request(donation_type="monthly"))
        first = await orchestrator.process_payment(init.donation_id, None, CARD_TOKEN, CLIENT_IP)

        second = await orchestrator.process_payment(init.donation_id, None, CARD_TOKEN, CLIENT_IP)

        assert second.subscription_id == first.subscription_id
        assert len(gateway_fake.calls_to("create_subscription")) == 1

    async def test_rejected_subscription_fails_donation(
        self, orchestrator, gateway_fake, session_factory, make_donation_request
    ):
        init = await orchestrator.initialize(make_donation_request(donation_type="monthly"))
        gateway_fake.scenario = "declined"

        with pytest.raises(GatewayValidationError):
            await orchestrator.process_payment(init.donation_id, "CST1", CARD_TOKEN, CLIENT_IP)

        donation = await _load(session_factory, init.donation_id)
        assert donation.status == "failed"
        assert donation.subscription_id is None


# =============================================================================
# Account management
# =============================================================================


class TestCancelSubscription:
    async def _active(self, orchestrator, make_donation_request, user_id="user_123") -> str:
        init = await orchestrator.initialize(make_donation_request(donation_type="monthly"), user_id=user_id)
        await orchestrator.process_payment(init.donation_id, None, CARD_TOKEN, CLIENT_IP)
        return init.donation_id

    async def test_owner_cancels(self, orchestrator, gateway_fake, make_donation_request):
        donation_id = await self._active(orchestrator, make_donation_request)

        donation = await orchestrator.cancel_subscription(donation_id, "user_123")

        assert donation.status == "cancelled"
        assert gateway_fake.calls_to("cancel_subscription") == [{"subscription_id": donation.subscription_id}]

    async def test_cancel_is_idempotent(self, orchestrator, gateway_fake, make_donation_request):
        donation_id = await self._active(orchestrator, make_donation_request)
        await orchestrator.cancel_subscription(donation_id, "user_123")

        donation = await orchestrator.cancel_subscription(donation_id, "user_123")

        assert donation.status == "cancelled"
        assert len(gateway_fake.calls_to("cancel_subscription")) == 1

    async def test_other_users_cannot_see_it(self, orchestrator, gateway_fake, make_donation_request):
        donation_id = await self._active(orchestrator, make_donation_request)

        with pytest.raises(DonationNotFoundError):
            await orchestrator.cancel_subscription(donation_id, "user_999")
        assert gateway_fake.calls_to("cancel_subscription") == []

    async def test_list_subscriptions_for_owner(self, orchestrator, make_donation_request):
        donation_id = await self._active(orchestrator, make_donation_request)
        await self._active(orchestrator, make_donation_request, user_id="user_999")
        one_time = await orchestrator.initialize(make_donation_request(), user_id="user_123")
        await orchestrator.process_payment(one_time.donation_id, None, CARD_TOKEN, CLIENT_IP)

        subscriptions = await orchestrator.list_subscriptions("user_123")

        assert [d.id for d in subscriptions] == [donation_id]
