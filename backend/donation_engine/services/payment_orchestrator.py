"""PaymentOrchestrator: the synchronous donation path.

initialize()      validated form -> pending Donation + verify-mode checkout session
process_payment() verified payment method -> one-time charge or monthly subscription

Every status change goes through DonationStore.transition, so this path and
the webhook path can race on the same donation without overwriting each
other. Gateway calls that fail with a transient error (5xx, network,
timeout) are retried exactly once after a short fixed delay, reusing the
same idempotency key. Nothing else is retried.
"""

import asyncio
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TypeVar

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from donation_engine.core.config import Settings, get_settings
from donation_engine.core.exceptions import (
    DonationNotFoundError,
    DonationStateError,
    DonationValidationError,
    GatewayDeclined,
    GatewayError,
    GatewayRateLimited,
    GatewayTransientError,
)
from donation_engine.db.base import get_session_factory
from donation_engine.db.models.donation import Donation
from donation_engine.domain.donation_lifecycle import DonationStatus, DonationType
from donation_engine.integrations.gateway import PaymentGateway, idempotency_key
from donation_engine.metrics.cloudwatch import emit_business_event
from donation_engine.schemas.donations import InitializeDonationRequest, InitializeDonationResponse
from donation_engine.schemas.gateway import BillingAddress, CheckoutMode, CustomerRequest
from donation_engine.services.donation_store import DonationStore
from donation_engine.services.receipt_notifier import ReceiptNotifier, build_receipt

logger = structlog.get_logger(__name__)

T = TypeVar("T")

RECURRING_FREQUENCY = "monthly"


@dataclass(frozen=True)
class PaymentOutcome:
    success: bool
    type: str  # "one-time" | "recurring"
    transaction_id: str | None = None
    subscription_id: str | None = None
    next_billing_date: str | None = None


def _outcome_for(donation: Donation) -> PaymentOutcome:
    if donation.is_recurring:
        return PaymentOutcome(
            success=True,
            type="recurring",
            subscription_id=donation.subscription_id,
            next_billing_date=donation.next_billing_date,
        )
    return PaymentOutcome(success=True, type="one-time", transaction_id=donation.transaction_id)


def _customer_request(donation: Donation) -> CustomerRequest:
    address = None
    if donation.address_line1:
        address = BillingAddress(
            name=donation.donor_name,
            street1=donation.address_line1,
            street2=donation.address_line2 or "",
            city=donation.city or "",
            province=donation.state or "",
            country=donation.country or "",
            postal_code=donation.postal_code or "",
            phone=donation.donor_phone or "",
            email=donation.donor_email,
        )
    return CustomerRequest(
        contact_name=donation.donor_name,
        email=donation.donor_email,
        billing_address=address,
    )


class PaymentOrchestrator:
    def __init__(
        self,
        gateway: PaymentGateway,
        notifier: ReceiptNotifier | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        settings: Settings | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.gateway = gateway
        self.notifier = notifier or ReceiptNotifier()
        self.settings = settings or get_settings()
        self._session_factory = session_factory
        self._sleep = sleep

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    async def _call_with_retry(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        """Run a gateway call, retrying once on a transient failure."""
        try:
            return await call()
        except GatewayTransientError as exc:
            delay = self.settings.gateway_retry_delay_seconds
            logger.warning(
                "gateway_transient_error_retrying",
                operation=operation,
                error=str(exc),
                error_type=type(exc).__name__,
                delay_seconds=delay,
            )
            await self._sleep(delay)
            return await call()

    # ── Initialization ──────────────────────────────────────────────

    def validate(self, request: InitializeDonationRequest) -> None:
        """Server-side checks that depend on deployment settings."""
        errors: dict[str, str] = {}
        if request.amount < self.settings.min_donation_amount:
            errors["amount"] = f"Minimum donation is {self.settings.min_donation_amount:.2f}"
        elif request.amount > self.settings.max_donation_amount:
            errors["amount"] = f"Maximum donation is {self.settings.max_donation_amount:.2f}"
        if request.purpose not in self.settings.donation_purposes:
            errors["purpose"] = "Unknown donation purpose"
        if errors:
            raise DonationValidationError(errors)

    async def initialize(
        self, request: InitializeDonationRequest, *, user_id: str | None = None
    ) -> InitializeDonationResponse:
        """Create a pending donation and a verify-mode checkout session for it."""
        self.validate(request)
        address = request.address

        async with self.session_factory() as session:
            donation = await DonationStore(session).create(
                id=str(uuid.uuid4()),
                amount=request.amount,
                currency=self.settings.helcim_currency,
                donation_type=request.donation_type.value,
                purpose=request.purpose,
                donor_name=request.donor_name,
                donor_email=str(request.donor_email),
                donor_phone=request.donor_phone,
                address_line1=address.line1 if address else None,
                address_line2=address.line2 if address else None,
                city=address.city if address else None,
                state=address.state if address else None,
                postal_code=address.postal_code if address else None,
                country=address.country if address else None,
                comments=request.comments,
                user_id=user_id,
            )
            await session.commit()

        log = logger.bind(donation_id=donation.id, donation_type=donation.donation_type)
        log.info("donation_initialized", amount=str(donation.amount), authenticated=user_id is not None)

        try:
            checkout = await self._call_with_retry(
                "initialize_checkout",
                lambda: self.gateway.initialize_checkout(
                    donation.amount,
                    donation.currency,
                    CheckoutMode.VERIFY,
                    _customer_request(donation),
                ),
            )
        except GatewayError as exc:
            log.error("checkout_initialization_failed", error=str(exc), error_type=type(exc).__name__)
            async with self.session_factory() as session:
                await DonationStore(session).transition(
                    donation.id,
                    [DonationStatus.PENDING],
                    DonationStatus.FAILED,
                    last_payment_failure_reason="checkout_initialization_failed",
                )
                await session.commit()
            await emit_business_event("donation_failed", donation.donation_type)
            raise

        async with self.session_factory() as session:
            await DonationStore(session).update_fields(
                donation.id,
                DonationStatus.PENDING,
                checkout_token=checkout.checkout_token,
                secret_token=checkout.secret_token,
            )
            await session.commit()

        await emit_business_event("donation_initialized", donation.donation_type)
        return InitializeDonationResponse(checkout_token=checkout.checkout_token, donation_id=donation.id)

    # ── Completion ──────────────────────────────────────────────────

    async def process_payment(
        self,
        donation_id: str,
        customer_code: str | None,
        card_token: str,
        client_ip: str,
    ) -> PaymentOutcome:
        """Charge (one-time) or subscribe (monthly) a verified payment method."""
        async with self.session_factory() as session:
            donation = await DonationStore(session).get(donation_id)
        if donation is None:
            raise DonationNotFoundError(donation_id)

        log = logger.bind(donation_id=donation.id, donation_type=donation.donation_type)

        # A resubmitted form for a donation that already went through gets the same answer
        if donation.status in (DonationStatus.COMPLETED.value, DonationStatus.ACTIVE.value):
            log.info("process_payment_replayed", status=donation.status)
            return _outcome_for(donation)
        if donation.status != DonationStatus.PENDING.value:
            raise DonationStateError(f"Donation {donation_id} is {donation.status}")
        if not donation.checkout_token:
            raise DonationStateError(f"Donation {donation_id} has no checkout session")

        try:
            if not customer_code:
                customer = await self._call_with_retry(
                    "create_customer",
                    lambda: self.gateway.create_customer(_customer_request(donation)),
                )
                customer_code = customer.customer_code
                log.info("gateway_customer_created", customer_id=customer_code)

            async with self.session_factory() as session:
                await DonationStore(session).update_fields(
                    donation.id, DonationStatus.PENDING, customer_id=customer_code
                )
                await session.commit()
            donation.customer_id = customer_code

            if donation.donation_type == DonationType.MONTHLY.value:
                return await self._process_recurring(donation, card_token, log)
            return await self._process_one_time(donation, card_token, client_ip, log)

        except (GatewayTransientError, GatewayRateLimited) as exc:
            # The gateway may or may not have acted; the donation stays pending and a
            # resubmission reuses the same idempotency key.
            log.warning("payment_outcome_unknown", error=str(exc), error_type=type(exc).__name__)
            raise
        except GatewayError as exc:
            reason = exc.reason if isinstance(exc, GatewayDeclined) else type(exc).__name__
            await self._fail(donation, reason, log)
            raise

    async def _fail(self, donation: Donation, reason: str, log) -> None:
        async with self.session_factory() as session:
            applied = await DonationStore(session).transition(
                donation.id,
                [DonationStatus.PENDING],
                DonationStatus.FAILED,
                last_payment_failure_reason=reason[:500],
                last_payment_attempt=datetime.now(UTC),
            )
            await session.commit()
        if applied:
            log.info("donation_failed", reason=reason)
            await emit_business_event("donation_failed", donation.donation_type)

    async def _process_one_time(
        self, donation: Donation, card_token: str, client_ip: str, log
    ) -> PaymentOutcome:
        key = idempotency_key(donation.id, "purchase")
        result = await self._call_with_retry(
            "charge_customer",
            lambda: self.gateway.charge_customer(
                donation.customer_id,
                card_token,
                donation.amount,
                idempotency_key=key,
                client_ip=client_ip,
                invoice_number=donation.id,
            ),
        )
        if not result.approved:
            log.info("charge_not_approved", transaction_id=result.transaction_id, status=result.status)
            raise GatewayDeclined("card_declined", transaction_id=result.transaction_id)

        async with self.session_factory() as session:
            store = DonationStore(session)
            applied = await store.transition(
                donation.id,
                [DonationStatus.PENDING],
                DonationStatus.COMPLETED,
                transaction_id=result.transaction_id,
                last_payment_attempt=datetime.now(UTC),
            )
            await session.commit()
            current = await store.get(donation.id)

        if not applied:
            if current.status == DonationStatus.COMPLETED.value:
                # The webhook got there first and already sent the receipt
                return _outcome_for(current)
            raise DonationStateError(f"Donation {donation.id} is {current.status}")

        log.info("donation_completed", transaction_id=result.transaction_id)
        await emit_business_event("donation_completed", donation.donation_type)
        await self.notifier.send_donation_receipt(current.donor_email, build_receipt(current))
        return _outcome_for(current)

    async def _process_recurring(self, donation: Donation, card_token: str, log) -> PaymentOutcome:
        plan = await self._call_with_retry(
            "create_or_reuse_recurring_plan",
            lambda: self.gateway.create_or_reuse_recurring_plan(donation.amount, RECURRING_FREQUENCY),
        )
        key = idempotency_key(donation.id, "subscription")
        subscription = await self._call_with_retry(
            "create_subscription",
            lambda: self.gateway.create_subscription(
                donation.customer_id,
                plan.payment_plan_id,
                card_token,
                amount=donation.amount,
                idempotency_key=key,
            ),
        )
        next_billing = subscription.next_billing_date[:10] if subscription.next_billing_date else None

        async with self.session_factory() as session:
            store = DonationStore(session)
            applied = await store.transition(
                donation.id,
                [DonationStatus.PENDING],
                DonationStatus.ACTIVE,
                payment_plan_id=plan.payment_plan_id,
                subscription_id=subscription.subscription_id,
                next_billing_date=next_billing,
                last_payment_attempt=datetime.now(UTC),
            )
            await session.commit()
            current = await store.get(donation.id)

        if not applied:
            if current.subscription_id == subscription.subscription_id:
                return _outcome_for(current)
            # Nothing local points at this subscription; stop it billing
            log.error(
                "orphaned_subscription_cancelled",
                subscription_id=subscription.subscription_id,
                status=current.status,
            )
            await self.gateway.cancel_subscription(subscription.subscription_id)
            raise DonationStateError(f"Donation {donation.id} is {current.status}")

        log.info(
            "subscription_activated",
            subscription_id=subscription.subscription_id,
            payment_plan_id=plan.payment_plan_id,
            next_billing_date=next_billing,
        )
        await emit_business_event("subscription_activated", donation.donation_type)
        await self.notifier.send_donation_receipt(current.donor_email, build_receipt(current))
        return _outcome_for(current)

    # ── Lookups & account management ────────────────────────────────

    async def get_donation(self, donation_id: str) -> Donation:
        async with self.session_factory() as session:
            donation = await DonationStore(session).get(donation_id)
        if donation is None:
            raise DonationNotFoundError(donation_id)
        return donation

    async def list_subscriptions(self, user_id: str) -> list[Donation]:
        async with self.session_factory() as session:
            return await DonationStore(session).list_subscriptions_for_user(user_id)

    async def cancel_subscription(self, donation_id: str, user_id: str) -> Donation:
        """Donor-initiated cancellation of their own monthly gift."""
        donation = await self.get_donation(donation_id)
        if donation.user_id != user_id or not donation.subscription_id:
            raise DonationNotFoundError(donation_id)
        if donation.status == DonationStatus.CANCELLED.value:
            return donation
        if donation.status != DonationStatus.ACTIVE.value:
            raise DonationStateError(f"Donation {donation_id} is {donation.status}")

        await self._call_with_retry(
            "cancel_subscription",
            lambda: self.gateway.cancel_subscription(donation.subscription_id),
        )

        async with self.session_factory() as session:
            store = DonationStore(session)
            await store.transition(donation.id, [DonationStatus.ACTIVE], DonationStatus.CANCELLED)
            await session.commit()
            current = await store.get(donation.id)

        logger.info(
            "subscription_cancelled",
            donation_id=donation.id,
            subscription_id=donation.subscription_id,
            initiated_by="donor",
        )
        await emit_business_event("subscription_cancelled", donation.donation_type)
        return current
