"""WebhookReceiver: the asynchronous confirmation channel from the gateway.

Each delivery is verified, normalized, then applied exactly once: the
event id is inserted into ``webhook_events`` in the same transaction as the
donation update it causes. A duplicate delivery hits the primary key and is
acknowledged without side effects; a delivery whose processing fails rolls
back both, so the gateway's redelivery gets another chance.

Side effects outside the database (receipts, gateway cancellation, metrics)
run only after the commit.
"""

from collections.abc import Awaitable, Callable, Mapping
from datetime import UTC, datetime
from typing import Any

import structlog
from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from donation_engine.core.config import Settings, get_settings
from donation_engine.core.exceptions import (
    GatewayError,
    GatewayValidationError,
    WebhookConfigurationError,
)
from donation_engine.db.base import get_session_factory
from donation_engine.db.models.donation import Donation
from donation_engine.db.models.webhook_event import ProcessedWebhookEvent
from donation_engine.domain.donation_lifecycle import DonationStatus
from donation_engine.domain.retry_policy import PaymentRetryPolicy
from donation_engine.domain.webhook_signature import VerifiedWebhook, verify_webhook
from donation_engine.integrations.gateway import PaymentGateway
from donation_engine.metrics.cloudwatch import emit_business_event
from donation_engine.schemas.gateway import GatewayTransaction
from donation_engine.schemas.webhooks import (
    NormalizedEvent,
    WebhookAck,
    WebhookEvent,
    WebhookEventType as E,
)
from donation_engine.services.donation_store import DonationStore
from donation_engine.services.receipt_notifier import ReceiptNotifier, build_receipt

logger = structlog.get_logger(__name__)

PostCommitAction = Callable[[], Awaitable[None]]

_TRANSACTION_EVENTS = {E.TRANSACTION_APPROVED, E.TRANSACTION_DECLINED, E.TRANSACTION_REFUNDED}
_SUBSCRIPTION_EVENTS = {E.SUBSCRIPTION_CHARGED, E.SUBSCRIPTION_CHARGE_FAILED, E.SUBSCRIPTION_CANCELLED}


def _billing_date(value: Any) -> str | None:
    return str(value)[:10] if value else None


def _is_signup_charge(donation: Donation) -> bool:
    """True for the charge a plan bills at sign-up.

    The activation receipt already covered it. It is the first charge seen
    for the subscription and lands before the first billing date.
    """
    if donation.transaction_id:
        return False
    today = datetime.now(UTC).date().isoformat()
    return donation.next_billing_date is None or today < donation.next_billing_date


def _normalize_transaction(txn: GatewayTransaction) -> NormalizedEvent:
    """Map a full gateway transaction onto the event it represents."""
    approved = txn.status.upper() == "APPROVED"
    is_refund = (txn.type or "").lower() == "refund"
    if txn.subscription_id:
        kind = E.SUBSCRIPTION_CHARGED if approved else E.SUBSCRIPTION_CHARGE_FAILED
    elif is_refund:
        kind = E.TRANSACTION_REFUNDED
    else:
        kind = E.TRANSACTION_APPROVED if approved else E.TRANSACTION_DECLINED
    return NormalizedEvent(
        type=kind,
        transaction_id=txn.transaction_id,
        subscription_id=txn.subscription_id,
        donation_ref=txn.invoice_number,
        amount=txn.amount,
        next_billing_date=_billing_date(txn.next_billing_date),
        reason=None if approved else f"transaction {txn.status.lower()}",
    )


class WebhookReceiver:
    def __init__(
        self,
        gateway: PaymentGateway,
        notifier: ReceiptNotifier | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        settings: Settings | None = None,
        retry_policy: PaymentRetryPolicy | None = None,
    ):
        self.gateway = gateway
        self.notifier = notifier or ReceiptNotifier()
        self.settings = settings or get_settings()
        self.retry_policy = retry_policy or PaymentRetryPolicy(self.settings.max_payment_retries)
        self._session_factory = session_factory

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    def verify(self, headers: Mapping[str, str], body: bytes, now: float | None = None) -> VerifiedWebhook:
        token = self.settings.helcim_webhook_verifier_token
        if not token:
            raise WebhookConfigurationError("HELCIM_WEBHOOK_VERIFIER_TOKEN is not set")
        return verify_webhook(
            headers,
            body,
            token,
            tolerance_seconds=self.settings.webhook_tolerance_seconds,
            now=now,
        )

    async def handle(self, headers: Mapping[str, str], body: bytes, provider: str = "helcim") -> WebhookAck:
        """Verify then process one delivery."""
        verified = self.verify(headers, body)
        return await self.process(verified, provider)

    async def normalize(self, event: WebhookEvent) -> NormalizedEvent | None:
        """Reduce a delivery to a NormalizedEvent, or None if it is not ours to act on.

        Native ``cardTransaction`` events carry details in ``data`` when the
        gateway includes them; otherwise the transaction is fetched once.
        """
        data = event.data or {}
        try:
            kind = E(event.type)
        except ValueError:
            return None

        if kind == E.TERMINAL_CANCEL:
            return None

        if kind == E.CARD_TRANSACTION:
            return _normalize_transaction(await self._card_transaction(event.id, data))

        if kind in _TRANSACTION_EVENTS:
            return NormalizedEvent(
                type=kind,
                transaction_id=event.id,
                donation_ref=data.get("invoiceNumber"),
                reason=data.get("reason"),
            )

        return NormalizedEvent(
            type=kind,
            subscription_id=event.id,
            transaction_id=str(data["transactionId"]) if data.get("transactionId") else None,
            next_billing_date=_billing_date(data.get("nextBillingDate")),
            reason=data.get("reason"),
        )

    async def _card_transaction(self, transaction_id: str, data: dict[str, Any]) -> GatewayTransaction:
        """Inline details when they parse, otherwise the gateway's own record."""
        if data.get("status"):
            try:
                # The event id names the transaction; data never overrides it
                return GatewayTransaction.model_validate({**data, "transactionId": transaction_id})
            except ValidationError as exc:
                logger.warning(
                    "webhook_inline_details_invalid",
                    reference=transaction_id,
                    error_count=exc.error_count(),
                )
        return await self.gateway.fetch_transaction(transaction_id)

    async def _resolve_donation_ref(self, event: NormalizedEvent, log) -> NormalizedEvent:
        """Find the donation behind a bare transaction event.

        A pending donation has no transaction id stored yet, so an event
        without an invoice number is matched through the gateway's record of
        the transaction. A transaction the gateway does not know leaves the
        event unresolved; any other gateway error propagates for redelivery.
        """
        if event.type not in _TRANSACTION_EVENTS or event.donation_ref:
            return event

        async with self.session_factory() as session:
            if await DonationStore(session).get_by_transaction_id(event.transaction_id) is not None:
                return event

        try:
            txn = await self.gateway.fetch_transaction(event.transaction_id)
        except GatewayValidationError as exc:
            log.warning("webhook_transaction_lookup_failed", status_code=exc.status_code, error=str(exc))
            return event
        return event.model_copy(update={
            "donation_ref": txn.invoice_number,
            "amount": event.amount or txn.amount,
        })

    async def process(self, verified: VerifiedWebhook, provider: str = "helcim") -> WebhookAck:
        event = verified.event
        log = logger.bind(event_id=verified.event_id, event_type=event.type, reference=event.id)

        async with self.session_factory() as session:
            if await session.get(ProcessedWebhookEvent, verified.event_id) is not None:
                log.info("webhook_duplicate_event_ignored")
                return WebhookAck(status="duplicate")

        normalized = await self.normalize(event)
        if normalized is not None:
            normalized = await self._resolve_donation_ref(normalized, log)

        actions: list[PostCommitAction] = []
        async with self.session_factory() as session:
            session.add(ProcessedWebhookEvent(
                event_id=verified.event_id,
                provider=provider,
                event_type=event.type,
            ))
            try:
                await session.flush()
            except IntegrityError:
                await session.rollback()
                log.info("webhook_duplicate_event_ignored", race=True)
                return WebhookAck(status="duplicate")

            if normalized is None:
                log.info("webhook_event_ignored", reason="unhandled_event_type")
                ack = WebhookAck(status="ignored", reason="unhandled_event_type")
            else:
                ack = await self._apply(DonationStore(session), normalized, actions, log)
            await session.commit()

        for action in actions:
            await action()
        return ack

    # ── Event handlers ──────────────────────────────────────────────

    async def _find_for_transaction(self, store: DonationStore, event: NormalizedEvent) -> Donation | None:
        donation = None
        if event.transaction_id:
            donation = await store.get_by_transaction_id(event.transaction_id)
        if donation is None and event.donation_ref:
            donation = await store.get(event.donation_ref)
        return donation

    async def _apply(
        self,
        store: DonationStore,
        event: NormalizedEvent,
        actions: list[PostCommitAction],
        log,
    ) -> WebhookAck:
        if event.type in _SUBSCRIPTION_EVENTS:
            donation = None
            if event.subscription_id:
                donation = await store.get_by_subscription_id(event.subscription_id)
        else:
            donation = await self._find_for_transaction(store, event)

        if donation is None:
            log.warning(
                "webhook_donation_not_found",
                transaction_id=event.transaction_id,
                subscription_id=event.subscription_id,
            )
            return WebhookAck(status="ignored", reason="unknown_donation")

        log = log.bind(donation_id=donation.id, status=donation.status)

        if event.type == E.TRANSACTION_APPROVED:
            return await self._on_transaction_approved(store, donation, event, actions, log)
        if event.type == E.TRANSACTION_DECLINED:
            return await self._on_transaction_declined(store, donation, event, log)
        if event.type == E.TRANSACTION_REFUNDED:
            log.info("transaction_refunded", transaction_id=event.transaction_id, amount=str(event.amount))
            return WebhookAck(status="ignored", reason="refunds_not_tracked")
        if event.type == E.SUBSCRIPTION_CHARGED:
            return await self._on_subscription_charged(store, donation, event, actions, log)
        if event.type == E.SUBSCRIPTION_CHARGE_FAILED:
            return await self._on_subscription_charge_failed(store, donation, event, actions, log)
        return await self._on_subscription_cancelled(store, donation, actions, log)

    async def _on_transaction_approved(self, store, donation, event, actions, log) -> WebhookAck:
        if donation.is_recurring:
            return WebhookAck(status="ignored", reason="recurring_donation")
        applied = await store.transition(
            donation.id,
            [DonationStatus.PENDING],
            DonationStatus.COMPLETED,
            transaction_id=event.transaction_id,
        )
        if not applied:
            return WebhookAck(status="ignored", reason="no_op")

        log.info("donation_completed", transaction_id=event.transaction_id, source="webhook")
        completed = await store.get(donation.id)
        receipt = build_receipt(completed)

        async def _after() -> None:
            await emit_business_event("donation_completed", completed.donation_type)
            await self.notifier.send_donation_receipt(completed.donor_email, receipt)

        actions.append(_after)
        return WebhookAck(status="processed")

    async def _on_transaction_declined(self, store, donation, event, log) -> WebhookAck:
        if donation.is_recurring:
            return WebhookAck(status="ignored", reason="recurring_donation")
        applied = await store.transition(
            donation.id,
            [DonationStatus.PENDING],
            DonationStatus.FAILED,
            last_payment_failure_reason=(event.reason or "transaction declined")[:500],
        )
        if not applied:
            return WebhookAck(status="ignored", reason="no_op")
        log.info("donation_failed", reason=event.reason, source="webhook")
        return WebhookAck(status="processed")

    async def _on_subscription_charged(self, store, donation, event, actions, log) -> WebhookAck:
        signup_charge = _is_signup_charge(donation)
        applied = await store.reset_retry_count(
            donation.id,
            transaction_id=event.transaction_id,
            next_billing_date=event.next_billing_date,
        )
        if not applied:
            return WebhookAck(status="ignored", reason="no_op")

        log.info(
            "subscription_charged",
            transaction_id=event.transaction_id,
            next_billing_date=event.next_billing_date,
            signup_charge=signup_charge,
        )
        if signup_charge:
            return WebhookAck(status="processed")

        charged = await store.get(donation.id)
        receipt = build_receipt(charged)

        async def _after() -> None:
            await self.notifier.send_donation_receipt(charged.donor_email, receipt)

        actions.append(_after)
        return WebhookAck(status="processed")

    async def _on_subscription_charge_failed(self, store, donation, event, actions, log) -> WebhookAck:
        reason = event.reason or "recurring charge failed"
        retry_count = await store.record_payment_failure(donation.id, reason)
        if retry_count is None:
            return WebhookAck(status="ignored", reason="no_op")

        keep_active = self.retry_policy.can_retry_payment(await store.get(donation.id))
        log.info("subscription_charge_failed", retry_count=retry_count, keep_active=keep_active)
        if keep_active:
            return WebhookAck(status="processed")

        await store.transition(donation.id, [DonationStatus.ACTIVE], DonationStatus.FAILED)
        subscription_id = donation.subscription_id

        async def _after() -> None:
            try:
                await self.gateway.cancel_subscription(subscription_id)
                logger.info(
                    "subscription_cancelled",
                    donation_id=donation.id,
                    subscription_id=subscription_id,
                    initiated_by="retry_policy",
                )
            except GatewayError as exc:
                logger.error(
                    "subscription_cancel_failed",
                    donation_id=donation.id,
                    subscription_id=subscription_id,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
            await emit_business_event("subscription_failed", donation.donation_type)
            await self.notifier.send_subscription_failed_notice(
                donation.donor_email, donation.donor_name, donation.amount, donation.currency, reason
            )

        actions.append(_after)
        return WebhookAck(status="processed")

    async def _on_subscription_cancelled(self, store, donation, actions, log) -> WebhookAck:
        applied = await store.transition(donation.id, [DonationStatus.ACTIVE], DonationStatus.CANCELLED)
        if not applied:
            return WebhookAck(status="ignored", reason="no_op")
        log.info("subscription_cancelled", initiated_by="gateway")

        async def _after() -> None:
            await emit_business_event("subscription_cancelled", donation.donation_type)

        actions.append(_after)
        return WebhookAck(status="processed")
