"""Helcim Integration: REST client for the Helcim v2 payments API.

Covers the calls the donation engine needs:
- HelcimPay.js checkout initialization (verify or purchase)
- Customers, one-time purchases
- Payment plans (cached per amount/frequency) and subscriptions
- Transaction and subscription lookups for webhook reconciliation

HTTP failures are classified into the GatewayError hierarchy and raised
as-is. Nothing here retries.
"""

import asyncio
import time
from collections.abc import Callable
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

import httpx
import structlog

from donation_engine.core.config import get_settings
from donation_engine.core.exceptions import (
    GatewayAuthError,
    GatewayNetworkError,
    GatewayRateLimited,
    GatewayServerError,
    GatewayValidationError,
)
from donation_engine.schemas.gateway import (
    CardData,
    ChargeResult,
    CheckoutMode,
    CheckoutRequest,
    CheckoutSession,
    CustomerRequest,
    GatewayCustomer,
    GatewaySubscription,
    GatewayTransaction,
    PaymentPlan,
    PaymentPlanRequest,
    PurchaseRequest,
    SubscriptionRequest,
    SubscriptionResult,
)

logger = structlog.get_logger(__name__)

SUPPORTED_FREQUENCIES = {"monthly": "monthly"}


def _money(amount: Decimal) -> float:
    return float(Decimal(amount).quantize(Decimal("0.01")))


def plan_name(amount: Decimal, frequency: str = "monthly") -> str:
    """Human-readable plan name, e.g. ``Monthly Donation - $25``."""
    amount = Decimal(amount).quantize(Decimal("0.01"))
    label = f"{amount:.0f}" if amount == amount.to_integral_value() else f"{amount:.2f}"
    return f"{frequency.capitalize()} Donation - ${label}"


class PaymentPlanCache:
    """In-process cache of plan ids keyed by (amount, frequency, currency)."""

    def __init__(self, ttl_seconds: int = 3600, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[tuple[Decimal, str, str], tuple[PaymentPlan, float]] = {}
        self.lock = asyncio.Lock()

    @staticmethod
    def key(amount: Decimal, frequency: str, currency: str) -> tuple[Decimal, str, str]:
        return (Decimal(amount).quantize(Decimal("0.01")), frequency, currency)

    def get(self, amount: Decimal, frequency: str, currency: str) -> PaymentPlan | None:
        entry = self._entries.get(self.key(amount, frequency, currency))
        if entry is None:
            return None
        plan, stored_at = entry
        if self._clock() - stored_at > self.ttl_seconds:
            del self._entries[self.key(amount, frequency, currency)]
            return None
        return plan

    def put(self, amount: Decimal, frequency: str, currency: str, plan: PaymentPlan) -> None:
        self._entries[self.key(amount, frequency, currency)] = (plan, self._clock())

    def clear(self) -> None:
        self._entries.clear()


def _field_errors(payload: Any) -> dict[str, str]:
    """Flatten Helcim's ``errors`` member (dict, list or string) into field -> message."""
    if not isinstance(payload, dict):
        return {}
    errors = payload.get("errors", payload.get("error"))
    if isinstance(errors, dict):
        return {str(k): str(v) for k, v in errors.items()}
    if isinstance(errors, list):
        return {f"error_{i}": str(e) for i, e in enumerate(errors)}
    if errors:
        return {"error": str(errors)}
    return {}


def _first_item(payload: Any) -> dict:
    """Unwrap ``{"data": [...]}``, bare lists and bare objects to a single record."""
    if isinstance(payload, dict) and "data" in payload:
        payload = payload["data"]
    if isinstance(payload, list):
        if not payload:
            raise GatewayValidationError("Gateway returned an empty result")
        payload = payload[0]
    if not isinstance(payload, dict):
        raise GatewayValidationError("Gateway returned an unexpected payload shape")
    return payload


class HelcimClient:
    """Client for the Helcim v2 API."""

    BASE_URL = "https://api.helcim.com/v2"

    def __init__(
        self,
        api_token: str | None = None,
        *,
        base_url: str | None = None,
        currency: str | None = None,
        timeout: float | None = None,
        plan_cache: PaymentPlanCache | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        settings = get_settings()
        self.api_token = api_token if api_token is not None else settings.helcim_api_token
        self.currency = currency or settings.helcim_currency
        self.plan_cache = plan_cache or PaymentPlanCache(settings.payment_plan_cache_ttl_seconds)
        self._client = httpx.AsyncClient(
            base_url=base_url or settings.helcim_base_url or self.BASE_URL,
            timeout=timeout or settings.gateway_timeout_seconds,
            transport=transport,
            headers={
                "api-token": self.api_token,
                "accept": "application/json",
                "content-type": "application/json",
            },
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        endpoint: str,
        data: dict | None = None,
        idempotency_key: str | None = None,
    ) -> Any:
        """Make an API request and classify any failure."""
        headers = {"idempotency-key": idempotency_key} if idempotency_key else None
        try:
            response = await self._client.request(method, endpoint, json=data, headers=headers)
        except httpx.TimeoutException as exc:
            raise GatewayNetworkError(f"Timeout calling {method} {endpoint}") from exc
        except httpx.TransportError as exc:
            raise GatewayNetworkError(f"Network error calling {method} {endpoint}: {exc}") from exc

        status = response.status_code
        if status >= 400:
            body = response.text
            logger.warning(
                "gateway_error_response",
                method=method,
                endpoint=endpoint,
                status_code=status,
                body=body[:1000],
            )
            try:
                payload = response.json()
            except ValueError:
                payload = None
            if status in (401, 403):
                raise GatewayAuthError("Gateway rejected credentials", status_code=status, body=body)
            if status == 429:
                retry_after = response.headers.get("retry-after")
                raise GatewayRateLimited(
                    "Gateway rate limit reached",
                    retry_after=int(retry_after) if retry_after and retry_after.isdigit() else None,
                    body=body,
                )
            if status >= 500:
                raise GatewayServerError(f"Gateway server error {status}", status_code=status, body=body)
            raise GatewayValidationError(
                f"Gateway rejected request ({status})",
                field_errors=_field_errors(payload),
                status_code=status,
                body=body,
            )

        if status == 204 or not response.content:
            return None
        return response.json()

    # ── Checkout & customers ─────────────────────────────────────────

    async def initialize_checkout(
        self,
        amount: Decimal,
        currency: str,
        mode: CheckoutMode,
        customer: CustomerRequest | None = None,
    ) -> CheckoutSession:
        """Start a HelcimPay.js session. Verify mode is a $0 authorization."""
        request = CheckoutRequest(
            payment_type=mode,
            amount=0.0 if mode == CheckoutMode.VERIFY else _money(amount),
            currency=currency,
            customer_request=customer,
        )
        payload = await self._request(
            "POST",
            "/helcim-pay/initialize",
            request.model_dump(mode="json", by_alias=True, exclude_none=True),
        )
        return CheckoutSession.model_validate(payload)

    async def create_customer(self, customer: CustomerRequest) -> GatewayCustomer:
        payload = await self._request(
            "POST",
            "/customers",
            customer.model_dump(mode="json", by_alias=True, exclude_none=True),
        )
        return GatewayCustomer.model_validate(_first_item(payload))

    # ── One-time ─────────────────────────────────────────────────────

    async def charge_customer(
        self,
        customer_id: str,
        card_token: str,
        amount: Decimal,
        *,
        idempotency_key: str,
        client_ip: str,
        invoice_number: str | None = None,
    ) -> ChargeResult:
        request = PurchaseRequest(
            ip_address=client_ip,
            currency=self.currency,
            amount=_money(amount),
            customer_code=customer_id,
            invoice_number=invoice_number,
            card_data=CardData(card_token=card_token),
        )
        payload = await self._request(
            "POST",
            "/payment/purchase",
            request.model_dump(mode="json", by_alias=True, exclude_none=True),
            idempotency_key=idempotency_key,
        )
        return ChargeResult.model_validate(payload)

    # ── Recurring ────────────────────────────────────────────────────

    async def create_or_reuse_recurring_plan(
        self, amount: Decimal, frequency: str = "monthly"
    ) -> PaymentPlan:
        """Return the plan for (amount, frequency), creating it on a cache miss."""
        if frequency not in SUPPORTED_FREQUENCIES:
            raise GatewayValidationError(
                f"Unsupported billing frequency: {frequency}",
                field_errors={"frequency": "unsupported"},
            )

        async with self.plan_cache.lock:
            cached = self.plan_cache.get(amount, frequency, self.currency)
            if cached is not None:
                logger.debug("payment_plan_cache_hit", plan_id=cached.payment_plan_id)
                return cached

            name = plan_name(amount, frequency)
            request = PaymentPlanRequest(
                name=name,
                description=f"Recurring {frequency} donation of {_money(amount):.2f} {self.currency}",
                currency=self.currency,
                recurring_amount=_money(amount),
                billing_period=SUPPORTED_FREQUENCIES[frequency],
            )
            payload = await self._request(
                "POST",
                "/payment-plans",
                {"paymentPlans": [request.model_dump(mode="json", by_alias=True)]},
            )
            plan = PaymentPlan.model_validate(_first_item(payload))
            self.plan_cache.put(amount, frequency, self.currency, plan)
            logger.info("payment_plan_created", plan_id=plan.payment_plan_id, name=name)
            return plan

    async def create_subscription(
        self,
        customer_id: str,
        payment_plan_id: str,
        card_token: str | None,
        *,
        amount: Decimal,
        idempotency_key: str,
    ) -> SubscriptionResult:
        request = SubscriptionRequest(
            customer_code=customer_id,
            payment_plan_id=payment_plan_id,
            recurring_amount=_money(amount),
            card_token=card_token,
            date_activated=datetime.now(UTC).date().isoformat(),
        )
        payload = await self._request(
            "POST",
            "/subscriptions",
            {"subscriptions": [request.model_dump(mode="json", by_alias=True, exclude_none=True)]},
            idempotency_key=idempotency_key,
        )
        return SubscriptionResult.model_validate(_first_item(payload))

    async def cancel_subscription(self, subscription_id: str) -> None:
        """Cancel at the gateway. An unknown (already removed) subscription is not an error."""
        try:
            await self._request("DELETE", f"/subscriptions/{subscription_id}")
        except GatewayValidationError as exc:
            if exc.status_code not in (404, 410):
                raise
            logger.info("subscription_already_cancelled", subscription_id=subscription_id)

    # ── Reconciliation lookups ───────────────────────────────────────

    async def fetch_transaction(self, transaction_id: str) -> GatewayTransaction:
        payload = await self._request("GET", f"/card-transactions/{transaction_id}")
        return GatewayTransaction.model_validate(_first_item(payload))

    async def fetch_subscription(self, subscription_id: str) -> GatewaySubscription:
        payload = await self._request("GET", f"/subscriptions/{subscription_id}")
        return GatewaySubscription.model_validate(_first_item(payload))
