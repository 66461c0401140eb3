"""PaymentGateway Protocol: the seam between donation logic and the payment provider.

Implementations:
- HelcimClient: the real Helcim v2 REST client
- GatewayFake: scenario-based test double (tests and local development)

Every operation either returns a typed result or raises a classified
GatewayError. Implementations never retry; recovery is the caller's decision.
"""

import uuid
from decimal import Decimal
from typing import Protocol, runtime_checkable

from donation_engine.schemas.gateway import (
    ChargeResult,
    CheckoutMode,
    CheckoutSession,
    CustomerRequest,
    GatewayCustomer,
    GatewaySubscription,
    GatewayTransaction,
    PaymentPlan,
    SubscriptionResult,
)

_IDEMPOTENCY_NAMESPACE = uuid.UUID("6f1d8c52-3a8e-4d4b-9a51-2c7e0f6b9d13")


def idempotency_key(donation_id: str, operation: str) -> str:
    """Deterministic per-(donation, operation) key; 36 chars, as Helcim requires 25-36."""
    return str(uuid.uuid5(_IDEMPOTENCY_NAMESPACE, f"{donation_id}:{operation}"))


@runtime_checkable
class PaymentGateway(Protocol):
    async def initialize_checkout(
        self,
        amount: Decimal,
        currency: str,
        mode: CheckoutMode,
        customer: CustomerRequest | None = None,
    ) -> CheckoutSession: ...

    async def create_customer(self, customer: CustomerRequest) -> GatewayCustomer: ...

    async def charge_customer(
        self,
        customer_id: str,
        card_token: str,
        amount: Decimal,
        *,
        idempotency_key: str,
        client_ip: str,
        invoice_number: str | None = None,
    ) -> ChargeResult: ...

    async def create_or_reuse_recurring_plan(
        self, amount: Decimal, frequency: str = "monthly"
    ) -> PaymentPlan: ...

    async def create_subscription(
        self,
        customer_id: str,
        payment_plan_id: str,
        card_token: str | None,
        *,
        amount: Decimal,
        idempotency_key: str,
    ) -> SubscriptionResult: ...

    async def cancel_subscription(self, subscription_id: str) -> None: ...

    async def fetch_transaction(self, transaction_id: str) -> GatewayTransaction: ...

    async def fetch_subscription(self, subscription_id: str) -> GatewaySubscription: ...

    async def aclose(self) -> None: ...
