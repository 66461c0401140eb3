"""GatewayFake: Scenario-based test double for the PaymentGateway protocol.

Provides deterministic, instant responses for named scenarios:
- happy_path: every call succeeds
- declined: charges come back DECLINED, subscriptions are refused
- network_error: every mutating call raises GatewayNetworkError
- server_error: every mutating call raises GatewayServerError
- flaky: the first mutating call raises GatewayServerError, later calls succeed
- auth_error: every call raises GatewayAuthError

Every call is recorded in ``calls`` as (operation, kwargs) so tests can
assert on what reached the gateway.
"""

import itertools
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal

from donation_engine.core.exceptions import (
    GatewayAuthError,
    GatewayNetworkError,
    GatewayServerError,
    GatewayValidationError,
)
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


def _next_month(today: date) -> date:
    return today + timedelta(days=30)


class GatewayFake:
    """Scenario-based stand-in for HelcimClient."""

    VALID_SCENARIOS = {"happy_path", "declined", "network_error", "server_error", "flaky", "auth_error"}

    def __init__(self, scenario: str = "happy_path"):
        """Initialize GatewayFake with a named scenario.

        Raises:
            ValueError: If scenario is not recognized
        """
        if scenario not in self.VALID_SCENARIOS:
            raise ValueError(
                f"Unknown scenario: {scenario}. Valid scenarios: {self.VALID_SCENARIOS}"
            )
        self.scenario = scenario
        self.calls: list[tuple[str, dict]] = []
        self.transactions: dict[str, GatewayTransaction] = {}
        self.subscriptions: dict[str, GatewaySubscription] = {}
        self._plans: dict[tuple[Decimal, str], PaymentPlan] = {}
        self._ids = itertools.count(1001)
        self._charges_by_key: dict[str, ChargeResult] = {}
        self._failed_once = False

    def calls_to(self, operation: str) -> list[dict]:
        return [kwargs for name, kwargs in self.calls if name == operation]

    def _fail_if_configured(self, mutating: bool = True) -> None:
        if self.scenario == "auth_error":
            raise GatewayAuthError("Gateway rejected credentials", status_code=401)
        if not mutating:
            return
        if self.scenario == "network_error":
            raise GatewayNetworkError("Simulated timeout")
        if self.scenario == "server_error":
            raise GatewayServerError("Simulated 503", status_code=503)
        if self.scenario == "flaky" and not self._failed_once:
            self._failed_once = True
            raise GatewayServerError("Simulated 502", status_code=502)

    async def initialize_checkout(
        self,
        amount: Decimal,
        currency: str,
        mode: CheckoutMode,
        customer: CustomerRequest | None = None,
    ) -> CheckoutSession:
        self.calls.append(("initialize_checkout", {"amount": amount, "currency": currency, "mode": mode}))
        self._fail_if_configured()
        n = next(self._ids)
        return CheckoutSession(checkout_token=f"chk_{n}", secret_token=f"sec_{n}")

    async def create_customer(self, customer: CustomerRequest) -> GatewayCustomer:
        self.calls.append(("create_customer", {"contact_name": customer.contact_name}))
        self._fail_if_configured()
        return GatewayCustomer(customer_code=f"CST{next(self._ids)}")

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
        self.calls.append((
            "charge_customer",
            {
                "customer_id": customer_id,
                "amount": amount,
                "idempotency_key": idempotency_key,
                "invoice_number": invoice_number,
            },
        ))
        self._fail_if_configured()
        # Same key, same answer: a replayed charge is never a second charge
        if idempotency_key in self._charges_by_key:
            return self._charges_by_key[idempotency_key]

        status = "DECLINED" if self.scenario == "declined" else "APPROVED"
        result = ChargeResult(transaction_id=str(next(self._ids)), status=status, amount=amount)
        self._charges_by_key[idempotency_key] = result
        self.transactions[result.transaction_id] = GatewayTransaction(
            transaction_id=result.transaction_id,
            status=status,
            type="purchase",
            amount=amount,
            invoice_number=invoice_number,
            customer_code=customer_id,
        )
        return result

    async def create_or_reuse_recurring_plan(
        self, amount: Decimal, frequency: str = "monthly"
    ) -> PaymentPlan:
        self.calls.append(("create_or_reuse_recurring_plan", {"amount": amount, "frequency": frequency}))
        self._fail_if_configured()
        key = (Decimal(amount).quantize(Decimal("0.01")), frequency)
        if key not in self._plans:
            self._plans[key] = PaymentPlan(payment_plan_id=str(next(self._ids)))
        return self._plans[key]

    async def create_subscription(
        self,
        customer_id: str,
        payment_plan_id: str,
        card_token: str | None,
        *,
        amount: Decimal,
        idempotency_key: str,
    ) -> SubscriptionResult:
        self.calls.append((
            "create_subscription",
            {
                "customer_id": customer_id,
                "payment_plan_id": payment_plan_id,
                "amount": amount,
                "idempotency_key": idempotency_key,
            },
        ))
        self._fail_if_configured()
        if self.scenario == "declined":
            raise GatewayValidationError(
                "Gateway rejected request (422)",
                field_errors={"cardToken": "Card declined"},
                status_code=422,
            )
        subscription_id = str(next(self._ids))
        next_billing = _next_month(datetime.now(UTC).date()).isoformat()
        self.subscriptions[subscription_id] = GatewaySubscription(
            subscription_id=subscription_id,
            status="active",
            recurring_amount=amount,
            next_billing_date=next_billing,
            customer_code=customer_id,
            payment_plan_id=payment_plan_id,
        )
        return SubscriptionResult(subscription_id=subscription_id, next_billing_date=next_billing)

    async def cancel_subscription(self, subscription_id: str) -> None:
        self.calls.append(("cancel_subscription", {"subscription_id": subscription_id}))
        self._fail_if_configured(mutating=False)
        existing = self.subscriptions.get(subscription_id)
        if existing is not None:
            self.subscriptions[subscription_id] = existing.model_copy(update={"status": "cancelled"})

    async def fetch_transaction(self, transaction_id: str) -> GatewayTransaction:
        self.calls.append(("fetch_transaction", {"transaction_id": transaction_id}))
        self._fail_if_configured(mutating=False)
        if transaction_id not in self.transactions:
            raise GatewayValidationError("Transaction not found", status_code=404)
        return self.transactions[transaction_id]

    async def fetch_subscription(self, subscription_id: str) -> GatewaySubscription:
        self.calls.append(("fetch_subscription", {"subscription_id": subscription_id}))
        self._fail_if_configured(mutating=False)
        if subscription_id not in self.subscriptions:
            raise GatewayValidationError("Subscription not found", status_code=404)
        return self.subscriptions[subscription_id]

    async def aclose(self) -> None:
        return None
