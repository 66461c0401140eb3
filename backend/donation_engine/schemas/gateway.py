"""Typed request/response shapes for the payment gateway.

Helcim answers in camelCase; models accept it via aliases and expose
snake_case attributes to the rest of the engine.
"""

from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class CheckoutMode(str, Enum):
    PURCHASE = "purchase"
    VERIFY = "verify"


class GatewayModel(BaseModel):
    # Helcim sends numeric ids; the engine stores them as strings
    model_config = ConfigDict(populate_by_name=True, extra="ignore", coerce_numbers_to_str=True)


# ── Requests ────────────────────────────────────────────────────────


class BillingAddress(GatewayModel):
    name: str
    street1: str = ""
    street2: str = ""
    city: str = ""
    province: str = ""
    country: str = ""
    postal_code: str = Field("", serialization_alias="postalCode")
    phone: str = ""
    email: str = ""


class CustomerRequest(GatewayModel):
    contact_name: str = Field(..., serialization_alias="contactName")
    email: str = ""
    billing_address: BillingAddress | None = Field(None, serialization_alias="billingAddress")


class CheckoutRequest(GatewayModel):
    payment_type: CheckoutMode = Field(..., serialization_alias="paymentType")
    amount: float
    currency: str
    customer_request: CustomerRequest | None = Field(None, serialization_alias="customerRequest")


class CardData(GatewayModel):
    card_token: str = Field(..., serialization_alias="cardToken")


class PurchaseRequest(GatewayModel):
    ip_address: str = Field(..., serialization_alias="ipAddress")
    currency: str
    amount: float
    customer_code: str = Field(..., serialization_alias="customerCode")
    invoice_number: str | None = Field(None, serialization_alias="invoiceNumber")
    card_data: CardData = Field(..., serialization_alias="cardData")


class PaymentPlanRequest(GatewayModel):
    name: str
    description: str = ""
    type: str = "subscription"
    currency: str
    recurring_amount: float = Field(..., serialization_alias="recurringAmount")
    billing_period: str = Field("monthly", serialization_alias="billingPeriod")
    billing_period_increments: int = Field(1, serialization_alias="billingPeriodIncrements")
    date_billing: str = Field("Sign-up", serialization_alias="dateBilling")
    term_type: str = Field("forever", serialization_alias="termType")
    payment_method: str = Field("card", serialization_alias="paymentMethod")
    tax_type: str = Field("no_tax", serialization_alias="taxType")
    status: str = "active"


class SubscriptionRequest(GatewayModel):
    customer_code: str = Field(..., serialization_alias="customerCode")
    payment_plan_id: int | str = Field(..., serialization_alias="paymentPlanId")
    recurring_amount: float = Field(..., serialization_alias="recurringAmount")
    payment_method: str = Field("card", serialization_alias="paymentMethod")
    card_token: str | None = Field(None, serialization_alias="cardToken")
    date_activated: str = Field(..., serialization_alias="dateActivated")


# ── Results ─────────────────────────────────────────────────────────


class CheckoutSession(GatewayModel):
    checkout_token: str = Field(..., alias="checkoutToken")
    secret_token: str = Field(..., alias="secretToken")


class GatewayCustomer(GatewayModel):
    customer_code: str = Field(..., alias="customerCode")
    id: int | str | None = None


class ChargeResult(GatewayModel):
    transaction_id: str = Field(..., alias="transactionId")
    status: str
    amount: Decimal | None = None
    approval_code: str | None = Field(None, alias="approvalCode")

    @property
    def approved(self) -> bool:
        return self.status.upper() == "APPROVED"


class PaymentPlan(GatewayModel):
    payment_plan_id: str = Field(..., alias="id")
    name: str | None = None
    recurring_amount: Decimal | None = Field(None, alias="recurringAmount")


class SubscriptionResult(GatewayModel):
    subscription_id: str = Field(..., alias="id")
    next_billing_date: str | None = Field(None, alias="nextBillingDate")
    status: str | None = None


class GatewayTransaction(GatewayModel):
    transaction_id: str = Field(..., alias="transactionId")
    status: str
    type: str | None = None  # purchase | refund | verify ...
    amount: Decimal | None = None
    invoice_number: str | None = Field(None, alias="invoiceNumber")
    subscription_id: str | None = Field(None, alias="subscriptionId")
    customer_code: str | None = Field(None, alias="customerCode")
    # Present on subscription charges delivered by webhook
    next_billing_date: str | None = Field(None, alias="nextBillingDate")


class GatewaySubscription(GatewayModel):
    subscription_id: str = Field(..., alias="id")
    status: str | None = None
    recurring_amount: Decimal | None = Field(None, alias="recurringAmount")
    next_billing_date: str | None = Field(None, alias="nextBillingDate")
    customer_code: str | None = Field(None, alias="customerCode")
    payment_plan_id: str | None = Field(None, alias="paymentPlanId")

