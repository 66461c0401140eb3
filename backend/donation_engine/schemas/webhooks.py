"""Webhook event schemas: the minimal gateway body plus its normalized form."""

from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class WebhookEventType(str, Enum):
    TRANSACTION_APPROVED = "transaction.approved"
    TRANSACTION_DECLINED = "transaction.declined"
    TRANSACTION_REFUNDED = "transaction.refunded"
    SUBSCRIPTION_CHARGED = "subscription.charged"
    SUBSCRIPTION_CHARGE_FAILED = "subscription.charge_failed"
    SUBSCRIPTION_CANCELLED = "subscription.cancelled"
    # Native Helcim event names
    CARD_TRANSACTION = "cardTransaction"
    TERMINAL_CANCEL = "terminalCancel"


class WebhookEvent(BaseModel):
    """Inbound body. ``id`` references the affected transaction or subscription."""

    id: str = Field(..., min_length=1)
    type: str = Field(..., min_length=1)
    # Free-form provider details; only a handful of keys are read
    data: dict[str, Any] | None = None


class NormalizedEvent(BaseModel):
    """A webhook reduced to what the donation state machine acts on."""

    type: WebhookEventType
    transaction_id: str | None = None
    subscription_id: str | None = None
    donation_ref: str | None = None  # our donation id echoed back as invoice number
    amount: Decimal | None = None
    next_billing_date: str | None = None  # YYYY-MM-DD, subscription charges only
    reason: str | None = None


class WebhookAck(BaseModel):
    status: str  # "processed" | "ignored" | "duplicate"
    reason: str | None = None
