"""Donation API schemas: request and response contracts for the donor-facing routes."""

from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Literal

from pydantic import BaseModel, EmailStr, Field, field_validator

from donation_engine.domain.donation_lifecycle import DonationType


class DonorAddress(BaseModel):
    line1: str = Field(..., min_length=1, max_length=255)
    line2: str | None = Field(None, max_length=255)
    city: str = Field(..., min_length=1, max_length=100)
    state: str = Field(..., min_length=1, max_length=100)
    postal_code: str = Field(..., min_length=1, max_length=20)
    country: str = Field("US", min_length=2, max_length=2)


class InitializeDonationRequest(BaseModel):
    """Donor form submission. Amount bounds and purpose are checked against settings."""

    amount: Decimal
    donation_type: DonationType
    donor_name: str = Field(..., min_length=1, max_length=255)
    donor_email: EmailStr
    donor_phone: str | None = Field(None, max_length=50)
    address: DonorAddress | None = None
    purpose: str = "general"
    comments: str | None = Field(None, max_length=2000)

    @field_validator("amount", mode="before")
    @classmethod
    def normalize_amount(cls, v):
        """Accept "$1,000.00" style strings from form fields."""
        if isinstance(v, str):
            v = v.replace("$", "").replace(",", "").strip()
            try:
                return Decimal(v)
            except InvalidOperation:
                raise ValueError("Amount must be a number")
        return v

    @field_validator("amount")
    @classmethod
    def positive_amount(cls, v: Decimal) -> Decimal:
        if not v.is_finite() or v <= 0:
            raise ValueError("Amount must be greater than zero")
        if v != v.quantize(Decimal("0.01")):
            raise ValueError("Amount cannot have more than two decimal places")
        return v

    @field_validator("donor_name")
    @classmethod
    def reject_whitespace_only(cls, v: str) -> str:
        stripped = v.strip()
        if not stripped:
            raise ValueError("Name cannot be empty")
        return stripped


class InitializeDonationResponse(BaseModel):
    checkout_token: str
    donation_id: str


class ProcessPaymentRequest(BaseModel):
    """What the payment widget reports after a successful verification."""

    donation_id: str = Field(..., min_length=1)
    customer_code: str | None = None
    card_token: str = Field(..., min_length=1)


class ProcessPaymentResponse(BaseModel):
    success: bool
    type: Literal["one-time", "recurring"]
    transaction_id: str | None = None
    subscription_id: str | None = None
    next_billing_date: str | None = None


class DonationStatusResponse(BaseModel):
    """Token-free view of a donation."""

    id: str
    amount: Decimal
    currency: str
    donor_name: str
    donation_type: str
    status: str
    created_at: datetime


class SubscriptionSummary(BaseModel):
    donation_id: str
    subscription_id: str
    amount: Decimal
    currency: str
    status: str
    next_billing_date: str | None = None
    payment_retry_count: int
    created_at: datetime
