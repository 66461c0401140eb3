"""Donation model: one donor intent, a single charge or the anchor of a subscription."""

import uuid
from datetime import UTC, datetime

from sqlalchemy import Column, DateTime, Integer, Numeric, String, Text

from donation_engine.db.base import Base
from donation_engine.domain.donation_lifecycle import DonationStatus, DonationType


def _now() -> datetime:
    return datetime.now(UTC)


class Donation(Base):
    __tablename__ = "donations"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    donation_type = Column(String(20), nullable=False, default=DonationType.ONE_TIME.value)
    status = Column(String(20), nullable=False, default=DonationStatus.PENDING.value, index=True)
    purpose = Column(String(50), nullable=False, default="general")

    # Donor
    donor_name = Column(String(255), nullable=False)
    donor_email = Column(String(255), nullable=False)
    donor_phone = Column(String(50), nullable=True)
    address_line1 = Column(String(255), nullable=True)
    address_line2 = Column(String(255), nullable=True)
    city = Column(String(100), nullable=True)
    state = Column(String(100), nullable=True)
    postal_code = Column(String(20), nullable=True)
    country = Column(String(2), nullable=True)
    comments = Column(Text, nullable=True)

    # Gateway correlation
    checkout_token = Column(String(255), unique=True, nullable=True)
    secret_token = Column(String(255), unique=True, nullable=True)
    customer_id = Column(String(255), nullable=True, index=True)
    payment_plan_id = Column(String(255), nullable=True)
    subscription_id = Column(String(255), unique=True, nullable=True, index=True)
    transaction_id = Column(String(255), nullable=True, index=True)
    next_billing_date = Column(String(10), nullable=True)  # YYYY-MM-DD as the gateway sends it

    # Recurring failure bookkeeping
    payment_retry_count = Column(Integer, nullable=False, default=0)
    last_payment_attempt = Column(DateTime(timezone=True), nullable=True)
    last_payment_failure_reason = Column(String(500), nullable=True)

    # Owner (account layer); anonymous donations have none
    user_id = Column(String(255), nullable=True, index=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now, onupdate=_now)

    @property
    def is_recurring(self) -> bool:
        return self.donation_type == DonationType.MONTHLY.value
