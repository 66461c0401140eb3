"""Donation receipts and subscription notices, sent through the Resend HTTP API.

Both senders are fire-and-forget: they log and swallow every failure so a
broken mail provider can never undo a completed or active donation. With no
Resend API key configured they only log what would have been sent.
"""

from datetime import UTC, datetime
from decimal import Decimal
from html import escape

import httpx
import structlog
from pydantic import BaseModel

from donation_engine.core.config import get_settings
from donation_engine.domain.donation_lifecycle import DonationType

logger = structlog.get_logger(__name__)

RESEND_URL = "https://api.resend.com/emails"


class DonationReceipt(BaseModel):
    donor_name: str
    amount: Decimal
    currency: str
    donation_type: str  # "One-time" | "Monthly"
    donation_id: str
    donation_date: datetime
    transaction_id: str | None = None
    subscription_id: str | None = None
    next_billing_date: str | None = None
    tax_deductible_amount: Decimal
    organization_name: str
    organization_ein: str = ""
    organization_address: str = ""
    donor_address: str | None = None


def build_receipt(donation) -> DonationReceipt:
    """Receipt data for a donation row. The full amount is tax deductible."""
    settings = get_settings()
    address_parts = [
        donation.address_line1,
        donation.address_line2,
        donation.city,
        donation.state,
        donation.postal_code,
    ]
    donor_address = ", ".join(p for p in address_parts if p) or None
    is_monthly = donation.donation_type == DonationType.MONTHLY.value
    # A monthly receipt covers the latest billing cycle, a one-time gift its creation
    donation_date = donation.last_payment_attempt if is_monthly else donation.created_at
    return DonationReceipt(
        donor_name=donation.donor_name,
        amount=donation.amount,
        currency=donation.currency,
        donation_type="Monthly" if is_monthly else "One-time",
        donation_id=donation.id,
        donation_date=donation_date or datetime.now(UTC),
        transaction_id=donation.transaction_id,
        subscription_id=donation.subscription_id,
        next_billing_date=donation.next_billing_date,
        tax_deductible_amount=donation.amount,
        organization_name=settings.organization_name,
        organization_ein=settings.organization_ein,
        organization_address=settings.organization_address,
        donor_address=donor_address,
    )


def render_receipt_html(receipt: DonationReceipt) -> str:
    rows = [
        ("Donation", f"{receipt.amount:.2f} {receipt.currency} ({receipt.donation_type})"),
        ("Date", receipt.donation_date.strftime("%B %d, %Y")),
        ("Reference", receipt.transaction_id or receipt.subscription_id or receipt.donation_id),
    ]
    if receipt.next_billing_date:
        rows.append(("Next billing date", receipt.next_billing_date))
    rows.append(("Tax-deductible amount", f"{receipt.tax_deductible_amount:.2f} {receipt.currency}"))
    if receipt.organization_ein:
        rows.append(("EIN", receipt.organization_ein))
    table = "".join(f"<tr><td>{escape(k)}</td><td>{escape(str(v))}</td></tr>" for k, v in rows)
    return (
        f"<p>Dear {escape(receipt.donor_name)},</p>"
        f"<p>Thank you for your gift to {escape(receipt.organization_name)}.</p>"
        f"<table>{table}</table>"
        "<p>No goods or services were provided in exchange for this contribution.</p>"
        f"<p>{escape(receipt.organization_address)}</p>"
    )


class ReceiptNotifier:
    """Sends donor email through Resend."""

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None):
        self.settings = get_settings()
        self._transport = transport

    async def _send(self, to: str, subject: str, html: str, kind: str) -> bool:
        if not self.settings.resend_api_key:
            logger.info("email_not_configured", kind=kind, to=to, subject=subject)
            return False

        payload = {
            "from": self.settings.receipt_from_address,
            "to": [to],
            "subject": subject,
            "html": html,
        }
        try:
            async with httpx.AsyncClient(timeout=20, transport=self._transport) as client:
                response = await client.post(
                    RESEND_URL,
                    headers={"Authorization": f"Bearer {self.settings.resend_api_key}"},
                    json=payload,
                )
            if response.status_code >= 400:
                logger.warning(
                    "email_send_failed",
                    kind=kind,
                    status_code=response.status_code,
                    body=response.text[:500],
                )
                return False
        except Exception as exc:
            logger.warning("email_send_failed", kind=kind, error=str(exc), error_type=type(exc).__name__)
            return False

        logger.info("email_sent", kind=kind, to=to)
        return True

    async def send_donation_receipt(self, donor_email: str, receipt: DonationReceipt) -> bool:
        """Send a receipt. Never raises."""
        subject = f"Your {receipt.donation_type.lower()} donation receipt - {receipt.organization_name}"
        return await self._send(donor_email, subject, render_receipt_html(receipt), kind="receipt")

    async def send_subscription_failed_notice(
        self, donor_email: str, donor_name: str, amount: Decimal, currency: str, reason: str | None
    ) -> bool:
        """Tell a donor their monthly gift stopped after repeated failed charges."""
        html = (
            f"<p>Dear {escape(donor_name)},</p>"
            f"<p>We were unable to process your monthly donation of {amount:.2f} {escape(currency)} "
            "after several attempts, so the recurring gift has been stopped and you will not be charged again.</p>"
            "<p>If you would like to keep giving, please start a new monthly donation with an updated card.</p>"
        )
        if reason:
            logger.info("subscription_failed_notice_reason", reason=reason)
        return await self._send(
            donor_email, f"Your monthly donation to {self.settings.organization_name} has stopped", html,
            kind="subscription_failed",
        )
