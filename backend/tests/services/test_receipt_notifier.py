"""Tests for receipt building and the fire-and-forget Resend sender."""

import json
from datetime import UTC, datetime
from decimal import Decimal
from types import SimpleNamespace

import httpx
import pytest

from donation_engine.core.config import Settings
from donation_engine.services.receipt_notifier import (
    RESEND_URL,
    DonationReceipt,
    ReceiptNotifier,
    build_receipt,
    render_receipt_html,
)

pytestmark = pytest.mark.unit


def _donation(**overrides):
    fields = {
        "id": "don-1",
        "donor_name": "Grace Hopper",
        "amount": Decimal("25.00"),
        "currency": "USD",
        "donation_type": "one-time",
        "transaction_id": "25764674",
        "subscription_id": None,
        "next_billing_date": None,
        "address_line1": "1 Harbor Way",
        "address_line2": None,
        "city": "Arlington",
        "state": "VA",
        "postal_code": "22201",
        "created_at": datetime(2026, 10, 3, 14, 30, tzinfo=UTC),
        "last_payment_attempt": None,
    }
    fields.update(overrides)
    return SimpleNamespace(**fields)


def _receipt(**overrides) -> DonationReceipt:
    fields = {
        "donor_name": "Grace <Hopper>",
        "amount": Decimal("25.00"),
        "currency": "USD",
        "donation_type": "One-time",
        "donation_id": "don-1",
        "donation_date": datetime(2026, 10, 18, tzinfo=UTC),
        "transaction_id": "25764674",
        "tax_deductible_amount": Decimal("25.00"),
        "organization_name": "Harbor Light Foundation",
        "organization_ein": "12-3456789",
    }
    fields.update(overrides)
    return DonationReceipt(**fields)


def _notifier(handler, api_key: str = "re_test_key") -> ReceiptNotifier:
    notifier = ReceiptNotifier(transport=httpx.MockTransport(handler))
    notifier.settings = Settings(resend_api_key=api_key, receipt_from_address="gifts@harborlight.org")
    return notifier


class TestBuildReceipt:
    def test_one_time(self):
        receipt = build_receipt(_donation())

        assert receipt.donation_type == "One-time"
        assert receipt.tax_deductible_amount == Decimal("25.00")
        assert receipt.transaction_id == "25764674"
        assert receipt.donor_address == "1 Harbor Way, Arlington, VA, 22201"

    def test_monthly(self):
        receipt = build_receipt(_donation(
            donation_type="monthly", transaction_id=None, subscription_id="501", next_billing_date="2026-11-18"
        ))

        assert receipt.donation_type == "Monthly"
        assert receipt.subscription_id == "501"
        assert receipt.next_billing_date == "2026-11-18"

    def test_one_time_dated_when_given(self):
        receipt = build_receipt(_donation())

        assert receipt.donation_date == datetime(2026, 10, 3, 14, 30, tzinfo=UTC)

    def test_monthly_dated_by_latest_billing(self):
        billed = datetime(2026, 11, 3, 9, 0, tzinfo=UTC)

        receipt = build_receipt(_donation(
            donation_type="monthly", subscription_id="501", last_payment_attempt=billed
        ))

        assert receipt.donation_date == billed

    def test_no_address(self):
        receipt = build_receipt(_donation(address_line1=None, city=None, state=None, postal_code=None))

        assert receipt.donor_address is None


def test_rendered_receipt_escapes_donor_input():
    html = render_receipt_html(_receipt())

    assert "Grace &lt;Hopper&gt;" in html
    assert "25.00 USD" in html
    assert "12-3456789" in html


class TestSend:
    async def test_posts_to_resend(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"id": "email_1"})

        sent = await _notifier(handler).send_donation_receipt("grace@example.org", _receipt())

        assert sent is True
        request = requests[0]
        assert str(request.url) == RESEND_URL
        assert request.headers["authorization"] == "Bearer re_test_key"
        payload = json.loads(request.content)
        assert payload["to"] == ["grace@example.org"]
        assert payload["from"] == "gifts@harborlight.org"
        assert "receipt" in payload["subject"]

    async def test_unconfigured_only_logs(self):
        def handler(request):
            raise AssertionError("no request expected")

        assert await _notifier(handler, api_key="").send_donation_receipt("grace@example.org", _receipt()) is False

    async def test_provider_error_is_swallowed(self):
        sent = await _notifier(lambda r: httpx.Response(500, text="oops")).send_donation_receipt(
            "grace@example.org", _receipt()
        )

        assert sent is False

    async def test_network_error_is_swallowed(self):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        assert await _notifier(handler).send_donation_receipt("grace@example.org", _receipt()) is False

    async def test_subscription_failed_notice(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"id": "email_2"})

        sent = await _notifier(handler).send_subscription_failed_notice(
            "grace@example.org", "Grace Hopper", Decimal("25.00"), "USD", "insufficient funds"
        )

        assert sent is True
        payload = json.loads(requests[0].content)
        assert "stopped" in payload["subject"]
        assert "25.00 USD" in payload["html"]
