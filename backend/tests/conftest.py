"""Shared test fixtures for all test groups."""

import base64
import json
import os
import time
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from donation_engine.core.config import Settings
from donation_engine.db.base import Base, create_tables, make_session_factory
from donation_engine.domain.webhook_signature import compute_signature, decode_verifier_token
from donation_engine.integrations.gateway_fake import GatewayFake
from donation_engine.schemas.donations import InitializeDonationRequest
from donation_engine.services.payment_orchestrator import PaymentOrchestrator
from donation_engine.services.webhook_receiver import WebhookReceiver

WEBHOOK_TOKEN = "whsec_" + base64.b64encode(b"test-webhook-verifier-secret").decode()


@pytest.fixture
def test_settings() -> Settings:
    """Settings isolated from the developer's environment where it matters."""
    return Settings(
        helcim_api_token="",
        helcim_currency="USD",
        helcim_webhook_verifier_token=WEBHOOK_TOKEN,
        gateway_retry_delay_seconds=0.5,
        max_payment_retries=3,
        min_donation_amount=Decimal("1.00"),
        max_donation_amount=Decimal("100000.00"),
        metrics_enabled=False,
        resend_api_key="",
    )


@pytest.fixture
async def engine(tmp_path) -> AsyncEngine:
    """Per-test database with fresh tables.

    Uses a throwaway SQLite file unless TEST_DATABASE_URL points at Postgres.
    Also sets the global session factory so code that calls
    get_session_factory() sees the same database.
    """
    import donation_engine.db.base as db_mod

    url = os.getenv("TEST_DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'donations.db'}")
    engine = create_async_engine(url, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await create_tables(engine)

    db_mod._engine = engine
    db_mod._session_factory = make_session_factory(engine)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    db_mod._engine = None
    db_mod._session_factory = None
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    import donation_engine.db.base as db_mod

    return db_mod._session_factory


@pytest.fixture
def gateway_fake():
    """Fresh GatewayFake with happy_path scenario (default)."""
    return GatewayFake(scenario="happy_path")


@pytest.fixture
def notifier():
    """Receipt notifier double; every send reports success."""
    mock = AsyncMock()
    mock.send_donation_receipt.return_value = True
    mock.send_subscription_failed_notice.return_value = True
    return mock


@pytest.fixture
def retry_sleep():
    return AsyncMock()


@pytest.fixture
def orchestrator(gateway_fake, notifier, session_factory, test_settings, retry_sleep):
    return PaymentOrchestrator(
        gateway_fake,
        notifier,
        session_factory=session_factory,
        settings=test_settings,
        sleep=retry_sleep,
    )


@pytest.fixture
def receiver(gateway_fake, notifier, session_factory, test_settings):
    return WebhookReceiver(gateway_fake, notifier, session_factory=session_factory, settings=test_settings)


def donation_request(**overrides) -> InitializeDonationRequest:
    """A valid donor form submission."""
    fields = {
        "amount": "25.00",
        "donation_type": "one-time",
        "donor_name": "Grace Hopper",
        "donor_email": "grace@example.org",
        "address": {
            "line1": "1 Harbor Way",
            "city": "Arlington",
            "state": "VA",
            "postal_code": "22201",
        },
    }
    fields.update(overrides)
    return InitializeDonationRequest(**fields)


def signed_webhook(
    event_id: str,
    event_type: str,
    reference: str,
    data: dict | None = None,
    *,
    token: str = WEBHOOK_TOKEN,
    timestamp: int | None = None,
) -> tuple[dict[str, str], bytes]:
    """Build (headers, body) for a correctly signed gateway webhook."""
    payload = {"id": reference, "type": event_type}
    if data is not None:
        payload["data"] = data
    body = json.dumps(payload).encode()
    ts = str(timestamp if timestamp is not None else int(time.time()))
    signature = compute_signature(decode_verifier_token(token), event_id, ts, body)
    headers = {
        "webhook-id": event_id,
        "webhook-timestamp": ts,
        "webhook-signature": f"v1,{signature}",
    }
    return headers, body


@pytest.fixture
def make_donation_request():
    return donation_request


@pytest.fixture
def sign_webhook():
    return signed_webhook
