"""API-specific test fixtures.

The app is driven in-process through httpx.ASGITransport, so the lifespan
does not run: services are injected through dependency_overrides and share
the per-test database from the root conftest.
"""

import pytest
from httpx import ASGITransport, AsyncClient

import donation_engine.core.rate_limit as rate_limit_mod
from donation_engine.api.deps import get_payment_orchestrator, get_webhook_receiver
from donation_engine.core.auth import AccountUser, require_auth
from donation_engine.core.rate_limit import SlidingWindowRateLimiter, reset_rate_limiter
from donation_engine.main import create_app


@pytest.fixture
def app(orchestrator, receiver):
    app = create_app()
    app.dependency_overrides[get_payment_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_webhook_receiver] = lambda: receiver

    reset_rate_limiter()
    rate_limit_mod._limiter = SlidingWindowRateLimiter(limit=5, window_seconds=60)
    yield app
    reset_rate_limiter()
    app.dependency_overrides.clear()


@pytest.fixture
async def api_client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


def override_auth(user: AccountUser):
    """Dependency override factory for require_auth."""

    async def _override():
        return user

    return _override


@pytest.fixture
def signed_in(app):
    """Make require_auth return a fixed account holder."""
    user = AccountUser(user_id="user_123", claims={"sub": "user_123"})
    app.dependency_overrides[require_auth] = override_auth(user)
    return user
