"""Account routes: a signed-in donor's monthly gifts."""

import structlog
from fastapi import APIRouter, Depends, HTTPException

from donation_engine.api.deps import get_payment_orchestrator
from donation_engine.core.auth import AccountUser, require_auth
from donation_engine.core.exceptions import (
    DonationNotFoundError,
    DonationStateError,
    GatewayError,
)
from donation_engine.db.models.donation import Donation
from donation_engine.schemas.donations import SubscriptionSummary
from donation_engine.services.payment_orchestrator import PaymentOrchestrator

logger = structlog.get_logger(__name__)

router = APIRouter()


def _summary(donation: Donation) -> SubscriptionSummary:
    return SubscriptionSummary(
        donation_id=donation.id,
        subscription_id=donation.subscription_id,
        amount=donation.amount,
        currency=donation.currency,
        status=donation.status,
        next_billing_date=donation.next_billing_date,
        payment_retry_count=donation.payment_retry_count,
        created_at=donation.created_at,
    )


@router.get("/subscriptions", response_model=list[SubscriptionSummary])
async def list_subscriptions(
    user: AccountUser = Depends(require_auth),
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    donations = await orchestrator.list_subscriptions(user.user_id)
    return [_summary(d) for d in donations]


@router.post("/subscriptions/{donation_id}/cancel", response_model=SubscriptionSummary)
async def cancel_subscription(
    donation_id: str,
    user: AccountUser = Depends(require_auth),
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    """Stop a monthly gift at the gateway, then mark it cancelled."""
    try:
        donation = await orchestrator.cancel_subscription(donation_id, user.user_id)
    except DonationNotFoundError:
        raise HTTPException(status_code=404, detail="Subscription not found")
    except DonationStateError:
        raise HTTPException(status_code=409, detail="This subscription is no longer active")
    except GatewayError as exc:
        logger.error("subscription_cancel_failed", donation_id=donation_id, error_type=type(exc).__name__)
        raise HTTPException(status_code=502, detail="Could not cancel right now. Please try again.")
    return _summary(donation)
