"""Donor-facing donation routes: initialize checkout, process payment, status.

Error bodies never carry gateway detail. The classified exception is logged
server-side and the donor gets a short, generic message.
"""

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request

from donation_engine.api.deps import get_payment_orchestrator
from donation_engine.core.auth import AccountUser, optional_auth
from donation_engine.core.exceptions import (
    DonationNotFoundError,
    DonationStateError,
    DonationValidationError,
    GatewayAuthError,
    GatewayDeclined,
    GatewayError,
    GatewayRateLimited,
    GatewayTransientError,
    GatewayValidationError,
)
from donation_engine.core.rate_limit import client_ip, enforce_initialize_rate_limit
from donation_engine.schemas.donations import (
    DonationStatusResponse,
    InitializeDonationRequest,
    InitializeDonationResponse,
    ProcessPaymentRequest,
    ProcessPaymentResponse,
)
from donation_engine.services.payment_orchestrator import PaymentOrchestrator

logger = structlog.get_logger(__name__)

router = APIRouter()

NOT_APPROVED = "Payment was not approved. Please check your card details or try another card."
TRY_AGAIN = "We could not complete your payment right now. Please try again."
UNAVAILABLE = "Online giving is temporarily unavailable. Please try again later."


@router.post("/initialize", response_model=InitializeDonationResponse)
async def initialize_donation(
    body: InitializeDonationRequest,
    ip: str = Depends(enforce_initialize_rate_limit),
    user: AccountUser | None = Depends(optional_auth),
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    """Create a pending donation and return the checkout token for the payment widget."""
    try:
        return await orchestrator.initialize(body, user_id=user.user_id if user else None)
    except DonationValidationError as exc:
        raise HTTPException(status_code=400, detail={"message": "Invalid donation", "errors": exc.errors})
    except GatewayAuthError:
        logger.critical("gateway_auth_failed", operation="initialize_checkout", client_ip=ip)
        raise HTTPException(status_code=500, detail=UNAVAILABLE)
    except GatewayError as exc:
        logger.error("checkout_unavailable", error_type=type(exc).__name__, client_ip=ip)
        raise HTTPException(status_code=500, detail=TRY_AGAIN)


@router.post("/process-payment", response_model=ProcessPaymentResponse, response_model_exclude_none=True)
async def process_payment(
    body: ProcessPaymentRequest,
    request: Request,
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    """Complete a verified donation: charge once, or start the monthly subscription."""
    try:
        outcome = await orchestrator.process_payment(
            body.donation_id,
            body.customer_code,
            body.card_token,
            client_ip(request),
        )
    except DonationNotFoundError:
        raise HTTPException(status_code=404, detail="Donation not found")
    except DonationStateError:
        raise HTTPException(
            status_code=409,
            detail="This donation can no longer be processed. Please start a new donation.",
        )
    except (GatewayDeclined, GatewayValidationError):
        raise HTTPException(status_code=402, detail=NOT_APPROVED)
    except (GatewayTransientError, GatewayRateLimited):
        raise HTTPException(status_code=503, detail=TRY_AGAIN)
    except GatewayAuthError:
        logger.critical("gateway_auth_failed", operation="process_payment", donation_id=body.donation_id)
        raise HTTPException(status_code=500, detail=UNAVAILABLE)

    return ProcessPaymentResponse(
        success=outcome.success,
        type=outcome.type,
        transaction_id=outcome.transaction_id,
        subscription_id=outcome.subscription_id,
        next_billing_date=outcome.next_billing_date,
    )


@router.get("/{donation_id}", response_model=DonationStatusResponse)
async def get_donation_status(
    donation_id: str,
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    """Status lookup for the thank-you page. Never returns gateway tokens."""
    try:
        donation = await orchestrator.get_donation(donation_id)
    except DonationNotFoundError:
        raise HTTPException(status_code=404, detail="Donation not found")
    return DonationStatusResponse(
        id=donation.id,
        amount=donation.amount,
        currency=donation.currency,
        donor_name=donation.donor_name,
        donation_type=donation.donation_type,
        status=donation.status,
        created_at=donation.created_at,
    )
