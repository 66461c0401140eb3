"""FastAPI dependencies that hand routes their service objects.

The gateway client and receipt notifier are process-wide and live on
``app.state`` (built in the lifespan). Tests swap them through
``app.dependency_overrides``.
"""

from fastapi import Depends, Request

from donation_engine.integrations.gateway import PaymentGateway
from donation_engine.services.payment_orchestrator import PaymentOrchestrator
from donation_engine.services.receipt_notifier import ReceiptNotifier
from donation_engine.services.webhook_receiver import WebhookReceiver


def get_gateway(request: Request) -> PaymentGateway:
    return request.app.state.gateway


def get_receipt_notifier(request: Request) -> ReceiptNotifier:
    notifier = getattr(request.app.state, "receipt_notifier", None)
    return notifier or ReceiptNotifier()


def get_payment_orchestrator(
    gateway: PaymentGateway = Depends(get_gateway),
    notifier: ReceiptNotifier = Depends(get_receipt_notifier),
) -> PaymentOrchestrator:
    return PaymentOrchestrator(gateway, notifier)


def get_webhook_receiver(
    gateway: PaymentGateway = Depends(get_gateway),
    notifier: ReceiptNotifier = Depends(get_receipt_notifier),
) -> WebhookReceiver:
    return WebhookReceiver(gateway, notifier)
