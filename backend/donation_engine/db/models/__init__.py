"""Re-export all models so Base.metadata sees them."""

from donation_engine.db.models.donation import Donation
from donation_engine.db.models.webhook_event import ProcessedWebhookEvent

__all__ = [
    "Donation",
    "ProcessedWebhookEvent",
]
