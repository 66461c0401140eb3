"""ProcessedWebhookEvent model for webhook idempotency."""

from datetime import UTC, datetime

from sqlalchemy import Column, DateTime, String

from donation_engine.db.base import Base


class ProcessedWebhookEvent(Base):
    """One row per gateway event id that has been applied to donation state."""

    __tablename__ = "webhook_events"

    event_id = Column(String(255), primary_key=True)
    provider = Column(String(50), nullable=False, default="helcim")
    event_type = Column(String(100), nullable=False)
    processed_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )
