"""StripeWebhookEvent model for replay suppression."""

from datetime import UTC, datetime

from sqlalchemy import Column, DateTime, String

from app.db.base import Base


class StripeWebhookEvent(Base):
    """Processor event ids that were claimed for processing."""

    __tablename__ = "stripe_webhook_events"

    event_id = Column(String(255), primary_key=True)
    event_type = Column(String(100), nullable=True)
    processed_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )
