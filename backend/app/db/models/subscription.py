"""Subscription model — last-known processor snapshot per subscription."""

from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String

from app.db.base import Base


class Subscription(Base):
    """One row per processor subscription; fully replaced on every upsert."""

    __tablename__ = "subscriptions"

    id = Column(String(255), primary_key=True)  # processor subscription id (sub_...)
    user_id = Column(String(255), nullable=False, index=True)

    status = Column(String(50), nullable=False)
    price_id = Column(String(255), nullable=True)
    quantity = Column(Integer, nullable=False, default=1)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)

    created = Column(DateTime(timezone=True), nullable=False)
    current_period_start = Column(DateTime(timezone=True), nullable=False)
    current_period_end = Column(DateTime(timezone=True), nullable=False)
    ended_at = Column(DateTime(timezone=True), nullable=True)
    cancel_at = Column(DateTime(timezone=True), nullable=True)
    canceled_at = Column(DateTime(timezone=True), nullable=True)
    trial_start = Column(DateTime(timezone=True), nullable=True)
    trial_end = Column(DateTime(timezone=True), nullable=True)

    # Passed through unmodified from the processor
    metadata_ = Column("metadata", JSON, nullable=False, default=dict)

    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
