"""Processed webhook markers used for redelivery dedup."""

from sqlalchemy import Column, DateTime, String
from sqlalchemy.sql import func

from database import Base


class WebhookEvent(Base):
    """(source, event_id) pairs that were durably accepted."""

    __tablename__ = "webhook_events"

    source = Column(String, primary_key=True)
    event_id = Column(String, primary_key=True)
    event_type = Column(String, nullable=True)
    processed_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)
