"""
Webhook Event database model.
"""

from datetime import datetime

from sqlalchemy import Column, Integer, String, DateTime
from backend.app.db.session import Base


class WebhookEvent(Base):
    """Provider webhook event log for idempotency. Inserted with the event's own mutations."""
    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    provider_event_id = Column(String(255), unique=True, nullable=False, index=True)
    event_type = Column(String(100), nullable=False, index=True)
    processed_at = Column(DateTime, default=datetime.utcnow, nullable=False)
