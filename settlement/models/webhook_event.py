from sqlalchemy import Column, String, DateTime, Boolean, Index, JSON
from settlement.config.database import Base
from settlement.utils.clock import utcnow
import uuid


class WebhookEvent(Base):
    __tablename__ = "webhook_events"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    event_id = Column(String(255), unique=True, nullable=False)
    event_type = Column(String(100), nullable=False, index=True)
    object_id = Column(String(255), nullable=True, index=True)
    object_type = Column(String(100), nullable=True)
    payload = Column(JSON, nullable=False)
    processed = Column(Boolean, default=False, index=True)
    created_at = Column(DateTime, default=utcnow, index=True)
    processed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_webhook_object_processed", "object_id", "processed"),
    )
