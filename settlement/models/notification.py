from sqlalchemy import Column, String, DateTime, Boolean, Index, JSON
from settlement.config.database import Base
from settlement.utils.clock import utcnow
import uuid

PAYMENT_RECEIVED = "payment_received"


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(64), nullable=False, index=True)
    category = Column(String(50), nullable=False, index=True)
    title = Column(String(255), nullable=True)
    message = Column(String(1000), nullable=False)
    data = Column(JSON, default=dict, nullable=False)
    read = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_notification_user_unread", "user_id", "category", "read", "created_at"),
    )


class NotificationPreference(Base):
    __tablename__ = "notification_preferences"

    user_id = Column(String(64), primary_key=True)
    status_updates = Column(Boolean, default=True, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
