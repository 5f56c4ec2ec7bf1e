from sqlalchemy.orm import relationship
from sqlalchemy import Column, Integer, String, Text, Boolean, ForeignKey, DateTime, UniqueConstraint, func

from app.database.connection import Base

# Notification status values
STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"


class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, index=True)
    firebase_uid = Column(String(255), unique=True, index=True, nullable=True)
    email = Column(Text, unique=True, nullable=True, index=True)
    full_name = Column(String(255), nullable=True)
    # parent | staff | admin
    role = Column(String(50), nullable=False, default="parent", index=True)
    is_active = Column(Boolean, default=True, nullable=False)
    fcm_token = Column(Text, nullable=True, unique=True)

    push_subscriptions = relationship("PushSubscription", back_populates="user", cascade="all, delete-orphan")


class PushSubscription(Base):
    __tablename__ = "push_subscriptions"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    endpoint = Column(Text, nullable=False)
    p256dh = Column(Text, nullable=False)
    auth = Column(Text, nullable=False)
    user_agent = Column(Text, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, server_default=func.now())

    user = relationship("User", back_populates="push_subscriptions")
    __table_args__ = (UniqueConstraint('user_id', 'endpoint', name='_user_endpoint_uc'),)


class Notification(Base):
    __tablename__ = "notifications"
    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(255), nullable=False)
    body = Column(Text, nullable=False, default="")
    recipient_summary = Column(Text, nullable=False, default="")
    created_by = Column(String(255), nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    completed_at = Column(DateTime, nullable=True)

    # Aggregate delivery stats; total == sent + failed + remaining
    total = Column(Integer, nullable=False, default=0)
    sent = Column(Integer, nullable=False, default=0)
    failed = Column(Integer, nullable=False, default=0)
    remaining = Column(Integer, nullable=False, default=0)
    status = Column(String(20), nullable=False, default=STATUS_PROCESSING)
    type = Column(String(50), nullable=False, default="announcement")
    priority = Column(String(20), nullable=False, default="medium")

    processing_errors = relationship(
        "NotificationProcessingError", back_populates="notification", cascade="all, delete-orphan"
    )


class NotificationProcessingError(Base):
    """One line of delivery or dispatch failure detail, appended per batch."""
    __tablename__ = "notification_processing_errors"
    id = Column(Integer, primary_key=True, index=True)
    notification_id = Column(Integer, ForeignKey("notifications.id"), nullable=False, index=True)
    message = Column(Text, nullable=False)
    created_at = Column(DateTime, server_default=func.now())

    notification = relationship("Notification", back_populates="processing_errors")
