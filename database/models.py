"""
SQLAlchemy ORM models: Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

  - JSON type instead of PostgreSQL-specific JSONB; on SQLite it
    serializes to TEXT.
  - String primary keys (uuid hex), no database-specific sequences.
  - Nested value objects (escalation record, message content, feedback)
    are stored as JSON documents on their owning row.
"""
from __future__ import annotations

import uuid
from datetime import datetime, time, timezone
from typing import Any, Optional

from sqlalchemy import (
    Boolean, String, Integer, DateTime, Text, Time, ForeignKey, Index, JSON,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


# ──────────────────────────────────────────────────────────────
#  Notification templates
# ──────────────────────────────────────────────────────────────

class TemplateRow(Base):
    __tablename__ = "notification_templates"

    name: Mapped[str] = mapped_column(String(128), primary_key=True)
    channel: Mapped[str] = mapped_column(String(16), nullable=False)
    subject_template: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    body_template: Mapped[str] = mapped_column(Text, nullable=False)
    variables: Mapped[Any] = mapped_column(JSON, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Notification queue
# ──────────────────────────────────────────────────────────────

class NotificationRow(Base):
    __tablename__ = "notifications"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    template_name: Mapped[str] = mapped_column(String(128), nullable=False)
    channel: Mapped[str] = mapped_column(String(16), nullable=False)
    subject: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    variables: Mapped[Any] = mapped_column(JSON, default=dict)

    status: Mapped[str] = mapped_column(String(16), default="pending")
    priority: Mapped[int] = mapped_column(Integer, default=3)
    scheduled_for: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    read_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, default=3)
    suppressed: Mapped[bool] = mapped_column(Boolean, default=False)

    claim_token: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    claimed_by: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    claimed_until: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    metadata_: Mapped[Any] = mapped_column("metadata", JSON, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_notifications_claim", "channel", "status", "priority", "scheduled_for"),
        Index("ix_notifications_user", "user_id", "status"),
    )


class PreferenceRow(Base):
    __tablename__ = "user_notification_settings"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    email_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    push_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    in_app_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    sms_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    quiet_hours_start: Mapped[Optional[time]] = mapped_column(Time, nullable=True)
    quiet_hours_end: Mapped[Optional[time]] = mapped_column(Time, nullable=True)
    timezone: Mapped[str] = mapped_column(String(64), default="UTC")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Conversations
# ──────────────────────────────────────────────────────────────

class ConversationRow(Base):
    __tablename__ = "chatbot_conversations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    user_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    role: Mapped[str] = mapped_column(String(16), default="anonymous")
    status: Mapped[str] = mapped_column(String(16), default="active")

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    last_activity_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    message_count: Mapped[int] = mapped_column(Integer, default=0)
    consecutive_fallbacks: Mapped[int] = mapped_column(Integer, default=0)
    context: Mapped[Any] = mapped_column(JSON, default=dict)
    escalation: Mapped[Any] = mapped_column(JSON(none_as_null=True), nullable=True)
    metadata_: Mapped[Any] = mapped_column("metadata", JSON, default=dict)

    messages: Mapped[list["MessageRow"]] = relationship(
        back_populates="conversation", cascade="all, delete-orphan",
        order_by="MessageRow.timestamp",
    )

    __table_args__ = (
        Index("ix_conversations_user", "user_id"),
        Index("ix_conversations_status_activity", "status", "last_activity_at"),
    )


class MessageRow(Base):
    __tablename__ = "chatbot_messages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    conversation_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("chatbot_conversations.id", ondelete="CASCADE"), nullable=False,
    )
    sender: Mapped[str] = mapped_column(String(16), nullable=False)
    content: Mapped[Any] = mapped_column(JSON, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    intent: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    confidence: Mapped[Optional[float]] = mapped_column(nullable=True)
    feedback: Mapped[Any] = mapped_column(JSON(none_as_null=True), nullable=True)
    metadata_: Mapped[Any] = mapped_column("metadata", JSON, default=dict)

    conversation: Mapped["ConversationRow"] = relationship(back_populates="messages")

    __table_args__ = (
        Index("ix_chatbot_messages_conversation_ts", "conversation_id", "timestamp"),
    )


# ──────────────────────────────────────────────────────────────
#  Knowledge base
# ──────────────────────────────────────────────────────────────

class ArticleRow(Base):
    __tablename__ = "kb_articles"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    slug: Mapped[str] = mapped_column(String(256), unique=True, nullable=False)
    title: Mapped[str] = mapped_column(String(512), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    category: Mapped[str] = mapped_column(String(128), nullable=False)
    subcategory: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    tags: Mapped[Any] = mapped_column(JSON, default=list)
    keywords: Mapped[Any] = mapped_column(JSON, default=list)
    intent_triggers: Mapped[Any] = mapped_column(JSON, default=list)
    target_roles: Mapped[Any] = mapped_column(JSON, default=list)
    language: Mapped[str] = mapped_column(String(8), default="es")
    status: Mapped[str] = mapped_column(String(16), default="draft")

    view_count: Mapped[int] = mapped_column(Integer, default=0)
    helpful_count: Mapped[int] = mapped_column(Integer, default=0)
    not_helpful_count: Mapped[int] = mapped_column(Integer, default=0)
    author_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_kb_articles_status_lang", "status", "language"),
        Index("ix_kb_articles_category", "category"),
    )


class SuggestionRow(Base):
    __tablename__ = "chatbot_suggestions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    text: Mapped[str] = mapped_column(String(512), nullable=False)
    intent: Mapped[str] = mapped_column(String(128), nullable=False)
    target_roles: Mapped[Any] = mapped_column(JSON, default=list)
    context_conditions: Mapped[Any] = mapped_column(JSON, default=dict)
    priority: Mapped[int] = mapped_column(Integer, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
