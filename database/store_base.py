"""
Abstract Store: Interface for all storage backends.

Implementations:
  - SqlStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryStore (dict-based, single-process, no persistence)

Four independent record families: templates, queue items (+ preferences),
conversations + messages, knowledge articles + suggestions.

The only operation that needs a true mutual-exclusion guarantee is
claim_items(); every other mutation touches a single record.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from models.schemas import (
    ChannelType, Conversation, ConversationStatus, KnowledgeArticle, Message,
    MessageFeedback, NotificationItem, NotificationStatus, NotificationTemplate,
    Suggestion, UserNotificationPreference,
)


class BaseStore(ABC):
    """Interface that all store backends must implement."""

    # ── Templates ─────────────────────────────────────────────

    @abstractmethod
    async def upsert_template(self, template: NotificationTemplate) -> NotificationTemplate:
        ...

    @abstractmethod
    async def get_template(self, name: str) -> Optional[NotificationTemplate]:
        ...

    @abstractmethod
    async def list_templates(self, include_inactive: bool = False) -> list[NotificationTemplate]:
        ...

    @abstractmethod
    async def delete_template(self, name: str) -> bool:
        """Remove a template definition. Returns False when it did not exist."""
        ...

    # ── Queue items ───────────────────────────────────────────

    @abstractmethod
    async def insert_item(self, item: NotificationItem) -> NotificationItem:
        ...

    @abstractmethod
    async def get_item(self, item_id: str) -> Optional[NotificationItem]:
        ...

    @abstractmethod
    async def claim_items(
        self,
        channel: ChannelType,
        limit: int,
        now: datetime,
        lease_until: datetime,
        worker_id: str,
    ) -> list[NotificationItem]:
        """
        Atomically lease up to `limit` pending items of `channel` that are due
        (scheduled_for <= now) and carry no live lease. Ordered by priority
        (1 first) then scheduled_for ascending. Each returned item carries a
        fresh claim_token.
        """
        ...

    @abstractmethod
    async def save_item_if(
        self,
        item: NotificationItem,
        expected_status: NotificationStatus,
        expected_claim_token: Optional[str],
    ) -> bool:
        """
        Compare-and-set: persist `item` only if the stored row still has
        `expected_status` and `expected_claim_token`. Returns False when the
        row moved on (stale report, lost lease).
        """
        ...

    @abstractmethod
    async def list_items(
        self,
        user_id: str,
        status: Optional[NotificationStatus] = None,
        limit: int = 50,
    ) -> list[NotificationItem]:
        ...

    @abstractmethod
    async def count_items(
        self,
        user_id: Optional[str] = None,
        status: Optional[NotificationStatus] = None,
        template_name: Optional[str] = None,
        unread_only: bool = False,
    ) -> int:
        """
        Count items without loading them. unread_only narrows to sent,
        unsuppressed items on read-trackable channels.
        """
        ...

    # ── Preferences ───────────────────────────────────────────

    @abstractmethod
    async def get_preference(self, user_id: str) -> Optional[UserNotificationPreference]:
        ...

    @abstractmethod
    async def save_preference(self, pref: UserNotificationPreference) -> UserNotificationPreference:
        ...

    # ── Conversations ─────────────────────────────────────────

    @abstractmethod
    async def create_conversation(self, conversation: Conversation) -> Conversation:
        ...

    @abstractmethod
    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        ...

    @abstractmethod
    async def save_conversation(self, conversation: Conversation) -> Conversation:
        ...

    @abstractmethod
    async def list_conversations(
        self,
        status: Optional[ConversationStatus] = None,
        inactive_before: Optional[datetime] = None,
        started_after: Optional[datetime] = None,
        started_before: Optional[datetime] = None,
    ) -> list[Conversation]:
        ...

    @abstractmethod
    async def delete_conversation(self, conversation_id: str) -> None:
        """Remove a conversation and, by cascade, its messages."""
        ...

    # ── Messages ──────────────────────────────────────────────

    @abstractmethod
    async def add_message(self, message: Message) -> Message:
        ...

    @abstractmethod
    async def get_message(self, message_id: str) -> Optional[Message]:
        ...

    @abstractmethod
    async def get_messages(self, conversation_id: str, limit: int = 50) -> list[Message]:
        """Last `limit` messages of a conversation in chronological order."""
        ...

    @abstractmethod
    async def set_message_feedback(self, message_id: str, feedback: MessageFeedback) -> bool:
        """Record feedback once. Returns False when feedback was already present."""
        ...

    # ── Knowledge articles ────────────────────────────────────

    @abstractmethod
    async def upsert_article(self, article: KnowledgeArticle) -> KnowledgeArticle:
        ...

    @abstractmethod
    async def get_article(self, article_id: str) -> Optional[KnowledgeArticle]:
        ...

    @abstractmethod
    async def get_article_by_slug(self, slug: str) -> Optional[KnowledgeArticle]:
        ...

    @abstractmethod
    async def list_articles(self, published_only: bool = True) -> list[KnowledgeArticle]:
        ...

    @abstractmethod
    async def increment_article_counters(
        self, article_id: str, views: int = 0, helpful: int = 0, not_helpful: int = 0,
    ) -> None:
        ...

    # ── Suggestions ───────────────────────────────────────────

    @abstractmethod
    async def add_suggestion(self, suggestion: Suggestion) -> Suggestion:
        ...

    @abstractmethod
    async def list_suggestions(self, active_only: bool = True) -> list[Suggestion]:
        ...
