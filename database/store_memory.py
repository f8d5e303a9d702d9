"""
InMemoryStore: Dict-backed store for development and testing.

Features:
  - Zero infrastructure (no database)
  - Full interface compatibility with SqlStore
  - claim_items() serialised by an asyncio.Lock (single event loop)
  - All data lost on process restart

Records are copied on the way in and out so callers never mutate
stored state by accident.
"""
from __future__ import annotations

import asyncio
import uuid
import structlog
from collections import defaultdict
from datetime import datetime
from typing import Optional

from database.store_base import BaseStore
from models.schemas import (
    ArticleStatus, ChannelType, Conversation, ConversationStatus, KnowledgeArticle, Message,
    MessageFeedback, NotificationItem, NotificationStatus, NotificationTemplate,
    Suggestion, UserNotificationPreference, utcnow,
)

logger = structlog.get_logger()


def _copy(model):
    return model.model_copy(deep=True) if model is not None else None


class InMemoryStore(BaseStore):
    """Full-featured in-memory store with the same interface as SqlStore."""

    def __init__(self):
        self._templates: dict[str, NotificationTemplate] = {}
        self._items: dict[str, NotificationItem] = {}
        self._preferences: dict[str, UserNotificationPreference] = {}
        self._conversations: dict[str, Conversation] = {}
        self._messages: dict[str, list[Message]] = defaultdict(list)   # conv_id → [msgs]
        self._message_index: dict[str, str] = {}                        # msg_id → conv_id
        self._articles: dict[str, KnowledgeArticle] = {}
        self._suggestions: dict[str, Suggestion] = {}
        self._claim_lock = asyncio.Lock()
        logger.info("inmemory_store_initialized")

    # ── Templates ─────────────────────────────────────────

    async def upsert_template(self, template: NotificationTemplate) -> NotificationTemplate:
        existing = self._templates.get(template.name)
        if existing:
            template = template.model_copy(update={"created_at": existing.created_at})
        self._templates[template.name] = _copy(template)
        return template

    async def get_template(self, name: str) -> Optional[NotificationTemplate]:
        return _copy(self._templates.get(name))

    async def list_templates(self, include_inactive: bool = False) -> list[NotificationTemplate]:
        return [
            _copy(t) for t in sorted(self._templates.values(), key=lambda t: t.name)
            if include_inactive or t.is_active
        ]

    async def delete_template(self, name: str) -> bool:
        return self._templates.pop(name, None) is not None

    # ── Queue items ───────────────────────────────────────

    async def insert_item(self, item: NotificationItem) -> NotificationItem:
        self._items[item.id] = _copy(item)
        return item

    async def get_item(self, item_id: str) -> Optional[NotificationItem]:
        return _copy(self._items.get(item_id))

    async def claim_items(
        self,
        channel: ChannelType,
        limit: int,
        now: datetime,
        lease_until: datetime,
        worker_id: str,
    ) -> list[NotificationItem]:
        async with self._claim_lock:
            due = [
                i for i in self._items.values()
                if i.channel == channel
                and i.status == NotificationStatus.PENDING
                and i.scheduled_for <= now
                and not i.lease_active(now)
            ]
            due.sort(key=lambda i: (i.priority, i.scheduled_for, i.created_at))
            claimed = []
            for item in due[:limit]:
                item.claim_token = uuid.uuid4().hex
                item.claimed_by = worker_id
                item.claimed_until = lease_until
                item.updated_at = now
                claimed.append(_copy(item))
            return claimed

    async def save_item_if(
        self,
        item: NotificationItem,
        expected_status: NotificationStatus,
        expected_claim_token: Optional[str],
    ) -> bool:
        async with self._claim_lock:
            current = self._items.get(item.id)
            if current is None:
                return False
            if current.status != expected_status or current.claim_token != expected_claim_token:
                return False
            self._items[item.id] = _copy(item)
            return True

    async def list_items(
        self,
        user_id: str,
        status: Optional[NotificationStatus] = None,
        limit: int = 50,
    ) -> list[NotificationItem]:
        items = [
            i for i in self._items.values()
            if i.user_id == user_id and (status is None or i.status == status)
        ]
        items.sort(key=lambda i: i.created_at, reverse=True)
        return [_copy(i) for i in items[:limit]]

    async def count_items(
        self,
        user_id: Optional[str] = None,
        status: Optional[NotificationStatus] = None,
        template_name: Optional[str] = None,
        unread_only: bool = False,
    ) -> int:
        return sum(
            1 for i in self._items.values()
            if (user_id is None or i.user_id == user_id)
            and (status is None or i.status == status)
            and (template_name is None or i.template_name == template_name)
            and (not unread_only or i.is_unread)
        )

    # ── Preferences ───────────────────────────────────────

    async def get_preference(self, user_id: str) -> Optional[UserNotificationPreference]:
        return _copy(self._preferences.get(user_id))

    async def save_preference(self, pref: UserNotificationPreference) -> UserNotificationPreference:
        pref = pref.model_copy(update={"updated_at": utcnow()})
        self._preferences[pref.user_id] = _copy(pref)
        return pref

    # ── Conversations ─────────────────────────────────────

    async def create_conversation(self, conversation: Conversation) -> Conversation:
        self._conversations[conversation.id] = _copy(conversation)
        return conversation

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        return _copy(self._conversations.get(conversation_id))

    async def save_conversation(self, conversation: Conversation) -> Conversation:
        self._conversations[conversation.id] = _copy(conversation)
        return conversation

    async def list_conversations(
        self,
        status: Optional[ConversationStatus] = None,
        inactive_before: Optional[datetime] = None,
        started_after: Optional[datetime] = None,
        started_before: Optional[datetime] = None,
    ) -> list[Conversation]:
        result = []
        for c in self._conversations.values():
            if status is not None and c.status != status:
                continue
            if inactive_before is not None and c.last_activity_at >= inactive_before:
                continue
            if started_after is not None and c.started_at < started_after:
                continue
            if started_before is not None and c.started_at >= started_before:
                continue
            result.append(_copy(c))
        result.sort(key=lambda c: c.started_at)
        return result

    async def delete_conversation(self, conversation_id: str) -> None:
        self._conversations.pop(conversation_id, None)
        for msg in self._messages.pop(conversation_id, []):
            self._message_index.pop(msg.id, None)

    # ── Messages ──────────────────────────────────────────

    async def add_message(self, message: Message) -> Message:
        self._messages[message.conversation_id].append(_copy(message))
        self._message_index[message.id] = message.conversation_id
        return message

    async def get_message(self, message_id: str) -> Optional[Message]:
        conv_id = self._message_index.get(message_id)
        if conv_id is None:
            return None
        for msg in self._messages.get(conv_id, []):
            if msg.id == message_id:
                return _copy(msg)
        return None

    async def get_messages(self, conversation_id: str, limit: int = 50) -> list[Message]:
        msgs = self._messages.get(conversation_id, [])
        return [_copy(m) for m in msgs[-limit:]]

    async def set_message_feedback(self, message_id: str, feedback: MessageFeedback) -> bool:
        conv_id = self._message_index.get(message_id)
        for msg in self._messages.get(conv_id, []) if conv_id else []:
            if msg.id == message_id:
                if msg.feedback is not None:
                    return False
                msg.feedback = _copy(feedback)
                return True
        return False

    # ── Knowledge articles ────────────────────────────────

    async def upsert_article(self, article: KnowledgeArticle) -> KnowledgeArticle:
        self._articles[article.id] = _copy(article)
        return article

    async def get_article(self, article_id: str) -> Optional[KnowledgeArticle]:
        return _copy(self._articles.get(article_id))

    async def get_article_by_slug(self, slug: str) -> Optional[KnowledgeArticle]:
        for article in self._articles.values():
            if article.slug == slug:
                return _copy(article)
        return None

    async def list_articles(self, published_only: bool = True) -> list[KnowledgeArticle]:
        return [
            _copy(a) for a in self._articles.values()
            if not published_only or a.status == ArticleStatus.PUBLISHED
        ]

    async def increment_article_counters(
        self, article_id: str, views: int = 0, helpful: int = 0, not_helpful: int = 0,
    ) -> None:
        article = self._articles.get(article_id)
        if article:
            article.view_count += views
            article.helpful_count += helpful
            article.not_helpful_count += not_helpful

    # ── Suggestions ───────────────────────────────────────

    async def add_suggestion(self, suggestion: Suggestion) -> Suggestion:
        self._suggestions[suggestion.id] = _copy(suggestion)
        return suggestion

    async def list_suggestions(self, active_only: bool = True) -> list[Suggestion]:
        return [
            _copy(s) for s in self._suggestions.values()
            if not active_only or s.is_active
        ]

    # ── Stats (for debugging) ─────────────────────────────

    def stats(self) -> dict[str, int]:
        return {
            "templates": len(self._templates),
            "items": len(self._items),
            "preferences": len(self._preferences),
            "conversations": len(self._conversations),
            "messages": sum(len(v) for v in self._messages.values()),
            "articles": len(self._articles),
            "suggestions": len(self._suggestions),
        }
