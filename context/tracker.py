"""
Conversation Tracker: conversation records, message history, per-conversation locks.

All reads and writes go through the store; the tracker adds:
  - one asyncio.Lock per conversation, so message handling for a single
    conversation is serialised while different conversations run freely
  - non-decreasing message timestamps within a conversation
  - message_count / last_activity_at bookkeeping on every append
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime
from typing import Any, Optional

from database.store_base import BaseStore
from models.errors import NotFound
from models.schemas import (
    Conversation, Message, MessageContent, MessageSender, UserRole, utcnow,
)

logger = structlog.get_logger()


class ConversationTracker:

    def __init__(self, store: BaseStore):
        self.store = store
        self._locks: dict[str, asyncio.Lock] = {}

    # ── Locks ─────────────────────────────────────────────────

    def lock_for(self, conversation_id: str) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = self._locks[conversation_id] = asyncio.Lock()
        return lock

    def release_lock(self, conversation_id: str) -> None:
        """Drop the lock of a finished conversation unless someone still holds it."""
        lock = self._locks.get(conversation_id)
        if lock is not None and not lock.locked():
            del self._locks[conversation_id]

    # ── Conversations ─────────────────────────────────────────

    async def create(
        self,
        user_id: Optional[str] = None,
        role: UserRole = UserRole.ANONYMOUS,
        context: Optional[dict[str, Any]] = None,
        tenant_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Conversation:
        now = now or utcnow()
        conversation = Conversation(
            user_id=user_id,
            role=role,
            tenant_id=tenant_id,
            context=dict(context or {}),
            started_at=now,
            last_activity_at=now,
        )
        await self.store.create_conversation(conversation)
        logger.info("conversation_started",
                    conversation_id=conversation.id,
                    user_id=user_id,
                    role=role.value)
        return conversation

    async def get(self, conversation_id: str) -> Optional[Conversation]:
        return await self.store.get_conversation(conversation_id)

    async def require(self, conversation_id: str) -> Conversation:
        conversation = await self.store.get_conversation(conversation_id)
        if conversation is None:
            raise NotFound("conversation", conversation_id)
        return conversation

    async def save(self, conversation: Conversation) -> Conversation:
        return await self.store.save_conversation(conversation)

    # ── Messages ──────────────────────────────────────────────

    async def append(
        self,
        conversation: Conversation,
        sender: MessageSender,
        content: MessageContent,
        intent: Optional[str] = None,
        confidence: Optional[float] = None,
        metadata: Optional[dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> Message:
        """Append a message and persist the updated conversation counters."""
        now = now or utcnow()
        timestamp = max(now, conversation.last_activity_at)
        message = Message(
            conversation_id=conversation.id,
            sender=sender,
            content=content,
            timestamp=timestamp,
            intent=intent,
            confidence=confidence,
            metadata=metadata or {},
        )
        await self.store.add_message(message)
        conversation.message_count += 1
        conversation.last_activity_at = timestamp
        await self.store.save_conversation(conversation)
        return message

    async def history(self, conversation_id: str, limit: int = 50) -> list[Message]:
        return await self.store.get_messages(conversation_id, limit=limit)
