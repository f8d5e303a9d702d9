"""
In-App Sender: per-user inbox for notifications shown inside the LMS.

The notification item itself is the durable record (read tracking lives
in the queue); this sender fans the rendered message out to live
subscribers and keeps a bounded inbox for users who are offline.
"""
from __future__ import annotations

import asyncio
import uuid
import structlog
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from channels.base import ChannelSender, InvalidRecipientError, SendResult
from config.settings import ChannelConfig
from models.schemas import ChannelType, utcnow

logger = structlog.get_logger()


@dataclass
class InboxEntry:
    subject: Optional[str]
    body: str
    metadata: dict[str, Any] = field(default_factory=dict)
    message_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    delivered_at: datetime = field(default_factory=utcnow)


class InAppSender(ChannelSender):
    channel_type = ChannelType.IN_APP

    def __init__(self, config: Optional[ChannelConfig] = None, inbox_size: int = 100):
        super().__init__(config)
        self.inbox_size = inbox_size
        self._inboxes: dict[str, deque[InboxEntry]] = {}
        self._subscribers: dict[str, list[asyncio.Queue]] = {}

    async def _do_send(
        self, recipient: str, subject: Optional[str], body: str, metadata: dict[str, Any],
    ) -> SendResult:
        user_id = recipient.strip()
        if not user_id:
            raise InvalidRecipientError(recipient, self.channel_type.value, "empty user id")

        entry = InboxEntry(subject=subject, body=body, metadata=dict(metadata))
        inbox = self._inboxes.setdefault(user_id, deque(maxlen=self.inbox_size))
        inbox.append(entry)

        live = self._subscribers.get(user_id, [])
        for q in live:
            q.put_nowait(entry)
        logger.debug("in_app_delivered", user_id=user_id, live_subscribers=len(live))
        return SendResult.ok(entry.message_id)

    # ── Inbox access ──────────────────────────────────────────

    def inbox(self, user_id: str) -> list[InboxEntry]:
        return list(self._inboxes.get(user_id, ()))

    def drain(self, user_id: str) -> list[InboxEntry]:
        entries = self.inbox(user_id)
        self._inboxes.pop(user_id, None)
        return entries

    def subscribe(self, user_id: str) -> asyncio.Queue:
        q: asyncio.Queue = asyncio.Queue()
        self._subscribers.setdefault(user_id, []).append(q)
        return q

    def unsubscribe(self, user_id: str, q: asyncio.Queue) -> None:
        subs = self._subscribers.get(user_id, [])
        if q in subs:
            subs.remove(q)
        if not subs:
            self._subscribers.pop(user_id, None)
