"""
Notification Queue: durable, prioritized, time-scheduled delivery work.

Arena + claim-lease: items live in the store; workers lease due items
with claim_batch() and resolve them with report_outcome(). No broker.

Item lifecycle:

    enqueue ──▶ pending ──claim──▶ pending (leased) ──delivered──▶ sent ──▶ read
                   ▲                    │                            (in_app/push)
                   └──── transient ─────┤
                        (backoff)       ├── permanent / retries exhausted ──▶ failed
                                        └── suppressed ──▶ sent (suppressed=True)

A lease that is never resolved expires after claim_timeout_seconds and
the item becomes claimable again. Every outcome report is a
compare-and-set against the lease it was claimed under, so a late or
duplicate report cannot move an item twice.
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional, Union

from config.settings import ChannelConfig, QueueConfig
from database.store_base import BaseStore
from models.errors import InvalidTransition, NotFound, ValidationFailed
from models.schemas import (
    PRIORITY_HIGHEST, PRIORITY_LOWEST, ChannelType, DeliveryOutcome,
    NotificationItem, NotificationStatus, OutcomeKind, utcnow,
)
from templates.registry import TemplateRegistry

logger = structlog.get_logger()

TerminalHook = Callable[[NotificationItem], Union[None, Awaitable[None]]]


def _as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def backoff_seconds(retry_count: int, base: int, cap: int) -> int:
    """base · 2^(n-1), capped. retry_count is the 1-based retry being scheduled."""
    exponent = max(retry_count - 1, 0)
    return min(base * (2 ** exponent), cap)


class NotificationQueue:
    """
    Usage:
        queue = NotificationQueue(store, TemplateRegistry(store), settings.queue, settings.channels)
        item_id = await queue.enqueue("u1", "course_completed", {"courseTitle": "Python"})
        batch = await queue.claim_batch(ChannelType.EMAIL, limit=10, worker_id="email-0")
        await queue.report_outcome(batch[0].id, DeliveryOutcome.delivered(), batch[0].claim_token)
    """

    def __init__(
        self,
        store: BaseStore,
        templates: TemplateRegistry,
        config: Optional[QueueConfig] = None,
        channels: Optional[dict[str, ChannelConfig]] = None,
        on_terminal_failure: Optional[TerminalHook] = None,
    ):
        self.store = store
        self.templates = templates
        self.config = config or QueueConfig()
        self.channels = channels or {}
        self._on_terminal_failure = on_terminal_failure

    # ── Enqueue ───────────────────────────────────────

    async def enqueue(
        self,
        user_id: str,
        template_name: str,
        variables: Optional[dict[str, Any]] = None,
        priority: Optional[int] = None,
        scheduled_for: Optional[datetime] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> str:
        """
        Render and store a pending item. Raises UnknownTemplate,
        InvalidVariables or ValidationFailed before anything is written.
        """
        priority = self.config.default_priority if priority is None else priority
        if not PRIORITY_HIGHEST <= priority <= PRIORITY_LOWEST:
            raise ValidationFailed(
                f"priority must be between {PRIORITY_HIGHEST} and {PRIORITY_LOWEST}, got {priority}"
            )
        if not user_id:
            raise ValidationFailed("user_id is required")

        variables = dict(variables or {})
        template = await self.templates.get_active(template_name)
        subject, content = self.templates.render(template, variables)

        channel_cfg = self.channels.get(template.channel.value) or ChannelConfig()
        now = utcnow()
        item = NotificationItem(
            user_id=user_id,
            template_name=template.name,
            channel=template.channel,
            subject=subject,
            content=content,
            variables=variables,
            priority=priority,
            scheduled_for=_as_utc(scheduled_for) if scheduled_for else now,
            max_retries=channel_cfg.max_retries,
            metadata=metadata or {},
            created_at=now,
            updated_at=now,
        )
        await self.store.insert_item(item)
        logger.info("notification_enqueued",
                    item_id=item.id,
                    user_id=user_id,
                    template=template.name,
                    channel=item.channel.value,
                    priority=priority,
                    scheduled_for=item.scheduled_for.isoformat())
        return item.id

    # ── Claiming ──────────────────────────────────────

    async def claim_batch(
        self,
        channel: ChannelType,
        limit: int,
        worker_id: str = "",
        now: Optional[datetime] = None,
    ) -> list[NotificationItem]:
        """Lease up to `limit` due items; ordered by priority then scheduled_for."""
        if limit <= 0:
            return []
        now = _as_utc(now) if now else utcnow()
        lease_until = now + timedelta(seconds=self.config.claim_timeout_seconds)
        items = await self.store.claim_items(channel, limit, now, lease_until, worker_id)
        if items:
            logger.debug("claim_batch",
                         channel=channel.value,
                         worker=worker_id,
                         claimed=len(items))
        return items

    # ── Outcomes ──────────────────────────────────────

    def backoff(self, retry_count: int) -> timedelta:
        return timedelta(seconds=backoff_seconds(
            retry_count, self.config.retry_backoff_base, self.config.retry_backoff_cap,
        ))

    async def report_outcome(
        self,
        item_id: str,
        outcome: DeliveryOutcome,
        claim_token: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[NotificationItem]:
        """
        Resolve a leased item. Returns the updated item, or None when the
        report was stale (lease lost, item already resolved).
        """
        now = _as_utc(now) if now else utcnow()
        item = await self.store.get_item(item_id)
        if item is None:
            raise NotFound("notification", item_id)

        if item.status != NotificationStatus.PENDING or (
            claim_token is not None and item.claim_token != claim_token
        ):
            logger.warning("stale_outcome_ignored",
                           item_id=item_id,
                           status=item.status.value,
                           outcome=outcome.kind.value)
            return None

        lease_token = item.claim_token
        updated = item.model_copy(deep=True)
        updated.clear_lease()
        updated.updated_at = now
        terminal_failure = False

        if outcome.kind == OutcomeKind.DELIVERED:
            updated.status = NotificationStatus.SENT
            updated.sent_at = now

        elif outcome.kind == OutcomeKind.SUPPRESSED:
            updated.status = NotificationStatus.SENT
            updated.suppressed = True
            updated.sent_at = now
            updated.last_error = outcome.reason or "suppressed"

        elif outcome.kind == OutcomeKind.TRANSIENT_FAILURE:
            updated.last_error = outcome.reason
            if item.retry_count < item.max_retries:
                updated.retry_count = item.retry_count + 1
                updated.scheduled_for = now + self.backoff(updated.retry_count)
            else:
                updated.status = NotificationStatus.FAILED
                terminal_failure = True

        else:  # permanent
            updated.status = NotificationStatus.FAILED
            updated.last_error = outcome.reason
            terminal_failure = True

        if not await self.store.save_item_if(updated, NotificationStatus.PENDING, lease_token):
            logger.warning("stale_outcome_ignored",
                           item_id=item_id,
                           outcome=outcome.kind.value,
                           reason="lease_lost")
            return None

        if terminal_failure:
            logger.error("notification_failed",
                         item_id=item_id,
                         user_id=item.user_id,
                         channel=item.channel.value,
                         retry_count=updated.retry_count,
                         outcome=outcome.kind.value,
                         error=outcome.reason)
            await self._signal_operator(updated)
        elif updated.status == NotificationStatus.PENDING:
            logger.info("notification_retry_scheduled",
                        item_id=item_id,
                        retry_count=updated.retry_count,
                        max_retries=updated.max_retries,
                        scheduled_for=updated.scheduled_for.isoformat(),
                        error=outcome.reason)
        else:
            logger.info("notification_resolved",
                        item_id=item_id,
                        channel=item.channel.value,
                        outcome=outcome.kind.value,
                        suppressed=updated.suppressed)
        return updated

    async def defer(
        self, item_id: str, until: datetime, claim_token: Optional[str] = None,
    ) -> bool:
        """Move a leased item to `until` and release the lease. retry_count is untouched."""
        item = await self.store.get_item(item_id)
        if item is None:
            raise NotFound("notification", item_id)
        if item.status != NotificationStatus.PENDING or (
            claim_token is not None and item.claim_token != claim_token
        ):
            logger.warning("stale_defer_ignored", item_id=item_id, status=item.status.value)
            return False

        lease_token = item.claim_token
        item.scheduled_for = _as_utc(until)
        item.clear_lease()
        item.updated_at = utcnow()
        saved = await self.store.save_item_if(item, NotificationStatus.PENDING, lease_token)
        if saved:
            logger.info("notification_deferred",
                        item_id=item_id, until=item.scheduled_for.isoformat())
        return saved

    # ── Read tracking ─────────────────────────────────

    async def mark_read(self, item_id: str, now: Optional[datetime] = None) -> NotificationItem:
        """sent → read for in_app/push items. Already read is a no-op."""
        item = await self.store.get_item(item_id)
        if item is None:
            raise NotFound("notification", item_id)
        if item.status == NotificationStatus.READ:
            return item
        if (
            item.status != NotificationStatus.SENT
            or item.suppressed
            or not item.channel.read_trackable
        ):
            raise InvalidTransition("notification", item.status.value, NotificationStatus.READ.value)

        item.status = NotificationStatus.READ
        item.read_at = _as_utc(now) if now else utcnow()
        item.updated_at = item.read_at
        if not await self.store.save_item_if(item, NotificationStatus.SENT, item.claim_token):
            # Lost a race with another mark_read; the stored read_at wins
            return await self.store.get_item(item_id)
        logger.info("notification_read", item_id=item_id, channel=item.channel.value)
        return item

    # ── Queries ───────────────────────────────────────

    async def get(self, item_id: str) -> Optional[NotificationItem]:
        return await self.store.get_item(item_id)

    async def list_for_user(
        self,
        user_id: str,
        status: Optional[NotificationStatus] = None,
        limit: int = 50,
    ) -> list[NotificationItem]:
        return await self.store.list_items(user_id, status=status, limit=limit)

    async def stats(self, user_id: str) -> dict[str, int]:
        counts = {s.value: await self.store.count_items(user_id, status=s) for s in NotificationStatus}
        counts["total"] = sum(counts.values())
        counts["unread"] = await self.count_unread(user_id)
        return counts

    async def count_unread(self, user_id: str) -> int:
        return await self.store.count_items(user_id, unread_only=True)

    # ── Operator signal ───────────────────────────────

    async def _signal_operator(self, item: NotificationItem) -> None:
        if self._on_terminal_failure is None:
            return
        try:
            result = self._on_terminal_failure(item)
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            logger.error("terminal_failure_hook_error", item_id=item.id, error=str(e))
