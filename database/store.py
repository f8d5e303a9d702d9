"""
SqlStore: Portable SQL queries for PostgreSQL, MySQL, SQLite.

Claiming is done with a conditional UPDATE per candidate row
(WHERE status='pending' AND lease expired) and accepted only when
exactly one row changed, so two workers can never lease the same item
even without SELECT ... FOR UPDATE SKIP LOCKED.
"""
from __future__ import annotations

import uuid
import structlog
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.models import (
    ArticleRow, ConversationRow, MessageRow, NotificationRow, PreferenceRow,
    SuggestionRow, TemplateRow,
)
from database.session import session_scope
from database.store_base import BaseStore
from models.schemas import (
    ArticleStatus, ChannelType, Conversation, ConversationStatus, EscalationRecord,
    KnowledgeArticle, Message, MessageContent, MessageFeedback, NotificationItem,
    NotificationStatus, NotificationTemplate, Suggestion, UserNotificationPreference,
    utcnow,
)

logger = structlog.get_logger()


def _utc(dt: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything we store is UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class SqlStore(BaseStore):
    """
    Persistent store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self._session_factory = session_factory

    def _session(self):
        return session_scope(self._session_factory)

    # ── Template operations ────────────────────────────────

    async def upsert_template(self, template: NotificationTemplate) -> NotificationTemplate:
        async with self._session() as db:
            row = await db.get(TemplateRow, template.name)
            values = {
                "channel": template.channel.value,
                "subject_template": template.subject_template,
                "body_template": template.body_template,
                "variables": list(template.variables),
                "is_active": template.is_active,
                "updated_at": _utc(template.updated_at),
            }
            if row:
                for k, v in values.items():
                    setattr(row, k, v)
            else:
                db.add(TemplateRow(name=template.name, created_at=_utc(template.created_at), **values))
            return template

    async def get_template(self, name: str) -> Optional[NotificationTemplate]:
        async with self._session() as db:
            row = await db.get(TemplateRow, name)
            return self._row_to_template(row) if row else None

    async def list_templates(self, include_inactive: bool = False) -> list[NotificationTemplate]:
        async with self._session() as db:
            stmt = select(TemplateRow).order_by(TemplateRow.name)
            if not include_inactive:
                stmt = stmt.where(TemplateRow.is_active.is_(True))
            result = await db.execute(stmt)
            return [self._row_to_template(r) for r in result.scalars().all()]

    async def delete_template(self, name: str) -> bool:
        async with self._session() as db:
            result = await db.execute(delete(TemplateRow).where(TemplateRow.name == name))
            return result.rowcount == 1

    # ── Queue item operations ──────────────────────────────

    async def insert_item(self, item: NotificationItem) -> NotificationItem:
        async with self._session() as db:
            db.add(NotificationRow(id=item.id, **self._item_values(item)))
            return item

    async def get_item(self, item_id: str) -> Optional[NotificationItem]:
        async with self._session() as db:
            row = await db.get(NotificationRow, item_id)
            return self._row_to_item(row) if row else None

    async def claim_items(
        self,
        channel: ChannelType,
        limit: int,
        now: datetime,
        lease_until: datetime,
        worker_id: str,
    ) -> list[NotificationItem]:
        now = _utc(now)
        claimable = and_(
            NotificationRow.channel == channel.value,
            NotificationRow.status == NotificationStatus.PENDING.value,
            NotificationRow.scheduled_for <= now,
            or_(NotificationRow.claimed_until.is_(None), NotificationRow.claimed_until <= now),
        )
        async with self._session() as db:
            candidates = await db.execute(
                select(NotificationRow.id)
                .where(claimable)
                .order_by(NotificationRow.priority, NotificationRow.scheduled_for, NotificationRow.created_at)
                .limit(limit)
            )
            won: list[str] = []
            for item_id in candidates.scalars().all():
                result = await db.execute(
                    update(NotificationRow)
                    .where(and_(NotificationRow.id == item_id, claimable))
                    .values(
                        claim_token=uuid.uuid4().hex,
                        claimed_by=worker_id,
                        claimed_until=_utc(lease_until),
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    won.append(item_id)
            if not won:
                return []
            rows = await db.execute(
                select(NotificationRow)
                .where(NotificationRow.id.in_(won))
                .order_by(NotificationRow.priority, NotificationRow.scheduled_for, NotificationRow.created_at)
                .execution_options(populate_existing=True)
            )
            return [self._row_to_item(r) for r in rows.scalars().all()]

    async def save_item_if(
        self,
        item: NotificationItem,
        expected_status: NotificationStatus,
        expected_claim_token: Optional[str],
    ) -> bool:
        token_matches = (
            NotificationRow.claim_token.is_(None) if expected_claim_token is None
            else NotificationRow.claim_token == expected_claim_token
        )
        async with self._session() as db:
            result = await db.execute(
                update(NotificationRow)
                .where(and_(
                    NotificationRow.id == item.id,
                    NotificationRow.status == expected_status.value,
                    token_matches,
                ))
                .values(**self._item_values(item))
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    async def list_items(
        self,
        user_id: str,
        status: Optional[NotificationStatus] = None,
        limit: int = 50,
    ) -> list[NotificationItem]:
        async with self._session() as db:
            stmt = select(NotificationRow).where(NotificationRow.user_id == user_id)
            if status is not None:
                stmt = stmt.where(NotificationRow.status == status.value)
            stmt = stmt.order_by(NotificationRow.created_at.desc()).limit(limit)
            result = await db.execute(stmt)
            return [self._row_to_item(r) for r in result.scalars().all()]

    async def count_items(
        self,
        user_id: Optional[str] = None,
        status: Optional[NotificationStatus] = None,
        template_name: Optional[str] = None,
        unread_only: bool = False,
    ) -> int:
        async with self._session() as db:
            stmt = select(func.count()).select_from(NotificationRow)
            if user_id is not None:
                stmt = stmt.where(NotificationRow.user_id == user_id)
            if status is not None:
                stmt = stmt.where(NotificationRow.status == status.value)
            if template_name is not None:
                stmt = stmt.where(NotificationRow.template_name == template_name)
            if unread_only:
                stmt = stmt.where(
                    NotificationRow.status == NotificationStatus.SENT.value,
                    NotificationRow.suppressed.is_(False),
                    NotificationRow.channel.in_([c.value for c in ChannelType if c.read_trackable]),
                )
            return (await db.execute(stmt)).scalar_one()

    # ── Preference operations ──────────────────────────────

    async def get_preference(self, user_id: str) -> Optional[UserNotificationPreference]:
        async with self._session() as db:
            row = await db.get(PreferenceRow, user_id)
            if not row:
                return None
            return UserNotificationPreference(
                user_id=row.user_id,
                email_enabled=row.email_enabled, push_enabled=row.push_enabled,
                in_app_enabled=row.in_app_enabled, sms_enabled=row.sms_enabled,
                quiet_hours_start=row.quiet_hours_start, quiet_hours_end=row.quiet_hours_end,
                timezone=row.timezone,
                created_at=_utc(row.created_at), updated_at=_utc(row.updated_at),
            )

    async def save_preference(self, pref: UserNotificationPreference) -> UserNotificationPreference:
        pref = pref.model_copy(update={"updated_at": utcnow()})
        async with self._session() as db:
            row = await db.get(PreferenceRow, pref.user_id)
            values = pref.model_dump(exclude={"user_id", "created_at"})
            values["updated_at"] = _utc(values["updated_at"])
            if row:
                for k, v in values.items():
                    setattr(row, k, v)
            else:
                db.add(PreferenceRow(user_id=pref.user_id, created_at=_utc(pref.created_at), **values))
            return pref

    # ── Conversation operations ────────────────────────────

    async def create_conversation(self, conversation: Conversation) -> Conversation:
        async with self._session() as db:
            db.add(ConversationRow(id=conversation.id, **self._conversation_values(conversation)))
            return conversation

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        async with self._session() as db:
            row = await db.get(ConversationRow, conversation_id)
            return self._row_to_conversation(row) if row else None

    async def save_conversation(self, conversation: Conversation) -> Conversation:
        async with self._session() as db:
            await db.execute(
                update(ConversationRow)
                .where(ConversationRow.id == conversation.id)
                .values(**self._conversation_values(conversation))
                .execution_options(synchronize_session=False)
            )
            return conversation

    async def list_conversations(
        self,
        status: Optional[ConversationStatus] = None,
        inactive_before: Optional[datetime] = None,
        started_after: Optional[datetime] = None,
        started_before: Optional[datetime] = None,
    ) -> list[Conversation]:
        async with self._session() as db:
            stmt = select(ConversationRow)
            if status is not None:
                stmt = stmt.where(ConversationRow.status == status.value)
            if inactive_before is not None:
                stmt = stmt.where(ConversationRow.last_activity_at < _utc(inactive_before))
            if started_after is not None:
                stmt = stmt.where(ConversationRow.started_at >= _utc(started_after))
            if started_before is not None:
                stmt = stmt.where(ConversationRow.started_at < _utc(started_before))
            result = await db.execute(stmt.order_by(ConversationRow.started_at))
            return [self._row_to_conversation(r) for r in result.scalars().all()]

    async def delete_conversation(self, conversation_id: str) -> None:
        async with self._session() as db:
            await db.execute(delete(MessageRow).where(MessageRow.conversation_id == conversation_id))
            await db.execute(delete(ConversationRow).where(ConversationRow.id == conversation_id))

    # ── Message operations ─────────────────────────────────

    async def add_message(self, message: Message) -> Message:
        async with self._session() as db:
            db.add(MessageRow(
                id=message.id,
                conversation_id=message.conversation_id,
                sender=message.sender.value,
                content=message.content.model_dump(mode="json"),
                timestamp=_utc(message.timestamp),
                intent=message.intent,
                confidence=message.confidence,
                feedback=message.feedback.model_dump(mode="json") if message.feedback else None,
                metadata_=message.metadata,
            ))
            return message

    async def get_message(self, message_id: str) -> Optional[Message]:
        async with self._session() as db:
            row = await db.get(MessageRow, message_id)
            return self._row_to_message(row) if row else None

    async def get_messages(self, conversation_id: str, limit: int = 50) -> list[Message]:
        async with self._session() as db:
            stmt = (
                select(MessageRow)
                .where(MessageRow.conversation_id == conversation_id)
                .order_by(MessageRow.timestamp.desc())
                .limit(limit)
            )
            result = await db.execute(stmt)
            rows = result.scalars().all()
            return [self._row_to_message(r) for r in reversed(rows)]

    async def set_message_feedback(self, message_id: str, feedback: MessageFeedback) -> bool:
        async with self._session() as db:
            result = await db.execute(
                update(MessageRow)
                .where(and_(MessageRow.id == message_id, MessageRow.feedback.is_(None)))
                .values(feedback=feedback.model_dump(mode="json"))
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    # ── Knowledge article operations ───────────────────────

    async def upsert_article(self, article: KnowledgeArticle) -> KnowledgeArticle:
        async with self._session() as db:
            row = await db.get(ArticleRow, article.id)
            values = article.model_dump(mode="json", exclude={"id"})
            values["created_at"] = _utc(article.created_at)
            values["updated_at"] = _utc(article.updated_at)
            if row:
                for k, v in values.items():
                    setattr(row, k, v)
            else:
                db.add(ArticleRow(id=article.id, **values))
            return article

    async def get_article(self, article_id: str) -> Optional[KnowledgeArticle]:
        async with self._session() as db:
            row = await db.get(ArticleRow, article_id)
            return self._row_to_article(row) if row else None

    async def get_article_by_slug(self, slug: str) -> Optional[KnowledgeArticle]:
        async with self._session() as db:
            result = await db.execute(select(ArticleRow).where(ArticleRow.slug == slug))
            row = result.scalar_one_or_none()
            return self._row_to_article(row) if row else None

    async def list_articles(self, published_only: bool = True) -> list[KnowledgeArticle]:
        async with self._session() as db:
            stmt = select(ArticleRow)
            if published_only:
                stmt = stmt.where(ArticleRow.status == ArticleStatus.PUBLISHED.value)
            result = await db.execute(stmt)
            return [self._row_to_article(r) for r in result.scalars().all()]

    async def increment_article_counters(
        self, article_id: str, views: int = 0, helpful: int = 0, not_helpful: int = 0,
    ) -> None:
        async with self._session() as db:
            await db.execute(
                update(ArticleRow)
                .where(ArticleRow.id == article_id)
                .values(
                    view_count=ArticleRow.view_count + views,
                    helpful_count=ArticleRow.helpful_count + helpful,
                    not_helpful_count=ArticleRow.not_helpful_count + not_helpful,
                )
                .execution_options(synchronize_session=False)
            )

    # ── Suggestion operations ──────────────────────────────

    async def add_suggestion(self, suggestion: Suggestion) -> Suggestion:
        async with self._session() as db:
            db.add(SuggestionRow(
                id=suggestion.id,
                text=suggestion.text,
                intent=suggestion.intent,
                target_roles=[r.value for r in suggestion.target_roles],
                context_conditions=suggestion.context_conditions,
                priority=suggestion.priority,
                is_active=suggestion.is_active,
                created_at=_utc(suggestion.created_at),
            ))
            return suggestion

    async def list_suggestions(self, active_only: bool = True) -> list[Suggestion]:
        async with self._session() as db:
            stmt = select(SuggestionRow)
            if active_only:
                stmt = stmt.where(SuggestionRow.is_active.is_(True))
            result = await db.execute(stmt)
            return [
                Suggestion(
                    id=r.id, text=r.text, intent=r.intent,
                    target_roles=r.target_roles or [],
                    context_conditions=r.context_conditions or {},
                    priority=r.priority, is_active=r.is_active,
                    created_at=_utc(r.created_at),
                )
                for r in result.scalars().all()
            ]

    # ── Converters ─────────────────────────────────────────

    @staticmethod
    def _item_values(item: NotificationItem) -> dict[str, Any]:
        return {
            "user_id": item.user_id,
            "template_name": item.template_name,
            "channel": item.channel.value,
            "subject": item.subject,
            "content": item.content,
            "variables": item.variables,
            "status": item.status.value,
            "priority": item.priority,
            "scheduled_for": _utc(item.scheduled_for),
            "sent_at": _utc(item.sent_at),
            "read_at": _utc(item.read_at),
            "last_error": item.last_error,
            "retry_count": item.retry_count,
            "max_retries": item.max_retries,
            "suppressed": item.suppressed,
            "claim_token": item.claim_token,
            "claimed_by": item.claimed_by,
            "claimed_until": _utc(item.claimed_until),
            "metadata_": item.metadata,
            "created_at": _utc(item.created_at),
            "updated_at": _utc(item.updated_at),
        }

    @staticmethod
    def _row_to_item(row: NotificationRow) -> NotificationItem:
        return NotificationItem(
            id=row.id, user_id=row.user_id, template_name=row.template_name,
            channel=ChannelType(row.channel), subject=row.subject, content=row.content,
            variables=row.variables or {}, status=NotificationStatus(row.status),
            priority=row.priority, scheduled_for=_utc(row.scheduled_for),
            sent_at=_utc(row.sent_at), read_at=_utc(row.read_at),
            last_error=row.last_error, retry_count=row.retry_count,
            max_retries=row.max_retries, suppressed=row.suppressed,
            claim_token=row.claim_token, claimed_by=row.claimed_by,
            claimed_until=_utc(row.claimed_until), metadata=row.metadata_ or {},
            created_at=_utc(row.created_at), updated_at=_utc(row.updated_at),
        )

    @staticmethod
    def _row_to_template(row: TemplateRow) -> NotificationTemplate:
        return NotificationTemplate(
            name=row.name, channel=ChannelType(row.channel),
            subject_template=row.subject_template, body_template=row.body_template,
            variables=row.variables or [], is_active=row.is_active,
            created_at=_utc(row.created_at), updated_at=_utc(row.updated_at),
        )

    @staticmethod
    def _conversation_values(conv: Conversation) -> dict[str, Any]:
        return {
            "tenant_id": conv.tenant_id,
            "user_id": conv.user_id,
            "role": conv.role.value,
            "status": conv.status.value,
            "started_at": _utc(conv.started_at),
            "last_activity_at": _utc(conv.last_activity_at),
            "ended_at": _utc(conv.ended_at),
            "message_count": conv.message_count,
            "consecutive_fallbacks": conv.consecutive_fallbacks,
            "context": conv.context,
            "escalation": conv.escalation.model_dump(mode="json") if conv.escalation else None,
            "metadata_": conv.metadata,
        }

    @staticmethod
    def _row_to_conversation(row: ConversationRow) -> Conversation:
        return Conversation(
            id=row.id, tenant_id=row.tenant_id, user_id=row.user_id,
            role=row.role, status=ConversationStatus(row.status),
            started_at=_utc(row.started_at), last_activity_at=_utc(row.last_activity_at),
            ended_at=_utc(row.ended_at), message_count=row.message_count,
            consecutive_fallbacks=row.consecutive_fallbacks, context=row.context or {},
            escalation=EscalationRecord(**row.escalation) if row.escalation else None,
            metadata=row.metadata_ or {},
        )

    @staticmethod
    def _row_to_message(row: MessageRow) -> Message:
        return Message(
            id=row.id, conversation_id=row.conversation_id, sender=row.sender,
            content=MessageContent(**row.content), timestamp=_utc(row.timestamp),
            intent=row.intent, confidence=row.confidence,
            feedback=MessageFeedback(**row.feedback) if row.feedback else None,
            metadata=row.metadata_ or {},
        )

    @staticmethod
    def _row_to_article(row: ArticleRow) -> KnowledgeArticle:
        return KnowledgeArticle(
            id=row.id, slug=row.slug, title=row.title, content=row.content,
            summary=row.summary, category=row.category, subcategory=row.subcategory,
            tags=row.tags or [], keywords=row.keywords or [],
            intent_triggers=row.intent_triggers or [], target_roles=row.target_roles or [],
            language=row.language, status=ArticleStatus(row.status),
            view_count=row.view_count, helpful_count=row.helpful_count,
            not_helpful_count=row.not_helpful_count, author_id=row.author_id,
            created_at=_utc(row.created_at), updated_at=_utc(row.updated_at),
        )
