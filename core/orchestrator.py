"""
Orchestrator: the public facade for LMS Engage.

Architecture:
  Notifications:  domain service → notify() → NotificationQueue (render + store)
                  ChannelWorkerPool × channel → PreferenceGate → UserDirectory
                  → ChannelSender → report_outcome()

  Assistant:      start_conversation() → welcome message
                  post_message() → ConversationEngine (classify → decide → reply)
                  escalation → system message + agent_escalation notification

  Background:     DispatchSupervisor runs every channel pool plus the
                  inactivity sweeper; start() / stop() from the app lifespan.
"""
from __future__ import annotations

import structlog
from datetime import datetime
from typing import Any, Optional, Union

from backend.connector import UserDirectory, create_user_directory
from channels import build_registry
from channels.base import ChannelRegistry
from config.settings import Settings, get_settings
from context.suggestions import SuggestionSelector
from context.tracker import ConversationTracker
from core.classifier import IntentClassifier, create_classifier
from core.engine import ConversationEngine
from core.sweeper import InactivitySweeper
from database.store_base import BaseStore
from database.store_factory import create_store
from job_queue.consumer import ChannelWorkerPool, DispatchSupervisor
from job_queue.notification_queue import NotificationQueue, TerminalHook
from job_queue.preferences import PreferenceGate
from knowledge.index import KnowledgeBaseIndex
from knowledge.ranking import Ranker
from models.errors import NotFound, ValidationFailed
from models.schemas import (
    BotReply, Conversation, ConversationStatus, EscalationReason, KnowledgeArticle,
    Message, MessageSender, NotificationItem, NotificationStatus, NotificationTemplate, SearchResult,
    Suggestion, UserNotificationPreference, UserRole,
)
from templates.registry import TemplateRegistry

logger = structlog.get_logger()


class Orchestrator:
    """
    Usage:
        orch = Orchestrator(create_store(settings.database), settings)
        await orch.start()
        item_id = await orch.notify("u1", "course_completed", {"userName": "Ana", "courseTitle": "Python"})
        conv, welcome = await orch.start_conversation("u1", UserRole.STUDENT, {"page": "/dashboard"})
        reply = await orch.post_message(conv.id, "¿Cómo obtengo mi certificado?")
        await orch.stop()
    """

    def __init__(
        self,
        store: Optional[BaseStore] = None,
        settings: Optional[Settings] = None,
        directory: Optional[UserDirectory] = None,
        channels: Optional[ChannelRegistry] = None,
        classifier: Optional[IntentClassifier] = None,
        ranker: Optional[Ranker] = None,
        on_terminal_failure: Optional[TerminalHook] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store or create_store(self.settings.database)
        assistant = self.settings.assistant

        self.templates = TemplateRegistry(self.store)
        self.queue = NotificationQueue(
            self.store, self.templates, self.settings.queue, self.settings.channels,
            on_terminal_failure=on_terminal_failure,
        )
        self.preferences = PreferenceGate(self.store, default_timezone=self.settings.timezone)
        self.directory = directory or create_user_directory(self.settings.directory)
        self.channels = channels or build_registry(self.settings.channels)

        self.knowledge = KnowledgeBaseIndex(
            self.store, ranker=ranker,
            fallback_language=assistant.fallback_language,
            default_limit=assistant.search_limit,
        )
        self.tracker = ConversationTracker(self.store)
        self.engine = ConversationEngine(
            self.tracker, self.knowledge, classifier or create_classifier(assistant.classifier),
            config=assistant, queue=self.queue,
        )
        self.suggestions = SuggestionSelector()

        self.pools = self._build_pools()
        self.sweeper = InactivitySweeper(self.engine)
        self.supervisor = DispatchSupervisor(self.pools, services=[self.sweeper])

    def _build_pools(self) -> list[ChannelWorkerPool]:
        pools = []
        for channel in self.channels.get_available():
            cfg = self.settings.channel(channel.value)
            if not cfg.enabled:
                continue
            pools.append(ChannelWorkerPool(
                channel, cfg, self.queue, self.preferences, self.directory, self.channels.get(channel),
            ))
        return pools

    def pool(self, channel) -> Optional[ChannelWorkerPool]:
        return next((p for p in self.pools if p.channel == channel), None)

    # ══════════════════════════════════════════════════════════
    #  LIFECYCLE
    # ══════════════════════════════════════════════════════════

    async def start(self):
        await self.channels.initialize_all()
        await self.supervisor.start()

    async def stop(self):
        await self.supervisor.stop()
        await self.channels.shutdown_all()
        await self.directory.close()

    async def health(self) -> dict[str, Any]:
        return {
            "dispatch_running": self.supervisor.running,
            "pools": self.supervisor.stats(),
            "channels": await self.channels.health_check_all(),
        }

    # ══════════════════════════════════════════════════════════
    #  NOTIFICATIONS
    # ══════════════════════════════════════════════════════════

    async def notify(
        self,
        user_id: str,
        template_name: str,
        variables: Optional[dict[str, Any]] = None,
        priority: Optional[int] = None,
        scheduled_for: Optional[datetime] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> str:
        return await self.queue.enqueue(user_id, template_name, variables, priority, scheduled_for, metadata)

    async def get_notification_status(self, item_id: str) -> NotificationItem:
        item = await self.queue.get(item_id)
        if item is None:
            raise NotFound("notification", item_id)
        return item

    async def mark_read(self, item_id: str) -> NotificationItem:
        return await self.queue.mark_read(item_id)

    async def list_notifications(
        self, user_id: str, status: Optional[NotificationStatus] = None, limit: int = 50,
    ) -> list[NotificationItem]:
        return await self.queue.list_for_user(user_id, status=status, limit=limit)

    async def notification_stats(self, user_id: str) -> dict[str, int]:
        return await self.queue.stats(user_id)

    async def unread_count(self, user_id: str) -> int:
        return await self.queue.count_unread(user_id)

    async def get_preferences(self, user_id: str) -> UserNotificationPreference:
        return await self.preferences.get_or_create(user_id)

    async def update_preferences(self, user_id: str, changes: dict[str, Any]) -> UserNotificationPreference:
        return await self.preferences.update(user_id, changes)

    # ══════════════════════════════════════════════════════════
    #  TEMPLATES
    # ══════════════════════════════════════════════════════════

    async def list_templates(self, include_inactive: bool = False) -> list[NotificationTemplate]:
        return await self.templates.list_templates(include_inactive=include_inactive)

    async def get_template(self, name: str) -> NotificationTemplate:
        template = await self.templates.get(name)
        if template is None:
            raise NotFound("template", name)
        return template

    async def create_template(self, template: NotificationTemplate) -> NotificationTemplate:
        return await self.templates.create(template)

    async def update_template(self, name: str, changes: dict[str, Any]) -> NotificationTemplate:
        return await self.templates.update(name, changes)

    async def deactivate_template(self, name: str) -> NotificationTemplate:
        await self.get_template(name)
        return await self.templates.deactivate(name)

    async def delete_template(self, name: str) -> None:
        await self.templates.delete(name)

    # ══════════════════════════════════════════════════════════
    #  CONVERSATIONS
    # ══════════════════════════════════════════════════════════

    async def start_conversation(
        self,
        user_id: Optional[str] = None,
        role: UserRole = UserRole.ANONYMOUS,
        context: Optional[dict[str, Any]] = None,
        tenant_id: Optional[str] = None,
    ) -> tuple[Conversation, Message]:
        return await self.engine.start(user_id, role, context, tenant_id)

    async def post_message(self, conversation_id: str, text: str) -> BotReply:
        return await self.engine.post_user_message(conversation_id, text)

    async def get_conversation(
        self, conversation_id: str, message_limit: int = 50,
    ) -> tuple[Conversation, list[Message]]:
        conversation = await self.tracker.require(conversation_id)
        messages = await self.tracker.history(conversation_id, limit=message_limit)
        return conversation, messages

    async def escalate(
        self,
        conversation_id: str,
        reason: Union[EscalationReason, str] = EscalationReason.USER_REQUESTED,
        notes: Optional[str] = None,
    ) -> Conversation:
        try:
            reason = EscalationReason(reason)
        except ValueError as e:
            raise ValidationFailed(f"Unknown escalation reason: {reason}") from e
        return await self.engine.escalate(conversation_id, reason, notes)

    async def assign_agent(self, conversation_id: str, agent_id: str) -> Conversation:
        return await self.engine.assign_agent(conversation_id, agent_id)

    async def post_agent_message(self, conversation_id: str, agent_id: str, text: str) -> Message:
        return await self.engine.post_agent_message(conversation_id, agent_id, text)

    async def resolve(self, conversation_id: str) -> Conversation:
        return await self.engine.resolve(conversation_id)

    async def abandon(self, conversation_id: str) -> Conversation:
        return await self.engine.abandon(conversation_id)

    async def submit_feedback(self, message_id: str, helpful: bool, comment: Optional[str] = None) -> Message:
        return await self.engine.submit_feedback(message_id, helpful, comment)

    async def get_suggestions(
        self, role: UserRole, context: Optional[dict[str, Any]] = None, limit: int = 5,
    ) -> list[Suggestion]:
        candidates = await self.store.list_suggestions(active_only=True)
        return self.suggestions.select(candidates, role, context, limit)

    # ══════════════════════════════════════════════════════════
    #  KNOWLEDGE BASE
    # ══════════════════════════════════════════════════════════

    async def search_knowledge(
        self, query: str, role: UserRole, language: Optional[str] = None, limit: Optional[int] = None,
    ) -> list[SearchResult]:
        return await self.knowledge.search(query, role, language, limit)

    async def get_article(self, slug: str) -> KnowledgeArticle:
        article = await self.knowledge.get_by_slug(slug)
        if article is None:
            raise NotFound("article", slug)
        return article

    async def create_article(self, article: KnowledgeArticle) -> KnowledgeArticle:
        return await self.knowledge.create_article(article)

    async def article_feedback(self, article_id: str, helpful: bool) -> KnowledgeArticle:
        if await self.store.get_article(article_id) is None:
            raise NotFound("article", article_id)
        await self.knowledge.record_feedback(article_id, helpful)
        return await self.store.get_article(article_id)

    async def popular_articles(self, role: UserRole, language: Optional[str] = None, limit: int = 5):
        return await self.knowledge.popular(role, language, limit)

    async def articles_by_category(self, category: str, role: UserRole, language: Optional[str] = None):
        return await self.knowledge.list_by_category(category, role, language)

    # ══════════════════════════════════════════════════════════
    #  ANALYTICS
    # ══════════════════════════════════════════════════════════

    async def conversation_analytics(
        self,
        started_after: Optional[datetime] = None,
        started_before: Optional[datetime] = None,
    ) -> dict[str, Any]:
        conversations = await self.store.list_conversations(
            started_after=started_after, started_before=started_before,
        )
        total = len(conversations)
        by_status = {s.value: 0 for s in ConversationStatus}
        escalated = 0
        helpful = rated = 0
        for conversation in conversations:
            by_status[conversation.status.value] += 1
            if conversation.escalation is not None:
                escalated += 1
            for message in await self.store.get_messages(conversation.id, limit=10_000):
                if message.sender == MessageSender.BOT and message.feedback is not None:
                    rated += 1
                    helpful += int(message.feedback.helpful)

        def ratio(n: int, d: int) -> float:
            return round(n / d, 4) if d else 0.0

        return {
            "total_conversations": total,
            "by_status": by_status,
            "resolution_rate": ratio(by_status[ConversationStatus.RESOLVED.value], total),
            "escalation_rate": ratio(escalated, total),
            "avg_messages_per_conversation": round(
                sum(c.message_count for c in conversations) / total, 2) if total else 0.0,
            "feedback_count": rated,
            "satisfaction_rate": ratio(helpful, rated),
        }
