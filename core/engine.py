"""
Conversation Engine: classifies user messages, answers from the
knowledge base, and decides when a human takes over.

Decision pipeline for every user message (first match wins):
  1. intent == request_human                    → Escalate(user_requested)
  2. intent produced, confidence < threshold    → Escalate(low_confidence)
  3. knowledge hit (intent triggers, then text) → Answered(article)
  4. no hit, consecutive fallbacks ≥ limit      → Escalate(repeated_fallback)
  5. otherwise                                  → Fallback

Classifier and knowledge failures degrade (no intent / no article) and
never reach the caller. Messages for one conversation are processed one
at a time under the tracker's per-conversation lock.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta
from typing import Any, Optional

from config.settings import AssistantConfig
from context.state_machine import ConversationStateMachine
from context.tracker import ConversationTracker
from core.classifier import IntentClassifier
from job_queue.notification_queue import NotificationQueue
from knowledge.index import KnowledgeBaseIndex
from models.errors import CapabilityUnavailable, InvalidTransition, NotFound, ValidationFailed
from models.schemas import (
    PRIORITY_HIGHEST, REQUEST_HUMAN_INTENT,
    Answered, BotReply, Classification, Conversation, ConversationStatus,
    Escalate, EscalationReason, EscalationRecord, Fallback, Message, MessageContent,
    MessageFeedback, MessageSender, QuickReply, ReplyDecision, UserRole, utcnow,
)

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Canned messages
# ──────────────────────────────────────────────────────────────

WELCOME_MESSAGES: dict[UserRole, tuple[str, list[tuple[str, str]]]] = {
    UserRole.ANONYMOUS: (
        "¡Hola! Soy el asistente virtual de ACC LMS. ¿En qué puedo ayudarte hoy?",
        [("Ver cursos disponibles", "browse_courses"), ("¿Cómo funciona?", "how_it_works"),
         ("Registrarme", "register")],
    ),
    UserRole.STUDENT: (
        "¡Hola! ¿En qué puedo ayudarte con tus cursos?",
        [("Mi progreso", "check_progress"), ("Mis certificados", "get_certificate"),
         ("Problema técnico", "technical_issue"), ("Pagos", "payment_help")],
    ),
    UserRole.INSTRUCTOR: (
        "¡Hola! ¿En qué puedo ayudarte con tu contenido?",
        [("Crear curso", "create_course"), ("Mis analytics", "view_analytics"),
         ("Mis ingresos", "view_earnings"), ("Gestionar estudiantes", "manage_students")],
    ),
    UserRole.ADMIN: (
        "¡Hola Admin! ¿Qué necesitas revisar?",
        [("Estado del sistema", "system_health"), ("Reportes", "view_reports"),
         ("Usuarios", "manage_users"), ("Configuración", "configuration")],
    ),
}

FALLBACK_TEXT = (
    "No encontré una respuesta para tu pregunta. ¿Puedes reformularla con otras palabras?"
)
ESCALATION_NOTICE = "Te comunicaré con un agente humano. Un miembro del equipo de soporte continuará esta conversación."
AGENT_OWNS_THREAD = "Tu conversación está con un agente humano; te responderá en breve."
ESCALATION_SYSTEM_TEXT = "Conversación escalada: {reason}"
AGENT_ASSIGNED_TEXT = "Agente asignado: {agent}"

_HUMAN_REPLY = QuickReply(label="Hablar con un agente", payload=REQUEST_HUMAN_INTENT)


def welcome_content(role: UserRole) -> MessageContent:
    text, replies = WELCOME_MESSAGES[role]
    return MessageContent(
        text=text,
        quick_replies=[QuickReply(label=label, payload=payload) for label, payload in replies],
    )


class ConversationEngine:

    def __init__(
        self,
        tracker: ConversationTracker,
        knowledge: KnowledgeBaseIndex,
        classifier: IntentClassifier,
        config: Optional[AssistantConfig] = None,
        queue: Optional[NotificationQueue] = None,
        state_machine: Optional[ConversationStateMachine] = None,
    ):
        self.tracker = tracker
        self.knowledge = knowledge
        self.classifier = classifier
        self.config = config or AssistantConfig()
        self.queue = queue
        self.state_machine = state_machine or ConversationStateMachine()

    # ── Start ─────────────────────────────────────────

    async def start(
        self,
        user_id: Optional[str] = None,
        role: UserRole = UserRole.ANONYMOUS,
        context: Optional[dict[str, Any]] = None,
        tenant_id: Optional[str] = None,
    ) -> tuple[Conversation, Message]:
        conversation = await self.tracker.create(user_id, role, context, tenant_id)
        welcome = await self.tracker.append(conversation, MessageSender.BOT, welcome_content(role))
        return conversation, welcome

    # ── User messages ─────────────────────────────────

    async def post_user_message(
        self, conversation_id: str, text: str, now: Optional[datetime] = None,
    ) -> BotReply:
        if not (text or "").strip():
            raise ValidationFailed("message text is empty")

        async with self.tracker.lock_for(conversation_id):
            conversation = await self.tracker.require(conversation_id)
            if not self.state_machine.accepts_messages(conversation.status):
                raise InvalidTransition("conversation", conversation.status.value, "message")

            classification = await self._classify(conversation, text)
            await self.tracker.append(
                conversation, MessageSender.USER, MessageContent(text=text),
                intent=classification.intent, confidence=classification.confidence, now=now,
            )

            if conversation.status == ConversationStatus.ESCALATED:
                notice = await self.tracker.append(
                    conversation, MessageSender.BOT, MessageContent(text=AGENT_OWNS_THREAD), now=now,
                )
                return self._reply(conversation, "escalated", notice)

            decision = await self.decide(conversation, classification, text)
            return await self._apply_decision(conversation, decision, classification, now)

    async def decide(
        self, conversation: Conversation, classification: Classification, text: str,
    ) -> ReplyDecision:
        intent = classification.intent
        if intent == REQUEST_HUMAN_INTENT:
            return Escalate(reason=EscalationReason.USER_REQUESTED)
        if intent is not None and classification.confidence < self.config.escalation_threshold:
            return Escalate(reason=EscalationReason.LOW_CONFIDENCE)

        reason = "no_match"
        try:
            if intent is not None:
                results = await self.knowledge.lookup_by_intent(
                    intent, conversation.role, conversation.language, query=text, limit=self.config.search_limit,
                )
            else:
                results = await self.knowledge.search(
                    text, conversation.role, conversation.language, limit=self.config.search_limit,
                )
        except CapabilityUnavailable as e:
            logger.warning("knowledge_lookup_degraded", conversation_id=conversation.id, error=str(e))
            results, reason = [], "knowledge_unavailable"
        except Exception as e:
            logger.error("knowledge_lookup_failed", conversation_id=conversation.id,
                         error=str(e), error_type=type(e).__name__)
            results, reason = [], "knowledge_unavailable"

        if results:
            return Answered(article=results[0].article, score=results[0].score)
        if conversation.consecutive_fallbacks >= self.config.fallback_escalation_threshold:
            return Escalate(reason=EscalationReason.REPEATED_FALLBACK)
        return Fallback(reason=reason)

    async def _classify(self, conversation: Conversation, text: str) -> Classification:
        context = {"role": conversation.role.value, **conversation.context}
        try:
            return await self.classifier.classify(text, context)
        except CapabilityUnavailable as e:
            logger.warning("classification_degraded", conversation_id=conversation.id, error=str(e))
            return Classification()
        except Exception as e:
            logger.error("classification_failed", conversation_id=conversation.id,
                         error=str(e), error_type=type(e).__name__)
            return Classification()

    async def _apply_decision(
        self,
        conversation: Conversation,
        decision: ReplyDecision,
        classification: Classification,
        now: Optional[datetime],
    ) -> BotReply:
        if isinstance(decision, Answered):
            article = decision.article
            conversation.consecutive_fallbacks = 0
            content = MessageContent(
                text=f"{article.title}\n\n{article.snippet}",
                article_id=article.id,
                article_slug=article.slug,
                quick_replies=[QuickReply(label="Ver artículo", payload=f"/ayuda/{article.slug}"), _HUMAN_REPLY],
            )
            message = await self.tracker.append(
                conversation, MessageSender.BOT, content,
                intent=classification.intent, confidence=classification.confidence,
                metadata={"score": decision.score}, now=now,
            )
            await self._record_view(article.id)
            logger.info("conversation_answered",
                        conversation_id=conversation.id, article=article.slug, score=decision.score)
            return self._reply(conversation, "answered", message)

        if isinstance(decision, Fallback):
            conversation.consecutive_fallbacks += 1
            message = await self.tracker.append(
                conversation, MessageSender.BOT,
                MessageContent(text=FALLBACK_TEXT, quick_replies=[_HUMAN_REPLY]),
                metadata={"fallback_reason": decision.reason}, now=now,
            )
            logger.info("conversation_fallback",
                        conversation_id=conversation.id,
                        consecutive=conversation.consecutive_fallbacks,
                        reason=decision.reason)
            return self._reply(conversation, "fallback", message)

        notes = None
        if decision.reason == EscalationReason.LOW_CONFIDENCE:
            notes = f"Confidence: {classification.confidence:.2f}"
        await self._escalate_locked(conversation, decision.reason, notes, now)
        message = await self.tracker.append(
            conversation, MessageSender.BOT, MessageContent(text=ESCALATION_NOTICE), now=now,
        )
        return self._reply(conversation, "escalated", message)

    async def _record_view(self, article_id: str) -> None:
        try:
            await self.knowledge.record_view(article_id)
        except Exception as e:
            logger.warning("article_view_not_recorded", article_id=article_id, error=str(e))

    @staticmethod
    def _reply(conversation: Conversation, kind: str, message: Message) -> BotReply:
        return BotReply(
            conversation_id=conversation.id,
            kind=kind,
            message=message,
            status=conversation.status,
            escalation=conversation.escalation,
        )

    # ── Escalation & terminal transitions ─────────────

    async def escalate(
        self,
        conversation_id: str,
        reason: EscalationReason,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Conversation:
        """Idempotent: escalating an escalated conversation changes nothing."""
        async with self.tracker.lock_for(conversation_id):
            conversation = await self.tracker.require(conversation_id)
            await self._escalate_locked(conversation, reason, notes, now)
            return conversation

    async def _escalate_locked(
        self,
        conversation: Conversation,
        reason: EscalationReason,
        notes: Optional[str],
        now: Optional[datetime],
    ) -> bool:
        now = now or utcnow()
        if not self.state_machine.apply(conversation, ConversationStatus.ESCALATED, now):
            return False

        conversation.escalation = EscalationRecord(reason=reason, notes=notes, escalated_at=now)
        await self.tracker.append(
            conversation, MessageSender.SYSTEM,
            MessageContent(text=ESCALATION_SYSTEM_TEXT.format(reason=reason.value)),
            metadata={"escalation_reason": reason.value}, now=now,
        )
        logger.info("conversation_escalated",
                    conversation_id=conversation.id, reason=reason.value, notes=notes)
        await self._notify_support(conversation, reason, notes)
        return True

    async def _notify_support(
        self, conversation: Conversation, reason: EscalationReason, notes: Optional[str],
    ) -> None:
        if self.queue is None:
            return
        variables = {
            "conversationId": conversation.id,
            "reason": reason.value,
            "userId": conversation.user_id or "anonymous",
            "role": conversation.role.value,
            "notes": notes or "",
        }
        try:
            await self.queue.enqueue(
                self.config.support_recipient_id,
                self.config.escalation_template,
                variables,
                priority=PRIORITY_HIGHEST + 1,
                metadata={"conversation_id": conversation.id},
            )
        except ValidationFailed as e:
            # The escalation stands; support will see it in the conversation list
            logger.error("escalation_notification_failed",
                         conversation_id=conversation.id, error=str(e))

    # ── Human agents ──────────────────────────────────

    async def assign_agent(
        self, conversation_id: str, agent_id: str, now: Optional[datetime] = None,
    ) -> Conversation:
        """Hand an escalated conversation to an agent. Re-assigning the same agent is a no-op."""
        if not (agent_id or "").strip():
            raise ValidationFailed("agent_id is required")

        async with self.tracker.lock_for(conversation_id):
            conversation = await self.tracker.require(conversation_id)
            self._require_escalated(conversation, "assign_agent")
            previous = conversation.escalation.assigned_agent_id
            if previous == agent_id:
                return conversation

            conversation.escalation.assigned_agent_id = agent_id
            await self.tracker.append(
                conversation, MessageSender.SYSTEM,
                MessageContent(text=AGENT_ASSIGNED_TEXT.format(agent=agent_id)),
                metadata={"agent_id": agent_id, "previous_agent_id": previous}, now=now,
            )
            logger.info("conversation_agent_assigned",
                        conversation_id=conversation.id, agent_id=agent_id, previous=previous)
            return conversation

    async def post_agent_message(
        self, conversation_id: str, agent_id: str, text: str, now: Optional[datetime] = None,
    ) -> Message:
        """Agent reply. The first agent to reply claims an unassigned thread."""
        if not (text or "").strip():
            raise ValidationFailed("message text is empty")

        async with self.tracker.lock_for(conversation_id):
            conversation = await self.tracker.require(conversation_id)
            self._require_escalated(conversation, "agent_message")
            assigned = conversation.escalation.assigned_agent_id
            if assigned is None:
                conversation.escalation.assigned_agent_id = agent_id
                logger.info("conversation_agent_assigned",
                            conversation_id=conversation.id, agent_id=agent_id, previous=None)
            elif assigned != agent_id:
                raise ValidationFailed(f"conversation {conversation.id} is assigned to agent {assigned}")

            return await self.tracker.append(
                conversation, MessageSender.AGENT, MessageContent(text=text),
                metadata={"agent_id": agent_id}, now=now,
            )

    @staticmethod
    def _require_escalated(conversation: Conversation, action: str) -> None:
        if conversation.status != ConversationStatus.ESCALATED or conversation.escalation is None:
            raise InvalidTransition("conversation", conversation.status.value, action)

    async def resolve(self, conversation_id: str, now: Optional[datetime] = None) -> Conversation:
        return await self._finish(conversation_id, ConversationStatus.RESOLVED, now)

    async def abandon(self, conversation_id: str, now: Optional[datetime] = None) -> Conversation:
        return await self._finish(conversation_id, ConversationStatus.ABANDONED, now)

    async def _finish(
        self, conversation_id: str, target: ConversationStatus, now: Optional[datetime],
    ) -> Conversation:
        async with self.tracker.lock_for(conversation_id):
            conversation = await self.tracker.require(conversation_id)
            if self.state_machine.apply(conversation, target, now):
                await self.tracker.save(conversation)
        self.tracker.release_lock(conversation_id)
        return conversation

    # ── Inactivity ────────────────────────────────────

    async def sweep_inactive(self, now: Optional[datetime] = None) -> list[str]:
        """Abandon active conversations idle for longer than the inactivity timeout."""
        now = now or utcnow()
        cutoff = now - timedelta(minutes=self.config.inactivity_timeout_minutes)
        stale = await self.tracker.store.list_conversations(
            status=ConversationStatus.ACTIVE, inactive_before=cutoff,
        )
        abandoned = []
        for candidate in stale:
            async with self.tracker.lock_for(candidate.id):
                conversation = await self.tracker.get(candidate.id)
                if (
                    conversation is None
                    or conversation.status != ConversationStatus.ACTIVE
                    or conversation.last_activity_at >= cutoff
                ):
                    continue
                self.state_machine.apply(conversation, ConversationStatus.ABANDONED, now)
                await self.tracker.save(conversation)
                abandoned.append(conversation.id)
            self.tracker.release_lock(candidate.id)
        if abandoned:
            logger.info("conversations_abandoned", count=len(abandoned), cutoff=cutoff.isoformat())
        return abandoned

    # ── Feedback ──────────────────────────────────────

    async def submit_feedback(
        self, message_id: str, helpful: bool, comment: Optional[str] = None,
    ) -> Message:
        store = self.tracker.store
        message = await store.get_message(message_id)
        if message is None:
            raise NotFound("message", message_id)
        feedback = MessageFeedback(helpful=helpful, comment=comment)
        if not await store.set_message_feedback(message_id, feedback):
            raise InvalidTransition("message feedback", "submitted", "submitted")
        message.feedback = feedback
        if message.content.article_id:
            await self.knowledge.record_feedback(message.content.article_id, helpful)
        logger.info("message_feedback", message_id=message_id, helpful=helpful)
        return message
