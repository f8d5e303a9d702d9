"""
FastAPI Application: REST API for notifications and the help assistant.

Provides:
- Notification enqueue, status, read tracking and per-user stats
- User notification preferences (channel opt-outs, quiet hours)
- Assistant conversations: start, post message, escalate, resolve, feedback
- Contextual suggestions and knowledge base search
- Template management and knowledge base article authoring
- Human agent assignment and replies on escalated conversations
- Conversation analytics, channel health, email bounce and complaint webhooks
- Dispatch supervisor lifecycle (worker pools + inactivity sweeper)
"""
from __future__ import annotations

import structlog
from datetime import datetime
from typing import Any, Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from core.orchestrator import Orchestrator
from database.seed import seed_all
from database.session import close_db, init_db
from models.errors import InvalidTransition, NotFound, ValidationFailed
from models.schemas import (
    ArticleStatus, ChannelType, EscalationReason, KnowledgeArticle, NotificationStatus,
    NotificationTemplate, UserRole, utcnow,
)

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Request Models
# ──────────────────────────────────────────────────────────────

class NotifyRequest(BaseModel):
    user_id: str
    template_name: str
    variables: dict[str, Any] = {}
    priority: Optional[int] = None
    scheduled_for: Optional[datetime] = None
    metadata: dict[str, Any] = {}


class StartConversationRequest(BaseModel):
    user_id: Optional[str] = None
    role: UserRole = UserRole.ANONYMOUS
    context: dict[str, Any] = {}
    tenant_id: Optional[str] = None


class PostMessageRequest(BaseModel):
    text: str = Field(min_length=1)


class EscalateRequest(BaseModel):
    reason: EscalationReason = EscalationReason.USER_REQUESTED
    notes: Optional[str] = None


class FeedbackRequest(BaseModel):
    helpful: bool
    comment: Optional[str] = None


class BounceRequest(BaseModel):
    email: str
    type: str = "permanent"


class ComplaintRequest(BaseModel):
    email: str


class TemplateRequest(BaseModel):
    name: str = Field(min_length=1)
    channel: ChannelType
    subject_template: Optional[str] = None
    body_template: str
    variables: list[str] = []
    is_active: bool = True


class ArticleRequest(BaseModel):
    slug: str = Field(min_length=1)
    title: str = Field(min_length=1)
    content: str = Field(min_length=1)
    summary: Optional[str] = None
    category: str
    subcategory: Optional[str] = None
    tags: list[str] = []
    keywords: list[str] = []
    intent_triggers: list[str] = []
    target_roles: list[UserRole] = [UserRole.ANONYMOUS]
    language: str = "es"
    status: ArticleStatus = ArticleStatus.DRAFT
    author_id: Optional[str] = None


class ArticleFeedbackRequest(BaseModel):
    helpful: bool


class AssignAgentRequest(BaseModel):
    agent_id: str = Field(min_length=1)


class AgentMessageRequest(BaseModel):
    agent_id: str = Field(min_length=1)
    text: str = Field(min_length=1)


# ──────────────────────────────────────────────────────────────
#  App factory
# ──────────────────────────────────────────────────────────────

def create_app(orchestrator: Optional[Orchestrator] = None, start_dispatch: bool = True) -> FastAPI:
    orch = orchestrator or Orchestrator()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        settings = orch.settings
        uses_sql = orchestrator is None and settings.database.store_backend == "sql"
        if uses_sql:
            await init_db()
        if settings.database.seed_on_startup:
            await seed_all(orch.store)
        if start_dispatch:
            await orch.start()
        logger.info("lms_engage_started",
                    store=type(orch.store).__name__,
                    channels=[p.channel.value for p in orch.pools])
        yield
        if start_dispatch:
            await orch.stop()
        if uses_sql:
            await close_db()
        logger.info("lms_engage_stopped")

    app = FastAPI(
        title="LMS Engage API",
        description="Notification dispatch and help assistant for ACC LMS",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.orchestrator = orch

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── Error mapping ─────────────────────────────────────────

    @app.exception_handler(NotFound)
    async def not_found_handler(request: Request, exc: NotFound):
        return JSONResponse(status_code=404, content={"error": "not_found", "detail": str(exc)})

    @app.exception_handler(InvalidTransition)
    async def conflict_handler(request: Request, exc: InvalidTransition):
        return JSONResponse(status_code=409, content={"error": "invalid_transition", "detail": str(exc)})

    @app.exception_handler(ValidationFailed)
    async def validation_handler(request: Request, exc: ValidationFailed):
        return JSONResponse(status_code=422, content={"error": "validation_failed", "detail": str(exc)})

    # ══════════════════════════════════════════════════════════
    #  HEALTH
    # ══════════════════════════════════════════════════════════

    @app.get("/health")
    async def health():
        return {
            "status": "healthy",
            "timestamp": utcnow().isoformat(),
            "channels": [c.value for c in orch.channels.get_available()],
            "healthy_channels": [c.value for c in orch.channels.get_healthy_channels()],
            "dispatch_running": orch.supervisor.running,
        }

    @app.get("/api/v1/channels/health")
    async def channel_health():
        return await orch.health()

    # ══════════════════════════════════════════════════════════
    #  NOTIFICATIONS
    # ══════════════════════════════════════════════════════════

    @app.post("/api/v1/notifications", status_code=201)
    async def notify(req: NotifyRequest):
        item_id = await orch.notify(
            req.user_id, req.template_name, req.variables,
            priority=req.priority, scheduled_for=req.scheduled_for, metadata=req.metadata,
        )
        return {"id": item_id}

    @app.get("/api/v1/notifications/{item_id}")
    async def notification_status(item_id: str):
        return await orch.get_notification_status(item_id)

    @app.post("/api/v1/notifications/{item_id}/read")
    async def mark_read(item_id: str):
        return await orch.mark_read(item_id)

    @app.get("/api/v1/users/{user_id}/notifications")
    async def list_notifications(
        user_id: str,
        status: Optional[NotificationStatus] = None,
        limit: int = Query(50, ge=1, le=500),
    ):
        return await orch.list_notifications(user_id, status=status, limit=limit)

    @app.get("/api/v1/users/{user_id}/notifications/stats")
    async def notification_stats(user_id: str):
        return await orch.notification_stats(user_id)

    @app.get("/api/v1/users/{user_id}/notifications/unread-count")
    async def unread_count(user_id: str):
        return {"user_id": user_id, "unread": await orch.unread_count(user_id)}

    @app.get("/api/v1/users/{user_id}/preferences")
    async def get_preferences(user_id: str):
        return await orch.get_preferences(user_id)

    @app.put("/api/v1/users/{user_id}/preferences")
    async def update_preferences(user_id: str, changes: dict[str, Any]):
        return await orch.update_preferences(user_id, changes)

    @app.post("/api/v1/dispatch/drain")
    async def drain_dispatch():
        """Run one claim/send pass on every channel pool."""
        return await orch.supervisor.drain_once()

    @app.post("/webhooks/email/bounce")
    async def email_bounce(req: BounceRequest):
        sender = orch.channels.get(ChannelType.EMAIL)
        if sender is None:
            raise NotFound("channel", ChannelType.EMAIL.value)
        return sender.handle_bounce(req.model_dump())

    @app.post("/webhooks/email/complaint")
    async def email_complaint(req: ComplaintRequest):
        sender = orch.channels.get(ChannelType.EMAIL)
        if sender is None:
            raise NotFound("channel", ChannelType.EMAIL.value)
        return sender.handle_complaint(req.model_dump())

    # ══════════════════════════════════════════════════════════
    #  TEMPLATES
    # ══════════════════════════════════════════════════════════

    @app.get("/api/v1/templates")
    async def list_templates(include_inactive: bool = False):
        return await orch.list_templates(include_inactive)

    @app.post("/api/v1/templates", status_code=201)
    async def create_template(req: TemplateRequest):
        return await orch.create_template(NotificationTemplate(**req.model_dump()))

    @app.get("/api/v1/templates/{name}")
    async def get_template(name: str):
        return await orch.get_template(name)

    @app.put("/api/v1/templates/{name}")
    async def update_template(name: str, changes: dict[str, Any]):
        return await orch.update_template(name, changes)

    @app.post("/api/v1/templates/{name}/deactivate")
    async def deactivate_template(name: str):
        return await orch.deactivate_template(name)

    @app.delete("/api/v1/templates/{name}", status_code=204)
    async def delete_template(name: str):
        await orch.delete_template(name)

    # ══════════════════════════════════════════════════════════
    #  CONVERSATIONS
    # ══════════════════════════════════════════════════════════

    @app.post("/api/v1/conversations", status_code=201)
    async def start_conversation(req: StartConversationRequest):
        conversation, welcome = await orch.start_conversation(req.user_id, req.role, req.context, req.tenant_id)
        return {"conversation": conversation, "message": welcome}

    @app.get("/api/v1/conversations/{conversation_id}")
    async def get_conversation(conversation_id: str, limit: int = Query(50, ge=1, le=500)):
        conversation, messages = await orch.get_conversation(conversation_id, message_limit=limit)
        return {"conversation": conversation, "messages": messages}

    @app.post("/api/v1/conversations/{conversation_id}/messages")
    async def post_message(conversation_id: str, req: PostMessageRequest):
        return await orch.post_message(conversation_id, req.text)

    @app.post("/api/v1/conversations/{conversation_id}/escalate")
    async def escalate(conversation_id: str, req: EscalateRequest):
        return await orch.escalate(conversation_id, req.reason, req.notes)

    @app.post("/api/v1/conversations/{conversation_id}/assign")
    async def assign_agent(conversation_id: str, req: AssignAgentRequest):
        return await orch.assign_agent(conversation_id, req.agent_id)

    @app.post("/api/v1/conversations/{conversation_id}/agent-messages", status_code=201)
    async def post_agent_message(conversation_id: str, req: AgentMessageRequest):
        return await orch.post_agent_message(conversation_id, req.agent_id, req.text)

    @app.post("/api/v1/conversations/{conversation_id}/resolve")
    async def resolve(conversation_id: str):
        return await orch.resolve(conversation_id)

    @app.post("/api/v1/messages/{message_id}/feedback")
    async def submit_feedback(message_id: str, req: FeedbackRequest):
        return await orch.submit_feedback(message_id, req.helpful, req.comment)

    @app.get("/api/v1/suggestions")
    async def suggestions(
        role: UserRole = UserRole.ANONYMOUS,
        page: Optional[str] = None,
        course_id: Optional[str] = None,
        limit: int = Query(5, ge=1, le=20),
    ):
        context = {k: v for k, v in {"page": page, "course_id": course_id}.items() if v is not None}
        return await orch.get_suggestions(role, context, limit)

    @app.get("/api/v1/analytics/conversations")
    async def analytics(
        started_after: Optional[datetime] = None,
        started_before: Optional[datetime] = None,
    ):
        return await orch.conversation_analytics(started_after, started_before)

    # ══════════════════════════════════════════════════════════
    #  KNOWLEDGE BASE
    # ══════════════════════════════════════════════════════════

    @app.get("/api/v1/kb/search")
    async def kb_search(
        q: str,
        role: UserRole = UserRole.ANONYMOUS,
        language: Optional[str] = None,
        limit: int = Query(5, ge=1, le=20),
    ):
        return await orch.search_knowledge(q, role, language, limit)

    @app.get("/api/v1/kb/articles/{slug}")
    async def kb_article(slug: str):
        return await orch.get_article(slug)

    @app.post("/api/v1/kb/articles", status_code=201)
    async def kb_create_article(req: ArticleRequest):
        return await orch.create_article(KnowledgeArticle(**req.model_dump()))

    @app.post("/api/v1/kb/articles/{article_id}/feedback")
    async def kb_article_feedback(article_id: str, req: ArticleFeedbackRequest):
        return await orch.article_feedback(article_id, req.helpful)

    @app.get("/api/v1/kb/popular")
    async def kb_popular(role: UserRole = UserRole.ANONYMOUS, limit: int = Query(5, ge=1, le=20)):
        return await orch.popular_articles(role, limit=limit)

    @app.get("/api/v1/kb/categories/{category}")
    async def kb_category(category: str, role: UserRole = UserRole.ANONYMOUS):
        return await orch.articles_by_category(category, role)

    return app


app = create_app()
