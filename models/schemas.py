"""
Core data models for LMS Engage.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, time, timezone
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class ChannelType(str, Enum):
    EMAIL = "email"
    PUSH = "push"
    IN_APP = "in_app"
    SMS = "sms"

    @property
    def read_trackable(self) -> bool:
        return self in (ChannelType.IN_APP, ChannelType.PUSH)


class NotificationStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    READ = "read"


class OutcomeKind(str, Enum):
    DELIVERED = "delivered"
    TRANSIENT_FAILURE = "transient_failure"
    PERMANENT_FAILURE = "permanent_failure"
    SUPPRESSED = "suppressed"


class UserRole(str, Enum):
    ANONYMOUS = "anonymous"
    STUDENT = "student"
    INSTRUCTOR = "instructor"
    ADMIN = "admin"


class ConversationStatus(str, Enum):
    ACTIVE = "active"
    ESCALATED = "escalated"
    RESOLVED = "resolved"
    ABANDONED = "abandoned"


class MessageSender(str, Enum):
    USER = "user"
    BOT = "bot"
    SYSTEM = "system"
    AGENT = "agent"


class EscalationReason(str, Enum):
    LOW_CONFIDENCE = "low_confidence"
    USER_REQUESTED = "user_requested"
    REPEATED_FALLBACK = "repeated_fallback"
    NEGATIVE_SENTIMENT = "negative_sentiment"
    COMPLEX_ISSUE = "complex_issue"
    PAYMENT_ISSUE = "payment_issue"
    TECHNICAL_ISSUE = "technical_issue"


class ArticleStatus(str, Enum):
    DRAFT = "draft"
    PUBLISHED = "published"
    ARCHIVED = "archived"


PRIORITY_HIGHEST = 1
PRIORITY_LOWEST = 5


# ──────────────────────────────────────────────────────────────
#  Notifications
# ──────────────────────────────────────────────────────────────

class NotificationTemplate(BaseModel):
    """A named, per-channel message template with {{variable}} placeholders."""
    name: str
    channel: ChannelType
    subject_template: Optional[str] = None
    body_template: str
    variables: list[str] = []
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class NotificationItem(BaseModel):
    """
    One unit of delivery work. Subject/content are rendered once at enqueue
    time and never re-rendered on retry.
    """
    id: str = Field(default_factory=_new_id)
    user_id: str
    template_name: str
    channel: ChannelType
    subject: Optional[str] = None
    content: Optional[str] = None
    variables: dict[str, Any] = {}
    status: NotificationStatus = NotificationStatus.PENDING
    priority: int = 3
    scheduled_for: datetime = Field(default_factory=utcnow)
    sent_at: Optional[datetime] = None
    read_at: Optional[datetime] = None
    last_error: Optional[str] = None
    retry_count: int = 0
    max_retries: int = 3
    suppressed: bool = False
    # Claim lease - set while a worker owns the item
    claim_token: Optional[str] = None
    claimed_by: Optional[str] = None
    claimed_until: Optional[datetime] = None
    metadata: dict[str, Any] = {}
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in (NotificationStatus.FAILED, NotificationStatus.READ) or (
            self.status == NotificationStatus.SENT and
            (self.suppressed or not self.channel.read_trackable)
        )

    @property
    def is_unread(self) -> bool:
        return (
            self.status == NotificationStatus.SENT
            and not self.suppressed
            and self.channel.read_trackable
        )

    def lease_active(self, now: datetime) -> bool:
        return self.claimed_until is not None and self.claimed_until > now

    def clear_lease(self):
        self.claim_token = None
        self.claimed_by = None
        self.claimed_until = None


class DeliveryOutcome(BaseModel):
    kind: OutcomeKind
    reason: str = ""

    @classmethod
    def delivered(cls) -> DeliveryOutcome:
        return cls(kind=OutcomeKind.DELIVERED)

    @classmethod
    def transient(cls, reason: str) -> DeliveryOutcome:
        return cls(kind=OutcomeKind.TRANSIENT_FAILURE, reason=reason)

    @classmethod
    def permanent(cls, reason: str) -> DeliveryOutcome:
        return cls(kind=OutcomeKind.PERMANENT_FAILURE, reason=reason)

    @classmethod
    def suppressed(cls, reason: str) -> DeliveryOutcome:
        return cls(kind=OutcomeKind.SUPPRESSED, reason=reason)


class UserNotificationPreference(BaseModel):
    """Per-user channel opt-in flags and an optional local quiet-hours window."""
    user_id: str
    email_enabled: bool = True
    push_enabled: bool = True
    in_app_enabled: bool = True
    sms_enabled: bool = True
    quiet_hours_start: Optional[time] = None
    quiet_hours_end: Optional[time] = None
    timezone: str = "UTC"
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def is_channel_enabled(self, channel: ChannelType) -> bool:
        return {
            ChannelType.EMAIL: self.email_enabled,
            ChannelType.PUSH: self.push_enabled,
            ChannelType.IN_APP: self.in_app_enabled,
            ChannelType.SMS: self.sms_enabled,
        }[channel]

    @property
    def has_quiet_hours(self) -> bool:
        return (
            self.quiet_hours_start is not None
            and self.quiet_hours_end is not None
            and self.quiet_hours_start != self.quiet_hours_end
        )

    def is_quiet_time(self, local: time) -> bool:
        """Start inclusive, end exclusive; windows may cross midnight."""
        if not self.has_quiet_hours:
            return False
        start, end = self.quiet_hours_start, self.quiet_hours_end
        if start < end:
            return start <= local < end
        return local >= start or local < end


# ──────────────────────────────────────────────────────────────
#  Conversations
# ──────────────────────────────────────────────────────────────

class EscalationRecord(BaseModel):
    reason: EscalationReason
    notes: Optional[str] = None
    assigned_agent_id: Optional[str] = None
    escalated_at: datetime = Field(default_factory=utcnow)


class Conversation(BaseModel):
    id: str = Field(default_factory=_new_id)
    tenant_id: Optional[str] = None
    user_id: Optional[str] = None
    role: UserRole = UserRole.ANONYMOUS
    status: ConversationStatus = ConversationStatus.ACTIVE
    started_at: datetime = Field(default_factory=utcnow)
    last_activity_at: datetime = Field(default_factory=utcnow)
    ended_at: Optional[datetime] = None
    message_count: int = 0
    consecutive_fallbacks: int = 0
    context: dict[str, Any] = {}              # current page, course_id, language
    escalation: Optional[EscalationRecord] = None
    metadata: dict[str, Any] = {}

    @property
    def language(self) -> Optional[str]:
        return self.context.get("language")


class QuickReply(BaseModel):
    label: str
    payload: str


class MessageContent(BaseModel):
    text: str
    quick_replies: list[QuickReply] = []
    article_id: Optional[str] = None
    article_slug: Optional[str] = None


class MessageFeedback(BaseModel):
    helpful: bool
    comment: Optional[str] = None
    submitted_at: datetime = Field(default_factory=utcnow)


class Message(BaseModel):
    id: str = Field(default_factory=_new_id)
    conversation_id: str
    sender: MessageSender
    content: MessageContent
    timestamp: datetime = Field(default_factory=utcnow)
    intent: Optional[str] = None
    confidence: Optional[float] = None
    feedback: Optional[MessageFeedback] = None
    metadata: dict[str, Any] = {}


# ──────────────────────────────────────────────────────────────
#  Knowledge base
# ──────────────────────────────────────────────────────────────

class KnowledgeArticle(BaseModel):
    id: str = Field(default_factory=_new_id)
    slug: str
    title: str
    content: str
    summary: Optional[str] = None
    category: str
    subcategory: Optional[str] = None
    tags: list[str] = []
    keywords: list[str] = []
    intent_triggers: list[str] = []
    target_roles: list[UserRole] = [UserRole.ANONYMOUS]
    language: str = "es"
    status: ArticleStatus = ArticleStatus.DRAFT
    view_count: int = 0
    helpful_count: int = 0
    not_helpful_count: int = 0
    author_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def helpful_ratio(self) -> float:
        votes = self.helpful_count + self.not_helpful_count
        return self.helpful_count / votes if votes else 0.0

    @property
    def snippet(self) -> str:
        if self.summary:
            return self.summary
        return self.content if len(self.content) <= 200 else self.content[:200] + "..."

    def permits_role(self, role: UserRole) -> bool:
        return role in self.target_roles or UserRole.ANONYMOUS in self.target_roles


class SearchResult(BaseModel):
    article: KnowledgeArticle
    score: float
    matched_keywords: list[str] = []


class Suggestion(BaseModel):
    """
    A contextual prompt shown to users. context_conditions may carry a
    "pages" list and/or a "conditions" list of field conditions.
    """
    id: str = Field(default_factory=_new_id)
    text: str
    intent: str
    target_roles: list[UserRole] = [UserRole.ANONYMOUS]
    context_conditions: dict[str, Any] = {}
    priority: int = 0
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)


# ──────────────────────────────────────────────────────────────
#  Field conditions - shared by suggestions and any rule-like config
# ──────────────────────────────────────────────────────────────

class RuleCondition(BaseModel):
    field: str
    operator: str           # eq | neq | gt | gte | lt | lte | in | contains | regex | exists
    value: Any = None


# ──────────────────────────────────────────────────────────────
#  Classification & reply decisions
# ──────────────────────────────────────────────────────────────

REQUEST_HUMAN_INTENT = "request_human"


class Classification(BaseModel):
    """Classifier output. intent=None means the classifier had no opinion."""
    intent: Optional[str] = None
    confidence: float = 0.0


class Answered(BaseModel):
    kind: str = "answered"
    article: KnowledgeArticle
    score: float = 0.0


class Fallback(BaseModel):
    kind: str = "fallback"
    reason: str = "no_match"


class Escalate(BaseModel):
    kind: str = "escalate"
    reason: EscalationReason


ReplyDecision = Union[Answered, Fallback, Escalate]


class BotReply(BaseModel):
    """What post_message hands back to the caller."""
    conversation_id: str
    kind: str                                   # answered | fallback | escalated
    message: Message
    status: ConversationStatus
    escalation: Optional[EscalationRecord] = None

    @property
    def escalated(self) -> bool:
        return self.kind == "escalated"
