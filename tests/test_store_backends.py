"""
Tests for all store backends.

Every contract test runs against:
  - InMemoryStore
  - SqlStore (via in-memory SQLite for test portability)

Also covers:
  - Store factory
  - Async driver URL mapping
"""
import pytest
import pytest_asyncio
from datetime import time, timedelta

from config.settings import DatabaseConfig
from database.session import _to_async_url, build_engine, build_session_factory, create_tables
from database.store import SqlStore
from database.store_memory import InMemoryStore
from models.schemas import (
    ArticleStatus, ChannelType, Conversation, ConversationStatus, EscalationReason,
    EscalationRecord, KnowledgeArticle, Message, MessageContent, MessageFeedback,
    MessageSender, NotificationItem, NotificationStatus, NotificationTemplate,
    QuickReply, Suggestion, UserNotificationPreference, UserRole,
)


# ──────────────────────────────────────────────────────────────
#  Fixtures
# ──────────────────────────────────────────────────────────────

@pytest_asyncio.fixture(params=["memory", "sql"])
async def backend(request):
    if request.param == "memory":
        yield InMemoryStore()
        return
    engine = build_engine("sqlite:///:memory:")
    await create_tables(engine)
    yield SqlStore(session_factory=build_session_factory(engine))
    await engine.dispose()


def _item(now, **kw):
    defaults = dict(user_id="u-ana", template_name="quiz_completed", channel=ChannelType.IN_APP,
                    content="Quiz completed with score: 90%", scheduled_for=now, created_at=now)
    defaults.update(kw)
    return NotificationItem(**defaults)


# ──────────────────────────────────────────────────────────────
#  Templates
# ──────────────────────────────────────────────────────────────

class TestTemplates:
    @pytest.mark.asyncio
    async def test_upsert_and_get(self, backend):
        await backend.upsert_template(NotificationTemplate(
            name="welcome_email", channel=ChannelType.EMAIL,
            subject_template="Welcome!", body_template="Hi {{firstName}}", variables=["firstName"],
        ))
        tpl = await backend.get_template("welcome_email")
        assert tpl.channel == ChannelType.EMAIL
        assert tpl.variables == ["firstName"]
        assert await backend.get_template("missing") is None

    @pytest.mark.asyncio
    async def test_upsert_replaces(self, backend):
        await backend.upsert_template(NotificationTemplate(name="t", channel=ChannelType.PUSH, body_template="v1"))
        await backend.upsert_template(NotificationTemplate(name="t", channel=ChannelType.PUSH, body_template="v2"))
        assert (await backend.get_template("t")).body_template == "v2"
        assert len(await backend.list_templates()) == 1

    @pytest.mark.asyncio
    async def test_inactive_hidden_from_list(self, backend):
        await backend.upsert_template(NotificationTemplate(name="a", channel=ChannelType.PUSH, body_template="x"))
        await backend.upsert_template(NotificationTemplate(
            name="b", channel=ChannelType.PUSH, body_template="x", is_active=False,
        ))
        assert [t.name for t in await backend.list_templates()] == ["a"]
        assert len(await backend.list_templates(include_inactive=True)) == 2

    @pytest.mark.asyncio
    async def test_delete(self, backend):
        await backend.upsert_template(NotificationTemplate(name="t", channel=ChannelType.PUSH, body_template="x"))
        assert await backend.delete_template("t") is True
        assert await backend.get_template("t") is None
        assert await backend.delete_template("t") is False


# ──────────────────────────────────────────────────────────────
#  Notification items
# ──────────────────────────────────────────────────────────────

class TestItems:
    @pytest.mark.asyncio
    async def test_insert_and_get(self, backend, now):
        item = await backend.insert_item(_item(now, variables={"score": 90}, metadata={"course_id": "c-101"}))
        stored = await backend.get_item(item.id)
        assert stored.status == NotificationStatus.PENDING
        assert stored.variables == {"score": 90}
        assert stored.metadata == {"course_id": "c-101"}
        assert stored.scheduled_for == now
        assert await backend.get_item("missing") is None

    @pytest.mark.asyncio
    async def test_claim_order(self, backend, now):
        late = await backend.insert_item(_item(now, priority=3, scheduled_for=now - timedelta(minutes=1)))
        early = await backend.insert_item(_item(now, priority=3, scheduled_for=now - timedelta(minutes=5)))
        urgent = await backend.insert_item(_item(now, priority=1))
        claimed = await backend.claim_items(ChannelType.IN_APP, 10, now, now + timedelta(minutes=5), "w1")
        assert [i.id for i in claimed] == [urgent.id, early.id, late.id]
        assert all(i.claimed_by == "w1" and i.claim_token for i in claimed)
        assert len({i.claim_token for i in claimed}) == 3

    @pytest.mark.asyncio
    async def test_claim_skips_future_other_channel_and_leased(self, backend, now):
        await backend.insert_item(_item(now, scheduled_for=now + timedelta(hours=1)))
        await backend.insert_item(_item(now, channel=ChannelType.EMAIL, template_name="course_completed"))
        due = await backend.insert_item(_item(now))
        lease = now + timedelta(minutes=5)
        assert [i.id for i in await backend.claim_items(ChannelType.IN_APP, 10, now, lease, "w1")] == [due.id]
        assert await backend.claim_items(ChannelType.IN_APP, 10, now, lease, "w2") == []
        # lease expired
        reclaimed = await backend.claim_items(ChannelType.IN_APP, 10, lease, lease + timedelta(minutes=5), "w2")
        assert [i.claimed_by for i in reclaimed] == ["w2"]

    @pytest.mark.asyncio
    async def test_claim_limit(self, backend, now):
        for _ in range(5):
            await backend.insert_item(_item(now))
        claimed = await backend.claim_items(ChannelType.IN_APP, 2, now, now + timedelta(minutes=5), "w1")
        assert len(claimed) == 2

    @pytest.mark.asyncio
    async def test_save_item_if(self, backend, now):
        await backend.insert_item(_item(now))
        [item] = await backend.claim_items(ChannelType.IN_APP, 1, now, now + timedelta(minutes=5), "w1")
        token = item.claim_token

        item.status = NotificationStatus.SENT
        item.sent_at = now
        item.clear_lease()
        assert not await backend.save_item_if(item, NotificationStatus.PENDING, "wrong-token")
        assert await backend.save_item_if(item, NotificationStatus.PENDING, token)
        # the row moved on; the same report can't land twice
        assert not await backend.save_item_if(item, NotificationStatus.PENDING, token)

        stored = await backend.get_item(item.id)
        assert stored.status == NotificationStatus.SENT
        assert stored.claim_token is None
        assert stored.sent_at == now

    @pytest.mark.asyncio
    async def test_save_item_if_without_lease(self, backend, now):
        item = await backend.insert_item(_item(now, status=NotificationStatus.SENT))
        item.status = NotificationStatus.READ
        item.read_at = now
        assert await backend.save_item_if(item, NotificationStatus.SENT, None)
        assert (await backend.get_item(item.id)).status == NotificationStatus.READ

    @pytest.mark.asyncio
    async def test_list_items(self, backend, now):
        first = await backend.insert_item(_item(now - timedelta(minutes=2), created_at=now - timedelta(minutes=2)))
        second = await backend.insert_item(_item(now, status=NotificationStatus.SENT))
        await backend.insert_item(_item(now, user_id="u-luis"))
        assert [i.id for i in await backend.list_items("u-ana")] == [second.id, first.id]
        assert [i.id for i in await backend.list_items("u-ana", status=NotificationStatus.SENT)] == [second.id]
        assert len(await backend.list_items("u-ana", limit=1)) == 1

    @pytest.mark.asyncio
    async def test_count_items(self, backend, now):
        await backend.insert_item(_item(now))
        await backend.insert_item(_item(now, status=NotificationStatus.SENT))
        await backend.insert_item(_item(now, status=NotificationStatus.SENT, suppressed=True))
        await backend.insert_item(_item(now, status=NotificationStatus.READ))
        await backend.insert_item(_item(now, status=NotificationStatus.SENT, channel=ChannelType.EMAIL,
                                        template_name="course_completed"))
        await backend.insert_item(_item(now, user_id="u-luis", status=NotificationStatus.SENT))

        assert await backend.count_items() == 6
        assert await backend.count_items("u-ana") == 5
        assert await backend.count_items("u-ana", status=NotificationStatus.SENT) == 3
        assert await backend.count_items(template_name="course_completed") == 1
        assert await backend.count_items(template_name="missing") == 0
        # sent, unsuppressed and read-trackable
        assert await backend.count_items("u-ana", unread_only=True) == 1
        assert await backend.count_items(unread_only=True) == 2


# ──────────────────────────────────────────────────────────────
#  Preferences
# ──────────────────────────────────────────────────────────────

class TestPreferences:
    @pytest.mark.asyncio
    async def test_roundtrip(self, backend):
        assert await backend.get_preference("u-ana") is None
        await backend.save_preference(UserNotificationPreference(
            user_id="u-ana", sms_enabled=False,
            quiet_hours_start=time(22, 0), quiet_hours_end=time(7, 30), timezone="America/Bogota",
        ))
        pref = await backend.get_preference("u-ana")
        assert not pref.sms_enabled
        assert pref.email_enabled
        assert pref.quiet_hours_start == time(22, 0)
        assert pref.quiet_hours_end == time(7, 30)
        assert pref.timezone == "America/Bogota"

    @pytest.mark.asyncio
    async def test_update(self, backend):
        await backend.save_preference(UserNotificationPreference(user_id="u-ana"))
        pref = await backend.get_preference("u-ana")
        pref.push_enabled = False
        saved = await backend.save_preference(pref)
        assert saved.updated_at >= pref.updated_at
        assert not (await backend.get_preference("u-ana")).push_enabled


# ──────────────────────────────────────────────────────────────
#  Conversations & messages
# ──────────────────────────────────────────────────────────────

class TestConversations:
    @pytest.mark.asyncio
    async def test_create_and_save(self, backend, now):
        conv = await backend.create_conversation(Conversation(
            user_id="u-ana", role=UserRole.STUDENT, context={"page": "/dashboard", "language": "es"},
            started_at=now, last_activity_at=now,
        ))
        conv.status = ConversationStatus.ESCALATED
        conv.consecutive_fallbacks = 2
        conv.escalation = EscalationRecord(reason=EscalationReason.REPEATED_FALLBACK, escalated_at=now)
        await backend.save_conversation(conv)

        stored = await backend.get_conversation(conv.id)
        assert stored.role == UserRole.STUDENT
        assert stored.context["page"] == "/dashboard"
        assert stored.status == ConversationStatus.ESCALATED
        assert stored.consecutive_fallbacks == 2
        assert stored.escalation.reason == EscalationReason.REPEATED_FALLBACK
        assert stored.started_at == now

    @pytest.mark.asyncio
    async def test_list_filters(self, backend, now):
        old = await backend.create_conversation(Conversation(
            started_at=now - timedelta(hours=2), last_activity_at=now - timedelta(hours=2),
        ))
        recent = await backend.create_conversation(Conversation(started_at=now, last_activity_at=now))
        await backend.create_conversation(Conversation(
            status=ConversationStatus.RESOLVED, started_at=now, last_activity_at=now,
        ))

        active = await backend.list_conversations(status=ConversationStatus.ACTIVE)
        assert [c.id for c in active] == [old.id, recent.id]
        idle = await backend.list_conversations(inactive_before=now - timedelta(minutes=30))
        assert [c.id for c in idle] == [old.id]
        window = await backend.list_conversations(started_after=now - timedelta(minutes=1))
        assert len(window) == 2
        assert [c.id for c in await backend.list_conversations(started_before=now)] == [old.id]

    @pytest.mark.asyncio
    async def test_messages(self, backend, now):
        conv = await backend.create_conversation(Conversation())
        for n in range(3):
            await backend.add_message(Message(
                conversation_id=conv.id, sender=MessageSender.USER,
                content=MessageContent(text=f"m{n}"), timestamp=now + timedelta(seconds=n),
            ))
        bot = await backend.add_message(Message(
            conversation_id=conv.id, sender=MessageSender.BOT, timestamp=now + timedelta(seconds=10),
            content=MessageContent(
                text="¿Cómo obtengo mi certificado?", article_id="a1", article_slug="obtener-certificado",
                quick_replies=[QuickReply(label="Ver artículo", payload="/ayuda/obtener-certificado")],
            ),
            intent="get_certificate", confidence=0.75,
        ))

        history = await backend.get_messages(conv.id)
        assert [m.content.text for m in history[:3]] == ["m0", "m1", "m2"]
        assert [m.content.text for m in await backend.get_messages(conv.id, limit=2)] == ["m2", bot.content.text]

        stored = await backend.get_message(bot.id)
        assert stored.content.article_slug == "obtener-certificado"
        assert stored.content.quick_replies[0].label == "Ver artículo"
        assert stored.confidence == 0.75

    @pytest.mark.asyncio
    async def test_feedback_set_once(self, backend):
        conv = await backend.create_conversation(Conversation())
        msg = await backend.add_message(Message(
            conversation_id=conv.id, sender=MessageSender.BOT, content=MessageContent(text="x"),
        ))
        assert await backend.set_message_feedback(msg.id, MessageFeedback(helpful=True, comment="bien"))
        assert not await backend.set_message_feedback(msg.id, MessageFeedback(helpful=False))
        stored = await backend.get_message(msg.id)
        assert stored.feedback.helpful
        assert stored.feedback.comment == "bien"
        assert not await backend.set_message_feedback("missing", MessageFeedback(helpful=True))

    @pytest.mark.asyncio
    async def test_delete_removes_messages(self, backend):
        conv = await backend.create_conversation(Conversation())
        msg = await backend.add_message(Message(
            conversation_id=conv.id, sender=MessageSender.USER, content=MessageContent(text="x"),
        ))
        await backend.delete_conversation(conv.id)
        assert await backend.get_conversation(conv.id) is None
        assert await backend.get_message(msg.id) is None


# ──────────────────────────────────────────────────────────────
#  Articles & suggestions
# ──────────────────────────────────────────────────────────────

class TestArticles:
    @pytest.mark.asyncio
    async def test_upsert_get_and_list(self, backend):
        article = await backend.upsert_article(KnowledgeArticle(
            slug="obtener-certificado", title="¿Cómo obtengo mi certificado?", content="...",
            category="estudiante", keywords=["certificado"], target_roles=[UserRole.STUDENT],
            status=ArticleStatus.PUBLISHED,
        ))
        await backend.upsert_article(KnowledgeArticle(slug="borrador", title="b", content="...", category="x"))

        assert (await backend.get_article(article.id)).target_roles == [UserRole.STUDENT]
        assert (await backend.get_article_by_slug("obtener-certificado")).id == article.id
        assert [a.slug for a in await backend.list_articles()] == ["obtener-certificado"]
        assert len(await backend.list_articles(published_only=False)) == 2

    @pytest.mark.asyncio
    async def test_counters(self, backend):
        article = await backend.upsert_article(KnowledgeArticle(slug="s", title="t", content="c", category="x"))
        await backend.increment_article_counters(article.id, views=2)
        await backend.increment_article_counters(article.id, helpful=1)
        await backend.increment_article_counters(article.id, not_helpful=1)
        stored = await backend.get_article(article.id)
        assert (stored.view_count, stored.helpful_count, stored.not_helpful_count) == (2, 1, 1)


class TestSuggestions:
    @pytest.mark.asyncio
    async def test_add_and_list(self, backend):
        await backend.add_suggestion(Suggestion(
            text="¿Cómo veo mi progreso?", intent="check_progress", target_roles=[UserRole.STUDENT],
            context_conditions={"pages": ["/dashboard"]}, priority=10,
        ))
        await backend.add_suggestion(Suggestion(text="old", intent="x", is_active=False))
        active = await backend.list_suggestions()
        assert [s.intent for s in active] == ["check_progress"]
        assert active[0].context_conditions == {"pages": ["/dashboard"]}
        assert active[0].target_roles == [UserRole.STUDENT]
        assert len(await backend.list_suggestions(active_only=False)) == 2


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

class TestStoreFactory:
    @pytest.fixture(autouse=True)
    def reset(self):
        from database.store_factory import reset_store
        reset_store()
        yield
        reset_store()

    def test_default_memory(self):
        from database.store_factory import create_store
        assert isinstance(create_store(), InMemoryStore)

    def test_sql(self):
        from database.store_factory import create_store
        assert isinstance(create_store(DatabaseConfig(store_backend="sql")), SqlStore)

    def test_unknown_backend(self):
        from database.store_factory import create_store
        with pytest.raises(ValueError, match="file"):
            create_store(DatabaseConfig(store_backend="file"))

    def test_singleton(self):
        from database.store_factory import create_store, get_store
        store = create_store(DatabaseConfig(store_backend="memory"))
        assert get_store() is store
        assert create_store(DatabaseConfig(store_backend="sql")) is store


class TestAsyncUrl:
    @pytest.mark.parametrize("url,expected", [
        ("postgresql://u:p@db/lms", "postgresql+asyncpg://u:p@db/lms"),
        ("postgres://u:p@db/lms", "postgresql+asyncpg://u:p@db/lms"),
        ("mysql://u:p@db/lms", "mysql+aiomysql://u:p@db/lms"),
        ("sqlite:///./lms_engage.db", "sqlite+aiosqlite:///./lms_engage.db"),
        ("sqlite+aiosqlite:///x.db", "sqlite+aiosqlite:///x.db"),
    ])
    def test_mapping(self, url, expected):
        assert _to_async_url(url) == expected
