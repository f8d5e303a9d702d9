"""Tests for the notification template registry, renderer and template management."""
import pytest

from models.errors import InvalidVariables, NotFound, UnknownTemplate, ValidationFailed
from models.schemas import ChannelType, NotificationTemplate
from templates.registry import placeholders, render_template, required_variables


class TestPlaceholders:
    def test_order_of_first_use(self):
        assert placeholders("{{b}} and {{a}} then {{b}}") == ["b", "a"]

    def test_whitespace_inside_braces(self):
        assert placeholders("Hi {{ firstName }}") == ["firstName"]

    def test_none_text(self):
        assert placeholders(None) == []

    def test_required_is_declared_plus_referenced(self):
        template = NotificationTemplate(
            name="t", channel=ChannelType.PUSH,
            subject_template="{{courseTitle}}",
            body_template="New lesson: {{lessonTitle}}",
            variables=["lessonTitle", "instructorName"],
        )
        assert required_variables(template) == ["lessonTitle", "instructorName", "courseTitle"]


class TestRender:
    def test_renders_subject_and_body(self, email_template):
        subject, body = render_template(email_template, {"userName": "Ana", "courseTitle": "Python 101"})
        assert subject == "Congratulations Ana!"
        assert body == "You have completed Python 101. Download your certificate!"

    def test_no_subject_for_in_app(self, in_app_template):
        subject, body = render_template(in_app_template, {"score": 92})
        assert subject is None
        assert body == "Quiz completed with score: 92%"

    def test_missing_variable(self, email_template):
        with pytest.raises(InvalidVariables) as exc:
            render_template(email_template, {"userName": "Ana"})
        assert exc.value.missing == ["courseTitle"]

    def test_none_counts_as_missing(self, email_template):
        with pytest.raises(InvalidVariables):
            render_template(email_template, {"userName": "Ana", "courseTitle": None})

    def test_referenced_but_undeclared_is_required(self):
        template = NotificationTemplate(
            name="t", channel=ChannelType.IN_APP, body_template="{{a}} {{b}}", variables=["a"],
        )
        with pytest.raises(InvalidVariables) as exc:
            render_template(template, {"a": 1})
        assert exc.value.missing == ["b"]

    def test_dotted_lookup(self):
        template = NotificationTemplate(
            name="t", channel=ChannelType.IN_APP, body_template="Hola {{user.firstName}}",
        )
        _, body = render_template(template, {"user": {"firstName": "Luis"}})
        assert body == "Hola Luis"

    def test_extra_variables_ignored(self, in_app_template):
        _, body = render_template(in_app_template, {"score": 50, "unused": "x"})
        assert body == "Quiz completed with score: 50%"


class TestTemplateRegistry:
    @pytest.mark.asyncio
    async def test_register_and_get_active(self, registry, email_template):
        await registry.register(email_template)
        template = await registry.get_active("course_completed")
        assert template.channel == ChannelType.EMAIL

    @pytest.mark.asyncio
    async def test_unknown_template(self, registry):
        with pytest.raises(UnknownTemplate):
            await registry.get_active("nope")

    @pytest.mark.asyncio
    async def test_deactivated_template_is_not_active(self, registry, email_template):
        await registry.register(email_template)
        await registry.deactivate("course_completed")
        with pytest.raises(UnknownTemplate):
            await registry.get_active("course_completed")
        # still resolvable for items enqueued before deactivation
        assert await registry.get("course_completed") is not None

    @pytest.mark.asyncio
    async def test_email_requires_subject(self, registry):
        bad = NotificationTemplate(name="x", channel=ChannelType.EMAIL, body_template="hi")
        with pytest.raises(ValidationFailed):
            await registry.register(bad)

    @pytest.mark.asyncio
    async def test_unbalanced_braces_rejected(self, registry):
        bad = NotificationTemplate(name="x", channel=ChannelType.IN_APP, body_template="Hi {{name}")
        with pytest.raises(ValidationFailed):
            await registry.register(bad)

    @pytest.mark.asyncio
    async def test_register_from_config(self, registry):
        count = await registry.register_from_config([
            {"name": "welcome_email", "channel": "email", "subject": "Welcome!",
             "body": "Hi {{firstName}}", "variables": ["firstName"]},
            {"name": "quiz_completed", "channel": "in_app", "body": "Score {{score}}"},
        ])
        assert count == 2
        names = [t.name for t in await registry.list_templates()]
        assert names == ["quiz_completed", "welcome_email"]

    @pytest.mark.asyncio
    async def test_list_excludes_inactive(self, registry, email_template, in_app_template):
        await registry.register(email_template)
        await registry.register(in_app_template)
        await registry.deactivate("quiz_completed")
        assert [t.name for t in await registry.list_templates()] == ["course_completed"]
        assert len(await registry.list_templates(include_inactive=True)) == 2


class TestTemplateManagement:
    @pytest.mark.asyncio
    async def test_create_rejects_existing_name(self, registry, email_template):
        await registry.create(email_template)
        with pytest.raises(ValidationFailed):
            await registry.create(email_template)

    @pytest.mark.asyncio
    async def test_update_merges_changes(self, registry, email_template):
        await registry.register(email_template)
        updated = await registry.update("course_completed", {"subject_template": "Well done {{userName}}"})
        assert updated.subject_template == "Well done {{userName}}"
        assert updated.body_template == email_template.body_template
        assert (await registry.get("course_completed")).subject_template == "Well done {{userName}}"

    @pytest.mark.asyncio
    async def test_update_validates(self, registry, email_template):
        await registry.register(email_template)
        with pytest.raises(ValidationFailed):
            await registry.update("course_completed", {"channel": "carrier_pigeon"})
        with pytest.raises(ValidationFailed):
            await registry.update("course_completed", {"subject_template": None})
        with pytest.raises(ValidationFailed):
            await registry.update("course_completed", {"name": "renamed"})
        assert (await registry.get("course_completed")).subject_template == email_template.subject_template

    @pytest.mark.asyncio
    async def test_update_unknown(self, registry):
        with pytest.raises(NotFound):
            await registry.update("nope", {"is_active": False})

    @pytest.mark.asyncio
    async def test_delete_unused(self, registry, in_app_template):
        await registry.register(in_app_template)
        await registry.delete("quiz_completed")
        assert await registry.get("quiz_completed") is None
        with pytest.raises(NotFound):
            await registry.delete("quiz_completed")

    @pytest.mark.asyncio
    async def test_delete_refused_while_referenced(self, queue, registry):
        await queue.enqueue("u1", "quiz_completed", {"score": 80})
        with pytest.raises(ValidationFailed):
            await registry.delete("quiz_completed")
        # enqueued items keep resolving their template
        assert await registry.get("quiz_completed") is not None
