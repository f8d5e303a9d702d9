"""
Notification Template Registry: Loads, validates, and renders templates.

Templates are per-channel message definitions with {{variable}}
placeholders. The registry persists definitions through the store and
renders them for the notification queue.

Required variables for a render are the declared names plus every
placeholder referenced by the subject or body, so a template cannot
silently ship a literal "{{courseTitle}}" to a user.
"""
from __future__ import annotations

import re
import structlog
from typing import Any, Optional

from pydantic import ValidationError as PydanticValidationError

from database.store_base import BaseStore
from models.errors import InvalidVariables, NotFound, UnknownTemplate, ValidationFailed
from models.schemas import ChannelType, NotificationTemplate, utcnow
from utils.conditions import get_nested_value

logger = structlog.get_logger()

PLACEHOLDER = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")


def placeholders(text: Optional[str]) -> list[str]:
    """Variable names referenced by a template string, in order of first use."""
    seen: list[str] = []
    for name in PLACEHOLDER.findall(text or ""):
        if name not in seen:
            seen.append(name)
    return seen


def required_variables(template: NotificationTemplate) -> list[str]:
    names = list(template.variables)
    for name in placeholders(template.subject_template) + placeholders(template.body_template):
        if name not in names:
            names.append(name)
    return names


def _lookup(variables: dict[str, Any], name: str) -> Any:
    if name in variables:
        return variables[name]
    return get_nested_value(variables, name)


def _interpolate(text: str, variables: dict[str, Any]) -> str:
    def replacer(match):
        return str(_lookup(variables, match.group(1).strip()))

    return PLACEHOLDER.sub(replacer, text)


def render_template(
    template: NotificationTemplate, variables: dict[str, Any],
) -> tuple[Optional[str], str]:
    """
    Render (subject, body). Raises InvalidVariables when any declared or
    referenced variable is unbound (missing or None).
    """
    variables = variables or {}
    missing = [n for n in required_variables(template) if _lookup(variables, n) is None]
    if missing:
        raise InvalidVariables(template.name, missing)
    subject = _interpolate(template.subject_template, variables) if template.subject_template else None
    return subject, _interpolate(template.body_template, variables)


class TemplateRegistry:
    """
    Store-backed registry of notification templates.

    Usage:
        registry = TemplateRegistry(store)
        await registry.register(NotificationTemplate(name="welcome_email", ...))
        template = await registry.get_active("welcome_email")
        subject, body = registry.render(template, {"firstName": "Ana"})
    """

    def __init__(self, store: BaseStore):
        self._store = store

    # ── Registration ──────────────────────────────────

    async def register(self, template: NotificationTemplate) -> NotificationTemplate:
        """Create or replace a template definition."""
        errors = self._validate(template)
        if errors:
            logger.error("invalid_notification_template",
                         template=template.name, errors=errors)
            raise ValidationFailed(f"Invalid template '{template.name}': {'; '.join(errors)}")

        template = template.model_copy(update={"updated_at": utcnow()})
        await self._store.upsert_template(template)
        logger.info("notification_template_registered",
                    template=template.name,
                    channel=template.channel.value,
                    variables=required_variables(template))
        return template

    async def register_from_config(self, config: list[dict[str, Any]]) -> int:
        """Load templates from YAML/seed config."""
        for raw in config:
            await self.register(self._parse_template(raw))
        logger.info("notification_templates_loaded", count=len(config))
        return len(config)

    async def create(self, template: NotificationTemplate) -> NotificationTemplate:
        if await self._store.get_template(template.name) is not None:
            raise ValidationFailed(f"Template '{template.name}' already exists")
        return await self.register(template)

    async def update(self, name: str, changes: dict[str, Any]) -> NotificationTemplate:
        """Partial update. The name is the template's identity and cannot change."""
        current = await self._store.get_template(name)
        if current is None:
            raise NotFound("template", name)
        if "name" in changes and changes["name"] != name:
            raise ValidationFailed("template name cannot be changed")
        try:
            template = NotificationTemplate.model_validate({**current.model_dump(), **changes})
        except PydanticValidationError as e:
            raise ValidationFailed(f"Invalid template '{name}': {e}") from e
        return await self.register(template)

    async def delete(self, name: str) -> None:
        """Delete a template no queue item references; referenced ones can only be deactivated."""
        if await self._store.get_template(name) is None:
            raise NotFound("template", name)
        in_use = await self._store.count_items(template_name=name)
        if in_use:
            raise ValidationFailed(
                f"Template '{name}' is referenced by {in_use} notification(s); deactivate it instead"
            )
        await self._store.delete_template(name)
        logger.info("notification_template_deleted", template=name)

    async def deactivate(self, name: str) -> NotificationTemplate:
        template = await self._store.get_template(name)
        if template is None:
            raise UnknownTemplate(name)
        template = template.model_copy(update={"is_active": False, "updated_at": utcnow()})
        await self._store.upsert_template(template)
        logger.info("notification_template_deactivated", template=name)
        return template

    # ── Resolution ────────────────────────────────────

    async def get(self, name: str) -> Optional[NotificationTemplate]:
        """Get a template by name, active or not."""
        return await self._store.get_template(name)

    async def get_active(self, name: str) -> NotificationTemplate:
        """Get a template eligible for new enqueues."""
        template = await self._store.get_template(name)
        if template is None or not template.is_active:
            raise UnknownTemplate(name)
        return template

    async def list_templates(self, include_inactive: bool = False) -> list[NotificationTemplate]:
        return await self._store.list_templates(include_inactive=include_inactive)

    @staticmethod
    def render(
        template: NotificationTemplate, variables: dict[str, Any],
    ) -> tuple[Optional[str], str]:
        return render_template(template, variables)

    # ── Validation ────────────────────────────────────

    @staticmethod
    def _validate(template: NotificationTemplate) -> list[str]:
        errors = []
        if not template.name:
            errors.append("template name is required")
        if not template.body_template.strip():
            errors.append("body_template must not be empty")
        if template.channel == ChannelType.EMAIL and not template.subject_template:
            errors.append("email templates need a subject_template")
        for text in (template.subject_template or "", template.body_template):
            if text.count("{{") != text.count("}}"):
                errors.append("unbalanced placeholder braces")
                break
        return errors

    # ── Parsing ───────────────────────────────────────

    @staticmethod
    def _parse_template(raw: dict[str, Any]) -> NotificationTemplate:
        return NotificationTemplate(
            name=raw["name"],
            channel=ChannelType(raw["channel"]),
            subject_template=raw.get("subject") or raw.get("subject_template"),
            body_template=raw.get("body") or raw.get("body_template", ""),
            variables=raw.get("variables", []),
            is_active=raw.get("is_active", True),
        )
