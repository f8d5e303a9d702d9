"""
Notification templates.

Per-channel message definitions with {{variable}} placeholders, rendered
once at enqueue time by the notification queue.
"""
from templates.registry import (
    TemplateRegistry, render_template, required_variables, placeholders,
)
