"""
Suggestion Selector: contextual prompts shown next to the assistant.

Pure selection over a list of suggestions: active, targeted at the
caller's role (or at anonymous, which targets everyone), page and field
conditions satisfied by the caller context, highest priority first.
A suggestion without a pages list shows on every page.
"""
from __future__ import annotations

from typing import Any, Iterable, Optional

from models.schemas import Suggestion, UserRole
from utils.conditions import matches_context


def targets_role(suggestion: Suggestion, role: UserRole) -> bool:
    return role in suggestion.target_roles or UserRole.ANONYMOUS in suggestion.target_roles


class SuggestionSelector:

    def __init__(self, default_limit: int = 5):
        self.default_limit = default_limit

    def select(
        self,
        suggestions: Iterable[Suggestion],
        role: UserRole,
        context: Optional[dict[str, Any]] = None,
        limit: Optional[int] = None,
    ) -> list[Suggestion]:
        context = context or {}
        limit = self.default_limit if limit is None else limit
        eligible = [
            s for s in suggestions
            if s.is_active
            and targets_role(s, role)
            and matches_context(s.context_conditions, context)
        ]
        # stable sort keeps insertion order among equal priorities
        eligible.sort(key=lambda s: -s.priority)
        return eligible[:limit]
