"""
Conversation State Machine: lifecycle of an assistant conversation.

    active ──▶ escalated ──▶ resolved
       │           │
       │           └──────▶ abandoned
       ├──────────────────▶ resolved
       └──────────────────▶ abandoned

resolved and abandoned are terminal. Repeating the transition that put a
conversation where it is (escalate twice, resolve twice) is a no-op;
anything else not in the table raises InvalidTransition.

Usage:
    sm = ConversationStateMachine()
    result = sm.apply(conversation, ConversationStatus.RESOLVED)
    if result: await tracker.save(conversation)
"""
from __future__ import annotations

import structlog
from datetime import datetime
from typing import Optional

from models.errors import InvalidTransition
from models.schemas import Conversation, ConversationStatus, utcnow

logger = structlog.get_logger()

TRANSITIONS: dict[ConversationStatus, frozenset[ConversationStatus]] = {
    ConversationStatus.ACTIVE: frozenset({
        ConversationStatus.ESCALATED, ConversationStatus.RESOLVED, ConversationStatus.ABANDONED,
    }),
    ConversationStatus.ESCALATED: frozenset({
        ConversationStatus.RESOLVED, ConversationStatus.ABANDONED,
    }),
    ConversationStatus.RESOLVED: frozenset(),
    ConversationStatus.ABANDONED: frozenset(),
}

TERMINAL_STATES = frozenset({ConversationStatus.RESOLVED, ConversationStatus.ABANDONED})


# ──────────────────────────────────────────────────────────────
#  Transition Result
# ──────────────────────────────────────────────────────────────

class TransitionResult:
    """Outcome of applying a target status to a conversation."""

    def __init__(
        self,
        transitioned: bool,
        conversation: Conversation,
        from_state: Optional[ConversationStatus] = None,
        to_state: Optional[ConversationStatus] = None,
    ):
        self.transitioned = transitioned
        self.conversation = conversation
        self.from_state = from_state
        self.to_state = to_state

    def __bool__(self):
        return self.transitioned

    def __repr__(self):
        if self.transitioned:
            return f"<Transition {self.from_state.value} → {self.to_state.value}>"
        return "<NoTransition>"


# ──────────────────────────────────────────────────────────────
#  Conversation State Machine
# ──────────────────────────────────────────────────────────────

class ConversationStateMachine:

    def __init__(self, transitions: Optional[dict[ConversationStatus, frozenset[ConversationStatus]]] = None):
        self._transitions = transitions or TRANSITIONS

    def can_transition(self, current: ConversationStatus, target: ConversationStatus) -> bool:
        return target in self._transitions.get(current, frozenset())

    @staticmethod
    def is_terminal(status: ConversationStatus) -> bool:
        return status in TERMINAL_STATES

    @staticmethod
    def accepts_messages(status: ConversationStatus) -> bool:
        return status not in TERMINAL_STATES

    def apply(
        self,
        conversation: Conversation,
        target: ConversationStatus,
        now: Optional[datetime] = None,
    ) -> TransitionResult:
        """Mutates the conversation in place. Caller persists it when the result is truthy."""
        current = conversation.status
        if current == target:
            return TransitionResult(False, conversation, current, target)
        if not self.can_transition(current, target):
            raise InvalidTransition("conversation", current.value, target.value)

        now = now or utcnow()
        conversation.status = target
        if target in TERMINAL_STATES:
            conversation.ended_at = now
        logger.info("conversation_transition",
                    conversation_id=conversation.id,
                    from_state=current.value,
                    to_state=target.value)
        return TransitionResult(True, conversation, current, target)
