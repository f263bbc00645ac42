"""
Message state machine
"""
from outreach.state_machine.states import (
    MessageStatus,
    MessagePriority,
    MESSAGE_TRANSITIONS,
    allowed_sources,
    can_transition,
    ensure_transition,
)

__all__ = [
    "MessageStatus",
    "MessagePriority",
    "MESSAGE_TRANSITIONS",
    "allowed_sources",
    "can_transition",
    "ensure_transition",
]
