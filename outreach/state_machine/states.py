"""
Queued message lifecycle: statuses, priorities and the transition table.
"""
from enum import Enum, IntEnum

from outreach.core.exceptions import InvalidStateTransitionError


class MessageStatus(str, Enum):
    """Lifecycle of a queued outbound message"""

    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"
    CANCELLED = "cancelled"


class MessagePriority(IntEnum):
    """Stored as the integer rank so ORDER BY priority DESC works directly"""

    LOW = 0
    NORMAL = 1
    HIGH = 2
    URGENT = 3

    @classmethod
    def from_name(cls, name: "str | MessagePriority") -> "MessagePriority":
        if isinstance(name, MessagePriority):
            return name
        try:
            return cls[str(name).strip().upper()]
        except KeyError:
            raise ValueError(f"unknown priority: {name}") from None


# Every status has an entry; terminal statuses map to an empty list.
# SENT -> FAILED only covers a gateway-reported delivery failure of a sent message.
MESSAGE_TRANSITIONS: dict[MessageStatus, list[MessageStatus]] = {
    MessageStatus.PENDING: [MessageStatus.PROCESSING, MessageStatus.CANCELLED],
    MessageStatus.PROCESSING: [
        MessageStatus.PENDING,
        MessageStatus.SENT,
        MessageStatus.FAILED,
        MessageStatus.CANCELLED,
    ],
    MessageStatus.SENT: [MessageStatus.DELIVERED, MessageStatus.READ, MessageStatus.FAILED],
    MessageStatus.DELIVERED: [MessageStatus.READ],
    MessageStatus.READ: [],
    MessageStatus.FAILED: [],
    MessageStatus.CANCELLED: [],
}

# Refinements of a successful send, in forward order
SENT_FAMILY = (MessageStatus.SENT, MessageStatus.DELIVERED, MessageStatus.READ)

NON_TERMINAL_STATUSES = (MessageStatus.PENDING, MessageStatus.PROCESSING)

TERMINAL_STATUSES = (
    MessageStatus.SENT,
    MessageStatus.DELIVERED,
    MessageStatus.READ,
    MessageStatus.FAILED,
    MessageStatus.CANCELLED,
)


def can_transition(current: MessageStatus, target: MessageStatus) -> bool:
    return target in MESSAGE_TRANSITIONS.get(current, [])


def allowed_sources(target: MessageStatus) -> list[MessageStatus]:
    """Statuses from which ``target`` is reachable; used in guarded UPDATEs"""
    return [source for source, targets in MESSAGE_TRANSITIONS.items() if target in targets]


def ensure_transition(current: MessageStatus, target: MessageStatus, job_id: int | None = None) -> None:
    """Raise InvalidStateTransitionError when the move is not in the table"""
    if not can_transition(current, target):
        raise InvalidStateTransitionError(current.value, target.value, job_id=job_id)
