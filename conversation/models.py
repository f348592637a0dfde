"""
Core records for the conversation bot.

Events come in from a transport, ConversationState is the single
authoritative record per conversation, Actions go out to delivery.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Union

Scalar = Union[str, int, float, bool, None]


class EventType(Enum):
    MESSAGE = "message"
    COMMAND = "command"
    SYSTEM = "system"
    REOPEN = "reopen"  # only event type that can leave CLOSED


class StateTag(Enum):
    NEW = "new"
    ACTIVE = "active"
    AWAITING_INPUT = "awaiting_input"
    CLOSED = "closed"


class ActionKind(Enum):
    REPLY = "reply"
    NOTIFY = "notify"
    NOOP = "noop"


@dataclass(frozen=True)
class Event:
    """Canonical inbound event. Immutable once created."""
    conversation_id: str
    type: EventType
    payload: str
    received_at: datetime
    source_seq: int
    source: str = "web"
    media_url: Optional[str] = None

    @property
    def identity(self) -> str:
        return f"{self.conversation_id}#{self.source_seq}"


@dataclass(frozen=True)
class ConversationState:
    """Persisted state of one conversation."""
    conversation_id: str
    state_tag: StateTag
    attributes: Dict[str, Scalar] = field(default_factory=dict)
    last_applied_seq: int = 0
    updated_at: Optional[datetime] = None

    @classmethod
    def initial(cls, conversation_id: str, now: Optional[datetime] = None) -> "ConversationState":
        return cls(
            conversation_id=conversation_id,
            state_tag=StateTag.NEW,
            attributes={},
            last_applied_seq=0,
            updated_at=now,
        )

    @property
    def is_closed(self) -> bool:
        return self.state_tag == StateTag.CLOSED

    def evolve(self, **changes: Any) -> "ConversationState":
        return replace(self, **changes)

    def comparable(self) -> Dict[str, Any]:
        """State without timing fields, for comparing backends and replays."""
        return {
            "conversation_id": self.conversation_id,
            "state_tag": self.state_tag.value,
            "attributes": dict(self.attributes),
            "last_applied_seq": self.last_applied_seq,
        }

    def to_dict(self) -> Dict[str, Any]:
        data = self.comparable()
        data["updated_at"] = self.updated_at.isoformat() if self.updated_at else None
        return data


@dataclass(frozen=True)
class Action:
    """Outbound effect of applying an event. Never persisted."""
    conversation_id: str
    kind: ActionKind
    payload: str = ""

    @classmethod
    def noop(cls, conversation_id: str) -> "Action":
        return cls(conversation_id=conversation_id, kind=ActionKind.NOOP)

    def to_dict(self) -> Dict[str, str]:
        return {
            "conversation_id": self.conversation_id,
            "kind": self.kind.value,
            "payload": self.payload,
        }
