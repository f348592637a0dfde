"""
Conversation core for the bot.

This package handles:
- Normalizing transport payloads into Events
- The conversation state machine
- Dispatching events with ordering and optimistic concurrency
"""

from .models import Action, ActionKind, ConversationState, Event, EventType, StateTag
from .engine import ConversationEngine, EngineConfig
from .normalizer import EventNormalizer, SourceMeta

__all__ = [
    "Action",
    "ActionKind",
    "ConversationState",
    "Event",
    "EventType",
    "StateTag",
    "ConversationEngine",
    "EngineConfig",
    "EventNormalizer",
    "SourceMeta",
]
