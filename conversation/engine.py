"""
Conversation Engine for the conversation bot.

A deterministic state machine over StateTag. Given the current
ConversationState and an Event it returns the next state and the actions
to deliver. No clock, storage or network access happens here, so replays
reproduce exactly the same result.

Flow (homework helper bot):
    NEW --message--> ACTIVE
    NEW/ACTIVE --/start, /register--> AWAITING_INPUT (collect class level)
    AWAITING_INPUT --"class 8"--> ACTIVE (registered)
    any open --/stop, system close--> CLOSED
    CLOSED --reopen event--> ACTIVE
"""

import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from .models import Action, ActionKind, ConversationState, Event, EventType, Scalar, StateTag

# "class 8", "Grade 10", "std7"; a bare number only when it is the whole reply
_CLASS_PATTERN = re.compile(r"\b(?:class|grade|std)\s*(\d{1,2})\b", re.IGNORECASE)
_BARE_CLASS_PATTERN = re.compile(r"^\s*(\d{1,2})\s*$")

POSITIVE_FEEDBACK = {"👍", "helpful", "yes", "thanks", "thank you"}
NEGATIVE_FEEDBACK = {"👎", "not helpful", "no"}

REGISTER_COMMANDS = {"/start", "/register"}
CLOSE_COMMANDS = {"/stop", "/close"}
HELP_COMMANDS = {"/help"}

CLOSE_SIGNALS = {"close", "timeout", "expired"}
HANDOFF_SIGNALS = {"handoff"}


@dataclass
class EngineConfig:
    """Branding and limits used to render replies."""
    bot_name: str = "VidyaMitra"
    school_name: str = "Your School"
    support_email: str = "contact@example.com"
    support_phone: str = ""
    max_messages_per_day: int = 50
    max_stored_text: int = 500
    min_class_level: int = 1
    max_class_level: int = 12
    messages: Dict[str, str] = field(default_factory=dict)

    def text(self, key: str, **params) -> str:
        template = self.messages.get(key) or DEFAULT_MESSAGES[key]
        return template.format(
            bot_name=self.bot_name,
            school_name=self.school_name,
            support_email=self.support_email,
            support_phone=self.support_phone,
            limit=self.max_messages_per_day,
            **params,
        )


DEFAULT_MESSAGES = {
    "welcome": (
        "Welcome to {bot_name}! 🎓\n\n"
        "Your personal study companion for {school_name}.\n\n"
        "Send any homework question to get started, or /register to set your class."
    ),
    "register_prompt": (
        "Please tell me your class (e.g. \"Class 8\")."
    ),
    "register_retry": (
        "I couldn't find a class between {min_class} and {max_class} in that. "
        "Please reply like \"Class 8\"."
    ),
    "registered": (
        "✅ Registered for Class {class_level}!\n\n"
        "Send any homework question or photo to get started! 📸"
    ),
    "acknowledge": "Got your question. A {school_name} explanation is on its way.",
    "acknowledge_media": "Got your photo. A {school_name} explanation is on its way.",
    "feedback_positive": "Thank you! 🙏 Happy to help anytime!",
    "feedback_negative": (
        "Sorry about that! I'll let your teacher know. "
        "Can you tell me what was confusing?"
    ),
    "limit_reached": (
        "You've reached today's limit of {limit} questions. "
        "Please try again tomorrow or contact {support_email}."
    ),
    "help": (
        "{bot_name} commands:\n"
        "/register - set your class\n"
        "/stop - end this conversation\n"
        "/help - show this message"
    ),
    "unknown_command": "Sorry, I don't know the command {command}. Send /help for options.",
    "goodbye": "Goodbye! Message us again whenever you need help.",
    "welcome_back": "Welcome back to {bot_name}! 🎓 Send your homework question.",
    "notify_negative_feedback": "Negative feedback on conversation {conversation_id}",
    "notify_closed": "Conversation {conversation_id} closed ({reason})",
    "notify_handoff": "Conversation {conversation_id} needs a staff member",
}


Transition = Tuple[ConversationState, List[Action]]


class ConversationEngine:
    """
    Pure conversation state machine.

    Duplicate events are filtered by the dispatcher before apply() is
    called; apply() trusts that event.source_seq is new.
    """

    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or EngineConfig()

    def apply(self, state: ConversationState, event: Event) -> Transition:
        if state.is_closed:
            if event.type == EventType.REOPEN:
                return self._reopen(state, event)
            return state, [Action.noop(state.conversation_id)]

        if event.type == EventType.COMMAND:
            return self._on_command(state, event)
        if event.type == EventType.SYSTEM:
            return self._on_system(state, event)
        if event.type == EventType.REOPEN:
            # Reopening an open conversation only advances the sequence.
            return self._advance(state, event), [Action.noop(state.conversation_id)]
        return self._on_message(state, event)

    # ── Messages ──────────────────────────────────────────────────

    def _on_message(self, state: ConversationState, event: Event) -> Transition:
        if state.state_tag == StateTag.NEW:
            attrs = self._record_message(dict(state.attributes), event)
            next_state = self._advance(state, event, StateTag.ACTIVE, attrs)
            return next_state, [self._reply(state, "welcome")]

        if state.state_tag == StateTag.AWAITING_INPUT:
            return self._collect_input(state, event)

        text = event.payload.strip().lower()
        attrs = dict(state.attributes)

        if text in POSITIVE_FEEDBACK:
            attrs["positive_feedback"] = int(attrs.get("positive_feedback") or 0) + 1
            return self._advance(state, event, attributes=attrs), [
                self._reply(state, "feedback_positive"),
            ]

        if text in NEGATIVE_FEEDBACK:
            attrs["negative_feedback"] = int(attrs.get("negative_feedback") or 0) + 1
            return self._advance(state, event, attributes=attrs), [
                self._reply(state, "feedback_negative"),
                self._notify(state, "notify_negative_feedback"),
            ]

        day = event.received_at.date().isoformat()
        used_today = int(attrs.get("messages_today") or 0) if attrs.get("messages_day") == day else 0
        if used_today >= self.config.max_messages_per_day:
            return self._advance(state, event), [self._reply(state, "limit_reached")]

        attrs = self._record_message(attrs, event)
        key = "acknowledge_media" if event.media_url and not event.payload else "acknowledge"
        return self._advance(state, event, attributes=attrs), [self._reply(state, key)]

    def _collect_input(self, state: ConversationState, event: Event) -> Transition:
        attrs = dict(state.attributes)
        class_level = self._parse_class_level(event.payload)
        if class_level is None:
            attrs["invalid_inputs"] = int(attrs.get("invalid_inputs") or 0) + 1
            return self._advance(state, event, attributes=attrs), [
                self._reply(
                    state,
                    "register_retry",
                    min_class=self.config.min_class_level,
                    max_class=self.config.max_class_level,
                ),
            ]

        attrs.pop("awaiting", None)
        attrs.pop("invalid_inputs", None)
        attrs["registered"] = True
        attrs["class_level"] = class_level
        next_state = self._advance(state, event, StateTag.ACTIVE, attrs)
        return next_state, [self._reply(state, "registered", class_level=class_level)]

    def _parse_class_level(self, text: str) -> Optional[int]:
        match = _CLASS_PATTERN.search(text) or _BARE_CLASS_PATTERN.match(text)
        if not match:
            return None
        level = int(match.group(1))
        if self.config.min_class_level <= level <= self.config.max_class_level:
            return level
        return None

    def _record_message(self, attrs: Dict[str, Scalar], event: Event) -> Dict[str, Scalar]:
        day = event.received_at.date().isoformat()
        if attrs.get("messages_day") != day:
            attrs["messages_day"] = day
            attrs["messages_today"] = 0
        attrs["messages_today"] = int(attrs.get("messages_today") or 0) + 1
        attrs["message_count"] = int(attrs.get("message_count") or 0) + 1
        attrs["last_message"] = event.payload[: self.config.max_stored_text]
        attrs["last_message_has_media"] = bool(event.media_url)
        return attrs

    # ── Commands ──────────────────────────────────────────────────

    def _on_command(self, state: ConversationState, event: Event) -> Transition:
        command = event.payload.split(" ", 1)[0].lower()

        if command in REGISTER_COMMANDS:
            attrs = dict(state.attributes)
            attrs["awaiting"] = "class_level"
            next_state = self._advance(state, event, StateTag.AWAITING_INPUT, attrs)
            return next_state, [self._reply(state, "register_prompt")]

        if command in CLOSE_COMMANDS:
            return self._close(state, event, reason="user", farewell=True)

        if command in HELP_COMMANDS:
            return self._advance(state, event), [self._reply(state, "help")]

        return self._advance(state, event), [
            self._reply(state, "unknown_command", command=command),
        ]

    # ── System signals ────────────────────────────────────────────

    def _on_system(self, state: ConversationState, event: Event) -> Transition:
        signal = event.payload.strip().lower()

        if signal in CLOSE_SIGNALS:
            return self._close(state, event, reason=signal, farewell=False)

        if signal in HANDOFF_SIGNALS:
            attrs = dict(state.attributes)
            attrs["handoff"] = True
            return self._advance(state, event, attributes=attrs), [
                self._notify(state, "notify_handoff"),
            ]

        return self._advance(state, event), [Action.noop(state.conversation_id)]

    # ── Closing / reopening ───────────────────────────────────────

    def _close(self, state: ConversationState, event: Event, reason: str, farewell: bool) -> Transition:
        attrs = dict(state.attributes)
        attrs["closed_reason"] = reason
        attrs.pop("awaiting", None)
        next_state = self._advance(state, event, StateTag.CLOSED, attrs)
        actions = [self._reply(state, "goodbye")] if farewell else []
        actions.append(self._notify(state, "notify_closed", reason=reason))
        return next_state, actions

    def _reopen(self, state: ConversationState, event: Event) -> Transition:
        attrs = dict(state.attributes)
        attrs.pop("closed_reason", None)
        attrs["reopen_count"] = int(attrs.get("reopen_count") or 0) + 1
        next_state = self._advance(state, event, StateTag.ACTIVE, attrs)
        return next_state, [self._reply(state, "welcome_back")]

    # ── Helpers ───────────────────────────────────────────────────

    @staticmethod
    def _advance(
        state: ConversationState,
        event: Event,
        state_tag: Optional[StateTag] = None,
        attributes: Optional[Dict[str, Scalar]] = None,
    ) -> ConversationState:
        return state.evolve(
            state_tag=state_tag or state.state_tag,
            attributes=attributes if attributes is not None else dict(state.attributes),
            last_applied_seq=event.source_seq,
            updated_at=event.received_at,
        )

    def _reply(self, state: ConversationState, key: str, **params) -> Action:
        return Action(
            conversation_id=state.conversation_id,
            kind=ActionKind.REPLY,
            payload=self.config.text(key, **params),
        )

    def _notify(self, state: ConversationState, key: str, **params) -> Action:
        return Action(
            conversation_id=state.conversation_id,
            kind=ActionKind.NOTIFY,
            payload=self.config.text(key, conversation_id=state.conversation_id, **params),
        )
