"""
Error taxonomy for the conversation bot.

Normalizer errors reject a single payload. Storage errors feed the
dispatcher's retry policy. Only retry-exhausted failures reach callers.
"""

from typing import Optional


class ConversationBotError(Exception):
    """Base error, carries the conversation and event identity when known."""

    retryable = False

    def __init__(
        self,
        message: str,
        conversation_id: Optional[str] = None,
        source_seq: Optional[int] = None,
    ):
        super().__init__(message)
        self.conversation_id = conversation_id
        self.source_seq = source_seq

    @property
    def event_identity(self) -> Optional[str]:
        if self.conversation_id is None:
            return None
        if self.source_seq is None:
            return self.conversation_id
        return f"{self.conversation_id}#{self.source_seq}"


class MalformedPayloadError(ConversationBotError):
    """Required fields are missing or unparseable."""


class UnsupportedSourceTypeError(ConversationBotError):
    """The source metadata names a transport with no registered parser."""

    def __init__(self, transport: str):
        super().__init__(f"Unsupported source transport: {transport!r}")
        self.transport = transport


class ConflictError(ConversationBotError):
    """Conditional write lost: the stored sequence moved since it was read."""

    retryable = True

    def __init__(
        self,
        conversation_id: str,
        expected: Optional[int],
        actual: Optional[int],
    ):
        super().__init__(
            f"Sequence conflict for conversation {conversation_id}: "
            f"expected {expected}, found {actual}",
            conversation_id=conversation_id,
        )
        self.expected = expected
        self.actual = actual


class BackendUnavailableError(ConversationBotError):
    """A storage call timed out or the backend could not be reached."""

    retryable = True

    def __init__(self, message: str, conversation_id: Optional[str] = None, operation: str = ""):
        super().__init__(message, conversation_id=conversation_id)
        self.operation = operation


class ConversationContendedError(ConversationBotError):
    """Conflict retries exhausted for one event."""

    def __init__(self, conversation_id: str, source_seq: int, attempts: int):
        super().__init__(
            f"Conversation {conversation_id} still contended after {attempts} attempts "
            f"(event seq {source_seq})",
            conversation_id=conversation_id,
            source_seq=source_seq,
        )
        self.attempts = attempts


class DeliveryError(ConversationBotError):
    """Outbound delivery failed. Committed state is never rolled back."""
