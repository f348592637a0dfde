"""
StorageAdapter protocol for the conversation bot.

Abstracts conversation state persistence so the dispatcher can work
with either the SQL-backed LocalStore or the Google Sheets SheetStore.
"""

import asyncio
import logging
from typing import Any, Awaitable, Dict, List, Optional, Protocol, TypeVar, runtime_checkable

from conversation.errors import BackendUnavailableError
from conversation.models import ConversationState, Event

logger = logging.getLogger(__name__)

T = TypeVar("T")


@runtime_checkable
class StorageAdapter(Protocol):
    """Protocol for conversation state persistence."""

    name: str

    async def get(
        self, conversation_id: str, *, timeout: Optional[float] = None
    ) -> Optional[ConversationState]:
        """Return the stored state, or None when the conversation is unknown."""
        ...

    async def put(
        self,
        conversation_id: str,
        new_state: ConversationState,
        expected_last_applied_seq: Optional[int],
        *,
        timeout: Optional[float] = None,
    ) -> None:
        """
        Conditionally write the state.

        Raises ConflictError when the stored last_applied_seq differs from
        expected_last_applied_seq (None means the row must not exist yet).
        """
        ...

    async def append_log(
        self, conversation_id: str, event: Event, *, timeout: Optional[float] = None
    ) -> None:
        """Append an audit row for an applied event."""
        ...

    async def list_events(self, conversation_id: str) -> List[Dict[str, Any]]:
        """Audit rows for a conversation, oldest first."""
        ...

    async def close(self) -> None:
        """Release backend resources."""
        ...


async def with_deadline(
    awaitable: Awaitable[T],
    timeout: Optional[float],
    operation: str,
    conversation_id: Optional[str] = None,
    backend: str = "",
) -> T:
    """Bound a storage call by a deadline, mapping timeouts to BackendUnavailableError."""
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(
            f"{backend or 'storage'} {operation} timed out after {timeout}s",
            extra={"conversation_id": conversation_id, "backend": backend},
        )
        raise BackendUnavailableError(
            f"{operation} timed out after {timeout}s",
            conversation_id=conversation_id,
            operation=operation,
        )
