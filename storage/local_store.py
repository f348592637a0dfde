"""
Database-backed StorageAdapter for the conversation bot.

Implements the StorageAdapter protocol on the repository layer.
Concurrent writers are resolved by a native conditional UPDATE on
last_applied_seq, so every put is an atomic compare-and-swap.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError, OperationalError

from conversation.errors import BackendUnavailableError, ConflictError
from conversation.models import ConversationState, Event, StateTag
from database.models import ConversationStateRow
from database.repositories import ConversationEventRepository, ConversationStateRepository
from database.session import Database
from .base import with_deadline

logger = logging.getLogger(__name__)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo on the way back
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_state(row: ConversationStateRow) -> ConversationState:
    return ConversationState(
        conversation_id=row.conversation_id,
        state_tag=StateTag(row.state_tag),
        attributes=dict(row.attributes or {}),
        last_applied_seq=int(row.last_applied_seq),
        updated_at=_aware(row.updated_at),
    )


class LocalStore:
    """Persistent state store backed by SQLite or PostgreSQL."""

    name = "local"

    def __init__(self, database: Database, default_timeout: Optional[float] = None):
        self._db = database
        self.default_timeout = default_timeout

    def _timeout(self, timeout: Optional[float]) -> Optional[float]:
        return timeout if timeout is not None else self.default_timeout

    async def get(
        self, conversation_id: str, *, timeout: Optional[float] = None
    ) -> Optional[ConversationState]:
        return await with_deadline(
            self._get(conversation_id),
            self._timeout(timeout),
            "get",
            conversation_id,
            self.name,
        )

    async def _get(self, conversation_id: str) -> Optional[ConversationState]:
        try:
            async with self._db.session() as session:
                row = await ConversationStateRepository(session).get_by_id(conversation_id)
                return _to_state(row) if row else None
        except OperationalError as e:
            raise BackendUnavailableError(
                f"get failed: {e}", conversation_id=conversation_id, operation="get"
            )

    async def put(
        self,
        conversation_id: str,
        new_state: ConversationState,
        expected_last_applied_seq: Optional[int],
        *,
        timeout: Optional[float] = None,
    ) -> None:
        await with_deadline(
            self._put(conversation_id, new_state, expected_last_applied_seq),
            self._timeout(timeout),
            "put",
            conversation_id,
            self.name,
        )

    async def _put(
        self,
        conversation_id: str,
        new_state: ConversationState,
        expected: Optional[int],
    ) -> None:
        values: Dict[str, Any] = {
            "state_tag": new_state.state_tag.value,
            "attributes": dict(new_state.attributes),
            "last_applied_seq": new_state.last_applied_seq,
            "updated_at": new_state.updated_at,
        }
        try:
            async with self._db.session() as session:
                repo = ConversationStateRepository(session)
                if expected is None:
                    await repo.insert(conversation_id=conversation_id, **values)
                    return
                swapped = await repo.compare_and_swap(
                    conversation_id=conversation_id, expected_seq=expected, **values
                )
                if not swapped:
                    actual = await repo.get_seq(conversation_id)
                    raise ConflictError(conversation_id, expected, actual)
        except IntegrityError:
            # Someone created the conversation first
            raise ConflictError(conversation_id, expected, None)
        except OperationalError as e:
            raise BackendUnavailableError(
                f"put failed: {e}", conversation_id=conversation_id, operation="put"
            )

    async def append_log(
        self, conversation_id: str, event: Event, *, timeout: Optional[float] = None
    ) -> None:
        await with_deadline(
            self._append_log(conversation_id, event),
            self._timeout(timeout),
            "append_log",
            conversation_id,
            self.name,
        )

    async def _append_log(self, conversation_id: str, event: Event) -> None:
        try:
            async with self._db.session() as session:
                await ConversationEventRepository(session).append(
                    conversation_id=conversation_id,
                    source_seq=event.source_seq,
                    event_type=event.type.value,
                    source=event.source,
                    payload=event.payload,
                    media_url=event.media_url,
                    received_at=event.received_at,
                )
        except OperationalError as e:
            raise BackendUnavailableError(
                f"append_log failed: {e}",
                conversation_id=conversation_id,
                operation="append_log",
            )

    async def list_events(self, conversation_id: str) -> List[Dict[str, Any]]:
        """Audit rows for a conversation, oldest first."""
        async with self._db.session() as session:
            rows = await ConversationEventRepository(session).list_for_conversation(conversation_id)
        return [
            {
                "conversation_id": row.conversation_id,
                "source_seq": row.source_seq,
                "event_type": row.event_type,
                "payload": row.payload,
            }
            for row in rows
        ]

    async def close(self) -> None:
        await self._db.close()
