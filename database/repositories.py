"""
Repository classes for the conversation bot data access layer.

Each repository encapsulates the queries for one model. Callers own the
session and its transaction.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .models import ConversationStateRow, ConversationEventRow

logger = logging.getLogger(__name__)


class ConversationStateRepository:
    """Data access for conversation state rows."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, conversation_id: str) -> Optional[ConversationStateRow]:
        result = await self.session.execute(
            select(ConversationStateRow).where(
                ConversationStateRow.conversation_id == conversation_id
            )
        )
        return result.scalar_one_or_none()

    async def get_seq(self, conversation_id: str) -> Optional[int]:
        result = await self.session.execute(
            select(ConversationStateRow.last_applied_seq).where(
                ConversationStateRow.conversation_id == conversation_id
            )
        )
        return result.scalar_one_or_none()

    async def insert(
        self,
        conversation_id: str,
        state_tag: str,
        attributes: Dict[str, Any],
        last_applied_seq: int,
        updated_at: Optional[datetime],
    ) -> ConversationStateRow:
        row = ConversationStateRow(
            conversation_id=conversation_id,
            state_tag=state_tag,
            attributes=attributes,
            last_applied_seq=last_applied_seq,
            updated_at=updated_at,
        )
        self.session.add(row)
        await self.session.flush()
        return row

    async def compare_and_swap(
        self,
        conversation_id: str,
        expected_seq: int,
        state_tag: str,
        attributes: Dict[str, Any],
        last_applied_seq: int,
        updated_at: Optional[datetime],
    ) -> bool:
        """Update the row only if its sequence still equals expected_seq."""
        result = await self.session.execute(
            update(ConversationStateRow)
            .where(ConversationStateRow.conversation_id == conversation_id)
            .where(ConversationStateRow.last_applied_seq == expected_seq)
            .values(
                state_tag=state_tag,
                attributes=attributes,
                last_applied_seq=last_applied_seq,
                updated_at=updated_at,
            )
        )
        return result.rowcount == 1


class ConversationEventRepository:
    """Data access for the applied-event audit log."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def append(self, **kwargs) -> ConversationEventRow:
        row = ConversationEventRow(**kwargs)
        self.session.add(row)
        await self.session.flush()
        return row

    async def list_for_conversation(
        self, conversation_id: str, limit: int = 100
    ) -> List[ConversationEventRow]:
        result = await self.session.execute(
            select(ConversationEventRow)
            .where(ConversationEventRow.conversation_id == conversation_id)
            .order_by(ConversationEventRow.source_seq.asc())
            .limit(limit)
        )
        return list(result.scalars().all())
