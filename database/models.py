"""
SQLAlchemy ORM models for the conversation bot.

Persistent entities: one state row per conversation, plus the
append-only audit log of applied events.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, String, Integer, DateTime, Text, JSON, Index
from sqlalchemy.orm import DeclarativeBase


def _uuid() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class ConversationStateRow(Base):
    __tablename__ = "conversation_states"

    conversation_id = Column(String(128), primary_key=True)
    state_tag = Column(String(20), nullable=False)  # new, active, awaiting_input, closed
    attributes = Column(JSON, nullable=False, default=dict)
    last_applied_seq = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_state_tag_updated", "state_tag", "updated_at"),
    )


class ConversationEventRow(Base):
    """Audit trail, one row per applied event. Duplicates are tolerated."""
    __tablename__ = "conversation_events"

    id = Column(String(36), primary_key=True, default=_uuid)
    conversation_id = Column(String(128), nullable=False, index=True)
    source_seq = Column(Integer, nullable=False)
    event_type = Column(String(20), nullable=False)
    source = Column(String(20), nullable=True)
    payload = Column(Text, nullable=False)
    media_url = Column(Text, nullable=True)
    received_at = Column(DateTime(timezone=True), nullable=False)
    logged_at = Column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_event_conv_seq", "conversation_id", "source_seq"),
    )
