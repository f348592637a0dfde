"""Shared fixtures for conversation bot tests."""

import os
import re
import time
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest

os.environ.setdefault("BACKEND_KIND", "local")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from conversation.engine import ConversationEngine, EngineConfig
from conversation.models import Action, Event, EventType
from conversation.normalizer import EventNormalizer
from database.session import Database
from delivery.base import ActionDelivery, DeliveryResult
from storage.local_store import LocalStore
from storage.locks import KeyedLocks
from storage.sheet_store import LOG_HEADER, STATE_HEADER, SheetStore

FIXED_NOW = datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)

_RANGE = re.compile(r"A(\d+):[A-Z]+(\d+)")


class FakeWorksheet:
    """In-memory stand-in for a gspread Worksheet."""

    def __init__(self, header: Optional[List[str]] = None):
        self.rows: List[List[str]] = [list(header)] if header else []
        self.fail_with: Optional[Exception] = None
        self.calls = 0
        # method name -> seconds to block on its next call
        self.slow_once: Dict[str, float] = {}

    def _check(self, method: str = ""):
        self.calls += 1
        delay = self.slow_once.pop(method, 0)
        if delay:
            time.sleep(delay)
        if self.fail_with is not None:
            raise self.fail_with

    def get_all_values(self) -> List[List[str]]:
        self._check("get_all_values")
        return [list(row) for row in self.rows]

    def row_values(self, row: int) -> List[str]:
        self._check()
        if row <= len(self.rows):
            return list(self.rows[row - 1])
        return []

    def append_row(self, values, value_input_option="RAW"):
        self._check("append_row")
        self.rows.append([str(v) for v in values])

    def update(self, range_name=None, values=None, value_input_option="RAW"):
        self._check("update")
        match = _RANGE.match(range_name)
        row = int(match.group(1))
        while len(self.rows) < row:
            self.rows.append([])
        self.rows[row - 1] = [str(v) for v in values[0]]


class RecordingDelivery(ActionDelivery):
    """Collects delivered actions; optionally fails every delivery."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.delivered: List[Action] = []

    async def deliver(self, action: Action) -> DeliveryResult:
        if self.fail:
            raise RuntimeError("gateway down")
        self.delivered.append(action)
        return DeliveryResult(success=True, message_id=str(len(self.delivered)))


def make_event(
    conversation_id: str = "c1",
    seq: int = 1,
    payload: str = "hello",
    event_type: EventType = EventType.MESSAGE,
    received_at: datetime = FIXED_NOW,
    media_url: Optional[str] = None,
) -> Event:
    return Event(
        conversation_id=conversation_id,
        type=event_type,
        payload=payload,
        received_at=received_at + timedelta(seconds=seq),
        source_seq=seq,
        media_url=media_url,
    )


@pytest.fixture
def clock():
    return lambda: FIXED_NOW


@pytest.fixture
def normalizer(clock):
    return EventNormalizer(clock)


@pytest.fixture
def engine_config():
    return EngineConfig(bot_name="TestBot", school_name="Test School", max_messages_per_day=3)


@pytest.fixture
def engine(engine_config):
    return ConversationEngine(engine_config)


@pytest.fixture
def delivery():
    return RecordingDelivery()


async def _local_store(tmp_path) -> LocalStore:
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'conversations.db'}")
    await database.init()
    return LocalStore(database, default_timeout=5.0)


def _sheet_store() -> SheetStore:
    return SheetStore(
        FakeWorksheet(STATE_HEADER),
        FakeWorksheet(LOG_HEADER),
        KeyedLocks(),
        default_timeout=5.0,
    )


@pytest.fixture
async def local_store(tmp_path):
    store = await _local_store(tmp_path)
    yield store
    await store.close()


@pytest.fixture
def sheet_store():
    return _sheet_store()


@pytest.fixture(params=["local", "sheet"])
async def store(request, tmp_path):
    """Every storage backend, for tests that must hold for all of them."""
    if request.param == "local":
        adapter = await _local_store(tmp_path)
    else:
        adapter = _sheet_store()
    yield adapter
    await adapter.close()
