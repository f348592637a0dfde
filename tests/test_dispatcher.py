"""Tests for the dispatcher: idempotence, ordering, retries, delivery isolation."""

import asyncio
import time

import pytest

from conftest import FIXED_NOW, FakeWorksheet, RecordingDelivery, make_event
from conversation.dispatcher import Dispatcher, RetryPolicy
from conversation.engine import ConversationEngine, EngineConfig
from conversation.errors import (
    BackendUnavailableError,
    ConflictError,
    ConversationContendedError,
    DeliveryError,
)
from conversation.models import ActionKind, ConversationState, EventType, StateTag
from delivery.base import ActionDelivery
from storage.locks import KeyedLocks
from storage.sheet_store import LOG_HEADER, STATE_HEADER, SheetStore


class ScriptedStore:
    """Wraps a real adapter and injects races and outages on demand."""

    def __init__(self, inner):
        self.inner = inner
        self.name = inner.name
        self.before_put = []
        self.get_outages = 0
        self.always_conflict = False
        self.log_error = None
        self.puts = 0

    async def get(self, conversation_id, *, timeout=None):
        if self.get_outages:
            self.get_outages -= 1
            raise BackendUnavailableError("quota exceeded", operation="get")
        return await self.inner.get(conversation_id, timeout=timeout)

    async def put(self, conversation_id, new_state, expected, *, timeout=None):
        self.puts += 1
        if self.before_put:
            await self.before_put.pop(0)()
        if self.always_conflict:
            raise ConflictError(conversation_id, expected, (expected or 0) + 1)
        await self.inner.put(conversation_id, new_state, expected, timeout=timeout)

    async def append_log(self, conversation_id, event, *, timeout=None):
        if self.log_error is not None:
            raise self.log_error
        await self.inner.append_log(conversation_id, event, timeout=timeout)

    async def list_events(self, conversation_id):
        return await self.inner.list_events(conversation_id)

    async def close(self):
        await self.inner.close()


class RejectingDelivery(ActionDelivery):
    async def deliver(self, action):
        raise DeliveryError("recipient blocked the bot", conversation_id=action.conversation_id)


class SlowWorksheet(FakeWorksheet):
    def get_all_values(self):
        time.sleep(0.3)
        return super().get_all_values()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def retry():
    return RetryPolicy(
        max_attempts=3,
        backoff_ms=10,
        unavailable_max_attempts=2,
        unavailable_backoff_ms=5,
        request_timeout_ms=2000,
    )


@pytest.fixture
def make_dispatcher(engine, delivery, retry, sleeps):
    async def fake_sleep(delay):
        sleeps.append(delay)

    def factory(store, delivery=delivery):
        return Dispatcher(store, engine, delivery, retry=retry, reorder_window=0.02, sleep=fake_sleep)

    return factory


# ── Applying events ───────────────────────────────────────────────

class TestApply:
    async def test_new_conversation(self, store, make_dispatcher, delivery):
        dispatcher = make_dispatcher(store)
        result = await dispatcher.dispatch(make_event(seq=1, payload="hi"))
        await dispatcher.wait_for_deliveries()

        assert result.written and not result.duplicate
        assert result.state.state_tag == StateTag.ACTIVE
        stored = await store.get("c1")
        assert stored.last_applied_seq == 1
        assert [a.kind for a in delivery.delivered] == [ActionKind.REPLY]
        assert [e["source_seq"] for e in await store.list_events("c1")] == [1]

    async def test_duplicate_is_dropped(self, store, make_dispatcher, delivery):
        dispatcher = make_dispatcher(store)
        event = make_event(seq=1)
        await dispatcher.dispatch(event)
        again = await dispatcher.dispatch(event)
        await dispatcher.wait_for_deliveries()

        assert again.duplicate
        assert not again.written
        assert [a.kind for a in again.actions] == [ActionKind.NOOP]
        assert again.deliverable == []
        assert len(delivery.delivered) == 1
        assert len(await store.list_events("c1")) == 1

    async def test_late_lower_sequence_is_stale(self, store, make_dispatcher, delivery):
        dispatcher = make_dispatcher(store)
        await dispatcher.dispatch(make_event(seq=5))
        late = await dispatcher.dispatch(make_event(seq=3, payload="late"))
        await dispatcher.wait_for_deliveries()

        assert late.stale
        assert not late.duplicate and not late.written
        assert late.deliverable == []
        assert len(delivery.delivered) == 1
        assert (await store.get("c1")).last_applied_seq == 5

    async def test_redelivered_older_sequence_is_duplicate(self, store, make_dispatcher):
        dispatcher = make_dispatcher(store)
        await dispatcher.dispatch(make_event(seq=1))
        await dispatcher.dispatch(make_event(seq=2))
        again = await dispatcher.dispatch(make_event(seq=1))
        assert again.duplicate
        assert not again.stale

    async def test_concurrent_duplicates_apply_once(self, store, make_dispatcher, delivery):
        dispatcher = make_dispatcher(store)
        event = make_event(seq=1)
        results = await asyncio.gather(*(dispatcher.dispatch(event) for _ in range(3)))
        await dispatcher.wait_for_deliveries()

        assert sum(r.written for r in results) == 1
        assert sum(r.duplicate for r in results) == 2
        assert len(delivery.delivered) == 1
        assert (await store.get("c1")).attributes["message_count"] == 1

    async def test_closed_conversation_is_not_written(self, store, make_dispatcher, delivery):
        dispatcher = make_dispatcher(store)
        await dispatcher.dispatch(make_event(seq=1))
        await dispatcher.dispatch(make_event(seq=2, payload="/stop", event_type=EventType.COMMAND))
        await dispatcher.wait_for_deliveries()
        delivered_before = len(delivery.delivered)

        result = await dispatcher.dispatch(make_event(seq=3, payload="anyone there?"))
        await dispatcher.wait_for_deliveries()

        assert not result.written and not result.duplicate
        assert result.deliverable == []
        stored = await store.get("c1")
        assert stored.state_tag == StateTag.CLOSED
        assert stored.last_applied_seq == 2
        assert len(delivery.delivered) == delivered_before
        assert [e["source_seq"] for e in await store.list_events("c1")] == [1, 2]

    async def test_backends_reach_same_state(self, store, make_dispatcher, engine):
        events = [
            make_event(seq=1, payload="hi"),
            make_event(seq=2, payload="/register", event_type=EventType.COMMAND),
            make_event(seq=3, payload="class 7"),
            make_event(seq=4, payload="thanks"),
            make_event(seq=5, payload="/stop", event_type=EventType.COMMAND),
            make_event(seq=6, payload="ignored"),
            make_event(seq=7, payload="reopen", event_type=EventType.REOPEN),
        ]
        expected = ConversationState.initial("c1", FIXED_NOW)
        for event in events:
            expected, _ = engine.apply(expected, event)

        dispatcher = make_dispatcher(store)
        for event in events:
            await dispatcher.dispatch(event)
        for event in events:
            again = await dispatcher.dispatch(event)
            assert not again.written
            # seq 6 reached a closed conversation and was never applied
            assert again.stale == (event.source_seq == 6)
            assert again.duplicate == (event.source_seq != 6)

        stored = await store.get("c1")
        assert stored.comparable() == expected.comparable()
        assert stored.attributes["class_level"] == 7
        assert stored.attributes["reopen_count"] == 1


# ── Ordering ──────────────────────────────────────────────────────

class TestOrdering:
    async def test_submit_reorders_within_window(self, store, make_dispatcher):
        dispatcher = make_dispatcher(store)
        second, first = await asyncio.gather(
            dispatcher.submit(make_event(seq=2, payload="second")),
            dispatcher.submit(make_event(seq=1, payload="first")),
        )

        assert first.written and second.written
        stored = await store.get("c1")
        assert stored.last_applied_seq == 2
        assert stored.attributes["last_message"] == "second"
        assert [e["source_seq"] for e in await store.list_events("c1")] == [1, 2]
        assert dispatcher.pending_conversations == 0

    async def test_conversations_progress_independently(self, store, make_dispatcher):
        dispatcher = make_dispatcher(store)
        results = await asyncio.gather(
            dispatcher.submit(make_event("a", seq=1)),
            dispatcher.submit(make_event("b", seq=1)),
            dispatcher.submit(make_event("a", seq=2)),
        )
        assert all(r.written for r in results)
        assert (await store.get("a")).last_applied_seq == 2
        assert (await store.get("b")).last_applied_seq == 1

    async def test_concurrent_dispatches_all_apply(self, store, delivery, retry):
        engine = ConversationEngine(EngineConfig(bot_name="TestBot", max_messages_per_day=50))
        dispatcher = Dispatcher(store, engine, delivery, retry=retry)
        await dispatcher.dispatch(make_event(seq=1, payload="m1"))

        results = await asyncio.gather(
            *(dispatcher.dispatch(make_event(seq=seq, payload=f"m{seq}")) for seq in range(2, 8))
        )

        assert all(r.written for r in results)
        assert all(r.attempts == 1 for r in results)
        stored = await store.get("c1")
        assert stored.last_applied_seq == 7
        assert stored.attributes["message_count"] == 7
        assert stored.attributes["last_message"] == "m7"
        assert [e["source_seq"] for e in await store.list_events("c1")] == list(range(1, 8))

    async def test_submit_propagates_errors(self, local_store, make_dispatcher):
        scripted = ScriptedStore(local_store)
        scripted.get_outages = 5
        dispatcher = make_dispatcher(scripted)
        with pytest.raises(BackendUnavailableError):
            await dispatcher.submit(make_event(seq=1))


# ── Retries ───────────────────────────────────────────────────────

class TestRetries:
    async def test_conflict_converges(self, local_store, make_dispatcher, sleeps):
        scripted = ScriptedStore(local_store)
        competitor = ConversationState("c1", StateTag.ACTIVE, {"channel": "web"}, 1, FIXED_NOW)

        async def race():
            await local_store.put("c1", competitor, None)

        scripted.before_put.append(race)
        dispatcher = make_dispatcher(scripted)
        result = await dispatcher.dispatch(make_event(seq=2, payload="question"))

        assert result.written
        assert result.attempts == 2
        assert sleeps == [0.01]
        stored = await local_store.get("c1")
        assert stored.last_applied_seq == 2
        assert stored.attributes["channel"] == "web"
        assert stored.attributes["message_count"] == 1

    async def test_racing_same_event_becomes_duplicate(self, sheet_store, make_dispatcher, engine):
        scripted = ScriptedStore(sheet_store)
        event = make_event(seq=1)

        async def race():
            state, _ = engine.apply(ConversationState.initial("c1"), event)
            await sheet_store.put("c1", state, None)

        scripted.before_put.append(race)
        result = await make_dispatcher(scripted).dispatch(event)
        assert result.duplicate
        assert result.attempts == 2

    async def test_overtaken_by_other_dispatcher_is_stale(self, local_store, make_dispatcher):
        scripted = ScriptedStore(local_store)
        other = make_dispatcher(local_store)

        async def race():
            await other.dispatch(make_event(seq=3, payload="from another worker"))

        scripted.before_put.append(race)
        result = await make_dispatcher(scripted).dispatch(make_event(seq=2))

        assert result.stale
        assert not result.written
        assert result.attempts == 2
        stored = await local_store.get("c1")
        assert stored.last_applied_seq == 3
        assert [e["source_seq"] for e in await local_store.list_events("c1")] == [3]

    async def test_contention_exhausts(self, local_store, make_dispatcher, sleeps):
        scripted = ScriptedStore(local_store)
        scripted.always_conflict = True
        dispatcher = make_dispatcher(scripted)

        with pytest.raises(ConversationContendedError) as exc:
            await dispatcher.dispatch(make_event(seq=1))
        assert exc.value.attempts == 3
        assert exc.value.event_identity == "c1#1"
        assert sleeps == [0.01, 0.02]
        assert scripted.puts == 3

    async def test_transient_outage_recovers(self, local_store, make_dispatcher, sleeps):
        scripted = ScriptedStore(local_store)
        scripted.get_outages = 1
        result = await make_dispatcher(scripted).dispatch(make_event(seq=1))
        assert result.written
        assert sleeps == [0.005]

    async def test_outage_budget_is_separate(self, local_store, make_dispatcher, sleeps):
        scripted = ScriptedStore(local_store)
        scripted.get_outages = 10
        with pytest.raises(BackendUnavailableError) as exc:
            await make_dispatcher(scripted).dispatch(make_event(seq=4))
        assert exc.value.source_seq == 4
        assert exc.value.conversation_id == "c1"
        assert sleeps == [0.005]
        assert await local_store.get("c1") is None

    async def test_slow_backend_times_out(self, engine, delivery):
        store = SheetStore(SlowWorksheet(STATE_HEADER), FakeWorksheet(LOG_HEADER), KeyedLocks())
        dispatcher = Dispatcher(
            store,
            engine,
            delivery,
            retry=RetryPolicy(unavailable_max_attempts=2, unavailable_backoff_ms=1, request_timeout_ms=50),
        )
        with pytest.raises(BackendUnavailableError) as exc:
            await dispatcher.dispatch(make_event(seq=1))
        assert exc.value.operation == "get"


# ── Side effects ──────────────────────────────────────────────────

class TestSideEffects:
    async def test_delivery_failure_keeps_state(self, store, make_dispatcher):
        dispatcher = make_dispatcher(store, delivery=RecordingDelivery(fail=True))
        result = await dispatcher.dispatch(make_event(seq=1))
        await dispatcher.wait_for_deliveries()
        assert result.written
        assert (await store.get("c1")).last_applied_seq == 1

    async def test_delivery_error_keeps_state(self, store, make_dispatcher):
        dispatcher = make_dispatcher(store, delivery=RejectingDelivery())
        await dispatcher.dispatch(make_event(seq=1))
        await dispatcher.wait_for_deliveries()
        assert (await store.get("c1")).last_applied_seq == 1

    async def test_audit_failure_keeps_state(self, local_store, make_dispatcher, delivery):
        scripted = ScriptedStore(local_store)
        scripted.log_error = BackendUnavailableError("log sheet full", operation="append_log")
        dispatcher = make_dispatcher(scripted)
        result = await dispatcher.dispatch(make_event(seq=1))
        await dispatcher.wait_for_deliveries()

        assert result.written
        assert (await local_store.get("c1")).last_applied_seq == 1
        assert len(delivery.delivered) == 1

    async def test_aclose_waits_for_buffered_events(self, store, make_dispatcher):
        dispatcher = make_dispatcher(store)
        pending = asyncio.create_task(dispatcher.submit(make_event(seq=1)))
        await asyncio.sleep(0)
        await dispatcher.aclose()
        assert (await pending).written
