"""
Dispatcher for the conversation bot.

Runs one event through read -> duplicate check -> engine -> conditional
write, retrying the whole cycle when another writer got there first.
Committed actions are delivered in the background; delivery problems are
reported but never undo the state change.

Per-conversation ordering:
    dispatch() holds a per-conversation lock for its whole retry loop, so
    events for one conversation are applied one at a time in arrival
    order. An event that arrives after a higher seq was applied, and was
    never applied itself, is reported as stale rather than as a duplicate.
    submit() parks events in a small reorder buffer per conversation and
    drains it in source_seq order, one drainer task per conversation.
    Conversations never share a lock, so they progress independently.
"""

import asyncio
import heapq
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple

from delivery.base import ActionDelivery
from observability.metrics import (
    record_audit_failure,
    record_delivery,
    record_dispatch_latency,
    record_event,
    record_retry,
)
from storage.base import StorageAdapter, with_deadline
from storage.locks import KeyedLocks
from .engine import ConversationEngine
from .errors import (
    BackendUnavailableError,
    ConflictError,
    ConversationContendedError,
    DeliveryError,
)
from .models import Action, ActionKind, ConversationState, Event

logger = logging.getLogger(__name__)


@dataclass
class RetryPolicy:
    """Retry budgets. Contention and backend outages are counted separately."""
    max_attempts: int = 5
    backoff_ms: int = 50
    unavailable_max_attempts: int = 2
    unavailable_backoff_ms: int = 20
    request_timeout_ms: int = 5000

    @property
    def request_timeout(self) -> float:
        return self.request_timeout_ms / 1000.0

    def conflict_delay(self, retry: int) -> float:
        return self.backoff_ms * (2 ** (retry - 1)) / 1000.0

    def unavailable_delay(self, retry: int) -> float:
        return self.unavailable_backoff_ms * (2 ** (retry - 1)) / 1000.0


@dataclass
class DispatchResult:
    """Outcome of dispatching one event."""
    event: Event
    state: ConversationState
    actions: List[Action] = field(default_factory=list)
    duplicate: bool = False
    stale: bool = False
    written: bool = False
    attempts: int = 1

    @property
    def deliverable(self) -> List[Action]:
        return [a for a in self.actions if a.kind != ActionKind.NOOP]


@dataclass
class _ReorderBuffer:
    heap: List[Tuple[int, int, Event, asyncio.Future]] = field(default_factory=list)
    task: Optional[asyncio.Task] = None


class Dispatcher:
    """
    Sequences Engine -> StorageAdapter -> delivery for each event.

    All collaborators are passed in; the dispatcher owns only its reorder
    buffers and the set of in-flight delivery tasks.
    """

    def __init__(
        self,
        store: StorageAdapter,
        engine: ConversationEngine,
        delivery: ActionDelivery,
        retry: Optional[RetryPolicy] = None,
        reorder_window: float = 0.05,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.engine = engine
        self.delivery = delivery
        self.retry = retry or RetryPolicy()
        self.reorder_window = reorder_window
        self._sleep = sleep
        self._buffers: Dict[str, _ReorderBuffer] = {}
        self._serial = KeyedLocks()
        self._deliveries: Set[asyncio.Task] = set()
        self._arrival = itertools.count()

    # ── Single event ──────────────────────────────────────────────

    async def dispatch(self, event: Event) -> DispatchResult:
        """Apply one event with optimistic concurrency and bounded retries."""
        async with self._serial.hold(event.conversation_id):
            return await self._dispatch(event)

    async def _dispatch(self, event: Event) -> DispatchResult:
        start = time.perf_counter()
        log_extra = {"conversation_id": event.conversation_id, "source_seq": event.source_seq}
        conflicts = 0
        outages = 0
        attempts = 0

        while True:
            attempts += 1
            try:
                result = await self._cycle(event)
                break
            except ConflictError as e:
                conflicts += 1
                record_retry(self.store.name, "conflict")
                if conflicts >= self.retry.max_attempts:
                    record_event("contended")
                    logger.error(
                        f"Event {event.identity} dropped after {conflicts} conflicting writes",
                        extra=log_extra,
                    )
                    raise ConversationContendedError(
                        event.conversation_id, event.source_seq, attempts
                    ) from e
                logger.info(
                    f"Conflict on {event.identity} (expected {e.expected}, found {e.actual}), retrying",
                    extra=log_extra,
                )
                await self._sleep(self.retry.conflict_delay(conflicts))
            except BackendUnavailableError as e:
                outages += 1
                record_retry(self.store.name, "unavailable")
                if outages >= self.retry.unavailable_max_attempts:
                    record_event("unavailable")
                    logger.error(
                        f"Backend {self.store.name} unavailable for {event.identity}: {e}",
                        extra=log_extra,
                    )
                    e.conversation_id = event.conversation_id
                    e.source_seq = event.source_seq
                    raise
                logger.warning(
                    f"Backend {self.store.name} unavailable for {event.identity}, retrying: {e}",
                    extra=log_extra,
                )
                await self._sleep(self.retry.unavailable_delay(outages))

        result.attempts = attempts
        record_dispatch_latency(time.perf_counter() - start)

        if result.stale:
            record_event("stale")
            logger.warning(
                f"Stale event {event.identity} not applied: conversation is already at "
                f"seq {result.state.last_applied_seq}",
                extra=log_extra,
            )
            return result

        if result.duplicate:
            record_event("duplicate")
            logger.info(f"Duplicate event {event.identity} dropped", extra=log_extra)
            return result

        if not result.written:
            record_event("unchanged")
            return result

        record_event("applied")
        self._schedule_delivery(result.deliverable)
        await self._audit(event)
        return result

    async def _cycle(self, event: Event) -> DispatchResult:
        timeout = self.retry.request_timeout
        current = await self.store.get(event.conversation_id, timeout=timeout)
        expected = current.last_applied_seq if current is not None else None
        state = current or ConversationState.initial(event.conversation_id, event.received_at)

        if event.source_seq <= state.last_applied_seq:
            stale = event.source_seq < state.last_applied_seq and not await self._was_logged(event)
            return DispatchResult(
                event=event,
                state=state,
                actions=[Action.noop(event.conversation_id)],
                duplicate=not stale,
                stale=stale,
            )

        next_state, actions = self.engine.apply(state, event)
        if next_state == state:
            # Closed conversations: nothing to persist
            return DispatchResult(event=event, state=state, actions=actions)

        await self.store.put(event.conversation_id, next_state, expected, timeout=timeout)
        return DispatchResult(event=event, state=next_state, actions=actions, written=True)

    async def _was_logged(self, event: Event) -> bool:
        """Whether the audit log holds a row for this event's sequence."""
        rows = await with_deadline(
            self.store.list_events(event.conversation_id),
            self.retry.request_timeout,
            "list_events",
            event.conversation_id,
            self.store.name,
        )
        return any(row["source_seq"] == event.source_seq for row in rows)

    async def _audit(self, event: Event) -> None:
        try:
            await self.store.append_log(
                event.conversation_id, event, timeout=self.retry.request_timeout
            )
        except Exception:
            # The state write already committed; the audit trail is best effort.
            record_audit_failure(self.store.name)
            logger.exception(
                f"Audit log write failed for {event.identity}",
                extra={"conversation_id": event.conversation_id, "source_seq": event.source_seq},
            )

    # ── Delivery ──────────────────────────────────────────────────

    def _schedule_delivery(self, actions: List[Action]) -> None:
        for action in actions:
            task = asyncio.create_task(self._deliver(action))
            self._deliveries.add(task)
            task.add_done_callback(self._deliveries.discard)

    async def _deliver(self, action: Action) -> None:
        try:
            result = await self.delivery.deliver(action)
        except DeliveryError as e:
            record_delivery(action.kind.value, False)
            logger.error(
                f"Delivery of {action.kind.value} to {action.conversation_id} failed: {e}",
                extra={"conversation_id": action.conversation_id},
            )
            return
        except Exception:
            record_delivery(action.kind.value, False)
            logger.exception(
                f"Delivery of {action.kind.value} to {action.conversation_id} raised",
                extra={"conversation_id": action.conversation_id},
            )
            return
        record_delivery(action.kind.value, result.success)
        if not result.success:
            logger.error(
                f"Delivery of {action.kind.value} to {action.conversation_id} failed: {result.error}",
                extra={"conversation_id": action.conversation_id},
            )

    async def wait_for_deliveries(self) -> None:
        if self._deliveries:
            await asyncio.gather(*list(self._deliveries), return_exceptions=True)

    # ── Ordered intake ────────────────────────────────────────────

    async def submit(self, event: Event) -> DispatchResult:
        """
        Dispatch through the per-conversation reorder buffer.

        Events for one conversation that arrive within reorder_window of
        each other are applied in ascending source_seq.
        """
        future = asyncio.get_running_loop().create_future()
        buffer = self._buffers.get(event.conversation_id)
        if buffer is None:
            buffer = self._buffers[event.conversation_id] = _ReorderBuffer()
        heapq.heappush(buffer.heap, (event.source_seq, next(self._arrival), event, future))
        if buffer.task is None:
            buffer.task = asyncio.create_task(self._drain(event.conversation_id, buffer))
        return await future

    async def _drain(self, conversation_id: str, buffer: _ReorderBuffer) -> None:
        try:
            await asyncio.sleep(self.reorder_window)
            while buffer.heap:
                _, _, event, future = heapq.heappop(buffer.heap)
                if future.cancelled():
                    continue
                try:
                    result = await self.dispatch(event)
                except Exception as e:
                    if future.done():
                        logger.exception(
                            f"Dispatch of {event.identity} failed after its caller went away",
                            extra={"conversation_id": conversation_id},
                        )
                    else:
                        future.set_exception(e)
                else:
                    if not future.done():
                        future.set_result(result)
        finally:
            if self._buffers.get(conversation_id) is buffer:
                del self._buffers[conversation_id]

    @property
    def pending_conversations(self) -> int:
        return len(self._buffers)

    async def aclose(self) -> None:
        """Wait for buffered events and in-flight deliveries."""
        drainers = [b.task for b in self._buffers.values() if b.task is not None]
        if drainers:
            await asyncio.gather(*drainers, return_exceptions=True)
        await self.wait_for_deliveries()
