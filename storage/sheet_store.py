"""
Google Sheets StorageAdapter for the conversation bot.

Layout:
    conversations  | conversation_id | state_tag | attributes | last_applied_seq | updated_at |
    event_log      | conversation_id | source_seq | event_type | payload | received_at | logged_at |

Sheets has no atomic conditional write, so put() re-reads the row and
compares last_applied_seq while holding a process-local lock for that
conversation. Writers in other processes are only detected (as a
ConflictError on their next put), never excluded. Run one writer process
per spreadsheet.

gspread is blocking; every call runs in a worker thread. A timed-out
get or put only stops the caller waiting: the conversation lock stays held
until the thread returns, so a write that lands late is never overtaken
by a later read-check-write in this process.
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import gspread
from gspread.exceptions import APIError, WorksheetNotFound

from conversation.errors import BackendUnavailableError, ConflictError
from conversation.models import ConversationState, Event, StateTag
from .base import with_deadline
from .locks import KeyedLocks

logger = logging.getLogger(__name__)

STATE_HEADER = ["conversation_id", "state_tag", "attributes", "last_applied_seq", "updated_at"]
LOG_HEADER = ["conversation_id", "source_seq", "event_type", "payload", "received_at", "logged_at"]


def _column_letter(n: int) -> str:
    letters = ""
    while n:
        n, rem = divmod(n - 1, 26)
        letters = chr(65 + rem) + letters
    return letters


STATE_LAST_COLUMN = _column_letter(len(STATE_HEADER))


def state_to_row(state: ConversationState) -> List[str]:
    return [
        state.conversation_id,
        state.state_tag.value,
        json.dumps(state.attributes, sort_keys=True, ensure_ascii=False),
        str(state.last_applied_seq),
        state.updated_at.isoformat() if state.updated_at else "",
    ]


def row_to_state(row: List[str]) -> ConversationState:
    cells = list(row) + [""] * (len(STATE_HEADER) - len(row))
    conversation_id, tag, attributes, seq, updated_at = cells[: len(STATE_HEADER)]
    try:
        return ConversationState(
            conversation_id=conversation_id,
            state_tag=StateTag(tag),
            attributes=json.loads(attributes) if attributes else {},
            last_applied_seq=int(seq or 0),
            updated_at=datetime.fromisoformat(updated_at) if updated_at else None,
        )
    except ValueError as e:
        raise BackendUnavailableError(
            f"Unreadable sheet row for conversation {conversation_id}: {e}",
            conversation_id=conversation_id,
            operation="get",
        )


def open_spreadsheet(credentials_file: Optional[str], spreadsheet_id: str) -> gspread.Spreadsheet:
    """Authorize with a service account and open the spreadsheet by key."""
    if credentials_file:
        client = gspread.service_account(filename=credentials_file)
    else:
        client = gspread.service_account()
    return client.open_by_key(spreadsheet_id)


def get_or_create_worksheet(spreadsheet, title: str, header: List[str]):
    try:
        return spreadsheet.worksheet(title)
    except WorksheetNotFound:
        logger.info(f"Creating worksheet {title}")
        return spreadsheet.add_worksheet(title=title, rows=1000, cols=len(header))


class SheetStore:
    """Conversation state store backed by a Google Sheets spreadsheet."""

    name = "sheet"

    def __init__(
        self,
        state_worksheet,
        log_worksheet,
        locks: KeyedLocks,
        default_timeout: Optional[float] = None,
    ):
        self._states = state_worksheet
        self._log = log_worksheet
        self._locks = locks
        self.default_timeout = default_timeout

    @classmethod
    async def open(
        cls,
        spreadsheet,
        locks: KeyedLocks,
        state_title: str = "conversations",
        log_title: str = "event_log",
        default_timeout: Optional[float] = None,
    ) -> "SheetStore":
        state_ws = await asyncio.to_thread(get_or_create_worksheet, spreadsheet, state_title, STATE_HEADER)
        log_ws = await asyncio.to_thread(get_or_create_worksheet, spreadsheet, log_title, LOG_HEADER)
        store = cls(state_ws, log_ws, locks, default_timeout)
        await store.ensure_headers()
        return store

    def _timeout(self, timeout: Optional[float]) -> Optional[float]:
        return timeout if timeout is not None else self.default_timeout

    async def _call(self, fn, *args, operation: str, conversation_id: Optional[str] = None):
        try:
            return await asyncio.to_thread(fn, *args)
        except (APIError, OSError) as e:
            logger.warning(
                f"Sheets {operation} failed: {e}",
                extra={"conversation_id": conversation_id, "backend": self.name},
            )
            raise BackendUnavailableError(
                f"{operation} failed: {e}", conversation_id=conversation_id, operation=operation
            )

    async def ensure_headers(self) -> None:
        for worksheet, header in ((self._states, STATE_HEADER), (self._log, LOG_HEADER)):
            first_row = await self._call(worksheet.row_values, 1, operation="ensure_headers")
            if not first_row:
                end = _column_letter(len(header))
                await self._call(
                    self._update_range, worksheet, f"A1:{end}1", header, operation="ensure_headers"
                )

    # ── Row helpers (run in worker threads) ───────────────────────

    @staticmethod
    def _update_range(worksheet, range_name: str, values: List[str]) -> None:
        worksheet.update(range_name=range_name, values=[values], value_input_option="RAW")

    def _find_row(self, conversation_id: str) -> Tuple[Optional[int], Optional[List[str]]]:
        """Linear scan over column A; returns (1-based row number, cells)."""
        values = self._states.get_all_values()
        found: Optional[Tuple[int, List[str]]] = None
        for index, row in enumerate(values[1:], start=2):
            if row and row[0] == conversation_id:
                if found is None:
                    found = (index, row)
                else:
                    logger.warning(
                        f"Duplicate sheet rows for conversation {conversation_id} "
                        f"(rows {found[0]} and {index}); using the first",
                        extra={"conversation_id": conversation_id, "backend": self.name},
                    )
        if found is None:
            return None, None
        return found

    def _put_sync(
        self,
        conversation_id: str,
        new_state: ConversationState,
        expected: Optional[int],
    ) -> None:
        row_number, cells = self._find_row(conversation_id)
        actual = row_to_state(cells).last_applied_seq if cells else None

        if expected is None:
            if row_number is not None:
                raise ConflictError(conversation_id, expected, actual)
            self._states.append_row(state_to_row(new_state), value_input_option="RAW")
            return

        if row_number is None or actual != expected:
            raise ConflictError(conversation_id, expected, actual)
        self._update_range(
            self._states,
            f"A{row_number}:{STATE_LAST_COLUMN}{row_number}",
            state_to_row(new_state),
        )

    # ── StorageAdapter ────────────────────────────────────────────

    async def _serialized(self, conversation_id: str, fn, *args, operation: str, timeout: Optional[float]):
        """
        Run a row call under the conversation lock.

        The locked section is its own task, so a deadline only abandons the
        caller's wait. The lock stays held until the worker thread returns.
        """
        task = asyncio.ensure_future(self._locked_call(conversation_id, fn, *args, operation=operation))
        try:
            return await with_deadline(
                asyncio.shield(task), self._timeout(timeout), operation, conversation_id, self.name
            )
        except (BackendUnavailableError, asyncio.CancelledError):
            if not task.done():
                task.add_done_callback(self._report_abandoned)
            raise

    async def _locked_call(self, conversation_id: str, fn, *args, operation: str):
        async with self._locks.hold(conversation_id):
            return await self._call(fn, *args, operation=operation, conversation_id=conversation_id)

    def _report_abandoned(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning(f"Sheets call finished after its deadline with an error: {error}")
        else:
            logger.warning("Sheets call finished after its deadline")

    async def get(
        self, conversation_id: str, *, timeout: Optional[float] = None
    ) -> Optional[ConversationState]:
        _, cells = await self._serialized(
            conversation_id, self._find_row, conversation_id, operation="get", timeout=timeout
        )
        return row_to_state(cells) if cells else None

    async def put(
        self,
        conversation_id: str,
        new_state: ConversationState,
        expected_last_applied_seq: Optional[int],
        *,
        timeout: Optional[float] = None,
    ) -> None:
        await self._serialized(
            conversation_id,
            self._put_sync,
            conversation_id,
            new_state,
            expected_last_applied_seq,
            operation="put",
            timeout=timeout,
        )

    async def append_log(
        self, conversation_id: str, event: Event, *, timeout: Optional[float] = None
    ) -> None:
        row = [
            conversation_id,
            str(event.source_seq),
            event.type.value,
            event.payload,
            event.received_at.isoformat(),
            datetime.now(timezone.utc).isoformat(),
        ]
        await with_deadline(
            self._call(
                self._log.append_row,
                row,
                "RAW",
                operation="append_log",
                conversation_id=conversation_id,
            ),
            self._timeout(timeout),
            "append_log",
            conversation_id,
            self.name,
        )

    async def list_events(self, conversation_id: str) -> List[Dict[str, Any]]:
        """Audit rows for a conversation in append order."""
        values = await self._call(self._log.get_all_values, operation="list_events")
        events = []
        for row in values[1:]:
            if row and row[0] == conversation_id:
                events.append({
                    "conversation_id": row[0],
                    "source_seq": int(row[1]),
                    "event_type": row[2],
                    "payload": row[3],
                })
        return events

    async def close(self) -> None:
        # gspread keeps no connection open
        return None
