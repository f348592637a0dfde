"""
Backend selection for the conversation bot.

The backend is chosen once per process from configuration; every
conversation in the process uses the same adapter instance.
"""

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Dict

from config.settings import Settings
from database.session import Database
from .base import StorageAdapter
from .local_store import LocalStore
from .locks import KeyedLocks
from .sheet_store import SheetStore, open_spreadsheet

logger = logging.getLogger(__name__)


class BackendKind(Enum):
    LOCAL = "local"
    SHEET = "sheet"


async def _create_local(settings: Settings, locks: KeyedLocks) -> StorageAdapter:
    database = Database(settings.database_url, pool_size=settings.database_pool_size)
    await database.init()
    return LocalStore(database, default_timeout=settings.request_timeout)


async def _create_sheet(settings: Settings, locks: KeyedLocks) -> StorageAdapter:
    if not settings.sheet_spreadsheet_id:
        raise ValueError("SHEET_SPREADSHEET_ID is required when BACKEND_KIND=sheet")
    spreadsheet = await asyncio.to_thread(
        open_spreadsheet, settings.sheet_credentials_file, settings.sheet_spreadsheet_id
    )
    return await SheetStore.open(
        spreadsheet,
        locks,
        state_title=settings.sheet_state_worksheet,
        log_title=settings.sheet_log_worksheet,
        default_timeout=settings.request_timeout,
    )


STORE_FACTORIES: Dict[BackendKind, Callable[[Settings, KeyedLocks], Awaitable[StorageAdapter]]] = {
    BackendKind.LOCAL: _create_local,
    BackendKind.SHEET: _create_sheet,
}


def parse_backend_kind(value: str) -> BackendKind:
    try:
        return BackendKind(value.strip().lower())
    except ValueError:
        valid = ", ".join(kind.value for kind in BackendKind)
        raise ValueError(f"Unknown backend kind {value!r}. Must be one of: {valid}")


async def create_store(settings: Settings, locks: KeyedLocks) -> StorageAdapter:
    """Build the configured storage adapter."""
    kind = parse_backend_kind(settings.backend_kind)
    store = await STORE_FACTORIES[kind](settings, locks)
    logger.info(f"Storage backend ready: {kind.value}")
    return store
