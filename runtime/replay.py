"""
Event replay CLI.

Feeds recorded transport payloads through the normal pipeline, in file
order. Replaying the same file twice leaves state unchanged, since every
event is already applied.

Usage:
    python -m runtime.replay --file events.jsonl
    python -m runtime.replay --file events.jsonl --backend sheet --log-level DEBUG

Each line is a JSON object:
    {"transport": "web", "payload": {...} | "raw string", "sequence": 7, "delivered_at": "..."}
"""

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from config.settings import get_settings
from conversation.errors import ConversationBotError
from conversation.normalizer import SourceMeta
from .context import BotContext, build_context

logger = logging.getLogger(__name__)


@dataclass
class ReplaySummary:
    applied: int = 0
    duplicates: int = 0
    stale: int = 0
    unchanged: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.applied + self.duplicates + self.stale + self.unchanged + self.failed


def _encode_payload(payload: Any) -> bytes:
    if isinstance(payload, str):
        return payload.encode("utf-8")
    return json.dumps(payload).encode("utf-8")


def _source_meta(record: Dict[str, Any]) -> SourceMeta:
    delivered_at = record.get("delivered_at")
    return SourceMeta(
        transport=str(record.get("transport", "")),
        delivered_at=datetime.fromisoformat(delivered_at) if delivered_at else None,
        sequence=record.get("sequence"),
    )


def load_records(path: Path) -> List[Dict[str, Any]]:
    records = []
    with open(path, encoding="utf-8") as f:
        for line_no, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                records.append(json.loads(line))
            except json.JSONDecodeError as e:
                raise ValueError(f"{path}:{line_no}: invalid JSON ({e})")
    return records


class ReplayPipeline:
    """Replays recorded payloads through a bot context."""

    def __init__(self, context: BotContext):
        self.context = context

    async def replay(self, records: Iterable[Dict[str, Any]]) -> ReplaySummary:
        summary = ReplaySummary()
        for index, record in enumerate(records, start=1):
            try:
                event = self.context.normalizer.normalize(
                    _encode_payload(record.get("payload", "")), _source_meta(record)
                )
                result = await self.context.dispatcher.dispatch(event)
            except (ConversationBotError, ValueError) as e:
                summary.failed += 1
                summary.errors.append(f"record {index}: {e}")
                logger.error(f"Replay of record {index} failed: {e}")
                continue

            if result.stale:
                summary.stale += 1
            elif result.duplicate:
                summary.duplicates += 1
            elif result.written:
                summary.applied += 1
            else:
                summary.unchanged += 1

        await self.context.dispatcher.wait_for_deliveries()
        logger.info(
            f"Replay finished: {summary.applied} applied, {summary.duplicates} duplicates, "
            f"{summary.stale} stale, {summary.unchanged} unchanged, {summary.failed} failed"
        )
        return summary


async def run(path: Path, backend: Optional[str] = None) -> ReplaySummary:
    settings = get_settings()
    if backend:
        settings = settings.model_copy(update={"backend_kind": backend})
    context = await build_context(settings)
    try:
        return await ReplayPipeline(context).replay(load_records(path))
    finally:
        await context.aclose()


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Replay recorded bot events")
    parser.add_argument("--file", required=True, help="JSON-lines file of recorded payloads")
    parser.add_argument("--backend", choices=["local", "sheet"], help="Override BACKEND_KIND")
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    path = Path(args.file)
    if not path.exists():
        logger.error(f"File not found: {path}")
        return 1

    summary = asyncio.run(run(path, args.backend))
    print(
        f"applied={summary.applied} duplicates={summary.duplicates} stale={summary.stale} "
        f"unchanged={summary.unchanged} failed={summary.failed}"
    )
    return 1 if summary.failed else 0


if __name__ == "__main__":
    sys.exit(main())
