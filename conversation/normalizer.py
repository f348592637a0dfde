"""
Event Normalizer for the conversation bot.

Turns a transport-specific payload (Twilio WhatsApp form post, Telegram
update, plain JSON from the web widget or internal systems) into a
canonical Event. Pure apart from the injected clock.
"""

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional
from urllib.parse import parse_qs

from .errors import MalformedPayloadError, UnsupportedSourceTypeError
from .models import Event, EventType

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SourceMeta:
    """Transport metadata delivered alongside the raw payload."""
    transport: str
    delivered_at: Optional[datetime] = None
    sequence: Optional[int] = None


@dataclass(frozen=True)
class _Parsed:
    conversation_id: str
    type: EventType
    payload: str
    source_seq: int
    media_url: Optional[str] = None


_TYPE_NAMES = {
    "message": EventType.MESSAGE,
    "command": EventType.COMMAND,
    "system": EventType.SYSTEM,
    "reopen": EventType.REOPEN,
}


# ── Field helpers ─────────────────────────────────────────────────

def _load_json(raw: bytes, transport: str) -> Dict[str, Any]:
    try:
        data = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise MalformedPayloadError(f"{transport} payload is not valid JSON: {e}")
    if not isinstance(data, dict):
        raise MalformedPayloadError(f"{transport} payload must be a JSON object")
    return data


def _require_str(data: Dict[str, Any], key: str) -> str:
    value = data.get(key)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        value = str(value)
    if not isinstance(value, str) or not value.strip():
        raise MalformedPayloadError(f"Missing required field: {key}")
    return value.strip()


def _require_seq(value: Any, conversation_id: Optional[str] = None) -> int:
    if isinstance(value, bool):
        value = None
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if not isinstance(value, int) or value < 1:
        raise MalformedPayloadError(
            "Missing or invalid sequence number", conversation_id=conversation_id
        )
    return value


def _text_type(text: str) -> EventType:
    return EventType.COMMAND if text.startswith("/") else EventType.MESSAGE


def _clean_command(text: str) -> str:
    # Telegram group commands look like /start@my_bot
    head, _, rest = text.partition(" ")
    head = head.split("@", 1)[0].lower()
    return f"{head} {rest}".strip()


# ── Transport parsers ─────────────────────────────────────────────

def parse_web(raw: bytes, meta: SourceMeta) -> _Parsed:
    data = _load_json(raw, "web")
    conversation_id = _require_str(data, "conversation_id")
    text = data.get("text")
    if not isinstance(text, str):
        raise MalformedPayloadError("Missing required field: text", conversation_id=conversation_id)
    text = text.strip()
    seq = _require_seq(data.get("seq", meta.sequence), conversation_id)

    type_name = data.get("type")
    if type_name is None:
        event_type = _text_type(text)
    elif type_name in ("message", "command", "system"):
        event_type = _TYPE_NAMES[type_name]
    else:
        raise MalformedPayloadError(
            f"Unknown event type: {type_name!r}", conversation_id=conversation_id
        )
    if event_type == EventType.COMMAND:
        text = _clean_command(text)
    if not text:
        raise MalformedPayloadError("Empty message text", conversation_id=conversation_id)
    media_url = data.get("media_url") or None
    if media_url is not None and not isinstance(media_url, str):
        raise MalformedPayloadError("media_url must be a string", conversation_id=conversation_id)
    return _Parsed(conversation_id, event_type, text, seq, media_url)


def parse_twilio(raw: bytes, meta: SourceMeta) -> _Parsed:
    try:
        form = parse_qs(raw.decode("utf-8"), keep_blank_values=True)
    except UnicodeDecodeError as e:
        raise MalformedPayloadError(f"twilio payload is not valid form data: {e}")
    fields = {key: values[0] for key, values in form.items() if values}

    sender = fields.get("From", "").strip()
    if not sender:
        raise MalformedPayloadError("Missing required field: From")
    conversation_id = sender[len("whatsapp:"):] if sender.startswith("whatsapp:") else sender

    try:
        num_media = int(fields.get("NumMedia") or 0)
    except ValueError:
        raise MalformedPayloadError("NumMedia is not a number", conversation_id=conversation_id)
    media_url = fields.get("MediaUrl0") if num_media > 0 else None

    body = fields.get("Body", "").strip()
    if not body and not media_url:
        raise MalformedPayloadError("Empty message without media", conversation_id=conversation_id)

    # Twilio has no per-conversation counter; fall back to delivery time.
    if meta.sequence is not None:
        seq = _require_seq(meta.sequence, conversation_id)
    elif meta.delivered_at is not None:
        seq = int(meta.delivered_at.timestamp() * 1_000_000)
    else:
        raise MalformedPayloadError(
            "twilio payload needs a sequence or delivery timestamp",
            conversation_id=conversation_id,
        )

    event_type = _text_type(body)
    if event_type == EventType.COMMAND:
        body = _clean_command(body)
    return _Parsed(conversation_id, event_type, body, seq, media_url)


def parse_telegram(raw: bytes, meta: SourceMeta) -> _Parsed:
    data = _load_json(raw, "telegram")
    message = data.get("message") or data.get("edited_message")
    if not isinstance(message, dict):
        raise MalformedPayloadError("Telegram update carries no message")
    chat = message.get("chat")
    if not isinstance(chat, dict) or chat.get("id") is None:
        raise MalformedPayloadError("Missing required field: message.chat.id")
    conversation_id = str(chat["id"])
    seq = _require_seq(data.get("update_id"), conversation_id)

    text = message.get("text") or message.get("caption") or ""
    if not isinstance(text, str):
        raise MalformedPayloadError("Message text must be a string", conversation_id=conversation_id)
    text = text.strip()
    media_url = None
    photos = message.get("photo")
    if isinstance(photos, list) and photos:
        # largest size comes last; file ids are resolved by the delivery side
        largest = photos[-1]
        file_id = largest.get("file_id") if isinstance(largest, dict) else None
        if not isinstance(file_id, str) or not file_id:
            raise MalformedPayloadError("Photo entry has no file_id", conversation_id=conversation_id)
        media_url = f"tg-file:{file_id}"
    if not text and not media_url:
        raise MalformedPayloadError("Empty message without media", conversation_id=conversation_id)

    event_type = _text_type(text)
    if event_type == EventType.COMMAND:
        text = _clean_command(text)
    return _Parsed(conversation_id, event_type, text, seq, media_url)


def parse_system(raw: bytes, meta: SourceMeta) -> _Parsed:
    data = _load_json(raw, "system")
    conversation_id = _require_str(data, "conversation_id")
    seq = _require_seq(data.get("seq", meta.sequence), conversation_id)
    signal = data.get("event")
    if not isinstance(signal, str) or not signal.strip():
        raise MalformedPayloadError("Missing required field: event", conversation_id=conversation_id)
    event_type = EventType.REOPEN if data.get("type") == "reopen" else EventType.SYSTEM
    return _Parsed(conversation_id, event_type, signal.strip().lower(), seq)


PARSERS: Dict[str, Callable[[bytes, SourceMeta], _Parsed]] = {
    "web": parse_web,
    "twilio": parse_twilio,
    "telegram": parse_telegram,
    "system": parse_system,
}


class EventNormalizer:
    """
    Converts raw transport payloads into Events.

    The clock is injected so received_at is reproducible in tests.
    """

    def __init__(
        self,
        clock: Clock,
        parsers: Optional[Dict[str, Callable[[bytes, SourceMeta], _Parsed]]] = None,
    ):
        self._clock = clock
        self._parsers = dict(parsers or PARSERS)

    @property
    def transports(self):
        return sorted(self._parsers)

    def normalize(self, raw_payload: bytes, source_meta: SourceMeta) -> Event:
        parser = self._parsers.get(source_meta.transport.lower())
        if parser is None:
            raise UnsupportedSourceTypeError(source_meta.transport)

        if isinstance(raw_payload, str):
            raw_payload = raw_payload.encode("utf-8")
        parsed = parser(raw_payload, source_meta)

        return Event(
            conversation_id=parsed.conversation_id,
            type=parsed.type,
            payload=parsed.payload,
            received_at=self._clock(),
            source_seq=parsed.source_seq,
            source=source_meta.transport.lower(),
            media_url=parsed.media_url,
        )
