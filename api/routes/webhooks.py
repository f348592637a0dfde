"""
Webhook Routes for the conversation bot.

One endpoint per transport. The raw body is handed to the normalizer
untouched, so each transport keeps its own wire format (JSON for web,
telegram and system; form-encoded for twilio).
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Header, HTTPException, Request
from pydantic import BaseModel

from ..deps import get_context
from conversation.dispatcher import DispatchResult
from conversation.errors import (
    BackendUnavailableError,
    ConversationContendedError,
    MalformedPayloadError,
    UnsupportedSourceTypeError,
)
from conversation.normalizer import SourceMeta, utc_now

logger = logging.getLogger(__name__)

router = APIRouter()


# ── Response Models ───────────────────────────────────────────────

class ActionOut(BaseModel):
    conversation_id: str
    kind: str
    payload: str


class WebhookResponse(BaseModel):
    status: str
    conversation_id: str
    source_seq: int
    duplicate: bool
    stale: bool = False
    state_tag: str
    actions: List[ActionOut] = []


def _status(result: DispatchResult) -> str:
    if result.stale:
        return "stale"
    if result.duplicate:
        return "duplicate"
    return "accepted"


# ── Endpoints ─────────────────────────────────────────────────────

@router.post("/webhooks/{transport}", response_model=WebhookResponse)
async def receive_event(
    transport: str,
    request: Request,
    x_source_seq: Optional[int] = Header(default=None),
):
    """
    Receive one transport payload and apply it to its conversation.

    X-Source-Seq supplies the sequence for transports whose payload
    carries none (twilio).
    """
    context = get_context(request)
    raw = await request.body()
    meta = SourceMeta(transport=transport, delivered_at=utc_now(), sequence=x_source_seq)

    try:
        event = context.normalizer.normalize(raw, meta)
    except UnsupportedSourceTypeError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except MalformedPayloadError as e:
        logger.warning(f"Rejected {transport} payload: {e}")
        raise HTTPException(status_code=422, detail=str(e))

    try:
        result = await context.dispatcher.submit(event)
    except ConversationContendedError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except BackendUnavailableError as e:
        raise HTTPException(status_code=503, detail=str(e))

    return WebhookResponse(
        status=_status(result),
        conversation_id=event.conversation_id,
        source_seq=event.source_seq,
        duplicate=result.duplicate,
        stale=result.stale,
        state_tag=result.state.state_tag.value,
        actions=[ActionOut(**a.to_dict()) for a in result.deliverable],
    )
