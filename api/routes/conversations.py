"""
Conversation state lookup.
"""

import logging

from fastapi import APIRouter, HTTPException, Request

from ..deps import get_context
from conversation.errors import BackendUnavailableError

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/conversations/{conversation_id}")
async def get_conversation(conversation_id: str, request: Request):
    context = get_context(request)
    try:
        state = await context.store.get(
            conversation_id, timeout=context.settings.request_timeout
        )
    except BackendUnavailableError as e:
        raise HTTPException(status_code=503, detail=str(e))

    if state is None:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return state.to_dict()
