"""
Conversation message API endpoints.
Text turns run through the same orchestrator as voice turns.
"""

import base64
import logging

from fastapi import APIRouter, Depends

from ..dependencies import Services, get_services
from ..models import MessageOut, TextTurnRequest, TextTurnResponse
from .responses import api_response

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sessions", tags=["messages"])


def _message_out(record) -> MessageOut:
    return MessageOut(
        id=record.id,
        session_id=record.session_id,
        role=record.role,
        text=record.text,
        audio_url=record.audio_url,
        created_at=record.created_at.isoformat() if record.created_at else None,
    )


@router.post("/{session_id}/messages", status_code=201)
async def create_text_turn(
    session_id: str,
    body: TextTurnRequest,
    services: Services = Depends(get_services),
):
    """
    Send a typed user message and get the bot's reply.

    The turn holds the session's usage accounting open until it finishes;
    it is flushed once no voice connection or other turn still holds it.
    """
    session = await services.orchestrator.validate_session(session_id)

    services.ledger.acquire(session.id, user_id=session.agent.user_id, agent_id=session.agent.id)
    try:
        result = await services.orchestrator.produce_turn(session.id, body.text)
    finally:
        await services.ledger.release(session.id)

    logger.info(f"💬 Text turn for session {session.id}: cached={result.cached}")

    response = TextTurnResponse(
        user_message=_message_out(result.user_message),
        bot_message=_message_out(result.bot_message),
        cached=result.cached,
        audio_data=base64.b64encode(result.audio_bytes).decode("ascii") if result.audio_bytes else None,
    )
    return api_response(response.model_dump(), "Message created successfully")


@router.get("/{session_id}/messages")
async def list_session_messages(
    session_id: str,
    services: Services = Depends(get_services),
):
    messages = await services.store.list_messages(session_id)
    return api_response(
        [_message_out(m).model_dump() for m in messages],
        "Session messages fetched successfully" if messages else "No messages found for this session",
    )
