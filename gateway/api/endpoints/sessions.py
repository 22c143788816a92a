# gateway/api/endpoints/sessions.py
from fastapi import APIRouter, Request
import logging

from gateway.services.sessions import SessionStore
from gateway.api.models.sessions import MessageRequest, MessagesResponse, SuccessResponse

logger = logging.getLogger(__name__)

router = APIRouter()


def get_sessions(request: Request) -> SessionStore:
    return request.app.state.sessions


@router.get("/{session_id}/messages", response_model=MessagesResponse)
async def get_messages(session_id: str, request: Request) -> MessagesResponse:
    return MessagesResponse(messages=await get_sessions(request).get_messages(session_id))


@router.post("/{session_id}/messages", response_model=SuccessResponse)
async def post_message(session_id: str, message: MessageRequest, request: Request) -> SuccessResponse:
    """Append a message; the server sets its timestamp."""
    await get_sessions(request).append(session_id, message.role, message.content)
    return SuccessResponse()


@router.post("/{session_id}/clear", response_model=SuccessResponse)
async def clear_session(session_id: str, request: Request) -> SuccessResponse:
    await get_sessions(request).clear(session_id)
    return SuccessResponse()
