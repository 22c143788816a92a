# gateway/api/models/sessions.py
from typing import List, Literal
from pydantic import BaseModel

from gateway.services.sessions import SessionMessage


class MessageRequest(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class MessagesResponse(BaseModel):
    messages: List[SessionMessage]


class SuccessResponse(BaseModel):
    success: bool = True
