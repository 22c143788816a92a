# gateway/services/sessions.py
"""
Per-session chat history.

Each session id owns an ordered list of messages. Mutations for one session
are serialized by that session's asyncio.Lock; different sessions never
block each other.
"""
import asyncio
import logging
import time
import weakref
from typing import Dict, List, Literal

from pydantic import BaseModel

logger = logging.getLogger(__name__)


class SessionMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str
    timestamp: int


class SessionStore:
    def __init__(self):
        self._messages: Dict[str, List[SessionMessage]] = {}
        # Entries go away once no coroutine holds or waits on the lock.
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    async def get_messages(self, session_id: str) -> List[SessionMessage]:
        async with self._lock(session_id):
            return list(self._messages.get(session_id, []))

    async def append(self, session_id: str, role: str, content: str) -> SessionMessage:
        """Append a message, stamped with the server's clock (ms)."""
        message = SessionMessage(role=role, content=content, timestamp=int(time.time() * 1000))
        async with self._lock(session_id):
            self._messages.setdefault(session_id, []).append(message)
        logger.debug(f"Session {session_id}: appended {role} message")
        return message

    async def clear(self, session_id: str) -> None:
        async with self._lock(session_id):
            self._messages.pop(session_id, None)
        logger.info(f"Session {session_id} cleared")
