"""
Broadcast interface shared by the API process and standalone workers.

Components that push events to clients depend on this protocol and receive
a concrete implementation at construction time: the in-process
ConnectionManager inside the API, or a RedisBroadcaster in worker processes
that have no sockets of their own.
"""
from typing import Any, Dict, Optional, Protocol

GLOBAL_ROOM = "global"


def user_room(user_id: str) -> str:
    return f"user:{user_id}"


def chat_room(chat_id: str) -> str:
    return f"chat:{chat_id}"


def event_frame(event: str, data: Dict[str, Any]) -> Dict[str, Any]:
    """Wire frame for a socket event."""
    return {"event": event, "data": data}


class Broadcaster(Protocol):
    """Addressed, best-effort event delivery."""

    async def emit_to_user(self, user_id: str, event: str, data: Dict[str, Any]) -> int:
        ...

    async def emit_to_chat(
        self,
        chat_id: str,
        event: str,
        data: Dict[str, Any],
        exclude_session_id: Optional[str] = None
    ) -> int:
        ...

    async def emit_to_all(self, event: str, data: Dict[str, Any]) -> int:
        ...
