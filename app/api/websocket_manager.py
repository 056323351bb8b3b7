"""
WebSocket Connection Manager for real-time chat events.

Tracks live connection sessions, maps each to an authenticated operator,
manages room membership (one personal room per user, one room per open
chat) and delivers events to every member of a room.
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Set
from fastapi import WebSocket

from api.metrics import (
    websocket_connections_total, websocket_disconnections_total,
    websocket_events_sent_total, websocket_events_dropped_total,
    update_websocket_metrics
)
from core.security import Identity
from services.broadcaster import GLOBAL_ROOM, chat_room, event_frame, user_room

logger = logging.getLogger(__name__)


@dataclass
class ConnectionSession:
    """One live socket bound to exactly one authenticated user."""
    session_id: str
    websocket: WebSocket
    identity: Identity
    rooms: Set[str] = field(default_factory=set)
    connected_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def user_id(self) -> str:
        return self.identity.user_id


class ConnectionManager:
    """
    Connection registry and room broadcaster.

    Features:
    - Every admitted session joins its user room (user:{userId})
    - join/leave of chat rooms (chat:{chatId}) are idempotent
    - Disconnect drops all memberships at once
    - Emission to an empty room is dropped silently
    - A failed send removes that stale session without affecting the others

    Membership for a session is only changed by that session's own events,
    so the event loop's cooperative scheduling is enough for consistency.
    """

    def __init__(self):
        """Initialize connection manager with empty tracking."""
        # {session_id: ConnectionSession}
        self.sessions: Dict[str, ConnectionSession] = {}

        # {room: {session_id: None}} - dict keeps join order for deterministic fan-out
        self.rooms: Dict[str, Dict[str, None]] = {}

        logger.info("ConnectionManager initialized")

    async def connect(self, websocket: WebSocket, identity: Identity) -> ConnectionSession:
        """
        Accept an authenticated WebSocket and register its session.

        Args:
            websocket: WebSocket connection to accept
            identity: Identity returned by the session authenticator

        Returns:
            The new session, already a member of its user room
        """
        await websocket.accept()

        session = ConnectionSession(
            session_id=str(uuid.uuid4()),
            websocket=websocket,
            identity=identity
        )
        self.sessions[session.session_id] = session
        self.join(session.session_id, user_room(identity.user_id))

        websocket_connections_total.labels(instance="api").inc()
        update_websocket_metrics(self)

        logger.info(
            f"User {identity.user_id} connected via WebSocket "
            f"(session {session.session_id}, total sessions: {len(self.sessions)})"
        )
        return session

    def disconnect(self, session_id: str, reason: str = "normal") -> None:
        """
        Remove a session and every room membership it holds.

        Args:
            session_id: Session to remove
            reason: Disconnect reason label for metrics
        """
        session = self.sessions.pop(session_id, None)
        if session is None:
            return

        for room in list(session.rooms):
            self._remove_member(room, session_id)
        session.rooms.clear()

        websocket_disconnections_total.labels(instance="api", reason=reason).inc()
        update_websocket_metrics(self)

        logger.info(
            f"User {session.user_id} disconnected from WebSocket "
            f"(session {session_id}, reason: {reason})"
        )

    def join(self, session_id: str, room: str) -> bool:
        """
        Add a session to a room. Joining a room twice is a no-op.

        Args:
            session_id: Session joining
            room: Room name

        Returns:
            True if the membership was created, False if it already existed
        """
        session = self.sessions.get(session_id)
        if session is None:
            return False
        if room in session.rooms:
            return False

        session.rooms.add(room)
        self.rooms.setdefault(room, {})[session_id] = None
        logger.debug(f"Session {session_id} joined {room}")
        return True

    def leave(self, session_id: str, room: str) -> bool:
        """
        Remove a session from a room. Leaving a room not joined is a no-op.

        Returns:
            True if a membership was removed
        """
        session = self.sessions.get(session_id)
        if session is None or room not in session.rooms:
            return False

        session.rooms.discard(room)
        self._remove_member(room, session_id)
        logger.debug(f"Session {session_id} left {room}")
        return True

    def join_chat(self, session_id: str, chat_id: str) -> bool:
        return self.join(session_id, chat_room(chat_id))

    def leave_chat(self, session_id: str, chat_id: str) -> bool:
        return self.leave(session_id, chat_room(chat_id))

    def is_member(self, session_id: str, room: str) -> bool:
        return session_id in self.rooms.get(room, {})

    def room_members(self, room: str) -> List[str]:
        """Session IDs currently in a room, in join order."""
        return list(self.rooms.get(room, {}))

    async def emit_to_room(
        self,
        room: str,
        event: str,
        data: Dict[str, Any],
        exclude_session_id: Optional[str] = None
    ) -> int:
        """
        Deliver an event to every current member of a room.

        Best effort: no acknowledgement, and an empty room drops the event.
        Members receive events in emission order.

        Args:
            room: Target room
            event: Event name
            data: JSON-serializable payload
            exclude_session_id: Optional session to skip (typically the sender)

        Returns:
            Number of sessions the event was written to
        """
        members = [sid for sid in self.room_members(room) if sid != exclude_session_id]
        if not members:
            websocket_events_dropped_total.labels(event=event).inc()
            logger.debug(f"No members in {room}, dropped {event}")
            return 0

        return await self._deliver(members, event, data, scope=room)

    async def emit_to_user(self, user_id: str, event: str, data: Dict[str, Any]) -> int:
        return await self.emit_to_room(user_room(user_id), event, data)

    async def emit_to_chat(
        self,
        chat_id: str,
        event: str,
        data: Dict[str, Any],
        exclude_session_id: Optional[str] = None
    ) -> int:
        return await self.emit_to_room(chat_room(chat_id), event, data, exclude_session_id)

    async def emit_to_all(self, event: str, data: Dict[str, Any]) -> int:
        """Deliver an event to every connected session, regardless of rooms."""
        members = list(self.sessions)
        if not members:
            websocket_events_dropped_total.labels(event=event).inc()
            return 0
        return await self._deliver(members, event, data, scope=GLOBAL_ROOM)

    async def send_to_session(self, session_id: str, event: str, data: Dict[str, Any]) -> bool:
        """
        Deliver an event to a single session (connection-scoped errors, pong).

        Returns:
            True if the frame was written
        """
        if session_id not in self.sessions:
            return False
        return await self._deliver([session_id], event, data, scope=f"session:{session_id}") == 1

    async def _deliver(self, session_ids: List[str], event: str, data: Dict[str, Any], scope: str) -> int:
        frame = event_frame(event, data)
        sent_count = 0
        stale_sessions = []

        for session_id in session_ids:
            session = self.sessions.get(session_id)
            if session is None:
                continue
            try:
                await session.websocket.send_json(frame)
                sent_count += 1
            except Exception as e:
                logger.error(f"Error sending {event} to session {session_id} ({scope}): {e}")
                stale_sessions.append(session_id)

        for session_id in stale_sessions:
            self.disconnect(session_id, reason="send_failed")

        if sent_count:
            websocket_events_sent_total.labels(event=event, instance="api").inc(sent_count)
            logger.debug(f"Broadcast {event} to {scope}: {sent_count} sessions")
        return sent_count

    def _remove_member(self, room: str, session_id: str) -> None:
        members = self.rooms.get(room)
        if members is None:
            return
        members.pop(session_id, None)
        if not members:
            del self.rooms[room]

    def get_connection_count(self) -> int:
        return len(self.sessions)

    def get_user_count(self) -> int:
        return len({session.user_id for session in self.sessions.values()})

    def get_room_count(self) -> int:
        return len(self.rooms)
