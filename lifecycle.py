import threading
from typing import Dict, Optional, Union

from pydantic import BaseModel, ConfigDict

from backend import SignalingBackend
from errors import CleanupFailure
from redis_keys import TOPIC_ROOM_PREFIX
from registry import RoomRegistry
from schemas.signaling import SignalMessage, UserDisconnectedData
from logging_config import get_logger

logger = get_logger(__name__)

DISCONNECT_REASON = "connection-lost"


class SessionEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    session_id: str

class SessionConnected(SessionEvent):
    user_id: Optional[str] = None
    room_id: Optional[str] = None

class SessionDisconnected(SessionEvent):
    # last-known attributes from the transport, used when nothing was bound
    user_id: Optional[str] = None
    room_id: Optional[str] = None

class SessionSubscribed(SessionEvent):
    destination: Optional[str] = None

class SessionUnsubscribed(SessionEvent):
    destination: Optional[str] = None

TransportEvent = Union[SessionConnected, SessionDisconnected, SessionSubscribed, SessionUnsubscribed]


class SessionBinding(BaseModel):
    model_config = ConfigDict(frozen=True)

    session_id: str
    user_id: Optional[str] = None
    room_id: Optional[str] = None


class SessionLifecycleController:
    """Tracks which (user, room) each transport session speaks for and cleans up after it."""

    def __init__(self, registry: RoomRegistry, backend: SignalingBackend):
        self.registry = registry
        self.backend = backend
        self._sessions: Dict[str, SessionBinding] = {}
        self._lock = threading.Lock()
        self._handlers = {
            SessionConnected: self._on_connect,
            SessionDisconnected: self._on_disconnect,
            SessionSubscribed: self._on_subscribe,
            SessionUnsubscribed: self._on_unsubscribe,
        }

    def handle(self, event: TransportEvent):
        handler = self._handlers.get(type(event))
        if handler is None:
            logger.warning(f"Ignoring unknown transport event {type(event).__name__}")
            return
        handler(event)

    def bind(self, session_id: str, user_id: str, room_id: str):
        with self._lock:
            self._sessions[session_id] = SessionBinding(session_id=session_id, user_id=user_id, room_id=room_id)
        logger.debug(f"Session {session_id} bound to user {user_id} in room {room_id}")

    def unbind(self, session_id: str):
        with self._lock:
            if session_id in self._sessions:
                self._sessions[session_id] = SessionBinding(session_id=session_id)
        logger.debug(f"Session {session_id} unbound")

    def binding(self, session_id: str) -> Optional[SessionBinding]:
        with self._lock:
            return self._sessions.get(session_id)

    def active_sessions(self) -> int:
        with self._lock:
            return len(self._sessions)

    def _on_connect(self, event: SessionConnected):
        with self._lock:
            if event.user_id and event.room_id:
                self._sessions[event.session_id] = SessionBinding(
                    session_id=event.session_id, user_id=event.user_id, room_id=event.room_id,
                )
            else:
                self._sessions[event.session_id] = SessionBinding(session_id=event.session_id)

        if event.user_id and event.room_id:
            logger.info(f"Session {event.session_id} connected - user: {event.user_id}, room: {event.room_id}")
        else:
            logger.info(f"Session {event.session_id} connected")

    def _on_disconnect(self, event: SessionDisconnected):
        with self._lock:
            binding = self._sessions.pop(event.session_id, None)
            # transport attributes only stand in for sessions this controller never saw;
            # an unbound session has left explicitly and owns no membership
            if binding is None:
                user_id, room_id = event.user_id, event.room_id
            else:
                user_id, room_id = binding.user_id, binding.room_id
            # a reconnect may already speak for the same user in the same room
            still_connected = any(
                other.user_id == user_id and other.room_id == room_id
                for other in self._sessions.values()
            )

        logger.info(f"Session {event.session_id} disconnected - user: {user_id}, room: {room_id}")
        if not user_id or not room_id:
            return
        if still_connected:
            logger.info(f"User {user_id} is still connected to room {room_id} through another session, keeping membership")
            return

        try:
            was_member = self.registry.room_of(user_id) == room_id
            self.registry.leave(room_id, user_id)
            if was_member and self.registry.participants_of(room_id):
                self.backend.broadcast_to_room(room_id, SignalMessage.build(
                    "user-disconnected",
                    UserDisconnectedData(user_id=user_id, reason=DISCONNECT_REASON),
                    from_user_id=user_id,
                ))
            logger.info(f"Removed user {user_id} from room {room_id} after disconnect")
        except Exception as e:
            failure = CleanupFailure(user_id, room_id, e)
            logger.error(f"{failure}", exc_info=True)

    def _on_subscribe(self, event: SessionSubscribed):
        binding = self.binding(event.session_id)
        user_id = binding.user_id if binding else None
        logger.debug(f"Session {event.session_id} (user: {user_id}) subscribed to {event.destination}")
        if event.destination and event.destination.startswith(TOPIC_ROOM_PREFIX):
            logger.info(f"User {user_id} subscribed to room topic {event.destination[len(TOPIC_ROOM_PREFIX):]}")

    def _on_unsubscribe(self, event: SessionUnsubscribed):
        binding = self.binding(event.session_id)
        user_id = binding.user_id if binding else None
        logger.debug(f"Session {event.session_id} (user: {user_id}) unsubscribed from {event.destination}")
