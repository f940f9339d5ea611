from typing import Optional

from backend import SignalingBackend
from errors import CleanupFailure, InvalidSignalingTargetError, RoomFullError
from lifecycle import SessionLifecycleController
from registry import RoomRegistry
from schemas.signaling import (
    AnswerMessage,
    ErrorData,
    IceCandidateData,
    IceCandidateMessage,
    JoinRoomRequest,
    LeaveRoomRequest,
    OfferMessage,
    RoomStateData,
    SessionDescriptionData,
    SignalMessage,
    UserJoinedData,
    UserLeftData,
    WireModel,
)
from logging_config import get_logger

logger = get_logger(__name__)

ROOM_FULL = "ROOM_FULL"
JOIN_FAILED = "JOIN_FAILED"


class SignalingRelay:
    """Handles join/leave requests and relays offers, answers and ICE candidates.

    Point-to-point messages are only forwarded between two distinct users
    that are currently in the same room. Anything else is dropped without
    telling the sender.
    """

    def __init__(self, registry: RoomRegistry, backend: SignalingBackend, sessions: SessionLifecycleController):
        self.registry = registry
        self.backend = backend
        self.sessions = sessions

    def dispatch(self, tag: str, payload: WireModel, session_id: Optional[str] = None) -> bool:
        """Route a parsed client request by its tag. Returns True if it was accepted."""
        if tag == "room.join":
            return self.handle_join(payload, session_id)
        if tag == "room.leave":
            self.handle_leave(payload, session_id)
            return True
        if tag == "signal.offer":
            return self.handle_offer(payload)
        if tag == "signal.answer":
            return self.handle_answer(payload)
        if tag == "signal.iceCandidate":
            return self.handle_ice_candidate(payload)
        logger.warning(f"Unknown request type {tag!r} from session {session_id}")
        return False

    def handle_join(self, request: JoinRoomRequest, session_id: Optional[str] = None) -> bool:
        user_id, room_id = request.user_id, request.room_id
        logger.info(f"Join request - room: {room_id}, user: {user_id}, session: {session_id}")

        if not user_id or not room_id:
            logger.warning(f"Join rejected: missing user or room id (user={user_id!r}, room={room_id!r})")
            if user_id:
                self._send_error(user_id, JOIN_FAILED, "userId and roomId are required")
            return False

        if not self.registry.can_join(room_id):
            logger.warning(f"Join rejected: room {room_id} is full")
            self._send_error(user_id, ROOM_FULL, f"Room is full (max {self.registry.max_participants} participants)")
            return False

        try:
            participants = self.registry.join(room_id, user_id)
        except RoomFullError as e:
            # lost a race against another join after the can_join check
            logger.warning(f"Join rejected: {e}")
            self._send_error(user_id, ROOM_FULL, f"Room is full (max {e.max_participants} participants)")
            return False
        except Exception as e:
            logger.error(f"Join failed - room: {room_id}, user: {user_id}: {e}", exc_info=True)
            self._send_error(user_id, JOIN_FAILED, "Failed to join room")
            return False

        if session_id:
            self.sessions.bind(session_id, user_id, room_id)

        try:
            self.backend.broadcast_to_room(room_id, SignalMessage.build(
                "user-joined",
                UserJoinedData(participants=participants, new_user_id=user_id, user_agent=request.user_agent),
                from_user_id=user_id,
            ))
            self.backend.send_to_user(user_id, SignalMessage.build(
                "room-state",
                RoomStateData(participants=participants, room_id=room_id, your_user_id=user_id),
                to_user_id=user_id,
            ))
        except Exception as e:
            logger.error(f"Error announcing join of {user_id} to room {room_id}: {e}", exc_info=True)

        logger.info(f"Join complete - room: {room_id}, user: {user_id}, total: {len(participants)}")
        return True

    def handle_leave(self, request: LeaveRoomRequest, session_id: Optional[str] = None):
        user_id, room_id = request.user_id, request.room_id
        logger.info(f"Leave request - room: {room_id}, user: {user_id}, session: {session_id}")
        try:
            self.registry.leave(room_id, user_id)
            binding = self.sessions.binding(session_id) if session_id else None
            if binding is not None and binding.user_id == user_id:
                self.sessions.unbind(session_id)
            self.backend.broadcast_to_room(room_id, SignalMessage.build(
                "user-left",
                UserLeftData(left_user_id=user_id),
                from_user_id=user_id,
            ))
            logger.info(f"Leave complete - room: {room_id}, user: {user_id}")
        except Exception as e:
            failure = CleanupFailure(user_id, room_id, e)
            logger.error(f"{failure}", exc_info=True)

    def handle_offer(self, message: OfferMessage) -> bool:
        return self._relay("offer", message.from_user_id, message.to_user_id, message.room_id,
                           SessionDescriptionData(sdp=message.sdp, room_id=message.room_id))

    def handle_answer(self, message: AnswerMessage) -> bool:
        return self._relay("answer", message.from_user_id, message.to_user_id, message.room_id,
                           SessionDescriptionData(sdp=message.sdp, room_id=message.room_id))

    def handle_ice_candidate(self, message: IceCandidateMessage) -> bool:
        return self._relay("ice-candidate", message.from_user_id, message.to_user_id, message.room_id,
                           IceCandidateData(
                               candidate=message.candidate,
                               sdp_mid=message.sdp_mid,
                               sdp_m_line_index=message.sdp_m_line_index,
                               room_id=message.room_id,
                           ))

    def resolve_target(self, from_user_id: Optional[str], to_user_id: Optional[str],
                       room_hint: Optional[str] = None) -> str:
        """Return the room shared by sender and recipient, or raise InvalidSignalingTargetError."""
        if not from_user_id or not to_user_id:
            raise InvalidSignalingTargetError(from_user_id, to_user_id, "missing user id")
        if from_user_id == to_user_id:
            raise InvalidSignalingTargetError(from_user_id, to_user_id, "sender and recipient are the same user")

        from_room = self.registry.room_of(from_user_id)
        to_room = self.registry.room_of(to_user_id)
        if from_room is None or to_room is None:
            raise InvalidSignalingTargetError(from_user_id, to_user_id,
                                              f"not in a room (from: {from_room}, to: {to_room})")
        if from_room != to_room:
            raise InvalidSignalingTargetError(from_user_id, to_user_id,
                                              f"different rooms (from: {from_room}, to: {to_room})")
        if room_hint is not None and room_hint != from_room:
            raise InvalidSignalingTargetError(from_user_id, to_user_id,
                                              f"room hint {room_hint} does not match {from_room}")
        return from_room

    def _relay(self, message_type: str, from_user_id: Optional[str], to_user_id: Optional[str],
               room_hint: Optional[str], data: WireModel) -> bool:
        logger.debug(f"Relaying {message_type} - from: {from_user_id}, to: {to_user_id}")
        try:
            self.resolve_target(from_user_id, to_user_id, room_hint)
        except InvalidSignalingTargetError as e:
            logger.warning(f"Dropped {message_type}: {e.reason} (from: {from_user_id}, to: {to_user_id})")
            return False

        try:
            self.backend.send_to_user(to_user_id, SignalMessage.build(
                message_type, data, from_user_id=from_user_id, to_user_id=to_user_id,
            ))
        except Exception as e:
            logger.error(f"Error relaying {message_type} from {from_user_id} to {to_user_id}: {e}", exc_info=True)
            return False
        return True

    def _send_error(self, user_id: str, code: str, message: str):
        try:
            self.backend.send_to_user(user_id, SignalMessage.build(
                "error", ErrorData(code=code, message=message), to_user_id=user_id,
            ))
            logger.info(f"Sent error to user {user_id} - code: {code}, message: {message}")
        except Exception as e:
            logger.error(f"Error sending {code} to user {user_id}: {e}", exc_info=True)
