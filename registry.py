import threading
from collections import Counter
from datetime import datetime
from typing import Dict, List, Optional, Set

from constants import MAX_PARTICIPANTS
from errors import RoomFullError
from logging_config import get_logger

logger = get_logger(__name__)


class RoomRegistry:
    """In-memory room membership.

    Two indexes (room -> members, user -> room) guarded by one lock. Every
    public method takes the lock, so readers never see the two indexes out of
    step with each other.
    """

    def __init__(self, max_participants: int = MAX_PARTICIPANTS):
        if max_participants < 1:
            raise ValueError("max_participants must be at least 1")
        self.max_participants = max_participants
        # dict keys keep join order, which gives list responses a stable order
        self._rooms: Dict[str, Dict[str, None]] = {}
        self._user_rooms: Dict[str, str] = {}
        self._created_at: Dict[str, datetime] = {}
        self._lock = threading.RLock()
        logger.info(f"RoomRegistry initialized with max_participants={max_participants}")

    def join(self, room_id: str, user_id: str) -> List[str]:
        """Add a user to a room, moving them out of any other room first.

        Raises RoomFullError without touching any state when the room is full.
        Returns the participant list after the join.
        """
        logger.info(f"User {user_id} joining room {room_id}")
        with self._lock:
            participants = self._rooms.get(room_id, {})
            if len(participants) >= self.max_participants and user_id not in participants:
                logger.warning(f"Room {room_id} is full ({len(participants)}/{self.max_participants}), rejecting {user_id}")
                raise RoomFullError(room_id, self.max_participants)

            existing_room = self._user_rooms.get(user_id)
            if existing_room is not None and existing_room != room_id:
                self._remove(existing_room, user_id)
                logger.info(f"User {user_id} moved from room {existing_room} to {room_id}")

            if room_id not in self._rooms:
                self._rooms[room_id] = {}
                self._created_at[room_id] = datetime.now()
                logger.info(f"Room {room_id} created")

            self._rooms[room_id][user_id] = None
            self._user_rooms[user_id] = room_id
            participant_list = list(self._rooms[room_id])

        logger.info(f"User {user_id} joined room {room_id} ({len(participant_list)}/{self.max_participants})")
        return participant_list

    def leave(self, room_id: str, user_id: str) -> None:
        with self._lock:
            removed = self._remove(room_id, user_id)
        if removed:
            logger.info(f"User {user_id} left room {room_id}")
        else:
            logger.debug(f"User {user_id} was not in room {room_id}, nothing to remove")

    def _remove(self, room_id: str, user_id: str) -> bool:
        # caller holds the lock
        participants = self._rooms.get(room_id)
        if participants is None or user_id not in participants:
            return False
        del participants[user_id]
        if self._user_rooms.get(user_id) == room_id:
            del self._user_rooms[user_id]
        if not participants:
            del self._rooms[room_id]
            self._created_at.pop(room_id, None)
            logger.info(f"Room {room_id} is empty, removed")
        return True

    def participants_of(self, room_id: str) -> List[str]:
        with self._lock:
            return list(self._rooms.get(room_id, ()))

    def room_of(self, user_id: str) -> Optional[str]:
        with self._lock:
            return self._user_rooms.get(user_id)

    def created_at(self, room_id: str) -> Optional[datetime]:
        with self._lock:
            return self._created_at.get(room_id)

    def can_join(self, room_id: str) -> bool:
        with self._lock:
            participants = self._rooms.get(room_id)
            return participants is None or len(participants) < self.max_participants

    def snapshot(self) -> Dict[str, Set[str]]:
        """Point-in-time copy of every room's members."""
        with self._lock:
            return {room_id: set(participants) for room_id, participants in self._rooms.items()}

    def stats(self) -> dict:
        with self._lock:
            histogram = Counter(len(participants) for participants in self._rooms.values())
            return {
                "totalRooms": len(self._rooms),
                "totalUsers": len(self._user_rooms),
                "maxParticipants": self.max_participants,
                "occupancyHistogram": dict(sorted(histogram.items())),
            }
