class RoomFullError(Exception):
    """Raised when a room already holds the configured number of participants."""

    def __init__(self, room_id: str, max_participants: int):
        self.room_id = room_id
        self.max_participants = max_participants
        super().__init__(f"Room {room_id} is full (max {max_participants} participants)")


class InvalidSignalingTargetError(Exception):
    """A point-to-point signaling message that must not be relayed.

    Never reported back to the sender; the relay logs it and drops the message.
    """

    def __init__(self, from_user_id: str, to_user_id: str, reason: str):
        self.from_user_id = from_user_id
        self.to_user_id = to_user_id
        self.reason = reason
        super().__init__(f"Rejected signal from {from_user_id!r} to {to_user_id!r}: {reason}")


class CleanupFailure(Exception):
    """Wraps an exception raised while tearing down a membership. Logged only."""

    def __init__(self, user_id: str, room_id: str, cause: BaseException):
        self.user_id = user_id
        self.room_id = room_id
        self.cause = cause
        super().__init__(f"Cleanup failed for user {user_id} in room {room_id}: {cause}")
