from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    # camelCase on the wire, snake_case in Python; records are immutable
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


# Inbound client requests

class JoinRoomRequest(WireModel):
    user_id: str
    room_id: str
    user_agent: Optional[str] = None

class LeaveRoomRequest(WireModel):
    user_id: str
    room_id: str

class OfferMessage(WireModel):
    from_user_id: Optional[str] = None
    to_user_id: Optional[str] = None
    sdp: Any = None
    room_id: Optional[str] = None

class AnswerMessage(OfferMessage):
    pass

class IceCandidateMessage(WireModel):
    from_user_id: Optional[str] = None
    to_user_id: Optional[str] = None
    candidate: Any = None
    sdp_mid: Optional[str] = None
    sdp_m_line_index: Optional[int] = None
    room_id: Optional[str] = None

class SubscriptionFrame(WireModel):
    destination: str


# Request tag -> model used to parse its payload
INBOUND_MESSAGES = {
    "room.join": JoinRoomRequest,
    "room.leave": LeaveRoomRequest,
    "signal.offer": OfferMessage,
    "signal.answer": AnswerMessage,
    "signal.iceCandidate": IceCandidateMessage,
}


# Outbound payloads

class UserJoinedData(WireModel):
    participants: List[str]
    new_user_id: str
    user_agent: Optional[str] = None

class UserLeftData(WireModel):
    left_user_id: str

class UserDisconnectedData(WireModel):
    user_id: str
    reason: str = "connection-lost"

class RoomStateData(WireModel):
    participants: List[str]
    room_id: str
    your_user_id: str

class SessionDescriptionData(WireModel):
    sdp: Any = None
    room_id: Optional[str] = None

class IceCandidateData(WireModel):
    candidate: Any = None
    sdp_mid: Optional[str] = None
    sdp_m_line_index: Optional[int] = None
    room_id: Optional[str] = None

class ErrorData(WireModel):
    type: str = "ROOM_ERROR"
    code: str
    message: str


class SignalMessage(WireModel):
    """Envelope for everything the server pushes to clients."""
    type: str
    from_user_id: Optional[str] = None
    to_user_id: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: str = Field(default_factory=lambda: datetime.now().isoformat())

    @classmethod
    def build(cls, message_type: str, data: WireModel, from_user_id: Optional[str] = None,
              to_user_id: Optional[str] = None) -> "SignalMessage":
        return cls(type=message_type, from_user_id=from_user_id, to_user_id=to_user_id, data=data.to_wire())
