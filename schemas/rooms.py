from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from typing import Dict, List, Optional


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class HealthResponse(ApiModel):
    status: str
    timestamp: int
    service: str
    version: str

class IceServer(ApiModel):
    urls: str
    username: Optional[str] = None
    credential: Optional[str] = None

class IceServerConfig(ApiModel):
    ice_servers: List[IceServer]

class RoomStateResponse(ApiModel):
    room_id: str
    participant_count: int
    participants: List[str]
    created_at: Optional[str] = None
    timestamp: str

class CanJoinResponse(ApiModel):
    can_join: bool
    current_participants: int
    max_participants: int
    participants: List[str]

class RoomsResponse(ApiModel):
    rooms: Dict[str, List[str]]

class SystemInfo(ApiModel):
    processors: Optional[int]
    python_version: str
    os_name: str

class MemoryInfo(ApiModel):
    peak_rss_bytes: int
    allocated_blocks: int

class StatsResponse(ApiModel):
    total_rooms: int
    total_users: int
    max_participants: int
    occupancy_histogram: Dict[int, int]
    system: SystemInfo
    memory: MemoryInfo
