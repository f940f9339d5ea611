import os
import platform
import resource
import sys
import time
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from constants import ICE_SERVERS, SERVICE_NAME, SERVICE_VERSION, TURN_CREDENTIAL, TURN_USERNAME
from registry import RoomRegistry
from schemas.rooms import (
    CanJoinResponse,
    HealthResponse,
    IceServer,
    IceServerConfig,
    MemoryInfo,
    RoomsResponse,
    RoomStateResponse,
    StatsResponse,
    SystemInfo,
)
from logging_config import get_logger

logger = get_logger(__name__)

rooms_router = APIRouter(prefix="/api/webrtc", tags=["webrtc"])


def get_registry(request: Request) -> RoomRegistry:
    return request.app.state.registry


def process_memory() -> MemoryInfo:
    peak_rss = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    # ru_maxrss is bytes on macOS, kilobytes elsewhere
    if sys.platform != "darwin":
        peak_rss *= 1024
    return MemoryInfo(peak_rss_bytes=peak_rss, allocated_blocks=sys.getallocatedblocks())


@rooms_router.get("/health", response_model=HealthResponse)
async def health_check():
    return HealthResponse(
        status="UP",
        timestamp=int(time.time() * 1000),
        service=SERVICE_NAME,
        version=SERVICE_VERSION,
    )


@rooms_router.get("/ice-servers", response_model=IceServerConfig)
async def get_ice_servers(
    user_id: Optional[str] = Query(None, alias="userId"),
    room_id: Optional[str] = Query(None, alias="roomId"),
):
    """STUN/TURN servers for the client's RTCPeerConnection configuration."""
    logger.info(f"ICE server config request - user: {user_id}, room: {room_id}")
    servers = []
    for url in ICE_SERVERS:
        # credentials only apply to TURN relays
        if url.startswith(("turn:", "turns:")):
            servers.append(IceServer(urls=url, username=TURN_USERNAME, credential=TURN_CREDENTIAL))
        else:
            servers.append(IceServer(urls=url))
    logger.debug(f"Returning {len(servers)} ICE servers")
    return IceServerConfig(ice_servers=servers)


@rooms_router.get("/rooms", response_model=RoomsResponse)
async def list_rooms(registry: RoomRegistry = Depends(get_registry)):
    snapshot = registry.snapshot()
    return RoomsResponse(rooms={room_id: sorted(users) for room_id, users in snapshot.items()})


@rooms_router.get("/rooms/{room_id}/state", response_model=RoomStateResponse)
async def get_room_state(room_id: str, registry: RoomRegistry = Depends(get_registry)):
    logger.info(f"Room state request for {room_id}")
    participants = registry.participants_of(room_id)
    created_at = registry.created_at(room_id)
    return RoomStateResponse(
        room_id=room_id,
        participant_count=len(participants),
        participants=participants,
        created_at=created_at.isoformat() if created_at else None,
        timestamp=datetime.now().isoformat(),
    )


@rooms_router.get("/rooms/{room_id}/can-join", response_model=CanJoinResponse)
async def can_join_room(room_id: str, registry: RoomRegistry = Depends(get_registry)):
    logger.info(f"Can-join request for {room_id}")
    participants = registry.participants_of(room_id)
    return CanJoinResponse(
        can_join=registry.can_join(room_id),
        current_participants=len(participants),
        max_participants=registry.max_participants,
        participants=participants,
    )


@rooms_router.get("/stats", response_model=StatsResponse)
async def get_server_stats(registry: RoomRegistry = Depends(get_registry)):
    logger.debug("Server stats request")
    try:
        stats = registry.stats()
        return StatsResponse(
            total_rooms=stats["totalRooms"],
            total_users=stats["totalUsers"],
            max_participants=stats["maxParticipants"],
            occupancy_histogram=stats["occupancyHistogram"],
            system=SystemInfo(
                processors=os.cpu_count(),
                python_version=platform.python_version(),
                os_name=platform.system(),
            ),
            memory=process_memory(),
        )
    except Exception as e:
        logger.error(f"Error collecting server stats: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to collect stats")
