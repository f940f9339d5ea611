from contextlib import asynccontextmanager
from typing import Optional
import json
import os
import uuid

from fastapi import FastAPI, Query, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError

from backend import ClientSession, SignalingBackend, create_backend
from constants import ALLOWED_ORIGINS, MAX_PARTICIPANTS, SERVICE_NAME, SERVICE_VERSION
from lifecycle import (
    SessionConnected,
    SessionDisconnected,
    SessionLifecycleController,
    SessionSubscribed,
    SessionUnsubscribed,
)
from redis_keys import TOPIC_ROOM_PREFIX, USER_QUEUE_DESTINATION
from registry import RoomRegistry
from relay import SignalingRelay
from routers.rooms import rooms_router
from schemas.signaling import INBOUND_MESSAGES, SubscriptionFrame
from logging_config import get_logger, setup_logging

# Setup logging
log_level = os.getenv("LOG_LEVEL", "INFO")
log_file = os.getenv("LOG_FILE", None)
setup_logging(log_level=log_level, log_file=log_file)
logger = get_logger(__name__)


def create_app(max_participants: int = MAX_PARTICIPANTS, backend: Optional[SignalingBackend] = None) -> FastAPI:
    if backend is None:
        backend = create_backend()
    registry = RoomRegistry(max_participants)
    lifecycle = SessionLifecycleController(registry, backend)
    relay = SignalingRelay(registry, backend, lifecycle)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await backend.start()
        yield
        await backend.close()

    app = FastAPI(title=SERVICE_NAME, version=SERVICE_VERSION, lifespan=lifespan)
    app.state.registry = registry
    app.state.backend = backend
    app.state.lifecycle = lifecycle
    app.state.relay = relay

    app.add_middleware(
        CORSMiddleware,
        allow_origins=ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(rooms_router)
    app.add_api_websocket_route("/ws", websocket_endpoint)

    logger.info(f"FastAPI application initialized (max participants: {max_participants}, origins: {ALLOWED_ORIGINS})")
    return app


async def websocket_endpoint(
    websocket: WebSocket,
    user_id: Optional[str] = Query(None, alias="userId"),
    room_id: Optional[str] = Query(None, alias="roomId"),
):
    """Signaling websocket.

    Query parameters:
    - userId: optional, subscribes the connection to that user's private queue
    - roomId: optional, together with userId pre-binds the session to a room
    """
    state = websocket.app.state
    backend: SignalingBackend = state.backend

    await websocket.accept()
    session = ClientSession(str(uuid.uuid4()), websocket)
    session.start()
    logger.info(f"WebSocket connection accepted, session {session.session_id}")

    try:
        state.lifecycle.handle(SessionConnected(session_id=session.session_id, user_id=user_id, room_id=room_id))
        if user_id:
            await backend.subscribe(session, backend.user_channel(user_id))

        message_count = 0
        while True:
            try:
                data = await websocket.receive_text()
            except WebSocketDisconnect:
                logger.info(f"WebSocket disconnected normally for session {session.session_id}")
                break
            message_count += 1
            logger.debug(f"Received message #{message_count} from session {session.session_id}")
            await handle_frame(state, session, data)
    except Exception as e:
        logger.error(f"WebSocket error for session {session.session_id}: {e}", exc_info=True)
    finally:
        state.lifecycle.handle(SessionDisconnected(session_id=session.session_id, user_id=user_id, room_id=room_id))
        await backend.detach(session)
        await session.close()
        logger.debug(f"Session {session.session_id} cleaned up")


async def handle_frame(state, session: ClientSession, data: str):
    """Parse one client frame and hand it to the relay. Malformed frames are dropped."""
    try:
        frame = json.loads(data)
    except json.JSONDecodeError:
        logger.warning(f"Dropping non-JSON frame from session {session.session_id}")
        return
    if not isinstance(frame, dict):
        logger.warning(f"Dropping non-object frame from session {session.session_id}")
        return

    tag = frame.get("type")
    try:
        if tag in ("subscribe", "unsubscribe"):
            await apply_subscription(state, session, tag, SubscriptionFrame.model_validate(frame))
            return
        model = INBOUND_MESSAGES.get(tag)
        if model is None:
            logger.warning(f"Dropping frame with unknown type {tag!r} from session {session.session_id}")
            return
        payload = model.model_validate(frame)
    except ValidationError as e:
        logger.warning(f"Dropping invalid {tag} frame from session {session.session_id}: {e.error_count()} errors")
        return

    backend: SignalingBackend = state.backend
    try:
        if tag == "room.join":
            previous_room = state.registry.room_of(payload.user_id)
            if payload.user_id:
                # errors and room-state go to the private queue, so it must exist before the join
                await backend.subscribe(session, backend.user_channel(payload.user_id))
            if state.relay.dispatch(tag, payload, session.session_id):
                if previous_room and previous_room != payload.room_id:
                    await backend.unsubscribe(session, backend.room_channel(previous_room))
                await backend.subscribe(session, backend.room_channel(payload.room_id))
        elif tag == "room.leave":
            binding = state.lifecycle.binding(session.session_id)
            own_user = binding is not None and binding.user_id == payload.user_id
            state.relay.dispatch(tag, payload, session.session_id)
            if own_user:
                await backend.unsubscribe(session, backend.room_channel(payload.room_id))
        else:
            state.relay.dispatch(tag, payload, session.session_id)
    except Exception as e:
        logger.error(f"Error handling {tag} from session {session.session_id}: {e}", exc_info=True)


async def apply_subscription(state, session: ClientSession, command: str, frame: SubscriptionFrame):
    backend: SignalingBackend = state.backend
    binding = state.lifecycle.binding(session.session_id)
    destination = frame.destination

    if destination.startswith(TOPIC_ROOM_PREFIX):
        room_id = destination[len(TOPIC_ROOM_PREFIX):]
        # room topics are only readable by current members of that room
        member = binding is not None and binding.user_id and state.registry.room_of(binding.user_id) == room_id
        if command == "subscribe" and not member:
            logger.warning(f"Session {session.session_id} may not subscribe to {destination}")
            return
        channel = backend.room_channel(room_id)
    elif destination == USER_QUEUE_DESTINATION:
        if binding is None or not binding.user_id:
            logger.warning(f"Session {session.session_id} has no user to subscribe {destination} for")
            return
        channel = backend.user_channel(binding.user_id)
    else:
        logger.warning(f"Unknown destination {destination!r} from session {session.session_id}")
        return

    if command == "subscribe":
        await backend.subscribe(session, channel)
        state.lifecycle.handle(SessionSubscribed(session_id=session.session_id, destination=destination))
    else:
        await backend.unsubscribe(session, channel)
        state.lifecycle.handle(SessionUnsubscribed(session_id=session.session_id, destination=destination))


app = create_app()
