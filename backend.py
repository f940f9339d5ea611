import asyncio
import json
import threading
from typing import Dict, Optional, Set

import redis.asyncio as aioredis
from fastapi import WebSocket

from constants import BROKER_BACKEND, REDIS_HOST, REDIS_PORT, REDIS_PASSWORD
from redis_keys import ROOM_TOPIC, USER_QUEUE
from schemas.signaling import SignalMessage
from logging_config import get_logger

logger = get_logger(__name__)


class ClientSession:
    """One live websocket connection.

    Outbound frames go through a queue drained by a writer task, so delivery
    never suspends the caller.
    """

    def __init__(self, session_id: str, websocket: WebSocket, max_pending: int = 256):
        self.session_id = session_id
        self.websocket = websocket
        self.channels: Set[str] = set()
        self.outbox: asyncio.Queue = asyncio.Queue(maxsize=max_pending)
        self.closed = False
        self._writer: Optional[asyncio.Task] = None

    def start(self):
        if self._writer is None or self._writer.done():
            self._writer = asyncio.create_task(self._drain())

    def deliver(self, text: str) -> bool:
        if self.closed:
            return False
        try:
            self.outbox.put_nowait(text)
            return True
        except asyncio.QueueFull:
            logger.warning(f"Outbound queue full for session {self.session_id}, dropping message")
            return False

    async def _drain(self):
        while True:
            text = await self.outbox.get()
            try:
                await self.websocket.send_text(text)
            except Exception as e:
                logger.warning(f"Error sending to session {self.session_id}, no further frames will be queued: {e}")
                self.closed = True
                break

    async def close(self):
        if self._writer is not None:
            self._writer.cancel()
            try:
                await self._writer
            except asyncio.CancelledError:
                pass
            self._writer = None


class SignalingBackend:
    """Publish/subscribe delivery used by the relay and lifecycle controller."""

    def room_channel(self, room_id: str) -> str:
        return ROOM_TOPIC.format(slug=room_id)

    def user_channel(self, user_id: str) -> str:
        return USER_QUEUE.format(user_id=user_id)

    def broadcast_to_room(self, room_id: str, message: SignalMessage):
        self.publish(self.room_channel(room_id), message.to_wire())

    def send_to_user(self, user_id: str, message: SignalMessage):
        self.publish(self.user_channel(user_id), message.to_wire())

    def publish(self, channel: str, message: dict):
        raise NotImplementedError

    async def subscribe(self, session: ClientSession, channel: str):
        raise NotImplementedError

    async def unsubscribe(self, session: ClientSession, channel: str):
        raise NotImplementedError

    async def detach(self, session: ClientSession):
        for channel in list(session.channels):
            await self.unsubscribe(session, channel)

    async def start(self):
        pass

    async def close(self):
        pass


class MemoryBackend(SignalingBackend):
    """Delivers to sessions connected to this process."""

    def __init__(self):
        # Format: {channel: {session_id: session}}
        self._subscribers: Dict[str, Dict[str, ClientSession]] = {}
        self._lock = threading.Lock()
        logger.info("Initializing in-memory signaling backend")

    def publish(self, channel: str, message: dict):
        text = json.dumps(message)
        with self._lock:
            targets = list(self._subscribers.get(channel, {}).values())
        for session in targets:
            session.deliver(text)
        logger.debug(f"Published {message.get('type', 'unknown')} to {channel}, {len(targets)} subscribers")

    def subscriber_count(self, channel: str) -> int:
        with self._lock:
            return len(self._subscribers.get(channel, {}))

    async def subscribe(self, session: ClientSession, channel: str):
        with self._lock:
            self._subscribers.setdefault(channel, {})[session.session_id] = session
        session.channels.add(channel)
        logger.debug(f"Session {session.session_id} subscribed to {channel}")

    async def unsubscribe(self, session: ClientSession, channel: str):
        with self._lock:
            subscribers = self._subscribers.get(channel)
            if subscribers is not None:
                subscribers.pop(session.session_id, None)
                if not subscribers:
                    del self._subscribers[channel]
        session.channels.discard(channel)
        logger.debug(f"Session {session.session_id} unsubscribed from {channel}")


class RedisBackend(SignalingBackend):
    """Delivers through Redis pub/sub.

    Publishing is fire-and-forget: messages are queued and sent in order by a
    single publisher task. Every session gets one pub/sub connection and a
    listener task that forwards channel messages to the websocket.
    """

    def __init__(self, redis_client=None):
        if redis_client is None:
            redis_client = aioredis.Redis(host=REDIS_HOST, port=REDIS_PORT, password=REDIS_PASSWORD, decode_responses=True)
        self.redis_client = redis_client
        self._pubsubs: Dict[str, object] = {}
        self._listeners: Dict[str, asyncio.Task] = {}
        self._outbox: Optional[asyncio.Queue] = None
        self._publisher: Optional[asyncio.Task] = None
        logger.info(f"Initializing RedisBackend with connection to {REDIS_HOST}:{REDIS_PORT}")

    async def start(self):
        try:
            await self.redis_client.ping()
            logger.info(f"Redis client connected successfully to {REDIS_HOST}:{REDIS_PORT}")
        except Exception as e:
            logger.error(f"Failed to connect to Redis at {REDIS_HOST}:{REDIS_PORT}: {e}", exc_info=True)
            raise

    def publish(self, channel: str, message: dict):
        if self._outbox is None:
            self._outbox = asyncio.Queue()
        if self._publisher is None or self._publisher.done():
            self._publisher = asyncio.get_running_loop().create_task(self._drain_outbox())
        self._outbox.put_nowait((channel, json.dumps(message)))

    async def flush(self):
        """Wait until every queued message has been handed to Redis."""
        if self._outbox is not None:
            await self._outbox.join()

    async def _drain_outbox(self):
        # one publisher task keeps PUBLISH order equal to publish() call order
        while True:
            channel, message_json = await self._outbox.get()
            try:
                subscribers = await self.redis_client.publish(channel, message_json)
                logger.debug(f"Published message to channel {channel}, {subscribers} subscribers")
            except Exception as e:
                logger.error(f"Error publishing to channel {channel}: {e}", exc_info=True)
            finally:
                self._outbox.task_done()

    async def subscribe(self, session: ClientSession, channel: str):
        pubsub = self._pubsubs.get(session.session_id)
        if pubsub is None:
            pubsub = self.redis_client.pubsub(ignore_subscribe_messages=True)
            self._pubsubs[session.session_id] = pubsub
        await pubsub.subscribe(channel)
        session.channels.add(channel)
        logger.debug(f"Session {session.session_id} subscribed to Redis channel {channel}")

        listener = self._listeners.get(session.session_id)
        if listener is None or listener.done():
            self._listeners[session.session_id] = asyncio.create_task(self._listen(session, pubsub))

    async def unsubscribe(self, session: ClientSession, channel: str):
        pubsub = self._pubsubs.get(session.session_id)
        if pubsub is not None:
            await pubsub.unsubscribe(channel)
        session.channels.discard(channel)
        logger.debug(f"Session {session.session_id} unsubscribed from Redis channel {channel}")

    async def detach(self, session: ClientSession):
        listener = self._listeners.pop(session.session_id, None)
        if listener is not None:
            listener.cancel()
            try:
                await listener
            except asyncio.CancelledError:
                pass
        pubsub = self._pubsubs.pop(session.session_id, None)
        if pubsub is not None:
            try:
                await pubsub.unsubscribe()
                await pubsub.aclose()
                logger.debug(f"Closed pub/sub connection for session {session.session_id}")
            except Exception as e:
                logger.error(f"Error closing pub/sub for session {session.session_id}: {e}")
        session.channels.clear()

    async def _listen(self, session: ClientSession, pubsub):
        """Forward Redis channel messages to one session until cancelled."""
        logger.info(f"Starting Redis pub/sub listener for session {session.session_id}")
        try:
            while True:
                message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if message is None:
                    continue
                if message.get("type") == "message":
                    session.deliver(message["data"])
        except asyncio.CancelledError:
            logger.info(f"Redis listener task cancelled for session {session.session_id}")
            raise
        except Exception as e:
            logger.error(f"Error in Redis listener for session {session.session_id}: {e}", exc_info=True)

    async def close(self):
        if self._publisher is not None:
            self._publisher.cancel()
            try:
                await self._publisher
            except asyncio.CancelledError:
                pass
        await self.redis_client.aclose()


def create_backend(kind: str = BROKER_BACKEND) -> SignalingBackend:
    if kind == "memory":
        return MemoryBackend()
    if kind == "redis":
        return RedisBackend()
    raise ValueError(f"Unknown broker backend: {kind}")
