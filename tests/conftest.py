"""Test configuration and fixtures."""
from typing import List, Tuple

import pytest

from backend import SignalingBackend
from lifecycle import SessionLifecycleController
from registry import RoomRegistry
from relay import SignalingRelay


class RecordingBackend(SignalingBackend):
    """Backend that keeps every published message instead of delivering it."""

    def __init__(self):
        self.published: List[Tuple[str, dict]] = []

    def publish(self, channel: str, message: dict):
        self.published.append((channel, message))

    def to_user(self, user_id: str) -> List[dict]:
        channel = self.user_channel(user_id)
        return [message for ch, message in self.published if ch == channel]

    def to_room(self, room_id: str) -> List[dict]:
        channel = self.room_channel(room_id)
        return [message for ch, message in self.published if ch == channel]

    def clear(self):
        self.published.clear()


class FakeSession:
    """Stands in for ClientSession without a websocket."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        self.channels = set()
        self.received: List[str] = []

    def deliver(self, text: str) -> bool:
        self.received.append(text)
        return True


@pytest.fixture
def registry():
    return RoomRegistry(max_participants=3)


@pytest.fixture
def backend():
    return RecordingBackend()


@pytest.fixture
def lifecycle(registry, backend):
    return SessionLifecycleController(registry, backend)


@pytest.fixture
def relay(registry, backend, lifecycle):
    return SignalingRelay(registry, backend, lifecycle)


@pytest.fixture
def make_session():
    return FakeSession
