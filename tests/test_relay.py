"""Tests for join/leave handling and offer/answer/ICE relaying."""
import logging

import pytest

from errors import InvalidSignalingTargetError
from schemas.signaling import (
    AnswerMessage,
    IceCandidateMessage,
    JoinRoomRequest,
    LeaveRoomRequest,
    OfferMessage,
)


def join(relay, user_id, room_id, session_id=None, user_agent=None):
    return relay.handle_join(JoinRoomRequest(user_id=user_id, room_id=room_id, user_agent=user_agent), session_id)


class TestJoin:
    def test_join_announces_and_sends_room_state(self, relay, backend, registry):
        join(relay, "u1", "r1")
        backend.clear()

        assert join(relay, "u2", "r1", user_agent="Firefox")

        [joined] = backend.to_room("r1")
        assert joined["type"] == "user-joined"
        assert joined["fromUserId"] == "u2"
        assert joined["data"] == {"participants": ["u1", "u2"], "newUserId": "u2", "userAgent": "Firefox"}

        [state] = backend.to_user("u2")
        assert state["type"] == "room-state"
        assert state["toUserId"] == "u2"
        assert state["data"] == {"participants": ["u1", "u2"], "roomId": "r1", "yourUserId": "u2"}
        assert registry.participants_of("r1") == ["u1", "u2"]

    def test_join_binds_session(self, relay, lifecycle):
        join(relay, "u1", "r1", session_id="s1")
        binding = lifecycle.binding("s1")
        assert (binding.user_id, binding.room_id) == ("u1", "r1")

    def test_full_room_returns_room_full(self, relay, backend, registry, lifecycle):
        for user_id in ("a", "b", "c"):
            join(relay, user_id, "r1")
        backend.clear()

        assert not join(relay, "d", "r1", session_id="s-d")

        [error] = backend.to_user("d")
        assert error["type"] == "error"
        assert error["data"]["code"] == "ROOM_FULL"
        assert backend.to_room("r1") == []
        assert registry.room_of("d") is None
        assert lifecycle.binding("s-d") is None

    def test_lost_race_returns_room_full(self, relay, backend, registry, monkeypatch):
        for user_id in ("a", "b", "c"):
            join(relay, user_id, "r1")
        backend.clear()
        # the optimistic check passes but the atomic join finds the room full
        monkeypatch.setattr(registry, "can_join", lambda room_id: True)

        assert not join(relay, "d", "r1")

        [error] = backend.to_user("d")
        assert error["data"]["code"] == "ROOM_FULL"
        assert registry.participants_of("r1") == ["a", "b", "c"]

    def test_missing_room_id_fails(self, relay, backend, registry):
        assert not join(relay, "u1", "")
        [error] = backend.to_user("u1")
        assert error["data"]["code"] == "JOIN_FAILED"
        assert registry.snapshot() == {}

    def test_unexpected_registry_error_is_join_failed(self, relay, backend, registry, monkeypatch):
        def broken_join(room_id, user_id):
            raise RuntimeError("boom")
        monkeypatch.setattr(registry, "join", broken_join)

        assert not join(relay, "u1", "r1")
        [error] = backend.to_user("u1")
        assert error["data"]["code"] == "JOIN_FAILED"


class TestLeave:
    def test_leave_broadcasts_and_unbinds(self, relay, backend, registry, lifecycle):
        join(relay, "u1", "r1", session_id="s1")
        join(relay, "u2", "r1", session_id="s2")
        backend.clear()

        relay.handle_leave(LeaveRoomRequest(user_id="u1", room_id="r1"), "s1")

        assert registry.participants_of("r1") == ["u2"]
        assert lifecycle.binding("s1").user_id is None
        [left] = backend.to_room("r1")
        assert left["type"] == "user-left"
        assert left["data"] == {"leftUserId": "u1"}

    def test_leave_for_another_user_keeps_session_binding(self, relay, backend, registry, lifecycle):
        join(relay, "u1", "r1", session_id="s1")
        join(relay, "u2", "r1", session_id="s2")

        relay.handle_leave(LeaveRoomRequest(user_id="u2", room_id="r1"), "s1")

        assert registry.participants_of("r1") == ["u1"]
        binding = lifecycle.binding("s1")
        assert (binding.user_id, binding.room_id) == ("u1", "r1")

    def test_leave_for_non_member_is_harmless(self, relay, backend, registry):
        relay.handle_leave(LeaveRoomRequest(user_id="ghost", room_id="r1"))
        assert registry.snapshot() == {}
        assert backend.to_room("r1")[0]["type"] == "user-left"

    def test_leave_errors_are_swallowed(self, relay, registry, monkeypatch, caplog):
        def broken_leave(room_id, user_id):
            raise RuntimeError("boom")
        monkeypatch.setattr(registry, "leave", broken_leave)

        with caplog.at_level(logging.ERROR):
            relay.handle_leave(LeaveRoomRequest(user_id="u1", room_id="r1"))

        assert "Cleanup failed for user u1 in room r1" in caplog.text


class TestSignalRelay:
    @pytest.fixture(autouse=True)
    def rooms(self, relay, backend):
        join(relay, "u1", "R")
        join(relay, "u2", "R")
        join(relay, "u3", "R2")
        backend.clear()

    def test_same_room_answer_is_delivered_verbatim(self, relay, backend):
        sdp = {"type": "answer", "sdp": "v=0\r\no=- 4611731400430051336 2 IN IP4 127.0.0.1\r\n"}
        assert relay.handle_answer(AnswerMessage(from_user_id="u1", to_user_id="u2", sdp=sdp, room_id="R"))

        [message] = backend.to_user("u2")
        assert message["type"] == "answer"
        assert message["fromUserId"] == "u1"
        assert message["toUserId"] == "u2"
        assert message["data"] == {"sdp": sdp, "roomId": "R"}
        assert backend.to_user("u1") == []

    def test_offer_without_room_hint(self, relay, backend):
        assert relay.handle_offer(OfferMessage(from_user_id="u2", to_user_id="u1", sdp="v=0"))
        [message] = backend.to_user("u1")
        assert message["type"] == "offer"
        assert message["data"] == {"sdp": "v=0", "roomId": None}

    def test_ice_candidate_fields_are_copied(self, relay, backend):
        candidate = "candidate:842163049 1 udp 1677729535 203.0.113.7 46154 typ srflx"
        assert relay.handle_ice_candidate(IceCandidateMessage(
            from_user_id="u1", to_user_id="u2", candidate=candidate, sdp_mid="0", sdp_m_line_index=0, room_id="R",
        ))
        [message] = backend.to_user("u2")
        assert message["type"] == "ice-candidate"
        assert message["data"] == {"candidate": candidate, "sdpMid": "0", "sdpMLineIndex": 0, "roomId": "R"}

    def test_self_addressed_offer_is_dropped(self, relay, backend):
        assert not relay.handle_offer(OfferMessage(from_user_id="u1", to_user_id="u1", sdp="v=0"))
        assert backend.published == []

    def test_cross_room_candidate_is_dropped(self, relay, backend):
        assert not relay.handle_ice_candidate(IceCandidateMessage(from_user_id="u1", to_user_id="u3", candidate="c"))
        assert backend.published == []

    @pytest.mark.parametrize("from_user_id,to_user_id", [
        ("", "u2"),
        ("u1", ""),
        (None, "u2"),
        ("u1", None),
        ("outsider", "u2"),
        ("u1", "outsider"),
    ])
    def test_unknown_or_missing_users_are_dropped(self, relay, backend, from_user_id, to_user_id):
        assert not relay.handle_offer(OfferMessage(from_user_id=from_user_id, to_user_id=to_user_id, sdp="v=0"))
        assert backend.published == []

    def test_room_hint_mismatch_is_dropped(self, relay, backend):
        assert not relay.handle_answer(AnswerMessage(from_user_id="u1", to_user_id="u2", sdp="v=0", room_id="R2"))
        assert backend.published == []

    def test_resolve_target_reports_reason(self, relay):
        assert relay.resolve_target("u1", "u2", "R") == "R"
        with pytest.raises(InvalidSignalingTargetError) as exc_info:
            relay.resolve_target("u1", "u3")
        assert "different rooms" in exc_info.value.reason

    def test_user_who_left_can_no_longer_be_reached(self, relay, backend):
        relay.handle_leave(LeaveRoomRequest(user_id="u2", room_id="R"))
        backend.clear()
        assert not relay.handle_offer(OfferMessage(from_user_id="u1", to_user_id="u2", sdp="v=0"))
        assert backend.published == []

    def test_delivery_failure_is_contained(self, relay, backend, monkeypatch):
        def broken_publish(channel, message):
            raise ConnectionError("transport gone")
        monkeypatch.setattr(backend, "publish", broken_publish)
        assert not relay.handle_offer(OfferMessage(from_user_id="u1", to_user_id="u2", sdp="v=0"))


def test_dispatch_routes_by_tag(relay, backend):
    assert relay.dispatch("room.join", JoinRoomRequest(user_id="u1", room_id="r1"), "s1")
    assert relay.dispatch("room.join", JoinRoomRequest(user_id="u2", room_id="r1"), "s2")
    backend.clear()

    assert relay.dispatch("signal.offer", OfferMessage(from_user_id="u1", to_user_id="u2", sdp="x"))
    assert relay.dispatch("signal.answer", AnswerMessage(from_user_id="u2", to_user_id="u1", sdp="y"))
    assert relay.dispatch("signal.iceCandidate", IceCandidateMessage(from_user_id="u1", to_user_id="u2", candidate="c"))
    assert relay.dispatch("room.leave", LeaveRoomRequest(user_id="u2", room_id="r1"), "s2")
    assert not relay.dispatch("signal.bye", OfferMessage(from_user_id="u1", to_user_id="u2"))

    types = [message["type"] for _, message in backend.published]
    assert types == ["offer", "answer", "ice-candidate", "user-left"]
