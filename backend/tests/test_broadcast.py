"""Tests for the room broadcast router.

These drive the router directly with real sessions and an in-memory store,
then read what each session's outbox received.
"""
import asyncio
from unittest.mock import patch

import pytest

from roomchat.config import ChatSettings
from roomchat.chat.broadcast import RoomBroadcastRouter
from roomchat.chat.outbox import SessionOutbox
from roomchat.errors import StorageError


@pytest.fixture
def rooms(store):
    """Users alice/bob/carol, a public room and a private room owned by alice."""
    for user_id, name in (("alice", "Alice"), ("bob", "Bob"), ("carol", "Carol")):
        store.upsert_user(user_id, name)
    public = store.create_room("general", None, False, "alice")
    private = store.create_room("secret", None, True, "alice")
    return public.id, private.id


def events(session, name=None):
    """Drain a session's outbox, optionally keeping one event name."""
    drained = session.outbox.drain_nowait()
    if name is None:
        return drained
    return [e["data"] for e in drained if e["event"] == name]


def connect(router, user_id, name, session_id=None):
    return router.register(session_id or f"{user_id}-session", user_id, name)


class TestJoin:
    @pytest.mark.asyncio
    async def test_join_public_room_auto_joins_and_notifies_others(self, store, rooms):
        public, _ = rooms
        router = RoomBroadcastRouter(store)
        alice = connect(router, "alice", "Alice")
        bob = connect(router, "bob", "Bob")

        await router.join(alice, public)
        events(alice)
        await router.join(bob, public)

        assert store.fetch_membership(public, "bob")
        acks = events(bob, "room_joined")
        assert acks[0]["roomId"] == public
        assert {u["userId"] for u in acks[0]["onlineUsers"]} == {"alice", "bob"}

        joined = events(alice, "user_joined")
        assert joined == [{
            "userId": "bob",
            "userName": "Bob",
            "roomId": public,
            "message": "Bob joined the room",
        }]
        await router.shutdown()

    @pytest.mark.asyncio
    async def test_joiner_does_not_receive_own_user_joined(self, store, rooms):
        public, _ = rooms
        router = RoomBroadcastRouter(store)
        alice = connect(router, "alice", "Alice")

        await router.join(alice, public)

        assert events(alice, "user_joined") == []
        await router.shutdown()

    @pytest.mark.asyncio
    async def test_rejoin_is_a_no_op(self, store, rooms):
        public, _ = rooms
        router = RoomBroadcastRouter(store)
        alice = connect(router, "alice", "Alice")
        bob = connect(router, "bob", "Bob")
        await router.join(alice, public)
        await router.join(bob, public)
        events(alice)

        await router.join(bob, public)

        assert events(alice, "user_joined") == []
        assert len(events(bob, "room_joined")) == 2
        assert router.registry.sessions_in_room(public) == {alice.session_id, bob.session_id}
        await router.shutdown()

    @pytest.mark.asyncio
    async def test_join_private_room_denied_reports_to_caller_only(self, store, rooms):
        _, private = rooms
        router = RoomBroadcastRouter(store)
        alice = connect(router, "alice", "Alice")
        bob = connect(router, "bob", "Bob")
        await router.join(alice, private)
        events(alice)

        await router.join(bob, private)

        errors = events(bob, "error")
        assert errors[0]["code"] == "access_denied"
        assert errors[0]["event"] == "join_room"
        assert errors[0]["roomId"] == private
        assert events(alice) == []
        assert not router.registry.is_joined(bob.session_id, private)
        assert not store.fetch_membership(private, "bob")
        await router.shutdown()

    @pytest.mark.asyncio
    async def test_join_private_room_as_member(self, store, rooms):
        _, private = rooms
        router = RoomBroadcastRouter(store)
        alice = connect(router, "alice", "Alice")

        await router.join(alice, private)

        assert events(alice, "room_joined")[0]["roomId"] == private
        await router.shutdown()

    @pytest.mark.asyncio
    async def test_join_unknown_room_is_not_found(self, store, rooms):
        router = RoomBroadcastRouter(store)
        alice = connect(router, "alice", "Alice")

        await router.join(alice, 999)

        assert events(alice, "error")[0]["code"] == "not_found"
        await router.shutdown()

    @pytest.mark.asyncio
    async def test_join_accepts_object_and_string_room_ids(self, store, rooms):
        public, _ = rooms
        router = RoomBroadcastRouter(store)
        alice = connect(router, "alice", "Alice")

        await router.dispatch(alice, "join_room", {"roomId": str(public)})

        assert router.registry.is_joined(alice.session_id, public)
        await router.shutdown()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("room_id", ["²", "1.5", "-", [1]])
    async def test_non_ascii_or_malformed_room_id_is_reported(self, store, rooms, room_id):
        public, _ = rooms
        router = RoomBroadcastRouter(store)
        alice = connect(router, "alice", "Alice")

        await router.dispatch(alice, "join_room", room_id)
        await router.join(alice, public)

        assert events(alice, "error")[0]["code"] == "validation_error"
        assert router.registry.is_joined(alice.session_id, public)
        await router.shutdown()


class TestSend:
    @pytest.mark.asyncio
    async def test_message_reaches_every_member_including_sender(self, store, rooms):
        public, _ = rooms
        router = RoomBroadcastRouter(store)
        alice = connect(router, "alice", "Alice")
        bob = connect(router, "bob", "Bob")
        carol = connect(router, "carol", "Carol")
        await router.join(alice, public)
        await router.join(bob, public)
        for session in (alice, bob, carol):
            events(session)

        await router.send(alice, public, "hello")

        for session in (alice, bob):
            received = events(session, "new_message")
            assert len(received) == 1
            assert received[0]["message"] == "hello"
            assert received[0]["senderId"] == "alice"
            assert received[0]["senderName"] == "Alice"
            assert received[0]["messageType"] == "text"
            assert received[0]["roomId"] == public
        # Carol is connected but never joined the room
        assert events(carol) == []
        assert store.count_messages(public) == 1
        await router.shutdown()

    @pytest.mark.asyncio
    async def test_concurrent_sends_are_observed_in_the_same_order(self, store, rooms):
        public, _ = rooms
        router = RoomBroadcastRouter(store)
        alice = connect(router, "alice", "Alice")
        bob = connect(router, "bob", "Bob")
        carol = connect(router, "carol", "Carol")
        for session in (alice, bob, carol):
            await router.join(session, public)
            events(session)

        await asyncio.gather(*(
            router.send(sender, public, f"{sender.user_id}-{i}")
            for i in range(10)
            for sender in (alice, bob)
        ))

        sequences = [[m["id"] for m in events(s, "new_message")] for s in (alice, bob, carol)]
        assert len(sequences[0]) == 20
        assert sequences[0] == sorted(sequences[0])
        assert sequences[0] == sequences[1] == sequences[2]
        history = store.fetch_history(public, page_size=100)
        assert [m.id for m in history] == sequences[0]
        await router.shutdown()

    @pytest.mark.asyncio
    async def test_send_to_public_room_without_join_auto_joins_membership(self, store, rooms):
        public, _ = rooms
        router = RoomBroadcastRouter(store)
        bob = connect(router, "bob", "Bob")

        await router.send(bob, public, "drive-by")

        assert store.fetch_membership(public, "bob")
        assert store.count_messages(public) == 1
        # Not joined to the live group, so nothing is delivered back
        assert events(bob, "new_message") == []
        await router.shutdown()

    @pytest.mark.asyncio
    async def test_send_to_private_room_denied(self, store, rooms):
        _, private = rooms
        router = RoomBroadcastRouter(store)
        alice = connect(router, "alice", "Alice")
        bob = connect(router, "bob", "Bob")
        await router.join(alice, private)
        events(alice)

        await router.send(bob, private, "let me in")

        assert events(bob, "error")[0]["code"] == "access_denied"
        assert events(alice) == []
        assert store.count_messages(private) == 0
        await router.shutdown()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [
        {"roomId": 1, "message": ""},
        {"roomId": 1, "message": "   "},
        {"roomId": 1},
        {"message": "no room"},
        {"roomId": "abc", "message": "bad room"},
        "not an object",
    ])
    async def test_invalid_send_is_rejected_without_side_effects(self, store, rooms, payload):
        public, _ = rooms
        router = RoomBroadcastRouter(store)
        alice = connect(router, "alice", "Alice")
        bob = connect(router, "bob", "Bob")
        await router.join(alice, public)
        await router.join(bob, public)
        events(alice)
        events(bob)

        await router.dispatch(alice, "send_message", payload)

        assert events(alice, "error")[0]["code"] == "validation_error"
        assert events(bob) == []
        assert store.count_messages(public) == 0
        await router.shutdown()

    @pytest.mark.asyncio
    async def test_message_over_length_limit_rejected(self, store, rooms):
        public, _ = rooms
        router = RoomBroadcastRouter(store, settings=ChatSettings(max_message_length=5))
        alice = connect(router, "alice", "Alice")

        await router.send(alice, public, "way too long")

        assert events(alice, "error")[0]["code"] == "validation_error"
        assert store.count_messages(public) == 0
        await router.shutdown()

    @pytest.mark.asyncio
    async def test_storage_failure_reports_to_sender_only(self, store, rooms):
        public, _ = rooms
        router = RoomBroadcastRouter(store)
        alice = connect(router, "alice", "Alice")
        bob = connect(router, "bob", "Bob")
        await router.join(alice, public)
        await router.join(bob, public)
        events(alice)
        events(bob)

        with patch.object(store, "append_message", side_effect=StorageError("Database unavailable")):
            await router.send(alice, public, "lost")

        errors = events(alice, "error")
        assert errors[0]["code"] == "storage_error"
        assert errors[0]["message"] == "Database unavailable"
        assert events(bob) == []

        # The room keeps working afterwards
        await router.send(alice, public, "back")
        assert [m["message"] for m in events(bob, "new_message")] == ["back"]
        await router.shutdown()

    @pytest.mark.asyncio
    async def test_full_outbox_does_not_block_other_recipients(self, store, rooms):
        public, _ = rooms
        router = RoomBroadcastRouter(store)
        alice = connect(router, "alice", "Alice")
        bob = connect(router, "bob", "Bob")
        await router.join(alice, public)
        await router.join(bob, public)
        events(alice)
        events(bob)
        # Swap in a tiny outbox that is already full
        bob.outbox = SessionOutbox(maxsize=1)
        bob.outbox.offer("filler", {})

        await router.send(alice, public, "hello")

        assert [m["message"] for m in events(alice, "new_message")] == ["hello"]
        assert bob.outbox.dropped == 1
        await router.shutdown()


class TestTyping:
    @pytest.mark.asyncio
    async def test_typing_goes_to_others_only(self, store, rooms):
        public, _ = rooms
        router = RoomBroadcastRouter(store)
        alice = connect(router, "alice", "Alice")
        bob = connect(router, "bob", "Bob")
        await router.join(alice, public)
        await router.join(bob, public)
        events(alice)
        events(bob)

        await router.typing_start(alice, public)
        await router.typing_stop(alice, public)

        assert events(alice) == []
        drained = events(bob)
        assert [e["event"] for e in drained] == ["user_typing", "user_stopped_typing"]
        assert drained[0]["data"] == {"userId": "alice", "userName": "Alice", "roomId": public}
        await router.shutdown()

    @pytest.mark.asyncio
    async def test_typing_ignored_unless_joined(self, store, rooms):
        public, _ = rooms
        router = RoomBroadcastRouter(store)
        alice = connect(router, "alice", "Alice")
        bob = connect(router, "bob", "Bob")
        await router.join(bob, public)
        events(bob)

        await router.typing_start(alice, public)

        assert events(alice) == []
        assert events(bob) == []
        assert store.count_messages(public) == 0
        await router.shutdown()

    @pytest.mark.asyncio
    async def test_typing_dropped_when_room_is_backed_up(self, store, rooms):
        public, _ = rooms
        router = RoomBroadcastRouter(store, settings=ChatSettings(typing_backlog_limit=1))
        alice = connect(router, "alice", "Alice")
        bob = connect(router, "bob", "Bob")
        await router.join(alice, public)
        await router.join(bob, public)
        events(alice)
        events(bob)

        release = asyncio.Event()
        pipeline = router._pipeline_for(public)
        running = pipeline.submit(release.wait)
        while pipeline.backlog:
            await asyncio.sleep(0.01)
        queued = pipeline.submit(release.wait)

        await router.typing_start(alice, public)

        release.set()
        await asyncio.gather(running, queued)
        assert events(bob) == []
        await router.shutdown()


class TestDisconnect:
    @pytest.mark.asyncio
    async def test_disconnected_session_receives_nothing(self, store, rooms):
        public, _ = rooms
        router = RoomBroadcastRouter(store)
        alice = connect(router, "alice", "Alice")
        bob = connect(router, "bob", "Bob")
        await router.join(alice, public)
        await router.join(bob, public)
        events(bob)

        await router.dispatch(alice, "disconnect", None)
        await router.send(bob, public, "anyone?")

        assert alice.outbox.closed
        assert router.registry.sessions_in_room(public) == {bob.session_id}
        assert all(e["event"] != "new_message" for e in events(alice))
        assert [m["message"] for m in events(bob, "new_message")] == ["anyone?"]
        await router.shutdown()

    @pytest.mark.asyncio
    async def test_other_sessions_of_same_user_stay_joined(self, store, rooms):
        public, _ = rooms
        router = RoomBroadcastRouter(store)
        laptop = connect(router, "alice", "Alice", session_id="laptop")
        phone = connect(router, "alice", "Alice", session_id="phone")
        await router.join(laptop, public)
        await router.join(phone, public)

        router.disconnect(laptop)

        assert router.registry.sessions_in_room(public) == {"phone"}
        await router.shutdown()


class TestDispatch:
    @pytest.mark.asyncio
    async def test_unknown_event_is_reported(self, store, rooms):
        router = RoomBroadcastRouter(store)
        alice = connect(router, "alice", "Alice")

        await router.dispatch(alice, "leave_everything", {})

        error = events(alice, "error")[0]
        assert error["code"] == "validation_error"
        assert error["event"] == "leave_everything"
        await router.shutdown()

    @pytest.mark.asyncio
    async def test_rooms_get_independent_pipelines(self, store, rooms):
        public, private = rooms
        router = RoomBroadcastRouter(store)
        alice = connect(router, "alice", "Alice")

        await router.join(alice, public)
        await router.join(alice, private)

        assert router.active_rooms == sorted([public, private])
        await router.shutdown()
        assert router.active_rooms == []


class TestPrivateRoomScenario:
    @pytest.mark.asyncio
    async def test_team_room_walkthrough(self, store):
        store.upsert_user("a", "User A")
        store.upsert_user("b", "User B")
        store.upsert_user("c", "User C")
        team = store.create_room("team", None, True, "a").id
        store.insert_membership(team, "c")

        router = RoomBroadcastRouter(store)
        a = connect(router, "a", "User A")
        b = connect(router, "b", "User B")
        c = connect(router, "c", "User C")
        await router.join(a, team)
        await router.join(c, team)
        for session in (a, b, c):
            events(session)

        await router.send(b, team, "sneaky")
        assert events(b, "error")[0]["code"] == "access_denied"
        assert store.count_messages(team) == 0

        await router.send(a, team, "hi")

        for session in (a, c):
            received = events(session, "new_message")
            assert [(m["id"], m["message"]) for m in received] == [(1, "hi")]
        assert events(b) == []
        await router.shutdown()

    @pytest.mark.asyncio
    async def test_empty_body_never_reaches_the_store(self, store, rooms):
        public, _ = rooms
        router = RoomBroadcastRouter(store)
        alice = connect(router, "alice", "Alice")

        with patch.object(store, "append_message") as append:
            await router.send(alice, public, "", "text")

        append.assert_not_called()
        assert events(alice, "error")[0]["code"] == "validation_error"
        await router.shutdown()
