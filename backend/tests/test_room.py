"""Tests for the room coordinator: event ordering, delivery and timers.

These drive ``Room`` directly with fake sockets; ``test_chat.py`` covers the
same flows over a real WebSocket.
"""
import asyncio
import json

import pytest

from chatroom.room.manager import Connection, Room, RoomManager
from chatroom.room.persistence import SnapshotStore
from chatroom.room.schemas import AdminSettings, TextMessage, now_ms

ROOM_PASSWORD = "room-pw"


@pytest.fixture
def room():
    return Room("lobby", AdminSettings(welcomeMessage="Welcome!"), ROOM_PASSWORD)


async def _connect(room, websocket_cls, connection_id, name=None, user_id=None):
    """Connect a fake client and optionally join it."""
    conn = Connection(websocket_cls(), connection_id=connection_id)
    await room.connect(conn)
    if name is not None:
        await _send(room, conn, {"type": "clientAction", "action": "join", "sender": name, "userId": user_id})
    return conn


async def _send(room, conn, payload):
    await room.handle_text(conn, json.dumps(payload))


class TestConnect:
    @pytest.mark.asyncio
    async def test_initial_frames(self, room, fake_websocket):
        room.store.append(TextMessage(sender="Old", userId="old", text="earlier"))
        conn = await _connect(room, fake_websocket, "c1")

        assert conn.websocket.actions() == ["text", "userList", "settingsUpdate"]
        assert conn.websocket.sent[0]["text"] == "earlier"
        assert conn.websocket.sent[2]["settings"]["welcomeMessage"] == "Welcome!"
        await room.close()

    @pytest.mark.asyncio
    async def test_join_broadcasts_users_and_welcomes_joiner(self, room, fake_websocket):
        alice = await _connect(room, fake_websocket, "c1", "Alice")
        bob = await _connect(room, fake_websocket, "c2")
        alice.websocket.clear()
        bob.websocket.clear()

        await _send(room, bob, {"type": "clientAction", "action": "join", "sender": "Bob"})

        assert alice.websocket.actions() == ["userList"]
        assert bob.websocket.actions() == ["userList", "welcome"]
        assert bob.websocket.sent[1]["text"] == "Welcome!"
        names = [u["name"] for u in alice.websocket.sent[0]["users"]]
        assert names == ["Alice", "Bob"]
        await room.close()

    @pytest.mark.asyncio
    async def test_disconnect_broadcasts_user_list(self, room, fake_websocket):
        alice = await _connect(room, fake_websocket, "c1", "Alice")
        bob = await _connect(room, fake_websocket, "c2", "Bob")
        alice.websocket.clear()

        await room.disconnect(bob)

        assert "c2" not in room.connections
        assert alice.websocket.actions() == ["userList"]
        assert [u["name"] for u in alice.websocket.sent[0]["users"]] == ["Alice"]
        await room.close()

    @pytest.mark.asyncio
    async def test_leave_keeps_connection(self, room, fake_websocket):
        alice = await _connect(room, fake_websocket, "c1", "Alice")
        await _send(room, alice, {"type": "clientAction", "action": "leave"})
        assert "c1" in room.connections
        assert "c1" not in room.state.presence
        await room.close()


class TestMessages:
    @pytest.mark.asyncio
    async def test_broadcast_uses_server_identity(self, room, fake_websocket):
        alice = await _connect(room, fake_websocket, "c1", "Alice", user_id="alice")
        bob = await _connect(room, fake_websocket, "c2", "Bob")
        alice.websocket.clear()
        bob.websocket.clear()

        await _send(room, alice, {"type": "text", "text": "hi", "userId": "mallory", "sender": "M", "timestamp": 1})

        for ws in (alice.websocket, bob.websocket):
            assert ws.actions() == ["text"]
            frame = ws.sent[0]
            assert frame["userId"] == "alice"
            assert frame["sender"] == "Alice"
            assert frame["timestamp"] > 1
        await room.close()

    @pytest.mark.asyncio
    async def test_not_joined_rejected_with_unicast(self, room, fake_websocket):
        alice = await _connect(room, fake_websocket, "c1", "Alice")
        lurker = await _connect(room, fake_websocket, "c2")
        alice.websocket.clear()
        lurker.websocket.clear()

        await _send(room, lurker, {"type": "text", "text": "hello?"})

        assert alice.websocket.sent == []
        assert lurker.websocket.actions() == ["error"]
        assert "join" in lurker.websocket.sent[0]["message"]
        assert len(room.store) == 0
        await room.close()

    @pytest.mark.asyncio
    async def test_banned_word_rejected(self, room, fake_websocket):
        room.state.settings.bannedWords = ["spam"]
        alice = await _connect(room, fake_websocket, "c1", "Alice")
        alice.websocket.clear()

        await _send(room, alice, {"type": "text", "text": "this is SPAM now"})

        assert alice.websocket.actions() == ["error"]
        assert len(room.store) == 0
        await room.close()

    @pytest.mark.asyncio
    async def test_duplicate_id_ignored(self, room, fake_websocket):
        alice = await _connect(room, fake_websocket, "c1", "Alice")
        await _send(room, alice, {"type": "text", "id": "m-1", "text": "once"})
        await _send(room, alice, {"type": "text", "id": "m-1", "text": "twice"})
        assert [m.text for m in room.store] == ["once"]
        await room.close()

    @pytest.mark.asyncio
    async def test_stored_id_not_reused_after_cache_eviction(self, fake_websocket):
        room = Room("lobby", AdminSettings(), ROOM_PASSWORD, dedup_cache_size=1)
        alice = await _connect(room, fake_websocket, "c1", "Alice")
        for message_id, text in (("m-1", "first"), ("m-2", "second"), ("m-1", "again")):
            await _send(room, alice, {"type": "text", "id": message_id, "text": text})
        assert [m.text for m in room.store] == ["first", "second"]
        await room.close()

    @pytest.mark.asyncio
    async def test_malformed_frame_gets_error_and_room_continues(self, room, fake_websocket):
        alice = await _connect(room, fake_websocket, "c1", "Alice")
        alice.websocket.clear()

        await room.handle_text(alice, "{oops")
        await _send(room, alice, {"type": "text", "text": "still here"})

        assert alice.websocket.actions() == ["error", "text"]
        await room.close()

    @pytest.mark.asyncio
    async def test_thread_reply_via_submission(self, room, fake_websocket):
        alice = await _connect(room, fake_websocket, "c1", "Alice")
        await _send(room, alice, {"type": "text", "id": "root", "text": "topic"})
        await _send(room, alice, {"type": "clientAction", "action": "createThread", "targetMessageId": "root"})
        thread_id = room.store.find_by_id("root").threadId
        alice.websocket.clear()

        await _send(room, alice, {"type": "text", "text": "reply", "threadId": thread_id})

        assert alice.websocket.actions() == ["text", "threadUpdate"]
        assert alice.websocket.sent[0]["threadId"] == thread_id
        assert alice.websocket.sent[1]["threadMessageCount"] == 2
        await room.close()


class TestActions:
    @pytest.mark.asyncio
    async def test_typing_broadcast_only_on_change(self, room, fake_websocket):
        alice = await _connect(room, fake_websocket, "c1", "Alice")
        alice.websocket.clear()
        for _ in range(2):
            await _send(room, alice, {"type": "clientAction", "action": "typing", "isTyping": True})
        assert alice.websocket.actions() == ["userList"]
        assert alice.websocket.sent[0]["users"][0]["isTyping"] is True
        await room.close()

    @pytest.mark.asyncio
    async def test_rating_updates_ranking(self, room, fake_websocket):
        alice = await _connect(room, fake_websocket, "c1", "Alice", user_id="alice")
        bob = await _connect(room, fake_websocket, "c2", "Bob", user_id="bob")
        await _send(room, alice, {"type": "text", "id": "m-1", "text": "good take"})
        bob.websocket.clear()

        await _send(room, bob, {
            "type": "clientAction", "action": "rateMessage", "targetMessageId": "m-1", "rating": 1,
        })

        assert bob.websocket.actions() == ["messageRatingUpdate", "userRankingUpdate"]
        assert bob.websocket.sent[1]["userId"] == "alice"
        assert bob.websocket.sent[1]["rankingScore"] == 1
        await room.close()

    @pytest.mark.asyncio
    async def test_invalid_rating_is_unicast_error(self, room, fake_websocket):
        alice = await _connect(room, fake_websocket, "c1", "Alice", user_id="alice")
        bob = await _connect(room, fake_websocket, "c2", "Bob", user_id="bob")
        await _send(room, alice, {"type": "text", "id": "m-1", "text": "hmm"})
        alice.websocket.clear()
        bob.websocket.clear()

        await _send(room, bob, {
            "type": "clientAction", "action": "rateMessage", "targetMessageId": "m-1", "rating": 5,
        })

        assert bob.websocket.actions() == ["error"]
        assert alice.websocket.sent == []
        await room.close()

    @pytest.mark.asyncio
    async def test_reactions_disabled(self, room, fake_websocket):
        room.state.settings.allowReactions = False
        alice = await _connect(room, fake_websocket, "c1", "Alice")
        await _send(room, alice, {"type": "text", "id": "m-1", "text": "hi"})
        alice.websocket.clear()

        await _send(room, alice, {
            "type": "clientAction", "action": "react", "targetMessageId": "m-1", "reaction": "👍",
        })

        assert alice.websocket.actions() == ["error"]
        assert room.store.find_by_id("m-1").reactions == {}
        await room.close()

    @pytest.mark.asyncio
    async def test_admin_update_broadcast_to_everyone(self, room, fake_websocket):
        alice = await _connect(room, fake_websocket, "c1", "Alice")
        observer = await _connect(room, fake_websocket, "c2")
        alice.websocket.clear()
        observer.websocket.clear()

        await _send(room, observer, {
            "type": "adminUpdate", "password": ROOM_PASSWORD, "settings": {"allowMediaUploads": False},
        })

        for ws in (alice.websocket, observer.websocket):
            assert ws.actions() == ["settingsUpdate"]
            assert ws.sent[0]["settings"]["allowMediaUploads"] is False
        await room.close()

    @pytest.mark.asyncio
    async def test_get_settings_is_unicast(self, room, fake_websocket):
        alice = await _connect(room, fake_websocket, "c1", "Alice")
        bob = await _connect(room, fake_websocket, "c2")
        alice.websocket.clear()
        bob.websocket.clear()

        await _send(room, bob, {"type": "getSettings"})

        assert alice.websocket.sent == []
        assert bob.websocket.actions() == ["settingsUpdate"]
        await room.close()


class TestDelete:
    @pytest.mark.asyncio
    async def test_wrong_password(self, room, fake_websocket):
        alice = await _connect(room, fake_websocket, "c1", "Alice")
        await _send(room, alice, {"type": "text", "id": "m-1", "text": "hi"})
        alice.websocket.clear()

        await _send(room, alice, {
            "type": "clientAction", "action": "deleteMessage", "targetMessageId": "m-1", "password": "guess",
        })

        assert alice.websocket.actions() == ["error"]
        assert "Unauthorized" in alice.websocket.sent[0]["message"]
        assert room.store.find_by_id("m-1") is not None
        await room.close()

    @pytest.mark.asyncio
    async def test_unknown_message(self, room, fake_websocket):
        admin = await _connect(room, fake_websocket, "c1")
        admin.websocket.clear()
        await _send(room, admin, {
            "type": "clientAction", "action": "deleteMessage", "targetMessageId": "nope", "password": ROOM_PASSWORD,
        })
        assert admin.websocket.actions() == ["error"]
        assert "not found" in admin.websocket.sent[0]["message"]
        await room.close()

    @pytest.mark.asyncio
    async def test_delete_cancels_expiry(self, room, fake_websocket):
        alice = await _connect(room, fake_websocket, "c1", "Alice")
        await _send(room, alice, {"type": "text", "id": "m-1", "text": "soon gone", "expiresAt": now_ms() + 50})
        assert "m-1" in room.expiry
        alice.websocket.clear()

        await _send(room, alice, {
            "type": "clientAction", "action": "deleteMessage", "targetMessageId": "m-1", "password": ROOM_PASSWORD,
        })
        await asyncio.sleep(0.2)

        assert alice.websocket.actions() == ["messageDeleted"]
        assert "m-1" not in room.expiry
        assert len(room.store) == 0
        await room.close()


class TestTimersAndDelivery:
    @pytest.mark.asyncio
    async def test_expiry_timer_hides_message(self, room, fake_websocket):
        alice = await _connect(room, fake_websocket, "c1", "Alice")
        bob = await _connect(room, fake_websocket, "c2", "Bob")
        await _send(room, alice, {"type": "text", "id": "m-1", "text": "brief", "expiresAt": now_ms() + 50})
        bob.websocket.clear()

        await asyncio.sleep(0.2)

        assert bob.websocket.actions() == ["messageExpired"]
        assert bob.websocket.sent[0]["targetMessageId"] == "m-1"
        assert bob.websocket.sent[0]["reason"] == "expired"
        assert room.store.find_by_id("m-1").isHidden is True
        await room.close()

    @pytest.mark.asyncio
    async def test_dead_connection_dropped(self, room, fake_websocket):
        alice = await _connect(room, fake_websocket, "c1", "Alice")
        bob = await _connect(room, fake_websocket, "c2", "Bob")
        bob.websocket.dead = True

        await _send(room, alice, {"type": "text", "text": "anyone?"})

        assert "c2" not in room.connections
        assert alice.websocket.actions()[-1] == "text"
        await room.close()

    @pytest.mark.asyncio
    async def test_closed_room_ignores_late_events(self, fake_websocket):
        room = Room("lobby", AdminSettings(), ROOM_PASSWORD)
        room.restore([
            TextMessage(id="later", sender="A", userId="a", text="t", timestamp=1, expiresAt=now_ms() + 60_000),
        ])
        alice = await _connect(room, fake_websocket, "c1", "Alice")
        await room.close()
        alice.websocket.clear()

        await _send(room, alice, {"type": "text", "text": "too late"})
        await room.disconnect(alice)

        assert room.closed is True
        assert room._worker is None
        assert len(room.expiry) == 0
        assert alice.websocket.sent == []
        assert [m.id for m in room.store] == ["later"]

    @pytest.mark.asyncio
    async def test_close_cancels_timers(self, room, fake_websocket):
        alice = await _connect(room, fake_websocket, "c1", "Alice")
        await _send(room, alice, {"type": "text", "text": "later", "expiresAt": now_ms() + 60_000})
        assert len(room.expiry) == 1
        await room.close()
        assert len(room.expiry) == 0


class TestSnapshots:
    @pytest.mark.asyncio
    async def test_state_survives_restart(self, fake_websocket):
        snapshots = SnapshotStore(":memory:")
        room = Room("lobby", AdminSettings(), ROOM_PASSWORD, snapshots=snapshots)
        alice = await _connect(room, fake_websocket, "c1", "Alice")
        await _send(room, alice, {"type": "text", "id": "m-1", "text": "remember me"})
        await _send(room, alice, {
            "type": "adminUpdate", "password": ROOM_PASSWORD, "settings": {"welcomeMessage": "Back again"},
        })
        await room.close()

        restarted = Room("lobby", snapshots.load_settings("lobby"), ROOM_PASSWORD, snapshots=snapshots)
        restarted.restore(snapshots.load_messages("lobby"))
        assert [m.id for m in restarted.store] == ["m-1"]
        assert restarted.settings.welcomeMessage == "Back again"
        snapshots.close()

    @pytest.mark.asyncio
    async def test_restored_past_deadline_is_hidden(self, fake_websocket):
        room = Room("lobby", AdminSettings(), ROOM_PASSWORD)
        room.restore([
            TextMessage(id="old", sender="A", userId="a", text="stale", timestamp=1, expiresAt=now_ms() - 1000),
            TextMessage(id="new", sender="A", userId="a", text="fresh", timestamp=2, expiresAt=now_ms() + 60_000),
        ])

        conn = await _connect(room, fake_websocket, "c1")

        assert room.store.find_by_id("old").isHidden is True
        assert conn.websocket.sent[0]["isHidden"] is True
        assert "new" in room.expiry
        await room.close()


class TestRoomManager:
    def test_rooms_are_created_once(self):
        manager = RoomManager()
        assert manager.get_room("a") is manager.get_room("a")
        assert manager.get_room("a") is not manager.get_room("b")

    def test_new_room_uses_configured_defaults(self, test_config):
        test_config.room.welcome_message = "Hi from config"
        test_config.room.max_message_history = 3
        room = RoomManager().get_room("fresh")
        assert room.settings.welcomeMessage == "Hi from config"
        assert room.store.max_history == 3
        assert room.snapshots is None
        assert room.state.admin_password == test_config.admin_password

    def test_snapshot_settings_override_defaults(self, test_config):
        test_config.persistence.enabled = True
        test_config.persistence.db_path = ":memory:"
        SnapshotStore.get_instance(":memory:").save_settings("lobby", AdminSettings(welcomeMessage="saved"))

        room = RoomManager(test_config).get_room("lobby")
        assert room.settings.welcomeMessage == "saved"


class TestRoomEviction:
    @pytest.mark.asyncio
    async def test_empty_room_evicted_after_last_disconnect(self, test_config, fake_websocket):
        manager = RoomManager(test_config)
        room, alice = await manager.connect(fake_websocket(), "lobby")
        _, bob = await manager.connect(fake_websocket(), "lobby")
        assert alice.websocket.accepted is True

        await manager.disconnect(room, alice)
        assert manager.rooms == {"lobby": room}

        await manager.disconnect(room, bob)
        assert manager.rooms == {}
        assert room.closed is True

    @pytest.mark.asyncio
    async def test_room_with_history_kept_without_snapshots(self, test_config, fake_websocket):
        manager = RoomManager(test_config)
        room, alice = await manager.connect(fake_websocket(), "lobby")
        await _send(room, alice, {"type": "clientAction", "action": "join", "sender": "Alice"})
        await _send(room, alice, {"type": "text", "text": "keep me"})

        await manager.disconnect(room, alice)

        assert manager.rooms["lobby"] is room
        assert room.closed is False
        await manager.close_all()

    @pytest.mark.asyncio
    async def test_room_with_snapshots_evicted_and_restored(self, test_config, fake_websocket):
        test_config.persistence.enabled = True
        test_config.persistence.db_path = ":memory:"
        manager = RoomManager(test_config)
        room, alice = await manager.connect(fake_websocket(), "lobby")
        await _send(room, alice, {"type": "clientAction", "action": "join", "sender": "Alice"})
        await _send(room, alice, {"type": "text", "id": "m-1", "text": "saved"})

        await manager.disconnect(room, alice)
        assert "lobby" not in manager.rooms

        assert [m.id for m in manager.history_store("lobby")] == ["m-1"]
        reopened, bob = await manager.connect(fake_websocket(), "lobby")
        assert reopened is not room
        assert bob.websocket.sent[0]["id"] == "m-1"
        await manager.close_all()

    @pytest.mark.asyncio
    async def test_connect_retries_when_room_closed(self, test_config, fake_websocket):
        manager = RoomManager(test_config)
        stale = manager.get_room("lobby")
        await stale.close()

        room, conn = await manager.connect(fake_websocket(), "lobby")

        assert room is not stale
        assert conn.id in room.connections
        await manager.close_all()


class TestReadOnlyAccess:
    def test_history_of_unknown_room_does_not_create_it(self, test_config):
        manager = RoomManager(test_config)
        assert list(manager.history_store("ghost")) == []
        assert manager.rooms == {}

    def test_settings_of_unknown_room_are_defaults(self, test_config):
        test_config.room.welcome_message = "hello"
        manager = RoomManager(test_config)
        assert manager.room_settings("ghost").welcomeMessage == "hello"
        assert manager.rooms == {}

    def test_live_room_is_read_directly(self, test_config):
        manager = RoomManager(test_config)
        room = manager.get_room("lobby")
        room.store.append(TextMessage(sender="A", userId="a", text="live"))
        assert [m.text for m in manager.history_store("lobby")] == ["live"]
        assert manager.room_settings("lobby") is room.settings
