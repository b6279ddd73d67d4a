"""End-to-end flows through the handler layer on the in-memory store."""

import pytest

from chatcore.api.handlers import CoreHandlers
from chatcore.storage.errors import StoreError


@pytest.fixture
def handlers(runtime):
    return CoreHandlers(runtime)


async def _register(handlers, username="zed", password="correcthorse", ip="10.0.0.1"):
    envelope = await handlers.register({"username": username, "password": password}, ip=ip)
    assert envelope.status_code == 201, envelope.error
    return envelope.data["token"]


class TestAuthFlow:
    async def test_register_login_rotate(self, handlers):
        t1 = await _register(handlers)

        login = await handlers.login(
            {"username": "zed", "password": "correcthorse", "oldToken": t1}, ip="10.0.0.1"
        )
        assert login.status == "ok"
        t2 = login.data["token"]
        assert t2 != t1

        fresh = await handlers.verify({"username": "zed", "token": t2})
        assert fresh.data == {"valid": True, "expired": False}

        strict = await handlers.verify({"username": "zed", "token": t1})
        assert strict.data == {"valid": False, "expired": False}

        lenient = await handlers.verify({"username": "zed", "token": t1}, allow_expired=True)
        assert lenient.data == {"valid": True, "expired": True}

    async def test_register_response_shape(self, handlers):
        envelope = await handlers.register({"username": "Zed", "password": "correcthorse"}, ip="1.1.1.1")
        assert envelope.data["user"]["username"] == "zed"
        assert "createdAt" in envelope.data["user"]
        assert len(envelope.data["token"]) == 64

    async def test_missing_body_fields_are_400(self, handlers):
        envelope = await handlers.register({"username": "zed"}, ip="10.0.0.1")
        assert envelope.status_code == 400
        assert envelope.error.code == "validation_error"

    async def test_bad_username_is_400(self, handlers):
        envelope = await handlers.register({"username": "a b", "password": "correcthorse"}, ip="10.0.0.1")
        assert envelope.status_code == 400

    async def test_duplicate_is_409(self, handlers):
        await _register(handlers)
        envelope = await handlers.register({"username": "zed", "password": "correcthorse"}, ip="10.0.0.2")
        assert envelope.status_code == 409
        assert envelope.error.code == "conflict"

    async def test_bad_login_is_401(self, handlers):
        await _register(handlers)
        envelope = await handlers.login({"username": "zed", "password": "nopenopenope"}, ip="10.0.0.1")
        assert envelope.status_code == 401
        assert envelope.error.code == "invalid_credentials"

    async def test_register_block_is_429(self, handlers):
        for i in range(5):
            await _register(handlers, username=f"user{i}b", ip="10.3.3.3")
        envelope = await handlers.register({"username": "late", "password": "correcthorse"}, ip="10.3.3.3")
        assert envelope.status_code == 429
        assert envelope.error.details["reset_seconds"] == 86400

    async def test_refresh_with_grace_token(self, handlers):
        t1 = await _register(handlers)
        await handlers.login({"username": "zed", "password": "correcthorse", "oldToken": t1}, ip="10.0.0.1")
        envelope = await handlers.refresh({"username": "zed", "token": t1}, ip="10.0.0.1")
        assert envelope.status == "ok"
        assert envelope.data["wasExpired"] is True

    async def test_grace_token_rejected_for_protected_call(self, handlers):
        t1 = await _register(handlers)
        await handlers.login({"username": "zed", "password": "correcthorse", "oldToken": t1}, ip="10.0.0.1")
        envelope = await handlers.list_tokens({"username": "zed", "token": t1})
        assert envelope.status_code == 401
        assert envelope.error.code == "token_expired"

    async def test_missing_credentials_distinct_code(self, handlers):
        envelope = await handlers.logout({"username": "zed"})
        assert envelope.status_code == 401
        assert envelope.error.code == "missing_credentials"

    async def test_list_tokens_masks_values(self, handlers):
        token = await _register(handlers)
        envelope = await handlers.list_tokens({"username": "zed", "token": token})
        assert envelope.data["count"] == 1
        assert token not in envelope.model_dump_json()

    async def test_password_check_and_set(self, handlers):
        token = await _register(handlers)
        creds = {"username": "zed", "token": token}
        assert (await handlers.check_password(creds)).data == {"hasPassword": True}
        assert (await handlers.set_password(creds, {"password": "short"})).status_code == 400
        assert (await handlers.set_password(creds, {"password": "batterystaple"})).status == "ok"

    async def test_logout_all_reports_count(self, handlers):
        token = await _register(handlers)
        envelope = await handlers.logout_all({"username": "zed", "token": token})
        assert envelope.data == {"success": True, "revoked": 1}


class TestRoomFlow:
    async def test_admin_creates_and_user_joins(self, handlers):
        admin = await _register(handlers, username="ryo")
        alice = await _register(handlers, username="alice", ip="10.0.0.2")

        created = await handlers.create_room(
            {"username": "ryo", "token": admin}, {"type": "public", "name": "General"}
        )
        assert created.status_code == 201
        room_id = created.data["room"]["id"]

        joined = await handlers.join_room({"username": "alice", "token": alice}, room_id)
        assert joined.data["room"]["userCount"] == 1

        listed = await handlers.list_rooms("alice")
        assert [room["id"] for room in listed.data["rooms"]] == [room_id]

    async def test_unknown_room_type_is_400(self, handlers):
        admin = await _register(handlers, username="ryo")
        envelope = await handlers.create_room({"username": "ryo", "token": admin}, {"type": "secret"})
        assert envelope.status_code == 400

    async def test_private_room_hidden_from_outsider(self, handlers):
        alice = await _register(handlers, username="alice")
        created = await handlers.create_room(
            {"username": "alice", "token": alice}, {"type": "private", "members": ["bob"]}
        )
        room_id = created.data["room"]["id"]
        assert (await handlers.get_room(room_id, "carol")).status_code == 403
        assert (await handlers.get_room(room_id, "bob")).status == "ok"
        assert (await handlers.list_rooms(None)).data == {"rooms": []}

    async def test_leave_last_private_member_deletes(self, handlers):
        alice = await _register(handlers, username="alice")
        created = await handlers.create_room(
            {"username": "alice", "token": alice}, {"type": "private", "members": ["bob"]}
        )
        envelope = await handlers.leave_room(
            {"username": "alice", "token": alice}, created.data["room"]["id"]
        )
        assert envelope.data == {"room": None, "deleted": True}

    async def test_join_requires_live_token(self, handlers):
        await _register(handlers, username="alice")
        envelope = await handlers.join_room({"username": "alice", "token": "ab" * 32}, "deadbeef")
        assert envelope.status_code == 401
        assert envelope.error.code == "invalid_token"


class TestListenFlow:
    async def test_session_lifecycle(self, handlers, broadcaster):
        zed = await _register(handlers)
        amy = await _register(handlers, username="amy", ip="10.0.0.2")
        host = {"username": "zed", "token": zed}
        guest = {"username": "amy", "token": amy}

        created = await handlers.create_listen_session(host)
        assert created.status_code == 201
        session_id = created.data["session"]["id"]

        joined = await handlers.join_listen_session(guest, session_id)
        assert [u["username"] for u in joined.data["session"]["users"]] == ["zed", "amy"]

        synced = await handlers.sync_listen_session(
            host,
            session_id,
            {
                "isPlaying": True,
                "positionMs": 1000,
                "currentTrackId": "t1",
                "currentTrackMeta": {"title": "Song", "artist": "Band"},
            },
        )
        assert synced.data == {"success": True}
        assert broadcaster.events_named("sync")[-1][1]["currentTrackMeta"] == {
            "title": "Song",
            "artist": "Band",
        }

        guest_sync = await handlers.sync_listen_session(
            guest, session_id, {"isPlaying": False, "positionMs": 0}
        )
        assert guest_sync.status_code == 403

        reaction = await handlers.react(guest, session_id, {"emoji": "🎶"})
        assert reaction.data["reaction"]["username"] == "amy"

        listed = await handlers.list_listen_sessions()
        assert listed.data["sessions"][0]["listenerCount"] == 2

        ended = await handlers.end_listen_session(host, session_id)
        assert ended.status == "ok"
        missing = await handlers.get_listen_session(session_id)
        assert missing.status_code == 404

    async def test_oversized_reaction_is_400(self, handlers):
        zed = await _register(handlers)
        creds = {"username": "zed", "token": zed}
        session_id = (await handlers.create_listen_session(creds)).data["session"]["id"]
        envelope = await handlers.react(creds, session_id, {"emoji": "123456789"})
        assert envelope.status_code == 400

    async def test_sync_body_validation(self, handlers):
        zed = await _register(handlers)
        creds = {"username": "zed", "token": zed}
        session_id = (await handlers.create_listen_session(creds)).data["session"]["id"]
        envelope = await handlers.sync_listen_session(creds, session_id, {"positionMs": 5})
        assert envelope.status_code == 400
        assert envelope.error.code == "validation_error"

    async def test_host_leave_reports_end(self, handlers):
        zed = await _register(handlers)
        creds = {"username": "zed", "token": zed}
        session_id = (await handlers.create_listen_session(creds)).data["session"]["id"]
        envelope = await handlers.leave_listen_session(creds, session_id)
        assert envelope.data == {"session": None, "ended": True}


class TestStoreFailure:
    async def test_store_outage_is_500(self, handlers, memory_store):
        async def broken_get(key):
            raise StoreError("Connection refused")

        memory_store.get = broken_get
        envelope = await handlers.verify({"username": "zed", "token": "ab" * 32})
        assert envelope.status_code == 500
        assert envelope.error.code == "server_error"
        assert envelope.error.message == "Storage is unavailable"
