"""Tests for room creation, presence aggregation and visibility."""

import pytest

from chatcore.service.errors import (
    ForbiddenError,
    InvalidTokenError,
    NotFoundError,
    ValidationError,
)
from chatcore.service.rooms import private_room_name, public_room_name
from chatcore.storage.common import dump_json
from chatcore.storage.keys import ROOMS_INDEX, presence_key, room_key, room_presence_index_key


async def _user(runtime, name):
    await runtime.users.create_user(name)
    return await runtime.tokens.issue_token(name)


@pytest.fixture
def rooms(runtime):
    return runtime.rooms


class TestCreateRoom:
    async def test_admin_creates_public_room(self, rooms, runtime, broadcaster):
        token = await _user(runtime, "ryo")
        room = await rooms.create_room("ryo", token, "public", name="Lounge Room")

        assert room.type == "public"
        assert room.name == "lounge-room"
        assert room.members is None
        assert room.user_count == 0
        assert broadcaster.events_named("room-created")[0][0] == "chats-public"

    async def test_non_admin_cannot_create_public_room(self, rooms, runtime):
        token = await _user(runtime, "alice")
        with pytest.raises(ForbiddenError):
            await rooms.create_room("alice", token, "public", name="lounge")

    async def test_public_room_needs_name(self, rooms, runtime):
        token = await _user(runtime, "ryo")
        with pytest.raises(ValidationError):
            await rooms.create_room("ryo", token, "public", name="  ")

    async def test_profane_public_room_name_rejected(self, rooms, runtime):
        token = await _user(runtime, "ryo")
        with pytest.raises(ValidationError):
            await rooms.create_room("ryo", token, "public", name="f.u.c.k room")

    async def test_private_room_includes_creator_and_canonical_name(self, rooms, runtime):
        token = await _user(runtime, "carol")
        room = await rooms.create_room("carol", token, "private", members=["Bob", "alice"])

        assert room.members == ["alice", "bob", "carol"]
        assert room.name == "@alice, @bob, @carol"

    async def test_private_room_name_stable_across_order(self, rooms, runtime):
        token = await _user(runtime, "alice")
        first = await rooms.create_room("alice", token, "private", members=["bob"])
        token_b = await _user(runtime, "bob")
        second = await rooms.create_room("bob", token_b, "private", members=["alice"])
        assert first.name == second.name

    async def test_private_room_needs_member(self, rooms, runtime):
        token = await _user(runtime, "alice")
        with pytest.raises(ValidationError):
            await rooms.create_room("alice", token, "private", members=[])

    async def test_private_room_broadcasts_to_each_member(self, rooms, runtime, broadcaster):
        token = await _user(runtime, "alice")
        await rooms.create_room("alice", token, "private", members=["bob"])
        channels = sorted(channel for channel, _ in broadcaster.events_named("room-created"))
        assert channels == ["chats-alice", "chats-bob"]

    async def test_invalid_type(self, rooms, runtime):
        token = await _user(runtime, "ryo")
        with pytest.raises(ValidationError):
            await rooms.create_room("ryo", token, "secret", name="x")

    async def test_requires_valid_token(self, rooms, runtime):
        await _user(runtime, "ryo")
        with pytest.raises(InvalidTokenError):
            await rooms.create_room("ryo", "ab" * 32, "public", name="lounge")

    async def test_room_registered(self, rooms, runtime, memory_store):
        token = await _user(runtime, "ryo")
        room = await rooms.create_room("ryo", token, "public", name="lounge")
        assert room.id in await memory_store.smembers(ROOMS_INDEX)
        assert await memory_store.ttl(room_key(room.id)) == -1


class TestVisibility:
    async def test_private_visible_to_members_only(self, rooms, runtime):
        admin = await _user(runtime, "ryo")
        alice = await _user(runtime, "alice")
        await _user(runtime, "bob")
        await _user(runtime, "carol")
        public = await rooms.create_room("ryo", admin, "public", name="general")
        private = await rooms.create_room("alice", alice, "private", members=["bob"])

        for viewer in ("alice", "bob"):
            ids = {room.id for room in await rooms.list_visible_rooms(viewer)}
            assert ids == {public.id, private.id}

        carol_ids = {room.id for room in await rooms.list_visible_rooms("carol")}
        assert carol_ids == {public.id}

    async def test_anonymous_sees_public_only(self, rooms, runtime):
        admin = await _user(runtime, "ryo")
        alice = await _user(runtime, "alice")
        public = await rooms.create_room("ryo", admin, "public", name="general")
        await rooms.create_room("alice", alice, "private", members=["bob"])
        assert [room.id for room in await rooms.list_visible_rooms(None)] == [public.id]

    async def test_listing_never_writes(self, rooms, runtime, memory_store, clock):
        admin = await _user(runtime, "ryo")
        room = await rooms.create_room("ryo", admin, "public", name="general")
        await rooms.join_room(room.id, "ryo")
        clock.advance(runtime.settings.room_presence_ttl_seconds + 1)
        before = await memory_store.get(room_key(room.id))

        await rooms.list_visible_rooms("ryo")

        assert await memory_store.get(room_key(room.id)) == before
        assert await memory_store.smembers(room_presence_index_key(room.id)) == {"ryo"}

    async def test_listing_skips_vanished_records(self, rooms, runtime, memory_store):
        admin = await _user(runtime, "ryo")
        room = await rooms.create_room("ryo", admin, "public", name="general")
        await memory_store.delete(room_key(room.id))
        assert await rooms.list_visible_rooms("ryo") == []
        assert room.id in await memory_store.smembers(ROOMS_INDEX)


class TestPresence:
    async def _room(self, runtime):
        admin = await _user(runtime, "ryo")
        return await runtime.rooms.create_room("ryo", admin, "public", name="general")

    async def test_three_markers_then_one_expires(self, rooms, runtime, clock, settings):
        room = await self._room(runtime)
        for name in ("alice", "bob"):
            await _user(runtime, name)
            await rooms.join_room(room.id, name)
        clock.advance(3600)
        await _user(runtime, "carol")
        await rooms.join_room(room.id, "carol")

        assert await rooms.refresh_room_user_count(room.id) == 3

        # alice renews; bob's marker lapses while carol's is still live.
        clock.advance(settings.room_presence_ttl_seconds - 3600 - 10)
        await rooms.join_room(room.id, "alice")
        clock.advance(20)

        assert await rooms.refresh_room_user_count(room.id) == 2
        stored = (await rooms.get_room(room.id)).user_count
        assert stored == 2

    async def test_refresh_ignores_cached_count(self, rooms, runtime, memory_store):
        room = await self._room(runtime)
        await _user(runtime, "alice")
        await rooms.join_room(room.id, "alice")
        stale = await rooms.get_room(room.id)
        stale.user_count = 42
        await memory_store.set(room_key(room.id), dump_json(stale.to_dict()))
        assert await rooms.refresh_room_user_count(room.id) == 1

    async def test_recount_keeps_concurrent_member_change(self, rooms, runtime, memory_store):
        alice = await _user(runtime, "alice")
        room = await rooms.create_room("alice", alice, "private", members=["bob", "carol"])
        await rooms.join_room(room.id, "alice")
        original_smembers = memory_store.smembers

        async def leave_during_recount(key):
            if key == room_presence_index_key(room.id):
                updated = await rooms.get_room(room.id)
                updated.members = ["alice", "bob"]
                updated.name = private_room_name(updated.members)
                await memory_store.set(room_key(room.id), dump_json(updated.to_dict()))
            return await original_smembers(key)

        memory_store.smembers = leave_during_recount
        assert await rooms.refresh_room_user_count(room.id) == 1
        memory_store.smembers = original_smembers

        stored = await rooms.get_room(room.id)
        assert stored.members == ["alice", "bob"]
        assert stored.name == "@alice, @bob"
        assert stored.user_count == 1

    async def test_join_writes_marker_with_ttl(self, rooms, runtime, memory_store, settings):
        room = await self._room(runtime)
        await _user(runtime, "alice")
        joined = await rooms.join_room(room.id, "alice")
        assert joined.user_count == 1
        assert await memory_store.ttl(presence_key(room.id, "alice")) == settings.room_presence_ttl_seconds

    async def test_rejoin_does_not_double_count(self, rooms, runtime):
        room = await self._room(runtime)
        await _user(runtime, "alice")
        await rooms.join_room(room.id, "alice")
        joined = await rooms.join_room(room.id, "alice")
        assert joined.user_count == 1

    async def test_join_broadcasts_update(self, rooms, runtime, broadcaster):
        room = await self._room(runtime)
        await _user(runtime, "alice")
        await rooms.join_room(room.id, "alice")
        channel, payload = broadcaster.events_named("room-updated")[-1]
        assert channel == "chats-public"
        assert payload == {"roomId": room.id, "userCount": 1}

    async def test_join_unknown_room(self, rooms, runtime):
        await _user(runtime, "alice")
        with pytest.raises(NotFoundError):
            await rooms.join_room("deadbeef", "alice")

    async def test_join_unknown_user(self, rooms, runtime):
        room = await self._room(runtime)
        with pytest.raises(NotFoundError):
            await rooms.join_room(room.id, "ghost")

    async def test_join_invalid_room_id(self, rooms, runtime):
        with pytest.raises(ValidationError):
            await rooms.join_room("room:1", "alice")

    async def test_non_member_cannot_join_private(self, rooms, runtime):
        alice = await _user(runtime, "alice")
        await _user(runtime, "carol")
        room = await rooms.create_room("alice", alice, "private", members=["bob"])
        with pytest.raises(ForbiddenError):
            await rooms.join_room(room.id, "carol")

    async def test_broadcast_failure_is_not_fatal(self, rooms, runtime, broadcaster):
        room = await self._room(runtime)
        await _user(runtime, "alice")

        async def broken_publish(channel, event, payload):
            raise RuntimeError("transport down")

        broadcaster.publish = broken_publish
        joined = await rooms.join_room(room.id, "alice")
        assert joined.user_count == 1


class TestLeaveAndDelete:
    async def test_leave_public_drops_presence(self, rooms, runtime, memory_store):
        admin = await _user(runtime, "ryo")
        room = await rooms.create_room("ryo", admin, "public", name="general")
        await _user(runtime, "alice")
        await rooms.join_room(room.id, "alice")
        left = await rooms.leave_room(room.id, "alice")
        assert left.user_count == 0
        assert not await memory_store.exists(presence_key(room.id, "alice"))

    async def test_private_room_deleted_when_one_member_left(self, rooms, runtime, memory_store, broadcaster):
        alice = await _user(runtime, "alice")
        room = await rooms.create_room("alice", alice, "private", members=["bob"])
        assert await rooms.leave_room(room.id, "bob") is None
        assert not await memory_store.exists(room_key(room.id))
        assert room.id not in await memory_store.smembers(ROOMS_INDEX)
        assert broadcaster.events_named("room-deleted")

    async def test_private_room_renamed_after_leave(self, rooms, runtime):
        alice = await _user(runtime, "alice")
        room = await rooms.create_room("alice", alice, "private", members=["bob", "carol"])
        left = await rooms.leave_room(room.id, "carol")
        assert left.members == ["alice", "bob"]
        assert left.name == "@alice, @bob"

    async def test_admin_deletes_public_room(self, rooms, runtime, memory_store):
        admin = await _user(runtime, "ryo")
        room = await rooms.create_room("ryo", admin, "public", name="general")
        await _user(runtime, "alice")
        await rooms.join_room(room.id, "alice")
        await rooms.delete_room("ryo", admin, room.id)
        assert not await memory_store.exists(room_key(room.id))
        assert not await memory_store.exists(presence_key(room.id, "alice"))

    async def test_non_admin_cannot_delete_public_room(self, rooms, runtime):
        admin = await _user(runtime, "ryo")
        room = await rooms.create_room("ryo", admin, "public", name="general")
        alice = await _user(runtime, "alice")
        with pytest.raises(ForbiddenError):
            await rooms.delete_room("alice", alice, room.id)

    async def test_cleanup_reconciles_all_rooms(self, rooms, runtime, memory_store, clock, settings):
        admin = await _user(runtime, "ryo")
        kept = await rooms.create_room("ryo", admin, "public", name="general")
        gone = await rooms.create_room("ryo", admin, "public", name="random")
        await _user(runtime, "alice")
        await rooms.join_room(kept.id, "alice")
        await memory_store.delete(room_key(gone.id))
        clock.advance(settings.room_presence_ttl_seconds + 1)

        counts = await rooms.cleanup_expired_presence()

        assert counts == {kept.id: 0}
        assert gone.id not in await memory_store.smembers(ROOMS_INDEX)


def test_room_name_helpers():
    assert public_room_name("  Late  Night Music ") == "late-night-music"
    assert private_room_name(["zed", "amy"]) == "@amy, @zed"
