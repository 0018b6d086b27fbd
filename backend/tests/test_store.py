"""Tests for the DuckDB-backed directory, message and group stores."""
import asyncio
import threading
import time
from datetime import datetime

import duckdb
import pytest

from chatpulse.errors import StoreFailure, StoreTimeout, UserExists
from chatpulse.store.database import Database
from chatpulse.store.messages import Receipt
from chatpulse.store.schemas import MessageType


# =============================================================================
# Database
# =============================================================================

@pytest.mark.asyncio
async def test_run_wraps_duckdb_errors(database):
    with pytest.raises(StoreFailure):
        await database.run(lambda conn: conn.execute("SELECT * FROM no_such_table"))


@pytest.mark.asyncio
async def test_run_times_out(database):
    database.timeout = 0.05

    def _slow(conn: duckdb.DuckDBPyConnection):
        time.sleep(0.3)

    with pytest.raises(StoreTimeout):
        await database.run(_slow)


@pytest.mark.asyncio
async def test_timed_out_call_that_never_started_writes_nothing(database, message_store):
    started = threading.Event()

    def _hold_lock(conn: duckdb.DuckDBPyConnection):
        started.set()
        time.sleep(0.5)

    holder = asyncio.ensure_future(asyncio.to_thread(database.call_sync, _hold_lock))
    await asyncio.to_thread(started.wait)
    database.timeout = 0.1

    with pytest.raises(StoreTimeout):
        await message_store.create(1, "hello", recipient_id=2)

    await holder
    database.timeout = 10.0
    assert await message_store.conversation(1, 2) == []
    # The lock is free again for later calls.
    resent = await message_store.create(1, "hello", recipient_id=2)
    assert [m.id for m in await message_store.conversation(1, 2)] == [resent.id]


@pytest.mark.asyncio
async def test_timed_out_statement_is_rolled_back(database):
    def _insert_then_stall(conn: duckdb.DuckDBPyConnection):
        conn.execute(
            "INSERT INTO users (username, email, password_hash) VALUES ('a', 'a@x', 'h')"
        )
        conn.execute("SELECT count(*) FROM range(5000000000)").fetchone()

    database.timeout = 0.2
    with pytest.raises(StoreTimeout):
        await database.run(_insert_then_stall)

    database.timeout = 30.0
    count = await database.run(lambda conn: conn.execute("SELECT count(*) FROM users").fetchone()[0])
    assert count == 0


@pytest.mark.asyncio
async def test_closed_database_refuses_calls(database):
    database.close()
    with pytest.raises(StoreFailure, match="database closed"):
        await database.run(lambda conn: conn.execute("SELECT 1").fetchone())


def test_schema_is_idempotent(tmp_path):
    path = str(tmp_path / "chat.duckdb")
    Database(path).close()
    db = Database(path)
    assert db.call_sync(lambda conn: conn.execute("SELECT count(*) FROM users").fetchone()[0]) == 0
    db.close()


# =============================================================================
# UserDirectory
# =============================================================================

@pytest.mark.asyncio
async def test_create_and_get_user(directory):
    user = await directory.create_user("alice", "alice@example.com", "hash")
    assert user.id > 0
    assert user.online is False
    assert user.last_active is not None

    fetched = await directory.get_user(user.id)
    assert fetched.username == "alice"
    assert await directory.get_user(9999) is None


@pytest.mark.asyncio
async def test_create_user_rejects_duplicates(directory):
    await directory.create_user("alice", "alice@example.com", "hash")
    with pytest.raises(UserExists, match="Username"):
        await directory.create_user("alice", "other@example.com", "hash")
    with pytest.raises(UserExists, match="Email"):
        await directory.create_user("alicia", "alice@example.com", "hash")


@pytest.mark.asyncio
async def test_get_credentials_includes_hash(directory):
    await directory.create_user("alice", "alice@example.com", "stored-hash")
    credentials = await directory.get_credentials("alice")
    assert credentials.password_hash == "stored-hash"
    assert await directory.get_credentials("nobody") is None


@pytest.mark.asyncio
async def test_search_users_is_case_insensitive_and_excludes_caller(directory):
    alice = await directory.create_user("Alice", "a@example.com", "h")
    await directory.create_user("alicia", "b@example.com", "h")
    await directory.create_user("bob", "c@example.com", "h")

    found = await directory.search_users("ALI")
    assert [u.username for u in found] == ["Alice", "alicia"]

    found = await directory.search_users("ali", exclude_id=alice.id)
    assert [u.username for u in found] == ["alicia"]


@pytest.mark.asyncio
async def test_set_online_and_reset(directory):
    alice = await directory.create_user("alice", "a@example.com", "h")
    bob = await directory.create_user("bob", "b@example.com", "h")
    await directory.set_online(alice.id, True)
    await directory.set_online(bob.id, True)

    assert (await directory.get_user(alice.id)).online is True
    assert await directory.reset_online() == 2
    assert all(not u.online for u in await directory.list_users())


# =============================================================================
# MessageStore
# =============================================================================

@pytest.mark.asyncio
async def test_create_requires_exactly_one_destination(message_store):
    with pytest.raises(ValueError):
        await message_store.create(1, "hi")
    with pytest.raises(ValueError):
        await message_store.create(1, "hi", recipient_id=2, group_id=3)


@pytest.mark.asyncio
async def test_conversation_covers_both_directions_in_order(message_store):
    first = await message_store.create(1, "one", recipient_id=2)
    second = await message_store.create(2, "two", recipient_id=1)
    await message_store.create(1, "elsewhere", recipient_id=3)
    third = await message_store.create(1, "three", recipient_id=2)

    history = await message_store.conversation(2, 1)
    assert [m.id for m in history] == [first.id, second.id, third.id]
    assert all(not m.read and not m.seen for m in history)


@pytest.mark.asyncio
async def test_conversation_breaks_timestamp_ties_by_id(database, message_store):
    stamp = datetime(2024, 1, 1, 12, 0, 0)

    def _insert_same_instant(conn: duckdb.DuckDBPyConnection):
        for message_id, content in ((10, "later id"), (5, "earlier id")):
            conn.execute(
                """
                INSERT INTO messages (id, sender_id, recipient_id, content, message_type, created_at)
                VALUES (?, 1, 2, ?, 'text', ?)
                """,
                [message_id, content, stamp],
            )

    await database.run(_insert_same_instant)

    history = await message_store.conversation(1, 2)
    assert [m.id for m in history] == [5, 10]
    assert [m.content for m in history] == ["earlier id", "later id"]


@pytest.mark.asyncio
async def test_media_message_round_trips_type_and_url(message_store):
    created = await message_store.create(
        1, "", MessageType.IMAGE, "/uploads/a.png", recipient_id=2
    )
    fetched = await message_store.get(created.id)
    assert fetched.message_type is MessageType.IMAGE
    assert fetched.media_url == "/uploads/a.png"


@pytest.mark.asyncio
async def test_mark_seen_sets_both_flags_once(message_store):
    message = await message_store.create(1, "hi", recipient_id=2)

    updated, changed = await message_store.mark(message.id, Receipt.SEEN)
    assert changed is True
    assert updated.seen is True
    assert updated.read is True

    _, changed = await message_store.mark(message.id, Receipt.SEEN)
    assert changed is False
    _, changed = await message_store.mark(message.id, Receipt.READ)
    assert changed is False


@pytest.mark.asyncio
async def test_mark_read_leaves_seen_unset(message_store):
    message = await message_store.create(1, "hi", recipient_id=2)
    updated, changed = await message_store.mark(message.id, Receipt.READ)
    assert changed is True
    assert updated.read is True
    assert updated.seen is False


@pytest.mark.asyncio
async def test_mark_unknown_message(message_store):
    message, changed = await message_store.mark(404, Receipt.SEEN)
    assert message is None
    assert changed is False


@pytest.mark.asyncio
async def test_concurrent_marks_flip_exactly_once(message_store):
    message = await message_store.create(1, "hi", recipient_id=2)
    results = await asyncio.gather(
        *[message_store.mark(message.id, Receipt.SEEN) for _ in range(5)]
    )
    assert sum(1 for _, changed in results if changed) == 1


# =============================================================================
# GroupStore
# =============================================================================

@pytest.mark.asyncio
async def test_group_admin_is_always_a_member(group_store):
    group = await group_store.create_group("team", 1, [2, 3, 2])
    assert group.member_ids == [1, 2, 3]
    assert await group_store.is_member(group.id, 1)
    assert not await group_store.is_member(group.id, 4)


@pytest.mark.asyncio
async def test_groups_for_user(group_store):
    team = await group_store.create_group("team", 1, [2])
    await group_store.create_group("other", 3, [4])

    groups = await group_store.groups_for_user(2)
    assert [g.id for g in groups] == [team.id]
    assert groups[0].member_ids == [1, 2]
    assert await group_store.get_group(999) is None


@pytest.mark.asyncio
async def test_group_messages_are_separate_from_direct(message_store, group_store):
    group = await group_store.create_group("team", 1, [2])
    await message_store.create(1, "to group", group_id=group.id)
    await message_store.create(1, "direct", recipient_id=2)

    assert [m.content for m in await message_store.group_messages(group.id)] == ["to group"]
    assert [m.content for m in await message_store.conversation(1, 2)] == ["direct"]
