"""Tests for the connection registry, presence broadcaster and presence manager."""
import asyncio

import pytest

from chatpulse.errors import StoreFailure
from chatpulse.presence import ConnectionRegistry, PresenceBroadcaster, PresenceManager


@pytest.fixture
def registry():
    return ConnectionRegistry()


@pytest.fixture
def broadcaster(registry, directory):
    return PresenceBroadcaster(registry, directory, interval=3600)


def make_manager(registry, broadcaster, directory, grace_seconds=0.0):
    return PresenceManager(registry, broadcaster, directory, grace_seconds=grace_seconds)


async def make_users(directory, *names):
    return [await directory.create_user(name, f"{name}@example.com", "h") for name in names]


# =============================================================================
# ConnectionRegistry
# =============================================================================

def test_register_returns_previous_and_last_wins(registry, fake_session):
    first = fake_session(1)
    second = fake_session(1)

    assert registry.register(1, first) is None
    assert registry.register(1, second) is first
    assert registry.lookup(1) is second
    assert len(registry) == 1


def test_route_skips_inactive_sessions(registry, fake_session):
    closing = fake_session(1, active=False)
    registry.register(1, closing)

    assert 1 in registry
    assert registry.route(1) is None
    assert registry.all_online_ids() == {1}
    assert registry.active_sessions() == []


def test_remove_and_missing_lookup(registry, fake_session):
    session = fake_session(1)
    registry.register(1, session)

    assert registry.remove(1) is session
    assert registry.remove(1) is None
    assert registry.lookup(1) is None
    assert registry.route(2) is None


# =============================================================================
# PresenceBroadcaster
# =============================================================================

@pytest.mark.asyncio
async def test_broadcast_reaches_only_active_sessions(registry, broadcaster, fake_session):
    active = fake_session(1)
    closing = fake_session(2, active=False)
    registry.register(1, active)
    registry.register(2, closing)

    delivered = await broadcaster.broadcast_snapshot()

    assert delivered is True
    assert active.types() == ["roster_snapshot"]
    assert closing.received == []


@pytest.mark.asyncio
async def test_snapshot_online_comes_from_registry_not_directory(registry, broadcaster, directory, fake_session):
    alice, bob, carol = await make_users(directory, "alice", "bob", "carol")
    # Stale persisted flag for carol must not leak into the snapshot.
    await directory.set_online(carol.id, True)
    registry.register(alice.id, fake_session(alice.id, "alice"))

    snapshot = await broadcaster.build_snapshot()

    assert [entry.username for entry in snapshot.all] == ["alice", "bob", "carol"]
    assert [entry.id for entry in snapshot.online] == [alice.id]


@pytest.mark.asyncio
async def test_snapshot_skipped_when_nobody_connected(broadcaster):
    assert await broadcaster.broadcast_snapshot() is False


@pytest.mark.asyncio
async def test_announcements(registry, broadcaster, directory, fake_session):
    (alice,) = await make_users(directory, "alice")
    observer = fake_session(99)
    registry.register(99, observer)

    await broadcaster.announce_online(alice)
    await broadcaster.announce_offline(alice.id)

    online, offline = observer.received
    assert (online.type, online.id, online.username) == ("user_online", alice.id, "alice")
    assert (offline.type, offline.id) == ("user_offline", alice.id)


@pytest.mark.asyncio
async def test_periodic_task_sends_snapshots_and_stops(registry, directory, fake_session):
    broadcaster = PresenceBroadcaster(registry, directory, interval=0.05)
    session = fake_session(1)
    registry.register(1, session)

    broadcaster.start()
    assert broadcaster.running
    await asyncio.sleep(0.2)
    await broadcaster.stop()

    assert not broadcaster.running
    assert session.types().count("roster_snapshot") >= 2


@pytest.mark.asyncio
async def test_periodic_task_survives_store_failure(registry, directory, fake_session, monkeypatch):
    broadcaster = PresenceBroadcaster(registry, directory, interval=0.05)
    registry.register(1, fake_session(1))

    async def failing_list_users():
        raise StoreFailure("directory down")

    monkeypatch.setattr(directory, "list_users", failing_list_users)
    broadcaster.start()
    await asyncio.sleep(0.15)
    assert broadcaster.running
    await broadcaster.stop()


# =============================================================================
# PresenceManager
# =============================================================================

@pytest.mark.asyncio
async def test_activate_announces_and_persists(registry, broadcaster, directory, fake_session):
    (alice,) = await make_users(directory, "alice")
    manager = make_manager(registry, broadcaster, directory)
    session = fake_session(alice.id, "alice")

    await manager.activate(session)

    assert registry.route(alice.id) is session
    assert session.types() == ["user_online", "roster_snapshot"]
    assert (await directory.get_user(alice.id)).online is True


@pytest.mark.asyncio
async def test_duplicate_login_evicts_previous_without_presence_flap(registry, broadcaster, directory, fake_session):
    alice, bob = await make_users(directory, "alice", "bob")
    manager = make_manager(registry, broadcaster, directory)
    observer = fake_session(bob.id, "bob")
    await manager.activate(observer)
    first = fake_session(alice.id, "alice")
    await manager.activate(first)
    observer.received.clear()

    second = fake_session(alice.id, "alice")
    await manager.activate(second)

    assert first.evicted_with == "signed_in_elsewhere"
    assert registry.lookup(alice.id) is second
    assert observer.types() == ["roster_snapshot"]

    # The evicted session's teardown must not unregister the newer one.
    await manager.release(first)
    assert registry.lookup(alice.id) is second


@pytest.mark.asyncio
async def test_release_without_grace_removes_immediately(registry, broadcaster, directory, fake_session):
    alice, bob = await make_users(directory, "alice", "bob")
    manager = make_manager(registry, broadcaster, directory)
    observer = fake_session(bob.id, "bob")
    session = fake_session(alice.id, "alice")
    await manager.activate(observer)
    await manager.activate(session)
    observer.received.clear()

    session.is_active = False
    await manager.release(session)

    assert alice.id not in registry
    assert observer.types() == ["user_offline", "roster_snapshot"]
    assert (await directory.get_user(alice.id)).online is False


@pytest.mark.asyncio
async def test_grace_window_reconnect_suppresses_offline(registry, broadcaster, directory, fake_session):
    alice, bob = await make_users(directory, "alice", "bob")
    manager = make_manager(registry, broadcaster, directory, grace_seconds=0.1)
    observer = fake_session(bob.id, "bob")
    first = fake_session(alice.id, "alice")
    await manager.activate(observer)
    await manager.activate(first)
    observer.received.clear()

    first.is_active = False
    await manager.release(first)
    assert manager.pending_removals() == 1
    assert alice.id in registry
    assert registry.route(alice.id) is None

    second = fake_session(alice.id, "alice")
    await manager.activate(second)
    assert manager.pending_removals() == 0
    assert first.evicted_with is None

    await asyncio.sleep(0.2)
    assert registry.lookup(alice.id) is second
    assert "user_offline" not in observer.types()
    assert "user_online" not in observer.types()


@pytest.mark.asyncio
async def test_grace_window_expiry_removes(registry, broadcaster, directory, fake_session):
    alice, bob = await make_users(directory, "alice", "bob")
    manager = make_manager(registry, broadcaster, directory, grace_seconds=0.05)
    observer = fake_session(bob.id, "bob")
    session = fake_session(alice.id, "alice")
    await manager.activate(observer)
    await manager.activate(session)
    observer.received.clear()

    session.is_active = False
    await manager.release(session)
    await asyncio.sleep(0.2)

    assert alice.id not in registry
    assert observer.types() == ["user_offline", "roster_snapshot"]
    assert manager.pending_removals() == 0


@pytest.mark.asyncio
async def test_expiry_does_not_remove_a_newer_session(registry, broadcaster, directory, fake_session):
    (alice,) = await make_users(directory, "alice")
    manager = make_manager(registry, broadcaster, directory, grace_seconds=5)
    old = fake_session(alice.id, "alice", active=False)
    new = fake_session(alice.id, "alice")
    registry.register(alice.id, new)

    assert await manager._expire(old) is False
    assert registry.lookup(alice.id) is new


@pytest.mark.asyncio
async def test_force_logout_evicts_and_removes(registry, broadcaster, directory, fake_session):
    (alice,) = await make_users(directory, "alice")
    manager = make_manager(registry, broadcaster, directory, grace_seconds=5)
    session = fake_session(alice.id, "alice")
    await manager.activate(session)

    assert await manager.force_logout(alice.id) is True
    assert session.evicted_with == "logged_out"
    assert alice.id not in registry
    assert await manager.force_logout(alice.id) is False


@pytest.mark.asyncio
async def test_write_back_failure_does_not_block_presence(registry, broadcaster, directory, fake_session, monkeypatch):
    (alice,) = await make_users(directory, "alice")
    manager = make_manager(registry, broadcaster, directory)

    async def failing_set_online(user_id, online):
        raise StoreFailure("write failed")

    monkeypatch.setattr(directory, "set_online", failing_set_online)
    session = fake_session(alice.id, "alice")
    await manager.activate(session)

    assert registry.route(alice.id) is session
    assert session.types() == ["user_online", "roster_snapshot"]


@pytest.mark.asyncio
async def test_shutdown_cancels_pending_timers(registry, broadcaster, directory, fake_session):
    (alice,) = await make_users(directory, "alice")
    manager = make_manager(registry, broadcaster, directory, grace_seconds=5)
    session = fake_session(alice.id, "alice")
    await manager.activate(session)
    session.is_active = False
    await manager.release(session)
    assert manager.pending_removals() == 1

    await manager.shutdown()
    assert manager.pending_removals() == 0


@pytest.mark.asyncio
async def test_shutdown_waits_for_removal_already_under_way(registry, broadcaster, directory, fake_session, monkeypatch):
    (alice,) = await make_users(directory, "alice")
    manager = make_manager(registry, broadcaster, directory, grace_seconds=0.05)
    session = fake_session(alice.id, "alice")
    await manager.activate(session)

    written = []
    original_set_online = directory.set_online

    async def slow_set_online(user_id, online):
        await asyncio.sleep(0.3)
        await original_set_online(user_id, online)
        written.append(online)

    monkeypatch.setattr(directory, "set_online", slow_set_online)
    session.is_active = False
    await manager.release(session)
    # Past the window: the timer is inside the write-back now.
    await asyncio.sleep(0.15)
    assert manager.pending_removals() == 0

    await manager.shutdown()

    assert written == [False]
    assert (await directory.get_user(alice.id)).online is False
