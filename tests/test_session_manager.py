"""SessionManager against a real SQLite store and the in-memory peer table.

Covers admission, idempotent connect, address uniqueness under concurrency,
disconnect, stats, and compensation when a later step fails.
"""

import asyncio
import logging

import pytest
from sqlalchemy.exc import SQLAlchemyError

from pubwifi.db.models import SessionStatus
from pubwifi.services.vpn.admission import AdmissionController
from pubwifi.services.vpn.crypto import gen_keys
from pubwifi.services.vpn.errors import (ConnectionLimitExceeded, DecryptionError,
                                         InvalidStats, PoolExhausted, RegistrationFailed,
                                         RegistrationTimeout, SessionNotFound, StorageError)
from pubwifi.services.vpn.service import SessionManager


async def _insert_active(store, key_manager, user_id: int, client_ip: str):
    priv, pub = gen_keys()
    return await store.create(
        user_id=user_id,
        client_ip=client_ip,
        server_address="vpn.example.test",
        server_port=51820,
        client_public_key=pub,
        client_private_key_enc=key_manager.encrypt_private_key(priv),
    )


# ---------------------------------------------------------------------------
# connect
# ---------------------------------------------------------------------------


async def test_connect_creates_active_session(manager, registrar, store, key_manager, server_keys):
    result = await manager.connect(1001, "203.0.113.7")

    row = result.session
    assert result.created
    assert row.status == SessionStatus.ACTIVE.value
    assert row.client_ip == "10.0.0.2"
    assert row.server_address == "vpn.example.test"
    assert row.server_port == 51820
    assert row.bytes_sent == 0 and row.bytes_received == 0
    assert row.connected_at is not None
    assert row.disconnected_at is None
    assert registrar.peers == {row.client_public_key: "10.0.0.2"}

    stored = await store.find_active(1001)
    assert stored.id == row.id
    private_key = key_manager.decrypt_private_key(stored.client_private_key_enc)
    assert private_key not in stored.client_private_key_enc
    assert f"PrivateKey = {private_key}\n" in result.config
    assert f"PublicKey = {server_keys.public_key}\n" in result.config
    assert "Address = 10.0.0.2/24\n" in result.config


async def test_second_connect_returns_same_session(manager, registrar):
    first = await manager.connect(1001)
    second = await manager.connect(1001)

    assert not second.created
    assert second.session.id == first.session.id
    assert second.session.client_ip == first.session.client_ip
    assert second.config == first.config
    assert registrar.count("add") == 1


async def test_repeat_connect_keeps_recorded_endpoint(make_manager):
    first = await make_manager().connect(1001)
    moved = make_manager(server_address="new-edge.example.test", server_port=443)

    again = await moved.connect(1001)

    assert not again.created
    assert again.config == first.config
    assert "Endpoint = vpn.example.test:51820\n" in again.config


async def test_concurrent_connects_of_one_user_register_once(manager, registrar, store):
    results = await asyncio.gather(*(manager.connect(1001) for _ in range(5)))

    assert len({r.session.id for r in results}) == 1
    assert sum(r.created for r in results) == 1
    assert registrar.count("add") == 1
    assert await store.count_active(1001) == 1


async def test_concurrent_connects_get_distinct_addresses(manager, registrar):
    results = await asyncio.gather(*(manager.connect(uid) for uid in range(2001, 2011)))

    ips = [r.session.client_ip for r in results]
    assert len(set(ips)) == len(ips)
    assert sorted(ips, key=lambda ip: int(ip.rsplit(".", 1)[1])) == [f"10.0.0.{n}" for n in range(2, 12)]
    assert len(registrar.peers) == 10


async def test_allocation_follows_numeric_order(manager, store, key_manager):
    await _insert_active(store, key_manager, 1, "10.0.0.9")
    await _insert_active(store, key_manager, 2, "10.0.0.10")

    result = await manager.connect(3)
    assert result.session.client_ip == "10.0.0.11"


async def test_allocation_ignores_disconnected_sessions(manager):
    a = await manager.connect(1)
    b = await manager.connect(2)
    await manager.disconnect(2)

    c = await manager.connect(3)
    assert a.session.client_ip == "10.0.0.2"
    assert b.session.client_ip == "10.0.0.3"
    # .3 is free again and the highest active address is .2
    assert c.session.client_ip == "10.0.0.3"


async def test_pool_exhausted(make_manager, registrar, store, key_manager):
    manager = make_manager(subnet="10.0.254.0/24")
    await _insert_active(store, key_manager, 1, "10.0.254.254")

    with pytest.raises(PoolExhausted):
        await manager.connect(2)
    assert registrar.calls == []


async def test_admission_rejects_user_at_cap(store, key_manager):
    await _insert_active(store, key_manager, 7, "10.0.0.2")

    with pytest.raises(ConnectionLimitExceeded):
        await AdmissionController(store, max_connections=1).check(7)
    await AdmissionController(store, max_connections=2).check(7)
    await AdmissionController(store, max_connections=1).check(8)


async def test_registration_failure_persists_nothing(manager, registrar, store):
    registrar.fail_add = True

    with pytest.raises(RegistrationFailed):
        await manager.connect(1001)

    assert await store.find_active(1001) is None
    assert await store.history(1001) == []
    assert registrar.count("remove") == 0


async def test_registration_timeout_removes_possible_peer(manager, registrar, store):
    registrar.fail_add = "timeout"

    with pytest.raises(RegistrationTimeout):
        await manager.connect(1001)

    assert await store.find_active(1001) is None
    assert registrar.count("remove") == 1


async def test_failed_connect_releases_address(manager, registrar):
    registrar.fail_add = True
    with pytest.raises(RegistrationFailed):
        await manager.connect(1)

    registrar.fail_add = False
    result = await manager.connect(2)
    assert result.session.client_ip == "10.0.0.2"


async def test_persist_failure_compensates_once(manager, registrar, store, monkeypatch):
    async def _broken_create(**kwargs):
        raise SQLAlchemyError("disk I/O error")

    monkeypatch.setattr(store, "create", _broken_create)

    with pytest.raises(StorageError):
        await manager.connect(1001)

    assert registrar.count("add") == 1
    assert registrar.count("remove") == 1
    assert registrar.peers == {}


async def test_failed_compensation_is_logged_and_original_error_surfaces(
    manager, registrar, store, monkeypatch, caplog
):
    async def _broken_create(**kwargs):
        raise SQLAlchemyError("disk I/O error")

    monkeypatch.setattr(store, "create", _broken_create)
    registrar.fail_remove = True

    with caplog.at_level(logging.CRITICAL):
        with pytest.raises(StorageError):
            await manager.connect(1001)

    assert registrar.count("remove") == 1
    assert any("vpn_compensation_failed" in r.getMessage() for r in caplog.records)


async def test_cancel_while_persisting_removes_peer(manager, registrar, store, monkeypatch):
    persisting = asyncio.Event()

    async def _slow_create(**kwargs):
        persisting.set()
        await asyncio.sleep(10)

    monkeypatch.setattr(store, "create", _slow_create)

    task = asyncio.create_task(manager.connect(1001))
    await persisting.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert registrar.count("add") == 1
    assert registrar.count("remove") == 1
    assert registrar.peers == {}


async def test_cancel_during_peer_add_removes_peer(manager, registrar, store, monkeypatch):
    added = asyncio.Event()
    add_peer = registrar.add_peer

    async def _add_then_hang(public_key, client_ip):
        await add_peer(public_key, client_ip)
        added.set()
        await asyncio.sleep(10)

    monkeypatch.setattr(registrar, "add_peer", _add_then_hang)

    task = asyncio.create_task(manager.connect(1001))
    await added.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert registrar.peers == {}
    assert await store.find_active(1001) is None


async def test_existing_session_with_undecryptable_key(manager, store):
    priv, pub = gen_keys()
    await store.create(
        user_id=5,
        client_ip="10.0.0.2",
        server_address="vpn.example.test",
        server_port=51820,
        client_public_key=pub,
        client_private_key_enc="gAAAAA-not-a-real-token",
    )
    with pytest.raises(DecryptionError):
        await manager.connect(5)


# ---------------------------------------------------------------------------
# disconnect
# ---------------------------------------------------------------------------


async def test_disconnect_without_session_is_noop(manager, registrar):
    result = await manager.disconnect(1001)

    assert not result.disconnected
    assert result.bytes_sent == 0 and result.bytes_received == 0
    assert registrar.calls == []


async def test_disconnect_removes_peer_and_closes_session(manager, registrar, store):
    connected = await manager.connect(1001)
    await manager.update_stats(1001, 100, 250)

    result = await manager.disconnect(1001)

    assert result.disconnected
    assert result.bytes_sent == 100 and result.bytes_received == 250
    assert result.session.status == SessionStatus.DISCONNECTED.value
    assert result.session.disconnected_at is not None
    assert registrar.peers == {}
    assert registrar.calls[-1] == {"action": "remove", "public_key": connected.session.client_public_key}
    assert await store.find_active(1001) is None


async def test_disconnected_at_is_written_once(manager, store):
    connected = await manager.connect(1001)
    first = await manager.disconnect(1001)

    assert await store.mark_disconnected(connected.session.id) is None
    [row] = await store.history(1001)
    assert row.disconnected_at == first.session.disconnected_at


async def test_disconnect_keeps_session_when_removal_fails(manager, registrar, store):
    await manager.connect(1001)
    registrar.fail_remove = True

    with pytest.raises(RegistrationFailed):
        await manager.disconnect(1001)

    active = await store.find_active(1001)
    assert active is not None
    assert active.disconnected_at is None


async def test_reconnect_after_disconnect_creates_new_session(manager, registrar):
    first = await manager.connect(1001)
    await manager.disconnect(1001)
    second = await manager.connect(1001)

    assert second.created
    assert second.session.id != first.session.id
    assert second.session.client_public_key != first.session.client_public_key
    assert registrar.count("add") == 2


# ---------------------------------------------------------------------------
# stats / status / history
# ---------------------------------------------------------------------------


async def test_update_stats_requires_active_session(manager):
    with pytest.raises(SessionNotFound):
        await manager.update_stats(1001, 1, 1)


async def test_update_stats_last_write_wins(manager, store):
    await manager.connect(1001)

    await manager.update_stats(1001, 5000, 7000)
    row = await manager.update_stats(1001, 10, 20)

    assert (row.bytes_sent, row.bytes_received) == (10, 20)
    stored = await store.find_active(1001)
    assert (stored.bytes_sent, stored.bytes_received) == (10, 20)


@pytest.mark.parametrize("sent,received", [(-1, 0), (0, -5), (1.5, 2), (True, 0)])
async def test_update_stats_rejects_bad_counters(manager, sent, received):
    await manager.connect(1001)
    with pytest.raises(InvalidStats):
        await manager.update_stats(1001, sent, received)


async def test_update_stats_after_disconnect(manager):
    await manager.connect(1001)
    await manager.disconnect(1001)
    with pytest.raises(SessionNotFound):
        await manager.update_stats(1001, 1, 1)


async def test_status(manager):
    view = await manager.status(1001)
    assert view.status == SessionStatus.DISCONNECTED.value
    assert view.bytes_sent == 0 and view.connected_at is None

    await manager.connect(1001)
    await manager.update_stats(1001, 3, 4)
    view = await manager.status(1001)
    assert view.status == SessionStatus.ACTIVE.value
    assert view.client_ip == "10.0.0.2"
    assert (view.bytes_sent, view.bytes_received) == (3, 4)


async def test_history_newest_first(manager):
    first = await manager.connect(1001)
    await manager.disconnect(1001)
    second = await manager.connect(1001)

    rows = await manager.history(1001)
    assert [r.id for r in rows] == [second.session.id, first.session.id]
    assert len(await manager.history(1001, limit=1)) == 1


# ---------------------------------------------------------------------------
# audit log
# ---------------------------------------------------------------------------


async def test_audit_events(manager, caplog):
    with caplog.at_level(logging.INFO, logger="pubwifi.audit"):
        result = await manager.connect(1001, "198.51.100.4")
        await manager.update_stats(1001, 1, 2)
        await manager.disconnect(1001)

    events = [r.event for r in caplog.records if r.name == "pubwifi.audit"]
    assert events == ["vpn_session_created", "vpn_session_stats_updated", "vpn_session_disconnected"]
    created = next(r for r in caplog.records if getattr(r, "event", None) == "vpn_session_created")
    assert created.session_id == result.session.id
    assert created.remote_addr == "198.51.100.4"


async def test_audit_can_be_disabled(make_manager, caplog):
    manager: SessionManager = make_manager(logging_enabled=False)
    with caplog.at_level(logging.INFO, logger="pubwifi.audit"):
        await manager.connect(1001)
    assert not [r for r in caplog.records if r.name == "pubwifi.audit"]
