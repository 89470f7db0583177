"""Shared fixtures: a file-backed SQLite store, an in-memory peer table and a
SessionManager wired to both.

A file database (not :memory:) is used because the manager runs several
sessions concurrently and each one needs its own connection.
"""

from __future__ import annotations

from dataclasses import replace

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from pubwifi.core.config import Settings
from pubwifi.db.base import Base
from pubwifi.repo import SessionStore
from pubwifi.services.vpn.crypto import KeyManager, ServerKeys, gen_keys
from pubwifi.services.vpn.registrar import InMemoryPeerRegistrar
from pubwifi.services.vpn.service import SessionManager

TEST_SECRET = "unit-test-secret-not-for-production"


@pytest.fixture
async def sessionmaker(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'vpn.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def store(sessionmaker):
    return SessionStore(sessionmaker)


@pytest.fixture
def server_keys():
    priv, pub = gen_keys()
    return ServerKeys(private_key=priv, public_key=pub)


@pytest.fixture
def key_manager():
    return KeyManager(TEST_SECRET)


@pytest.fixture
def registrar():
    return InMemoryPeerRegistrar()


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        key_enc_secret=TEST_SECRET,
        server_address="vpn.example.test",
        server_port=51820,
        subnet="10.0.0.0/24",
        dns_servers=("1.1.1.1", "1.0.0.1"),
        peer_mode="mock",
    )


@pytest.fixture
def make_manager(store, registrar, key_manager, server_keys, settings):
    def _make(**overrides) -> SessionManager:
        return SessionManager(
            store=store,
            registrar=registrar,
            key_manager=key_manager,
            server_keys=server_keys,
            settings=replace(settings, **overrides),
        )

    return _make


@pytest.fixture
def manager(make_manager):
    return make_manager()
