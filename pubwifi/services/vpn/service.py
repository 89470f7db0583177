from __future__ import annotations

import asyncio
import contextlib
import logging
import weakref
from dataclasses import dataclass
from datetime import datetime
from typing import Iterator, Optional

from sqlalchemy.exc import SQLAlchemyError

from pubwifi.core.config import Settings
from pubwifi.db.models import SessionStatus, VpnSession
from pubwifi.repo import SessionStore
from pubwifi.services.vpn.admission import AdmissionController
from pubwifi.services.vpn.crypto import KeyManager, ServerKeys
from pubwifi.services.vpn.errors import (InvalidStats, RegistrationTimeout,
                                         SessionNotFound, StorageError, VpnError)
from pubwifi.services.vpn.ipam import IPAllocator
from pubwifi.services.vpn.registrar import PeerRegistrar
from pubwifi.services.vpn.wgconf import build_wg_conf

log = logging.getLogger(__name__)
audit_log = logging.getLogger("pubwifi.audit")


@dataclass(frozen=True)
class ConnectResult:
    session: VpnSession
    config: str
    created: bool


@dataclass(frozen=True)
class DisconnectResult:
    session: Optional[VpnSession]
    bytes_sent: int = 0
    bytes_received: int = 0

    @property
    def disconnected(self) -> bool:
        return self.session is not None


@dataclass(frozen=True)
class SessionStatusView:
    status: str
    client_ip: Optional[str] = None
    connected_at: Optional[datetime] = None
    disconnected_at: Optional[datetime] = None
    bytes_sent: int = 0
    bytes_received: int = 0


@contextlib.contextmanager
def _storage_errors(op: str) -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as e:
        log.exception("vpn_store_failed op=%s", op)
        raise StorageError(detail=f"{op}: {e}") from e


class SessionManager:
    """Connect / disconnect / update-stats for VPN sessions.

    Keeps three things in step: the vpn_sessions row, the peer table on the VPN
    host and the generated key material.

    Locking:
      * a per-user lock serializes connect/disconnect of one user, so a repeated
        connect waits and then gets the session the first one created;
      * ``_pool_lock`` covers admission + address choice. Addresses chosen but not
        yet committed sit in ``_reserved`` so the lock can be dropped before the
        peer manager is called.
    """

    def __init__(
        self,
        *,
        store: SessionStore,
        registrar: PeerRegistrar,
        key_manager: KeyManager,
        server_keys: ServerKeys,
        settings: Settings,
    ) -> None:
        self.store = store
        self.registrar = registrar
        self.keys = key_manager
        self.server_keys = server_keys
        self.server_address = settings.server_address
        self.server_port = settings.server_port
        self.dns_servers = tuple(settings.dns_servers)
        self.logging_enabled = settings.logging_enabled

        self.admission = AdmissionController(store, settings.max_connections)
        self.allocator = IPAllocator(settings.subnet)

        self._pool_lock = asyncio.Lock()
        self._reserved: set[str] = set()
        self._user_locks: "weakref.WeakValueDictionary[int, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _user_lock(self, user_id: int) -> asyncio.Lock:
        lock = self._user_locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._user_locks[user_id] = lock
        return lock

    def _audit(self, event: str, **fields) -> None:
        if not self.logging_enabled:
            return
        audit_log.info(event, extra={"event": event, **fields})

    def build_wg_conf(
        self,
        private_key: str,
        client_ip: str,
        server_address: str | None = None,
        server_port: int | None = None,
    ) -> str:
        return build_wg_conf(
            private_key=private_key,
            client_ip=client_ip,
            server_public_key=self.server_keys.public_key,
            server_address=server_address or self.server_address,
            server_port=server_port or self.server_port,
            dns_servers=self.dns_servers,
        )

    def render_config(self, row: VpnSession) -> str:
        """Re-render the client config of a stored session from its encrypted key.

        The endpoint is the one recorded on the session, not the current setting.
        """
        private_key = self.keys.decrypt_private_key(row.client_private_key_enc)
        return self.build_wg_conf(private_key, row.client_ip, row.server_address, row.server_port)

    # ------------------------------------------------------------------
    # connect
    # ------------------------------------------------------------------

    async def connect(self, user_id: int, client_address: str | None = None) -> ConnectResult:
        """Return the user's active session, creating one if there is none."""
        async with self._user_lock(user_id):
            with _storage_errors("find_active"):
                existing = await self.store.find_active(user_id)
            if existing is not None:
                log.info("vpn_connect_existing user_id=%s session_id=%s", user_id, existing.id)
                return ConnectResult(session=existing, config=self.render_config(existing), created=False)

            async with self._pool_lock:
                with _storage_errors("allocate"):
                    await self.admission.check(user_id)
                    in_use = await self.store.active_client_ips()
                client_ip = self.allocator.allocate([*in_use, *self._reserved])
                self._reserved.add(client_ip)

            try:
                return await self._provision(user_id, client_ip, client_address)
            finally:
                self._reserved.discard(client_ip)

    async def _provision(self, user_id: int, client_ip: str, client_address: str | None) -> ConnectResult:
        client_priv, client_pub = self.keys.generate()
        private_key_enc = self.keys.encrypt_private_key(client_priv)

        log.info("vpn_create_peer user_id=%s ip=%s", user_id, client_ip)
        try:
            await self.registrar.add_peer(client_pub, client_ip)
        except RegistrationTimeout as e:
            log.error("vpn_add_peer_timeout user_id=%s ip=%s detail=%s", user_id, client_ip, e.detail)
            # the killed call may still have applied the peer
            await asyncio.shield(self._compensate(client_pub, user_id=user_id, client_ip=client_ip))
            raise
        except asyncio.CancelledError:
            log.warning("vpn_add_peer_cancelled user_id=%s ip=%s", user_id, client_ip)
            await asyncio.shield(self._compensate(client_pub, user_id=user_id, client_ip=client_ip))
            raise
        except VpnError as e:
            log.error("vpn_add_peer_failed user_id=%s ip=%s detail=%s", user_id, client_ip, e.detail)
            raise

        try:
            with _storage_errors("create"):
                row = await self.store.create(
                    user_id=user_id,
                    client_ip=client_ip,
                    server_address=self.server_address,
                    server_port=self.server_port,
                    client_public_key=client_pub,
                    client_private_key_enc=private_key_enc,
                )
        except BaseException:
            # cancellation included: the peer is already on the host
            await asyncio.shield(self._compensate(client_pub, user_id=user_id, client_ip=client_ip))
            raise

        self._audit(
            "vpn_session_created",
            user_id=user_id,
            session_id=row.id,
            client_ip=client_ip,
            remote_addr=client_address,
        )
        return ConnectResult(session=row, config=self.build_wg_conf(client_priv, client_ip), created=True)

    async def _compensate(self, public_key: str, *, user_id: int, client_ip: str) -> None:
        try:
            await self.registrar.remove_peer(public_key)
            log.warning("vpn_peer_compensated user_id=%s ip=%s", user_id, client_ip)
        except Exception:
            log.critical(
                "vpn_compensation_failed peer table may be out of sync user_id=%s ip=%s public_key=%s",
                user_id,
                client_ip,
                public_key,
                exc_info=True,
            )

    # ------------------------------------------------------------------
    # disconnect
    # ------------------------------------------------------------------

    async def disconnect(self, user_id: int) -> DisconnectResult:
        """Remove the peer and close the active session. No session is not an error."""
        async with self._user_lock(user_id):
            with _storage_errors("find_active"):
                active = await self.store.find_active(user_id)
            if active is None:
                return DisconnectResult(session=None)

            try:
                await self.registrar.remove_peer(active.client_public_key)
            except VpnError as e:
                log.error(
                    "vpn_remove_peer_failed user_id=%s session_id=%s detail=%s",
                    user_id,
                    active.id,
                    e.detail,
                )
                raise

            try:
                with _storage_errors("mark_disconnected"):
                    row = await self.store.mark_disconnected(active.id)
            except StorageError:
                log.critical(
                    "vpn_peer_removed_session_still_active user_id=%s session_id=%s",
                    user_id,
                    active.id,
                )
                raise
            if row is None:
                raise SessionNotFound(detail=f"session {active.id} closed concurrently")

            self._audit(
                "vpn_session_disconnected",
                user_id=user_id,
                session_id=row.id,
                bytes_sent=row.bytes_sent,
                bytes_received=row.bytes_received,
            )
            return DisconnectResult(session=row, bytes_sent=row.bytes_sent, bytes_received=row.bytes_received)

    # ------------------------------------------------------------------
    # stats / status
    # ------------------------------------------------------------------

    async def update_stats(self, user_id: int, bytes_sent: int, bytes_received: int) -> VpnSession:
        """Overwrite the byte counters of the active session (last write wins)."""
        for v in (bytes_sent, bytes_received):
            if isinstance(v, bool) or not isinstance(v, int) or v < 0:
                raise InvalidStats(detail=f"bytes_sent={bytes_sent!r} bytes_received={bytes_received!r}")

        with _storage_errors("find_active"):
            active = await self.store.find_active(user_id)
        if active is None:
            raise SessionNotFound(detail=f"user_id={user_id}")

        with _storage_errors("update_stats"):
            row = await self.store.update_stats(active.id, bytes_sent, bytes_received)
        if row is None:
            raise SessionNotFound(detail=f"session {active.id} closed concurrently")

        self._audit(
            "vpn_session_stats_updated",
            user_id=user_id,
            session_id=row.id,
            bytes_sent=bytes_sent,
            bytes_received=bytes_received,
        )
        return row

    async def status(self, user_id: int) -> SessionStatusView:
        with _storage_errors("find_active"):
            active = await self.store.find_active(user_id)
        if active is None:
            return SessionStatusView(status=SessionStatus.DISCONNECTED.value)
        return SessionStatusView(
            status=active.status,
            client_ip=active.client_ip,
            connected_at=active.connected_at,
            disconnected_at=active.disconnected_at,
            bytes_sent=active.bytes_sent,
            bytes_received=active.bytes_received,
        )

    async def history(self, user_id: int, limit: int = 10) -> list[VpnSession]:
        with _storage_errors("history"):
            return await self.store.history(user_id, limit)
