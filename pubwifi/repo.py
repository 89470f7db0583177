from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pubwifi.core.time import utcnow
from pubwifi.db.models import SessionStatus, VpnSession

log = logging.getLogger(__name__)

ACTIVE = SessionStatus.ACTIVE.value
DISCONNECTED = SessionStatus.DISCONNECTED.value


class SessionStore:
    """vpn_sessions persistence. Each call runs in its own short transaction.

    Status and counter writes are conditional on ``status = 'active'``, so a
    terminated session is never touched again.
    """

    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]) -> None:
        self._sessionmaker = sessionmaker

    async def _get_active(self, session: AsyncSession, user_id: int) -> VpnSession | None:
        q = (
            select(VpnSession)
            .where(VpnSession.user_id == user_id, VpnSession.status == ACTIVE)
            .order_by(VpnSession.connected_at.desc())
            .limit(1)
        )
        res = await session.execute(q)
        return res.scalar_one_or_none()

    async def find_active(self, user_id: int) -> VpnSession | None:
        async with self._sessionmaker() as session:
            return await self._get_active(session, user_id)

    async def count_active(self, user_id: int) -> int:
        async with self._sessionmaker() as session:
            q = select(func.count()).select_from(VpnSession).where(
                VpnSession.user_id == user_id, VpnSession.status == ACTIVE
            )
            res = await session.execute(q)
            return int(res.scalar_one())

    async def active_client_ips(self) -> list[str]:
        async with self._sessionmaker() as session:
            res = await session.execute(select(VpnSession.client_ip).where(VpnSession.status == ACTIVE))
            return list(res.scalars().all())

    async def history(self, user_id: int, limit: int = 20) -> list[VpnSession]:
        async with self._sessionmaker() as session:
            q = (
                select(VpnSession)
                .where(VpnSession.user_id == user_id)
                .order_by(VpnSession.connected_at.desc())
                .limit(max(1, int(limit)))
            )
            res = await session.execute(q)
            return list(res.scalars().all())

    async def create(
        self,
        *,
        user_id: int,
        client_ip: str,
        server_address: str,
        server_port: int,
        client_public_key: str,
        client_private_key_enc: str,
    ) -> VpnSession:
        row = VpnSession(
            user_id=user_id,
            status=ACTIVE,
            client_ip=client_ip,
            server_address=server_address,
            server_port=server_port,
            client_public_key=client_public_key,
            client_private_key_enc=client_private_key_enc,
            bytes_sent=0,
            bytes_received=0,
            connected_at=utcnow(),
            disconnected_at=None,
        )
        async with self._sessionmaker() as session:
            session.add(row)
            await session.commit()
        return row

    async def mark_disconnected(self, session_id: str, at: datetime | None = None) -> VpnSession | None:
        """Move an active session to disconnected. None if it was not active."""
        at = at or utcnow()
        async with self._sessionmaker() as session:
            res = await session.execute(
                update(VpnSession)
                .where(VpnSession.id == session_id, VpnSession.status == ACTIVE)
                .values(status=DISCONNECTED, disconnected_at=at)
            )
            if res.rowcount == 0:
                await session.rollback()
                return None
            await session.commit()
            return await session.get(VpnSession, session_id, populate_existing=True)

    async def update_stats(self, session_id: str, bytes_sent: int, bytes_received: int) -> VpnSession | None:
        """Overwrite counters of an active session. None if it was not active."""
        async with self._sessionmaker() as session:
            res = await session.execute(
                update(VpnSession)
                .where(VpnSession.id == session_id, VpnSession.status == ACTIVE)
                .values(bytes_sent=bytes_sent, bytes_received=bytes_received)
            )
            if res.rowcount == 0:
                await session.rollback()
                return None
            await session.commit()
            return await session.get(VpnSession, session_id, populate_existing=True)
