from __future__ import annotations

from pubwifi.repo import SessionStore
from pubwifi.services.vpn.errors import ConnectionLimitExceeded


class AdmissionController:
    """Per-user cap on concurrently active sessions.

    Only meaningful inside the caller's allocation critical section: the count
    and the session insert that follows must not interleave with another connect.
    """

    def __init__(self, store: SessionStore, max_connections: int = 1) -> None:
        self.store = store
        self.max_connections = max_connections

    async def check(self, user_id: int) -> None:
        active = await self.store.count_active(user_id)
        if active >= self.max_connections:
            raise ConnectionLimitExceeded(
                detail=f"user_id={user_id} active={active} max={self.max_connections}"
            )
