from __future__ import annotations

from datetime import datetime
from enum import Enum
from uuid import uuid4

from sqlalchemy import BigInteger, DateTime, Index, Integer, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from pubwifi.db.base import Base


class SessionStatus(str, Enum):
    ACTIVE = "active"
    DISCONNECTED = "disconnected"


class VpnSession(Base):
    __tablename__ = "vpn_sessions"
    __table_args__ = (
        # at most one active session per client address
        Index(
            "uq_vpn_sessions_active_client_ip",
            "client_ip",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
        Index("ix_vpn_sessions_user_status", "user_id", "status"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=SessionStatus.ACTIVE.value)
    client_ip: Mapped[str] = mapped_column(String(64), nullable=False)
    server_address: Mapped[str] = mapped_column(String(255), nullable=False)
    server_port: Mapped[int] = mapped_column(Integer, nullable=False)
    client_public_key: Mapped[str] = mapped_column(String(128), nullable=False)
    # Fernet token; the plaintext key is never written
    client_private_key_enc: Mapped[str] = mapped_column(Text, nullable=False)
    bytes_sent: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    bytes_received: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    connected_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    disconnected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
