from __future__ import annotations

import ipaddress
import os
from dataclasses import dataclass
from functools import lru_cache

from pubwifi.services.vpn.errors import InvalidConfiguration


def _env_bool(name: str, default: bool) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return v.strip().lower() in ("1", "true", "yes", "y", "on")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError:
        raise InvalidConfiguration(f"{name} must be an integer, got {raw!r}")


def make_async_db_url(url: str) -> str:
    """Accepts Railway-style DATABASE_URL and returns sqlalchemy async url."""
    if url.startswith(("postgresql+asyncpg://", "sqlite+aiosqlite://")):
        return url
    if url.startswith("postgres://"):
        return "postgresql+asyncpg://" + url[len("postgres://") :]
    if url.startswith("postgresql://"):
        return "postgresql+asyncpg://" + url[len("postgresql://") :]
    if url.startswith("sqlite://"):
        return "sqlite+aiosqlite://" + url[len("sqlite://") :]
    raise InvalidConfiguration("Unsupported DATABASE_URL format")


def parse_dns(raw: str) -> tuple[str, ...]:
    return tuple(d.strip() for d in raw.split(",") if d.strip())


@dataclass(frozen=True)
class Settings:
    bot_token: str = ""
    database_url: str = "sqlite+aiosqlite:///./pubwifi.db"
    auto_delete_seconds: int = 60

    # VPN session lifecycle
    max_connections: int = 1
    server_address: str = "vpn.pubwifi.com"
    server_port: int = 51820
    subnet: str = "10.0.0.0/24"
    dns_servers: tuple[str, ...] = ("1.1.1.1", "1.0.0.1")
    key_dir: str = "/var/www/wireguard"
    key_enc_secret: str = ""
    logging_enabled: bool = True

    # Peer manager (privileged side)
    # subprocess: local wg-manage, ssh: wg-manage on the VPN host, mock: in-memory table
    peer_mode: str = "subprocess"
    peer_command: str = "/usr/local/bin/wg-manage"
    peer_timeout: float = 10.0

    ssh_host: str = ""
    ssh_port: int = 22
    ssh_user: str = "root"
    ssh_password: str | None = None
    ssh_private_key_b64: str | None = None

    def validate(self) -> "Settings":
        """Raise InvalidConfiguration for values the service cannot start with."""
        make_async_db_url(self.database_url)
        if self.max_connections < 1:
            raise InvalidConfiguration("VPN_MAX_CONNECTIONS must be >= 1")
        if not 1 <= self.server_port <= 65535:
            raise InvalidConfiguration(f"VPN_PORT out of range: {self.server_port}")
        if not self.server_address:
            raise InvalidConfiguration("VPN_SERVER_ADDRESS is missing")
        try:
            net = ipaddress.ip_network(self.subnet, strict=False)
        except ValueError:
            raise InvalidConfiguration(f"VPN_SUBNET is not a valid network: {self.subnet!r}")
        if net.version != 4:
            raise InvalidConfiguration("VPN_SUBNET must be an IPv4 network")
        if not self.dns_servers:
            raise InvalidConfiguration("VPN_DNS must list at least one server")
        if not self.key_enc_secret:
            raise InvalidConfiguration("VPN_KEY_ENC_SECRET is missing")
        if self.peer_mode not in ("subprocess", "ssh", "mock"):
            raise InvalidConfiguration(f"Unknown VPN_PEER_MODE: {self.peer_mode!r}")
        if self.peer_timeout <= 0:
            raise InvalidConfiguration("VPN_PEER_TIMEOUT must be positive")
        if self.peer_mode == "ssh" and not self.ssh_host:
            raise InvalidConfiguration("WG_SSH_HOST is required when VPN_PEER_MODE=ssh")
        return self


def load_settings() -> Settings:
    database_url_raw = os.getenv("DATABASE_URL", "").strip()
    if not database_url_raw:
        raise InvalidConfiguration("DATABASE_URL is missing")

    try:
        peer_timeout = float(os.getenv("VPN_PEER_TIMEOUT", "10"))
    except ValueError:
        raise InvalidConfiguration("VPN_PEER_TIMEOUT must be a number")

    return Settings(
        bot_token=(os.getenv("BOT_TOKEN") or "").strip(),
        database_url=make_async_db_url(database_url_raw),
        auto_delete_seconds=_env_int("AUTO_DELETE_SECONDS", 60),
        max_connections=_env_int("VPN_MAX_CONNECTIONS", 1),
        server_address=os.getenv("VPN_SERVER_ADDRESS", "vpn.pubwifi.com").strip(),
        server_port=_env_int("VPN_PORT", 51820),
        subnet=os.getenv("VPN_SUBNET", "10.0.0.0/24").strip(),
        dns_servers=parse_dns(os.getenv("VPN_DNS", "1.1.1.1,1.0.0.1")),
        key_dir=os.getenv("VPN_KEY_DIR", "/var/www/wireguard").strip(),
        key_enc_secret=(os.getenv("VPN_KEY_ENC_SECRET") or "").strip(),
        logging_enabled=_env_bool("VPN_LOGGING_ENABLED", True),
        peer_mode=os.getenv("VPN_PEER_MODE", "subprocess").strip().lower(),
        peer_command=os.getenv("VPN_PEER_COMMAND", "/usr/local/bin/wg-manage").strip(),
        peer_timeout=peer_timeout,
        ssh_host=os.getenv("WG_SSH_HOST", "").strip(),
        ssh_port=_env_int("WG_SSH_PORT", 22),
        ssh_user=os.getenv("WG_SSH_USER", "root").strip(),
        ssh_password=(os.getenv("WG_SSH_PASSWORD") or "").strip() or None,
        ssh_private_key_b64=(os.getenv("WG_SSH_PRIVATE_KEY_B64") or "").strip() or None,
    ).validate()


@lru_cache
def get_settings() -> Settings:
    return load_settings()
