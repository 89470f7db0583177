import asyncio
import logging
import sys

from pubwifi.bot.app import run_bot
from pubwifi.core.config import get_settings
from pubwifi.core.logging import setup_logging
from pubwifi.db.session import dispose_engine, get_sessionmaker, init_engine
from pubwifi.repo import SessionStore
from pubwifi.services.vpn.crypto import KeyManager, load_server_keys
from pubwifi.services.vpn.errors import InvalidConfiguration
from pubwifi.services.vpn.registrar import build_registrar
from pubwifi.services.vpn.service import SessionManager

log = logging.getLogger("pubwifi.main")


def build_session_manager() -> SessionManager:
    """Everything the VPN core needs, loaded once. Any failure here is fatal."""
    settings = get_settings()
    server_keys = load_server_keys(settings.key_dir)
    key_manager = KeyManager(settings.key_enc_secret)

    init_engine(settings.database_url)
    return SessionManager(
        store=SessionStore(get_sessionmaker()),
        registrar=build_registrar(settings),
        key_manager=key_manager,
        server_keys=server_keys,
        settings=settings,
    )


async def main() -> None:
    setup_logging()
    try:
        vpn = build_session_manager()
        settings = get_settings()
        if not settings.bot_token:
            raise InvalidConfiguration("BOT_TOKEN is missing")
    except InvalidConfiguration as e:
        log.critical("startup_failed reason=%s", e.detail)
        sys.exit(1)

    log.info(
        "vpn_core_ready subnet=%s max_connections=%s peer_mode=%s",
        settings.subnet,
        settings.max_connections,
        settings.peer_mode,
    )
    try:
        await run_bot(settings, vpn)
    finally:
        await dispose_engine()


if __name__ == "__main__":
    asyncio.run(main())
