import asyncio
import base64
import json
import logging
from typing import Any, Optional

import asyncssh

from pubwifi.services.vpn.errors import RegistrationFailed, RegistrationTimeout
from pubwifi.services.vpn.registrar import PeerRegistrar, diagnostic

log = logging.getLogger(__name__)

ENV_PATH = "PATH=/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"


class SSHPeerRegistrar(PeerRegistrar):
    """Runs wg-manage on the VPN host over SSH, same stdin/exit-status protocol."""

    def __init__(
        self,
        host: str,
        port: int,
        user: str,
        password: Optional[str],
        private_key_b64: Optional[str] = None,
        command: str = "/usr/local/bin/wg-manage",
        timeout: float = 10.0,
    ):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.command = command
        self.timeout = timeout

        self.connect_timeout = 15
        self.login_timeout = 15
        self.retries = 2

        self._key_obj = None
        if private_key_b64:
            key_text = base64.b64decode(private_key_b64.encode()).decode()
            self._key_obj = asyncssh.import_private_key(key_text.strip())
            log.info("SSH key loaded (base64)")

    async def _connect(self) -> asyncssh.SSHClientConnection:
        return await asyncssh.connect(
            self.host,
            port=self.port,
            username=self.user,
            password=self.password,
            client_keys=[self._key_obj] if self._key_obj else None,
            known_hosts=None,
            connect_timeout=self.connect_timeout,
            login_timeout=self.login_timeout,
        )

    async def _connect_with_retry(self) -> asyncssh.SSHClientConnection:
        # only connecting is retried; a request that reached wg-manage is never replayed
        last: Exception | None = None
        for _ in range(self.retries):
            try:
                return await self._connect()
            except (OSError, asyncssh.Error, asyncio.TimeoutError) as e:
                last = e
                await asyncio.sleep(0.5)
        raise RegistrationFailed(detail=f"ssh {self.host}:{self.port} unreachable: {last}")

    async def _run(self, payload: str) -> asyncssh.SSHCompletedProcess:
        conn = await self._connect_with_retry()
        async with conn:
            try:
                return await conn.run(f"{ENV_PATH} {self.command}", input=payload, check=False)
            except asyncssh.Error as e:
                raise RegistrationFailed(detail=f"ssh channel error: {e}") from e

    async def _send(self, request: dict[str, Any]) -> None:
        payload = json.dumps(request)
        # one deadline for connect, retries and the remote command
        try:
            result = await asyncio.wait_for(self._run(payload), timeout=self.timeout)
        except asyncio.TimeoutError:
            # closing the connection tears down the remote channel
            raise RegistrationTimeout(detail=f"ssh {self.host} {self.command} exceeded {self.timeout}s")

        log.debug(
            "wg_manage_output host=%s exit_status=%s stdout=%r stderr=%r",
            self.host,
            result.exit_status,
            result.stdout,
            result.stderr,
        )
        if result.exit_status != 0:
            raise RegistrationFailed(
                detail=diagnostic(result.stdout, result.stderr) or f"exit status {result.exit_status}",
                exit_code=result.exit_status,
            )
