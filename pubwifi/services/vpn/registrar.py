"""Clients for the privileged peer manager (wg-manage).

Protocol: one JSON object on the child's stdin per invocation,
``{"action": "add"|"remove", "public_key": ..., "client_ip": ...}``.
Exit status 0 is success and stdout is ignored; anything else is a failure
described by stderr, or by stdout when stderr is empty.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import shlex
from typing import TYPE_CHECKING, Any

from pubwifi.services.vpn.errors import RegistrationFailed, RegistrationTimeout

if TYPE_CHECKING:
    from pubwifi.core.config import Settings

log = logging.getLogger(__name__)


def build_request(action: str, public_key: str, client_ip: str | None = None) -> dict[str, Any]:
    if not public_key:
        raise ValueError("public_key is required")
    req: dict[str, Any] = {"action": action, "public_key": public_key}
    if action == "add":
        if not client_ip:
            raise ValueError("client_ip is required for add")
        req["client_ip"] = client_ip
    return req


def diagnostic(stdout: bytes | str | None, stderr: bytes | str | None) -> str:
    def _text(v: bytes | str | None) -> str:
        if v is None:
            return ""
        if isinstance(v, bytes):
            v = v.decode("utf-8", errors="replace")
        return v.strip()

    return _text(stderr) or _text(stdout)


class PeerRegistrar:
    """Add/remove WireGuard peers on the VPN host. Stateless."""

    async def add_peer(self, public_key: str, client_ip: str) -> None:
        await self._send(build_request("add", public_key, client_ip))

    async def remove_peer(self, public_key: str) -> None:
        await self._send(build_request("remove", public_key))

    async def _send(self, request: dict[str, Any]) -> None:
        raise NotImplementedError


class SubprocessPeerRegistrar(PeerRegistrar):
    def __init__(self, command: str | list[str], timeout: float = 10.0) -> None:
        self.command = shlex.split(command) if isinstance(command, str) else list(command)
        self.timeout = timeout

    async def _send(self, request: dict[str, Any]) -> None:
        payload = json.dumps(request).encode("utf-8")
        log.debug("wg_manage_request action=%s public_key=%s", request["action"], request["public_key"][:16])

        try:
            proc = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise RegistrationFailed(detail=f"cannot start {self.command[0]}: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(payload), timeout=self.timeout)
        except asyncio.TimeoutError:
            await self._kill(proc)
            raise RegistrationTimeout(detail=f"{self.command[0]} exceeded {self.timeout}s")
        except asyncio.CancelledError:
            await self._kill(proc)
            raise

        log.debug(
            "wg_manage_output returncode=%s stdout=%r stderr=%r",
            proc.returncode,
            stdout,
            stderr,
        )
        if proc.returncode != 0:
            raise RegistrationFailed(
                detail=diagnostic(stdout, stderr) or f"exit status {proc.returncode}",
                exit_code=proc.returncode,
            )

    @staticmethod
    async def _kill(proc: asyncio.subprocess.Process) -> None:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        await proc.wait()


class InMemoryPeerRegistrar(PeerRegistrar):
    """Peer table kept in memory.

    ``fail_add`` / ``fail_remove`` script failures: True raises RegistrationFailed,
    "timeout" raises RegistrationTimeout.
    """

    def __init__(self) -> None:
        self.peers: dict[str, str] = {}
        self.calls: list[dict[str, Any]] = []
        self.fail_add: bool | str = False
        self.fail_remove: bool | str = False

    def count(self, action: str) -> int:
        return sum(1 for c in self.calls if c["action"] == action)

    async def _send(self, request: dict[str, Any]) -> None:
        self.calls.append(request)
        # let other tasks run, like a real round trip would
        await asyncio.sleep(0)

        action = request["action"]
        scripted = self.fail_add if action == "add" else self.fail_remove
        if scripted == "timeout":
            raise RegistrationTimeout(detail=f"scripted {action} timeout")
        if scripted:
            raise RegistrationFailed(detail=f"scripted {action} failure", exit_code=1)

        if action == "add":
            self.peers[request["public_key"]] = request["client_ip"]
        else:
            # same as `wg set ... remove` on an unknown peer
            self.peers.pop(request["public_key"], None)


def build_registrar(settings: "Settings") -> PeerRegistrar:
    if settings.peer_mode == "mock":
        log.warning("vpn_peer_mode_mock peers are not applied to any host")
        return InMemoryPeerRegistrar()
    if settings.peer_mode == "ssh":
        from pubwifi.services.vpn.ssh_provider import SSHPeerRegistrar

        return SSHPeerRegistrar(
            host=settings.ssh_host,
            port=settings.ssh_port,
            user=settings.ssh_user,
            password=settings.ssh_password,
            private_key_b64=settings.ssh_private_key_b64,
            command=settings.peer_command,
            timeout=settings.peer_timeout,
        )
    return SubprocessPeerRegistrar(settings.peer_command, timeout=settings.peer_timeout)
