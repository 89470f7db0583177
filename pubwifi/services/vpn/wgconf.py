from __future__ import annotations

from typing import Sequence


def build_wg_conf(
    private_key: str,
    client_ip: str,
    server_public_key: str,
    server_address: str,
    server_port: int,
    dns_servers: Sequence[str],
) -> str:
    """Client-side WireGuard config. Pure: no I/O, no state."""
    return (
        "[Interface]\n"
        f"PrivateKey = {private_key}\n"
        f"Address = {client_ip}/24\n"
        f"DNS = {', '.join(dns_servers)}\n\n"
        "[Peer]\n"
        f"PublicKey = {server_public_key}\n"
        f"Endpoint = {server_address}:{server_port}\n"
        "AllowedIPs = 0.0.0.0/0\n"
        "PersistentKeepalive = 25\n"
    )
