from __future__ import annotations

from datetime import datetime
from typing import Iterable

from pubwifi.core.time import ensure_aware_utc
from pubwifi.db.models import SessionStatus, VpnSession
from pubwifi.services.vpn.service import SessionStatusView

_UNITS = ("B", "KB", "MB", "GB", "TB")


def fmt_dt(dt: datetime | None) -> str:
    if not dt:
        return "—"
    return ensure_aware_utc(dt).strftime("%d.%m.%Y %H:%M UTC")


def fmt_bytes(n: int) -> str:
    if n < 1024:
        return f"{n} B"
    value = float(n)
    for unit in _UNITS[1:]:
        value /= 1024
        if value < 1024 or unit == _UNITS[-1]:
            break
    return f"{value:.1f} {unit}"


def status_text(view: SessionStatusView) -> str:
    if view.status != SessionStatus.ACTIVE.value:
        return "🌍 VPN: disconnected ❌"
    return (
        "🌍 VPN: active ✅\n\n"
        f"Address: {view.client_ip}\n"
        f"Connected: {fmt_dt(view.connected_at)}\n"
        f"Sent: {fmt_bytes(view.bytes_sent)}\n"
        f"Received: {fmt_bytes(view.bytes_received)}"
    )


def history_text(rows: Iterable[VpnSession]) -> str:
    lines = []
    for row in rows:
        lines.append(
            f"• {fmt_dt(row.connected_at)} → {fmt_dt(row.disconnected_at)} "
            f"{row.client_ip} ↑{fmt_bytes(row.bytes_sent)} ↓{fmt_bytes(row.bytes_received)}"
        )
    if not lines:
        return "No VPN sessions yet."
    return "🕘 Recent sessions\n\n" + "\n".join(lines)
