from .vpn_session import SessionStatus, VpnSession

__all__ = [
    "SessionStatus",
    "VpnSession",
]
