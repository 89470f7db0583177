"""Error kinds raised by the VPN session lifecycle.

str(error) is always safe to show to the end user. Diagnostics that must stay
internal (peer manager stderr, exit codes, database errors) are kept on
``detail`` and only ever logged.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    CONNECTION_LIMIT_EXCEEDED = "connection_limit_exceeded"
    POOL_EXHAUSTED = "pool_exhausted"
    REGISTRATION_FAILED = "registration_failed"
    REGISTRATION_TIMEOUT = "registration_timeout"
    DECRYPTION_ERROR = "decryption_error"
    SESSION_NOT_FOUND = "session_not_found"
    INVALID_CONFIGURATION = "invalid_configuration"
    STORAGE_ERROR = "storage_error"
    INVALID_STATS = "invalid_stats"


class VpnError(Exception):
    kind: ErrorKind
    public_message = "VPN operation failed"

    def __init__(self, message: str | None = None, *, detail: str | None = None) -> None:
        self.detail = detail
        super().__init__(message or self.public_message)


class ConnectionLimitExceeded(VpnError):
    kind = ErrorKind.CONNECTION_LIMIT_EXCEEDED
    public_message = "Maximum number of VPN connections reached"


class PoolExhausted(VpnError):
    kind = ErrorKind.POOL_EXHAUSTED
    public_message = "VPN subnet is full"


class RegistrationFailed(VpnError):
    """The peer manager rejected the request or could not be reached.

    exit_code is None when the process never ran (spawn or SSH failure).
    """

    kind = ErrorKind.REGISTRATION_FAILED
    public_message = "VPN server rejected the peer update"

    def __init__(
        self,
        message: str | None = None,
        *,
        detail: str | None = None,
        exit_code: int | None = None,
    ) -> None:
        super().__init__(message, detail=detail)
        self.exit_code = exit_code


class RegistrationTimeout(VpnError):
    kind = ErrorKind.REGISTRATION_TIMEOUT
    public_message = "VPN server did not respond in time"


class DecryptionError(VpnError):
    kind = ErrorKind.DECRYPTION_ERROR
    public_message = "Stored VPN key could not be decrypted"


class SessionNotFound(VpnError):
    kind = ErrorKind.SESSION_NOT_FOUND
    public_message = "No active VPN session"


class InvalidConfiguration(VpnError):
    kind = ErrorKind.INVALID_CONFIGURATION
    public_message = "VPN service is misconfigured"

    def __init__(self, message: str | None = None, *, detail: str | None = None) -> None:
        # startup only; the message is for operators, not end users
        super().__init__(message, detail=detail or message)


class StorageError(VpnError):
    kind = ErrorKind.STORAGE_ERROR
    public_message = "VPN session could not be saved"


class InvalidStats(VpnError):
    kind = ErrorKind.INVALID_STATS
    public_message = "Byte counters must be non-negative integers"
