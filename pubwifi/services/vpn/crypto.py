from __future__ import annotations

import base64
import binascii
import logging
from dataclasses import dataclass
from pathlib import Path

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import x25519
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from pubwifi.services.vpn.errors import DecryptionError, InvalidConfiguration

log = logging.getLogger(__name__)

SERVER_PRIVATE_KEY_FILE = "server_private.key"
SERVER_PUBLIC_KEY_FILE = "server_public.key"


def _b64encode_raw(b: bytes) -> str:
    return base64.b64encode(b).decode("utf-8")


def _derive_key(secret: str) -> bytes:
    """Derive a fernet key from arbitrary secret.

    Fernet expects urlsafe base64-encoded 32-byte key.
    """
    raw = secret.encode("utf-8")
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=b"pubwifi-vpn-key-v1",
        info=b"vpn-private-key",
    )
    key = hkdf.derive(raw)
    return base64.urlsafe_b64encode(key)


def _load_private_key(private_key_b64: str) -> x25519.X25519PrivateKey:
    try:
        raw = base64.b64decode(private_key_b64.strip(), validate=True)
        return x25519.X25519PrivateKey.from_private_bytes(raw)
    except (binascii.Error, ValueError) as e:
        raise InvalidConfiguration("malformed WireGuard private key") from e


def public_key_for(private_key_b64: str) -> str:
    """Return the base64 public key matching a base64 WireGuard private key."""
    pub = _load_private_key(private_key_b64).public_key()
    return _b64encode_raw(
        pub.public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
    )


def gen_keys() -> tuple[str, str]:
    """Generate WireGuard keypair (X25519) in base64 Raw format."""
    priv = x25519.X25519PrivateKey.generate()
    pub = priv.public_key()

    priv_bytes = priv.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )
    pub_bytes = pub.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    return _b64encode_raw(priv_bytes), _b64encode_raw(pub_bytes)


@dataclass(frozen=True)
class ServerKeys:
    private_key: str
    public_key: str

    def __repr__(self) -> str:
        return f"ServerKeys(public_key={self.public_key!r})"


def load_server_keys(key_dir: str | Path) -> ServerKeys:
    """Read the server keypair once at startup.

    Missing or unreadable files, malformed keys and a public key that does not
    belong to the private key all raise InvalidConfiguration.
    """
    base = Path(key_dir)
    try:
        private_key = (base / SERVER_PRIVATE_KEY_FILE).read_text(encoding="utf-8").strip()
        public_key = (base / SERVER_PUBLIC_KEY_FILE).read_text(encoding="utf-8").strip()
    except OSError as e:
        raise InvalidConfiguration(f"cannot read server keys from {base}: {e}") from e

    if not private_key or not public_key:
        raise InvalidConfiguration(f"empty server key file in {base}")
    if public_key_for(private_key) != public_key:
        raise InvalidConfiguration("server public key does not match server private key")

    log.info("vpn_server_keys_loaded dir=%s", base)
    return ServerKeys(private_key=private_key, public_key=public_key)


class KeyManager:
    """Per-session key material.

    Private keys leave this class only as Fernet tokens (AES-CBC + HMAC-SHA256
    with a fresh IV per token), or as plaintext handed straight to the config
    renderer.
    """

    def __init__(self, secret: str) -> None:
        secret = (secret or "").strip()
        if not secret:
            raise InvalidConfiguration("VPN_KEY_ENC_SECRET is missing")
        # allow passing a raw fernet key or any secret
        self._fernet = self._make_fernet(secret)

    @staticmethod
    def _make_fernet(secret: str) -> Fernet:
        if len(secret) == 44 and all(c.isalnum() or c in "-_=" for c in secret):
            try:
                return Fernet(secret.encode("utf-8"))
            except ValueError:
                pass
        return Fernet(_derive_key(secret))

    def generate(self) -> tuple[str, str]:
        """Return (private_key, public_key), both base64."""
        return gen_keys()

    def encrypt_private_key(self, private_key: str) -> str:
        return self._fernet.encrypt(private_key.encode("utf-8")).decode("utf-8")

    def decrypt_private_key(self, token: str) -> str:
        try:
            return self._fernet.decrypt(token.encode("utf-8")).decode("utf-8")
        except (InvalidToken, UnicodeError) as e:
            raise DecryptionError(detail="fernet token rejected") from e
