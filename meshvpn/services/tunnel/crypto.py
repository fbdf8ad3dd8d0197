from __future__ import annotations

import base64
import binascii
import logging

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import x25519
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

log = logging.getLogger(__name__)


def gen_keys() -> tuple[str, str]:
    """WireGuard key pair (X25519), base64 of the raw 32 bytes: (private, public)."""
    priv = x25519.X25519PrivateKey.generate()
    priv_bytes = priv.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )
    pub_bytes = priv.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    return base64.b64encode(priv_bytes).decode("utf-8"), base64.b64encode(pub_bytes).decode("utf-8")


def _derive_key(secret: str) -> bytes:
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=b"meshvpn-tunnel-key-v1",
        info=b"tunnel-private-key",
    )
    return base64.urlsafe_b64encode(hkdf.derive(secret.encode("utf-8")))


def _looks_like_fernet_key(secret: str) -> bool:
    try:
        return len(base64.urlsafe_b64decode(secret.encode("utf-8"))) == 32
    except (binascii.Error, ValueError):
        return False


class KeyBox:
    """Encrypts tunnel private keys at rest.

    Accepts a raw Fernet key or any other secret (derived through HKDF).
    Without a secret keys are stored as plaintext.
    """

    def __init__(self, secret: str = "") -> None:
        secret = (secret or "").strip()
        if not secret:
            self._fernet = None
        elif _looks_like_fernet_key(secret):
            self._fernet = Fernet(secret.encode("utf-8"))
        else:
            self._fernet = Fernet(_derive_key(secret))

    @property
    def enabled(self) -> bool:
        return self._fernet is not None

    def encrypt(self, text: str) -> str:
        if self._fernet is None:
            log.warning("tunnel_key_secret_missing_encrypt_passthrough")
            return text
        return self._fernet.encrypt(text.encode("utf-8")).decode("utf-8")

    def decrypt(self, token: str) -> str:
        if self._fernet is None:
            return token
        try:
            return self._fernet.decrypt(token.encode("utf-8")).decode("utf-8")
        except InvalidToken:
            # stored before a secret was configured
            return token
