"""Key derivation and authenticated encryption for stored secrets.

The store key is derived once per store with PBKDF2-HMAC-SHA256 over the
configured passphrase and a random per-store salt. Each secret is sealed with
AES-256-GCM under a fresh 12-byte IV, with the secret id bound as associated
data so payloads cannot be swapped between records.
"""

import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from shared.errors import PersistenceError

SALT_BYTES = 16
IV_BYTES = 12
KEY_BYTES = 32
KDF_ALGORITHM = "pbkdf2-sha256"


def generate_salt() -> bytes:
    return os.urandom(SALT_BYTES)


def derive_key(passphrase: str, salt: bytes, iterations: int) -> bytes:
    """Derive the 256-bit store key from a passphrase."""
    if not passphrase:
        raise ValueError("Passphrase must not be empty")

    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_BYTES,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(passphrase.encode("utf-8"))


class SecretCipher:
    """Seals and opens secret payloads of the form `<iv-hex>:<ciphertext-hex>`."""

    def __init__(self, key: bytes) -> None:
        if len(key) != KEY_BYTES:
            raise ValueError(f"Store key must be {KEY_BYTES} bytes")
        self._aead = AESGCM(key)

    def encrypt(self, plaintext: str, associated_data: Optional[str] = None) -> str:
        iv = os.urandom(IV_BYTES)
        ciphertext = self._aead.encrypt(
            iv,
            plaintext.encode("utf-8"),
            associated_data.encode("utf-8") if associated_data else None,
        )
        return f"{iv.hex()}:{ciphertext.hex()}"

    def decrypt(self, payload: str, associated_data: Optional[str] = None) -> str:
        try:
            iv_hex, ciphertext_hex = payload.split(":", 1)
            plaintext = self._aead.decrypt(
                bytes.fromhex(iv_hex),
                bytes.fromhex(ciphertext_hex),
                associated_data.encode("utf-8") if associated_data else None,
            )
        except (ValueError, InvalidTag) as e:
            raise PersistenceError("Cannot decrypt secret payload: wrong passphrase or corrupt record") from e

        return plaintext.decode("utf-8")
