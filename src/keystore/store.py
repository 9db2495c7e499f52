"""Encrypted secret store for provider credentials.

The whole collection is kept in memory and persisted as a single JSON
document, rewritten atomically on every mutation. Plaintext is never
persisted or listed; it only exists transiently when a secret is opened.
"""

import asyncio
import json
import secrets as token_source
from pathlib import Path
from typing import Any, Optional

import aiofiles
import aiofiles.os

from shared.config import KeystoreSettings
from shared.errors import PersistenceError, SecretNotFoundError
from shared.logging import get_logger
from shared.models import SecretMetadata, StoredSecret, utcnow
from keystore.crypto import (
    KDF_ALGORITHM,
    SecretCipher,
    derive_key,
    generate_salt,
)

logger = get_logger(__name__)

FILE_VERSION = 1
MIN_KEY_LENGTH = 10


class SecretStore:
    """
    Durable, encrypted storage of provider credentials.

    Responsibilities:
    - Encrypt secrets under a key derived once from the passphrase
    - Persist the full collection after every mutation
    - Resolve credentials for a provider on demand
    """

    def __init__(
        self,
        path: str | Path = "data/api-keys.json",
        passphrase: Optional[str] = None,
        kdf_iterations: int = 390_000
    ) -> None:
        """
        Initialize the secret store.

        Args:
            path: JSON file holding the encrypted collection
            passphrase: Passphrase the store key is derived from
            kdf_iterations: PBKDF2 iteration count for new stores
        """
        self.path = Path(path)
        self.kdf_iterations = kdf_iterations

        if not passphrase:
            logger.warning(
                "No keystore passphrase configured; secrets will not survive a restart",
                path=str(self.path)
            )
            passphrase = token_source.token_hex(32)
        self._passphrase = passphrase

        self._salt: Optional[bytes] = None
        self._cipher: Optional[SecretCipher] = None
        self._secrets: dict[str, StoredSecret] = {}
        self._lock = asyncio.Lock()
        self._initialized = False

    @classmethod
    def from_settings(cls, settings: KeystoreSettings) -> "SecretStore":
        return cls(
            path=settings.path,
            passphrase=settings.passphrase,
            kdf_iterations=settings.kdf_iterations
        )

    async def initialize(self) -> None:
        """
        Load the persisted collection and derive the store key.

        A missing or corrupt file yields an empty store rather than an error.
        """
        async with self._lock:
            await self._load()

    async def _load(self) -> None:
        data = await self._read_file()
        loaded: dict[str, StoredSecret] = {}
        salt: Optional[bytes] = None
        iterations = self.kdf_iterations

        if data is not None:
            try:
                kdf = data["kdf"]
                salt = bytes.fromhex(kdf["salt"])
                iterations = int(kdf.get("iterations", iterations))
                for record in data.get("secrets", []):
                    secret = StoredSecret.model_validate(record)
                    loaded[secret.id] = secret
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(
                    "Secret store file is corrupt; starting with an empty store",
                    path=str(self.path),
                    error=str(e)
                )
                loaded = {}
                salt = None
                iterations = self.kdf_iterations

        if salt is None:
            salt = generate_salt()

        key = await asyncio.to_thread(derive_key, self._passphrase, salt, iterations)

        self._salt = salt
        self.kdf_iterations = iterations
        self._cipher = SecretCipher(key)
        self._secrets = loaded
        self._initialized = True

        logger.info("Loaded secrets", count=len(loaded), path=str(self.path))

    async def _read_file(self) -> Optional[dict[str, Any]]:
        if not await aiofiles.os.path.exists(self.path):
            return None

        try:
            async with aiofiles.open(self.path, "r", encoding="utf-8") as f:
                content = await f.read()
        except OSError as e:
            logger.error("Failed to read secret store", path=str(self.path), error=str(e))
            return None

        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            logger.warning("Secret store file is not valid JSON", path=str(self.path), error=str(e))
            return None

        if not isinstance(data, dict):
            logger.warning("Secret store file has an unknown layout", path=str(self.path))
            return None

        return data

    async def _ensure_initialized(self) -> None:
        if not self._initialized:
            await self._load()

    async def _persist(self) -> None:
        """Rewrite the whole collection via a temp file and atomic replace."""
        assert self._salt is not None

        document = {
            "version": FILE_VERSION,
            "kdf": {
                "algorithm": KDF_ALGORITHM,
                "salt": self._salt.hex(),
                "iterations": self.kdf_iterations,
            },
            "secrets": [
                secret.model_dump(mode="json", by_alias=True)
                for secret in self._secrets.values()
            ],
        }
        tmp_path = self.path.with_name(self.path.name + ".tmp")

        try:
            await aiofiles.os.makedirs(self.path.parent, exist_ok=True)
            async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                await f.write(json.dumps(document, indent=2))
            await aiofiles.os.replace(tmp_path, self.path)
        except OSError as e:
            logger.error("Failed to save secrets", path=str(self.path), error=str(e))
            raise PersistenceError(f"Failed to save secrets: {e}") from e

        logger.debug("Saved secrets", count=len(self._secrets))

    async def _commit(self, secret_id: str, record: Optional[StoredSecret]) -> None:
        """Apply one record change and persist; restore it if the write fails."""
        previous = self._secrets.get(secret_id)

        if record is None:
            self._secrets.pop(secret_id, None)
        else:
            self._secrets[secret_id] = record

        try:
            await self._persist()
        except PersistenceError:
            if previous is None:
                self._secrets.pop(secret_id, None)
            else:
                self._secrets[secret_id] = previous
            raise

    def _require(self, secret_id: str) -> StoredSecret:
        secret = self._secrets.get(secret_id)
        if secret is None:
            raise SecretNotFoundError(secret_id)
        return secret

    def _open(self, secret: StoredSecret) -> str:
        assert self._cipher is not None
        return self._cipher.decrypt(secret.encrypted_payload, associated_data=secret.id)

    async def add(self, name: str, provider: str, plaintext: str) -> StoredSecret:
        """
        Encrypt and store a new secret.

        Args:
            name: Human label
            provider: Provider tag the secret belongs to
            plaintext: The credential itself

        Returns:
            The stored record (payload encrypted)
        """
        async with self._lock:
            await self._ensure_initialized()
            assert self._cipher is not None

            secret_id = token_source.token_hex(16)
            while secret_id in self._secrets:
                secret_id = token_source.token_hex(16)

            secret = StoredSecret(
                id=secret_id,
                name=name,
                provider=provider,
                encrypted_payload=self._cipher.encrypt(plaintext, associated_data=secret_id),
            )
            await self._commit(secret_id, secret)

        logger.info("Added secret", secret_id=secret_id, name=name, provider=provider)
        return secret

    async def get(self, secret_id: str) -> str:
        """Decrypt a secret and record its use."""
        async with self._lock:
            await self._ensure_initialized()
            secret = self._require(secret_id)
            plaintext = self._open(secret)
            await self._commit(secret_id, secret.model_copy(update={"last_used": utcnow()}))

        return plaintext

    async def update(self, secret_id: str, plaintext: str) -> SecretMetadata:
        """Replace the plaintext of an existing secret."""
        async with self._lock:
            await self._ensure_initialized()
            assert self._cipher is not None
            secret = self._require(secret_id)
            updated = secret.model_copy(update={
                "encrypted_payload": self._cipher.encrypt(plaintext, associated_data=secret_id),
                "last_used": utcnow(),
            })
            await self._commit(secret_id, updated)

        logger.info("Updated secret", secret_id=secret_id, name=secret.name)
        return updated.metadata()

    async def delete(self, secret_id: str) -> None:
        """Remove a secret."""
        async with self._lock:
            await self._ensure_initialized()
            secret = self._require(secret_id)
            await self._commit(secret_id, None)

        logger.info("Deleted secret", secret_id=secret_id, name=secret.name)

    async def list_secrets(self) -> list[SecretMetadata]:
        """List secret metadata. Ciphertext and key material are never included."""
        async with self._lock:
            await self._ensure_initialized()
            return [secret.metadata() for secret in self._secrets.values()]

    async def list_by_provider(self, provider: str) -> list[SecretMetadata]:
        return [s for s in await self.list_secrets() if s.provider == provider]

    async def get_for_provider(self, provider: str) -> Optional[str]:
        """
        Resolve a credential for a provider.

        Returns:
            Plaintext of the first secret stored for the provider that can be
            decrypted, or None
        """
        for candidate in await self.list_by_provider(provider):
            try:
                return await self.get(candidate.id)
            except PersistenceError as e:
                logger.warning(
                    "Skipping undecryptable secret",
                    secret_id=candidate.id,
                    provider=provider,
                    error=str(e)
                )
        return None

    async def validate(self, secret_id: str) -> bool:
        """Check that a secret decrypts to a plausible API key."""
        try:
            plaintext = await self.get(secret_id)
        except (SecretNotFoundError, PersistenceError):
            return False
        return len(plaintext.strip()) >= MIN_KEY_LENGTH

    @property
    def count(self) -> int:
        return len(self._secrets)
