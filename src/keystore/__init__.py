"""Encrypted at-rest storage for provider credentials."""

from keystore.store import SecretStore

__all__ = ["SecretStore"]
