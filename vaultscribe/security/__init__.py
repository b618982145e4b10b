"""Encryption and secret storage for VaultScribe."""

from .crypto import CryptoStore
from .secret_store import SecretStore, FileSecretStore, KeychainSecretStore, build_secret_store

__all__ = [
    "CryptoStore",
    "SecretStore",
    "FileSecretStore",
    "KeychainSecretStore",
    "build_secret_store",
]
