"""Authenticated encryption of audio artifacts (AES-256-GCM)."""

import base64
import binascii
import logging
import os
import threading
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..exceptions import CryptoError, SecretStoreError
from .secret_store import SecretStore

logger = logging.getLogger(__name__)

KEY_BITS = 256
NONCE_SIZE = 12
TAG_SIZE = 16


class CryptoStore:
    """Encrypts and decrypts byte buffers with one lazily resolved key.

    Ciphertext is the combined sealed-box layout ``nonce || ciphertext || tag``.
    The key is looked up by name in the secret store on first use; when
    absent a new one is generated and stored with ``add_if_absent`` so
    concurrent first-time initialisation converges on a single key.
    """

    def __init__(self, secret_store: SecretStore, key_name: str = "audio_encryption_key"):
        self.secret_store = secret_store
        self.key_name = key_name
        self._aead: Optional[AESGCM] = None
        self._lock = threading.Lock()

    def _cipher(self) -> AESGCM:
        if self._aead is not None:
            return self._aead

        with self._lock:
            if self._aead is not None:
                return self._aead

            candidate = base64.b64encode(AESGCM.generate_key(bit_length=KEY_BITS)).decode('ascii')
            try:
                stored = self.secret_store.add_if_absent(self.key_name, candidate)
            except SecretStoreError as e:
                raise CryptoError(f"Encryption key unavailable: {e}") from e

            if stored == candidate:
                logger.info(f"Generated new encryption key '{self.key_name}'")
            else:
                logger.debug(f"Loaded encryption key '{self.key_name}'")

            try:
                key = base64.b64decode(stored, validate=True)
                self._aead = AESGCM(key)
            except (binascii.Error, ValueError) as e:
                raise CryptoError(f"Stored encryption key '{self.key_name}' is malformed") from e
            return self._aead

    def encrypt(self, plaintext: bytes) -> bytes:
        nonce = os.urandom(NONCE_SIZE)
        return nonce + self._cipher().encrypt(nonce, plaintext, None)

    def decrypt(self, ciphertext: bytes) -> bytes:
        if len(ciphertext) < NONCE_SIZE + TAG_SIZE:
            raise CryptoError("Ciphertext too short to be a sealed box")
        nonce, sealed = ciphertext[:NONCE_SIZE], ciphertext[NONCE_SIZE:]
        try:
            return self._cipher().decrypt(nonce, sealed, None)
        except InvalidTag as e:
            raise CryptoError("Ciphertext failed authentication (tampered or wrong key)") from e
