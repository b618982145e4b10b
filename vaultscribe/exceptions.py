"""Exception hierarchy for VaultScribe.

Every pipeline failure derives from VaultScribeError so callers can
catch the whole family at the orchestrator boundary.
"""


class VaultScribeError(Exception):
    """Base exception for all VaultScribe errors."""


class ConfigError(VaultScribeError):
    """Configuration file missing, unreadable or malformed."""


class SecretStoreError(VaultScribeError):
    """Secure key storage could not be read or written."""


class CryptoError(VaultScribeError):
    """Decryption failed: corrupt, tampered or wrong-key ciphertext."""


class ExportError(VaultScribeError):
    """Trimming or transcoding a segment window failed."""


class TranscriptionError(VaultScribeError):
    """Base class for transcription backend failures."""


class RemoteTranscriptionError(TranscriptionError):
    """Remote speech API call failed or returned no usable transcript."""

    def __init__(self, message: str, status: int = None, missing_credential: bool = False):
        self.status = status
        self.missing_credential = missing_credential
        super().__init__(message)


class FallbackUnavailableError(TranscriptionError):
    """On-device recognition unavailable, not permitted, or produced nothing."""


class PersistenceError(VaultScribeError):
    """A store read or write failed."""


class SegmentStateError(VaultScribeError):
    """An illegal segment status transition was requested."""
