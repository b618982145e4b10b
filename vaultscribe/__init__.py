"""VaultScribe - encrypted voice recordings with resilient transcription."""

__version__ = "0.1.0"
