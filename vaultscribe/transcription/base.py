"""Abstract base classes for transcription backends."""

from abc import ABC, abstractmethod
from pathlib import Path
import logging

from ..models.transcription import TranscriptionResult

logger = logging.getLogger(__name__)


class AbstractTranscriptionBackend(ABC):
    """Abstract base class for transcription backends."""

    service_name = "unknown"

    def __init__(self, language: str = None):
        """Initialize backend with an optional language preference."""
        self.language = language

    @abstractmethod
    async def transcribe(self, audio_path: Path, **kwargs) -> TranscriptionResult:
        """Transcribe one audio file in a single attempt.

        Args:
            audio_path: Path to a playable audio artifact

        Returns:
            TranscriptionResult with non-empty text

        Raises:
            TranscriptionError subclass on any failure
        """

    def cleanup(self) -> None:
        """Clean up backend resources."""
