"""On-device speech recognition used as the fallback transcriber."""

import asyncio
import time
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, Optional

from .base import AbstractTranscriptionBackend
from ..exceptions import FallbackUnavailableError
from ..models.transcription import TranscriptionResult

logger = logging.getLogger(__name__)


class AuthorizationStatus(Enum):
    """Permission state for on-device recognition."""
    NOT_DETERMINED = "not_determined"
    AUTHORIZED = "authorized"
    DENIED = "denied"
    RESTRICTED = "restricted"


@dataclass
class RecognitionResult:
    """One recognition callback: partial results have ``is_final=False``."""
    text: str
    is_final: bool


class Recognizer(ABC):
    """Abstract base class for an on-device recognition capability."""

    name = "recognizer"

    @abstractmethod
    def is_available(self) -> bool:
        """Whether the recognizer can run on this machine."""
        pass

    @abstractmethod
    def recognize(self, audio_path: Path) -> Iterable[RecognitionResult]:
        """Yield partial and final results for ``audio_path``."""
        pass


class WhisperRecognizer(Recognizer):
    """faster-whisper running locally. The model is loaded once, on first use."""

    name = "faster-whisper"

    def __init__(self, model_size: str = "small", device: str = "auto",
                 compute_type: str = "default", language: Optional[str] = None):
        self.model_size = model_size
        self.device = device
        self.compute_type = compute_type
        self.language = language
        self._model = None
        self._model_lock = threading.Lock()

    def is_available(self) -> bool:
        try:
            import faster_whisper  # noqa: F401
        except ImportError:
            return False
        return True

    def _ensure_model_loaded(self):
        if self._model is not None:
            return self._model

        with self._model_lock:
            # Double-check after acquiring lock
            if self._model is not None:
                return self._model

            try:
                from faster_whisper import WhisperModel
            except ImportError as e:
                raise FallbackUnavailableError(
                    "faster-whisper is not installed. Install with: pip install vaultscribe[local]"
                ) from e

            logger.info(f"Loading faster-whisper model '{self.model_size}' on {self.device}...")
            try:
                self._model = WhisperModel(self.model_size, device=self.device,
                                           compute_type=self.compute_type)
            except Exception as e:
                raise FallbackUnavailableError(f"Could not load local speech model: {e}") from e
            logger.info(f"faster-whisper model '{self.model_size}' loaded")
            return self._model

    def recognize(self, audio_path: Path) -> Iterable[RecognitionResult]:
        model = self._ensure_model_loaded()
        kwargs = {"vad_filter": True, "condition_on_previous_text": False}
        if self.language:
            kwargs["language"] = self.language

        segments, _info = model.transcribe(str(audio_path), **kwargs)
        # Whisper decodes the file as a whole, so each piece is interim until the end
        parts = []
        for segment in segments:
            parts.append(segment.text.strip())
            yield RecognitionResult(text=" ".join(p for p in parts if p), is_final=False)
        yield RecognitionResult(text=" ".join(p for p in parts if p), is_final=True)


ConsentPrompt = Callable[[], bool]


class LocalSpeechBackend(AbstractTranscriptionBackend):
    """Fallback transcriber gated by a one-time permission decision."""

    service_name = "Local speech"

    def __init__(self,
                 recognizer: Recognizer,
                 initial_status: AuthorizationStatus = AuthorizationStatus.NOT_DETERMINED,
                 consent_prompt: Optional[ConsentPrompt] = None,
                 language: Optional[str] = None):
        super().__init__(language)
        self.recognizer = recognizer
        self.consent_prompt = consent_prompt
        self._status = initial_status
        self._status_lock = threading.Lock()

    @property
    def authorization_status(self) -> AuthorizationStatus:
        return self._status

    def request_authorization(self) -> AuthorizationStatus:
        """Resolve ``NOT_DETERMINED`` once; the answer is kept for this object's lifetime."""
        with self._status_lock:
            if self._status is not AuthorizationStatus.NOT_DETERMINED:
                return self._status

            granted = False
            if self.consent_prompt is not None:
                try:
                    granted = bool(self.consent_prompt())
                except Exception as e:
                    logger.warning(f"Consent prompt failed, treating as denied: {e}")
            else:
                logger.info("No consent prompt available, local recognition denied")

            self._status = AuthorizationStatus.AUTHORIZED if granted else AuthorizationStatus.DENIED
            logger.info(f"Local speech permission: {self._status.value}")
            return self._status

    def _first_final(self, audio_path: Path) -> str:
        for result in self.recognizer.recognize(audio_path):
            if result.is_final:
                return result.text
        raise FallbackUnavailableError("Local recognition ended without a final result")

    async def transcribe(self, audio_path: Path, **kwargs) -> TranscriptionResult:
        """Transcribe with the on-device recognizer.

        Raises:
            FallbackUnavailableError: capability missing, permission denied or
                restricted, recognition failure, or empty result
        """
        if not self.recognizer.is_available():
            raise FallbackUnavailableError(f"{self.recognizer.name} is not available on this host")

        status = await asyncio.to_thread(self.request_authorization)
        if status is not AuthorizationStatus.AUTHORIZED:
            raise FallbackUnavailableError(f"Local speech recognition not permitted ({status.value})")

        start_time = time.time()
        try:
            text = await asyncio.to_thread(self._first_final, Path(audio_path))
        except FallbackUnavailableError:
            raise
        except Exception as e:
            raise FallbackUnavailableError(f"Local recognition failed: {e}") from e

        text = (text or "").strip()
        if not text:
            raise FallbackUnavailableError("Local recognition produced no text")

        return TranscriptionResult(
            text=text,
            processing_time=time.time() - start_time,
            timestamp=datetime.now(),
            service=f"{self.service_name} ({self.recognizer.name})",
            language=self.language,
        )


def status_from_config(enabled: bool, consent: str) -> AuthorizationStatus:
    """Map ``local_fallback.enabled`` / ``local_fallback.consent`` to an initial status."""
    if not enabled:
        return AuthorizationStatus.RESTRICTED
    consent = (consent or "ask").lower()
    if consent == "granted":
        return AuthorizationStatus.AUTHORIZED
    if consent == "denied":
        return AuthorizationStatus.DENIED
    return AuthorizationStatus.NOT_DETERMINED
