"""Transcription module for VaultScribe."""

from .base import AbstractTranscriptionBackend
from ..models.transcription import TranscriptionResult
from .deepgram_backend import DeepgramBackend, DeepgramResponse
from .local_backend import (
    AuthorizationStatus,
    LocalSpeechBackend,
    RecognitionResult,
    Recognizer,
    WhisperRecognizer,
)
from .publisher import SegmentPublisher, SEGMENT_STATUS_TOPIC

__all__ = [
    "AbstractTranscriptionBackend",
    "TranscriptionResult",
    "DeepgramBackend",
    "DeepgramResponse",
    "AuthorizationStatus",
    "LocalSpeechBackend",
    "RecognitionResult",
    "Recognizer",
    "WhisperRecognizer",
    "SegmentPublisher",
    "SEGMENT_STATUS_TOPIC",
]
