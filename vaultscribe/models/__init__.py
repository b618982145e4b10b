"""Data models for the VaultScribe application."""

from .transcription import TranscriptionResult
from .session import (
    SegmentStatus,
    RecordingSession,
    TranscriptionSegment,
    QueuedTranscriptionSegment,
    validate_window,
)

__all__ = [
    "TranscriptionResult",
    "SegmentStatus",
    "RecordingSession",
    "TranscriptionSegment",
    "QueuedTranscriptionSegment",
    "validate_window",
]
