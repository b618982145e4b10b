"""Transcription-related data models."""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass
class TranscriptionResult:
    """Result of a transcription operation."""
    text: str
    processing_time: float
    timestamp: datetime
    service: str
    language: Optional[str] = None
    confidence: Optional[float] = None
    attempts: int = 1  # which attempt produced this result
