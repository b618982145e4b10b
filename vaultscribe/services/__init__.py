"""Services layer for VaultScribe application logic."""

from .context import PipelineContext
from .session_manager import SessionManager
from .transcription_service import TranscriptionService

__all__ = [
    "PipelineContext",
    "SessionManager",
    "TranscriptionService",
]
