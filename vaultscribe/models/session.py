"""Session, segment and offline-retry data models."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from ..exceptions import SegmentStateError


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


def validate_window(start_time: float, end_time: float) -> None:
    """Check a ``[start, end)`` window; ``0, 0`` is the whole-recording sentinel."""
    if start_time == 0 and end_time == 0:
        return
    if start_time < 0 or end_time <= start_time:
        raise ValueError(f"Invalid segment window [{start_time}, {end_time})")


class SegmentStatus(Enum):
    """Lifecycle state of a transcription segment."""
    QUEUED = "queued"
    TRANSCRIBING = "transcribing"
    COMPLETE = "complete"
    ERROR = "error"

    def can_transition_to(self, target: "SegmentStatus") -> bool:
        return target in _TRANSITIONS[self]


_TRANSITIONS = {
    SegmentStatus.QUEUED: frozenset({SegmentStatus.TRANSCRIBING}),
    SegmentStatus.TRANSCRIBING: frozenset({SegmentStatus.COMPLETE, SegmentStatus.ERROR}),
    SegmentStatus.COMPLETE: frozenset(),
    # error ends one attempt, a retry re-enters transcribing
    SegmentStatus.ERROR: frozenset({SegmentStatus.TRANSCRIBING}),
}


@dataclass
class RecordingSession:
    """One recorded take and its encrypted audio artifact."""
    title: str
    audio_filename: str  # opaque .enc artifact name, never a plaintext path
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=_now)


@dataclass
class TranscriptionSegment:
    """A ``[start_time, end_time)`` slice of a session, the unit of transcription work."""
    session_id: str
    audio_filename: str
    start_time: float
    end_time: float
    id: str = field(default_factory=_new_id)
    status: SegmentStatus = SegmentStatus.QUEUED
    text: str = ""
    position: int = 0  # insertion order within the session
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    def __post_init__(self):
        validate_window(self.start_time, self.end_time)

    @property
    def is_whole_recording(self) -> bool:
        return self.start_time == 0 and self.end_time == 0

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time

    def transition(self, target: SegmentStatus, text: Optional[str] = None) -> None:
        """Move to ``target``; text is only ever written on completion."""
        if not self.status.can_transition_to(target):
            raise SegmentStateError(
                f"Segment {self.id}: cannot move from {self.status.value} to {target.value}"
            )
        if target is SegmentStatus.COMPLETE:
            if not text:
                raise SegmentStateError(f"Segment {self.id}: completion requires a transcript")
            self.text = text
        self.status = target
        self.updated_at = _now()


@dataclass
class QueuedTranscriptionSegment:
    """Offline retry record: a detached reference to a failed segment's window."""
    session_id: str
    start_time: float
    end_time: float
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=_now)
