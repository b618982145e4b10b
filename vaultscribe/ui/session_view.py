"""Rich rendering of sessions, segments and storage statistics."""

import logging
from typing import Any, Dict, List, Optional

from pubsub import pub
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from ..models.session import RecordingSession, SegmentStatus, TranscriptionSegment
from ..transcription.publisher import SEGMENT_STATUS_TOPIC

logger = logging.getLogger(__name__)

STATUS_STYLES = {
    SegmentStatus.QUEUED: "dim white",
    SegmentStatus.TRANSCRIBING: "yellow",
    SegmentStatus.COMPLETE: "green",
    SegmentStatus.ERROR: "bold red",
}


def _window(segment: TranscriptionSegment) -> str:
    if segment.is_whole_recording:
        return "whole"
    return f"{segment.start_time:.1f}-{segment.end_time:.1f}s"


def status_text(status: SegmentStatus) -> Text:
    return Text(status.value, style=STATUS_STYLES.get(status, "white"))


def sessions_table(sessions: List[RecordingSession], segment_counts: Dict[str, Dict[str, int]]) -> Table:
    """Table of sessions, newest first, with per-status segment counts."""
    table = Table(title="Sessions", show_header=True, header_style="bold magenta")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Title", style="white")
    table.add_column("Created", style="white")
    table.add_column("Segments", justify="right")
    table.add_column("Complete", justify="right", style="green")
    table.add_column("Error", justify="right", style="red")

    for session in sessions:
        counts = segment_counts.get(session.id, {})
        table.add_row(
            session.id,
            session.title,
            session.created_at.astimezone().strftime("%Y-%m-%d %H:%M"),
            str(counts.get("total", 0)),
            str(counts.get(SegmentStatus.COMPLETE.value, 0)),
            str(counts.get(SegmentStatus.ERROR.value, 0)),
        )
    return table


def segments_table(segments: List[TranscriptionSegment]) -> Table:
    """Segments in insertion order, regardless of completion order."""
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("#", justify="right", style="cyan")
    table.add_column("Window")
    table.add_column("Status")
    table.add_column("Text", overflow="fold")
    table.add_column("ID", style="dim", no_wrap=True)

    for segment in sorted(segments, key=lambda s: s.position):
        table.add_row(
            str(segment.position + 1),
            _window(segment),
            status_text(segment.status),
            segment.text,
            segment.id,
        )
    return table


def session_panel(session: RecordingSession, segments: List[TranscriptionSegment]) -> Panel:
    """Session details with its full transcript assembled in segment order."""
    ordered = sorted(segments, key=lambda s: s.position)
    transcript = " ".join(s.text for s in ordered if s.status is SegmentStatus.COMPLETE)
    body = Text.assemble(
        ("Artifact: ", "bold"), session.audio_filename, "\n",
        ("Created: ", "bold"), session.created_at.astimezone().strftime("%Y-%m-%d %H:%M:%S"), "\n\n",
        (transcript or "No transcript yet", "white" if transcript else "dim white italic"),
    )
    return Panel(body, title=session.title, border_style="blue")


def stats_table(stats: Dict[str, Any]) -> Table:
    table = Table(title="Storage", show_header=True, header_style="bold magenta")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="white")
    for key, value in stats.items():
        table.add_row(key.replace("_", " ").capitalize(), str(value))
    return table


class SegmentStatusPrinter:
    """Prints each published segment transition while the pipeline runs."""

    def __init__(self, console: Optional[Console] = None, topic: str = SEGMENT_STATUS_TOPIC):
        self.console = console or Console()
        self.topic = topic
        self.subscribed = False

    def on_segment(self, segment: TranscriptionSegment) -> None:
        line = Text.assemble(
            (f"[{segment.position + 1}] ", "cyan"),
            (f"{_window(segment):>12} ", "white"),
            status_text(segment.status),
        )
        if segment.status is SegmentStatus.COMPLETE:
            line.append(f"  {segment.text[:80]}", style="white")
        self.console.print(line)

    def start(self) -> None:
        pub.subscribe(self.on_segment, self.topic)
        self.subscribed = True

    def stop(self) -> None:
        if self.subscribed:
            pub.unsubscribe(self.on_segment, self.topic)
            self.subscribed = False
