"""Terminal presentation for VaultScribe."""

from .session_view import (
    SegmentStatusPrinter,
    segments_table,
    session_panel,
    sessions_table,
    stats_table,
)

__all__ = [
    "SegmentStatusPrinter",
    "segments_table",
    "session_panel",
    "sessions_table",
    "stats_table",
]
