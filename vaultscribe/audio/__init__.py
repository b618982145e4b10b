"""Audio processing module for VaultScribe."""

from .exporter import SegmentExporter, build_segment_windows

__all__ = ["SegmentExporter", "build_segment_windows"]
