"""Persistence: SQLite store and encrypted artifact files."""

from .database import Database
from .file_manager import FileManager

__all__ = ["Database", "FileManager"]
