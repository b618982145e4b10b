"""File management for encrypted recordings and transient plaintext audio."""

import os
import uuid
import logging
import tempfile
from pathlib import Path
from datetime import datetime
from typing import Dict, Any, Optional


logger = logging.getLogger(__name__)

ARTIFACT_SUFFIX = ".enc"
TEMP_PREFIX = "vs_"


def _normalize_format(source_format: Optional[str]) -> Optional[str]:
    fmt = (source_format or "").lstrip(".").lower()
    if fmt and fmt.isalnum() and len(fmt) <= 8:
        return fmt
    return None


def artifact_format(filename: str) -> Optional[str]:
    """Plaintext container recorded in an artifact name, e.g. "wav" for "<id>.wav.enc"."""
    if not filename.endswith(ARTIFACT_SUFFIX):
        return None
    return _normalize_format(Path(filename[:-len(ARTIFACT_SUFFIX)]).suffix)


class FileManager:
    """Manages the private storage area: encrypted artifacts, temp files and logs."""

    def __init__(self, data_dir: str = "./data"):
        """Initialize file manager with data directory.

        Args:
            data_dir: Base directory for storing all data
        """
        self.data_dir = Path(data_dir)
        self.recordings_dir = self.data_dir / "recordings"
        self.temp_dir = self.data_dir / "tmp"
        self.logs_dir = self.data_dir / "logs"

        self._ensure_directories()

        logger.info(f"FileManager initialized with data_dir: {self.data_dir}")

    def _ensure_directories(self) -> None:
        """Ensure all required directories exist."""
        for directory in [self.data_dir, self.recordings_dir, self.temp_dir, self.logs_dir]:
            directory.mkdir(parents=True, exist_ok=True)
            logger.debug(f"Ensured directory exists: {directory}")
        for private in (self.recordings_dir, self.temp_dir):
            try:
                os.chmod(private, 0o700)
            except OSError as e:
                logger.warning(f"Could not restrict permissions on {private}: {e}")

    def artifact_path(self, filename: str) -> Path:
        """Resolve an artifact name inside the recordings directory.

        Raises:
            ValueError: if the name would escape the recordings directory
        """
        if not filename or Path(filename).name != filename or filename in ('.', '..'):
            raise ValueError(f"Invalid artifact name: {filename!r}")
        return self.recordings_dir / filename

    def write_artifact(self, encrypted_data: bytes, source_format: Optional[str] = None) -> str:
        """Write an encrypted artifact under a fresh opaque name.

        Args:
            encrypted_data: Sealed ciphertext bytes
            source_format: Container of the plaintext (e.g. "wav"), kept in the name

        Returns:
            The artifact filename (not a path)
        """
        fmt = _normalize_format(source_format)
        stem = f"{uuid.uuid4()}.{fmt}" if fmt else str(uuid.uuid4())
        filename = f"{stem}{ARTIFACT_SUFFIX}"
        path = self.artifact_path(filename)
        tmp_path = path.with_name(f".{filename}.partial")

        try:
            with open(tmp_path, 'wb') as f:
                f.write(encrypted_data)
            os.replace(tmp_path, path)
        except OSError as e:
            logger.error(f"Error saving artifact {filename}: {e}")
            tmp_path.unlink(missing_ok=True)
            raise

        logger.info(f"Artifact saved: {filename} ({len(encrypted_data)} bytes)")
        return filename

    def read_artifact(self, filename: str) -> bytes:
        with open(self.artifact_path(filename), 'rb') as f:
            return f.read()

    def delete_artifact(self, filename: str) -> bool:
        """Delete an artifact. Best effort: failures are logged, never raised."""
        try:
            self.artifact_path(filename).unlink()
            logger.info(f"Deleted artifact: {filename}")
            return True
        except FileNotFoundError:
            logger.warning(f"Artifact already gone: {filename}")
            return False
        except (OSError, ValueError) as e:
            logger.error(f"Error deleting artifact {filename}: {e}")
            return False

    def create_temp_file(self, prefix: str, suffix: str) -> Path:
        """Reserve a private temp file for transient plaintext audio."""
        fd, name = tempfile.mkstemp(prefix=f"{TEMP_PREFIX}{prefix}_", suffix=suffix, dir=self.temp_dir)
        os.close(fd)
        return Path(name)

    def remove_temp_file(self, path: Path) -> None:
        try:
            Path(path).unlink()
            logger.debug(f"Removed temp file: {path}")
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error(f"Error removing temp file {path}: {e}")

    def cleanup_temp_files(self, max_age_hours: float = 0) -> int:
        """Remove leftover plaintext temp files, e.g. after a crash.

        Args:
            max_age_hours: Only remove files older than this (0 removes all)

        Returns:
            Number of files removed
        """
        cutoff_time = datetime.now().timestamp() - (max_age_hours * 60 * 60)
        cleaned_count = 0

        for path in self.temp_dir.iterdir():
            if not path.is_file() or not path.name.startswith(TEMP_PREFIX):
                continue
            try:
                if max_age_hours and path.stat().st_mtime >= cutoff_time:
                    continue
                path.unlink()
                cleaned_count += 1
            except OSError as e:
                logger.error(f"Error removing stale temp file {path}: {e}")

        if cleaned_count:
            logger.info(f"Cleaned up {cleaned_count} stale temp files")
        return cleaned_count

    def get_storage_stats(self) -> Dict[str, Any]:
        """Get storage usage statistics.

        Returns:
            Dictionary with storage statistics
        """
        total_size = 0
        artifact_count = 0
        for path in self.recordings_dir.glob(f"*{ARTIFACT_SUFFIX}"):
            artifact_count += 1
            total_size += path.stat().st_size

        temp_files = sum(1 for p in self.temp_dir.iterdir() if p.is_file())

        return {
            "total_size_bytes": total_size,
            "total_size_mb": round(total_size / (1024 * 1024), 2),
            "artifact_count": artifact_count,
            "temp_files": temp_files,
            "data_directory": str(self.data_dir)
        }
