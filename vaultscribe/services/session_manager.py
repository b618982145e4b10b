"""Session manager for encrypted recordings and session records."""

import asyncio
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

from ..models.session import RecordingSession
from ..security.crypto import CryptoStore
from ..storage.database import Database
from ..storage.file_manager import FileManager

logger = logging.getLogger(__name__)


class SessionManager:
    """Turns finished recordings into encrypted sessions and removes them again."""

    def __init__(self, database: Database, file_manager: FileManager, crypto: CryptoStore):
        """Initialize session manager.

        Args:
            database: Session and segment store
            file_manager: Encrypted artifact storage
            crypto: Cipher for audio at rest
        """
        self.database = database
        self.file_manager = file_manager
        self.crypto = crypto
        logger.info(f"SessionManager initialized with data dir: {file_manager.data_dir}")

    def default_title(self, now: Optional[datetime] = None) -> str:
        """"Recording at HH:MM", numbered when that title is already taken."""
        clock = (now or datetime.now()).strftime('%H:%M')
        title = f"Recording at {clock}"
        if self.database.count_sessions(title_contains=title) == 0:
            return title

        number = self.database.count_sessions(title_contains=f" at {clock}") + 1
        title = f"Recording {number} at {clock}"
        while self.database.count_sessions(title_contains=title) > 0:
            number += 1
            title = f"Recording {number} at {clock}"
        return title

    async def create_session_from_recording(self, recording_path: Path,
                                            title: Optional[str] = None) -> RecordingSession:
        """Encrypt a finished plaintext recording and register a session for it.

        The plaintext file is deleted once the encrypted artifact is on disk.
        If registering the session fails the artifact is removed again and
        the plaintext is left in place.

        Args:
            recording_path: Plaintext audio written by the recorder
            title: Optional explicit title

        Returns:
            The persisted RecordingSession
        """
        recording_path = Path(recording_path)
        plaintext = await asyncio.to_thread(recording_path.read_bytes)
        encrypted = await asyncio.to_thread(self.crypto.encrypt, plaintext)
        del plaintext

        filename = await asyncio.to_thread(
            self.file_manager.write_artifact, encrypted, recording_path.suffix
        )
        session = RecordingSession(title=title or self.default_title(), audio_filename=filename)
        try:
            self.database.create_session(session)
        except Exception:
            self.file_manager.delete_artifact(filename)
            raise

        try:
            recording_path.unlink()
        except OSError as e:
            logger.error(f"Could not remove plaintext recording {recording_path.name}: {e}")

        logger.info(f"Created session {session.id} ({session.title})")
        return session

    def delete_session(self, session_id: str) -> bool:
        """Delete a session with its segments and retry records, then its artifact.

        Returns:
            True if the session existed
        """
        session = self.database.delete_session(session_id)
        if session is None:
            logger.warning(f"Session not found: {session_id}")
            return False
        # Rows are already gone; a leftover artifact is unreachable
        self.file_manager.delete_artifact(session.audio_filename)
        logger.info(f"Deleted session {session_id}")
        return True
