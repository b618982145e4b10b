"""Transcription service that drives segments through the pipeline."""

import asyncio
import logging
import random
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple

from .context import PipelineContext
from .session_manager import SessionManager
from ..audio.exporter import build_segment_windows
from ..exceptions import (
    CryptoError,
    ExportError,
    PersistenceError,
    RemoteTranscriptionError,
    SegmentStateError,
    TranscriptionError,
)
from ..models.session import (
    QueuedTranscriptionSegment,
    RecordingSession,
    SegmentStatus,
    TranscriptionSegment,
)
from ..models.transcription import TranscriptionResult
from ..storage.file_manager import artifact_format

logger = logging.getLogger(__name__)

SleepFunc = Callable[[float], Awaitable[None]]


class TranscriptionService:
    """Moves segments through queued -> transcribing -> complete | error.

    Each segment is decrypted to a private temp file, trimmed to its window,
    sent to the remote service with exponential backoff, and handed to the
    on-device recognizer when the remote path is exhausted. A segment that
    fails both leaves an offline retry record behind.

    All methods must be called from the event loop that runs the pipeline.
    """

    def __init__(self,
                 context: PipelineContext,
                 session_manager: Optional[SessionManager] = None,
                 sleep: SleepFunc = asyncio.sleep,
                 rng: Callable[[], float] = random.random):
        """Initialize transcription service.

        Args:
            context: Pipeline components
            session_manager: Optional session manager (built from context if omitted)
            sleep: Coroutine used for backoff waits
            rng: Source of uniform [0, 1) values for jitter
        """
        self.context = context
        self.config = context.config
        self.database = context.database
        self.file_manager = context.file_manager
        self.publisher = context.publisher
        self.session_manager = session_manager or SessionManager(
            context.database, context.file_manager, context.crypto
        )

        self.max_attempts = max(1, int(self.config.get('retry.max_attempts', 5)))
        self.base_delay = float(self.config.get('retry.base_delay_seconds', 2.0))
        self.jitter = float(self.config.get('retry.jitter', 0.1) or 0.0)
        self.max_concurrent = int(self.config.get('pipeline.max_concurrent_segments', 0) or 0)

        self._sleep = sleep
        self._rng = rng
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._in_flight: Set[str] = set()
        self._tasks: Dict[asyncio.Task, str] = {}

        logger.info(
            f"TranscriptionService initialized: attempts={self.max_attempts}, "
            f"base_delay={self.base_delay}s, jitter={self.jitter}, "
            f"max_concurrent={self.max_concurrent or 'unbounded'}"
        )

    # ── Scheduling ────────────────────────────────────────────────────

    def enqueue_segment(self, session_id: str, start_time: float, end_time: float) -> TranscriptionSegment:
        """Append a queued segment to a session and schedule it.

        Raises:
            ValueError: invalid window
            PersistenceError: session missing or store write failed
        """
        session = self.database.get_session(session_id)
        if session is None:
            raise PersistenceError(f"Session {session_id} does not exist")

        segment = TranscriptionSegment(
            session_id=session.id,
            audio_filename=session.audio_filename,
            start_time=start_time,
            end_time=end_time,
        )
        self.database.add_segment(segment)
        self.publisher.publish_segment(segment)
        logger.info(f"Queued segment {segment.id} [{start_time}, {end_time}) for session {session_id}")
        self._dispatch(segment.id)
        return segment

    def _dispatch(self, segment_id: str) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(
            self.process_segment(segment_id), name=f"segment-{segment_id}"
        )
        self._tasks[task] = segment_id
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.pop(task, None)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Segment task {task.get_name()} failed: {exc!r}")

    @asynccontextmanager
    async def _slot(self):
        if not self.max_concurrent:
            yield
            return
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self.max_concurrent)
        async with self._semaphore:
            yield

    async def wait_until_idle(self) -> None:
        """Wait until every dispatched segment task has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel segment tasks.

        Cancelled segments keep their persisted status (``queued`` if they were
        still waiting for a slot, ``transcribing`` otherwise) until
        ``recover_stale_segments`` runs.
        """
        tasks = list(self._tasks)
        if not tasks:
            return
        logger.info(f"Cancelling {len(tasks)} in-flight segment tasks")
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    @property
    def in_flight(self) -> Set[str]:
        return set(self._in_flight)

    def _is_active(self, segment_id: str) -> bool:
        """True while this process has a task scheduled or running for the segment."""
        return segment_id in self._in_flight or segment_id in self._tasks.values()

    # ── Processing ────────────────────────────────────────────────────

    async def process_segment(self, segment_id: str) -> Optional[TranscriptionSegment]:
        """Run one segment through decrypt, export, remote, fallback.

        A second dispatch of a segment already in flight is ignored.

        Returns:
            The segment in its final state, or None if it was skipped
        """
        if segment_id in self._in_flight:
            logger.info(f"Segment {segment_id} already in flight, ignoring dispatch")
            return None

        self._in_flight.add(segment_id)
        try:
            async with self._slot():
                return await self._run_pipeline(segment_id)
        finally:
            self._in_flight.discard(segment_id)

    async def _run_pipeline(self, segment_id: str) -> Optional[TranscriptionSegment]:
        segment = self.database.get_segment(segment_id)
        if segment is None:
            logger.warning(f"Segment {segment_id} not found, skipping")
            return None

        try:
            segment.transition(SegmentStatus.TRANSCRIBING)
        except SegmentStateError as e:
            logger.warning(f"Not processing segment: {e}")
            return None
        self._persist(segment)
        self.publisher.publish_segment(segment)

        temp_files: List[Path] = []
        result: Optional[TranscriptionResult] = None
        try:
            audio_path = await self._prepare_audio(segment, temp_files)
            result = await self._transcribe(audio_path)
        except (CryptoError, ExportError) as e:
            logger.error(f"Segment {segment.id} could not be prepared: {e}")
        except OSError as e:
            logger.error(f"Segment {segment.id} audio unavailable: {e}")
        except Exception as e:
            logger.exception(f"Unexpected failure processing segment {segment.id}: {e}")
        finally:
            for path in temp_files:
                self.file_manager.remove_temp_file(path)

        if result is not None:
            self._complete(segment, result)
        else:
            self._fail(segment)
        return segment

    async def _prepare_audio(self, segment: TranscriptionSegment, temp_files: List[Path]) -> Path:
        """Decrypt the session artifact and cut the segment's window.

        Every temp file created is appended to ``temp_files`` before it is
        written so the caller can always remove it.
        """
        ciphertext = await asyncio.to_thread(self.file_manager.read_artifact, segment.audio_filename)
        plaintext = await asyncio.to_thread(self.context.crypto.decrypt, ciphertext)
        del ciphertext

        source_format = artifact_format(segment.audio_filename) or self.context.exporter.container
        decrypted = self.file_manager.create_temp_file("decrypted", f".{source_format}")
        temp_files.append(decrypted)
        await asyncio.to_thread(decrypted.write_bytes, plaintext)
        del plaintext

        exported = await self.context.exporter.export(decrypted, segment.start_time, segment.end_time)
        if exported != decrypted:
            temp_files.append(exported)
        return exported

    def backoff_delay(self, attempt: int) -> float:
        """Delay after failed attempt ``attempt`` (1-based): base * 2**(attempt-1), jittered."""
        delay = self.base_delay * (2 ** (attempt - 1))
        if self.jitter:
            delay *= 1 + self.jitter * (2 * self._rng() - 1)
        return delay

    async def _transcribe(self, audio_path: Path) -> Optional[TranscriptionResult]:
        credential = self.context.resolve_credential()
        if credential:
            content_type = self.context.exporter.content_type_for(audio_path)
            result = await self._transcribe_remote(audio_path, credential, content_type)
            if result is not None:
                return result
        else:
            logger.info("No remote credential configured, using local recognition")

        try:
            result = await self.context.local_backend.transcribe(audio_path)
        except TranscriptionError as e:
            logger.warning(f"Local fallback failed: {e}")
            return None
        logger.info(f"Local fallback succeeded in {result.processing_time:.2f}s")
        return result

    async def _transcribe_remote(self, audio_path: Path, credential: str,
                                 content_type: str) -> Optional[TranscriptionResult]:
        backend = self.context.remote_backend
        for attempt in range(1, self.max_attempts + 1):
            try:
                result = await backend.transcribe(audio_path, credential=credential, content_type=content_type)
            except RemoteTranscriptionError as e:
                if e.missing_credential:
                    return None
                logger.warning(f"{backend.service_name} attempt {attempt}/{self.max_attempts} failed: {e}")
            except (TranscriptionError, OSError) as e:
                logger.warning(f"{backend.service_name} attempt {attempt}/{self.max_attempts} failed: {e}")
            else:
                result.attempts = attempt
                logger.info(f"{backend.service_name} transcribed segment on attempt {attempt}")
                return result

            if attempt < self.max_attempts:
                delay = self.backoff_delay(attempt)
                logger.debug(f"Retrying {backend.service_name} in {delay:.2f}s")
                await self._sleep(delay)

        logger.warning(f"{backend.service_name} exhausted after {self.max_attempts} attempts")
        return None

    def _complete(self, segment: TranscriptionSegment, result: TranscriptionResult) -> None:
        segment.transition(SegmentStatus.COMPLETE, text=result.text)
        self._persist(segment)
        self.publisher.publish_segment(segment)
        logger.info(f"Segment {segment.id} complete via {result.service} ({len(result.text)} chars)")

    def _fail(self, segment: TranscriptionSegment) -> None:
        segment.transition(SegmentStatus.ERROR)
        still_exists = self._persist(segment)
        self.publisher.publish_segment(segment)
        logger.error(f"Segment {segment.id} failed, leaving an offline retry record")
        if still_exists:
            self._record_for_retry(segment)

    def _record_for_retry(self, segment: TranscriptionSegment) -> None:
        record = QueuedTranscriptionSegment(
            session_id=segment.session_id,
            start_time=segment.start_time,
            end_time=segment.end_time,
        )
        try:
            self.database.create_queued_segment(record)
        except PersistenceError as e:
            logger.error(f"Could not record segment {segment.id} for retry: {e}")

    def _persist(self, segment: TranscriptionSegment) -> bool:
        """Save the segment row. Failures are logged; returns False only if the row is gone."""
        try:
            saved = self.database.save_segment(segment)
        except PersistenceError as e:
            logger.error(f"Could not persist segment {segment.id} ({segment.status.value}): {e}")
            return True
        if not saved:
            logger.info(f"Segment {segment.id} no longer stored (session deleted?)")
        return saved

    # ── Retry entry points ────────────────────────────────────────────

    async def retry_queued_segments(self) -> List[TranscriptionSegment]:
        """Dispatch every offline retry record as a fresh segment.

        Each record is consumed when its segment is created, before the
        outcome of the new attempt is known.

        Returns:
            The newly dispatched segments
        """
        records = self.database.list_queued_segments()
        if not records:
            logger.debug("No offline retry records")
            return []

        dispatched = []
        for record in records:
            segment = self.database.promote_queued_segment(record.id)
            if segment is None:
                continue
            self.publisher.publish_segment(segment)
            self._dispatch(segment.id)
            dispatched.append(segment)

        logger.info(f"Dispatched {len(dispatched)} of {len(records)} offline retry records")
        return dispatched

    async def retry_segment(self, segment_id: str) -> Optional[TranscriptionSegment]:
        """Manually retry a failed segment in place.

        Raises:
            PersistenceError: segment does not exist
            SegmentStateError: segment is not in ``error``
        """
        segment = self.database.get_segment(segment_id)
        if segment is None:
            raise PersistenceError(f"Segment {segment_id} does not exist")
        if segment.status is not SegmentStatus.ERROR:
            raise SegmentStateError(
                f"Segment {segment_id} is {segment.status.value}; only failed segments can be retried"
            )

        removed = self.database.delete_queued_segments(segment.session_id, segment.start_time, segment.end_time)
        if removed:
            logger.debug(f"Removed {removed} offline records superseded by manual retry")
        return await self.process_segment(segment_id)

    def recover_stale_segments(self) -> int:
        """Fail segments an interrupted run left behind.

        That is every ``transcribing`` segment, plus every ``queued`` segment
        whose task never started (cancelled while waiting for a slot, or lost
        with the process). Each one goes to ``error`` with an offline retry
        record. Segments this process has scheduled or is running are left
        alone.

        Returns:
            Number of segments recovered
        """
        recovered = 0
        for status in (SegmentStatus.TRANSCRIBING, SegmentStatus.QUEUED):
            for segment in self.database.find_segments(status):
                if self._is_active(segment.id):
                    continue
                if segment.status is SegmentStatus.QUEUED:
                    # queued cannot fail directly; record the dispatch it never got
                    segment.transition(SegmentStatus.TRANSCRIBING)
                self._fail(segment)
                recovered += 1
        if recovered:
            logger.warning(f"Recovered {recovered} stale segments")
        return recovered

    def startup(self) -> int:
        """Clear stale plaintext temp files and, if enabled, recover stale segments."""
        max_age = float(self.config.get('storage.temp_max_age_hours', 24))
        self.file_manager.cleanup_temp_files(max_age_hours=max_age)
        if self.config.get('pipeline.recover_stale_on_startup', True):
            return self.recover_stale_segments()
        return 0

    # ── Ingest ────────────────────────────────────────────────────────

    async def ingest_recording(self,
                               recording_path: Path,
                               duration: Optional[float] = None,
                               title: Optional[str] = None,
                               segment_seconds: Optional[float] = None
                               ) -> Tuple[RecordingSession, List[TranscriptionSegment]]:
        """Encrypt a finished recording and queue its segments.

        Args:
            recording_path: Plaintext audio (deleted once encrypted)
            duration: Recording length in seconds; probed with ffprobe if omitted
            title: Optional session title
            segment_seconds: Window length (defaults to ``segmentation.segment_seconds``)

        Returns:
            The session and its queued segments
        """
        recording_path = Path(recording_path)
        if duration is None:
            duration = await self.context.exporter.probe_duration(recording_path)
        if segment_seconds is None:
            segment_seconds = self.config.get('segmentation.segment_seconds', 0)

        session = await self.session_manager.create_session_from_recording(recording_path, title)
        segments = [
            self.enqueue_segment(session.id, start, end)
            for start, end in build_segment_windows(duration, segment_seconds)
        ]
        return session, segments
