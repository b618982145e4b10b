"""Unit tests for TranscriptionService: retry, fallback, offline records, status flow."""

import asyncio
import os
import threading
import time
from datetime import datetime
from pathlib import Path
from unittest.mock import patch

import pytest
from pubsub import pub

from vaultscribe.exceptions import (
    FallbackUnavailableError,
    PersistenceError,
    RemoteTranscriptionError,
    SegmentStateError,
)
from vaultscribe.models.session import SegmentStatus, TranscriptionSegment
from vaultscribe.models.transcription import TranscriptionResult
from vaultscribe.services.context import PipelineContext
from vaultscribe.services.transcription_service import TranscriptionService
from vaultscribe.transcription.base import AbstractTranscriptionBackend
from vaultscribe.transcription.publisher import SEGMENT_STATUS_TOPIC


def remote_down(status=503):
    return RemoteTranscriptionError(f"Deepgram returned {status}", status=status)


def local_denied():
    return FallbackUnavailableError("Local speech recognition not permitted (denied)")


def _result(text):
    return TranscriptionResult(text=text, processing_time=0.0, timestamp=datetime.now(), service="test")


class DeniedLocal(AbstractTranscriptionBackend):
    """Fallback that is never permitted."""

    async def transcribe(self, audio_path, **kwargs):
        raise local_denied()


def _build(context, remote, local, sleep, credential="dg-test-key"):
    context.remote_backend = remote
    context.local_backend = local
    if credential:
        context.secret_store.set("deepgram_api_key", credential)
    return TranscriptionService(context, sleep=sleep)


async def _new_session(service, wav_path):
    return await service.session_manager.create_session_from_recording(wav_path)


def _temp_files(context):
    return list(context.file_manager.temp_dir.iterdir())


@pytest.mark.unit
class TestRemoteRetry:
    """Test cases for the remote retry policy."""

    def test_first_attempt_success(self, pipeline_context, scripted_backend, recording_sleep, sample_audio_file):
        remote = scripted_backend(["hello from deepgram"])
        local = scripted_backend(["local text"])
        service = _build(pipeline_context, remote, local, recording_sleep)

        async def scenario():
            session = await _new_session(service, sample_audio_file)
            segment = service.enqueue_segment(session.id, 0, 0)
            await service.wait_until_idle()
            return segment

        segment = asyncio.run(scenario())

        stored = pipeline_context.database.get_segment(segment.id)
        assert stored.status is SegmentStatus.COMPLETE
        assert stored.text == "hello from deepgram"
        assert len(remote.calls) == 1
        assert remote.calls[0]["credential"] == "dg-test-key"
        assert remote.calls[0]["content_type"] == "audio/wav"
        assert remote.seen_audio[0].suffix == ".wav"
        assert local.calls == []
        assert recording_sleep.delays == []
        assert pipeline_context.database.count_queued_segments() == 0
        assert _temp_files(pipeline_context) == []

    def test_five_attempts_with_exponential_backoff_then_fallback(
            self, pipeline_context, scripted_backend, recording_sleep, sample_audio_file):
        """Test 5 remote attempts, delays 2/4/8/16 s, then exactly one fallback call."""
        remote = scripted_backend([remote_down()])
        local = scripted_backend(["on-device transcript"])
        service = _build(pipeline_context, remote, local, recording_sleep)

        async def scenario():
            session = await _new_session(service, sample_audio_file)
            segment = service.enqueue_segment(session.id, 0, 0)
            await service.wait_until_idle()
            return segment

        segment = asyncio.run(scenario())

        assert len(remote.calls) == 5
        assert recording_sleep.delays == [2.0, 4.0, 8.0, 16.0]
        assert len(local.calls) == 1
        stored = pipeline_context.database.get_segment(segment.id)
        assert stored.status is SegmentStatus.COMPLETE
        assert stored.text == "on-device transcript"
        assert pipeline_context.database.count_queued_segments() == 0

    def test_success_after_transient_failures(self, pipeline_context, scripted_backend,
                                              recording_sleep, sample_audio_file):
        remote = scripted_backend([remote_down(), remote_down(429), "third time lucky"])
        local = scripted_backend([local_denied()])
        service = _build(pipeline_context, remote, local, recording_sleep)

        async def scenario():
            session = await _new_session(service, sample_audio_file)
            service.enqueue_segment(session.id, 0, 0)
            await service.wait_until_idle()
            return session

        session = asyncio.run(scenario())

        assert len(remote.calls) == 3
        assert recording_sleep.delays == [2.0, 4.0]
        assert local.calls == []
        assert pipeline_context.database.get_segments(session.id)[0].text == "third time lucky"

    def test_no_credential_skips_remote(self, pipeline_context, scripted_backend,
                                        recording_sleep, sample_audio_file):
        remote = scripted_backend(["should not be used"])
        local = scripted_backend(["local only"])
        service = _build(pipeline_context, remote, local, recording_sleep, credential=None)

        async def scenario():
            session = await _new_session(service, sample_audio_file)
            service.enqueue_segment(session.id, 0, 0)
            await service.wait_until_idle()
            return session

        session = asyncio.run(scenario())

        assert remote.calls == []
        assert recording_sleep.delays == []
        assert len(local.calls) == 1
        assert pipeline_context.database.get_segments(session.id)[0].text == "local only"

    def test_missing_credential_error_is_not_retried(self, pipeline_context, scripted_backend,
                                                     recording_sleep, sample_audio_file):
        remote = scripted_backend([RemoteTranscriptionError("no key", missing_credential=True)])
        local = scripted_backend(["local"])
        service = _build(pipeline_context, remote, local, recording_sleep)

        async def scenario():
            session = await _new_session(service, sample_audio_file)
            service.enqueue_segment(session.id, 0, 0)
            await service.wait_until_idle()

        asyncio.run(scenario())

        assert len(remote.calls) == 1
        assert recording_sleep.delays == []
        assert len(local.calls) == 1

    def test_environment_credential(self, pipeline_context, scripted_backend, recording_sleep,
                                    sample_audio_file, monkeypatch):
        pipeline_context.config.set('deepgram.api_key_env', 'VAULTSCRIBE_TEST_KEY')
        monkeypatch.setenv('VAULTSCRIBE_TEST_KEY', 'from-env')
        remote = scripted_backend(["ok"])
        service = _build(pipeline_context, remote, scripted_backend([local_denied()]),
                         recording_sleep, credential=None)

        async def scenario():
            session = await _new_session(service, sample_audio_file)
            service.enqueue_segment(session.id, 0, 0)
            await service.wait_until_idle()

        asyncio.run(scenario())

        assert remote.calls[0]["credential"] == "from-env"

    def test_backoff_jitter_bounds(self, pipeline_context):
        pipeline_context.config.set('retry.jitter', 0.1)
        low = TranscriptionService(pipeline_context, rng=lambda: 0.0)
        high = TranscriptionService(pipeline_context, rng=lambda: 1.0)

        assert low.backoff_delay(1) == pytest.approx(1.8)
        assert high.backoff_delay(1) == pytest.approx(2.2)
        assert low.backoff_delay(4) == pytest.approx(16 * 0.9)


@pytest.mark.unit
class TestTotalFailure:
    """Test cases for the error path and offline retry records."""

    def test_error_leaves_single_offline_record(self, pipeline_context, scripted_backend,
                                                recording_sleep, sample_audio_file):
        remote = scripted_backend([remote_down()])
        local = scripted_backend([local_denied()])
        service = _build(pipeline_context, remote, local, recording_sleep)

        async def scenario():
            session = await _new_session(service, sample_audio_file)
            segment = service.enqueue_segment(session.id, 0, 0)
            await service.wait_until_idle()
            return session, segment

        session, segment = asyncio.run(scenario())

        stored = pipeline_context.database.get_segment(segment.id)
        assert stored.status is SegmentStatus.ERROR
        assert stored.text == ""
        records = pipeline_context.database.list_queued_segments()
        assert len(records) == 1
        assert (records[0].session_id, records[0].start_time, records[0].end_time) == (session.id, 0, 0)
        assert _temp_files(pipeline_context) == []

    def test_corrupt_artifact_fails_without_transcribing(self, pipeline_context, scripted_backend,
                                                         recording_sleep, sample_audio_file):
        remote = scripted_backend(["unused"])
        local = scripted_backend(["unused"])
        service = _build(pipeline_context, remote, local, recording_sleep)

        async def scenario():
            session = await _new_session(service, sample_audio_file)
            path = pipeline_context.file_manager.artifact_path(session.audio_filename)
            path.write_bytes(b"\x00" * 64)
            segment = service.enqueue_segment(session.id, 0, 0)
            await service.wait_until_idle()
            return segment

        segment = asyncio.run(scenario())

        assert pipeline_context.database.get_segment(segment.id).status is SegmentStatus.ERROR
        assert remote.calls == [] and local.calls == []
        assert pipeline_context.database.count_queued_segments() == 1

    def test_missing_artifact_fails(self, pipeline_context, scripted_backend,
                                    recording_sleep, sample_audio_file):
        service = _build(pipeline_context, scripted_backend(["x"]), scripted_backend(["x"]), recording_sleep)

        async def scenario():
            session = await _new_session(service, sample_audio_file)
            pipeline_context.file_manager.delete_artifact(session.audio_filename)
            segment = service.enqueue_segment(session.id, 0, 0)
            await service.wait_until_idle()
            return segment

        segment = asyncio.run(scenario())

        assert pipeline_context.database.get_segment(segment.id).status is SegmentStatus.ERROR

    def test_export_failure_cleans_decrypted_temp(self, pipeline_context, scripted_backend,
                                                  recording_sleep, sample_audio_file):
        pipeline_context.exporter.ffmpeg_path = "/nonexistent/ffmpeg"
        remote = scripted_backend(["unused"])
        service = _build(pipeline_context, remote, scripted_backend(["unused"]), recording_sleep)

        async def scenario():
            session = await _new_session(service, sample_audio_file)
            segment = service.enqueue_segment(session.id, 0, 10)
            await service.wait_until_idle()
            return segment

        segment = asyncio.run(scenario())

        assert pipeline_context.database.get_segment(segment.id).status is SegmentStatus.ERROR
        assert remote.calls == []
        assert _temp_files(pipeline_context) == []

    def test_session_deleted_mid_flight(self, pipeline_context, scripted_backend,
                                        recording_sleep, sample_audio_file):
        """Test a failure for a deleted session leaves no orphan retry record."""
        service = _build(pipeline_context, DeniedLocal(), DeniedLocal(), recording_sleep)

        class DeletingBackend(AbstractTranscriptionBackend):
            async def transcribe(self, audio_path, **kwargs):
                service.session_manager.delete_session(self.session_id)
                raise remote_down()

        remote = DeletingBackend()
        pipeline_context.remote_backend = remote

        async def scenario():
            session = await _new_session(service, sample_audio_file)
            remote.session_id = session.id
            service.enqueue_segment(session.id, 0, 0)
            await service.wait_until_idle()

        asyncio.run(scenario())

        assert pipeline_context.database.count_sessions() == 0
        assert pipeline_context.database.count_queued_segments() == 0
        assert _temp_files(pipeline_context) == []


@pytest.mark.unit
class TestRetryEntryPoints:
    """Test cases for offline-trigger and manual retries."""

    def _fail_once(self, service, wav):
        async def scenario():
            session = await _new_session(service, wav)
            segment = service.enqueue_segment(session.id, 0, 0)
            await service.wait_until_idle()
            return session, segment
        return scenario

    def test_retry_consumes_record_and_dispatches(self, pipeline_context, scripted_backend,
                                                  recording_sleep, sample_audio_file):
        service = _build(pipeline_context, scripted_backend([remote_down()]),
                         scripted_backend([local_denied()]), recording_sleep)
        fail = self._fail_once(service, sample_audio_file)

        async def scenario():
            session, failed = await fail()
            assert pipeline_context.database.count_queued_segments() == 1

            pipeline_context.remote_backend = scripted_backend(["recovered transcript"])
            dispatched = await service.retry_queued_segments()
            # record is gone before the new attempt finishes
            assert pipeline_context.database.count_queued_segments() == 0
            await service.wait_until_idle()
            return session, failed, dispatched

        session, failed, dispatched = asyncio.run(scenario())

        assert len(dispatched) == 1
        segments = pipeline_context.database.get_segments(session.id)
        assert [s.id for s in segments] == [failed.id, dispatched[0].id]
        assert segments[0].status is SegmentStatus.ERROR
        assert segments[1].status is SegmentStatus.COMPLETE
        assert segments[1].text == "recovered transcript"

    def test_retry_that_fails_again_leaves_one_new_record(self, pipeline_context, scripted_backend,
                                                          recording_sleep, sample_audio_file):
        service = _build(pipeline_context, scripted_backend([remote_down()]),
                         scripted_backend([local_denied()]), recording_sleep)
        fail = self._fail_once(service, sample_audio_file)

        async def scenario():
            await fail()
            first_record = pipeline_context.database.list_queued_segments()[0]
            await service.retry_queued_segments()
            await service.wait_until_idle()
            return first_record

        first_record = asyncio.run(scenario())

        records = pipeline_context.database.list_queued_segments()
        assert len(records) == 1
        assert records[0].id != first_record.id

    def test_retry_with_no_records_is_noop(self, pipeline_context, scripted_backend, recording_sleep):
        remote = scripted_backend(["x"])
        service = _build(pipeline_context, remote, scripted_backend(["x"]), recording_sleep)

        async def scenario():
            first = await service.retry_queued_segments()
            second = await service.retry_queued_segments()
            await service.wait_until_idle()
            return first, second

        assert asyncio.run(scenario()) == ([], [])
        assert remote.calls == []
        assert pipeline_context.database.count_segments() == 0

    def test_manual_retry_reuses_segment_and_clears_record(self, pipeline_context, scripted_backend,
                                                           recording_sleep, sample_audio_file):
        service = _build(pipeline_context, scripted_backend([remote_down()]),
                         scripted_backend([local_denied()]), recording_sleep)
        fail = self._fail_once(service, sample_audio_file)

        async def scenario():
            session, failed = await fail()
            pipeline_context.remote_backend = scripted_backend(["manual fix"])
            retried = await service.retry_segment(failed.id)
            return session, failed, retried

        session, failed, retried = asyncio.run(scenario())

        assert retried.id == failed.id
        assert retried.status is SegmentStatus.COMPLETE
        assert pipeline_context.database.count_queued_segments() == 0
        assert pipeline_context.database.count_segments(session_id=session.id) == 1

    def test_manual_retry_rejects_complete_and_missing(self, pipeline_context, scripted_backend,
                                                       recording_sleep, sample_audio_file):
        service = _build(pipeline_context, scripted_backend(["done"]),
                         scripted_backend(["x"]), recording_sleep)

        async def scenario():
            session = await _new_session(service, sample_audio_file)
            segment = service.enqueue_segment(session.id, 0, 0)
            await service.wait_until_idle()
            with pytest.raises(SegmentStateError):
                await service.retry_segment(segment.id)
            with pytest.raises(PersistenceError):
                await service.retry_segment("no-such-segment")

        asyncio.run(scenario())


@pytest.mark.unit
class TestStatusFlow:
    """Test cases for forward-only status and published transitions."""

    def test_published_transitions(self, pipeline_context, scripted_backend,
                                   recording_sleep, sample_audio_file):
        service = _build(pipeline_context, scripted_backend(["text"]),
                         scripted_backend(["x"]), recording_sleep)
        seen = []

        def on_segment(segment):
            seen.append((segment.id, segment.status))

        pub.subscribe(on_segment, SEGMENT_STATUS_TOPIC)
        try:
            async def scenario():
                session = await _new_session(service, sample_audio_file)
                segment = service.enqueue_segment(session.id, 0, 0)
                await service.wait_until_idle()
                return segment

            segment = asyncio.run(scenario())
        finally:
            pub.unsubscribe(on_segment, SEGMENT_STATUS_TOPIC)

        assert [status for seg_id, status in seen if seg_id == segment.id] == [
            SegmentStatus.QUEUED, SegmentStatus.TRANSCRIBING, SegmentStatus.COMPLETE,
        ]

    def test_complete_segment_is_never_reprocessed(self, pipeline_context, scripted_backend,
                                                   recording_sleep, sample_audio_file):
        remote = scripted_backend(["first", "second"], repeat_last=False)
        service = _build(pipeline_context, remote, scripted_backend(["x"]), recording_sleep)

        async def scenario():
            session = await _new_session(service, sample_audio_file)
            segment = service.enqueue_segment(session.id, 0, 0)
            await service.wait_until_idle()
            return segment, await service.process_segment(segment.id)

        segment, second = asyncio.run(scenario())

        assert second is None
        assert len(remote.calls) == 1
        stored = pipeline_context.database.get_segment(segment.id)
        assert stored.status is SegmentStatus.COMPLETE
        assert stored.text == "first"

    def test_crypto_runs_off_event_loop_thread(self, pipeline_context, scripted_backend,
                                               recording_sleep, sample_audio_file):
        crypto = pipeline_context.crypto
        threads = {}
        real_encrypt, real_decrypt = crypto.encrypt, crypto.decrypt

        def encrypt(data):
            threads["encrypt"] = threading.get_ident()
            return real_encrypt(data)

        def decrypt(data):
            threads["decrypt"] = threading.get_ident()
            return real_decrypt(data)

        service = _build(pipeline_context, scripted_backend(["ok"]), DeniedLocal(), recording_sleep)

        async def scenario():
            threads["loop"] = threading.get_ident()
            with patch.object(crypto, "encrypt", side_effect=encrypt), \
                    patch.object(crypto, "decrypt", side_effect=decrypt):
                await service.ingest_recording(sample_audio_file, duration=0)
                await service.wait_until_idle()

        asyncio.run(scenario())

        assert threads["encrypt"] != threads["loop"]
        assert threads["decrypt"] != threads["loop"]

    def test_concurrent_dispatch_of_same_segment(self, pipeline_context, recording_sleep, sample_audio_file):
        """Test a second dispatch of an in-flight segment is ignored."""

        class GatedBackend(AbstractTranscriptionBackend):
            def __init__(self):
                super().__init__()
                self.calls = 0
                self.gate = None

            async def transcribe(self, audio_path, **kwargs):
                self.calls += 1
                await self.gate.wait()
                return _result("gated")

        remote = GatedBackend()
        service = _build(pipeline_context, remote, DeniedLocal(), recording_sleep)

        async def scenario():
            remote.gate = asyncio.Event()
            session = await _new_session(service, sample_audio_file)
            segment = pipeline_context.database.add_segment(TranscriptionSegment(
                session_id=session.id, audio_filename=session.audio_filename, start_time=0, end_time=0,
            ))
            first = asyncio.ensure_future(service.process_segment(segment.id))
            await asyncio.sleep(0)
            assert segment.id in service.in_flight
            second = await service.process_segment(segment.id)
            remote.gate.set()
            return await first, second

        first, second = asyncio.run(scenario())

        assert second is None
        assert first.status is SegmentStatus.COMPLETE
        assert remote.calls == 1

    def test_concurrency_cap(self, make_config, recording_sleep, sample_audio_file):
        context = PipelineContext.from_config(make_config({'pipeline.max_concurrent_segments': 1}))

        class CountingBackend(AbstractTranscriptionBackend):
            active = 0
            peak = 0

            async def transcribe(self, audio_path, **kwargs):
                CountingBackend.active += 1
                CountingBackend.peak = max(CountingBackend.peak, CountingBackend.active)
                await asyncio.sleep(0.01)
                CountingBackend.active -= 1
                return _result("counted")

        service = _build(context, CountingBackend(), DeniedLocal(), recording_sleep)

        async def scenario():
            session = await _new_session(service, sample_audio_file)
            for start in (0.0, 0.5, 1.0):
                service.enqueue_segment(session.id, start, start + 0.5)
            await service.wait_until_idle()
            return session

        try:
            session = asyncio.run(scenario())
            statuses = [s.status for s in context.database.get_segments(session.id)]
        finally:
            context.close()

        assert CountingBackend.peak == 1
        assert statuses == [SegmentStatus.COMPLETE] * 3


@pytest.mark.unit
class TestCancellationAndRecovery:
    """Test cases for cancellation and stale-segment recovery."""

    def test_cancel_leaves_transcribing_and_cleans_temp(self, pipeline_context, recording_sleep,
                                                        sample_audio_file):
        class BlockingBackend(AbstractTranscriptionBackend):
            started = None

            async def transcribe(self, audio_path, **kwargs):
                self.started.set()
                await asyncio.Event().wait()

        remote = BlockingBackend()
        service = _build(pipeline_context, remote, DeniedLocal(), recording_sleep)

        async def scenario():
            remote.started = asyncio.Event()
            session = await _new_session(service, sample_audio_file)
            segment = service.enqueue_segment(session.id, 0, 0)
            await remote.started.wait()
            await service.shutdown()
            return segment

        segment = asyncio.run(scenario())

        assert pipeline_context.database.get_segment(segment.id).status is SegmentStatus.TRANSCRIBING
        assert _temp_files(pipeline_context) == []
        assert pipeline_context.database.count_queued_segments() == 0

        recovered = TranscriptionService(pipeline_context).recover_stale_segments()

        assert recovered == 1
        assert pipeline_context.database.get_segment(segment.id).status is SegmentStatus.ERROR
        assert pipeline_context.database.count_queued_segments() == 1

    def test_segment_waiting_for_slot_is_recoverable_after_shutdown(self, make_config, recording_sleep,
                                                                    sample_audio_file):
        context = PipelineContext.from_config(make_config({'pipeline.max_concurrent_segments': 1}))

        class BlockingBackend(AbstractTranscriptionBackend):
            started = None

            async def transcribe(self, audio_path, **kwargs):
                self.started.set()
                await asyncio.Event().wait()

        remote = BlockingBackend()
        service = _build(context, remote, DeniedLocal(), recording_sleep)

        async def scenario():
            remote.started = asyncio.Event()
            session = await _new_session(service, sample_audio_file)
            running = service.enqueue_segment(session.id, 0.0, 0.5)
            waiting = service.enqueue_segment(session.id, 0.5, 1.0)
            await remote.started.wait()
            await service.shutdown()
            return running, waiting

        try:
            running, waiting = asyncio.run(scenario())

            assert context.database.get_segment(running.id).status is SegmentStatus.TRANSCRIBING
            assert context.database.get_segment(waiting.id).status is SegmentStatus.QUEUED

            recovered = TranscriptionService(context).startup()

            assert recovered == 2
            assert context.database.get_segment(running.id).status is SegmentStatus.ERROR
            assert context.database.get_segment(waiting.id).status is SegmentStatus.ERROR
            records = context.database.list_queued_segments()
            assert sorted((r.start_time, r.end_time) for r in records) == [(0.0, 0.5), (0.5, 1.0)]
        finally:
            context.close()

    def test_recovery_skips_segments_scheduled_in_this_process(self, pipeline_context, scripted_backend,
                                                               recording_sleep, sample_audio_file):
        service = _build(pipeline_context, scripted_backend(["ok"]), DeniedLocal(), recording_sleep)

        async def scenario():
            session = await _new_session(service, sample_audio_file)
            segment = service.enqueue_segment(session.id, 0, 0)
            # the task exists but has not started yet
            recovered = service.recover_stale_segments()
            await service.wait_until_idle()
            return segment, recovered

        segment, recovered = asyncio.run(scenario())

        assert recovered == 0
        assert pipeline_context.database.get_segment(segment.id).status is SegmentStatus.COMPLETE
        assert pipeline_context.database.count_queued_segments() == 0

    def test_startup_cleans_old_temp_files_and_recovers(self, pipeline_context, sample_audio_file):
        service = TranscriptionService(pipeline_context)
        stale = pipeline_context.file_manager.create_temp_file("decrypted", ".m4a")
        long_ago = time.time() - 48 * 3600
        os.utime(stale, (long_ago, long_ago))

        async def make_stale_segment():
            session = await _new_session(service, sample_audio_file)
            segment = pipeline_context.database.add_segment(TranscriptionSegment(
                session_id=session.id, audio_filename=session.audio_filename, start_time=0, end_time=0,
            ))
            segment.transition(SegmentStatus.TRANSCRIBING)
            pipeline_context.database.save_segment(segment)

        asyncio.run(make_stale_segment())

        assert service.startup() == 1
        assert not stale.exists()
        assert pipeline_context.database.count_segments(status=SegmentStatus.ERROR) == 1

    def test_startup_recovery_can_be_disabled(self, pipeline_context):
        pipeline_context.config.set('pipeline.recover_stale_on_startup', False)

        assert TranscriptionService(pipeline_context).startup() == 0


@pytest.mark.unit
class TestIngest:
    """Test cases for ingesting a finished recording."""

    def test_ingest_encrypts_and_segments(self, pipeline_context, scripted_backend,
                                          recording_sleep, sample_audio_file):
        plaintext = sample_audio_file.read_bytes()
        remote = scripted_backend(["part"])
        service = _build(pipeline_context, remote, scripted_backend(["x"]), recording_sleep)

        async def scenario():
            session, segments = await service.ingest_recording(
                sample_audio_file, duration=1.5, segment_seconds=0.5
            )
            await service.wait_until_idle()
            return session, segments

        session, segments = asyncio.run(scenario())

        assert not sample_audio_file.exists()
        artifact = pipeline_context.file_manager.artifact_path(session.audio_filename)
        assert artifact.exists()
        assert plaintext not in artifact.read_bytes()
        assert pipeline_context.crypto.decrypt(artifact.read_bytes()) == plaintext
        assert session.title.startswith("Recording at ")

        stored = pipeline_context.database.get_segments(session.id)
        assert [(s.start_time, s.end_time) for s in stored] == [(0.0, 0.5), (0.5, 1.0), (1.0, 1.5)]
        assert [s.position for s in stored] == [0, 1, 2]
        assert all(s.status is SegmentStatus.COMPLETE for s in stored)
        assert len(remote.calls) == 3
        assert _temp_files(pipeline_context) == []

    def test_enqueue_rejects_bad_window_and_unknown_session(self, pipeline_context, scripted_backend,
                                                           recording_sleep, sample_audio_file):
        service = _build(pipeline_context, scripted_backend(["x"]), scripted_backend(["x"]), recording_sleep)

        async def scenario():
            session = await _new_session(service, sample_audio_file)
            with pytest.raises(ValueError):
                service.enqueue_segment(session.id, 5.0, 1.0)
            with pytest.raises(PersistenceError):
                service.enqueue_segment("missing-session", 0, 0)
            return session

        session = asyncio.run(scenario())

        assert pipeline_context.database.count_segments(session_id=session.id) == 0
