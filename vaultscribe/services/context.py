"""Explicitly constructed pipeline context shared by the services."""

import logging
import os
from dataclasses import dataclass
from typing import Optional

from ..audio.exporter import SegmentExporter
from ..config import VaultScribeConfig
from ..security.crypto import CryptoStore
from ..security.secret_store import SecretStore, build_secret_store
from ..storage.database import Database
from ..storage.file_manager import FileManager
from ..transcription.base import AbstractTranscriptionBackend
from ..transcription.deepgram_backend import DeepgramBackend
from ..transcription.local_backend import (
    ConsentPrompt,
    LocalSpeechBackend,
    WhisperRecognizer,
    status_from_config,
)
from ..transcription.publisher import SegmentPublisher

logger = logging.getLogger(__name__)


@dataclass
class PipelineContext:
    """Everything the pipeline needs, built once and passed around.

    Replaces process-wide singletons: the crypto key and the local
    permission cache live on objects owned by this context.
    """
    config: VaultScribeConfig
    secret_store: SecretStore
    crypto: CryptoStore
    database: Database
    file_manager: FileManager
    exporter: SegmentExporter
    remote_backend: AbstractTranscriptionBackend
    local_backend: AbstractTranscriptionBackend
    publisher: SegmentPublisher

    @classmethod
    def from_config(cls, config: VaultScribeConfig,
                    consent_prompt: Optional[ConsentPrompt] = None) -> "PipelineContext":
        """Build the default component graph from configuration."""
        file_manager = FileManager(config.get_data_directory())
        secret_store = build_secret_store(config)

        exporter = SegmentExporter(
            temp_file_factory=file_manager.create_temp_file,
            ffmpeg_path=config.get('export.ffmpeg_path', 'ffmpeg'),
            ffprobe_path=config.get('export.ffprobe_path', 'ffprobe'),
            container=config.get('export.container', 'm4a'),
            codec=config.get('export.codec', 'aac'),
            bitrate=config.get('export.bitrate', '96k'),
            min_duration_seconds=float(config.get('export.min_duration_seconds', 2.0)),
            timeout_seconds=float(config.get('export.timeout_seconds', 300)),
        )

        remote_backend = DeepgramBackend(
            api_url=config.get('deepgram.api_url'),
            content_type=exporter.content_type,
            timeout_seconds=float(config.get('deepgram.timeout_seconds', 120)),
            params=config.get('deepgram.params', {}),
        )

        language = config.get('local_fallback.language')
        local_backend = LocalSpeechBackend(
            recognizer=WhisperRecognizer(
                model_size=config.get('local_fallback.model_size', 'small'),
                device=config.get('local_fallback.device', 'auto'),
                language=language,
            ),
            initial_status=status_from_config(
                config.get('local_fallback.enabled', True),
                config.get('local_fallback.consent', 'ask'),
            ),
            consent_prompt=consent_prompt,
            language=language,
        )

        return cls(
            config=config,
            secret_store=secret_store,
            crypto=CryptoStore(secret_store, config.get('security.encryption_key_name')),
            database=Database(config.get_database_path()),
            file_manager=file_manager,
            exporter=exporter,
            remote_backend=remote_backend,
            local_backend=local_backend,
            publisher=SegmentPublisher(),
        )

    def resolve_credential(self) -> Optional[str]:
        """Remote API credential from the secret store, then the environment.

        Absence is a valid state: the pipeline falls back to local recognition.
        """
        secret_name = self.config.get('deepgram.api_key_secret', 'deepgram_api_key')
        try:
            credential = self.secret_store.get(secret_name)
        except Exception as e:
            logger.warning(f"Secret store read failed: {type(e).__name__}")
            credential = None
        if credential:
            return credential

        env_name = self.config.get('deepgram.api_key_env')
        if env_name:
            return os.environ.get(env_name) or None
        return None

    def close(self) -> None:
        for backend in (self.remote_backend, self.local_backend):
            try:
                backend.cleanup()
            except Exception as e:
                logger.error(f"Error cleaning up {backend.__class__.__name__}: {e}")
        self.database.close()
