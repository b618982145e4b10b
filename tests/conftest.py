"""Pytest configuration and fixtures for VaultScribe tests."""

import pytest
import tempfile
import logging
import wave
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import numpy as np

from vaultscribe.config import VaultScribeConfig
from vaultscribe.models.transcription import TranscriptionResult
from vaultscribe.services.context import PipelineContext
from vaultscribe.transcription.base import AbstractTranscriptionBackend


# Configure logging for tests
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: fast tests without external services")
    config.addinivalue_line("markers", "integration: end-to-end pipeline tests")


@pytest.fixture
def temp_data_dir():
    """Create temporary directory for test data."""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield temp_dir


def write_sine_wav(path: Path, seconds: float = 1.0, sample_rate: int = 16000, freq: int = 440) -> Path:
    """Write a mono 16-bit sine-wave WAV file."""
    t = np.linspace(0, seconds, int(sample_rate * seconds), False)
    audio_data = (np.sin(2 * np.pi * freq * t) * 32767 * 0.5).astype(np.int16)
    with wave.open(str(path), 'wb') as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(sample_rate)
        wf.writeframes(audio_data.tobytes())
    return path


@pytest.fixture
def make_wav():
    """Factory writing sine-wave WAV files of a given length."""
    return write_sine_wav


@pytest.fixture
def sample_audio_file(temp_data_dir):
    """Create a one-second WAV recording outside the data directory."""
    return write_sine_wav(Path(temp_data_dir) / "test_audio.wav")


@pytest.fixture
def make_config(temp_data_dir):
    """Factory for configs rooted in the temp directory."""
    def _make(overrides: Optional[dict] = None) -> VaultScribeConfig:
        base = {
            "storage": {"data_directory": str(Path(temp_data_dir) / "data")},
            "security": {
                "secret_store": "file",
                "secrets_directory": str(Path(temp_data_dir) / "secrets"),
            },
            "deepgram": {"api_key_env": None},
            "retry": {"jitter": 0},
            "local_fallback": {"consent": "denied"},
            "logging": {"file_path": str(Path(temp_data_dir) / "logs" / "test.log")},
        }
        config = VaultScribeConfig(overrides=base)
        for key, value in (overrides or {}).items():
            config.set(key, value)
        return config
    return _make


class ScriptedBackend(AbstractTranscriptionBackend):
    """Backend that replays a list of outcomes: strings succeed, exceptions raise."""

    service_name = "Scripted"

    def __init__(self, outcomes: List, repeat_last: bool = True):
        super().__init__()
        self.outcomes = list(outcomes)
        self.repeat_last = repeat_last
        self.calls = []
        self.seen_audio = []

    async def transcribe(self, audio_path: Path, **kwargs) -> TranscriptionResult:
        self.calls.append(kwargs)
        self.seen_audio.append(Path(audio_path))
        assert Path(audio_path).exists()
        if len(self.outcomes) > 1 or not self.repeat_last:
            outcome = self.outcomes.pop(0)
        else:
            outcome = self.outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return TranscriptionResult(
            text=outcome,
            processing_time=0.0,
            timestamp=datetime.now(),
            service=self.service_name,
        )


class RecordingSleep:
    """Async sleep stand-in that records requested delays."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def pipeline_context(make_config):
    """Context with real storage and crypto; backends are swapped in per test."""
    context = PipelineContext.from_config(make_config())
    yield context
    context.close()


@pytest.fixture
def scripted_backend():
    """Factory for backends replaying scripted outcomes."""
    return ScriptedBackend


@pytest.fixture
def recording_sleep():
    return RecordingSleep()
