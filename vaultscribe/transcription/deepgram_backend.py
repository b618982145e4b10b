"""Deepgram pre-recorded speech-to-text backend."""

import asyncio
import time
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiohttp
from pydantic import BaseModel, ValidationError

from .base import AbstractTranscriptionBackend
from ..exceptions import RemoteTranscriptionError
from ..models.transcription import TranscriptionResult

logger = logging.getLogger(__name__)

DEEPGRAM_LISTEN_URL = "https://api.deepgram.com/v1/listen"


class DeepgramAlternative(BaseModel):
    transcript: str
    confidence: Optional[float] = None


class DeepgramChannel(BaseModel):
    alternatives: List[DeepgramAlternative]


class DeepgramResults(BaseModel):
    channels: List[DeepgramChannel]


class DeepgramResponse(BaseModel):
    results: DeepgramResults

    def first_alternative(self) -> Optional[DeepgramAlternative]:
        if not self.results.channels or not self.results.channels[0].alternatives:
            return None
        return self.results.channels[0].alternatives[0]


class DeepgramBackend(AbstractTranscriptionBackend):
    """Uploads a whole audio artifact to Deepgram in one POST.

    Retries are not handled here; each call is exactly one attempt.
    """

    service_name = "Deepgram"

    def __init__(self,
                 api_url: str = DEEPGRAM_LISTEN_URL,
                 content_type: str = "audio/m4a",
                 timeout_seconds: float = 120,
                 params: Optional[Dict[str, Any]] = None,
                 language: Optional[str] = None):
        super().__init__(language)
        self.api_url = api_url
        self.content_type = content_type
        self.timeout_seconds = timeout_seconds
        self.params = {k: str(v).lower() if isinstance(v, bool) else str(v)
                       for k, v in (params or {}).items()}
        if language:
            self.params.setdefault("language", language)

    def _timeout_for(self, size_bytes: int) -> aiohttp.ClientTimeout:
        # ~1 min per 10MB, never below the configured timeout
        total = max(self.timeout_seconds, size_bytes / (10 * 1024 * 1024) * 60)
        return aiohttp.ClientTimeout(total=total)

    async def transcribe(self, audio_path: Path, credential: Optional[str] = None,
                         content_type: Optional[str] = None, **kwargs) -> TranscriptionResult:
        """Transcribe ``audio_path`` with one authenticated POST.

        ``content_type`` describes the body; it defaults to the configured one.

        Raises:
            RemoteTranscriptionError: missing credential, HTTP/network error,
                unexpected response shape, or an empty transcript
        """
        if not credential or not credential.strip():
            raise RemoteTranscriptionError("Deepgram API key not configured", missing_credential=True)

        audio_data = await asyncio.to_thread(Path(audio_path).read_bytes)
        content_type = content_type or self.content_type
        headers = {
            "Authorization": f"Token {credential.strip()}",
            "Content-Type": content_type,
        }

        start_time = time.time()
        logger.debug(f"Uploading {len(audio_data)} bytes to Deepgram ({content_type})")
        try:
            async with aiohttp.ClientSession(timeout=self._timeout_for(len(audio_data))) as session:
                async with session.post(self.api_url, headers=headers,
                                        params=self.params, data=audio_data) as response:
                    body = await response.text()
                    status = response.status
        except asyncio.TimeoutError as e:
            raise RemoteTranscriptionError("Deepgram request timed out") from e
        except aiohttp.ClientError as e:
            raise RemoteTranscriptionError(f"Network error contacting Deepgram: {type(e).__name__}") from e

        if status != 200:
            # Never include request headers: they carry the credential
            raise RemoteTranscriptionError(
                f"Deepgram returned {status}: {body[:300] if body else 'No response body'}",
                status=status,
            )

        try:
            parsed = DeepgramResponse.model_validate_json(body)
        except ValidationError as e:
            raise RemoteTranscriptionError(f"Unexpected Deepgram response shape: {e.error_count()} errors") from e

        alternative = parsed.first_alternative()
        transcript = alternative.transcript.strip() if alternative else ""
        if not transcript:
            raise RemoteTranscriptionError("Deepgram returned an empty transcript", status=status)

        processing_time = time.time() - start_time
        logger.debug(f"Deepgram transcript received ({len(transcript)} chars, {processing_time:.2f}s)")
        return TranscriptionResult(
            text=transcript,
            processing_time=processing_time,
            timestamp=datetime.now(),
            service=self.service_name,
            language=self.language,
            confidence=alternative.confidence,
        )
