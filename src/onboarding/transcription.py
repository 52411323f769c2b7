"""
Transcription service client.

POSTs one recording as raw audio and expects `{"transcript": "..."}` back.
Every failure (unsupported content type, timeout, non-2xx, malformed body)
is raised as TranscriptionError so the voice controller can route it to
its error callback.

Implements the Recognizer port used by VoiceController.
"""

import logging

import httpx
from pydantic import BaseModel, ValidationError

from nutriflow.config import settings
from onboarding.errors import TranscriptionError

logger = logging.getLogger(__name__)

SUPPORTED_CONTENT_TYPES = frozenset({
    "audio/wav",
    "audio/webm",
    "audio/mp3",
    "audio/mpeg",
    "audio/ogg",
})


class TranscriptionResponse(BaseModel):
    transcript: str


class TranscriptionClient:
    """
    Async HTTP client for the speech-to-text service.

    Args:
        base_url: Endpoint that accepts the audio POST
        api_key: Optional bearer token
        timeout: Request timeout in seconds
        transport: Optional httpx transport (tests inject MockTransport)
    """

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self.base_url = base_url
        self._client = httpx.AsyncClient(timeout=timeout, headers=headers, transport=transport)

    @classmethod
    def from_settings(cls) -> "TranscriptionClient | None":
        """Build from settings, or None when no transcription URL is configured."""
        if not settings.transcription_enabled:
            return None
        return cls(
            base_url=settings.transcription_api_url,
            api_key=settings.transcription_api_key,
            timeout=settings.transcription_timeout_seconds,
        )

    async def transcribe(self, audio: bytes, content_type: str) -> str:
        """Transcribe one recording. Raises TranscriptionError on any failure."""
        base_type = content_type.split(";")[0].strip().lower()
        if base_type not in SUPPORTED_CONTENT_TYPES:
            raise TranscriptionError(f"Unsupported audio type: {content_type}")

        if not audio:
            logger.info("Empty recording, skipping transcription request")
            return ""

        try:
            response = await self._client.post(
                self.base_url,
                content=audio,
                headers={"Content-Type": base_type},
            )
            response.raise_for_status()
        except httpx.TimeoutException:
            raise TranscriptionError("Transcription request timed out")
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            raise TranscriptionError(f"Transcription failed: HTTP {status}", status_code=status)
        except httpx.HTTPError as e:
            raise TranscriptionError(f"Transcription request failed: {e}")

        try:
            body = TranscriptionResponse.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            logger.warning(f"Malformed transcription response: {e}")
            raise TranscriptionError("Malformed transcription response", status_code=response.status_code)

        return body.transcript.strip()

    async def aclose(self) -> None:
        await self._client.aclose()
