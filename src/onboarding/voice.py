"""
Voice Interaction Controller.

Wraps microphone capture, transcription and speech synthesis behind a small
recording state machine:

    idle --start()--> recording --stop()--> processing --(transcript)--> idle
    recording --cancel()--> idle

Capabilities are injected as ports (Microphone, Recognizer, Synthesizer).
Any of them may be missing, in which case the voice entry points report
`unsupported` through the error callback and the caller falls back to
manual entry. Capture and transcription failures never raise out of
start()/stop(); they go to `on_error`.
"""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Protocol, runtime_checkable

from onboarding.errors import CaptureError, TranscriptionError, VoiceError, VoiceStateError

logger = logging.getLogger(__name__)


# =============================================================================
# Capability ports
# =============================================================================


@runtime_checkable
class AudioStream(Protocol):
    """A live capture handle. Only held while recording."""

    content_type: str

    async def finish(self) -> bytes:
        """Stop capturing and return the recorded audio."""
        ...

    def close(self) -> None:
        """Release the underlying device. Must be idempotent."""
        ...


@runtime_checkable
class Microphone(Protocol):
    async def acquire(self) -> AudioStream:
        """Open a capture stream. Raises CaptureError on denial/unsupported."""
        ...


@runtime_checkable
class Recognizer(Protocol):
    async def transcribe(self, audio: bytes, content_type: str) -> str:
        """Return the transcript for one recording. Raises TranscriptionError."""
        ...


@runtime_checkable
class Synthesizer(Protocol):
    async def speak(self, text: str) -> None:
        ...


TranscriptCallback = Callable[[str], Awaitable[None] | None]
ErrorCallback = Callable[[VoiceError], None]


# =============================================================================
# State
# =============================================================================


class VoiceState(str, Enum):
    IDLE = "idle"
    RECORDING = "recording"
    PROCESSING = "processing"


@dataclass
class VoiceSession:
    """Transient recording state. Never persisted."""

    stream: AudioStream | None = None
    recording: bool = False
    processing: bool = False
    transcript: str = ""
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def release(self) -> None:
        if self.stream is not None:
            try:
                self.stream.close()
            except Exception as e:
                logger.warning(f"Failed to release audio stream: {e}")
            self.stream = None


class VoiceController:
    """
    Single-recorder voice controller.

    Only one recording can exist at a time; the controller's own state
    enforces it (start() while not idle raises VoiceStateError).
    """

    def __init__(
        self,
        microphone: Microphone | None = None,
        recognizer: Recognizer | None = None,
        synthesizer: Synthesizer | None = None,
        on_transcript: TranscriptCallback | None = None,
        on_error: ErrorCallback | None = None,
    ):
        self.microphone = microphone
        self.recognizer = recognizer
        self.synthesizer = synthesizer
        self.on_transcript = on_transcript
        self.on_error = on_error

        self._state = VoiceState.IDLE
        self._session: VoiceSession | None = None
        self._speech_task: asyncio.Task | None = None

    @property
    def state(self) -> VoiceState:
        return self._state

    @property
    def session(self) -> VoiceSession | None:
        return self._session

    @property
    def voice_available(self) -> bool:
        return self.microphone is not None and self.recognizer is not None

    @property
    def speech_available(self) -> bool:
        return self.synthesizer is not None

    @property
    def is_speaking(self) -> bool:
        return self._speech_task is not None and not self._speech_task.done()

    def _report(self, error: VoiceError) -> None:
        logger.warning(f"Voice error ({error.kind}): {error}")
        if self.on_error is not None:
            self.on_error(error)

    # -------------------------------------------------------------------------
    # Recording
    # -------------------------------------------------------------------------

    async def start(self) -> bool:
        """
        Start recording.

        Cancels any in-flight speech first. Returns False (state stays idle)
        when the microphone is missing or cannot be acquired.
        """
        if self._state != VoiceState.IDLE:
            raise VoiceStateError(f"Cannot start recording while {self._state.value}")

        await self.cancel_speech()

        if not self.voice_available:
            self._report(CaptureError("unsupported", "Voice capture is not available"))
            return False

        try:
            stream = await self.microphone.acquire()
        except CaptureError as e:
            self._report(e)
            return False

        self._session = VoiceSession(stream=stream, recording=True)
        self._state = VoiceState.RECORDING
        logger.info("Recording started")
        return True

    async def stop(self) -> str | None:
        """
        Stop recording and transcribe.

        Delivers the transcript (possibly empty) to `on_transcript` and
        returns it. Returns None when capture or transcription failed; the
        failure goes to `on_error`. The processing flag is cleared even if
        the callback raises.
        """
        if self._state != VoiceState.RECORDING or self._session is None:
            raise VoiceStateError(f"Cannot stop recording while {self._state.value}")

        session = self._session
        session.recording = False
        session.processing = True
        self._state = VoiceState.PROCESSING

        try:
            content_type = getattr(session.stream, "content_type", "audio/webm")
            try:
                audio = await session.stream.finish()
            except VoiceError as e:
                self._report(e)
                return None
            finally:
                session.release()

            try:
                transcript = await self.recognizer.transcribe(audio, content_type)
            except VoiceError as e:
                self._report(e)
                return None
            except Exception as e:
                logger.exception("Recognizer raised an unexpected error")
                self._report(TranscriptionError(str(e)))
                return None

            session.transcript = (transcript or "").strip()
            logger.info(f"Transcript ready ({len(session.transcript)} chars)")

            if self.on_transcript is not None:
                result = self.on_transcript(session.transcript)
                if inspect.isawaitable(result):
                    await result

            return session.transcript
        finally:
            session.processing = False
            self._session = None
            self._state = VoiceState.IDLE

    def cancel(self) -> bool:
        """Abort the current recording without transcribing."""
        if self._state != VoiceState.RECORDING or self._session is None:
            return False
        self._session.recording = False
        self._session.release()
        self._session = None
        self._state = VoiceState.IDLE
        logger.info("Recording cancelled")
        return True

    # -------------------------------------------------------------------------
    # Speech
    # -------------------------------------------------------------------------

    async def speak(self, text: str) -> asyncio.Task | None:
        """
        Speak `text`, interrupting any speech already in flight.

        Returns the synthesis task, or None when synthesis is unavailable.
        """
        if self.synthesizer is None:
            self._report(CaptureError("unsupported", "Speech synthesis is not available"))
            return None

        await self.cancel_speech()
        self._speech_task = asyncio.create_task(self._speak(text))
        return self._speech_task

    async def _speak(self, text: str) -> None:
        try:
            await self.synthesizer.speak(text)
        except asyncio.CancelledError:
            logger.debug("Speech interrupted")
            raise
        except Exception as e:
            logger.warning(f"Speech synthesis failed: {e}")

    async def cancel_speech(self) -> None:
        task, self._speech_task = self._speech_task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def aclose(self) -> None:
        """Tear down: stop speech and release any held stream."""
        await self.cancel_speech()
        if self._state == VoiceState.RECORDING:
            self.cancel()
