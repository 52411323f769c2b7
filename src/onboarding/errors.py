"""
Onboarding error taxonomy.

Capture and transcription failures are recoverable (fall back to manual
entry), validation failures are local to one question, persistence failures
are logged and retried. None of them end the onboarding flow.
"""

from typing import Literal

VoiceErrorKind = Literal["permission_denied", "unsupported", "transcription_failed"]


class OnboardingError(Exception):
    """Base class for onboarding errors."""


class VoiceError(OnboardingError):
    """A failure on the voice path, tagged with a machine-readable kind."""

    def __init__(self, kind: VoiceErrorKind, message: str = ""):
        self.kind = kind
        super().__init__(message or kind)


class CaptureError(VoiceError):
    """Microphone could not be acquired (permission denied / unsupported)."""


class TranscriptionError(VoiceError):
    """Transcription service failed or returned a malformed body."""

    def __init__(self, message: str = "", status_code: int | None = None):
        self.status_code = status_code
        super().__init__("transcription_failed", message)


class VoiceStateError(OnboardingError):
    """Invalid transition requested on the voice controller."""


class ParsingError(OnboardingError):
    """Parsing service output failed its structural contract.

    Internal to the gateway: it is converted to a soft failure there.
    """


class AnswerValidationError(OnboardingError):
    """An answer failed validation. `errors` maps error keys to messages."""

    def __init__(self, errors: dict[str, str]):
        self.errors = errors
        super().__init__("; ".join(f"{k}: {v}" for k, v in errors.items()))


class PersistenceError(OnboardingError):
    """Reading or writing durable progress failed."""


class UnitConversionError(OnboardingError, ValueError):
    """Conversion between incompatible units was requested."""
