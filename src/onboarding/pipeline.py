"""
Staged voice-answer pipeline.

A voice answer flows through named async stages (interpret -> match ->
commit). One CancelToken is threaded through every stage; it belongs to the
section activation that was current when recording started. If the user
navigates away the token is cancelled and the pipeline stops at the next
stage boundary, so a late transcript never writes into a section that is no
longer active.
"""

import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class PipelineCancelled(Exception):
    """Raised at a stage boundary when the token has been cancelled."""


class CancelToken:
    """Cooperative cancellation flag for one section activation."""

    def __init__(self, label: str = ""):
        self.label = label
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise PipelineCancelled(self.label)

    def __repr__(self) -> str:
        return f"CancelToken({self.label!r}, cancelled={self._cancelled})"


class VoiceOutcome(str, Enum):
    COMMITTED = "committed"
    NO_MATCH = "no_match"
    REJECTED = "rejected"  # matched, but failed validation
    CANCELLED = "cancelled"


@dataclass
class VoiceAnswerResult:
    """What happened to one transcript."""

    outcome: VoiceOutcome
    question_id: str | None = None
    value: Any = None
    transcript: str = ""
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def committed(self) -> bool:
        return self.outcome == VoiceOutcome.COMMITTED


Stage = Callable[[Any], Awaitable[Any]]


class VoiceAnswerPipeline:
    """
    Runs stages in order, checking the token before each one.

    Usage:
        pipeline = VoiceAnswerPipeline([
            ("interpret", interpret),
            ("match", match),
            ("commit", commit),
        ])
        result = await pipeline.run(transcript, token)
    """

    def __init__(self, stages: list[tuple[str, Stage]]):
        self.stages = stages

    async def run(self, payload: Any, token: CancelToken) -> Any:
        for name, stage in self.stages:
            token.raise_if_cancelled()
            start = time.perf_counter()
            payload = await stage(payload)
            logger.debug(f"Stage {name} finished in {(time.perf_counter() - start) * 1000:.1f}ms")
        return payload
