"""
Onboarding Orchestrator.

Top-level sequencer: composes one SectionMachine per section into a single
linear flow with back/forward navigation, voice input, keyboard shortcuts,
progress persistence and final submission.

Flow status is IN_PROGRESS until the last section completes, then COMPLETE
(terminal). On COMPLETE the full aggregate is written once through the
completion sink and `on_complete` is called.
"""

import json
import logging
from collections.abc import Callable
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

from nutriflow.config import settings
from nutriflow.observability import SessionLogger
from onboarding.analytics import AnalyticsCollector
from onboarding.catalog import get_sections
from onboarding.errors import AnswerValidationError, CaptureError, PersistenceError, VoiceError
from onboarding.gateway import DEFAULT_CONFIDENCE_THRESHOLD, ResponseParsingGateway, build_gateway
from onboarding.pipeline import CancelToken, VoiceAnswerResult, VoiceOutcome
from onboarding.progress import MemoryStorage, ProgressRecord, ProgressStore, build_store
from onboarding.questions import Section, decode_section_answers, encode_value
from onboarding.section_machine import SectionMachine, StepResult
from onboarding.voice import VoiceController

logger = logging.getLogger(__name__)

VOICE_UNAVAILABLE_PROMPT = "Voice input isn't available right now. You can type your answer instead."
VOICE_RETRY_PROMPT = "I couldn't catch that. Please try again, or type your answer."


class FlowStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"


# =============================================================================
# Completion sinks
# =============================================================================


class CompletionSink(Protocol):
    def write(self, responses: dict[str, dict[str, Any]]) -> None:
        ...


class JsonFileCompletionSink:
    """Write the final responses to a JSON file."""

    def __init__(self, path: Path | str):
        self.path = Path(path)

    def write(self, responses: dict[str, dict[str, Any]]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(responses, indent=2), encoding="utf-8")
        except OSError as e:
            raise PersistenceError(f"Cannot write {self.path}: {e}") from e


class SupabaseCompletionSink:
    """Upsert the final responses into onboarding_data, one row per user."""

    def __init__(self, user_id: str, client=None, table: str = "onboarding_data", version: str = "1.0.0"):
        if client is None:
            from nutriflow.db import get_client
            client = get_client()
        self.client = client
        self.user_id = user_id
        self.table = table
        self.version = version

    def write(self, responses: dict[str, dict[str, Any]]) -> None:
        try:
            self.client.table(self.table).upsert({
                "user_id": self.user_id,
                "payload": responses,
                "version": self.version,
                "completed_at": datetime.now(timezone.utc).isoformat(),
            }, on_conflict="user_id").execute()
        except Exception as e:
            raise PersistenceError(f"Failed to store onboarding responses: {e}") from e


# =============================================================================
# Orchestrator
# =============================================================================


class OnboardingOrchestrator:
    """
    Sequences sections, owns the merged response aggregate and persists on
    every mutation.

    Args:
        sections: Fixed section sequence (defaults to the catalog)
        store: Progress store (defaults to in-memory)
        gateway: Parsing gateway for voice answers
        voice: Voice controller; its callbacks are wired to this orchestrator
        analytics: Explicit analytics collector for this session
        completion_sink: Durable destination for the final responses
        on_complete: Called once with the final responses
        session_logger: Optional JSONL logger for section enter/exit and analytics events
    """

    def __init__(
        self,
        sections: tuple[Section, ...] | list[Section] | None = None,
        store: ProgressStore | None = None,
        gateway: ResponseParsingGateway | None = None,
        voice: VoiceController | None = None,
        analytics: AnalyticsCollector | None = None,
        completion_sink: CompletionSink | None = None,
        on_complete: Callable[[dict], None] | None = None,
        session_logger: SessionLogger | None = None,
        confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
    ):
        self.sections: tuple[Section, ...] = tuple(sections or get_sections())
        if not self.sections:
            raise ValueError("At least one section is required")
        self.store = store or ProgressStore(MemoryStorage())
        self.gateway = gateway
        self.analytics = analytics or AnalyticsCollector()
        self.completion_sink = completion_sink
        self.on_complete = on_complete
        self.session_logger = session_logger
        if session_logger is not None:
            self.analytics.add_sink(session_logger.analytics_event)

        self.voice = voice
        if voice is not None:
            voice.on_transcript = self._on_transcript
            voice.on_error = self._on_voice_error

        self.machines = [
            SectionMachine(
                section,
                gateway=gateway,
                analytics=self.analytics,
                prompter=self._prompt,
                confidence_threshold=confidence_threshold,
            )
            for section in self.sections
        ]

        self.status = FlowStatus.IN_PROGRESS
        self.section_index = 0
        self.responses: dict[str, dict[str, Any]] = {}
        self.messages: list[str] = []
        self.last_voice_result: VoiceAnswerResult | None = None
        self._voice_token: CancelToken | None = None
        self._completion_written = False
        self._started = False

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def active(self) -> SectionMachine:
        return self.machines[self.section_index]

    @property
    def current_section(self) -> Section:
        return self.sections[self.section_index]

    @property
    def record(self) -> ProgressRecord:
        return self.store.record

    def _aggregate(self) -> dict[str, dict[str, Any]]:
        aggregate = {sid: dict(answers) for sid, answers in self.responses.items()}
        if self.status == FlowStatus.IN_PROGRESS and self._started:
            aggregate[self.current_section.id] = dict(self.active.answers)
        return aggregate

    def _sync(self) -> None:
        """Copy live state into the progress record and save."""
        machine = self.active
        self.store.update(
            current_section_index=self.section_index,
            current_question_index=machine.question_index,
            responses={
                sid: encode_value(answers)
                for sid, answers in self._aggregate().items()
            },
            flow_complete=self.status == FlowStatus.COMPLETE,
        )
        self.store.save()

    def _activate(self, index: int, question_index: int = 0) -> None:
        section = self.sections[index]
        self.section_index = index
        self.machines[index].activate(self.responses.get(section.id, {}), question_index)
        self.analytics.start(section.id)
        if self.session_logger is not None:
            self.session_logger.section_enter(section.id, question_index)

    def _deactivate(self) -> None:
        machine = self.active
        machine.deactivate()
        self.responses[machine.section.id] = dict(machine.answers)

    def start(self) -> ProgressRecord:
        """Load progress, clamp indices and activate the current section."""
        record = self.store.load()
        self.responses = {}
        for section in self.sections:
            raw = record.responses.get(section.id)
            if raw:
                self.responses[section.id] = decode_section_answers(section, raw)

        self._started = True
        index = max(0, min(record.current_section_index, len(self.sections) - 1))
        if record.flow_complete:
            self.status = FlowStatus.COMPLETE
            self.section_index = index
            self._completion_written = True
            logger.info("Onboarding already complete")
            return record

        self.status = FlowStatus.IN_PROGRESS
        self._activate(index, record.current_question_index)
        logger.info(f"Onboarding started at {self.current_section.id} ({index + 1}/{len(self.sections)})")
        return record

    def _require_in_progress(self) -> None:
        if not self._started:
            raise RuntimeError("Call start() before interacting with the orchestrator")
        if self.status == FlowStatus.COMPLETE:
            raise AnswerValidationError({"flow": "Onboarding is already complete"})

    # -------------------------------------------------------------------------
    # Navigation
    # -------------------------------------------------------------------------

    def next(self) -> StepResult:
        """
        Advance the active section. When it completes, merge its answers,
        mark it complete once, and move to the next section (or finish).
        """
        if self.status == FlowStatus.COMPLETE:
            return StepResult.COMPLETED
        self._require_in_progress()

        machine = self.active
        result = machine.next()
        if result != StepResult.COMPLETED:
            self._sync()
            return result

        try:
            answers = machine.finalize()
        except AnswerValidationError as e:
            logger.info(f"Section {machine.section.id} failed its contract: {e.errors}")
            self._sync()
            return StepResult.BLOCKED

        section_id = machine.section.id
        self.responses[section_id] = answers
        self.store.record.mark_section_complete(section_id)
        summary = self.analytics.end(section_id)
        if self.session_logger is not None:
            self.session_logger.section_exit(section_id, summary)
        machine.deactivate()

        if self.section_index == len(self.sections) - 1:
            self._complete()
            return StepResult.COMPLETED

        self._activate(self.section_index + 1, 0)
        self._sync()
        return StepResult.ADVANCED

    def previous(self) -> bool:
        """
        Step back one question; at question 0 move to the previous section's
        last question. Never leaves a non-skippable section backwards.
        """
        if self.status == FlowStatus.COMPLETE:
            return False
        self._require_in_progress()

        machine = self.active
        if machine.back():
            self._sync()
            return True

        if not machine.section.skippable:
            logger.info(f"Cannot go back out of {machine.section.id}")
            return False
        if self.section_index == 0:
            return False

        self._deactivate()
        previous_index = self.section_index - 1
        self._activate(previous_index, len(self.sections[previous_index].questions) - 1)
        self._sync()
        return True

    def _complete(self) -> None:
        self.status = FlowStatus.COMPLETE
        final = self.final_responses()
        self._sync()

        if not self._completion_written:
            self._completion_written = True
            if self.completion_sink is not None:
                try:
                    self.completion_sink.write(final)
                except PersistenceError as e:
                    logger.error(f"Completion write failed: {e}")
            self.analytics.complete_flow(self.store.record.completed_sections)
            logger.info(f"Onboarding complete ({len(final)} sections)")
            if self.on_complete is not None:
                self.on_complete(final)

    # -------------------------------------------------------------------------
    # Answers
    # -------------------------------------------------------------------------

    def answer(self, question_id: str, value: Any) -> StepResult:
        self._require_in_progress()
        result = self.active.handle_manual_answer(question_id, value)
        self._sync()
        return result

    def toggle(self, question_id: str, value: str) -> StepResult:
        self._require_in_progress()
        result = self.active.toggle_option(question_id, value)
        self._sync()
        return result

    def detail(self, question_id: str, text: str) -> StepResult:
        self._require_in_progress()
        result = self.active.handle_detail(question_id, text)
        self._sync()
        return result

    # -------------------------------------------------------------------------
    # Voice
    # -------------------------------------------------------------------------

    async def _prompt(self, text: str) -> None:
        self.messages.append(text)
        if self.voice is not None and self.voice.speech_available:
            await self.voice.speak(text)

    def _on_voice_error(self, error: VoiceError) -> None:
        section_id = self.current_section.id
        self.analytics.track(section_id, "voice_error", {"kind": error.kind})
        if isinstance(error, CaptureError):
            self.messages.append(VOICE_UNAVAILABLE_PROMPT)
        else:
            self.messages.append(VOICE_RETRY_PROMPT)

    async def _on_transcript(self, transcript: str) -> None:
        token, self._voice_token = self._voice_token, None
        self.last_voice_result = await self.handle_transcript(transcript, token)

    async def start_voice(self) -> bool:
        """Start recording for the active section. False means use manual entry."""
        self._require_in_progress()
        if self.voice is None:
            self.messages.append(VOICE_UNAVAILABLE_PROMPT)
            return False
        self._voice_token = self.active.token
        started = await self.voice.start()
        if started:
            self.analytics.track(self.current_section.id, "voice_start")
        else:
            self._voice_token = None
        return started

    async def stop_voice(self) -> VoiceAnswerResult | None:
        """Stop recording; the transcript is routed to the section that was active at start."""
        if self.voice is None:
            return None
        self.last_voice_result = None
        transcript = await self.voice.stop()
        if transcript is None:
            return None
        return self.last_voice_result

    def cancel_voice(self) -> bool:
        self._voice_token = None
        if self.voice is None:
            return False
        return self.voice.cancel()

    async def handle_transcript(self, transcript: str, token: CancelToken | None = None) -> VoiceAnswerResult:
        """
        Route a finalized transcript into the active section.

        A token from a section that is no longer active is already
        cancelled, so the result is dropped.
        """
        if self.status == FlowStatus.COMPLETE:
            return VoiceAnswerResult(VoiceOutcome.CANCELLED, transcript=transcript)
        self._require_in_progress()
        result = await self.active.handle_voice_answer(transcript, token or self.active.token)
        if result.outcome != VoiceOutcome.CANCELLED:
            self._sync()
        return result

    # -------------------------------------------------------------------------
    # Keyboard
    # -------------------------------------------------------------------------

    def handle_key(self, key: str, in_text_input: bool = False) -> StepResult | bool | None:
        """
        enter -> next, backspace -> previous, escape -> cancel voice.
        Ignored while focus is in a text input.
        """
        if in_text_input:
            return None
        key = key.lower()
        if key == "enter":
            return self.next()
        if key == "backspace":
            return self.previous()
        if key == "escape":
            return self.cancel_voice()
        return None

    # -------------------------------------------------------------------------
    # Output
    # -------------------------------------------------------------------------

    def final_responses(self) -> dict[str, dict[str, Any]]:
        """Plain nested mapping keyed by section id, JSON-safe."""
        aggregate = self._aggregate()
        return {
            section.id: encode_value(aggregate[section.id])
            for section in self.sections
            if section.id in aggregate
        }

    def snapshot(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "status": self.status.value,
            "section_index": self.section_index,
            "section_count": len(self.sections),
            "completed_sections": list(self.store.record.completed_sections),
            "messages": list(self.messages[-5:]),
        }
        if self.status == FlowStatus.IN_PROGRESS and self._started:
            data["section"] = self.active.snapshot()
        if self.voice is not None:
            data["voice"] = {
                "available": self.voice.voice_available,
                "state": self.voice.state.value,
            }
        return data

    async def aclose(self) -> None:
        """Stop voice, flush progress and release the gateway's connections."""
        if self.voice is not None:
            await self.voice.aclose()
        await self.store.stop_autosave()
        if self.gateway is not None:
            await self.gateway.aclose()


# =============================================================================
# Factories
# =============================================================================


def build_completion_sink(user_id: str | None = None) -> CompletionSink | None:
    """Completion sink for the configured progress backend."""
    backend = settings.progress_backend
    if backend == "memory":
        return None
    if backend == "supabase":
        return SupabaseCompletionSink(user_id or "local", version=settings.progress_schema_version)
    path = settings.responses_path
    if user_id:
        path = path.with_name(f"{path.stem}.{user_id}{path.suffix}")
    return JsonFileCompletionSink(path)


def build_orchestrator(
    user_id: str | None = None,
    voice: VoiceController | None = None,
    session_logger: SessionLogger | None = None,
    on_complete: Callable[[dict], None] | None = None,
) -> OnboardingOrchestrator:
    """Orchestrator wired to the configured store, gateway and completion sink."""
    return OnboardingOrchestrator(
        store=build_store(user_id),
        gateway=build_gateway(),
        voice=voice,
        completion_sink=build_completion_sink(user_id),
        on_complete=on_complete,
        session_logger=session_logger,
        confidence_threshold=settings.confidence_threshold,
    )
