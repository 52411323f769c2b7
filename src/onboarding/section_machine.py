"""
Section State Machine.

Drives one section end-to-end: holds the question index, the local answer
buffer, field-level errors and multi-select sets, and reconciles voice
answers with manual edits.

States:
    ANSWERING        normal question answering
    AWAITING_DETAIL  an answer needs a free-text follow-up before moving on
    COMPLETE         last question passed; the orchestrator decides what's next

The machine never moves past its last question. It reports COMPLETED and
the orchestrator takes over.

Voice and manual answers to the same question are last-writer-wins: both
go through the same validator and whichever commits later is kept.
"""

import inspect
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import ValidationError

from onboarding.analytics import AnalyticsCollector
from onboarding.errors import AnswerValidationError
from onboarding.gateway import DEFAULT_CONFIDENCE_THRESHOLD, ParseContext, ResponseParsingGateway
from onboarding.measurements import parse_height, parse_weight
from onboarding.pipeline import (
    CancelToken,
    PipelineCancelled,
    VoiceAnswerPipeline,
    VoiceAnswerResult,
    VoiceOutcome,
)
from onboarding.questions import (
    FormQuestion,
    MultiSelectQuestion,
    Question,
    QuestionKind,
    Section,
    UnhandledQuestionKind,
    encode_value,
    is_answered,
    resolve_option,
    validate_answer,
)
from onboarding.text_numbers import text_to_date, text_to_number

logger = logging.getLogger(__name__)

Prompter = Callable[[str], Awaitable[None] | None]

RETRY_PROMPT = "Sorry, I didn't catch that. Could you say it again, or pick an answer on screen?"
DETAIL_REQUIRED = "Please add a few details before continuing"

_NEGATION = r"(?:remove|without|take off|(?:do not|don't|not) (?:want|have)|not|no)\s+(?:the\s+|any\s+)?"
_YES = re.compile(r"\b(?:yes|yeah|yep|sure|i agree|i accept|agree|accept|correct)\b")
_NO = re.compile(r"\b(?:no|nope|don't|do not|disagree)\b")
_NAME_PREFIX = re.compile(r"^(?:my name is|my name's|i'm|i am|call me|it's|it is)\s+", re.IGNORECASE)


class MachineState(str, Enum):
    ANSWERING = "answering"
    AWAITING_DETAIL = "awaiting_detail"
    COMPLETE = "complete"


class StepResult(str, Enum):
    COMMITTED = "committed"  # stored, index unchanged
    ADVANCED = "advanced"
    AWAITING_DETAIL = "awaiting_detail"
    BLOCKED = "blocked"  # validation failed, nothing changed
    COMPLETED = "completed"


@dataclass
class Interpretation:
    """Output of the interpret stage."""

    question: Question
    transcript: str
    texts: list[str] = field(default_factory=list)
    field_values: dict[str, Any] = field(default_factory=dict)


@dataclass
class SelectionChange:
    add: set[str] = field(default_factory=set)
    remove: set[str] = field(default_factory=set)

    def __bool__(self) -> bool:
        return bool(self.add or self.remove)


@dataclass
class Candidate:
    """Output of the match stage. `value` is None when nothing matched."""

    question: Question
    transcript: str
    value: Any = None


class SectionMachine:
    """
    Per-section controller.

    Args:
        section: The section to run
        gateway: Optional parsing gateway for voice answers
        analytics: Optional collector for retries/validation events
        prompter: Called with text to say/show to the user (retry prompts)
        confidence_threshold: Minimum gateway confidence for measurement fallback
    """

    def __init__(
        self,
        section: Section,
        gateway: ResponseParsingGateway | None = None,
        analytics: AnalyticsCollector | None = None,
        prompter: Prompter | None = None,
        confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
    ):
        self.section = section
        self.gateway = gateway
        self.analytics = analytics
        self.prompter = prompter
        self.confidence_threshold = confidence_threshold

        self.answers: dict[str, Any] = {}
        self.errors: dict[str, str] = {}
        self.question_index = 0
        self.state = MachineState.ANSWERING
        self.pending_detail: str | None = None
        self.token = CancelToken(section.id)
        self.token.cancel()  # inactive until activate()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def activate(self, saved_answers: dict[str, Any] | None = None, question_index: int = 0) -> CancelToken:
        """Load saved answers (already decoded) and start a new activation."""
        self.answers = dict(saved_answers or {})
        self.errors = {}
        self.question_index = max(0, min(question_index, len(self.section.questions) - 1))
        self.state = MachineState.ANSWERING
        self.pending_detail = None
        self.token = CancelToken(self.section.id)
        logger.info(f"Section {self.section.id} active at question {self.question_index}")
        return self.token

    def deactivate(self) -> None:
        """Cancel in-flight voice work for this activation."""
        self.token.cancel()

    @property
    def active(self) -> bool:
        return not self.token.cancelled

    @property
    def current_question(self) -> Question:
        return self.section.questions[self.question_index]

    @property
    def is_last_question(self) -> bool:
        return self.question_index == len(self.section.questions) - 1

    # -------------------------------------------------------------------------
    # Errors
    # -------------------------------------------------------------------------

    def _error_keys(self, question: Question) -> list[str]:
        prefix = f"{question.id}."
        return [
            k for k in self.errors
            if k == question.id or k == question.details_key or k.startswith(prefix)
        ]

    def _clear_errors(self, question: Question) -> None:
        for key in self._error_keys(question):
            del self.errors[key]

    def _set_errors(self, question: Question, errors: dict[str, str]) -> None:
        self._clear_errors(question)
        self.errors.update(errors)
        self._track("validation_error", question, {"errors": dict(errors)})

    def errors_for(self, question_id: str) -> dict[str, str]:
        question = self.section.question(question_id)
        return {k: self.errors[k] for k in self._error_keys(question)}

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _track(self, event_type: str, question: Question | None = None, details: dict | None = None) -> None:
        if self.analytics is None:
            return
        payload = dict(details or {})
        if question is not None:
            payload["question_id"] = question.id
        self.analytics.track(self.section.id, event_type, payload)

    async def _prompt(self, text: str) -> None:
        if self.prompter is None:
            return
        result = self.prompter(text)
        if inspect.isawaitable(result):
            await result

    def _needs_detail(self, question: Question, value: Any) -> bool:
        return (
            question.detail is not None
            and question.detail.applies(value)
            and not (self.answers.get(question.details_key) or "").strip()
        )

    def _advance_if_current(self, question: Question, value: Any) -> StepResult:
        """Auto-advance after a complete answer to the current, non-last question."""
        if (
            question.id == self.current_question.id
            and not self.is_last_question
            and is_answered(question, value)
        ):
            self.question_index += 1
            return StepResult.ADVANCED
        return StepResult.COMMITTED

    def _commit(self, question: Question, value: Any, source: str) -> StepResult:
        """Validate and store an answer. Shared by manual and voice input."""
        if question.kind == QuestionKind.FORM and isinstance(value, dict):
            merged = {**(self.answers.get(question.id) or {}), **value}
            partial = True
        else:
            merged = value
            partial = False

        try:
            normalized = validate_answer(question, merged, partial=partial)
        except AnswerValidationError as e:
            self._set_errors(question, e.errors)
            return StepResult.BLOCKED

        self._clear_errors(question)
        self.answers[question.id] = normalized
        if self.state == MachineState.COMPLETE:
            self.state = MachineState.ANSWERING
        logger.debug(f"{self.section.id}.{question.id} <- {normalized!r} ({source})")
        self._track("answer", question, {"source": source})

        if question.detail is not None and not question.detail.applies(normalized):
            self.answers.pop(question.details_key, None)
            if self.pending_detail == question.id:
                self.pending_detail = None
                self.state = MachineState.ANSWERING

        if self._needs_detail(question, normalized):
            self.pending_detail = question.id
            self.state = MachineState.AWAITING_DETAIL
            return StepResult.AWAITING_DETAIL

        return self._advance_if_current(question, normalized)

    def _commit_selection(self, question: MultiSelectQuestion, selection: set[str], partial: bool) -> bool:
        """
        Validate and store a whole multi-select set. The buffer is left
        unchanged when the question's validator rejects it.
        """
        try:
            normalized = validate_answer(question, selection, partial=partial)
        except AnswerValidationError as e:
            self._set_errors(question, e.errors)
            return False

        self._clear_errors(question)
        self.answers[question.id] = normalized
        if question.detail is not None and not question.detail.applies(normalized):
            self.answers.pop(question.details_key, None)
        return True

    @staticmethod
    def _add_selection(question: MultiSelectQuestion, selection: set[str], value: str) -> set[str]:
        exclusive = {o.value for o in question.options if o.exclusive}
        if value in exclusive:
            return {value}
        return (selection - exclusive) | {value}

    # -------------------------------------------------------------------------
    # Manual input
    # -------------------------------------------------------------------------

    def handle_manual_answer(self, question_id: str, value: Any) -> StepResult:
        """
        Validate and commit a typed/selected answer.

        For form questions `value` may hold a subset of fields; it is
        merged into what is already stored.
        """
        question = self.section.question(question_id)
        return self._commit(question, value, source="manual")

    def handle_detail(self, question_id: str, text: str) -> StepResult:
        """Record the free-text follow-up for `question_id`."""
        question = self.section.question(question_id)
        text = (text or "").strip()
        if not text:
            self._set_errors(question, {question.details_key: DETAIL_REQUIRED})
            return StepResult.BLOCKED

        self.answers[question.details_key] = text
        self._clear_errors(question)
        self._track("detail", question)
        if self.pending_detail == question_id:
            self.pending_detail = None
            self.state = MachineState.ANSWERING
        return self._advance_if_current(question, self.answers.get(question.id))

    def toggle_option(self, question_id: str, value: str) -> StepResult:
        """Flip membership of one option in a multi-select set. Never advances."""
        question = self.section.question(question_id)
        if question.kind != QuestionKind.MULTI_SELECT:
            raise AnswerValidationError({question_id: "Only multi-select questions can be toggled"})

        resolved = resolve_option(question.options, value)
        if resolved is None:
            self._set_errors(question, {question_id: f"{value!r} is not one of the options"})
            return StepResult.BLOCKED

        selection = set(self.answers.get(question_id) or set())
        if resolved in selection:
            selection.discard(resolved)
        else:
            selection = self._add_selection(question, selection, resolved)

        # mid-edit sets may be below the minimum; next() enforces it
        if not self._commit_selection(question, selection, partial=True):
            return StepResult.BLOCKED

        self._track("toggle", question, {"value": resolved, "selected": resolved in selection})
        return StepResult.COMMITTED

    # -------------------------------------------------------------------------
    # Voice input
    # -------------------------------------------------------------------------

    async def handle_voice_answer(self, transcript: str, token: CancelToken | None = None) -> VoiceAnswerResult:
        """
        Interpret a transcript for the current question and commit it.

        `token` is the activation token captured when recording started; a
        cancelled token drops the result. No match leaves the buffer
        untouched and prompts a retry.
        """
        token = token or self.token
        transcript = (transcript or "").strip()
        question = self.current_question

        if token.cancelled:
            logger.info(f"Voice result for {self.section.id} dropped: CANCELLED")
            return VoiceAnswerResult(VoiceOutcome.CANCELLED, question.id, transcript=transcript)

        if self.state == MachineState.AWAITING_DETAIL and self.pending_detail and transcript:
            detail_question = self.section.question(self.pending_detail)
            self.handle_detail(detail_question.id, transcript)
            return VoiceAnswerResult(
                VoiceOutcome.COMMITTED, detail_question.details_key, value=transcript, transcript=transcript
            )

        pipeline = VoiceAnswerPipeline([
            ("interpret", self._interpret),
            ("match", self._match),
            ("commit", self._commit_voice),
        ])
        try:
            result = await pipeline.run(Interpretation(question=question, transcript=transcript), token)
        except PipelineCancelled:
            logger.info(f"Voice result for {self.section.id}.{question.id} dropped: CANCELLED")
            return VoiceAnswerResult(VoiceOutcome.CANCELLED, question.id, transcript=transcript)

        self._track("voice_answer", question, {"outcome": result.outcome.value})
        return result

    async def _interpret(self, interp: Interpretation) -> Interpretation:
        question, transcript = interp.question, interp.transcript
        if not transcript:
            return interp

        if question.kind in (QuestionKind.SINGLE_SELECT, QuestionKind.MULTI_SELECT):
            if self.gateway is None:
                interp.texts = [transcript]
            else:
                parsed = await self.gateway.parse(transcript, question.context)
                self._track("ai", question, {"context": question.context.value, "ok": parsed.ok})
                interp.texts = parsed.candidate_texts()
        elif question.kind == QuestionKind.FORM:
            interp.texts = [transcript]
            interp.field_values = self._extract_fields(question, transcript)
            await self._measurement_fallback(question, transcript, interp.field_values)
        else:
            raise UnhandledQuestionKind(question.kind)
        return interp

    def _extract_fields(self, question: FormQuestion, transcript: str) -> dict[str, Any]:
        """Local extraction of form field values from speech."""
        values: dict[str, Any] = {}
        lowered = transcript.lower()
        text_fields = [f for f in question.fields if f.type == "text" and not f.choices]

        for form_field in question.fields:
            value: Any = None
            if form_field.type == "height":
                value = parse_height(transcript)
            elif form_field.type == "weight":
                value = parse_weight(transcript)
            elif form_field.type == "date":
                value = text_to_date(transcript)
            elif form_field.type == "number":
                value = text_to_number(transcript)
            elif form_field.type == "boolean":
                if _YES.search(lowered):
                    value = True
                elif _NO.search(lowered):
                    value = False
            elif form_field.type == "text":
                if form_field.choices:
                    value = next((o.value for o in form_field.choices if o.matches(transcript)), None)
                elif len(text_fields) == 1:
                    value = transcript
                    if question.context == ParseContext.NAME:
                        value = _NAME_PREFIX.sub("", transcript).strip(" .!")
            if value is not None:
                values[form_field.id] = value
        return values

    async def _measurement_fallback(self, question: FormQuestion, transcript: str, values: dict[str, Any]) -> None:
        missing = [f for f in question.fields if f.type in ("height", "weight") and f.id not in values]
        if not missing or self.gateway is None:
            return

        result = await self.gateway.parse_measurements(transcript)
        if not result.ok or result.confidence < self.confidence_threshold:
            logger.info(f"Measurement fallback not used (confidence {result.confidence:.2f})")
            return
        for form_field in missing:
            measurement = result.height if form_field.type == "height" else result.weight
            if measurement is not None:
                values[form_field.id] = measurement

    async def _match(self, interp: Interpretation) -> Candidate:
        question = interp.question
        candidate = Candidate(question=question, transcript=interp.transcript)

        if question.kind == QuestionKind.SINGLE_SELECT:
            for text in interp.texts:
                match = next((o for o in question.options if o.matches(text)), None)
                if match is not None:
                    candidate.value = match.value
                    break

        elif question.kind == QuestionKind.MULTI_SELECT:
            change = SelectionChange()
            lowered = interp.transcript.lower()
            for option in question.options:
                negated = any(
                    re.search(rf"\b{_NEGATION}{re.escape(p)}(?!\w)", lowered) for p in option.phrases()
                )
                if negated:
                    change.remove.add(option.value)
                elif any(option.matches(text) for text in interp.texts):
                    change.add.add(option.value)
            candidate.value = change or None

        elif question.kind == QuestionKind.FORM:
            candidate.value = interp.field_values or None

        else:
            raise UnhandledQuestionKind(question.kind)

        return candidate

    async def _commit_voice(self, candidate: Candidate) -> VoiceAnswerResult:
        question = candidate.question

        if candidate.value is None:
            self._track("voice_retry", question, {"transcript": candidate.transcript})
            await self._prompt(RETRY_PROMPT)
            return VoiceAnswerResult(VoiceOutcome.NO_MATCH, question.id, transcript=candidate.transcript)

        if question.kind == QuestionKind.MULTI_SELECT:
            change: SelectionChange = candidate.value
            selection = set(self.answers.get(question.id) or set()) - change.remove
            for value in sorted(change.add):
                selection = self._add_selection(question, selection, value)
            if not self._commit_selection(question, selection, partial=False):
                return VoiceAnswerResult(
                    VoiceOutcome.REJECTED, question.id, transcript=candidate.transcript, errors=self.errors_for(question.id)
                )
            self._track("answer", question, {"source": "voice"})
            if self._needs_detail(question, self.answers[question.id]):
                self.pending_detail = question.id
                self.state = MachineState.AWAITING_DETAIL
            return VoiceAnswerResult(
                VoiceOutcome.COMMITTED, question.id, value=self.answers[question.id], transcript=candidate.transcript
            )

        step = self._commit(question, candidate.value, source="voice")
        if step == StepResult.BLOCKED:
            return VoiceAnswerResult(
                VoiceOutcome.REJECTED, question.id, transcript=candidate.transcript, errors=self.errors_for(question.id)
            )
        return VoiceAnswerResult(
            VoiceOutcome.COMMITTED, question.id, value=self.answers.get(question.id), transcript=candidate.transcript
        )

    # -------------------------------------------------------------------------
    # Navigation and completion
    # -------------------------------------------------------------------------

    @staticmethod
    def _empty_answer(question: Question) -> Any:
        if question.kind == QuestionKind.SINGLE_SELECT:
            return None
        if question.kind == QuestionKind.MULTI_SELECT:
            return set()
        if question.kind == QuestionKind.FORM:
            return {}
        raise UnhandledQuestionKind(question.kind)

    def next(self) -> StepResult:
        """
        Validate the current question, then advance. On the last question
        this reports COMPLETED instead of moving.
        """
        if self.state == MachineState.COMPLETE:
            return StepResult.COMPLETED

        question = self.current_question

        if self.pending_detail is not None:
            pending = self.section.question(self.pending_detail)
            self._set_errors(pending, {pending.details_key: DETAIL_REQUIRED})
            return StepResult.BLOCKED

        value = self.answers.get(question.id)
        if value is not None or question.required:
            try:
                validate_answer(question, self._empty_answer(question) if value is None else value)
            except AnswerValidationError as e:
                self._set_errors(question, e.errors)
                return StepResult.BLOCKED

        if self._needs_detail(question, value):
            self.pending_detail = question.id
            self.state = MachineState.AWAITING_DETAIL
            return StepResult.AWAITING_DETAIL

        self._clear_errors(question)
        if self.is_last_question:
            self.state = MachineState.COMPLETE
            logger.info(f"Section {self.section.id} complete")
            return StepResult.COMPLETED

        self.question_index += 1
        return StepResult.ADVANCED

    def back(self) -> bool:
        """Previous question within this section. False at question 0."""
        if self.pending_detail is not None:
            self.pending_detail = None
        self.state = MachineState.ANSWERING
        if self.question_index == 0:
            return False
        self.question_index -= 1
        return True

    def go_to_last(self) -> None:
        self.question_index = len(self.section.questions) - 1
        self.state = MachineState.ANSWERING

    def is_complete(self) -> bool:
        """Every required question validly answered and no detail pending."""
        if self.pending_detail is not None:
            return False
        for question in self.section.questions:
            value = self.answers.get(question.id)
            if question.required and not is_answered(question, value):
                return False
            if value is not None and self._needs_detail(question, value):
                return False
        return True

    def flatten(self) -> dict[str, Any]:
        """Answers with form fields lifted to the top level."""
        flat: dict[str, Any] = {}
        for question in self.section.questions:
            value = self.answers.get(question.id)
            if value is not None:
                if question.kind == QuestionKind.FORM:
                    flat.update(value)
                else:
                    flat[question.id] = value
            if question.details_key in self.answers:
                flat[question.details_key] = self.answers[question.details_key]
        return flat

    def finalize(self) -> dict[str, Any]:
        """
        Validate the whole section against its contract.

        Returns:
            The section's answers (question id -> value)

        Raises:
            AnswerValidationError: If incomplete or the contract fails
        """
        if not self.is_complete():
            missing = [
                q.id for q in self.section.questions
                if q.required and not is_answered(q, self.answers.get(q.id))
            ]
            raise AnswerValidationError({self.section.id: f"Unanswered: {', '.join(missing) or 'details'}"})

        if self.section.response_model is not None:
            try:
                self.section.response_model.model_validate(self.flatten())
            except ValidationError as e:
                errors = {}
                for err in e.errors():
                    key = ".".join(str(p) for p in err["loc"]) or self.section.id
                    errors[key] = err["msg"]
                self.errors.update(errors)
                raise AnswerValidationError(errors) from e

        return dict(self.answers)

    def encoded_answers(self) -> dict[str, Any]:
        return encode_value(self.answers)

    def snapshot(self) -> dict[str, Any]:
        """JSON-safe view for APIs and logs."""
        question = self.current_question
        return {
            "section_id": self.section.id,
            "question_index": self.question_index,
            "question_id": question.id,
            "state": self.state.value,
            "pending_detail": self.pending_detail,
            "answers": self.encoded_answers(),
            "errors": dict(self.errors),
            "complete": self.is_complete(),
        }
