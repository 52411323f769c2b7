"""
Tests for the onboarding orchestrator.

Uses small hand-built sections so each flow is a few calls long; the real
catalog is only used where its shape matters (non-skippable legal section).
"""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from pydantic import BaseModel, field_validator

from onboarding.errors import AnswerValidationError, CaptureError, PersistenceError
from onboarding.orchestrator import (
    VOICE_RETRY_PROMPT,
    VOICE_UNAVAILABLE_PROMPT,
    FlowStatus,
    JsonFileCompletionSink,
    OnboardingOrchestrator,
    SupabaseCompletionSink,
    build_completion_sink,
    build_orchestrator,
)
from onboarding.pipeline import VoiceOutcome
from onboarding.progress import MemoryStorage, ProgressStore
from onboarding.questions import MultiSelectQuestion, Option, Section, SingleSelectQuestion
from onboarding.section_machine import RETRY_PROMPT, StepResult
from onboarding.voice import VoiceController


def _run(coro):
    return asyncio.run(coro)


ONE = Section(
    id="one",
    title="One",
    questions=(
        SingleSelectQuestion(id="color", text="Color?", options=(Option("red", "Red"), Option("blue", "Blue"))),
        MultiSelectQuestion(
            id="fruits",
            text="Fruits?",
            options=(Option("apple", "Apple"), Option("pear", "Pear")),
        ),
    ),
)

TWO = Section(
    id="two",
    title="Two",
    questions=(
        SingleSelectQuestion(id="size", text="Size?", options=(Option("small", "Small"), Option("large", "Large"))),
    ),
)

LOCKED = Section(
    id="locked",
    title="Locked",
    skippable=False,
    questions=(SingleSelectQuestion(id="ok", text="OK?", options=(Option("yes", "Yes"),)),),
)


class SizeContract(BaseModel):
    size: str

    @field_validator("size")
    @classmethod
    def only_large(cls, v: str) -> str:
        if v != "large":
            raise ValueError("only large")
        return v


def _orchestrator(sections=(ONE, TWO), **kwargs) -> OnboardingOrchestrator:
    kwargs.setdefault("store", ProgressStore(MemoryStorage(), key="k", version="1.0.0"))
    orchestrator = OnboardingOrchestrator(sections=sections, **kwargs)
    orchestrator.start()
    return orchestrator


def _finish_one(orchestrator: OnboardingOrchestrator) -> StepResult:
    orchestrator.answer("color", "red")
    orchestrator.toggle("fruits", "apple")
    return orchestrator.next()


def _voice(transcript: str = "blue", microphone_error: Exception | None = None) -> VoiceController:
    stream = MagicMock()
    stream.content_type = "audio/webm"
    stream.finish = AsyncMock(return_value=b"audio")
    microphone = MagicMock()
    microphone.acquire = AsyncMock(return_value=stream, side_effect=microphone_error)
    recognizer = MagicMock()
    recognizer.transcribe = AsyncMock(return_value=transcript)
    return VoiceController(microphone=microphone, recognizer=recognizer)


class TestFlow:
    def test_sections_advance_in_order(self):
        orchestrator = _orchestrator()
        assert orchestrator.current_section.id == "one"

        assert _finish_one(orchestrator) == StepResult.ADVANCED
        assert orchestrator.current_section.id == "two"
        assert orchestrator.record.completed_sections == ["one"]

    def test_next_blocked_on_unanswered(self):
        orchestrator = _orchestrator()
        assert orchestrator.next() == StepResult.BLOCKED
        assert "color" in orchestrator.active.errors

    def test_completion_writes_once(self):
        sink = MagicMock()
        on_complete = MagicMock()
        orchestrator = _orchestrator(completion_sink=sink, on_complete=on_complete)

        _finish_one(orchestrator)
        orchestrator.answer("size", "small")
        assert orchestrator.next() == StepResult.COMPLETED
        assert orchestrator.next() == StepResult.COMPLETED

        expected = {"one": {"color": "red", "fruits": ["apple"]}, "two": {"size": "small"}}
        sink.write.assert_called_once_with(expected)
        on_complete.assert_called_once_with(expected)
        assert orchestrator.status == FlowStatus.COMPLETE
        assert orchestrator.record.flow_complete is True
        assert orchestrator.record.completed_sections == ["one", "two"]

    def test_completion_sink_failure_still_completes(self):
        sink = MagicMock()
        sink.write.side_effect = PersistenceError("read-only")
        on_complete = MagicMock()
        orchestrator = _orchestrator(completion_sink=sink, on_complete=on_complete)

        _finish_one(orchestrator)
        orchestrator.answer("size", "large")

        assert orchestrator.next() == StepResult.COMPLETED
        assert orchestrator.status == FlowStatus.COMPLETE
        on_complete.assert_called_once()

    def test_answers_rejected_after_completion(self):
        orchestrator = _orchestrator(sections=(TWO,))
        orchestrator.answer("size", "small")
        orchestrator.next()

        with pytest.raises(AnswerValidationError):
            orchestrator.answer("size", "large")

    def test_interaction_before_start(self):
        orchestrator = OnboardingOrchestrator(sections=(ONE,))
        with pytest.raises(RuntimeError):
            orchestrator.answer("color", "red")

    def test_section_contract_blocks_advance(self):
        strict = Section(id="two", title="Two", questions=TWO.questions, response_model=SizeContract)
        orchestrator = _orchestrator(sections=(strict,))
        orchestrator.answer("size", "small")

        assert orchestrator.next() == StepResult.BLOCKED
        assert orchestrator.status == FlowStatus.IN_PROGRESS
        assert orchestrator.record.completed_sections == []

    def test_final_responses_json_safe(self):
        orchestrator = _orchestrator()
        _finish_one(orchestrator)
        json.dumps(orchestrator.final_responses())


class TestPrevious:
    def test_previous_within_section(self):
        orchestrator = _orchestrator()
        orchestrator.answer("color", "red")
        assert orchestrator.active.question_index == 1

        assert orchestrator.previous() is True
        assert orchestrator.active.question_index == 0

    def test_previous_into_prior_section_last_question(self):
        orchestrator = _orchestrator()
        _finish_one(orchestrator)

        assert orchestrator.previous() is True
        assert orchestrator.current_section.id == "one"
        assert orchestrator.active.question_index == 1
        assert orchestrator.active.answers["fruits"] == {"apple"}

    def test_recompleting_section_marks_once(self):
        orchestrator = _orchestrator()
        _finish_one(orchestrator)
        orchestrator.previous()

        assert orchestrator.next() == StepResult.ADVANCED
        assert orchestrator.record.completed_sections == ["one"]

    def test_cannot_leave_non_skippable_section_backwards(self):
        orchestrator = _orchestrator(sections=(TWO, LOCKED))
        orchestrator.answer("size", "small")
        orchestrator.next()
        assert orchestrator.current_section.id == "locked"

        assert orchestrator.previous() is False
        assert orchestrator.current_section.id == "locked"

    def test_default_flow_starts_on_legal(self):
        orchestrator = OnboardingOrchestrator()
        orchestrator.start()
        assert orchestrator.current_section.id == "legal"
        assert orchestrator.previous() is False


class TestKeyboard:
    def test_shortcuts(self):
        orchestrator = _orchestrator()
        orchestrator.answer("color", "red")

        assert orchestrator.handle_key("Backspace") is True
        assert orchestrator.active.question_index == 0
        assert orchestrator.handle_key("Enter") == StepResult.ADVANCED
        assert orchestrator.handle_key("Escape") is False
        assert orchestrator.handle_key("Tab") is None

    def test_suppressed_in_text_input(self):
        orchestrator = _orchestrator()
        orchestrator.answer("color", "red")

        assert orchestrator.handle_key("Backspace", in_text_input=True) is None
        assert orchestrator.handle_key("Enter", in_text_input=True) is None
        assert orchestrator.active.question_index == 1


class TestPersistence:
    def test_every_mutation_is_saved(self):
        storage = MemoryStorage()
        orchestrator = _orchestrator(store=ProgressStore(storage, key="k", version="1.0.0"))
        orchestrator.toggle("fruits", "pear")

        saved = storage.data["k"]["data"]
        assert saved["responses"]["one"]["fruits"] == ["pear"]
        assert orchestrator.store.dirty is False

    def test_resume(self):
        storage = MemoryStorage()
        first = _orchestrator(store=ProgressStore(storage, key="k", version="1.0.0"))
        _finish_one(first)
        first.answer("size", "large")

        second = _orchestrator(store=ProgressStore(storage, key="k", version="1.0.0"))

        assert second.current_section.id == "two"
        assert second.active.answers["size"] == "large"
        assert second.responses["one"]["fruits"] == {"apple"}
        assert second.record.completed_sections == ["one"]

    def test_resume_clamps_out_of_range_index(self):
        storage = MemoryStorage()
        storage.data["k"] = {"version": "1.0.0", "data": {"current_section_index": 9, "current_question_index": 9}}

        orchestrator = _orchestrator(store=ProgressStore(storage, key="k", version="1.0.0"))

        assert orchestrator.section_index == 1
        assert orchestrator.active.question_index == 0

    def test_resume_completed_flow_does_not_rewrite(self):
        storage = MemoryStorage()
        first = _orchestrator(sections=(TWO,), store=ProgressStore(storage, key="k", version="1.0.0"))
        first.answer("size", "large")
        first.next()

        sink = MagicMock()
        second = _orchestrator(
            sections=(TWO,), store=ProgressStore(storage, key="k", version="1.0.0"), completion_sink=sink
        )

        assert second.status == FlowStatus.COMPLETE
        assert second.next() == StepResult.COMPLETED
        sink.write.assert_not_called()
        assert second.final_responses() == {"two": {"size": "large"}}


class TestVoice:
    def test_transcript_answers_current_question(self):
        orchestrator = _orchestrator(voice=_voice("blue please"))

        async def _test():
            assert await orchestrator.start_voice() is True
            return await orchestrator.stop_voice()

        result = _run(_test())

        assert result.outcome == VoiceOutcome.COMMITTED
        assert orchestrator.active.answers["color"] == "blue"
        assert orchestrator.analytics.summary("one")["voice_interactions"] >= 2

    def test_late_transcript_after_navigation_is_dropped(self):
        orchestrator = _orchestrator(voice=_voice("large"))
        orchestrator.answer("color", "red")
        orchestrator.toggle("fruits", "apple")

        async def _test():
            await orchestrator.start_voice()
            orchestrator.next()
            return await orchestrator.stop_voice()

        result = _run(_test())

        assert result.outcome == VoiceOutcome.CANCELLED
        assert orchestrator.current_section.id == "two"
        assert "size" not in orchestrator.active.answers

    def test_stale_token_is_dropped(self):
        orchestrator = _orchestrator()
        token = orchestrator.active.token
        _finish_one(orchestrator)

        result = _run(orchestrator.handle_transcript("blue", token))

        assert result.outcome == VoiceOutcome.CANCELLED
        assert orchestrator.responses["one"]["color"] == "red"

    def test_no_match_prompts_retry(self):
        orchestrator = _orchestrator()
        result = _run(orchestrator.handle_transcript("purple"))

        assert result.outcome == VoiceOutcome.NO_MATCH
        assert orchestrator.messages[-1] == RETRY_PROMPT

    def test_no_voice_controller_falls_back(self):
        orchestrator = _orchestrator()
        assert _run(orchestrator.start_voice()) is False
        assert orchestrator.messages[-1] == VOICE_UNAVAILABLE_PROMPT

    def test_capture_error_falls_back(self):
        voice = _voice(microphone_error=CaptureError("permission_denied", "denied"))
        orchestrator = _orchestrator(voice=voice)

        assert _run(orchestrator.start_voice()) is False
        assert orchestrator.messages[-1] == VOICE_UNAVAILABLE_PROMPT
        assert orchestrator.status == FlowStatus.IN_PROGRESS

    def test_transcription_error_prompts_retry(self):
        voice = _voice()
        voice.recognizer.transcribe = AsyncMock(side_effect=RuntimeError("stt down"))
        orchestrator = _orchestrator(voice=voice)

        async def _test():
            await orchestrator.start_voice()
            return await orchestrator.stop_voice()

        assert _run(_test()) is None
        assert orchestrator.messages[-1] == VOICE_RETRY_PROMPT
        assert "color" not in orchestrator.active.answers

    def test_transcript_after_completion(self):
        orchestrator = _orchestrator(sections=(TWO,))
        orchestrator.answer("size", "small")
        orchestrator.next()

        result = _run(orchestrator.handle_transcript("large"))
        assert result.outcome == VoiceOutcome.CANCELLED


class TestObservability:
    def test_session_logger_hooks(self):
        session_logger = MagicMock()
        orchestrator = _orchestrator(session_logger=session_logger)
        _finish_one(orchestrator)

        session_logger.section_enter.assert_any_call("one", 0)
        session_logger.section_enter.assert_any_call("two", 0)
        assert session_logger.section_exit.call_args.args[0] == "one"
        assert session_logger.analytics_event.called

    def test_snapshot(self):
        orchestrator = _orchestrator()
        snap = orchestrator.snapshot()

        assert snap["status"] == "in_progress"
        assert snap["section_count"] == 2
        assert snap["section"]["question_id"] == "color"
        assert "voice" not in snap


class TestCompletionSinks:
    def test_json_file_sink(self, tmp_path):
        sink = JsonFileCompletionSink(tmp_path / "out" / "responses.json")
        sink.write({"two": {"size": "large"}})
        assert json.loads(sink.path.read_text()) == {"two": {"size": "large"}}

    def test_supabase_sink_upserts_per_user(self, mock_supabase):
        SupabaseCompletionSink("user-1", client=mock_supabase).write({"two": {"size": "large"}})

        mock_supabase.table.assert_called_with("onboarding_data")
        upsert = mock_supabase.table.return_value.upsert
        row = upsert.call_args.args[0]
        assert row["user_id"] == "user-1"
        assert row["payload"] == {"two": {"size": "large"}}
        assert upsert.call_args.kwargs["on_conflict"] == "user_id"

    def test_supabase_sink_failure(self, mock_supabase):
        mock_supabase.table.return_value.execute.side_effect = RuntimeError("boom")
        with pytest.raises(PersistenceError):
            SupabaseCompletionSink("user-1", client=mock_supabase).write({})

    def test_build_completion_sink_memory(self):
        assert build_completion_sink("user-1") is None

    def test_build_completion_sink_file(self, monkeypatch, tmp_path):
        monkeypatch.setenv("PROGRESS_BACKEND", "file")
        monkeypatch.setenv("RESPONSES_PATH", str(tmp_path / "responses.json"))

        sink = build_completion_sink("user-1")

        assert sink.path == tmp_path / "responses.user-1.json"

    def test_build_orchestrator(self):
        orchestrator = build_orchestrator("user-1")
        assert orchestrator.gateway is None
        assert orchestrator.completion_sink is None
        assert orchestrator.store.key == "onboarding_progress:user-1"
