"""Tests for the interactive CLI session loop."""

import asyncio
import time
from unittest.mock import patch

from typer.testing import CliRunner

from nutriflow.main import app, run_session
from onboarding.orchestrator import OnboardingOrchestrator
from onboarding.progress import MemoryStorage, ProgressStore

runner = CliRunner()


class _FlakyStorage(MemoryStorage):
    def __init__(self, failures: int):
        super().__init__()
        self.failures = failures

    def write(self, key: str, payload: dict) -> None:
        if self.failures:
            self.failures -= 1
            raise OSError("disk full")
        super().write(key, payload)


def _orchestrator(storage) -> OnboardingOrchestrator:
    store = ProgressStore(storage, key="cli", version="1.0.0", autosave_interval=0.01)
    orchestrator = OnboardingOrchestrator(store=store)
    orchestrator.start()
    return orchestrator


class TestRunSession:
    def test_autosave_retries_while_waiting_for_input(self):
        storage = _FlakyStorage(failures=1)
        orchestrator = _orchestrator(storage)
        orchestrator.answer("name", {"name": "Ada"})
        assert orchestrator.store.dirty

        dirty_while_typing = []

        def _slow_quit(label):
            time.sleep(0.2)
            dirty_while_typing.append(orchestrator.store.dirty)
            return "/quit"

        with patch("nutriflow.main.console") as console:
            console.input.side_effect = _slow_quit
            asyncio.run(run_session(orchestrator))

        assert dirty_while_typing == [False]
        assert storage.read("cli")["data"]["current_question_index"] == 1
        assert not orchestrator.store.autosave_running

    def test_typed_answers_reach_the_orchestrator(self):
        orchestrator = _orchestrator(MemoryStorage())
        inputs = iter(["Grace", "/quit"])

        with patch("nutriflow.main.console") as console:
            console.input.side_effect = lambda label: next(inputs)
            asyncio.run(run_session(orchestrator))

        assert orchestrator.active.answers["name"] == {"name": "Grace"}
        assert orchestrator.active.current_question.id == "consent"


def test_version_command():
    result = runner.invoke(app, ["version"])
    assert result.exit_code == 0
