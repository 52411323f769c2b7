"""Tests for the session logger and parse logger."""

import json

import pytest

from nutriflow.observability import SessionLogger, parse_logger
from nutriflow.observability.parse_logger import ParseCall, ParseOutcome
from onboarding.analytics import AnalyticsCollector


def _entries(path) -> list[dict]:
    return [json.loads(line) for line in path.read_text().splitlines()]


class TestSessionLogger:
    def test_section_events(self, tmp_path):
        session = SessionLogger(session_id="abc", log_dir=tmp_path)
        session.section_enter("baseline", 2)
        session.section_exit("baseline", {"questions_answered": 3})
        path = session.close()

        entries = _entries(tmp_path / "session_abc.jsonl")
        assert path.endswith("session_abc.jsonl")
        assert [e["event"] for e in entries] == ["session_start", "section_enter", "section_exit", "session_end"]
        assert entries[1]["question_index"] == 2
        assert entries[2]["summary"] == {"questions_answered": 3}
        assert entries[2]["duration_ms"] is not None

    def test_analytics_sink(self, tmp_path):
        session = SessionLogger(session_id="abc", log_dir=tmp_path)
        collector = AnalyticsCollector(sinks=[session.analytics_event])
        collector.track("cuisine", "voice_retry", {"transcript": "x" * 500})
        session.close()

        retry = _entries(tmp_path / "session_abc.jsonl")[-2]
        assert retry["event"] == "analytics"
        assert retry["action"] == "voice_retry"
        assert len(retry["metadata"]["transcript"]) < 100

    def test_disabled_is_noop(self, tmp_path):
        session = SessionLogger(enabled=False, log_dir=tmp_path)
        session.section_enter("legal")
        assert session.close() is None
        assert list(tmp_path.iterdir()) == []


@pytest.fixture
def parse_log_dir(monkeypatch, tmp_path):
    monkeypatch.setattr(parse_logger, "LOG_DIR", tmp_path)
    monkeypatch.setattr(parse_logger, "_enabled", True)
    parse_logger.reset_run()
    yield tmp_path
    parse_logger.reset_run()


def _call(**overrides) -> ParseCall:
    fields = {
        "context": "measurements",
        "backend": "http",
        "response_model": "MeasurementParse",
        "transcript": "five ten",
        "outcome": ParseOutcome.ACCEPTED,
    }
    fields.update(overrides)
    return ParseCall(**fields)


class TestParseLogger:
    def test_disabled_by_default(self, monkeypatch, tmp_path):
        monkeypatch.setattr(parse_logger, "LOG_DIR", tmp_path)
        monkeypatch.setattr(parse_logger, "_enabled", None)
        assert parse_logger.log_parse(_call()) is None
        assert list(tmp_path.iterdir()) == []

    def test_enabled_from_settings(self, monkeypatch):
        monkeypatch.setattr(parse_logger, "_enabled", None)
        monkeypatch.setenv("NUTRIFLOW_LOG_PARSES", "1")
        assert parse_logger.is_parse_logging_enabled()

    def test_accepted_call(self, parse_log_dir):
        path = parse_logger.log_parse(_call(raw={"confidence": 0.9}, confidence=0.9, threshold=0.8))

        assert path.name == "01_measurements_accepted.md"
        text = path.read_text()
        assert "**Backend:** http" in text
        assert "**Response Model:** MeasurementParse" in text
        assert "**Confidence:** 0.90 (threshold 0.8)" in text
        assert '"confidence": 0.9' in text
        assert "Fallback" not in text

    def test_soft_failure_records_fallback(self, parse_log_dir):
        parse_logger.log_parse(_call())
        path = parse_logger.log_parse(_call(
            context="cuisine", response_model="IntentParse", outcome=ParseOutcome.SOFT_FAILURE, error="service down"
        ))

        assert path.name == "02_cuisine_soft_failure.md"
        text = path.read_text()
        assert "**Outcome:** soft_failure" in text
        assert "(nothing returned)" in text
        assert "local matching: service down" in text
