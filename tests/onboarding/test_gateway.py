"""
Tests for the response parsing gateway.

The parsing service is untrusted: every failure must come back as a soft
failure carrying the original transcript.
"""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from nutriflow.observability import parse_logger
from onboarding.gateway import (
    HttpParsingBackend,
    IntentParse,
    LLMParsingBackend,
    MeasurementParse,
    ParseContext,
    ResponseParsingGateway,
    build_gateway,
)
from onboarding.measurements import Measurement


def _run(coro):
    return asyncio.run(coro)


def _backend(intent=None, measurements=None) -> MagicMock:
    backend = MagicMock()
    backend.parse_intent = AsyncMock(return_value=intent)
    backend.parse_measurements = AsyncMock(return_value=measurements)
    return backend


class TestParse:
    def test_valid_parse(self):
        backend = _backend(intent={
            "intent": "provide_condition",
            "entities": {"conditions": [{"name": "asthma", "details": {"severity": "mild"}}]},
        })
        gateway = ResponseParsingGateway(backend)

        result = _run(gateway.parse("I have mild asthma", ParseContext.HEALTH_CONDITIONS))

        assert result.ok
        assert result.parse.entities.conditions[0].name == "asthma"
        assert result.candidate_texts() == ["asthma", "I have mild asthma"]
        backend.parse_intent.assert_awaited_once_with("I have mild asthma", ParseContext.HEALTH_CONDITIONS)

    def test_empty_transcript_skips_backend(self):
        backend = _backend()
        result = _run(ResponseParsingGateway(backend).parse("   "))

        assert not result.ok
        assert result.error == "empty transcript"
        backend.parse_intent.assert_not_awaited()

    def test_backend_exception_is_soft(self):
        backend = _backend()
        backend.parse_intent = AsyncMock(side_effect=RuntimeError("service down"))

        result = _run(ResponseParsingGateway(backend).parse("Italian"))

        assert not result.ok
        assert result.transcript == "Italian"
        assert "service down" in result.error
        assert result.candidate_texts() == ["Italian"]

    def test_contract_violation_is_soft(self):
        backend = _backend(intent={"intent": "order_pizza"})
        result = _run(ResponseParsingGateway(backend).parse("pizza"))

        assert not result.ok
        assert "contract" in result.error

    def test_json_string_response_is_accepted(self):
        backend = _backend(intent=json.dumps({"intent": "provide_preference", "entities": {"mentions": ["thai"]}}))
        result = _run(ResponseParsingGateway(backend).parse("thai food"))

        assert result.ok
        assert result.candidate_texts() == ["thai", "thai food"]

    def test_non_json_string_is_soft(self):
        result = _run(ResponseParsingGateway(_backend(intent="<html>oops</html>")).parse("thai"))
        assert not result.ok


class TestParseMeasurements:
    def test_reliable_parse(self):
        backend = _backend(measurements={
            "height": {"value": 70, "unit": "in"},
            "weight": {"value": 160, "unit": "lbs"},
            "confidence": 0.93,
        })
        result = _run(ResponseParsingGateway(backend).parse_measurements("five ten, one sixty"))

        assert result.reliable
        assert result.height == Measurement(70, "in")
        assert result.weight == Measurement(160, "lbs")

    def test_below_threshold_is_not_reliable(self):
        backend = _backend(measurements={"height": {"value": 70, "unit": "in"}, "confidence": 0.5})
        result = _run(ResponseParsingGateway(backend, confidence_threshold=0.8).parse_measurements("uh five"))

        assert result.ok
        assert not result.reliable
        assert result.confidence == 0.5

    def test_confidence_out_of_range_is_rejected(self):
        backend = _backend(measurements={"confidence": 1.7})
        result = _run(ResponseParsingGateway(backend).parse_measurements("tall"))

        assert not result.ok
        assert result.confidence == 0.0


class TestBackends:
    def test_http_backend_posts_text_and_context(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen.update(json.loads(request.content))
            return httpx.Response(200, json={"intent": "unknown"})

        backend = HttpParsingBackend("https://parse.example.test", transport=httpx.MockTransport(handler))
        gateway = ResponseParsingGateway(backend)

        async def _test():
            try:
                return await gateway.parse("I cook daily", ParseContext.COOKING)
            finally:
                await backend.aclose()

        result = _run(_test())
        assert result.ok
        assert seen == {"text": "I cook daily", "context": "cooking"}

    def test_http_backend_error_status_is_soft(self):
        backend = HttpParsingBackend(
            "https://parse.example.test",
            transport=httpx.MockTransport(lambda request: httpx.Response(500)),
        )
        result = _run(ResponseParsingGateway(backend).parse_measurements("six foot"))
        assert not result.ok

    def test_llm_backend_uses_call_llm(self):
        async def _test():
            with patch("onboarding.gateway.call_llm", new_callable=AsyncMock) as mock_llm:
                mock_llm.return_value = MeasurementParse(height={"value": 180, "unit": "cm"}, confidence=0.9)
                result = await ResponseParsingGateway(LLMParsingBackend()).parse_measurements("180 centimeters")
                return result, mock_llm

        result, mock_llm = _run(_test())
        assert result.height == Measurement(180, "cm")
        assert mock_llm.call_args.kwargs["response_model"] is MeasurementParse
        assert mock_llm.call_args.kwargs["context"] == "parse_measurements"

    def test_llm_backend_intent(self):
        async def _test():
            with patch("onboarding.gateway.call_llm", new_callable=AsyncMock) as mock_llm:
                mock_llm.return_value = IntentParse(entities={"mentions": ["korean"]})
                return await LLMParsingBackend().parse_intent("korean bbq", ParseContext.CUISINE)

        raw = _run(_test())
        assert raw["entities"]["mentions"] == ["korean"]


class TestBuildGateway:
    def test_no_key_means_no_gateway(self):
        assert build_gateway() is None

    def test_llm_backend_with_key(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        gateway = build_gateway()
        assert isinstance(gateway.backend, LLMParsingBackend)
        assert gateway.confidence_threshold == 0.8

    def test_http_backend_without_url(self, monkeypatch):
        monkeypatch.setenv("PARSING_BACKEND", "http")
        assert build_gateway() is None

    def test_http_backend_with_url(self, monkeypatch):
        monkeypatch.setenv("PARSING_BACKEND", "http")
        monkeypatch.setenv("PARSING_SERVICE_URL", "https://parse.example.test")
        monkeypatch.setenv("CONFIDENCE_THRESHOLD", "0.6")
        gateway = build_gateway()
        assert isinstance(gateway.backend, HttpParsingBackend)
        assert gateway.confidence_threshold == 0.6


class TestParseLog:
    @pytest.fixture(autouse=True)
    def _log_dir(self, monkeypatch, tmp_path):
        monkeypatch.setattr(parse_logger, "LOG_DIR", tmp_path)
        monkeypatch.setattr(parse_logger, "_enabled", True)
        parse_logger.reset_run()
        yield
        parse_logger.reset_run()

    def _logged(self) -> list[str]:
        run_dir = parse_logger.get_run_log_dir()
        return sorted(path.name for path in run_dir.iterdir())

    def test_soft_failure_is_logged_with_context(self):
        backend = HttpParsingBackend(
            "https://parse.example.test",
            transport=httpx.MockTransport(lambda request: httpx.Response(503)),
        )
        _run(ResponseParsingGateway(backend).parse("thai please", ParseContext.CUISINE))

        assert self._logged() == ["01_cuisine_soft_failure.md"]
        text = (parse_logger.get_run_log_dir() / "01_cuisine_soft_failure.md").read_text()
        assert "**Backend:** http" in text
        assert "**Response Model:** IntentParse" in text
        assert "HTTPStatusError" in text

    def test_measurement_outcomes(self):
        reliable = _backend(measurements={"height": {"value": 70, "unit": "in"}, "confidence": 0.95})
        shaky = _backend(measurements={"height": {"value": 70, "unit": "in"}, "confidence": 0.4})
        _run(ResponseParsingGateway(reliable).parse_measurements("five ten"))
        _run(ResponseParsingGateway(shaky).parse_measurements("uh five"))

        assert self._logged() == ["01_measurements_accepted.md", "02_measurements_below_threshold.md"]

    def test_empty_transcript_is_not_logged(self):
        _run(ResponseParsingGateway(_backend()).parse(""))
        assert self._logged() == []


class TestClose:
    def test_closes_http_backend(self):
        backend = HttpParsingBackend("https://parse.example.test", transport=httpx.MockTransport(lambda r: httpx.Response(200)))
        _run(ResponseParsingGateway(backend).aclose())
        assert backend._client.is_closed

    def test_backend_without_connections(self):
        _run(ResponseParsingGateway(LLMParsingBackend()).aclose())
