"""
Pytest configuration and fixtures for NutriFlow tests.
"""

import os
from unittest.mock import AsyncMock, MagicMock

import pytest

# Set test environment before importing nutriflow/onboarding modules
os.environ["NUTRIFLOW_ENV"] = "development"
os.environ["PROGRESS_BACKEND"] = "memory"
os.environ["PARSING_BACKEND"] = "llm"
os.environ.pop("OPENAI_API_KEY", None)
os.environ.pop("TRANSCRIPTION_API_URL", None)


@pytest.fixture(autouse=True)
def fresh_settings():
    """Reload settings from the environment for every test."""
    from nutriflow.config import get_settings, settings

    get_settings.cache_clear()
    settings._instance = None
    yield
    get_settings.cache_clear()
    settings._instance = None


@pytest.fixture
def mock_supabase():
    """Mock Supabase client for unit tests."""
    mock_client = MagicMock()

    # Mock table operations
    mock_table = MagicMock()
    mock_table.select.return_value = mock_table
    mock_table.upsert.return_value = mock_table
    mock_table.delete.return_value = mock_table
    mock_table.eq.return_value = mock_table
    mock_table.limit.return_value = mock_table
    mock_table.execute.return_value = MagicMock(data=[])

    mock_client.table.return_value = mock_table

    return mock_client


@pytest.fixture
def mock_gateway():
    """Gateway whose parses fail softly (local matching only) unless a test sets them."""
    from onboarding.gateway import MeasurementParseResult, ParseResult

    gateway = MagicMock()
    gateway.parse = AsyncMock(side_effect=lambda transcript, context=None: ParseResult(transcript=transcript, error="offline"))
    gateway.parse_measurements = AsyncMock(
        side_effect=lambda transcript: MeasurementParseResult(transcript=transcript, error="offline")
    )
    gateway.aclose = AsyncMock()
    return gateway


@pytest.fixture
def prompts():
    """Collects everything a machine/orchestrator says to the user."""
    return []
