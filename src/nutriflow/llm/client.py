"""
NutriFlow - LLM Client.

Wraps OpenAI with Instructor for structured outputs.
All LLM calls made by the parsing gateway go through here.
"""

import logging
from typing import TypeVar

import instructor
from openai import AsyncOpenAI
from pydantic import BaseModel

from nutriflow.config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

# Singleton client instance
_client: instructor.AsyncInstructor | None = None


class LLMNotConfiguredError(RuntimeError):
    """Raised when an LLM call is attempted without an API key."""


def get_client() -> instructor.AsyncInstructor:
    """
    Get the Instructor-wrapped async OpenAI client.

    Uses singleton pattern to reuse the connection pool.
    """
    global _client

    if _client is None:
        if not settings.openai_api_key:
            raise LLMNotConfiguredError("OPENAI_API_KEY is not set")
        _client = instructor.from_openai(AsyncOpenAI(api_key=settings.openai_api_key))

    return _client


def reset_client() -> None:
    """Drop the cached client (tests, key rotation)."""
    global _client
    _client = None


async def call_llm(
    *,
    response_model: type[T],
    system_prompt: str,
    user_prompt: str,
    context: str = "generic",
    max_retries: int = 2,
    temperature: float | None = None,
) -> T:
    """
    Make a structured LLM call with schema validation.

    Args:
        response_model: Pydantic model class for the response
        system_prompt: System message setting context
        user_prompt: User message with the actual request
        context: Tag used in log lines
        max_retries: Number of retries if response doesn't match schema
        temperature: Override the configured temperature

    Returns:
        Instance of response_model with validated data

    Example:
        result = await call_llm(
            response_model=IntentParse,
            system_prompt="You are a medical scribe...",
            user_prompt='Parse this response for conditions: "I have asthma"',
            context="conditions",
        )
    """
    client = get_client()
    model = settings.parsing_model

    try:
        response = await client.chat.completions.create(
            model=model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            response_model=response_model,
            max_retries=max_retries,
            temperature=settings.parsing_temperature if temperature is None else temperature,
        )
    except Exception as e:
        logger.warning(f"LLM call [{context}] {model} -> {response_model.__name__} failed: {e}")
        raise

    logger.debug(f"LLM call [{context}] {model} -> {response_model.__name__}")
    return response
