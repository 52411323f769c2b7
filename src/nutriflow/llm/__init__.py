"""
NutriFlow - LLM Client.

Provides structured LLM calls via Instructor.
"""

from nutriflow.llm.client import LLMNotConfiguredError, call_llm, get_client

__all__ = [
    "get_client",
    "call_llm",
    "LLMNotConfiguredError",
]
