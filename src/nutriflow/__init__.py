"""
NutriFlow - Conversational onboarding for a consumer nutrition app.

The `onboarding` package holds the engine (sections, voice pipeline, progress
persistence). This package holds the shared infrastructure around it:
settings, the LLM client, observability and the CLI.
"""

__version__ = "1.0.0"
