"""
NutriFlow Onboarding.

Multi-section questionnaire driven by typed input, choice grids and voice.
Sections are data (see catalog.py); one SectionMachine runs each section and
the OnboardingOrchestrator sequences them, persists progress and hands the
final responses to a completion sink.
"""

from .orchestrator import FlowStatus, OnboardingOrchestrator, build_orchestrator
from .progress import ProgressRecord, ProgressStore
from .section_machine import SectionMachine, StepResult

__all__ = [
    "FlowStatus",
    "OnboardingOrchestrator",
    "build_orchestrator",
    "ProgressRecord",
    "ProgressStore",
    "SectionMachine",
    "StepResult",
]
