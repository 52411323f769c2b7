"""
Onboarding analytics collector.

One collector per onboarding session, passed to the orchestrator (and from
there to each section machine). Sections have an explicit lifecycle:
start(section_id) when a section is activated, end(section_id) when it
completes. Events are emitted to sinks as they happen; aggregation beyond
the per-section counters is left to whoever consumes the events.
"""

import logging
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Literal

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

EventCategory = Literal["onboarding", "interaction", "ai", "voice"]

ANSWER_EVENTS = {"answer", "toggle", "detail"}
VOICE_EVENTS = {"voice_answer", "voice_start", "voice_error"}
AI_EVENTS = {"ai"}
RETRY_EVENTS = {"voice_retry", "retry"}

# Only the most recent events are kept in memory; sinks see every event
MAX_EVENTS = 1000
MAX_SECTION_INTERACTIONS = 200


class AnalyticsEvent(BaseModel):
    """The emitted event contract."""

    category: EventCategory
    action: str
    label: str | None = None
    value: float | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    timestamp: float = Field(default_factory=time.time)


@dataclass
class SectionAnalytics:
    section_id: str
    start_time: float
    completion_time: float | None = None
    ai_interactions: int = 0
    voice_interactions: int = 0
    questions_answered: int = 0
    retries: int = 0
    validation_errors: int = 0
    interactions: deque[AnalyticsEvent] = field(default_factory=lambda: deque(maxlen=MAX_SECTION_INTERACTIONS))

    @property
    def time_spent(self) -> float:
        end = self.completion_time if self.completion_time is not None else time.time()
        return end - self.start_time

    def summary(self) -> dict:
        return {
            "time_spent": round(self.time_spent, 3),
            "ai_interactions": self.ai_interactions,
            "voice_interactions": self.voice_interactions,
            "questions_answered": self.questions_answered,
            "retries": self.retries,
            "validation_errors": self.validation_errors,
        }


EventSink = Callable[[dict], None]


class AnalyticsCollector:
    """
    Per-session analytics.

    Usage:
        collector = AnalyticsCollector(sinks=[session_logger.analytics_event])
        collector.start("baseline")
        collector.track("baseline", "voice_retry", {"question_id": "measurements"})
        collector.end("baseline")
    """

    def __init__(self, sinks: list[EventSink] | None = None, max_events: int = MAX_EVENTS):
        self.sinks: list[EventSink] = list(sinks or [])
        self.sections: dict[str, SectionAnalytics] = {}
        self.events: deque[AnalyticsEvent] = deque(maxlen=max_events)

    def add_sink(self, sink: EventSink) -> None:
        self.sinks.append(sink)

    def emit(self, event: AnalyticsEvent) -> None:
        self.events.append(event)
        data = event.model_dump()
        for sink in self.sinks:
            try:
                sink(data)
            except Exception as e:
                logger.warning(f"Analytics sink failed: {e}")

    def start(self, section_id: str) -> None:
        """Open tracking for a section. Re-entering an open section keeps its counters."""
        current = self.sections.get(section_id)
        if current is not None and current.completion_time is None:
            return
        self.sections[section_id] = SectionAnalytics(section_id=section_id, start_time=time.time())
        self.emit(AnalyticsEvent(category="onboarding", action="section_start", label=section_id))

    def end(self, section_id: str) -> dict | None:
        """Close a section and emit its summary. Returns the summary."""
        stats = self.sections.get(section_id)
        if stats is None:
            logger.debug(f"end() for untracked section {section_id}")
            return None
        if stats.completion_time is None:
            stats.completion_time = time.time()
        summary = stats.summary()
        self.emit(AnalyticsEvent(
            category="onboarding",
            action="section_complete",
            label=section_id,
            value=summary["time_spent"],
            metadata=summary,
        ))
        return summary

    def track(self, section_id: str, event_type: str, details: dict | None = None) -> None:
        """Record one interaction inside a section."""
        stats = self.sections.get(section_id)
        if stats is None:
            self.start(section_id)
            stats = self.sections[section_id]

        if event_type in AI_EVENTS:
            stats.ai_interactions += 1
            category: EventCategory = "ai"
        elif event_type in VOICE_EVENTS:
            stats.voice_interactions += 1
            category = "voice"
        else:
            category = "interaction"
        if event_type in ANSWER_EVENTS:
            stats.questions_answered += 1
        elif event_type in RETRY_EVENTS:
            stats.retries += 1
        elif event_type == "validation_error":
            stats.validation_errors += 1

        event = AnalyticsEvent(category=category, action=event_type, label=section_id, metadata=dict(details or {}))
        stats.interactions.append(event)
        self.emit(event)

    def summary(self, section_id: str) -> dict | None:
        stats = self.sections.get(section_id)
        return stats.summary() if stats else None

    def complete_flow(self, completed_sections: list[str]) -> None:
        self.emit(AnalyticsEvent(
            category="onboarding",
            action="onboarding_complete",
            value=len(completed_sections),
            metadata={"sections": list(completed_sections)},
        ))
