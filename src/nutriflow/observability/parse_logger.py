"""
NutriFlow - Parse Logger.

Writes one markdown file per parsing-gateway call so voice parse quality
can be reviewed after a session: which question context the transcript was
parsed for, which backend and contract were used, what came back, and
whether the gateway accepted it or fell back softly.

Enabled via NUTRIFLOW_LOG_PARSES=1 or the --log-parses CLI flag.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from nutriflow.config import settings

LOG_DIR = Path("parse_logs")

_enabled: bool | None = None
_run_id: str | None = None
_call_counter: int = 0


class ParseOutcome(str, Enum):
    ACCEPTED = "accepted"
    BELOW_THRESHOLD = "below_threshold"
    SOFT_FAILURE = "soft_failure"


@dataclass
class ParseCall:
    """One gateway call, as it will appear in the log."""

    context: str
    backend: str
    response_model: str
    transcript: str
    outcome: ParseOutcome
    raw: Any = None
    error: str | None = None
    confidence: float | None = None
    threshold: float | None = None
    extra: dict[str, Any] = field(default_factory=dict)


def enable_parse_logging(enabled: bool = True) -> None:
    global _enabled
    _enabled = enabled


def is_parse_logging_enabled() -> bool:
    if _enabled is None:
        return settings.nutriflow_log_parses
    return _enabled


def _run_dir() -> Path:
    global _run_id
    if _run_id is None:
        _run_id = datetime.now().strftime("%Y%m%d_%H%M%S")
    run_dir = LOG_DIR / _run_id
    run_dir.mkdir(parents=True, exist_ok=True)
    return run_dir


def _format_raw(raw: Any) -> str:
    if raw is None:
        return "(nothing returned)\n"
    if hasattr(raw, "model_dump"):
        raw = raw.model_dump(mode="json")
    if isinstance(raw, (dict, list)):
        return f"```json\n{json.dumps(raw, indent=2, default=str)}\n```\n"
    return f"```\n{raw}\n```\n"


def render(call: ParseCall) -> str:
    """Markdown body for one call."""
    lines = [
        f"# Parse: {call.context}",
        "",
        f"**Time:** {datetime.now().isoformat()}",
        f"**Backend:** {call.backend}",
        f"**Response Model:** {call.response_model}",
        f"**Outcome:** {call.outcome.value}",
    ]
    if call.confidence is not None:
        threshold = f" (threshold {call.threshold})" if call.threshold is not None else ""
        lines.append(f"**Confidence:** {call.confidence:.2f}{threshold}")
    for key, value in call.extra.items():
        lines.append(f"**{key}:** {value}")

    content = "\n".join(lines)
    content += f"\n\n## Transcript\n\n```\n{call.transcript}\n```\n\n## Service Output\n\n"
    content += _format_raw(call.raw)
    if call.error:
        content += f"\n## Fallback\n\nGateway fell back to local matching: {call.error}\n"
    return content


def log_parse(call: ParseCall) -> Path | None:
    """
    Write `call` to the current run directory.

    Returns:
        Path to the log file, or None if logging is disabled
    """
    if not is_parse_logging_enabled():
        return None

    global _call_counter
    _call_counter += 1

    filepath = _run_dir() / f"{_call_counter:02d}_{call.context}_{call.outcome.value}.md"
    filepath.write_text(render(call), encoding="utf-8")
    return filepath


def get_run_log_dir() -> Path | None:
    """This run's log directory, if logging is enabled."""
    if not is_parse_logging_enabled():
        return None
    return _run_dir()


def reset_run() -> None:
    """Start a new run directory and counter (tests, new CLI session)."""
    global _run_id, _call_counter
    _run_id = None
    _call_counter = 0
