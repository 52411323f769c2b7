"""
NutriFlow - Session Logger.

Lightweight observability for onboarding sessions.

Features:
- One JSONL file per session (easy to parse, tail -f friendly)
- Section enter/exit with timing
- Smart truncation of large objects (transcripts, parsed payloads)
- Analytics events written as they are emitted

Usage:
    from nutriflow.observability.session_logger import SessionLogger

    logger = SessionLogger()  # Creates timestamped log file
    logger.section_enter("baseline")
    logger.section_exit("baseline", {"questions_answered": 4})
    logger.close()

Log format (JSONL):
    {"ts": "2026-01-01T17:30:00", "event": "section_enter", "section": "baseline", ...}
"""

import json
import time
from datetime import datetime
from pathlib import Path
from typing import Any


# =============================================================================
# Configuration
# =============================================================================

LOG_DIR = Path("session_logs")

MAX_STRING_LEN = 200
MAX_LIST_ITEMS = 5
MAX_DICT_KEYS = 10

# Fields that can carry long free text
HEAVY_FIELDS = {"transcript", "details", "text", "prompt", "response", "raw"}


# =============================================================================
# Smart Truncation
# =============================================================================


def _truncate_value(value: Any, depth: int = 0) -> Any:
    """
    Smart truncation of values for logging.

    - Strings > MAX_STRING_LEN get truncated with "..."
    - Lists > MAX_LIST_ITEMS show first N + count
    - Dicts > MAX_DICT_KEYS show first N keys + count
    - Sets are logged as sorted lists
    """
    if depth > 3:
        return "<nested>"

    if value is None or isinstance(value, (int, float, bool)):
        return value

    if isinstance(value, str):
        if len(value) > MAX_STRING_LEN:
            return value[:MAX_STRING_LEN] + f"... ({len(value)} chars)"
        return value

    if isinstance(value, (set, frozenset)):
        value = sorted(value, key=str)

    if isinstance(value, (list, tuple)):
        items = [_truncate_value(v, depth + 1) for v in value[:MAX_LIST_ITEMS]]
        if len(value) > MAX_LIST_ITEMS:
            items.append(f"... +{len(value) - MAX_LIST_ITEMS} more")
        return items

    if isinstance(value, dict):
        result = {}
        for k in list(value.keys())[:MAX_DICT_KEYS]:
            v = value[k]
            if k in HEAVY_FIELDS and isinstance(v, str) and len(v) > 50:
                result[k] = v[:50] + f"... ({len(v)} chars)"
            else:
                result[k] = _truncate_value(v, depth + 1)
        if len(value) > MAX_DICT_KEYS:
            result["_truncated"] = f"+{len(value) - MAX_DICT_KEYS} keys"
        return result

    if hasattr(value, "model_dump"):
        return _truncate_value(value.model_dump(), depth)
    if hasattr(value, "__dict__"):
        return _truncate_value(vars(value), depth)

    return str(value)[:MAX_STRING_LEN]


# =============================================================================
# Session Logger
# =============================================================================


class SessionLogger:
    """
    Per-session logger that writes JSONL to a file.

    Disabled instances are no-ops, so callers never need to branch.
    """

    def __init__(
        self,
        session_id: str | None = None,
        enabled: bool = True,
        log_dir: Path | None = None,
    ):
        self.enabled = enabled
        self._section_start_times: dict[str, float] = {}
        self.log_file = None
        self.log_path: Path | None = None

        if not enabled:
            return

        directory = log_dir or LOG_DIR
        directory.mkdir(parents=True, exist_ok=True)

        if session_id is None:
            session_id = datetime.now().strftime("%Y%m%d_%H%M%S")

        self.session_id = session_id
        self.log_path = directory / f"session_{session_id}.jsonl"
        self.log_file = open(self.log_path, "a", encoding="utf-8")

        self._write({"event": "session_start", "session_id": session_id})

    def _write(self, data: dict) -> None:
        if not self.enabled or self.log_file is None:
            return

        entry = {"ts": datetime.now().isoformat(), **data}
        self.log_file.write(json.dumps(entry, default=str) + "\n")
        self.log_file.flush()

    # =========================================================================
    # Section Events
    # =========================================================================

    def section_enter(self, section_id: str, question_index: int = 0) -> None:
        """Log section activation."""
        self._section_start_times[section_id] = time.time()
        self._write({
            "event": "section_enter",
            "section": section_id,
            "question_index": question_index,
        })

    def section_exit(self, section_id: str, summary: dict | None = None) -> None:
        """Log section completion with duration."""
        start = self._section_start_times.pop(section_id, None)
        duration_ms = int((time.time() - start) * 1000) if start else None
        self._write({
            "event": "section_exit",
            "section": section_id,
            "duration_ms": duration_ms,
            "summary": _truncate_value(summary) if summary else None,
        })

    # =========================================================================
    # Analytics / Custom Events
    # =========================================================================

    def analytics_event(self, event: dict) -> None:
        """Write an analytics event as emitted by the collector."""
        self._write({"event": "analytics", **_truncate_value(event)})

    def log(self, event_type: str, **kwargs) -> None:
        """Log custom event."""
        self._write({"event": event_type, **_truncate_value(kwargs)})

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def close(self) -> str | None:
        """Close the log file. Returns log path."""
        if self.log_file:
            self._write({"event": "session_end"})
            self.log_file.close()
            self.log_file = None
            return str(self.log_path)
        return None
