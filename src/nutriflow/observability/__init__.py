"""
NutriFlow - Observability Package.

Provides the JSONL session logger used as the analytics event sink, and
the parse logger that records every parsing-gateway call.
"""

from nutriflow.observability.parse_logger import ParseCall, ParseOutcome, log_parse
from nutriflow.observability.session_logger import SessionLogger

__all__ = [
    "SessionLogger",
    "ParseCall",
    "ParseOutcome",
    "log_parse",
]
