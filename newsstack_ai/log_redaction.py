"""Secret redaction for log output.

Model-provider keys travel in ``Authorization: Bearer`` headers and the
FMP key travels in ``apikey=`` query strings; httpx exceptions and debug
logs can echo either.  ``install_log_redaction()`` attaches a filter to
the root handlers that masks them before anything is written.
"""
from __future__ import annotations

import logging
import re

_SENSITIVE_PATTERNS: list[tuple[str, re.Pattern[str]]] = [
    # apikey=... / token=... in URLs and key=value pairs
    (
        "query_key",
        re.compile(r"(?i)\b(api[_-]?key|apikey|token|secret|password)(\s*[:=]\s*)[\"']?[^\s&'\",]+[\"']?"),
    ),
    # Authorization headers
    ("bearer", re.compile(r"(?i)\b(bearer)(\s+)[A-Za-z0-9._~+/=-]+")),
    # OpenAI-style and Perplexity-style secret keys
    ("provider_key", re.compile(r"\b(?:sk|pplx)-[A-Za-z0-9_-]{16,}\b")),
    # FMP keys are 32 hex chars
    ("fmp_key", re.compile(r"\b[a-fA-F0-9]{32}\b")),
]

_REPLACEMENT = "***"


def redact_secrets(msg: str, replacement: str = _REPLACEMENT) -> str:
    """Return *msg* with every recognised secret replaced."""
    if not msg:
        return msg
    result = msg
    for name, pattern in _SENSITIVE_PATTERNS:
        if name in ("query_key", "bearer"):
            result = pattern.sub(lambda m: f"{m.group(1)}{m.group(2)}{replacement}", result)
        else:
            result = pattern.sub(replacement, result)
    return result


class LogRedactionFilter(logging.Filter):
    """Render the record's message, then redact it in place.

    Attach to a handler (not a logger) so records propagated from child
    loggers are covered too.
    """

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            message = str(record.msg)
        record.msg = redact_secrets(message)
        record.args = None
        if record.exc_info and not record.exc_text:
            record.exc_text = logging.Formatter().formatException(record.exc_info)
        if record.exc_text:
            record.exc_text = redact_secrets(record.exc_text)
        return True


def install_log_redaction(logger: logging.Logger | None = None) -> None:
    """Attach a ``LogRedactionFilter`` to every handler of *logger* (root by default)."""
    target = logger or logging.getLogger()
    filt = LogRedactionFilter()
    for handler in target.handlers:
        if not any(isinstance(f, LogRedactionFilter) for f in handler.filters):
            handler.addFilter(filt)
