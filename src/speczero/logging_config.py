"""Logging for analysis runs.

Records go to stderr (stdout belongs to CLI output) as JSON lines or plain
text. Two context variables tag them: ``run_id`` is set by the pipeline for
a whole run and ``agent_id`` by the executor around each step. Worker
threads receive copies of both, so a record logged deep inside a step
still says which run and which agent produced it.

Model provider keys tend to surface in litellm error messages, so every
record passes through a redaction filter before it is written.
"""

import contextvars
import json
import logging
import re
import sys
from datetime import datetime, timezone
from typing import Optional, TextIO


run_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("run_id", default="")
agent_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("agent_id", default="")

# Third-party loggers that are noisy at INFO.
QUIET_LOGGERS = ("LiteLLM", "LiteLLM Router", "httpx", "httpcore", "openai")

TEXT_FORMAT = "%(asctime)s %(levelname)-7s [%(run_tag)s] %(name)s: %(message)s"
TEXT_DATEFMT = "%H:%M:%S"


class _RunContextFilter(logging.Filter):
    """Copy the run/agent context variables onto the record."""

    def filter(self, record: logging.LogRecord) -> bool:
        run_id = run_id_var.get()
        agent_id = agent_id_var.get()
        record.run_tag = "/".join(p for p in (run_id, agent_id) if p) or "-"
        return True


class _JsonFormatter(logging.Formatter):
    """One JSON object per record.

    Fields passed through ``extra=`` land at the top level next to the
    standard ones.
    """

    _STANDARD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "run_tag"}

    def format(self, record: logging.LogRecord) -> str:
        entry: dict = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, var in (("run_id", run_id_var), ("agent_id", agent_id_var)):
            value = var.get()
            if value:
                entry[key] = value

        entry.update(
            (key, value) for key, value in vars(record).items()
            if key not in self._STANDARD_ATTRS and key not in entry
        )

        if record.exc_info and not record.exc_text:
            record.exc_text = self.formatException(record.exc_info)
        if record.exc_text:
            entry["exception"] = record.exc_text

        return json.dumps(entry, default=str)


# (pattern, keep group 1). Provider keys are masked whole; for bearer tokens
# and key=value pairs the label stays readable.
_SECRETS = (
    (re.compile(r"\bsk-ant-[A-Za-z0-9_\-]{20,}"), False),
    (re.compile(r"\bsk-[A-Za-z0-9_\-]{20,}"), False),
    (re.compile(r"\bor-[A-Za-z0-9]{20,}"), False),
    (re.compile(r"(?i)(bearer\s+)[A-Za-z0-9._\-]{20,}"), True),
    (re.compile(r"(?i)((?:api_key|api_base|secret|password|token|authorization)\s*[=:]\s*)[^\s,'\"]{8,}"), True),
)

REDACTED = "***REDACTED***"


def redact(text: str) -> str:
    """Mask anything in *text* that looks like a credential."""
    for pattern, keep_label in _SECRETS:
        if keep_label:
            text = pattern.sub(lambda m: m.group(1) + REDACTED, text)
        else:
            text = pattern.sub(REDACTED, text)
    return text


class _SecretFilter(logging.Filter):
    """Redact the rendered message and any traceback text of a record."""

    def filter(self, record: logging.LogRecord) -> bool:
        if record.args:
            record.msg = record.getMessage()
            record.args = None
        record.msg = redact(str(record.msg))
        if record.exc_info and not record.exc_text:
            record.exc_text = logging.Formatter().formatException(record.exc_info)
        if record.exc_text:
            record.exc_text = redact(record.exc_text)
        return True


def setup_logging(
    log_level: Optional[str] = None,
    log_format: Optional[str] = None,
    stream: Optional[TextIO] = None,
) -> None:
    """Install the single root handler for this process.

    Args:
        log_level: Level name, default ``INFO``.
        log_format: ``"json"`` or ``"text"`` (default).
        stream: Destination, default ``sys.stderr``.
    """
    level = (log_level or "INFO").upper()
    fmt = (log_format or "text").lower()

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.addFilter(_RunContextFilter())
    handler.addFilter(_SecretFilter())
    if fmt == "json":
        handler.setFormatter(_JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT, datefmt=TEXT_DATEFMT))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger("speczero.logging").debug("Logging configured: level=%s format=%s", level, fmt)
