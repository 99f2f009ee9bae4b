"""
chatrelay - Structured JSON Logging

Every record emitted while a request is in flight carries the request's
correlation fields (request_id, provider, model) and, inside an attempt,
the account and attempt number. Keyword arguments passed to a log call
become structured fields.

Environment:
    LOG_LEVEL: DEBUG | INFO | WARNING | ERROR (default INFO)
    LOG_FORMAT: json | text (default json)

Usage:
    from chatrelay.observability.logging import get_logger, request_log_context

    logger = get_logger(__name__)

    with request_log_context(request_id="req_1", provider="openai"):
        logger.info("Attempt started", account_id="acc_a")

Output:
    {"timestamp": "2024-01-15T10:30:00+00:00", "level": "INFO", "logger": "chatrelay.routing",
     "message": "Attempt started", "request_id": "req_1", "provider": "openai",
     "account_id": "acc_a"}
"""

import json
import logging
import logging.config
import os
import re
import time
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, MutableMapping, Optional, Tuple, Union

LIBRARY_LOGGER = "chatrelay"

_current_context: ContextVar[Optional["LogContext"]] = ContextVar("chatrelay_log_context", default=None)

# Attributes every LogRecord already has; extras may not reuse them
_RECORD_ATTRIBUTES = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}

_PASSTHROUGH_KWARGS = ("exc_info", "stack_info", "stacklevel", "extra")


@dataclass(frozen=True)
class LogContext:
    """
    Correlation fields of the request (and attempt) being served.

    Held in a contextvar, so concurrent requests on one loop never see each
    other's fields.
    """
    request_id: str = ""
    provider: str = ""
    model: str = ""
    account_id: str = ""
    attempt: int = 0
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def get_current(cls) -> Optional["LogContext"]:
        return _current_context.get()

    @classmethod
    def clear(cls):
        _current_context.set(None)

    def to_dict(self) -> Dict[str, Any]:
        """Non-empty fields, then extras."""
        result = {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if f.name != "extra" and getattr(self, f.name)
        }
        result.update(self.extra)
        return result


@contextmanager
def request_log_context(**values) -> Iterator[LogContext]:
    """
    Bind correlation fields for the duration of a block.

    Values layer over the enclosing context: an attempt adds ``account_id``
    and ``attempt`` while keeping the request's fields, and everything is
    restored on exit. Unknown names go into ``extra``.
    """
    parent = LogContext.get_current() or LogContext()
    known_names = {f.name for f in fields(LogContext)} - {"extra"}

    known = {}
    extra = dict(parent.extra)
    for name, value in values.items():
        if name in known_names:
            known[name] = value
        else:
            extra[name] = value

    token = _current_context.set(replace(parent, extra=extra, **known))
    try:
        yield _current_context.get()
    finally:
        _current_context.reset(token)


class JSONFormatter(logging.Formatter):
    """
    One JSON object per record.

    Fixed fields come first (timestamp, level, logger, message), then the
    active LogContext, then the record's extras. Values of fields whose
    names look like secrets are replaced with "[REDACTED]".
    """

    SENSITIVE_PATTERN = re.compile(
        r"password|secret|token|api_?key|authorization|credential|private_key",
        re.IGNORECASE,
    )

    # Token counters (max_tokens, cached_tokens, ...) match the pattern but are not secrets
    SAFE_PATTERN = re.compile(r"(^|_)tokens$", re.IGNORECASE)

    def __init__(self, include_location: bool = False, redact_sensitive: bool = True):
        super().__init__()
        self.include_location = include_location
        self.redact_sensitive = redact_sensitive

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if self.include_location:
            payload["location"] = f"{record.pathname}:{record.lineno}"
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        ctx = LogContext.get_current()
        if ctx is not None:
            payload.update(ctx.to_dict())

        for key, value in vars(record).items():
            if key in _RECORD_ATTRIBUTES:
                continue
            payload[key] = self._redact(key, value)

        return json.dumps(payload, default=str, ensure_ascii=False)

    def _redact(self, key: str, value: Any) -> Any:
        if not self.redact_sensitive or self.SAFE_PATTERN.search(key):
            return value
        return "[REDACTED]" if self.SENSITIVE_PATTERN.search(key) else value


class StructuredLogger(logging.LoggerAdapter):
    """
    Logger adapter turning keyword arguments into structured fields.

        logger.warning("Failing over", error_code="rate_limited", next_account_id="acc_b")

    Names that collide with LogRecord attributes get a trailing underscore.
    """

    def __init__(self, logger: logging.Logger):
        super().__init__(logger, {})

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        extra: Dict[str, Any] = {}
        ctx = LogContext.get_current()
        if ctx is not None:
            extra.update(ctx.to_dict())
        extra.update(kwargs.get("extra") or {})

        passthrough = {}
        for key, value in kwargs.items():
            if key in _PASSTHROUGH_KWARGS:
                if key != "extra":
                    passthrough[key] = value
                continue
            extra[key] = value

        passthrough["extra"] = {
            (f"{key}_" if key in _RECORD_ATTRIBUTES else key): value
            for key, value in extra.items()
        }
        return msg, passthrough


_configured = False


def setup_logging(
    level: Union[str, int] = "INFO",
    json_output: bool = True,
    include_location: bool = False,
    redact_sensitive: bool = True,
) -> None:
    """
    Attach a stdout handler to the ``chatrelay`` logger.

    Only the library's own logger hierarchy is touched; applications that
    embed the relay keep their root configuration. Records still propagate,
    so application handlers see them too.
    """
    global _configured

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    if json_output:
        formatter = {
            "()": JSONFormatter,
            "include_location": include_location,
            "redact_sensitive": redact_sensitive,
        }
    else:
        formatter = {"format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s"}

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {"chatrelay": formatter},
        "handlers": {
            "chatrelay_stdout": {
                "class": "logging.StreamHandler",
                "stream": "ext://sys.stdout",
                "formatter": "chatrelay",
                "level": level,
            },
        },
        "loggers": {
            LIBRARY_LOGGER: {"level": level, "handlers": ["chatrelay_stdout"]},
        },
    })

    # Upstream client chatter
    for noisy in ("httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    _configured = True


def get_logger(name: str) -> StructuredLogger:
    """Structured logger for ``name``; configures from the environment on first use."""
    if not _configured:
        setup_logging(
            level=os.getenv("LOG_LEVEL", "INFO"),
            json_output=os.getenv("LOG_FORMAT", "json").lower() == "json",
        )
    return StructuredLogger(logging.getLogger(name))


class TimedOperation:
    """
    Logs how long a block took.

        with TimedOperation("stream_attempt", logger, log_level=logging.INFO):
            ...

    Success is logged at ``log_level`` as "<operation> completed"; an
    exception is logged at WARNING as "<operation> failed" and re-raised.
    """

    def __init__(
        self,
        operation: str,
        logger: Optional[StructuredLogger] = None,
        log_level: int = logging.DEBUG,
        extra: Optional[Dict[str, Any]] = None,
    ):
        self.operation = operation
        self.logger = logger or get_logger(f"{LIBRARY_LOGGER}.timing")
        self.log_level = log_level
        self.extra = dict(extra or {})
        self.duration_ms: Optional[float] = None
        self._started: Optional[float] = None

    def __enter__(self) -> "TimedOperation":
        self._started = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.duration_ms = (time.perf_counter() - self._started) * 1000
        fields_ = dict(self.extra, operation=self.operation, duration_ms=round(self.duration_ms, 2))

        if exc_type is None:
            self.logger.log(self.log_level, f"{self.operation} completed", **fields_)
            return

        self.logger.warning(
            f"{self.operation} failed",
            error=str(exc_val),
            error_type=exc_type.__name__,
            **fields_,
        )
