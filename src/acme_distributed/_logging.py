"""Logging utilities for acme_distributed."""

import logging
import sys
import time
from contextvars import ContextVar, Token

_root = logging.getLogger("acme_distributed")
_root.addHandler(logging.NullHandler())

# Certificate currently being processed: (name, subjects)
_current_certificate: ContextVar[tuple[str, list[str]] | None] = ContextVar(
    "current_certificate", default=None
)

# LogRecord attributes that are not caller-supplied extras.
_STANDARD_ATTRS = frozenset(
    {
        "args",
        "asctime",
        "created",
        "exc_info",
        "exc_text",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "message",
        "module",
        "msecs",
        "msg",
        "name",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "taskName",
        "thread",
        "threadName",
    }
)

LOG_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


def set_certificate(name: str | None, subjects: list[str] | None = None) -> Token:
    """Set the certificate being processed for logging context.

    Args:
        name: Symbolic certificate name, or None to clear.
        subjects: Subject names covered by the certificate.

    Returns:
        Token to reset the context.
    """
    if name is None:
        return _current_certificate.set(None)
    return _current_certificate.set((name, list(subjects or [])))


def reset_certificate(token: Token) -> None:
    """Reset certificate context.

    Args:
        token: Token from set_certificate() call.
    """
    _current_certificate.reset(token)


def get_certificate_extra() -> dict[str, str | list[str]]:
    """Get certificate info for log extra fields.

    Returns:
        Dict with 'certificate' and 'domain' (single) or 'domains'
        (multiple), or an empty dict outside of a certificate context.
    """
    current = _current_certificate.get()
    if current is None:
        return {}
    name, subjects = current
    extra: dict[str, str | list[str]] = {"certificate": name}
    if len(subjects) == 1:
        extra["domain"] = subjects[0]
    elif subjects:
        extra["domains"] = subjects
    return extra


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the acme_distributed namespace.

    Args:
        name: The module name (typically __name__).

    Returns:
        A logger instance for the module.
    """
    return logging.getLogger(name)


class TextFormatter(logging.Formatter):
    """Console formatter that appends extra fields as key=value pairs."""

    _FMT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"

    def __init__(self) -> None:
        super().__init__(fmt=self._FMT, datefmt="%Y-%m-%d %H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        extras = [
            f"{key}={value}"
            for key, value in record.__dict__.items()
            if key not in _STANDARD_ATTRS and not key.startswith("_")
        ]
        if extras:
            line = f"{line} [{' '.join(extras)}]"
        return line


def configure_logging(level: str | int = logging.INFO, stream=None) -> logging.Logger:
    """Attach a console handler to the acme_distributed logger.

    Replaces handlers installed by an earlier call, so calling this twice
    does not duplicate output.

    Args:
        level: Level name (DEBUG, INFO, WARN, ERROR) or numeric level.
        stream: Output stream, stderr by default.

    Returns:
        The package root logger.

    Raises:
        ValueError: If the level name is unknown.
    """
    if isinstance(level, str):
        try:
            level = LOG_LEVELS[level.upper()]
        except KeyError:
            raise ValueError(f"Unknown log level: {level}") from None

    for handler in list(_root.handlers):
        if getattr(handler, "_acme_distributed_console", False):
            _root.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(TextFormatter())
    handler._acme_distributed_console = True  # type: ignore[attr-defined]
    _root.addHandler(handler)
    _root.setLevel(level)
    return _root


class Timer:
    """Context manager for timing operations.

    Usage:
        with Timer() as t:
            # do work
        print(f"Elapsed: {t.elapsed_ms}ms")
    """

    def __init__(self) -> None:
        self.elapsed_ms: float = 0
        self._start: float = 0

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, *args: object) -> None:
        self.elapsed_ms = (time.perf_counter() - self._start) * 1000
