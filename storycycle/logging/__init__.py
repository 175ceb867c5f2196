"""Structured logging for the cycle engine.

Everything logs under the ``storycycle`` namespace.  The console gets short
coloured lines; the rotating file gets one JSON object per record, with the
story, step and run id lifted to top-level keys so a single run can be
filtered out of a long log.
"""

from __future__ import annotations

import functools
import inspect
import json
import logging
import os
import sys
import threading
import time
from collections.abc import Callable, Mapping
from contextlib import ContextDecorator
from logging import LogRecord
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional, Union

ROOT_LOGGER = "storycycle"
RUN_CONTEXT_KEYS = ("story", "step", "run_id")

_ROTATE_BYTES = 5 * 1024 * 1024
_ROTATE_KEEP = 3
_STATE_LOCK = threading.RLock()
_console_installed = False
_file_sink: Optional[RotatingFileHandler] = None

_COLOURS = {
    logging.DEBUG: "\033[2m",
    logging.INFO: "\033[32m",
    logging.WARNING: "\033[33m",
    logging.ERROR: "\033[31m",
    logging.CRITICAL: "\033[1;31m",
}


def _record_metadata(record: LogRecord) -> dict[str, Any]:
    metadata = getattr(record, "metadata", None)
    return dict(metadata) if isinstance(metadata, Mapping) else {}


class CycleJsonFormatter(logging.Formatter):
    """One JSON object per record, run context promoted to the top level."""

    def format(self, record: LogRecord) -> str:
        metadata = _record_metadata(record)
        payload: dict[str, Any] = {
            "timestamp": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
        }
        for key in RUN_CONTEXT_KEYS:
            if key in metadata:
                payload[key] = metadata[key]
        if metadata:
            payload["metadata"] = metadata
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str, ensure_ascii=False)


class CycleConsoleFormatter(logging.Formatter):
    """``HH:MM:SS LEVEL component [story] message``, coloured on a TTY."""

    def __init__(self) -> None:
        super().__init__(fmt="%(asctime)s %(levelname)-7s %(name)s %(message)s", datefmt="%H:%M:%S")

    def format(self, record: LogRecord) -> str:
        line = super().format(record)
        story = _record_metadata(record).get("story")
        if story:
            line = line.replace(record.name, f"{record.name} [{story}]", 1)
        colour = _COLOURS.get(record.levelno)
        if colour and sys.stderr.isatty():
            return f"{colour}{line}\033[0m"
        return line


def parse_level(value: Union[str, int, None]) -> int:
    """Map a level name or number to a ``logging`` level, INFO when unknown."""

    if isinstance(value, int):
        return value
    text = (value or "").strip()
    if text.isdigit():
        return int(text)
    level = logging.getLevelName(text.upper()) if text else None
    return level if isinstance(level, int) else logging.INFO


def _log_file_from_env() -> Path:
    explicit = os.getenv("STORYCYCLE_LOG_FILE")
    if explicit:
        return Path(explicit)
    return Path(os.getenv("STORYCYCLE_LOG_DIR", "logs")) / "storycycle.log"


def _install_console(root: logging.Logger) -> None:
    global _console_installed

    if _console_installed:
        return
    root.handlers.clear()
    root.propagate = False
    handler = logging.StreamHandler()
    handler.setFormatter(CycleConsoleFormatter())
    root.addHandler(handler)
    _console_installed = True


def _install_file_sink(root: logging.Logger, target: Path, as_json: bool) -> None:
    global _file_sink

    if _file_sink is not None and _file_sink.baseFilename == str(target.resolve()):
        return
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            target, maxBytes=_ROTATE_BYTES, backupCount=_ROTATE_KEEP, encoding="utf-8"
        )
    except OSError:
        # Unwritable log dir: keep the console only.
        return
    handler.setFormatter(
        CycleJsonFormatter()
        if as_json
        else logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")
    )
    if _file_sink is not None:
        root.removeHandler(_file_sink)
        _file_sink.close()
    root.addHandler(handler)
    _file_sink = handler


def configure_logging(
    level: Union[str, int, None] = None,
    *,
    log_file: Union[Path, str, None] = None,
    enable_json: bool = True,
) -> None:
    """Install the console handler once and point the file sink at ``log_file``.

    Safe to call repeatedly: the level is always updated, the file sink is
    only replaced when the target path changes.
    """

    with _STATE_LOCK:
        root = logging.getLogger(ROOT_LOGGER)
        _install_console(root)
        root.setLevel(parse_level(level or os.getenv("STORYCYCLE_LOG_LEVEL")))
        target = Path(log_file) if log_file else _log_file_from_env()
        _install_file_sink(root, target, enable_json)


def get_logger(
    name: str, *, metadata: Optional[Mapping[str, Any]] = None
) -> Union[logging.Logger, "CycleLoggerAdapter"]:
    """Return ``storycycle.<name>``, wrapped in an adapter when metadata is bound."""

    if not _console_installed:
        configure_logging()
    if name != ROOT_LOGGER and not name.startswith(ROOT_LOGGER + "."):
        name = f"{ROOT_LOGGER}.{name}"
    logger = logging.getLogger(name)
    return CycleLoggerAdapter(logger, dict(metadata)) if metadata else logger


class CycleLoggerAdapter(logging.LoggerAdapter):
    """Adds bound run context to every record's ``extra["metadata"]``."""

    def process(self, msg: str, kwargs: Any) -> tuple[str, Any]:
        extra = dict(kwargs.get("extra") or {})
        call_metadata = extra.get("metadata")
        extra["metadata"] = {
            **self.extra,
            **(call_metadata if isinstance(call_metadata, Mapping) else {}),
        }
        kwargs["extra"] = extra
        return msg, kwargs

    def bind(self, **metadata: Any) -> "CycleLoggerAdapter":
        return CycleLoggerAdapter(self.logger, {**self.extra, **metadata})


class log_exceptions(ContextDecorator):
    """Log an escaping exception with its traceback, then let it propagate."""

    def __init__(self, logger: logging.Logger, *, message: str = "Unhandled error") -> None:
        self.logger = logger
        self.message = message

    def __enter__(self) -> "log_exceptions":
        return self

    def __exit__(self, exc_type, exc_value, exc_traceback) -> bool:
        if exc_type is not None and not issubclass(exc_type, (KeyboardInterrupt, SystemExit)):
            self.logger.error(self.message, exc_info=(exc_type, exc_value, exc_traceback))
        return False


def log_action(
    action: str,
    *,
    start_level: int = logging.INFO,
    success_level: int = logging.INFO,
    failure_level: int = logging.ERROR,
    logger_factory: Callable[[], logging.Logger] | None = None,
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Log ``<action>:start``, then ``<action>:success`` or ``<action>:error``.

    Coroutine functions get an async wrapper so the outcome is logged when the
    awaited work finishes, not when the coroutine object is created.
    """

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        func_logger = logger_factory() if logger_factory else get_logger(func.__module__)

        def emit(level: int, event: str, **fields: Any) -> None:
            func_logger.log(
                level,
                "%s:%s",
                action,
                event,
                extra={"metadata": {"action": action, "event": event, **fields}},
                exc_info=event == "error",
            )

        if inspect.iscoroutinefunction(func):

            @functools.wraps(func)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                emit(start_level, "start")
                started = time.perf_counter()
                try:
                    result = await func(*args, **kwargs)
                except Exception:
                    emit(failure_level, "error")
                    raise
                emit(success_level, "success", duration=time.perf_counter() - started)
                return result

            return async_wrapper

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            emit(start_level, "start")
            started = time.perf_counter()
            try:
                result = func(*args, **kwargs)
            except Exception:
                emit(failure_level, "error")
                raise
            emit(success_level, "success", duration=time.perf_counter() - started)
            return result

        return wrapper

    return decorator


__all__ = [
    "ROOT_LOGGER",
    "CycleConsoleFormatter",
    "CycleJsonFormatter",
    "CycleLoggerAdapter",
    "configure_logging",
    "get_logger",
    "log_action",
    "log_exceptions",
    "parse_level",
]
