"""Shared logging configuration and logger factory."""

from __future__ import annotations

import json
import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict

_PROJECT_ROOT = Path(__file__).resolve().parents[2]
_LOG_FILENAME = "facescan.log"
_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_MAX_LOG_BYTES = 10 * 1024 * 1024
_LOG_BACKUPS = 5

# Attributes every LogRecord carries; anything else arrived through ``extra=``.
_RESERVED_ATTRS = frozenset(logging.makeLogRecord({}).__dict__) | {"stack_info", "message", "asctime"}


def record_context(record: logging.LogRecord) -> Dict[str, Any]:
    """Return the structured fields attached to ``record`` via ``extra=``."""

    return {key: value for key, value in record.__dict__.items() if key not in _RESERVED_ATTRS}


def _jsonable(value: Any) -> Any:
    # Paths, numpy scalars and sets show up in scan context fields.
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    item = getattr(value, "item", None)
    if callable(item):
        try:
            return item()
        except (TypeError, ValueError):
            pass
    return str(value)


class JsonLinesFormatter(logging.Formatter):
    """One JSON object per record: timestamp, level, logger, event plus context fields."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "event": record.getMessage(),
            **record_context(record),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, sort_keys=True, default=_jsonable)


class KeyValueFormatter(logging.Formatter):
    """Console formatter appending context fields as ``key=value`` pairs."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = record_context(record)
        if context:
            line += " | " + " ".join(f"{key}={context[key]!r}" for key in sorted(context))
        return line


def _resolve_level(level: str | int | None) -> int:
    if isinstance(level, int):
        return level
    name = (level or os.getenv("FACESCAN_LOG_LEVEL") or "INFO").upper()
    resolved = logging.getLevelName(name)
    return resolved if isinstance(resolved, int) else logging.INFO


def _resolve_log_dir(log_dir: Path | str | None) -> Path:
    if log_dir is not None:
        return Path(log_dir)
    return Path(os.getenv("FACESCAN_LOG_DIR") or (_PROJECT_ROOT / "log"))


def configure_logging(
    level: str | int | None = None,
    log_dir: Path | str | None = None,
    *,
    force: bool = False,
) -> None:
    """Attach console and rotating JSON-lines handlers to the root logger.

    Without ``force`` this is a no-op once the root logger has handlers, so
    libraries and test runners that configured logging first keep theirs.
    ``level`` and ``log_dir`` default to ``FACESCAN_LOG_LEVEL`` and
    ``FACESCAN_LOG_DIR``.
    """

    root = logging.getLogger()
    if root.handlers and not force:
        return
    if force:
        for handler in list(root.handlers):
            root.removeHandler(handler)
            handler.close()

    root.setLevel(_resolve_level(level))

    console = logging.StreamHandler()
    console.setFormatter(KeyValueFormatter(_LOG_FORMAT))
    root.addHandler(console)

    directory = _resolve_log_dir(log_dir)
    try:
        directory.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            directory / _LOG_FILENAME,
            maxBytes=_MAX_LOG_BYTES,
            backupCount=_LOG_BACKUPS,
            encoding="utf-8",
        )
    except OSError as exc:
        root.warning("log_file_unavailable", extra={"log_dir": str(directory), "error": str(exc)})
        return
    file_handler.setFormatter(JsonLinesFormatter(_LOG_FORMAT))
    root.addHandler(file_handler)


class _ContextAdapter(logging.LoggerAdapter):
    """Adapter that merges its base ``extra`` with per-call ``extra`` fields."""

    def process(self, msg: Any, kwargs: Any) -> tuple[Any, Any]:
        kwargs["extra"] = {**(self.extra or {}), **(kwargs.get("extra") or {})}
        return msg, kwargs


def get_logger(name: str, extra: Dict[str, Any] | None = None) -> logging.LoggerAdapter:
    """Return a logger adapter that stamps ``extra`` on every record.

    Call-site ``extra=`` fields are merged over the adapter's own. The first
    call configures the root handlers when nothing else has.
    """

    configure_logging()
    return _ContextAdapter(logging.getLogger(name), extra or {})


__all__ = ["JsonLinesFormatter", "KeyValueFormatter", "configure_logging", "get_logger", "record_context"]
