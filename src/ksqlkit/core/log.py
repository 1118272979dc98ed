from __future__ import annotations

"""
ksqlkit.core.log
================

Structured logging for the library, stdlib only:
- Context propagation via contextvars (entity, topic, subscription id, ...).
- JSON formatter for services; human formatter for local debugging.
- LoggerAdapter that accepts arbitrary keyword fields.
- The library logger is silent by default (NullHandler); apps/tests opt in.
"""

import contextvars
import json
import logging
import os
import sys
import threading
from collections.abc import Mapping
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any, ClassVar, Final

__all__ = [
    "bind_context",
    "configure_from_env",
    "disable_stdout_logging",
    "enable_stdout_logging",
    "get_logger",
    "log_context",
    "set_level",
    "swallow",
    "warn_once",
]

_ROOT_LOGGER: Final[str] = "ksqlkit"
_HANDLER_NAME: Final[str] = "_ksqlkit_stream_handler"
_ERR_HANDLER_NAME: Final[str] = "_ksqlkit_stream_handler_err"

_log_context: contextvars.ContextVar[dict[str, Any] | None] = contextvars.ContextVar("ksqlkit_log_ctx", default=None)


def _current_context() -> dict[str, Any]:
    ctx = _log_context.get()
    return dict(ctx) if ctx else {}


def bind_context(**fields: Any) -> None:
    """Merge non-None fields into the structured log context of the current task."""
    ctx = _current_context()
    ctx.update({k: v for k, v in fields.items() if v is not None})
    _log_context.set(ctx)


@contextmanager
def log_context(**fields: Any):
    """Add fields to the log context for the duration of the block."""
    token = _log_context.set({**_current_context(), **{k: v for k, v in fields.items() if v is not None}})
    try:
        yield
    finally:
        _log_context.reset(token)


# ---------- Formatters ----------

_RECORD_ATTRS: Final[frozenset[str]] = frozenset(
    {
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "exc_info",
        "exc_text",
        "stack_info",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "taskName",
        "asctime",
    }
)


def _exc_tuple(exc_info: Any):
    if isinstance(exc_info, BaseException):
        return (type(exc_info), exc_info, exc_info.__traceback__)
    if exc_info is True:
        return sys.exc_info()
    if isinstance(exc_info, tuple):
        return exc_info
    return None


class JsonFormatter(logging.Formatter):
    """One JSON object per line: ts, level, logger, message, context, extra fields, error."""

    def __init__(self, *, include_stack: bool = False) -> None:
        super().__init__()
        self.include_stack = include_stack

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created, tz=UTC).isoformat(timespec="milliseconds")
        out: dict[str, Any] = {
            "ts": ts.replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
        }
        msg = record.getMessage()
        if msg:
            out["message"] = msg
        out.update(_current_context())
        for k, v in record.__dict__.items():
            if k not in _RECORD_ATTRS and k not in out:
                out[k] = v

        exc = _exc_tuple(record.exc_info) if record.exc_info else None
        if exc and exc[0] is not None:
            err: dict[str, Any] = {"type": exc[0].__name__, "message": str(exc[1]) if exc[1] else None}
            if self.include_stack:
                err["stack"] = self.formatException(exc)
            out["error"] = err
        return json.dumps(out, ensure_ascii=False, separators=(",", ":"), default=str)


class HumanFormatter(logging.Formatter):
    """Single-line formatter with the most useful context keys appended."""

    default_time_format = "%Y-%m-%d %H:%M:%S"
    default_msec_format = "%s.%03d"

    _context_keys: ClassVar[tuple[str, ...]] = ("entity", "topic", "subscription", "statement_kind")

    def format(self, record: logging.LogRecord) -> str:
        line = f"{self.formatTime(record)} {record.levelname:<5} {record.name}: {record.getMessage()}"
        ctx = _current_context()
        shown = [f"{k}={ctx[k]}" for k in self._context_keys if ctx.get(k) is not None]
        if shown:
            line += f"  [{', '.join(shown)}]"
        exc = _exc_tuple(record.exc_info) if record.exc_info else None
        if exc and exc[0] is not None:
            line += "\n" + self.formatException(exc)
        return line


class _ContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        for k, v in _current_context().items():
            record.__dict__.setdefault(k, v)
        return True


class _LevelRange(logging.Filter):
    def __init__(self, lo: int, hi: int) -> None:
        super().__init__()
        self.lo = lo
        self.hi = hi

    def filter(self, record: logging.LogRecord) -> bool:
        return self.lo <= record.levelno <= self.hi


class _FieldsAdapter(logging.LoggerAdapter):
    """
    Moves unknown keyword arguments into `extra`, so call sites can write:

        log.info("stream created", entity="orders", status=200)
    """

    _passthrough: ClassVar[frozenset[str]] = frozenset({"exc_info", "stack_info", "stacklevel", "extra"})

    def process(self, msg, kwargs):
        extra = kwargs.get("extra")
        if not isinstance(extra, dict):
            extra = {}
        for k in [k for k in kwargs if k not in self._passthrough]:
            v = kwargs.pop(k)
            key = f"field_{k}" if k in _RECORD_ATTRS else k
            extra.setdefault(key, v)
        kwargs["extra"] = extra
        return msg, kwargs


# ---------- Setup ----------

_bootstrapped = False
_warned: set[str] = set()
_warned_lock = threading.Lock()


def _bootstrap() -> None:
    global _bootstrapped
    if _bootstrapped:
        return
    root = logging.getLogger(_ROOT_LOGGER)
    if not any(isinstance(h, logging.NullHandler) for h in root.handlers):
        root.addHandler(logging.NullHandler())
    if not any(isinstance(f, _ContextFilter) for f in root.filters):
        root.addFilter(_ContextFilter())
    _bootstrapped = True


def get_logger(name: str | None = None) -> logging.LoggerAdapter:
    """Namespaced adapter under the `ksqlkit` logger that accepts keyword fields."""
    _bootstrap()
    base = logging.getLogger(_ROOT_LOGGER)
    return _FieldsAdapter(base.getChild(name) if name else base, {})


def _level(level: int | str) -> int:
    if isinstance(level, int):
        return level
    val = getattr(logging, str(level).upper(), None)
    if isinstance(val, int):
        return val
    raise ValueError(f"invalid log level: {level!r}")


def set_level(level: int | str) -> None:
    logging.getLogger(_ROOT_LOGGER).setLevel(_level(level))


def enable_stdout_logging(
    *,
    level: int | str = logging.INFO,
    json_output: bool = True,
    include_stack: bool = False,
    pretty: bool = False,
    route_errors_to_stderr: bool = False,
) -> None:
    """
    Attach stream handlers (replacing previously attached ones).

    pretty=True wins over json_output. With route_errors_to_stderr, ERROR and
    above go to stderr and the rest to stdout.
    """
    _bootstrap()
    lvl = _level(level)
    root = logging.getLogger(_ROOT_LOGGER)
    disable_stdout_logging()

    fmt: logging.Formatter = HumanFormatter() if pretty else JsonFormatter(include_stack=include_stack)
    if not pretty and not json_output:
        fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")

    out = logging.StreamHandler(sys.stdout)
    out.set_name(_HANDLER_NAME)
    out.setLevel(lvl)
    out.setFormatter(fmt)
    out.addFilter(_ContextFilter())
    root.addHandler(out)
    if route_errors_to_stderr:
        out.addFilter(_LevelRange(logging.NOTSET, logging.WARNING))
        err = logging.StreamHandler(sys.stderr)
        err.set_name(_ERR_HANDLER_NAME)
        err.setLevel(max(lvl, logging.ERROR))
        err.setFormatter(fmt)
        err.addFilter(_ContextFilter())
        root.addHandler(err)
    if root.level == logging.NOTSET or root.level > lvl:
        root.setLevel(lvl)


def disable_stdout_logging() -> None:
    root = logging.getLogger(_ROOT_LOGGER)
    for h in list(root.handlers):
        if h.get_name() in (_HANDLER_NAME, _ERR_HANDLER_NAME):
            root.removeHandler(h)


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").lower() in ("1", "true", "yes", "on")


def configure_from_env() -> None:
    """
    Env:
      - KSQLKIT_LOG_STDOUT=1
      - KSQLKIT_LOG_LEVEL=DEBUG|INFO|...
      - KSQLKIT_LOG_PRETTY=1
      - KSQLKIT_LOG_STACK=1
    """
    _bootstrap()
    level = os.getenv("KSQLKIT_LOG_LEVEL", "INFO")
    set_level(level)
    if _env_flag("KSQLKIT_LOG_STDOUT"):
        pretty = _env_flag("KSQLKIT_LOG_PRETTY")
        enable_stdout_logging(
            level=level, json_output=not pretty, pretty=pretty, include_stack=_env_flag("KSQLKIT_LOG_STACK")
        )
    else:
        disable_stdout_logging()


def warn_once(logger: logging.LoggerAdapter, code: str, msg: str, **fields: Any) -> None:
    """Log `msg` at WARNING only the first time `code` is seen in this process."""
    with _warned_lock:
        if code in _warned:
            return
        _warned.add(code)
    logger.warning(msg, code=code, **fields)


@contextmanager
def swallow(
    *,
    logger: logging.LoggerAdapter | None = None,
    level: int = logging.DEBUG,
    code: str,
    msg: str | None = None,
    reraise: bool = False,
    extra: Mapping[str, Any] | None = None,
):
    """
    Structured replacement for `try/except: pass` on best-effort paths.

        with swallow(logger=log, code="bus.consumer.stop", msg="consumer stop failed"):
            await consumer.stop()
    """
    adapter = logger or get_logger("swallow")
    try:
        yield
    except Exception:
        adapter.log(level, msg or "suppressed exception", exc_info=True, code=code, **dict(extra or {}))
        if reraise:
            raise


_bootstrap()
