"""
Structured Logging Configuration

Every record emitted while a trade is in flight carries the request's
correlation_id, agent_id and trade_id (set with CorrelationContext), so the
executor's retries and the position bookkeeping of one request can be
grepped together.

Handlers installed by setup_logging():
- console: one readable line per record
- trade_engine.log: rotating, JSON by default
- trades.jsonl: audit trail of confirmed trades (TRADE_AUDIT_LOGGER only)

Private key values (AGENT_PRIVATE_KEY_* assignments, secret-named fields)
are masked before anything is written.
"""

import contextvars
import json
import logging
import logging.handlers
import re
import sys
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Union
from uuid import uuid4

TRADE_AUDIT_LOGGER = "trade_engine.trades"

correlation_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "correlation_id", default=None
)
agent_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "agent_id", default=None
)
trade_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "trade_id", default=None
)

_CONTEXT_VARS = (
    ("correlation_id", correlation_id_var),
    ("agent_id", agent_id_var),
    ("trade_id", trade_id_var),
)

# `AGENT_PRIVATE_KEY_X=...` / `private_key: ...` inside free text
_SECRET_ASSIGNMENT = re.compile(
    r"((?:AGENT_PRIVATE_KEY_\w+|private_key|secret_key|secret)\s*[=:]\s*)['\"]?[^\s'\",]+",
    re.IGNORECASE,
)
_SECRET_FIELDS = ("private_key", "secret", "seed", "keypair", "mnemonic")
REDACTED = "[REDACTED]"


def _current_context() -> Dict[str, str]:
    return {name: var.get() for name, var in _CONTEXT_VARS if var.get()}


def _record_context(record: logging.LogRecord) -> Dict[str, str]:
    """Context stamped by TradeContextFilter, else whatever is active now."""
    stamped = getattr(record, "trade_context", None)
    return dict(stamped) if stamped is not None else _current_context()


def redact(value: Any) -> Any:
    """Mask key material inside str/dict/list values. Signatures and addresses are kept."""
    if isinstance(value, str):
        return _SECRET_ASSIGNMENT.sub(lambda m: m.group(1) + REDACTED, value)
    if isinstance(value, dict):
        return {
            k: REDACTED if any(s in str(k).lower() for s in _SECRET_FIELDS) else redact(v)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return type(value)(redact(v) for v in value)
    return value


class CorrelationContext:
    """
    Bind correlation_id / agent_id / trade_id for the current task.

    Usage:
        with CorrelationContext(agent_id="agent-1", trade_id="a1b2"):
            await executor.execute_buy(...)
    """

    def __init__(
        self,
        correlation_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        trade_id: Optional[str] = None,
    ):
        self.correlation_id = correlation_id or str(uuid4())
        self.agent_id = agent_id
        self.trade_id = trade_id
        self._tokens = []

    def __enter__(self):
        values = (self.correlation_id, self.agent_id, self.trade_id)
        for (_, var), value in zip(_CONTEXT_VARS, values):
            if value:
                self._tokens.append((var, var.set(value)))
        return self

    def __exit__(self, *args):
        while self._tokens:
            var, token = self._tokens.pop()
            var.reset(token)


class TradeContextFilter(logging.Filter):
    """Copy the active trade context onto the record at emit time."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.trade_context = _current_context()
        return True


class SecretRedactionFilter(logging.Filter):
    """Mask key material in the message, its args and structured fields."""

    def filter(self, record: logging.LogRecord) -> bool:
        if record.args:
            record.msg = record.getMessage()
            record.args = None
        record.msg = redact(str(record.msg))
        if getattr(record, "extra_data", None):
            record.extra_data = redact(record.extra_data)
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per line."""

    def __init__(
        self,
        include_traceback: bool = True,
        include_context: bool = True,
        extra_fields: Optional[Dict[str, Any]] = None,
    ):
        super().__init__()
        self.include_traceback = include_traceback
        self.include_context = include_context
        self.extra_fields = extra_fields or {}

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        if self.include_context:
            entry.update(_record_context(record))
        entry.update(self.extra_fields)

        if getattr(record, "extra_data", None):
            entry["extra"] = record.extra_data

        if record.exc_info and self.include_traceback:
            exc_type, exc_value, _ = record.exc_info
            entry["exception"] = {
                "type": exc_type.__name__ if exc_type else None,
                "message": str(exc_value) if exc_value else None,
                "traceback": traceback.format_exception(*record.exc_info),
            }

        return json.dumps(entry, default=str)


class StructuredFormatter(logging.Formatter):
    """Console format: `12:00:01 INFO  trade_engine.x | message | ctx | fields`."""

    LEVEL_COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        clock = datetime.fromtimestamp(record.created, tz=timezone.utc).strftime("%H:%M:%S")
        level = f"{record.levelname:<7}"
        if self.use_color and sys.stdout.isatty():
            level = f"{self.LEVEL_COLORS.get(record.levelname, '')}{level}{self.RESET}"

        line = [f"{clock} {level} {record.name}", record.getMessage()]

        context = _record_context(record)
        if context:
            if "correlation_id" in context:
                context["correlation_id"] = context["correlation_id"][:8]
            line.append(" ".join(f"{k}={v}" for k, v in context.items()))

        if getattr(record, "extra_data", None):
            line.append(" ".join(f"{k}={v}" for k, v in record.extra_data.items()))

        text = " | ".join(line)
        if record.exc_info:
            text += "\n" + "".join(traceback.format_exception(*record.exc_info))
        return text


class StructuredLogger:
    """
    Logger wrapper taking structured fields as keyword arguments.

        logger.info("BUY confirmed", signature=sig, attempt=2)
    """

    def __init__(self, logger: logging.Logger):
        self._logger = logger

    @property
    def name(self) -> str:
        return self._logger.name

    def _log(self, level: int, msg: str, fields: Dict[str, Any], exc_info: bool = False):
        extra = {"extra_data": fields} if fields else None
        self._logger.log(level, msg, exc_info=exc_info, extra=extra)

    def debug(self, msg: str, **fields):
        self._log(logging.DEBUG, msg, fields)

    def info(self, msg: str, **fields):
        self._log(logging.INFO, msg, fields)

    def warning(self, msg: str, **fields):
        self._log(logging.WARNING, msg, fields)

    def error(self, msg: str, exc_info: bool = False, **fields):
        self._log(logging.ERROR, msg, fields, exc_info=exc_info)

    def exception(self, msg: str, **fields):
        self._log(logging.ERROR, msg, fields, exc_info=True)


def _rotating_handler(path: Path, max_bytes: int, backup_count: int) -> logging.Handler:
    path.parent.mkdir(parents=True, exist_ok=True)
    return logging.handlers.RotatingFileHandler(
        path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
    )


def setup_logging(
    log_dir: Union[str, Path] = "logs",
    log_file: str = "trade_engine.log",
    level: Union[str, int] = logging.INFO,
    json_format: bool = True,
    console_output: bool = True,
    file_output: bool = True,
    audit_file: Optional[str] = "trades.jsonl",
    max_bytes: int = 50 * 1024 * 1024,
    backup_count: int = 5,
    extra_fields: Optional[Dict[str, Any]] = None,
) -> logging.Logger:
    """
    Configure root logging for the service.

    Args:
        log_dir: Directory for log files
        log_file: Main log file name
        level: Logging level name or number
        json_format: JSON (True) or console-style lines (False) in log_file
        console_output: Write to stdout
        file_output: Write log_file and the trade audit file
        audit_file: Audit trail file name; None disables it
        max_bytes: Rotation size per file
        backup_count: Rotated files to keep
        extra_fields: Constant fields added to every JSON record

    Returns:
        The root logger
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    handlers = []
    if console_output:
        console = logging.StreamHandler(sys.stdout)
        console.setFormatter(StructuredFormatter(use_color=True))
        handlers.append(console)

    if file_output:
        main_file = _rotating_handler(Path(log_dir) / log_file, max_bytes, backup_count)
        main_file.setFormatter(
            JSONFormatter(extra_fields=extra_fields) if json_format else StructuredFormatter(use_color=False)
        )
        handlers.append(main_file)

    for handler in handlers:
        handler.setLevel(level)
        handler.addFilter(TradeContextFilter())
        handler.addFilter(SecretRedactionFilter())
        root.addHandler(handler)

    audit = logging.getLogger(TRADE_AUDIT_LOGGER)
    audit.handlers.clear()
    if file_output and audit_file:
        audit_handler = _rotating_handler(Path(log_dir) / audit_file, max_bytes, backup_count)
        audit_handler.setFormatter(JSONFormatter(include_traceback=False, extra_fields=extra_fields))
        audit_handler.addFilter(TradeContextFilter())
        audit_handler.addFilter(SecretRedactionFilter())
        audit.addHandler(audit_handler)
    audit.setLevel(logging.INFO)

    for noisy in ("aiohttp", "solders", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    return root


def get_logger(name: str) -> StructuredLogger:
    """Get a structured logger for a module."""
    return StructuredLogger(logging.getLogger(name))


def get_audit_logger() -> StructuredLogger:
    """Logger whose records also land in the trade audit file."""
    return get_logger(TRADE_AUDIT_LOGGER)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()
