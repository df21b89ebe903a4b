"""
Logging setup for the sniper engine.

Console output is colored and short; files under `log_dir` are JSON lines:
    bot.log     everything at DEBUG and above
    errors.log  ERROR and above
    trades.log  only records emitted through TradeLogger

Swap pipelines log through CorrelationLogger so every line of one swap
carries the same correlation id, even with many swaps running concurrently.
"""

import json
import logging
import logging.handlers
import os
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Optional

DEFAULT_LOG_DIR = "logs"
MB = 1024 * 1024

NOISY_LOGGERS = ("solana", "solders", "aiohttp", "httpx", "httpcore", "asyncio")

# Per-task, so concurrent swaps keep their own id
_correlation_id: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def _extra(record: logging.LogRecord) -> dict:
    return getattr(record, "extra_data", None) or {}


class StructuredFormatter(logging.Formatter):
    """One JSON object per record, extra_data merged at the top level."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "where": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        payload.update(_extra(record))
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class HumanReadableFormatter(logging.Formatter):
    """Colored single-line console output."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, self.RESET)
        clock = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        line = f"{color}{clock} {record.levelname[:4]}{self.RESET} {record.name}: {record.getMessage()}"

        fields = {k: v for k, v in _extra(record).items() if k != "trade_event" and v not in (None, "")}
        if fields:
            line += "  " + " ".join(f"{k}={v}" for k, v in fields.items())
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def _is_trade_event(record: logging.LogRecord) -> bool:
    return bool(_extra(record).get("trade_event"))


def _rotating(path: str, formatter: logging.Formatter, max_mb: int, backups: int,
              level: int = logging.NOTSET) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(path, maxBytes=max_mb * MB, backupCount=backups)
    handler.setFormatter(formatter)
    handler.setLevel(level)
    return handler


def setup_logging(
    level: str = "INFO",
    log_dir: Optional[str] = DEFAULT_LOG_DIR,
    enable_console: bool = True,
):
    """
    Replace the root logger's handlers with the engine's console and file handlers.

    Args:
        level: Root level name (DEBUG, INFO, ...)
        log_dir: Directory for the JSON log files; None or "" disables them
        enable_console: Attach the colored console handler
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()

    if enable_console:
        console = logging.StreamHandler()
        console.setFormatter(HumanReadableFormatter())
        console.setLevel(logging.INFO)
        root.addHandler(console)

    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        structured = StructuredFormatter()
        root.addHandler(_rotating(os.path.join(log_dir, "bot.log"), structured, 10, 5, logging.DEBUG))
        root.addHandler(_rotating(os.path.join(log_dir, "errors.log"), structured, 5, 3, logging.ERROR))

        trades = _rotating(os.path.join(log_dir, "trades.log"), structured, 10, 10)
        trades.addFilter(_is_trade_event)
        root.addHandler(trades)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


class CorrelationLogger:
    """
    Keyword-friendly logger that stamps the current correlation id.

    Usage:
        logger = CorrelationLogger(__name__)
        with logger.correlation_context():
            logger.info("Quote received", user_id=user_id, token=token)
    """

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)

    @property
    def correlation_id(self) -> Optional[str]:
        return _correlation_id.get()

    def _log(self, level: int, msg: str, exc_info=None, **fields):
        if self.correlation_id:
            fields["correlation_id"] = self.correlation_id
        extra = {"extra_data": fields} if fields else None
        self.logger.log(level, msg, exc_info=exc_info, extra=extra)

    def debug(self, msg: str, **fields):
        self._log(logging.DEBUG, msg, **fields)

    def info(self, msg: str, **fields):
        self._log(logging.INFO, msg, **fields)

    def warning(self, msg: str, **fields):
        self._log(logging.WARNING, msg, **fields)

    def error(self, msg: str, exc_info=None, **fields):
        self._log(logging.ERROR, msg, exc_info=exc_info, **fields)

    @contextmanager
    def correlation_context(self):
        """Give every line logged inside the block a fresh 8-char id."""
        token = _correlation_id.set(uuid.uuid4().hex[:8])
        try:
            yield self
        finally:
            _correlation_id.reset(token)


class TradeLogger:
    """
    Buy / sell / close / failure events, routed to trades.log.

    Notification consumers tail that file, so every event carries the user,
    the token and the broadcast signature where one exists.
    """

    def __init__(self):
        self.logger = logging.getLogger("apex_sniper.trades")

    def _emit(self, event_type: str, level: int = logging.INFO, **fields):
        fields["trade_event"] = True
        fields["event_type"] = event_type
        summary = f"{event_type} user={fields.get('user_id')} token={str(fields.get('token', ''))[:8]}"
        self.logger.log(level, summary, extra={"extra_data": fields})

    def log_buy(
        self,
        user_id: str,
        token: str,
        amount_sol: float,
        signature: str,
        mode: str = "",
        token_amount: float = 0.0,
        position_id: Optional[int] = None
    ):
        self._emit("BUY", user_id=user_id, token=token, mode=mode, amount_sol=amount_sol,
                   token_amount=token_amount, signature=signature, position_id=position_id)

    def log_sell(
        self,
        user_id: str,
        token: str,
        token_amount: float,
        signature: str,
        reason: str,
        amount_sol: float = 0.0,
        pnl_pct: float = 0.0,
        position_id: Optional[int] = None
    ):
        self._emit("SELL", user_id=user_id, token=token, reason=reason, token_amount=token_amount,
                   amount_sol=amount_sol, pnl_pct=pnl_pct, signature=signature, position_id=position_id)

    def log_close(self, user_id: str, token: str, reason: str, position_id: Optional[int] = None):
        """Position closed, including administrative closes with no sale."""
        self._emit("CLOSE", user_id=user_id, token=token, reason=reason, position_id=position_id)

    def log_failure(self, user_id: str, token: str, side: str, error: str, signature: Optional[str] = None):
        self._emit("FAILED", level=logging.WARNING, user_id=user_id, token=token, side=side,
                   error=error, signature=signature)
