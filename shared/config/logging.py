"""
Structured logging for the order core.

Keyword arguments passed to a logger call travel on the record as ``fields``
and are rendered as JSON in production or as ``key=value`` pairs on a
terminal. Records also carry the current operation id from
shared.infrastructure.correlation, so one checkout or payment can be followed
through every service it touches.

Usage:
    from shared.config.logging import get_logger
    logger = get_logger(__name__)

    logger.info("Payment completed", payment_id=payment.id, amount=str(payment.amount))
    logger.warning("Receipt printer offline", order_id=order.id, exc_info=True)
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from shared.config.settings import settings

NO_OPERATION = "-"


def _fields(record: logging.LogRecord) -> dict[str, Any]:
    return getattr(record, "fields", None) or {}


def _operation(record: logging.LogRecord) -> str | None:
    operation_id = getattr(record, "operation_id", NO_OPERATION)
    return None if operation_id in (None, "", NO_OPERATION) else operation_id


class JsonFormatter(logging.Formatter):
    """One JSON object per line, for log shippers."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "event": record.getMessage(),
        }
        operation_id = _operation(record)
        if operation_id:
            entry["operation_id"] = operation_id
        entry.update(_fields(record))
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        if settings.debug:
            entry["at"] = f"{record.module}:{record.funcName}:{record.lineno}"
        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """Compact coloured lines for a developer terminal."""

    LEVEL_COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[1;31m",
    }
    RESET = "\033[0m"
    GREY = "\033[90m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelno, "")
        clock = datetime.fromtimestamp(record.created).strftime("%H:%M:%S.%f")[:-3]
        parts = [f"{self.GREY}{clock}{self.RESET}", f"{color}{record.levelname[:4]}{self.RESET}"]

        operation_id = _operation(record)
        if operation_id:
            parts.append(f"{self.GREY}{operation_id[:8]}{self.RESET}")
        parts.append(f"{record.name} {record.getMessage()}")

        fields = _fields(record)
        if fields:
            parts.append(" ".join(f"{key}={value!r}" for key, value in fields.items()))

        line = " ".join(parts)
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


class StructuredLogger(logging.Logger):
    """
    Logger that accepts arbitrary keyword fields on every level method.

    ``exc_info``, ``extra``, ``stack_info`` and ``stacklevel`` keep their
    standard meaning; anything else is attached to the record.
    """

    def _log(
        self,
        level: int,
        msg: object,
        args: Any,
        exc_info: Any = None,
        extra: dict[str, Any] | None = None,
        stack_info: bool = False,
        stacklevel: int = 1,
        **fields: Any,
    ) -> None:
        merged = dict(extra or {})
        merged["fields"] = fields
        super()._log(
            level,
            msg,
            args,
            exc_info=exc_info,
            extra=merged,
            stack_info=stack_info,
            stacklevel=stacklevel + 1,
        )


logging.setLoggerClass(StructuredLogger)


def setup_logging(level: int | None = None) -> None:
    """
    Install the process-wide handler. Call once at startup.

    Production gets JSON lines; every other environment gets the console
    format. The level defaults to DEBUG when settings.debug is on.
    """
    from shared.infrastructure.correlation import OperationIdFilter

    if level is None:
        level = logging.DEBUG if settings.debug else logging.INFO

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(OperationIdFilter())
    handler.setFormatter(JsonFormatter() if settings.environment == "production" else ConsoleFormatter())

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level)

    logging.getLogger("asyncio").setLevel(logging.WARNING)


def get_logger(name: str) -> StructuredLogger:
    return logging.getLogger(name)  # type: ignore[return-value]


def mask_reference(reference: str | None) -> str:
    """Keep the last 4 characters of a payment reference: "txn_8f2a91c4" -> "***91c4"."""
    if not reference:
        return "<no-reference>"
    return "***" if len(reference) <= 4 else f"***{reference[-4:]}"


orders_logger = get_logger("pos_core.orders")
kitchen_logger = get_logger("pos_core.kitchen")
payments_logger = get_logger("pos_core.payments")
realtime_logger = get_logger("pos_core.realtime")
audit_logger = get_logger("pos_core.audit")
