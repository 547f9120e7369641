import contextvars
import logging
from typing import Any, Dict

correlation_id_ctx: contextvars.ContextVar[str] = contextvars.ContextVar("correlation_id", default="")


class CorrelationIdFilter(logging.Filter):
    """
    Logging filter to inject the correlation_id into log records.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id_ctx.get()
        return True


def fmt_ctx(ctx: Dict[str, Any]) -> str:
    """Return a deterministic key=value string used in log messages."""
    return " ".join(f"{k}={v}" for k, v in ctx.items() if v is not None)


def get_logger(name: str) -> logging.Logger:
    """Return a module logger whose records carry the current correlation id."""
    logger = logging.getLogger(name)
    if not any(isinstance(f, CorrelationIdFilter) for f in logger.filters):
        logger.addFilter(CorrelationIdFilter())
    return logger
