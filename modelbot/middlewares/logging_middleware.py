import time
import uuid
from typing import Any, Awaitable, Callable, Dict

from aiogram import BaseMiddleware
from aiogram.exceptions import TelegramAPIError, TelegramRetryAfter
from aiogram.types import Update

from ..db.errors import DataAccessError
from ..utils.log_context import correlation_id_ctx, fmt_ctx, get_logger

logger = get_logger(__name__)


class LoggingMiddleware(BaseMiddleware):
    """
    This middleware logs incoming updates with structured logs, correlation
    IDs and handler timing. Database failures are logged by their error id so
    a user report can be matched with the detailed error record.
    """

    async def __call__(
        self,
        handler: Callable[[Update, Dict[str, Any]], Awaitable[Any]],
        event: Update,
        data: Dict[str, Any],
    ) -> Any:
        cid = str(uuid.uuid4())
        token = correlation_id_ctx.set(cid)
        data["correlation_id"] = cid

        user = data.get("event_from_user")
        base_ctx = {
            "correlation_id": cid,
            "user_id": getattr(user, "id", None),
            "update_type": event.event_type,
            "update_id": event.update_id,
        }
        logger.info(f"Incoming update {fmt_ctx(base_ctx)}", extra=base_ctx)

        start_time = time.monotonic()
        try:
            return await handler(event, data)

        except DataAccessError as e:
            db_ctx = {**base_ctx, "error_id": e.error_id, "error_type": e.error_type.value}
            logger.warning(f"Database request failed {fmt_ctx(db_ctx)}", extra=db_ctx)
            raise

        except TelegramRetryAfter as e:
            warn_ctx = {**base_ctx, "retry_after": e.retry_after}
            logger.warning(f"Rate limit exceeded (HTTP 429) {fmt_ctx(warn_ctx)}", extra=warn_ctx)
            raise

        except TelegramAPIError as e:
            err_ctx = {**base_ctx, "description": getattr(e, "message", None)}
            logger.error(f"Telegram API error {fmt_ctx(err_ctx)}", extra=err_ctx)
            raise

        except Exception as e:
            exc_ctx = {**base_ctx, "error": str(e)}
            logger.exception(f"Exception caught in handler {fmt_ctx(exc_ctx)}", extra=exc_ctx)
            raise

        finally:
            elapsed_ms = int((time.monotonic() - start_time) * 1000)
            handler_name = getattr(handler, "__qualname__", None) or handler.__class__.__name__
            processed_ctx = {
                **base_ctx,
                "handler": f"{getattr(handler, '__module__', '')}.{handler_name}",
                "execution_time_ms": elapsed_ms,
            }
            logger.info(f"Handler processed {fmt_ctx(processed_ctx)}", extra=processed_ctx)
            correlation_id_ctx.reset(token)
