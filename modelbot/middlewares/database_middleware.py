import logging
from typing import Any, Awaitable, Callable, Dict

from aiogram import BaseMiddleware
from aiogram.types import Update

from ..db.manager import DatabaseManager

logger = logging.getLogger(__name__)


class DatabaseMiddleware(BaseMiddleware):
    """
    Makes the shared ``DatabaseManager`` available to every handler as
    ``data["database"]``.
    """

    def __init__(self, database: DatabaseManager):
        self._database = database

    async def __call__(
        self,
        handler: Callable[[Update, Dict[str, Any]], Awaitable[Any]],
        event: Update,
        data: Dict[str, Any],
    ) -> Any:
        data["database"] = self._database
        return await handler(event, data)
