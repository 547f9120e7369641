"""Classification of database failures into error records and user-safe messages."""

from __future__ import annotations

import logging
import re
import time
import traceback
import uuid
from collections import deque
from typing import Deque, List, NamedTuple, Optional

from ..utils.log_context import fmt_ctx, get_logger
from .errors import (
    CORRUPTION_CODES,
    StoreErrorCode,
    is_retryable_error,
    iter_causes,
    store_error_code,
    store_error_name,
)
from .models import DatabaseErrorType, ErrorRecord, ErrorSeverity, ErrorStatistics, OperationContext

logger = get_logger(__name__)

MAX_ERROR_HISTORY = 100
RECENT_ERRORS_WINDOW = 10

ERROR_MESSAGES = {
    DatabaseErrorType.CONNECTION_LOST: "Database temporarily unavailable. Please try again in a moment.",
    DatabaseErrorType.QUERY_FAILED: "Unable to process your request. Please try again.",
    DatabaseErrorType.SCHEMA_MISMATCH: "System is updating. Please wait a moment and try again.",
    DatabaseErrorType.TRANSACTION_FAILED: "Operation could not be completed. No changes were made.",
    DatabaseErrorType.CORRUPTION_DETECTED: "Data integrity issue detected. System is recovering automatically.",
    DatabaseErrorType.BACKUP_FAILED: "Backup operation failed. Data is still safe but please contact an administrator.",
    DatabaseErrorType.MIGRATION_FAILED: "System update failed. Please contact an administrator.",
}
DEFAULT_MESSAGE = "An unexpected error occurred. Please try again."

DEFAULT_SEVERITY = {
    DatabaseErrorType.CORRUPTION_DETECTED: ErrorSeverity.CRITICAL,
    DatabaseErrorType.MIGRATION_FAILED: ErrorSeverity.HIGH,
    DatabaseErrorType.BACKUP_FAILED: ErrorSeverity.HIGH,
    DatabaseErrorType.CONNECTION_LOST: ErrorSeverity.MEDIUM,
    DatabaseErrorType.TRANSACTION_FAILED: ErrorSeverity.MEDIUM,
    DatabaseErrorType.QUERY_FAILED: ErrorSeverity.LOW,
    DatabaseErrorType.SCHEMA_MISMATCH: ErrorSeverity.LOW,
}

_SQLITE_CODE_RE = re.compile(r"SQLITE_\w+")


class HandledError(NamedTuple):
    """What a caller may show to users: a generic message and a log correlation id."""

    user_message: str
    error_id: str


class ErrorHandler:
    """Turns raw failures into error records, log entries and user messages."""

    def __init__(self, max_history: int = MAX_ERROR_HISTORY):
        self._history: Deque[ErrorRecord] = deque(maxlen=max_history)

    def handle_error(
        self,
        error: BaseException,
        error_type: DatabaseErrorType,
        context: Optional[OperationContext] = None,
    ) -> HandledError:
        """
        Record a failure and return what may be shown to the user.

        The returned message never contains queries, parameters or store
        specific details; those only go to the error record and the log.
        """
        error_id = self._generate_error_id()
        severity = self.classify_error_severity(error_type, error)

        record = ErrorRecord(
            id=error_id,
            error_type=error_type,
            severity=severity,
            underlying_code=self._extract_store_code(error),
            message=str(error),
            query=context.query if context else None,
            parameters=context.parameters if context else None,
            stack_trace="".join(traceback.format_exception(error)),
            retry_count=self._retry_count(error),
        )
        self._history.append(record)
        self._log_technical_details(record, context)

        return HandledError(self.get_user_friendly_message(error_type, severity), error_id)

    def get_user_friendly_message(
        self, error_type: DatabaseErrorType, severity: Optional[ErrorSeverity] = None
    ) -> str:
        message = ERROR_MESSAGES.get(error_type, DEFAULT_MESSAGE)
        if severity is ErrorSeverity.CRITICAL:
            return f"{message} If this problem persists, please contact support immediately."
        if severity is ErrorSeverity.HIGH:
            return f"{message} Please contact an administrator if this continues."
        return message

    def classify_error_severity(
        self, error_type: DatabaseErrorType, error: Optional[BaseException] = None
    ) -> ErrorSeverity:
        """Severity from what the error says about the store, else from its type."""
        if error is not None:
            code = store_error_code(error)
            if code in CORRUPTION_CODES or code is StoreErrorCode.FULL:
                return ErrorSeverity.CRITICAL
            if code is StoreErrorCode.CONSTRAINT:
                return ErrorSeverity.HIGH

            message = str(error).lower()
            if any(p in message for p in ("corrupt", "malformed", "disk full", "no space")):
                return ErrorSeverity.CRITICAL
            if "constraint" in message or "foreign key" in message:
                return ErrorSeverity.HIGH
            if is_retryable_error(error):
                return ErrorSeverity.MEDIUM

        return DEFAULT_SEVERITY.get(error_type, ErrorSeverity.MEDIUM)

    def get_error_statistics(self) -> ErrorStatistics:
        by_type = {t: 0 for t in DatabaseErrorType}
        by_severity = {s: 0 for s in ErrorSeverity}
        for record in self._history:
            by_type[record.error_type] += 1
            by_severity[record.severity] += 1

        return ErrorStatistics(
            total_errors=len(self._history),
            errors_by_type=by_type,
            errors_by_severity=by_severity,
            recent_errors=list(self._history)[-RECENT_ERRORS_WINDOW:],
        )

    def get_errors_by_severity(self, severity: ErrorSeverity) -> List[ErrorRecord]:
        return [r for r in self._history if r.severity is severity]

    def clear_error_history(self) -> int:
        cleared = len(self._history)
        self._history.clear()
        logger.info("Cleared %d errors from history", cleared)
        return cleared

    @staticmethod
    def _generate_error_id() -> str:
        return f"ERR_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"

    @staticmethod
    def _retry_count(error: BaseException) -> int:
        """Retries made before giving up, taken from the first wrapper that counted attempts."""
        for current in iter_causes(error):
            attempts = getattr(current, "attempts", None)
            if isinstance(attempts, int):
                return max(attempts - 1, 0)
        return 0

    @staticmethod
    def _extract_store_code(error: BaseException) -> Optional[str]:
        name = store_error_name(error)
        if name:
            return name
        match = _SQLITE_CODE_RE.search(str(error))
        return match.group(0) if match else None

    @staticmethod
    def _log_technical_details(record: ErrorRecord, context: Optional[OperationContext]) -> None:
        log_ctx = {
            "error_id": record.id,
            "error_type": record.error_type.value,
            "severity": record.severity.value,
            "store_code": record.underlying_code,
            "command": context.command if context else None,
            "user": context.user if context else None,
            "query": record.query,
            "parameters": record.parameters,
        }
        level, prefix = {
            ErrorSeverity.CRITICAL: (logging.ERROR, "CRITICAL DATABASE ERROR"),
            ErrorSeverity.HIGH: (logging.ERROR, "High severity database error"),
            ErrorSeverity.MEDIUM: (logging.WARNING, "Database error"),
            ErrorSeverity.LOW: (logging.INFO, "Minor database error"),
        }[record.severity]
        logger.log(level, f"{prefix}: {record.message} {fmt_ctx(log_ctx)}", extra={"error_id": record.id})

        if record.stack_trace:
            logger.debug("Error stack trace for %s:\n%s", record.id, record.stack_trace)
