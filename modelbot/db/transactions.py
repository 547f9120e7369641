"""Retry and transaction envelopes around units of work.

A unit of work is an async callable that receives the validated
``aiosqlite.Connection`` and returns a result. Retries call it again from
scratch, so it must not have side effects outside the database, and inside
a transaction it must not commit or roll back by itself.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Set, Type, TypeVar

import aiosqlite

from ..utils.log_context import fmt_ctx, get_logger
from . import errors
from .connection import ConnectionManager
from .errors import OperationFailedError, TransactionFailedError, TransactionTimeoutError
from .models import RetryConfig

logger = get_logger(__name__)

T = TypeVar("T")
Operation = Callable[[aiosqlite.Connection], Awaitable[T]]


class TransactionManager:
    """Runs units of work with exponential-backoff retries, optionally atomically."""

    def __init__(self, connection_manager: ConnectionManager, retry_config: Optional[RetryConfig] = None):
        self._connection_manager = connection_manager
        self._retry_config = retry_config or RetryConfig(
            max_attempts=3,
            base_delay_ms=1000,
            max_delay_ms=10000,
            backoff_multiplier=2.0,
        )
        self._abandoned: Set[asyncio.Task] = set()

    @property
    def retry_config(self) -> RetryConfig:
        return self._retry_config

    async def execute_with_retry(self, operation: Operation[T], retry_config: Optional[RetryConfig] = None) -> T:
        """
        Run a single operation, retrying transient failures.

        Args:
            operation: Unit of work receiving the connection.
            retry_config: Policy for this call only; defaults to the manager's.

        Raises:
            OperationFailedError: after a non-retryable failure or once all
                attempts are used up; ``attempts`` holds the attempts made.
        """
        config = retry_config or self._retry_config
        return await self._run_with_retry(self._run_plain, operation, config, OperationFailedError)

    async def execute_transaction(self, operation: Operation[T]) -> T:
        """
        Run an operation inside a transaction, retrying transient failures.

        Each attempt is its own ``BEGIN IMMEDIATE`` ... ``COMMIT``; an attempt
        that raises is rolled back before the next one starts.

        Raises:
            TransactionFailedError: when the work could not be committed.
        """
        return await self._run_with_retry(
            self._run_in_transaction, operation, self._retry_config, TransactionFailedError
        )

    async def execute_batch(self, operations: Sequence[Operation[Any]]) -> List[Any]:
        """Run all operations in one transaction; any failure reverts all of them."""
        operations = list(operations)
        for index, operation in enumerate(operations):
            if not callable(operation):
                raise TypeError(f"Operation at index {index} is not callable")
        if not operations:
            return []

        total = len(operations)

        async def run_all(conn: aiosqlite.Connection) -> List[Any]:
            results = []
            for index, operation in enumerate(operations, start=1):
                logger.debug("Executing batch operation %d/%d", index, total)
                try:
                    results.append(await operation(conn))
                except Exception as e:
                    logger.error(
                        "Batch operation failed, rolling back all operations %s",
                        fmt_ctx({"operation_index": index, "total_operations": total, "error": e}),
                    )
                    raise
            logger.debug("All %d batch operations completed successfully", total)
            return results

        return await self.execute_transaction(run_all)

    async def execute_transaction_with_timeout(self, operation: Operation[T], timeout_ms: float = 30000) -> T:
        """
        Like ``execute_transaction`` but stop waiting after ``timeout_ms``.

        The timeout only bounds how long the caller waits. The transaction is
        not cancelled: it keeps running in the background and either commits
        or rolls back on its own, and its result is discarded.

        Raises:
            TransactionTimeoutError: if the transaction has not finished in time.
        """
        task = asyncio.create_task(self.execute_transaction(operation))
        try:
            done, _ = await asyncio.wait({task}, timeout=timeout_ms / 1000)
        except asyncio.CancelledError:
            self._abandon(task)
            raise
        if task in done:
            return task.result()

        self._abandon(task)
        logger.warning("Transaction exceeded %sms; the caller stopped waiting", timeout_ms)
        raise TransactionTimeoutError(timeout_ms)

    def is_retryable_error(self, error: BaseException) -> bool:
        return errors.is_retryable_error(error)

    def update_retry_config(self, **changes: Any) -> RetryConfig:
        """Merge ``changes`` into the policy used by calls started from now on."""
        self._retry_config = self._retry_config.merge(**changes)
        logger.info("Transaction retry configuration updated %s", fmt_ctx(self._retry_config.model_dump()))
        return self._retry_config

    async def _run_plain(self, operation: Operation[T]) -> T:
        async with self._connection_manager.connection() as conn:
            return await operation(conn)

    async def _run_in_transaction(self, operation: Operation[T]) -> T:
        async with self._connection_manager.connection() as conn:
            await conn.execute("BEGIN IMMEDIATE")
            try:
                result = await operation(conn)
                await conn.commit()
            except BaseException:
                await self._rollback(conn)
                raise
            return result

    @staticmethod
    async def _rollback(conn: aiosqlite.Connection) -> None:
        try:
            if conn.in_transaction:
                await conn.rollback()
        except Exception as e:
            logger.error("Rollback failed: %s", e)

    async def _run_with_retry(
        self,
        runner: Callable[[Operation[T]], Awaitable[T]],
        operation: Operation[T],
        config: RetryConfig,
        failure: Type[OperationFailedError],
    ) -> T:
        last_error: Optional[Exception] = None
        attempt = 0
        started = time.monotonic()

        while attempt < config.max_attempts:
            attempt += 1
            logger.debug("Starting %s attempt %d/%d", failure.label.lower(), attempt, config.max_attempts)
            attempt_started = time.monotonic()
            try:
                result = await runner(operation)
            except Exception as e:
                execution_time = (time.monotonic() - attempt_started) * 1000
                self._connection_manager.update_query_metrics(execution_time, False)
                last_error = e
                logger.warning(
                    "%s attempt %d/%d failed %s",
                    failure.label,
                    attempt,
                    config.max_attempts,
                    fmt_ctx({"execution_time_ms": f"{execution_time:.1f}", "error": e}),
                )
                if not self.is_retryable_error(e) or attempt == config.max_attempts:
                    break
                delay = config.delay_for(attempt)
                logger.debug("Waiting %sms before retry...", delay)
                await asyncio.sleep(delay / 1000)
            else:
                execution_time = (time.monotonic() - attempt_started) * 1000
                self._connection_manager.update_query_metrics(execution_time, True)
                logger.debug(
                    "%s completed successfully %s",
                    failure.label,
                    fmt_ctx({"execution_time_ms": f"{execution_time:.1f}", "attempt": attempt}),
                )
                return result

        logger.error(
            "%s failed after all retry attempts %s",
            failure.label,
            fmt_ctx(
                {
                    "total_attempts": attempt,
                    "total_time_ms": f"{(time.monotonic() - started) * 1000:.1f}",
                    "error": last_error,
                }
            ),
        )
        raise failure(attempt, last_error) from last_error

    def _abandon(self, task: asyncio.Task) -> None:
        self._abandoned.add(task)
        task.add_done_callback(self._on_abandoned_done)

    def _on_abandoned_done(self, task: asyncio.Task) -> None:
        self._abandoned.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning("Transaction abandoned after timeout failed and was rolled back: %s", error)
        else:
            logger.info("Transaction abandoned after timeout completed; its result was discarded")
