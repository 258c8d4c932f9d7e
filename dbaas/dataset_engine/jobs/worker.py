"""
Job worker: consumes job-run messages and dispatches them to handlers.

The worker is the background processing loop that:
1. Consumes job-run messages from the bus
2. Looks up the handler registered for the message type
3. Runs the handler
4. Re-sends the message with a delay if the handler failed retryably
5. Commits the delivery

Invariants:
    - Every delivery is committed exactly once after handling, whatever
      the outcome, except when the worker is cancelled mid-handler
    - A retryable failure is re-sent before the original is committed
    - A message is re-sent at most max_attempts - 1 times

How to change safely:
    - Handlers must be idempotent; deliveries are at-least-once
    - Keep handler registration keyed by message type only
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from typing import Any, Awaitable, Callable

from ..errors import error_code, is_retryable
from .base import Delivery, JobBusError, JobRunMessage, MessageBus

logger = logging.getLogger(__name__)

JobHandler = Callable[[JobRunMessage], Awaitable[None]]

ATTEMPT_EXTRA = "worker_attempt"


class JobWorker:
    """Consumes the job bus and runs registered handlers.

    Example:
        >>> worker = JobWorker(bus, {"dataset_snapshot_job": builder.handle})
        >>> await worker.start()  # Runs until stopped
    """

    def __init__(
        self,
        bus: MessageBus,
        handlers: dict[str, JobHandler] | None = None,
        group_id: str = "dataset-job-worker",
        retry_delay_ms: int = 10_000,
        max_attempts: int = 5,
    ) -> None:
        self.bus = bus
        self.handlers: dict[str, JobHandler] = dict(handlers or {})
        self.group_id = group_id
        self.retry_delay_ms = retry_delay_ms
        self.max_attempts = max_attempts

        self._running = False
        self._processed_count = 0
        self._error_count = 0
        self._retry_count = 0
        self._last_delivery: Delivery | None = None

    def register(self, msg_type: str, handler: JobHandler) -> None:
        self.handlers[msg_type] = handler

    async def start(self) -> None:
        """Start the worker loop.

        This runs until stop() is called or the bus closes.
        """
        if self._running:
            logger.warning("Job worker already running")
            return

        self._running = True
        logger.info(
            "Starting job worker",
            extra={"group_id": self.group_id, "types": sorted(self.handlers)},
        )

        try:
            async for delivery in self.bus.subscribe(self.group_id):
                if not self._running:
                    break

                await self.process(delivery)
                await self.bus.commit(delivery)
                self._last_delivery = delivery

        except asyncio.CancelledError:
            logger.info("Job worker cancelled")
            raise
        except Exception as e:
            logger.error(f"Job worker error: {e}", exc_info=True)
            raise

        finally:
            self._running = False

    async def stop(self) -> None:
        """Stop the worker loop."""
        self._running = False
        logger.info("Stopping job worker")

    async def process(self, delivery: Delivery) -> None:
        """Run the handler for one delivery. Does not commit."""
        msg = delivery.message
        handler = self.handlers.get(msg.type)
        if handler is None:
            logger.warning("No handler for job message", extra={"type": msg.type, "key": delivery.key})
            return

        try:
            await handler(msg)
            self._processed_count += 1
            logger.debug("Handled job message", extra={"type": msg.type, "key": delivery.key})
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._error_count += 1
            if is_retryable(e):
                await self._retry(delivery, e)
            else:
                logger.error(
                    "Job handler failed",
                    extra={
                        "type": msg.type,
                        "key": delivery.key,
                        "code": error_code(e),
                        "error": str(e),
                    },
                    exc_info=True,
                )

    async def _retry(self, delivery: Delivery, cause: Exception) -> None:
        msg = delivery.message
        attempt = msg.int_extra(ATTEMPT_EXTRA, 1)
        if attempt >= self.max_attempts:
            logger.error(
                "Job message exhausted retries",
                extra={"type": msg.type, "key": delivery.key, "attempts": attempt, "error": str(cause)},
            )
            return

        retry = dataclasses.replace(msg, extra={**msg.extra, ATTEMPT_EXTRA: str(attempt + 1)})
        try:
            await self.bus.send(retry, key=delivery.key, delay_ms=self.retry_delay_ms)
        except JobBusError as e:
            # Leave the delivery uncommitted so it is redelivered.
            logger.error(f"Failed to re-send job message: {e}", extra={"type": msg.type})
            raise
        self._retry_count += 1
        logger.warning(
            "Job handler failed retryably, re-sent",
            extra={
                "type": msg.type,
                "key": delivery.key,
                "attempt": attempt,
                "delay_ms": self.retry_delay_ms,
                "error": str(cause),
            },
        )

    def stats(self) -> dict[str, Any]:
        """Get worker statistics."""
        return {
            "running": self._running,
            "processed_count": self._processed_count,
            "error_count": self._error_count,
            "retry_count": self._retry_count,
            "last_delivery": str(self._last_delivery) if self._last_delivery else None,
        }
