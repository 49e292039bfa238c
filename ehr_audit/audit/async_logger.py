"""Asyncio front-end for the audit logger.

Async services must not block the event loop on fsync. AsyncAuditLogger
queues log calls per channel and a single consumer task per channel runs
them through AuditLogger.log() in a worker thread. Because each channel has
exactly one consumer, entries of a (channel, date) chain are written in
submission order.

The ambient request id and the entry timestamp are captured at submission,
in the caller's context, not when the worker gets to the entry.
"""

import asyncio
import logging
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from ..models import LogContext, LogEntry
from ..serializer import current_request_id, generate_request_id
from .events import AuditEvent
from .logger import AuditLogger

logger = logging.getLogger(__name__)

_STOP = object()


def _has_request_id(context: LogContext | Mapping[str, Any] | None) -> bool:
    if isinstance(context, LogContext):
        return bool(context.request_id)
    if isinstance(context, Mapping):
        return bool(context.get("request_id"))
    return False


class AsyncAuditLogger:
    """Non-blocking wrapper around an AuditLogger.

    Example:
        >>> async with AsyncAuditLogger(audit) as alog:
        ...     await alog.log("encounter", "READ", encounter_id="E-100")
    """

    def __init__(self, audit: AuditLogger, max_queue_size: int = 0) -> None:
        """Initialize async front-end.

        Args:
            audit: Underlying synchronous logger (not closed by aclose())
            max_queue_size: Per-channel queue bound (0 for unbounded)
        """
        self.audit = audit
        self.max_queue_size = max_queue_size
        self._queues: dict[str, asyncio.Queue] = {}
        self._workers: dict[str, asyncio.Task] = {}
        self._pending: set[asyncio.Future] = set()
        self._closed = False

    async def log(
        self,
        channel: str,
        operation: str,
        context: LogContext | Mapping[str, Any] | None = None,
        **kwargs: Any,
    ) -> LogEntry:
        """Queue an entry and wait until it is durably written.

        Args:
            channel: Registered channel
            operation: Operation registered for the channel
            context: LogContext or mapping of LogContext fields
            **kwargs: Passed through to AuditLogger.log()

        Returns:
            The entry as written

        Raises:
            RuntimeError: If the logger has been closed
            AuditError: Any error raised by AuditLogger.log()
        """
        if self._closed:
            raise RuntimeError("AsyncAuditLogger is closed")
        self.audit.registry.validate(channel, operation)

        if "request_id" not in kwargs and not _has_request_id(context):
            kwargs["request_id"] = current_request_id() or generate_request_id()
        kwargs.setdefault("timestamp", datetime.now(UTC))

        future: asyncio.Future[LogEntry] = asyncio.get_running_loop().create_future()
        self._pending.add(future)
        future.add_done_callback(self._pending.discard)
        await self._queue_for(channel).put((operation, context, kwargs, future))
        return await future

    async def log_event(self, event: AuditEvent) -> LogEntry:
        """Queue a prepared event and wait until it is written."""
        return await self.log(
            event.channel,
            event.operation,
            event.context,
            level=event.level,
            metrics=event.metrics,
        )

    async def aclose(self) -> None:
        """Drain all queues and stop the consumers.

        Entries still queued behind the stop marker, or submitted while the
        consumers were stopping, fail with RuntimeError instead of hanging.
        """
        self._closed = True
        for queue in self._queues.values():
            await queue.put(_STOP)
        if self._workers:
            await asyncio.gather(*self._workers.values())
        for queue in self._queues.values():
            while not queue.empty():
                queue.get_nowait()
                queue.task_done()
        for future in list(self._pending):
            if not future.done():
                future.set_exception(
                    RuntimeError("AsyncAuditLogger closed before the entry was written")
                )
        self._queues.clear()
        self._workers.clear()

    async def __aenter__(self) -> "AsyncAuditLogger":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    def _queue_for(self, channel: str) -> asyncio.Queue:
        queue = self._queues.get(channel)
        if queue is None:
            queue = asyncio.Queue(self.max_queue_size)
            self._queues[channel] = queue
            self._workers[channel] = asyncio.create_task(
                self._consume(channel, queue), name=f"ehr-audit-{channel}"
            )
        return queue

    async def _consume(self, channel: str, queue: asyncio.Queue) -> None:
        while True:
            item = await queue.get()
            try:
                if item is _STOP:
                    return
                operation, context, kwargs, future = item
                try:
                    entry = await asyncio.to_thread(
                        self.audit.log, channel, operation, context, **kwargs
                    )
                except Exception as e:
                    if not future.done():
                        future.set_exception(e)
                else:
                    if not future.done():
                        future.set_result(entry)
            finally:
                queue.task_done()
