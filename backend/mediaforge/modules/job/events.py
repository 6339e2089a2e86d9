"""Lifecycle event subscriptions for the transcoding pipeline.

Events: ``job:queued``, ``job:started``, ``job:progress``, ``job:completed``,
``job:failed``, ``job:requeued``, ``queue:empty`` and ``queue:full``.
"""

import asyncio
import inspect
import logging
from collections import defaultdict
from typing import Any, Callable

from mediaforge.core.logging import log_error

logger = logging.getLogger(__name__)

EventHandler = Callable[[Any], Any]

JOB_QUEUED = "job:queued"
JOB_STARTED = "job:started"
JOB_PROGRESS = "job:progress"
JOB_COMPLETED = "job:completed"
JOB_FAILED = "job:failed"
JOB_REQUEUED = "job:requeued"
QUEUE_EMPTY = "queue:empty"
QUEUE_FULL = "queue:full"

EVENTS = frozenset((
    JOB_QUEUED, JOB_STARTED, JOB_PROGRESS, JOB_COMPLETED,
    JOB_FAILED, JOB_REQUEUED, QUEUE_EMPTY, QUEUE_FULL,
))


class EventEmitter:
    """Synchronous fan-out of events to subscribed handlers.

    Handlers may be plain functions or coroutine functions; coroutines are
    scheduled on the running loop. A failing handler is logged and never
    affects the emitter or the other handlers.
    """

    def __init__(self):
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self._pending: set[asyncio.Task] = set()

    def on(self, event: str, handler: EventHandler) -> None:
        if event not in EVENTS:
            raise ValueError(f"Unknown event: {event}")
        self._handlers[event].append(handler)

    def off(self, event: str, handler: EventHandler) -> bool:
        """Unsubscribe a handler. Returns False if it was not subscribed."""
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)
            return True
        return False

    def emit(self, event: str, payload: Any = None) -> None:
        for handler in list(self._handlers.get(event, [])):
            try:
                result = handler(payload)
            except Exception as e:
                log_error(logger, f"Event handler for {event} failed", e, event=event)
                continue

            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._pending.add(task)
                task.add_done_callback(self._handler_done)

    def _handler_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log_error(logger, "Async event handler failed", exc)
