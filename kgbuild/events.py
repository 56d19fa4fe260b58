"""
Event Bus

Delivers pipeline events to callbacks registered by the host process.

Callbacks may be plain functions or coroutine functions. A callback that
raises is logged and skipped; the remaining callbacks still receive the
event, and the emitting scheduler never sees the error.

Example:
    >>> bus = EventBus()
    >>> bus.subscribe(EventKind.TASK_COMPLETED, lambda e: print(e.task_id))
    >>> await bus.emit(TaskCompletedEvent(task_id="abc"))
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Union

from kgbuild.types import EventKind, PipelineEvent

logger = logging.getLogger(__name__)

EventCallback = Callable[[PipelineEvent], Union[None, Awaitable[None]]]


class EventBus:
    """Per-kind subscription lists plus subscribers to every event."""

    def __init__(self) -> None:
        self._subscribers: dict[EventKind, list[EventCallback]] = {}
        self._all: list[EventCallback] = []

    def subscribe(self, kind: EventKind | str | None, callback: EventCallback) -> Callable[[], None]:
        """
        Register a callback.

        Args:
            kind: Event kind to receive, or None for every event
            callback: Function or coroutine function taking the event

        Returns:
            A function that removes the subscription
        """
        if kind is None:
            bucket = self._all
        else:
            bucket = self._subscribers.setdefault(EventKind(kind), [])
        bucket.append(callback)

        def unsubscribe() -> None:
            if callback in bucket:
                bucket.remove(callback)

        return unsubscribe

    def subscriber_count(self, kind: EventKind | str | None = None) -> int:
        if kind is None:
            return len(self._all) + sum(len(b) for b in self._subscribers.values())
        return len(self._subscribers.get(EventKind(kind), []))

    async def emit(self, event: PipelineEvent) -> None:
        """Deliver an event to every matching subscriber, isolating failures."""
        callbacks = [*self._subscribers.get(EventKind(event.kind), []), *self._all]
        for callback in callbacks:
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Event subscriber failed on {event.kind}: {e}", exc_info=True)
