"""
Progress Emitter - Non-blocking pub/sub for run and task lifecycle events.

The scheduler publishes with emit(), which never waits on a subscriber:
each subscription owns a bounded queue drained by its own delivery task.
A slow subscriber loses events according to the overflow policy instead of
stalling the run.

Per-task event order is preserved: the scheduler emits in the order it
processes messages and every subscriber queue is FIFO.
"""

import asyncio
import inspect
import itertools
import logging
from collections import Counter, deque
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    """Types of events that can be emitted."""

    # Task lifecycle
    TASK_QUEUED = "task_queued"
    TASK_STARTED = "task_started"
    TASK_PROGRESS = "task_progress"
    TASK_COMPLETED = "task_completed"
    TASK_FAILED = "task_failed"
    TASK_RETRYING = "task_retrying"
    TASK_SKIPPED = "task_skipped"
    TASK_CANCELLED = "task_cancelled"

    # Run lifecycle
    RUN_STARTED = "run_started"
    RUN_COMPLETED = "run_completed"
    RUN_FAILED = "run_failed"
    RUN_CANCELLED = "run_cancelled"


RUN_END_EVENTS = frozenset({EventType.RUN_COMPLETED, EventType.RUN_FAILED, EventType.RUN_CANCELLED})


class OverflowPolicy(StrEnum):
    DROP_OLDEST = "drop_oldest"
    DROP_NEWEST = "drop_newest"


@dataclass
class PipelineEvent:
    """An event about a run or one of its tasks."""

    type: EventType
    run_id: str
    node_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)
    sequence: int = 0  # Assigned by the emitter

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "run_id": self.run_id,
            "node_id": self.node_id,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
            "sequence": self.sequence,
        }


# Handlers may be plain functions or coroutines
EventHandler = Callable[[PipelineEvent], Awaitable[None] | None]

_CLOSE = object()


@dataclass
class Subscription:
    """A subscription with its own bounded delivery queue."""

    id: str
    event_types: set[EventType] | None
    handler: EventHandler | None  # None for stream() consumers
    queue: asyncio.Queue
    filter_run: str | None = None
    filter_node: str | None = None
    task: asyncio.Task | None = None
    delivered: int = 0
    dropped: int = 0
    errors: int = 0

    def matches(self, event: PipelineEvent) -> bool:
        if self.event_types is not None and event.type not in self.event_types:
            return False
        if self.filter_run and self.filter_run != event.run_id:
            return False
        if self.filter_node and self.filter_node != event.node_id:
            return False
        return True


class ProgressEmitter:
    """
    Pub/sub emitter for pipeline events.

    Features:
    - Synchronous, non-blocking emit
    - Per-subscriber bounded queues with drop_oldest / drop_newest overflow
    - Type, run and node filtering
    - Async iteration via stream()
    - Event history for debugging

    Example:
        emitter = ProgressEmitter()

        async def on_failed(event: PipelineEvent):
            print(f"{event.node_id} failed: {event.data['error']}")

        emitter.subscribe(on_failed, event_types=[EventType.TASK_FAILED])

        async for event in emitter.stream(run_id=run_id):
            print(event.type, event.node_id)
    """

    def __init__(
        self,
        max_history: int = 1000,
        queue_size: int = 1000,
        overflow: OverflowPolicy | str = OverflowPolicy.DROP_OLDEST,
    ):
        if queue_size < 1:
            raise ValueError("queue_size must be at least 1")
        self._subscriptions: dict[str, Subscription] = {}
        self._history: deque[PipelineEvent] = deque(maxlen=max_history)
        self._queue_size = queue_size
        self._overflow = OverflowPolicy(overflow)
        self._sub_ids = itertools.count(1)
        self._sequence = 0
        self._closed = False

    def subscribe(
        self,
        handler: EventHandler,
        event_types: list[EventType] | None = None,
        run_id: str | None = None,
        node_id: str | None = None,
    ) -> str:
        """
        Subscribe to events.

        Args:
            handler: Function or coroutine called with each matching event
            event_types: Types of events to receive (None for all)
            run_id: Only receive events from this run
            node_id: Only receive events about this node

        Returns:
            An id for unsubscribe()
        """
        sub = self._add_subscription(handler, event_types, run_id, node_id)
        self._ensure_delivery(sub)
        logger.debug(f"Subscription {sub.id} registered for {event_types or 'all events'}")
        return sub.id

    def _add_subscription(
        self,
        handler: EventHandler | None,
        event_types: list[EventType] | None,
        run_id: str | None,
        node_id: str | None,
    ) -> Subscription:
        sub = Subscription(
            id=f"sub_{next(self._sub_ids)}",
            event_types=set(event_types) if event_types is not None else None,
            handler=handler,
            queue=asyncio.Queue(maxsize=self._queue_size),
            filter_run=run_id,
            filter_node=node_id,
        )
        self._subscriptions[sub.id] = sub
        return sub

    def unsubscribe(self, subscription_id: str) -> bool:
        """Drop a subscription and its undelivered events. False if the id is unknown."""
        sub = self._subscriptions.pop(subscription_id, None)
        if sub is None:
            return False
        if sub.task is not None and not sub.task.done():
            sub.task.cancel()
        logger.debug(f"Unsubscribed {subscription_id} ({sub.dropped} dropped)")
        return True

    def emit(self, event: PipelineEvent) -> None:
        """
        Publish an event to all matching subscribers without waiting.

        Safe to call from any coroutine on the emitter's loop; never raises
        because of a subscriber.
        """
        if self._closed:
            return

        self._sequence += 1
        event.sequence = self._sequence

        self._history.append(event)

        for sub in list(self._subscriptions.values()):
            if sub.matches(event):
                self._enqueue(sub, event)
                self._ensure_delivery(sub)

    def _enqueue(self, sub: Subscription, item: Any) -> None:
        try:
            sub.queue.put_nowait(item)
            return
        except asyncio.QueueFull:
            pass

        if self._overflow == OverflowPolicy.DROP_NEWEST and item is not _CLOSE:
            sub.dropped += 1
            return

        # Make room by discarding the oldest queued event
        try:
            sub.queue.get_nowait()
            sub.queue.task_done()
            sub.dropped += 1
        except asyncio.QueueEmpty:
            pass
        sub.queue.put_nowait(item)
        if sub.dropped in (1, 100) or sub.dropped % 1000 == 0:
            logger.warning(f"Subscription {sub.id} is falling behind ({sub.dropped} dropped)")

    def _ensure_delivery(self, sub: Subscription) -> None:
        if sub.handler is None or sub.task is not None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Started on the first emit from inside a loop
            return
        sub.task = loop.create_task(self._deliver(sub), name=f"emitter-{sub.id}")

    async def _deliver(self, sub: Subscription) -> None:
        while True:
            item = await sub.queue.get()
            try:
                if item is _CLOSE:
                    return
                result = sub.handler(item)
                if inspect.isawaitable(result):
                    await result
                sub.delivered += 1
            except Exception as e:
                sub.errors += 1
                logger.error(f"Handler error for {item.type}: {e}")
            finally:
                sub.queue.task_done()

    async def stream(
        self,
        event_types: list[EventType] | None = None,
        run_id: str | None = None,
        node_id: str | None = None,
        since_sequence: int | None = None,
    ) -> AsyncIterator[PipelineEvent]:
        """
        Iterate over matching events as they are emitted.

        With `since_sequence`, retained history after that sequence number is
        replayed first, so a reconnecting consumer misses nothing still in
        history. When filtered by run, the iterator ends after that run's
        final event; it always ends when the emitter is closed.
        """
        sub = self._add_subscription(None, event_types, run_id, node_id)
        backlog = []
        if since_sequence is not None:
            backlog = [e for e in self._history if e.sequence > since_sequence and sub.matches(e)]
        try:
            for event in backlog:
                yield event
                if run_id is not None and event.type in RUN_END_EVENTS:
                    return
            while True:
                item = await sub.queue.get()
                sub.queue.task_done()
                if item is _CLOSE:
                    return
                sub.delivered += 1
                yield item
                if run_id is not None and item.type in RUN_END_EVENTS:
                    return
        finally:
            self._subscriptions.pop(sub.id, None)

    async def flush(self) -> None:
        """Wait until every handler subscription has drained its queue."""
        for sub in list(self._subscriptions.values()):
            if sub.handler is None:
                continue
            self._ensure_delivery(sub)
            await sub.queue.join()

    async def close(self) -> None:
        """Deliver what is queued, then stop all subscriptions."""
        if self._closed:
            return
        await self.flush()
        self._closed = True
        for sub in list(self._subscriptions.values()):
            self._enqueue(sub, _CLOSE)
        tasks = [sub.task for sub in self._subscriptions.values() if sub.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._subscriptions = {
            sub_id: sub for sub_id, sub in self._subscriptions.items() if sub.handler is None
        }

    @property
    def closed(self) -> bool:
        return self._closed

    # === INSPECTION ===

    def get_history(
        self,
        event_type: EventType | None = None,
        run_id: str | None = None,
        node_id: str | None = None,
        limit: int = 100,
        since_sequence: int | None = None,
    ) -> list[PipelineEvent]:
        """Retained events, newest first, narrowed by any filter that is given."""
        matched = (
            e
            for e in reversed(self._history)
            if (event_type is None or e.type == event_type)
            and (run_id is None or e.run_id == run_id)
            and (node_id is None or e.node_id == node_id)
            and (since_sequence is None or e.sequence > since_sequence)
        )
        return list(itertools.islice(matched, limit))

    def get_stats(self) -> dict:
        subs = self._subscriptions.values()
        return {
            "total_events": self._sequence,
            "history_size": len(self._history),
            "subscriptions": len(self._subscriptions),
            "events_by_type": dict(Counter(e.type.value for e in self._history)),
            "dropped_events": sum(s.dropped for s in subs),
            "handler_errors": sum(s.errors for s in subs),
            "queue_size": self._queue_size,
            "overflow": self._overflow.value,
        }

    async def wait_for(
        self,
        event_type: EventType,
        run_id: str | None = None,
        node_id: str | None = None,
        timeout: float | None = None,
    ) -> PipelineEvent | None:
        """Block until the next matching event is delivered; None after `timeout` seconds."""
        found: asyncio.Future[PipelineEvent] = asyncio.get_running_loop().create_future()

        def capture(event: PipelineEvent) -> None:
            if not found.done():
                found.set_result(event)

        sub_id = self.subscribe(capture, event_types=[event_type], run_id=run_id, node_id=node_id)
        try:
            return await asyncio.wait_for(found, timeout=timeout)
        except TimeoutError:
            return None
        finally:
            self.unsubscribe(sub_id)
