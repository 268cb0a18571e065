"""
Asyncio-based event bus connecting uploads, the diff orchestrator, and the
notification relay.

The bus is an explicit object handed to every module by the lifecycle
orchestrator; there is no process-wide dispatcher. Topics are matched
exactly and payloads are typed `BasePayload` models.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
from asyncio import QueueEmpty
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from .contracts import BUS_STATUS_TOPIC, BasePayload, BusStatus, EventHandler

logger = logging.getLogger(__name__)


Handler = Callable[[str, BasePayload], Awaitable[None]]


@dataclass(frozen=True)
class Subscription:
    """Handle for a topic subscription."""

    topic: str
    handler: EventHandler


class EventBus:
    """
    Asynchronous publish/subscribe bus.

    Every handler invocation runs in its own task so a handler may publish
    back into the bus without deadlocking the dispatcher. A failing handler
    is logged and counted; it never affects other subscribers.
    """

    def __init__(
        self,
        *,
        queue_size: int = 256,
        telemetry_topic: str = BUS_STATUS_TOPIC,
        telemetry_interval: float = 5.0,
        telemetry_enabled: bool = True,
    ) -> None:
        self._queue: asyncio.Queue[tuple[str, BasePayload]] = asyncio.Queue(maxsize=queue_size)
        self._subscribers: dict[str, list[Handler]] = defaultdict(list)
        self._dispatcher_task: asyncio.Task[None] | None = None
        self._telemetry_task: asyncio.Task[None] | None = None
        self._handler_tasks: set[asyncio.Task[None]] = set()
        self._stopping = asyncio.Event()
        self._telemetry_topic = telemetry_topic
        self._telemetry_interval = telemetry_interval
        self._telemetry_enabled = telemetry_enabled
        self._published_total = 0
        self._processed_total = 0
        self._failed_total = 0

    @property
    def running(self) -> bool:
        return self._dispatcher_task is not None

    def subscribe(self, topic: str, handler: Handler) -> Subscription:
        """Register an async handler for a topic."""
        self._subscribers[topic].append(handler)
        logger.debug("Subscribed handler %s to topic %s", handler, topic)
        return Subscription(topic=topic, handler=handler)

    def unsubscribe(self, subscription: Subscription) -> None:
        """Detach a previously registered handler."""
        handlers = self._subscribers.get(subscription.topic, [])
        if subscription.handler in handlers:
            handlers.remove(subscription.handler)
            logger.debug(
                "Unsubscribed handler %s from topic %s", subscription.handler, subscription.topic
            )

    async def publish(self, topic: str, payload: BasePayload) -> None:
        """Publish a payload for a specific topic."""
        self._published_total += 1
        if self._queue.full():
            logger.warning("Event bus queue is full; publisher will wait for free space.")
        await self._queue.put((topic, payload))
        logger.debug("Queued %s for topic %s", type(payload).__name__, topic)

    async def start(self) -> None:
        """Start the dispatcher loop."""
        if self._dispatcher_task is None:
            self._stopping.clear()
            self._dispatcher_task = asyncio.create_task(self._dispatcher(), name="visualdiff-bus")
            logger.info("Event bus dispatcher started.")
        if self._telemetry_enabled and self._telemetry_task is None:
            self._telemetry_task = asyncio.create_task(
                self._telemetry_loop(), name="visualdiff-bus-telemetry"
            )

    async def join(self) -> None:
        """
        Wait until every queued event is dispatched and every handler task,
        including those spawned by events published from handlers, has finished.
        """
        while True:
            await self._queue.join()
            if not self._handler_tasks:
                if self._queue.empty():
                    return
                continue
            await asyncio.gather(*list(self._handler_tasks), return_exceptions=True)

    async def stop(self) -> None:
        """Stop the dispatcher loop after in-flight handlers complete."""
        if self._dispatcher_task is None:
            return
        self._stopping.set()
        await self._queue.put(("", _StopPayload()))
        await self._dispatcher_task
        self._dispatcher_task = None
        if self._handler_tasks:
            pending = list(self._handler_tasks)
            self._handler_tasks.clear()
            await asyncio.gather(*pending, return_exceptions=True)
        if self._telemetry_task:
            self._telemetry_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._telemetry_task
            self._telemetry_task = None
        logger.info("Event bus dispatcher stopped.")

    def status(self) -> BusStatus:
        """Current queue and handler counters."""
        return BusStatus(
            queue_depth=self._queue.qsize(),
            queue_capacity=self._queue.maxsize,
            subscriber_count=sum(len(handlers) for handlers in self._subscribers.values()),
            in_flight=len(self._handler_tasks),
            published_total=self._published_total,
            processed_total=self._processed_total,
            failed_total=self._failed_total,
        )

    async def _dispatcher(self) -> None:
        while not self._stopping.is_set():
            topic, payload = await self._queue.get()
            try:
                if isinstance(payload, _StopPayload):
                    break
                handlers = list(self._subscribers.get(topic, []))
                logger.debug("Dispatching payload on topic %s to %d handlers", topic, len(handlers))
                for handler in handlers:
                    task = asyncio.create_task(self._call_handler(handler, topic, payload))
                    self._handler_tasks.add(task)
                    task.add_done_callback(self._on_handler_done)
                self._processed_total += 1
            finally:
                self._queue.task_done()
        dropped = 0
        while not self._queue.empty():
            try:
                self._queue.get_nowait()
            except QueueEmpty:
                break
            dropped += 1
            self._queue.task_done()
        if dropped:
            logger.warning("Event bus dropped %d events queued after stop.", dropped)

    def _on_handler_done(self, task: asyncio.Task[None]) -> None:
        self._handler_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._failed_total += 1
            logger.error("Subscriber handler failed: %s", exc, exc_info=exc)

    async def _telemetry_loop(self) -> None:
        try:
            while not self._stopping.is_set():
                await asyncio.sleep(self._telemetry_interval)
                await self.publish(self._telemetry_topic, self.status())
        except asyncio.CancelledError:  # pragma: no cover - cooperative cancellation
            return

    async def _call_handler(self, handler: Handler, topic: str, payload: BasePayload) -> None:
        result = handler(topic, payload)
        if inspect.isawaitable(result):
            await result


class _StopPayload(BasePayload):
    """Sentinel payload to signal dispatcher shutdown."""


__all__ = ["EventBus", "Handler", "Subscription"]
