"""
Event system for the FlexiCart driver.

Publish-subscribe over an asyncio queue. Status changes, inventory changes
and finished operations are published as events and dispatched to
registered handlers in order.
"""

import asyncio
import inspect
import logging
from enum import Enum
from typing import Any, Callable, Union


logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """
    Enumeration of driver event types.
    """

    STATUS_UPDATE = "statusUpdate"
    INVENTORY_UPDATE = "inventoryUpdate"
    OPERATION_COMPLETE = "operationComplete"


class EventPublisher:
    """
    Publisher for sending events to the event queue.

    Attributes:
        event_queue: The asyncio queue to publish events to.
    """

    def __init__(self, event_queue: asyncio.Queue) -> None:
        """
        Initialize the event publisher.

        Args:
            event_queue: The asyncio queue for event distribution.
        """
        self.event_queue = event_queue

    async def publish(self, event_type: Union[EventType, str], **data: Any) -> None:
        """
        Publish an event to the queue.

        Args:
            event_type: The type of event to publish.
            **data: Additional event data as keyword arguments.
        """
        event = {"type": event_type, **data}
        await self.event_queue.put(event)

    def publish_nowait(self, event_type: Union[EventType, str], **data: Any) -> None:
        """Publish an event from synchronous code."""
        event = {"type": event_type, **data}
        self.event_queue.put_nowait(event)


class EventConsumer:
    """
    Consumer for processing events from the event queue.

    Handles event dispatch to registered handlers based on event type.

    Attributes:
        event_queue: The asyncio queue to consume events from.
        handlers: Mapping of event types to their handler functions.
        is_consuming: Flag indicating if the consumer is active.
    """

    def __init__(self, event_queue: asyncio.Queue) -> None:
        """
        Initialize the event consumer.

        Args:
            event_queue: The asyncio queue to consume events from.
        """
        self.event_queue = event_queue
        self.handlers: dict[Union[EventType, str], list[Callable]] = {}
        self.is_consuming = False
        self._consume_task: asyncio.Task | None = None

    def register_handler(
        self,
        event_type: Union[EventType, str],
        handler: Callable,
    ) -> None:
        """
        Register a handler for an event type.

        Args:
            event_type: The event type to handle.
            handler: The handler function (sync or async).
        """
        self.handlers.setdefault(EventType(event_type), []).append(handler)

    def unregister_handler(
        self,
        event_type: Union[EventType, str],
        handler: Callable,
    ) -> None:
        """
        Unregister a handler for an event type.

        Args:
            event_type: The event type.
            handler: The handler function to remove.
        """
        handlers = self.handlers.get(EventType(event_type), [])
        if handler in handlers:
            handlers.remove(handler)

    async def process_event(self, event: dict[str, Any]) -> None:
        """
        Process a single event by calling all registered handlers in order.

        Args:
            event: The event dictionary containing type and data.
        """
        try:
            event_type = EventType(event.get("type"))
        except ValueError:
            logger.warning(f"Unknown event type: {event.get('type')}")
            return

        for handler in list(self.handlers.get(event_type, [])):
            try:
                if inspect.iscoroutinefunction(handler):
                    await handler(event)
                else:
                    handler(event)
            except Exception as e:
                logger.error(f"Handler for {event_type.value} failed: {e}")

    async def _consume_loop(self) -> None:
        """
        Main consumption loop that processes events from the queue.
        """
        while self.is_consuming:
            try:
                event = await asyncio.wait_for(
                    self.event_queue.get(),
                    timeout=0.5,
                )
            except asyncio.TimeoutError:
                continue
            try:
                await self.process_event(event)
            finally:
                self.event_queue.task_done()

    async def drain(self) -> None:
        """
        Process every event already queued.

        While the consumption loop runs, waits for the loop to finish the
        queue so events keep their order. Must not be awaited from inside a
        handler.
        """
        task = self._consume_task
        if self.is_consuming and task is not None and not task.done():
            await self.event_queue.join()
            return
        while not self.event_queue.empty():
            event = self.event_queue.get_nowait()
            try:
                await self.process_event(event)
            finally:
                self.event_queue.task_done()

    async def start_consuming(self) -> None:
        """
        Start the event consumption loop.
        """
        if self.is_consuming:
            return

        self.is_consuming = True
        self._consume_task = asyncio.create_task(self._consume_loop())

    async def stop_consuming(self) -> None:
        """
        Stop the event consumption loop.
        """
        self.is_consuming = False

        if self._consume_task:
            self._consume_task.cancel()
            try:
                await self._consume_task
            except asyncio.CancelledError:
                pass
            self._consume_task = None
