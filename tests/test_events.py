"""
Tests for the event publisher and consumer.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from flexicart.events import EventConsumer, EventPublisher, EventType


@pytest.fixture
def queue():
    return asyncio.Queue()


class TestEventPublisher:
    """Tests for EventPublisher."""

    @pytest.mark.asyncio
    async def test_publish(self, queue):
        publisher = EventPublisher(queue)

        await publisher.publish(EventType.STATUS_UPDATE, status={"state": "IDLE"})

        assert queue.get_nowait() == {
            "type": EventType.STATUS_UPDATE,
            "status": {"state": "IDLE"},
        }

    @pytest.mark.asyncio
    async def test_publish_nowait(self, queue):
        EventPublisher(queue).publish_nowait(EventType.OPERATION_COMPLETE, operation_id="op_1")
        assert queue.get_nowait()["operation_id"] == "op_1"


class TestEventConsumer:
    """Tests for EventConsumer."""

    @pytest.mark.asyncio
    async def test_sync_and_async_handlers(self, queue):
        consumer = EventConsumer(queue)
        sync_handler = MagicMock()
        async_handler = AsyncMock()
        consumer.register_handler(EventType.INVENTORY_UPDATE, sync_handler)
        consumer.register_handler("inventoryUpdate", async_handler)

        event = {"type": EventType.INVENTORY_UPDATE, "version": 3}
        await consumer.process_event(event)

        sync_handler.assert_called_once_with(event)
        async_handler.assert_awaited_once_with(event)

    @pytest.mark.asyncio
    async def test_handlers_run_in_order(self, queue):
        consumer = EventConsumer(queue)
        calls = []
        consumer.register_handler(EventType.STATUS_UPDATE, lambda e: calls.append("first"))
        consumer.register_handler(EventType.STATUS_UPDATE, lambda e: calls.append("second"))

        await consumer.process_event({"type": "statusUpdate"})

        assert calls == ["first", "second"]

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_stop_others(self, queue):
        consumer = EventConsumer(queue)
        after = MagicMock()
        consumer.register_handler(EventType.STATUS_UPDATE, MagicMock(side_effect=RuntimeError("boom")))
        consumer.register_handler(EventType.STATUS_UPDATE, after)

        await consumer.process_event({"type": EventType.STATUS_UPDATE})

        after.assert_called_once()

    @pytest.mark.asyncio
    async def test_unknown_event_type_ignored(self, queue):
        consumer = EventConsumer(queue)
        handler = MagicMock()
        consumer.register_handler(EventType.STATUS_UPDATE, handler)

        await consumer.process_event({"type": "doorOpened"})

        handler.assert_not_called()

    def test_register_unknown_type(self, queue):
        with pytest.raises(ValueError):
            EventConsumer(queue).register_handler("doorOpened", MagicMock())

    @pytest.mark.asyncio
    async def test_unregister(self, queue):
        consumer = EventConsumer(queue)
        handler = MagicMock()
        consumer.register_handler(EventType.STATUS_UPDATE, handler)
        consumer.unregister_handler(EventType.STATUS_UPDATE, handler)
        consumer.unregister_handler(EventType.STATUS_UPDATE, handler)

        await consumer.process_event({"type": EventType.STATUS_UPDATE})

        handler.assert_not_called()

    @pytest.mark.asyncio
    async def test_drain_preserves_order(self, queue):
        consumer = EventConsumer(queue)
        publisher = EventPublisher(queue)
        seen = []
        consumer.register_handler(EventType.STATUS_UPDATE, lambda e: seen.append(e["n"]))
        for n in range(5):
            await publisher.publish(EventType.STATUS_UPDATE, n=n)

        await consumer.drain()

        assert seen == [0, 1, 2, 3, 4]
        assert queue.empty()

    @pytest.mark.asyncio
    async def test_consume_loop(self, queue):
        consumer = EventConsumer(queue)
        received = asyncio.Event()
        consumer.register_handler(EventType.OPERATION_COMPLETE, lambda e: received.set())

        await consumer.start_consuming()
        await consumer.start_consuming()
        await EventPublisher(queue).publish(EventType.OPERATION_COMPLETE, operation_id="op_1")
        await asyncio.wait_for(received.wait(), timeout=1.0)
        await consumer.stop_consuming()

        assert consumer.is_consuming is False

    @pytest.mark.asyncio
    async def test_drain_while_consuming_keeps_order(self, queue):
        consumer = EventConsumer(queue)
        publisher = EventPublisher(queue)
        seen = []

        async def handler(event):
            if event["n"] == 1:
                await asyncio.sleep(0.05)
            seen.append(event["n"])

        consumer.register_handler(EventType.STATUS_UPDATE, handler)
        await consumer.start_consuming()
        await publisher.publish(EventType.STATUS_UPDATE, n=1)
        await asyncio.sleep(0.01)
        await publisher.publish(EventType.STATUS_UPDATE, n=2)

        await consumer.drain()
        await consumer.stop_consuming()

        assert seen == [1, 2]
        assert queue.empty()
