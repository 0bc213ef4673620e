"""Unit tests for domain event publishing and the background sweep loop."""
import asyncio
import logging
import threading

from pika.exceptions import AMQPConnectionError

from common import events
from common.config import get_settings
from common.database import SessionLocal
from common.events import DomainEvent, flush_pending_events, publish_to_broker, queue_event
from common.schemas import SweepResult
from orchestrator import sweeper


class FakeChannel:
    def __init__(self) -> None:
        self.declared: list[str] = []
        self.published: list[tuple[str, str]] = []

    def queue_declare(self, queue, durable):
        self.declared.append(queue)

    def basic_publish(self, exchange, routing_key, body, properties):
        self.published.append((routing_key, body))


class FakeConnection:
    def __init__(self, channel: FakeChannel) -> None:
        self._channel = channel
        self.is_open = True

    def channel(self):
        return self._channel

    def close(self):
        self.is_open = False


class TestPublishToBroker:
    def test_publishes_each_event_to_durable_queue(self, monkeypatch):
        channel = FakeChannel()
        connection = FakeConnection(channel)
        monkeypatch.setattr(events.pika, "BlockingConnection", lambda params: connection)

        publish_to_broker(
            [DomainEvent("BOOKING_REQUESTED", "b-1"), DomainEvent("PRICE_FIXED", "b-1")],
            "localhost",
            "booking_events",
        )

        assert channel.declared == ["booking_events"]
        assert [routing_key for routing_key, _ in channel.published] == ["booking_events", "booking_events"]
        assert '"event":"BOOKING_REQUESTED"' in channel.published[0][1]
        assert connection.is_open is False

    def test_broker_failure_is_logged(self, monkeypatch, caplog):
        def refuse(params):
            raise AMQPConnectionError("connection refused")

        monkeypatch.setattr(events.pika, "BlockingConnection", refuse)

        with caplog.at_level(logging.ERROR, logger="common.events"):
            publish_to_broker([DomainEvent("BOOKING_REQUESTED", "b-1")], "localhost", "booking_events")

        assert "Failed to publish 1 event(s)" in caplog.text


class TestFlushPendingEvents:
    """Test that committed events reach waiters without waiting on the broker."""

    def test_publish_does_not_block_caller(self, monkeypatch):
        broker_enabled = get_settings().model_copy(update={"event_broker_enabled": True})
        monkeypatch.setattr(events, "get_settings", lambda: broker_enabled)
        release = threading.Event()
        delivered: list[list[DomainEvent]] = []

        def slow_publish(batch, host, queue):
            release.wait(timeout=5)
            delivered.append(batch)

        monkeypatch.setattr(events, "publish_to_broker", slow_publish)
        session = SessionLocal()
        try:
            seen = events.waiters.version("b-9")
            queue_event(session, DomainEvent("PAYMENT_CONFIRMED", "b-9"))

            published = flush_pending_events(session)

            assert published is not None
            assert published.done() is False
            assert events.waiters.version("b-9") == seen + 1
            release.set()
            published.result(timeout=5)
        finally:
            release.set()
            session.close()

        assert [event.event_type for event in delivered[0]] == ["PAYMENT_CONFIRMED"]

    def test_nothing_queued(self):
        session = SessionLocal()
        try:
            assert flush_pending_events(session) is None
        finally:
            session.close()


class TestSweepLoop:
    def test_failed_sweep_is_logged_and_loop_continues(self, monkeypatch, caplog):
        calls = {"count": 0}

        def fake_sweep():
            calls["count"] += 1
            if calls["count"] == 1:
                raise RuntimeError("database unavailable")
            return SweepResult()

        monkeypatch.setattr(sweeper, "_sweep_once", fake_sweep)

        async def run() -> None:
            stop = asyncio.Event()
            task = asyncio.create_task(sweeper.sweep_loop(stop, 0.01))
            for _ in range(500):
                if calls["count"] >= 3:
                    break
                await asyncio.sleep(0.01)
            stop.set()
            await asyncio.wait_for(task, timeout=5)

        with caplog.at_level(logging.ERROR, logger="orchestrator.sweeper"):
            asyncio.run(run())

        assert calls["count"] >= 3
        assert "Sweep failed" in caplog.text

    def test_stops_when_signalled(self, monkeypatch):
        monkeypatch.setattr(sweeper, "_sweep_once", lambda: SweepResult())

        async def run() -> None:
            stop = asyncio.Event()
            stop.set()
            await asyncio.wait_for(sweeper.sweep_loop(stop, 60), timeout=5)

        asyncio.run(run())
