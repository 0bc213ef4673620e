"""Domain event queueing, RabbitMQ publishing and in-process waiters.

Events are queued on the SQLAlchemy session while a unit of work runs and are
only published once that unit commits, so consumers never observe a state
that was rolled back.
"""
from __future__ import annotations

import json
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Optional

import pika
from pika.exceptions import AMQPError
from sqlalchemy.orm import Session

from .config import get_settings
from .models import utcnow

logger = logging.getLogger(__name__)

_PENDING_KEY = "pending_domain_events"

# one worker keeps broker order equal to commit order
_publisher = ThreadPoolExecutor(max_workers=1, thread_name_prefix="event-publisher")


@dataclass
class DomainEvent:
    event_type: str
    booking_id: str
    data: dict[str, Any] = field(default_factory=dict)
    occurred_at: str = field(default_factory=lambda: utcnow().isoformat())

    def to_json(self) -> str:
        return json.dumps(
            {
                "event": self.event_type,
                "booking_id": self.booking_id,
                "occurred_at": self.occurred_at,
                "data": self.data,
            },
            separators=(",", ":"),
            default=str,
        )


class BookingWaiters:
    """Lets request threads block (bounded) until a booking changes."""

    def __init__(self) -> None:
        self._condition = threading.Condition()
        self._versions: dict[str, int] = {}

    def version(self, booking_id: str) -> int:
        with self._condition:
            return self._versions.get(booking_id, 0)

    def notify(self, booking_id: str) -> None:
        with self._condition:
            self._versions[booking_id] = self._versions.get(booking_id, 0) + 1
            self._condition.notify_all()

    def wait_for_change(self, booking_id: str, seen_version: int, timeout: float) -> bool:
        with self._condition:
            return self._condition.wait_for(
                lambda: self._versions.get(booking_id, 0) != seen_version,
                timeout=timeout,
            )


waiters = BookingWaiters()


def queue_event(db: Session, event: DomainEvent) -> None:
    db.info.setdefault(_PENDING_KEY, []).append(event)


def discard_pending_events(db: Session) -> None:
    db.info.pop(_PENDING_KEY, None)


def flush_pending_events(db: Session) -> Optional[Future]:
    """Hand committed events to the broker publisher and wake any waiters.

    Publishing runs on a background worker so callers still holding booking
    locks never wait on the broker.
    """
    events: list[DomainEvent] = db.info.pop(_PENDING_KEY, [])
    if not events:
        return None
    settings = get_settings()
    published = None
    if settings.event_broker_enabled:
        published = _publisher.submit(publish_to_broker, events, settings.rabbitmq_host, settings.events_queue)
    for event in events:
        waiters.notify(event.booking_id)
    return published


def publish_to_broker(events: list[DomainEvent], host: str, queue: str) -> None:
    connection: Optional[pika.BlockingConnection] = None
    try:
        connection = pika.BlockingConnection(pika.ConnectionParameters(host=host))
        channel = connection.channel()
        channel.queue_declare(queue=queue, durable=True)
        for event in events:
            channel.basic_publish(
                exchange="",
                routing_key=queue,
                body=event.to_json(),
                properties=pika.BasicProperties(delivery_mode=2, content_type="application/json"),
            )
    except AMQPError as exc:
        # the events are already persisted as BookingEvent rows; the broker copy is best effort
        logger.error("[RabbitMQ] Failed to publish %d event(s): %s", len(events), exc)
    finally:
        if connection is not None and connection.is_open:
            connection.close()
