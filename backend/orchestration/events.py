"""
Event topics and the publish/subscribe bus for server-pushed notifications.

Topics form a closed set. Each connected client is a subscriber with its own
FIFO queue, so events produced for one task reach that client in production
order. publish() never blocks and may be called from worker threads.
"""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Optional, Union

from errors import ProtocolError


class Topic(Enum):
    BACKEND_CONNECTED = "backend_connected"
    BACKEND_CONNECTION_ERROR = "backend_connection_error"
    PROCESSING_STARTED = "processing_started"
    PROCESSING_PROGRESS = "processing_progress"
    PROCESSING_COMPLETE = "processing_complete"
    PROCESSING_ERROR = "processing_error"
    TOOL_STATUS = "tool_status"
    TOOL_EXECUTION = "tool_execution"
    LOG_MESSAGE = "log_message"


ALL_TOPICS = frozenset(Topic)


def parse_topic(value: Union[str, Topic]) -> Topic:
    """Resolve a wire topic name to a Topic, rejecting unknown names."""
    if isinstance(value, Topic):
        return value
    try:
        return Topic(value)
    except ValueError:
        raise ProtocolError(ProtocolError.INVALID_PARAMS, f"Unknown topic: {str(value)[:50]}",
                            data={"topics": sorted(t.value for t in Topic)})


@dataclass
class Event:
    topic: Topic
    params: dict = field(default_factory=dict)
    task_id: Optional[str] = None
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {"method": self.topic.value, "params": self.params}


class _Subscriber:
    def __init__(self, topics: Iterable[Topic]):
        self.topics = set(topics)
        self.queue: asyncio.Queue = asyncio.Queue()


class EventBus:
    """Fan-out of events to per-subscriber queues with topic gating."""

    def __init__(self):
        self._subscribers: dict[str, _Subscriber] = {}
        self._lock = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def bind_loop(self, loop: asyncio.AbstractEventLoop):
        self._loop = loop

    # ── Subscriptions ──

    def attach(self, subscriber_id: str, topics: Iterable[Topic] = ALL_TOPICS) -> asyncio.Queue:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        sub = _Subscriber(topics)
        with self._lock:
            self._subscribers[subscriber_id] = sub
        return sub.queue

    def detach(self, subscriber_id: str):
        with self._lock:
            self._subscribers.pop(subscriber_id, None)

    def subscribe(self, subscriber_id: str, topic: Union[str, Topic]) -> Topic:
        t = parse_topic(topic)
        with self._lock:
            sub = self._subscribers.get(subscriber_id)
            if sub is not None:
                sub.topics.add(t)
        return t

    def unsubscribe(self, subscriber_id: str, topic: Union[str, Topic]) -> Topic:
        t = parse_topic(topic)
        with self._lock:
            sub = self._subscribers.get(subscriber_id)
            if sub is not None:
                sub.topics.discard(t)
        return t

    def topics_for(self, subscriber_id: str) -> set[Topic]:
        with self._lock:
            sub = self._subscribers.get(subscriber_id)
            return set(sub.topics) if sub else set()

    # ── Publishing ──

    def publish(self, event: Event):
        loop = self._loop
        if loop is not None and not loop.is_closed() and not _on_loop(loop):
            loop.call_soon_threadsafe(self._deliver, event)
            return
        self._deliver(event)

    def emit(self, topic: Topic, task_id: Optional[str] = None, **params) -> Event:
        """Publish `params` under `topic`. A task_id is also copied into params."""
        if task_id is not None:
            params.setdefault("task_id", task_id)
        event = Event(topic=topic, params=params, task_id=task_id)
        self.publish(event)
        return event

    def _deliver(self, event: Event):
        with self._lock:
            targets = [s for s in self._subscribers.values() if event.topic in s.topics]
        for sub in targets:
            sub.queue.put_nowait(event)


def _on_loop(loop: asyncio.AbstractEventLoop) -> bool:
    try:
        return asyncio.get_running_loop() is loop
    except RuntimeError:
        return False


class EventLogHandler(logging.Handler):
    """Forward log records to subscribers as log_message events."""

    def __init__(self, bus: EventBus, level=logging.WARNING):
        super().__init__(level)
        self.bus = bus
        self._local = threading.local()

    def emit(self, record: logging.LogRecord):
        # Delivery may itself log; don't recurse.
        if getattr(self._local, "active", False):
            return
        self._local.active = True
        try:
            self.bus.emit(
                Topic.LOG_MESSAGE,
                level=record.levelname.lower(),
                logger=record.name,
                message=record.getMessage(),
                timestamp=int(record.created * 1000),
            )
        except Exception:
            self.handleError(record)
        finally:
            self._local.active = False
