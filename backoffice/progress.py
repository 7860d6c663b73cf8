"""Progress channel and throughput helpers shared by imports and undo.

The channel is an in-process publish/subscribe hub keyed by topic. It keeps
the last event of every unfinished topic and hands it to new subscribers
first, so a client that connects late starts from the latest known state
instead of an empty bar. A terminal event is delivered to current subscribers
and then forgotten. Persisted job state remains the durable copy; the
channel only speeds up delivery inside one process.
"""

from __future__ import annotations

import math
import queue
import threading
from dataclasses import dataclass, field
from typing import Any


def undo_topic(job_id: object) -> str:
    return f"undo:{job_id}"


def import_topic(job_id: object) -> str:
    return f"import:{job_id}"


@dataclass(frozen=True)
class ProgressEvent:
    topic: str
    name: str
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.name in TERMINAL_EVENTS


TERMINAL_EVENTS = frozenset({"importComplete", "importFailed", "undoDone", "undoFailed"})


class Subscription:
    def __init__(self, channel: "ProgressChannel", topic: str) -> None:
        self.channel = channel
        self.topic = topic
        self._queue: queue.Queue[ProgressEvent] = queue.Queue()

    def get(self, timeout: float | None = None) -> ProgressEvent | None:
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> list[ProgressEvent]:
        events: list[ProgressEvent] = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                return events

    def close(self) -> None:
        self.channel._unsubscribe(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *_exc: object) -> None:
        self.close()


class ProgressChannel:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: dict[str, set[Subscription]] = {}
        self._last: dict[str, ProgressEvent] = {}

    def publish(self, topic: str, name: str, payload: dict[str, Any]) -> ProgressEvent:
        progress_event = ProgressEvent(topic=topic, name=name, payload=dict(payload))
        with self._lock:
            if progress_event.is_terminal:
                self._last.pop(topic, None)
            else:
                self._last[topic] = progress_event
            subscribers = list(self._subscribers.get(topic, ()))
        for subscription in subscribers:
            subscription._queue.put(progress_event)
        return progress_event

    def subscribe(self, topic: str, replay_last: bool = True) -> Subscription:
        subscription = Subscription(self, topic)
        with self._lock:
            self._subscribers.setdefault(topic, set()).add(subscription)
            last = self._last.get(topic)
        if replay_last and last is not None:
            subscription._queue.put(last)
        return subscription

    def subscriber_count(self, topic: str) -> int:
        with self._lock:
            return len(self._subscribers.get(topic, ()))

    def _unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            subscribers = self._subscribers.get(subscription.topic)
            if not subscribers:
                return
            subscribers.discard(subscription)
            if not subscribers:
                del self._subscribers[subscription.topic]


def percent_complete(done: int, total: int) -> int:
    """Whole percentage rounded half-up; an empty run counts as complete."""
    if total <= 0:
        return 100
    return min(100, int(math.floor(done * 100 / total + 0.5)))


class ThroughputEstimator:
    """Rolling mean of seconds-per-row, averaged per chunk rather than per row."""

    def __init__(self) -> None:
        self.chunks = 0
        self.seconds_per_row = 0.0

    def add_chunk(self, elapsed_seconds: float, rows: int) -> float:
        if rows <= 0:
            return self.seconds_per_row
        chunk_rate = max(elapsed_seconds, 0.0) / rows
        self.chunks += 1
        self.seconds_per_row = (self.seconds_per_row * (self.chunks - 1) + chunk_rate) / self.chunks
        return self.seconds_per_row

    def eta_seconds(self, rows_left: int) -> int:
        return int(round(max(rows_left, 0) * self.seconds_per_row))

    def eta_label(self, rows_left: int) -> str:
        if self.chunks == 0:
            return "Calculating..."
        return f"{format_duration(self.eta_seconds(rows_left))} left"


def format_duration(seconds: int) -> str:
    if seconds >= 60:
        minutes, remainder = divmod(seconds, 60)
        return f"{minutes}m {remainder}s"
    return f"{seconds}s"
